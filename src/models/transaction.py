import logging
from typing import Dict, Any, Optional
from datetime import datetime, timezone, date as date_type
from decimal import Decimal, InvalidOperation
from typing_extensions import Self

from pydantic import BaseModel, Field, field_validator, ConfigDict

logger = logging.getLogger(__name__)

MS_PER_DAY = 1000 * 60 * 60 * 24


class Transaction(BaseModel):
    """
    A bank transaction as delivered by the bank-sync component.

    Transactions are read-only to subscription detection. ``date`` and ``amount``
    are optional so that incomplete rows from the source can still be represented
    and skipped individually instead of failing a whole page.
    A negative ``amount`` is a debit (money leaving the account).
    """
    transaction_id: str = Field(alias="transactionId")
    user_id: str = Field(alias="userId")
    account_id: Optional[str] = Field(default=None, alias="accountId")
    date: Optional[int] = None  # milliseconds since epoch
    amount: Optional[Decimal] = None
    currency: str = Field(default="USD")
    description: str = Field(default="")
    merchant_name_raw: Optional[str] = Field(default=None, alias="merchantNameRaw")
    pending: bool = Field(default=False)

    model_config = ConfigDict(
        populate_by_name=True,
        json_encoders={
            Decimal: str
        },
        frozen=True
    )

    @field_validator('date')
    @classmethod
    def check_positive_timestamp(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 0:
            raise ValueError("Timestamp must be a positive integer representing milliseconds since epoch")
        return v

    @field_validator('amount', mode='before')
    @classmethod
    def ensure_amount_is_decimal(cls, v: Any) -> Optional[Decimal]:
        if v is None or isinstance(v, Decimal):
            return v
        try:
            return Decimal(str(v))
        except (InvalidOperation, ValueError) as e:
            raise ValueError(f"Invalid amount value: {v}. Could not convert to Decimal.") from e

    @field_validator('currency', mode='before')
    @classmethod
    def normalize_currency(cls, v: Any) -> str:
        if v is None or str(v).strip() == "":
            return "USD"
        return str(v).strip().upper()

    @property
    def is_debit(self) -> bool:
        return self.amount is not None and self.amount < 0

    @property
    def charge_amount(self) -> Decimal:
        """Absolute value of the amount, the figure a subscription is billed at."""
        if self.amount is None:
            raise ValueError(f"Transaction {self.transaction_id} has no amount")
        return abs(self.amount)

    @property
    def day(self) -> date_type:
        """Calendar date (UTC) of the transaction."""
        if self.date is None:
            raise ValueError(f"Transaction {self.transaction_id} has no date")
        return datetime.fromtimestamp(self.date / 1000, tz=timezone.utc).date()

    @property
    def merchant_text(self) -> str:
        """The best raw merchant string available: the merchant name, else the description."""
        return (self.merchant_name_raw or self.description or "").strip()

    def to_dynamodb_item(self) -> Dict[str, Any]:
        """Convert to DynamoDB item format."""
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def from_dynamodb_item(cls, data: Dict[str, Any]) -> Self:
        """Create from DynamoDB item data."""
        converted_data = data.copy()
        if isinstance(converted_data.get('date'), Decimal):
            converted_data['date'] = int(converted_data['date'])
        if isinstance(converted_data.get('pending'), str):
            converted_data['pending'] = converted_data['pending'].lower() == 'true'
        return cls.model_validate(converted_data)


def timestamp_from_date(day: date_type) -> int:
    """Midnight UTC of ``day`` as milliseconds since epoch."""
    return int(datetime(day.year, day.month, day.day, tzinfo=timezone.utc).timestamp() * 1000)


def date_from_timestamp(ts: int) -> date_type:
    return datetime.fromtimestamp(ts / 1000, tz=timezone.utc).date()
