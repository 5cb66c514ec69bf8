"""
Merchant Alias Models.

Aliases map a cleaned raw merchant string to a canonical merchant key. The table
is shared with the merchant category enricher: detection writes unverified
aliases on first sight and bumps their usage, the enricher may later verify an
alias and attach a suggested category.
"""

import logging
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field, field_validator, ConfigDict
from typing_extensions import Self

logger = logging.getLogger(__name__)

GLOBAL_NAMESPACE = "global"


def _now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


class AliasSource(str, Enum):
    """Where an alias mapping came from."""
    HEURISTIC = "heuristic"  # cleaned string used as-is
    FUZZY = "fuzzy"          # matched to an existing key by similarity
    ENRICHER = "enricher"    # suggested by the AI/rule enricher
    USER = "user"            # user override


class MerchantAlias(BaseModel):
    """
    Maps an original (cleaned) merchant name to its normalized merchant key.

    (namespace, original_name) is unique. ``usage_count`` only ever grows and
    ``last_used_at`` is the date of the newest transaction it counts.
    """
    namespace: str = Field(default=GLOBAL_NAMESPACE)
    original_name: str = Field(alias="originalName")
    normalized_name: str = Field(alias="normalizedName")
    suggested_category: Optional[str] = Field(default=None, alias="suggestedCategory")
    confidence: Decimal = Field(default=Decimal("0.5"), ge=0, le=1)
    verified: bool = False
    usage_count: int = Field(default=1, alias="usageCount", ge=0)
    source: AliasSource = Field(default=AliasSource.HEURISTIC)
    last_used_at: int = Field(default_factory=_now_ms, alias="lastUsedAt")
    created_at: int = Field(default_factory=_now_ms, alias="createdAt")

    model_config = ConfigDict(
        populate_by_name=True,
        json_encoders={
            Decimal: str
        },
        use_enum_values=False
    )

    @field_validator('confidence', mode='before')
    @classmethod
    def ensure_confidence_is_decimal(cls, v: Any) -> Decimal:
        if not isinstance(v, Decimal):
            return Decimal(str(v))
        return v

    @field_validator('original_name', 'normalized_name')
    @classmethod
    def check_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Merchant names must not be blank")
        return v

    def to_dynamodb_item(self) -> Dict[str, Any]:
        """Convert to DynamoDB item format."""
        data = self.model_dump(by_alias=True, exclude_none=True)
        data['source'] = self.source.value
        # String booleans keep the attribute usable as a GSI key
        data['verified'] = 'true' if self.verified else 'false'
        return data

    @classmethod
    def from_dynamodb_item(cls, data: Dict[str, Any]) -> Self:
        """Create from DynamoDB item data."""
        converted_data = data.copy()

        for field in ('usageCount', 'lastUsedAt', 'createdAt'):
            if isinstance(converted_data.get(field), Decimal):
                converted_data[field] = int(converted_data[field])

        if isinstance(converted_data.get('verified'), str):
            converted_data['verified'] = converted_data['verified'].lower() == 'true'

        if isinstance(converted_data.get('source'), str):
            try:
                converted_data['source'] = AliasSource(converted_data['source'])
            except ValueError:
                logger.warning(f"Invalid AliasSource value: {converted_data['source']}")
                converted_data['source'] = AliasSource.HEURISTIC

        return cls.model_validate(converted_data)
