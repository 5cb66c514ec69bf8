"""
Merchant normalizer for subscription detection.

Turns noisy bank descriptions ("SQ *BLUE BOTTLE 0423", "NETFLIX.COM*1234")
into a stable merchant key ("BLUE BOTTLE", "NETFLIX").

Resolution order for a cleaned name:
    1. alias in the user's namespace
    2. alias in the global namespace
    3. fuzzy match against the user's known keys (Levenshtein or token Jaccard)
    4. the cleaned name itself, as a new key

Every resolution is recorded in the alias table: first sight creates an
unverified alias, later sightings increment its usage count.
"""

import re
import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set

from rapidfuzz.distance import Levenshtein

from models.merchant_alias import MerchantAlias, AliasSource, GLOBAL_NAMESPACE
from models.transaction import Transaction
from services.subscription_detection.config import NormalizerConfig

logger = logging.getLogger(__name__)

UNKNOWN_MERCHANT = "UNKNOWN"

# Card processor and payment-rail prefixes
_PREFIX_RE = re.compile(
    r"^(?:(?:POS(?:\s+(?:PURCHASE|DEBIT))?|DEBIT\s+CARD\s+PURCHASE|CARD\s+PURCHASE|CHECKCARD|PURCHASE|"
    r"RECURRING(?:\s+PAYMENT)?|ACH(?:\s+(?:DEBIT|PMT))?|VISA|DD)\s+"
    r"|(?:SQ|TST|PAYPAL|PP|SP|IC)\s*\*\s*)"
)
# *1234, #5678, *ABC123 style references
_REFERENCE_RE = re.compile(r'[*#]\s*[A-Z0-9]*\d[A-Z0-9]*')
_DOMAIN_RE = re.compile(r'\.(?:COM|NET|ORG|IO|CO\.UK|CO)\b')
_DATE_RE = re.compile(r'\b\d{1,2}[/.-]\d{1,2}(?:[/.-]\d{2,4})?\b')
# Pure digit tokens and terminal codes with four or more digits
_NUMERIC_TOKEN_RE = re.compile(r'\b(?:\d+|[A-Z]*\d{4,}[A-Z0-9]*)\b')
_COMPANY_SUFFIX_RE = re.compile(r'\s+(?:INC|LLC|LTD|LIMITED|CORP|CORPORATION|COMPANY|CO|PLC|GMBH)\.?$')
_NON_ALNUM_RE = re.compile(r'[^A-Z0-9&]+')
_WHITESPACE_RE = re.compile(r'\s+')

_LOCATION_CODES = frozenset({
    'AL', 'AK', 'AZ', 'AR', 'CA', 'CO', 'CT', 'DE', 'FL', 'GA', 'HI', 'ID', 'IL', 'IN', 'IA',
    'KS', 'KY', 'LA', 'ME', 'MD', 'MA', 'MI', 'MN', 'MS', 'MO', 'MT', 'NE', 'NV', 'NH', 'NJ',
    'NM', 'NY', 'NC', 'ND', 'OH', 'OK', 'OR', 'PA', 'RI', 'SC', 'SD', 'TN', 'TX', 'UT', 'VT',
    'VA', 'WA', 'WV', 'WI', 'WY', 'DC', 'US', 'USA', 'GB', 'GBR', 'UK', 'IE',
})


def _strip_location(text: str) -> str:
    """
    Drop a trailing "CITY ST" fragment.

    Bank feeds pad the merchant and the location with runs of spaces, so when the
    text splits on such a run and the tail ends in a location code, the whole
    tail goes. Otherwise only a lone trailing location code is removed.
    """
    segments = [s for s in re.split(r'\s{2,}', text) if s]
    if len(segments) > 1 and segments[-1].split()[-1] in _LOCATION_CODES:
        return ' '.join(segments[:-1])

    tokens = text.split()
    if len(tokens) > 1 and tokens[-1] in _LOCATION_CODES:
        return ' '.join(tokens[:-1])
    return text


def clean_merchant_text(raw: Optional[str]) -> str:
    """
    Strip processor noise from a raw merchant string and upper-case it.

    Pure and deterministic; returns ``UNKNOWN`` when nothing usable is left.
    """
    if not raw or not raw.strip():
        return UNKNOWN_MERCHANT

    text = raw.upper().strip()

    previous = None
    while previous != text:
        previous = text
        text = _PREFIX_RE.sub('', text).strip()

    text = _REFERENCE_RE.sub(' ', text)
    text = _DOMAIN_RE.sub(' ', text)
    text = _DATE_RE.sub(' ', text)
    text = _strip_location(text)
    text = _NUMERIC_TOKEN_RE.sub(' ', text)
    text = _WHITESPACE_RE.sub(' ', text).strip()

    previous = None
    while previous != text:
        previous = text
        text = _COMPANY_SUFFIX_RE.sub('', text).strip()

    text = _NON_ALNUM_RE.sub(' ', text)
    text = _WHITESPACE_RE.sub(' ', text).strip()

    if not text:
        # Everything was noise; fall back to the raw alphanumerics
        text = _WHITESPACE_RE.sub(' ', _NON_ALNUM_RE.sub(' ', raw.upper())).strip()
    return text or UNKNOWN_MERCHANT


def token_jaccard(a: str, b: str) -> float:
    """Jaccard similarity of the whitespace token sets of two keys."""
    tokens_a = set(a.split())
    tokens_b = set(b.split())
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


@dataclass(frozen=True)
class MerchantMatch:
    """The merchant key a raw string resolved to, and how sure the resolution is."""
    key: str
    confidence: float
    alias_hit: bool
    source: AliasSource = AliasSource.HEURISTIC
    alias_namespace: Optional[str] = None
    suggested_category: Optional[str] = None


@dataclass
class ResolutionContext:
    """
    Per-user state shared by the resolutions of one run.

    ``user_aliases`` is keyed by original name. ``known_keys`` grows as new keys
    are minted so that later names in the same run can fuzzy-match them.
    """
    user_id: str
    user_aliases: Dict[str, MerchantAlias] = field(default_factory=dict)
    known_keys: Set[str] = field(default_factory=set)
    global_aliases: Dict[str, Optional[MerchantAlias]] = field(default_factory=dict)


class MerchantResolver(ABC):
    """Strategy that maps a cleaned merchant name to a merchant key."""

    @abstractmethod
    def resolve(self, cleaned_name: str, context: ResolutionContext) -> MerchantMatch:
        """Resolve a cleaned name; must not write to storage."""
        raise NotImplementedError


class AliasMerchantResolver(MerchantResolver):
    """
    Alias-table and heuristic resolver. Always available.
    """

    def __init__(self, alias_repository, config: Optional[NormalizerConfig] = None):
        self.alias_repository = alias_repository
        self.config = config or NormalizerConfig()

    def resolve(self, cleaned_name: str, context: ResolutionContext) -> MerchantMatch:
        alias = context.user_aliases.get(cleaned_name)
        if alias:
            return self._alias_match(alias)

        if cleaned_name not in context.global_aliases:
            context.global_aliases[cleaned_name] = self.alias_repository.get(GLOBAL_NAMESPACE, cleaned_name)
        global_alias = context.global_aliases[cleaned_name]
        if global_alias:
            return self._alias_match(global_alias)

        fuzzy_key = self._fuzzy_match(cleaned_name, context.known_keys)
        if fuzzy_key:
            logger.debug(f"Fuzzy matched merchant '{cleaned_name}' to key '{fuzzy_key}'")
            return MerchantMatch(
                key=fuzzy_key,
                confidence=self.config.fuzzy_match_confidence,
                alias_hit=False,
                source=AliasSource.FUZZY
            )

        return MerchantMatch(
            key=cleaned_name,
            confidence=self.config.new_key_confidence,
            alias_hit=False,
            source=AliasSource.HEURISTIC
        )

    def _alias_match(self, alias: MerchantAlias) -> MerchantMatch:
        # An unverified alias reports the confidence it was created with, so a
        # re-run over the same data resolves with the same confidence.
        confidence = (
            self.config.verified_alias_confidence if alias.verified
            else float(alias.confidence)
        )
        return MerchantMatch(
            key=alias.normalized_name,
            confidence=confidence,
            alias_hit=True,
            source=alias.source,
            alias_namespace=alias.namespace,
            suggested_category=alias.suggested_category
        )

    def _fuzzy_match(self, cleaned_name: str, known_keys: Iterable[str]) -> Optional[str]:
        """
        Closest known key within the edit-distance or Jaccard threshold.

        Candidates are ranked by (distance, -jaccard, key) so the choice does
        not depend on set iteration order.
        """
        if cleaned_name in known_keys:
            return cleaned_name
        if len(cleaned_name) < self.config.min_fuzzy_key_length:
            return None

        best = None
        for key in known_keys:
            if len(key) < self.config.min_fuzzy_key_length:
                continue
            distance = Levenshtein.distance(cleaned_name, key, score_cutoff=self.config.max_edit_distance)
            jaccard = token_jaccard(cleaned_name, key)
            if distance > self.config.max_edit_distance and jaccard < self.config.min_token_jaccard:
                continue
            rank = (distance, -jaccard, key)
            if best is None or rank < best:
                best = rank
        return best[2] if best else None


@dataclass(frozen=True)
class EnricherSuggestion:
    """What the merchant category enricher proposes for a cleaned name."""
    normalized_name: str
    suggested_category: Optional[str] = None
    confidence: float = 0.8


MerchantEnricher = Callable[[str], Optional[EnricherSuggestion]]


class EnricherMerchantResolver(MerchantResolver):
    """
    Consults the optional merchant enricher when the alias table has no answer.

    The enricher call is bounded by ``enricher_timeout_seconds``; a timeout, an
    error or an empty answer falls back to the alias resolver's result.
    """

    def __init__(
        self,
        enricher: MerchantEnricher,
        fallback: MerchantResolver,
        config: Optional[NormalizerConfig] = None
    ):
        self.enricher = enricher
        self.fallback = fallback
        self.config = config or NormalizerConfig()
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="merchant-enricher")

    def resolve(self, cleaned_name: str, context: ResolutionContext) -> MerchantMatch:
        fallback_match = self.fallback.resolve(cleaned_name, context)
        if fallback_match.alias_hit:
            return fallback_match

        future = self._executor.submit(self.enricher, cleaned_name)
        try:
            suggestion = future.result(timeout=self.config.enricher_timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            logger.warning(
                f"Merchant enricher timed out after {self.config.enricher_timeout_seconds}s "
                f"for '{cleaned_name}', using heuristic key"
            )
            return fallback_match
        except Exception as e:
            logger.warning(f"Merchant enricher failed for '{cleaned_name}': {str(e)}, using heuristic key")
            return fallback_match

        if not suggestion or not suggestion.normalized_name:
            return fallback_match

        key = clean_merchant_text(suggestion.normalized_name)
        if key == UNKNOWN_MERCHANT:
            return fallback_match
        return MerchantMatch(
            key=key,
            confidence=max(0.0, min(1.0, suggestion.confidence)),
            alias_hit=False,
            source=AliasSource.ENRICHER,
            suggested_category=suggestion.suggested_category
        )

    def shutdown(self):
        self._executor.shutdown(wait=False)


class MerchantNormalizer:
    """
    Canonicalizes raw merchant strings into normalized merchant keys and keeps
    the alias table up to date.
    """

    def __init__(
        self,
        alias_repository,
        resolver: Optional[MerchantResolver] = None,
        config: Optional[NormalizerConfig] = None
    ):
        """
        Initialize the merchant normalizer.

        Args:
            alias_repository: MerchantAliasRepository used for lookups and usage recording
            resolver: Resolution strategy (defaults to AliasMerchantResolver)
            config: Normalizer config (creates default if None)
        """
        self.alias_repository = alias_repository
        self.config = config or NormalizerConfig()
        self.resolver = resolver or AliasMerchantResolver(alias_repository, self.config)

    def new_context(self, user_id: str, known_keys: Iterable[str] = ()) -> ResolutionContext:
        """Load the user's aliases once for a run."""
        user_aliases = {a.original_name: a for a in self.alias_repository.list(user_id)}
        keys = set(known_keys)
        keys.update(a.normalized_name for a in user_aliases.values())
        return ResolutionContext(user_id=user_id, user_aliases=user_aliases, known_keys=keys)

    def normalize(
        self,
        user_id: str,
        raw_description: Optional[str],
        merchant_name_raw: Optional[str] = None,
        context: Optional[ResolutionContext] = None,
        used_at: Optional[int] = None
    ) -> MerchantMatch:
        """
        Resolve one raw merchant string and record the alias usage.

        ``merchant_name_raw`` wins over the description when present. ``used_at``
        is the date of the sighting (defaults to now).
        """
        context = context or self.new_context(user_id)
        cleaned = clean_merchant_text(merchant_name_raw or raw_description)
        match = self.resolver.resolve(cleaned, context)
        self._record(context, cleaned, match, increment=1, used_at=used_at)
        return match

    def normalize_transactions(
        self,
        user_id: str,
        transactions: List[Transaction],
        known_keys: Iterable[str] = (),
        record: bool = True
    ) -> Dict[str, MerchantMatch]:
        """
        Resolve the merchant of every transaction.

        Distinct cleaned names are resolved once each, in sorted order, so the
        outcome does not depend on the order of ``transactions``. Alias usage is
        incremented by the number of transactions dated after the alias's
        ``last_used_at``, so a re-run over the same transactions counts nothing.
        With ``record=False`` the alias table is only read.

        Returns:
            Mapping of transaction id to MerchantMatch
        """
        context = self.new_context(user_id, known_keys)

        cleaned_by_txn = {t.transaction_id: clean_merchant_text(t.merchant_text) for t in transactions}
        dates_by_cleaned: Dict[str, List[int]] = {}
        for txn in transactions:
            dates_by_cleaned.setdefault(cleaned_by_txn[txn.transaction_id], []).append(txn.date or 0)

        resolved: Dict[str, MerchantMatch] = {}
        for cleaned in sorted(dates_by_cleaned):
            match = self.resolver.resolve(cleaned, context)
            context.known_keys.add(match.key)
            if record:
                stored = self._stored_alias(context, cleaned, match)
                unseen = [d for d in dates_by_cleaned[cleaned] if stored is None or d > stored.last_used_at]
                if unseen:
                    self._record(context, cleaned, match, increment=len(unseen), used_at=max(unseen))
            resolved[cleaned] = match

        logger.debug(
            f"Normalized {len(transactions)} transactions into {len(set(m.key for m in resolved.values()))} "
            f"merchant keys for user {user_id}"
        )
        return {txn_id: resolved[cleaned] for txn_id, cleaned in cleaned_by_txn.items()}

    @staticmethod
    def _stored_alias(context: ResolutionContext, cleaned: str, match: MerchantMatch) -> Optional[MerchantAlias]:
        """The alias a recording would increment, if it exists already."""
        if match.alias_namespace == GLOBAL_NAMESPACE:
            return context.global_aliases.get(cleaned)
        return context.user_aliases.get(cleaned)

    def _record(
        self,
        context: ResolutionContext,
        cleaned: str,
        match: MerchantMatch,
        increment: int,
        used_at: Optional[int] = None
    ):
        context.known_keys.add(match.key)
        sighting = {'lastUsedAt': used_at} if used_at is not None else {}

        if match.alias_hit and match.alias_namespace:
            stored = self.alias_repository.record_usage(
                MerchantAlias(
                    namespace=match.alias_namespace,
                    originalName=cleaned,
                    normalizedName=match.key,
                    source=match.source,
                    **sighting
                ),
                increment
            )
        else:
            stored = self.alias_repository.record_usage(
                MerchantAlias(
                    namespace=context.user_id,
                    originalName=cleaned,
                    normalizedName=match.key,
                    suggestedCategory=match.suggested_category,
                    confidence=match.confidence,
                    verified=False,
                    source=match.source,
                    **sighting
                ),
                increment
            )
        if stored.namespace == context.user_id:
            context.user_aliases[cleaned] = stored
        elif stored.namespace == GLOBAL_NAMESPACE:
            context.global_aliases[cleaned] = stored
