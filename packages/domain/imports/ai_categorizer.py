"""
AI Categorizer - LLM fallback for descriptions the matcher cannot resolve

Flow:
1. Cache lookup (key = upper-cased, trimmed description) → hit is free and
   recorded in the usage ledger as a zero-cost cached row
2. Cache miss → Claude call with the description only (no account data)
3. Parse {"entityName", "category"} from the reply, cache it, record tokens
   and cost in the ledger

Concurrent misses for the same description share one API call; the callers
that waited are recorded as cache hits.

Cost (Haiku 4.5): $1.00/MTok input, $5.00/MTok output, fixed at insert time.
"""
import asyncio
import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import anthropic
import structlog

from packages.common.config import Settings, get_settings
from packages.common.database import StorageContext
from packages.common.errors import AiCategorizationError
from packages.common.retry import is_http_429, with_rate_limit_retry

logger = structlog.get_logger()

COMMON_CATEGORIES = [
    "Groceries", "Dining", "Transport", "Utilities", "Entertainment",
    "Shopping", "Health", "Insurance", "Subscriptions", "Income", "Transfer",
    "Government", "Education", "Travel", "Rent", "Other",
]

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*\n?", re.MULTILINE)
_FENCE_CLOSE = re.compile(r"\n?```\s*$", re.MULTILINE)

_MTOK = Decimal(1_000_000)


@dataclass
class AiCacheEntry:
    description: str
    entity_name: str
    category: str
    cached_at: datetime


@dataclass
class AiUsage:
    input_tokens: int
    output_tokens: int
    cost_usd: Decimal


@dataclass
class AiUsageRecord:
    """Append-only usage ledger row"""
    description: str
    entity_name: Optional[str]
    category: Optional[str]
    input_tokens: int
    output_tokens: int
    cost_usd: Decimal
    cached: bool
    import_batch_id: Optional[str]
    created_at: datetime


@dataclass
class CategorizationOutcome:
    result: Optional[AiCacheEntry]
    usage: Optional[AiUsage] = None
    cached: bool = False


class UsageLedger(Protocol):
    async def record(self, record: AiUsageRecord, storage: StorageContext) -> None:
        ...


def cache_key(description: str) -> str:
    return description.upper().strip()


def strip_code_fences(text: str) -> str:
    """Remove ```json ... ``` wrapping Claude sometimes adds around JSON"""
    return _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", text.strip())).strip()


def _short(description: str) -> str:
    return description.strip()[:50]


class AiCategorizer:
    """
    Cached Claude categorizer.

    The cache lives for the lifetime of the instance; construct one per
    application and inject it where needed.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[Any] = None,
        ledger: Optional[UsageLedger] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            settings: Application settings (API key, model, pricing, retry policy)
            client: AsyncAnthropic-compatible client; built from CLAUDE_API_KEY when omitted
            ledger: Usage ledger; usage is not persisted when omitted
            sleep: Backoff sleep (injectable for tests)
        """
        self.settings = settings or get_settings()
        self._client = client
        self.ledger = ledger
        self._sleep = sleep
        self._cache: Dict[str, AiCacheEntry] = {}
        self._inflight: Dict[str, asyncio.Future] = {}

        self.input_cost_per_mtok = Decimal(str(self.settings.ai_input_cost_per_mtok))
        self.output_cost_per_mtok = Decimal(str(self.settings.ai_output_cost_per_mtok))

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def clear_cache(self):
        self._cache.clear()

    def calculate_cost(self, input_tokens: int, output_tokens: int) -> Decimal:
        return (
            Decimal(input_tokens) / _MTOK * self.input_cost_per_mtok
            + Decimal(output_tokens) / _MTOK * self.output_cost_per_mtok
        )

    def _get_client(self):
        if self._client is None:
            if not self.settings.claude_api_key:
                raise AiCategorizationError(
                    "CLAUDE_API_KEY not configured", AiCategorizationError.NO_API_KEY
                )
            # Retry policy is owned by with_rate_limit_retry
            self._client = anthropic.AsyncAnthropic(
                api_key=self.settings.claude_api_key, max_retries=0
            )
        return self._client

    async def categorize(
        self,
        description: str,
        import_batch_id: Optional[str] = None,
        storage: StorageContext = StorageContext(),
    ) -> CategorizationOutcome:
        """
        Suggest an entity name and category for a statement description.

        Args:
            description: Raw statement description
            import_batch_id: Ledger grouping id for the import session
            storage: Store the usage ledger row is written to

        Returns:
            CategorizationOutcome; result is None when the model returned no text

        Raises:
            AiCategorizationError: NO_API_KEY, INSUFFICIENT_CREDITS or API_ERROR
            The provider's rate-limit error once retries are exhausted
        """
        key = cache_key(description)

        cached = self._cache.get(key)
        if cached is not None:
            return await self._cache_hit(cached, description, import_batch_id, storage)

        inflight = self._inflight.get(key)
        if inflight is not None:
            logger.debug("ai_call_in_flight_joined", description=_short(description))
            entry = await asyncio.shield(inflight)
            if entry is None:
                return CategorizationOutcome(result=None)
            return await self._cache_hit(entry, description, import_batch_id, storage)

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            outcome = await self._call_api(key, description, import_batch_id, storage)
            future.set_result(outcome.result)
            return outcome
        except Exception as e:
            future.set_exception(e)
            future.exception()  # waiters re-raise; mark retrieved for the no-waiter case
            raise
        finally:
            self._inflight.pop(key, None)
            if not future.done():
                future.cancel()

    async def _cache_hit(
        self,
        entry: AiCacheEntry,
        description: str,
        import_batch_id: Optional[str],
        storage: StorageContext,
    ) -> CategorizationOutcome:
        logger.debug("ai_cache_hit",
                     description=_short(description),
                     entity_name=entry.entity_name)

        await self._record(AiUsageRecord(
            description=description.strip(),
            entity_name=entry.entity_name,
            category=entry.category,
            input_tokens=0,
            output_tokens=0,
            cost_usd=Decimal("0"),
            cached=True,
            import_batch_id=import_batch_id,
            created_at=datetime.now(timezone.utc),
        ), storage)

        return CategorizationOutcome(result=entry, cached=True)

    async def _call_api(
        self,
        key: str,
        description: str,
        import_batch_id: Optional[str],
        storage: StorageContext,
    ) -> CategorizationOutcome:
        client = self._get_client()

        logger.info("ai_cache_miss", description=_short(description))

        try:
            response = await with_rate_limit_retry(
                lambda: client.messages.create(
                    model=self.settings.ai_model,
                    max_tokens=self.settings.ai_max_tokens,
                    messages=[{"role": "user", "content": self._build_prompt(description)}],
                ),
                context="ai_categorize",
                max_retries=self.settings.ai_max_retries,
                base_delay=self.settings.ai_retry_base_delay,
                max_jitter=self.settings.ai_retry_max_jitter,
                sleep=self._sleep,
            )
        except Exception as e:
            logger.error("ai_call_failed", description=_short(description), error=str(e))
            error = self._classify_error(e)
            if error is e:
                raise
            raise error from e

        text = self._response_text(response)
        if not text:
            logger.warning("ai_empty_response", description=_short(description))
            return CategorizationOutcome(result=None)

        parsed = self._parse_response(text)
        entry = AiCacheEntry(
            description=description.strip(),
            entity_name=str(parsed.get("entityName") or ""),
            category=str(parsed.get("category") or ""),
            cached_at=datetime.now(timezone.utc),
        )
        self._cache[key] = entry

        input_tokens = response.usage.input_tokens
        output_tokens = response.usage.output_tokens
        cost = self.calculate_cost(input_tokens, output_tokens)

        await self._record(AiUsageRecord(
            description=entry.description,
            entity_name=entry.entity_name,
            category=entry.category,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=cost,
            cached=False,
            import_batch_id=import_batch_id,
            created_at=entry.cached_at,
        ), storage)

        logger.info("ai_categorization_complete",
                    description=_short(description),
                    entity_name=entry.entity_name,
                    category=entry.category,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    cost_usd=float(cost))

        return CategorizationOutcome(
            result=entry,
            usage=AiUsage(input_tokens=input_tokens, output_tokens=output_tokens, cost_usd=cost),
        )

    def _build_prompt(self, description: str) -> str:
        return f"""Given this bank transaction data, identify the merchant/entity name and a spending category.

Transaction data: {description.strip()}

Reply in JSON only: {{"entityName": "...", "category": "..."}}
Common categories: {", ".join(COMMON_CATEGORIES)}."""

    @staticmethod
    def _response_text(response) -> Optional[str]:
        content = getattr(response, "content", None) or []
        if not content or getattr(content[0], "type", None) != "text":
            return None
        return content[0].text

    @staticmethod
    def _parse_response(text: str) -> Dict[str, Any]:
        try:
            parsed = json.loads(strip_code_fences(text))
        except json.JSONDecodeError as e:
            raise AiCategorizationError(
                f"Invalid AI response format: {e}", AiCategorizationError.API_ERROR
            ) from e

        if not isinstance(parsed, dict):
            raise AiCategorizationError(
                "Invalid AI response format: expected a JSON object",
                AiCategorizationError.API_ERROR,
            )
        return parsed

    @staticmethod
    def _classify_error(error: Exception) -> Exception:
        """Map a provider error to AiCategorizationError; rate limits pass through"""
        if isinstance(error, AiCategorizationError) or is_http_429(error):
            return error

        status = getattr(error, "status_code", None)
        if status is not None:
            message = getattr(error, "message", None) or str(error) or "Unknown API error"
            if status == 400 and "credit balance" in message.lower():
                return AiCategorizationError(
                    "Anthropic API credit balance too low. "
                    "Please add credits at https://console.anthropic.com/settings/plans",
                    AiCategorizationError.INSUFFICIENT_CREDITS,
                )
            return AiCategorizationError(
                f"Anthropic API error: {message}", AiCategorizationError.API_ERROR
            )

        return AiCategorizationError(
            f"Failed to categorize: {error or 'Unknown error'}",
            AiCategorizationError.API_ERROR,
        )

    async def _record(self, record: AiUsageRecord, storage: StorageContext):
        if self.ledger is not None:
            await self.ledger.record(record, storage)
