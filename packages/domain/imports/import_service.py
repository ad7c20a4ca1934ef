"""
Import Service - orchestrates statement imports with pollable progress

Process flow (one background task per session):
1. deduplicating: drop rows whose checksum is already stored for the account
2. matching: resolve entities with the deterministic matcher
3. categorizing: ask the AI categorizer about rows the matcher missed
4. completed: rows bucketed into matched / uncertain / failed / skipped

Execute flow:
1. writing: each confirmed row is written to Notion by a small pool of
   cooperative workers; a failed row never stops the others. A checksum that
   is already stored, or being written by another worker or session, is skipped
2. completed: {imported, failed, skipped}

Both operations return a session id immediately. All failures become visible
through the progress store; nothing escapes the background task.
"""
import asyncio
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Sequence, Set, Tuple
from uuid import uuid4

import structlog
from prometheus_client import Counter

from packages.common.config import Settings, get_settings
from packages.common.database import DatabaseRouter, StorageContext
from packages.common.errors import AiCategorizationError, format_import_error
from packages.common.notion_client import notion_page_url
from packages.domain.imports.ai_categorizer import AiCategorizer
from packages.domain.imports.checksum import deduplicate
from packages.domain.imports.entity_matcher import find_in_lookup, match_entity
from packages.domain.imports.progress_store import ProgressStore
from packages.domain.imports.record_store import RecordStore
from packages.domain.imports.repository import EntityRepository, TransactionRepository
from packages.domain.imports.schemas import (
    AiUsageStats,
    BatchItem,
    BatchItemStatus,
    ConfirmedTransaction,
    CreateEntityOutput,
    EntityMatch,
    ExecuteImportOutput,
    ImportResult,
    ImportSession,
    ImportStep,
    ImportWarning,
    ImportWarningType,
    MatchType,
    ParsedTransaction,
    ProcessImportOutput,
    ProcessedTransaction,
    SessionStatus,
    TransactionStatus,
)

logger = structlog.get_logger()

IMPORT_SESSIONS = Counter(
    "import_sessions_total",
    "Import sessions by operation and outcome",
    ["operation", "status"],
)
IMPORT_TRANSACTIONS = Counter(
    "import_transactions_total",
    "Processed import rows by bucket",
    ["status"],
)
AI_COST_USD = Counter(
    "import_ai_cost_usd_total",
    "AI categorization spend in USD",
)

BATCH_WINDOW = 5
NO_MATCH_ERROR = "No entity match found"
AI_UNAVAILABLE_ERROR = "AI categorization unavailable"

_MATCHER_TYPES = {MatchType.ALIAS, MatchType.EXACT, MatchType.PREFIX, MatchType.CONTAINS}

_WARNING_TYPES = {
    AiCategorizationError.NO_API_KEY: ImportWarningType.AI_CATEGORIZATION_UNAVAILABLE,
    AiCategorizationError.INSUFFICIENT_CREDITS: ImportWarningType.AI_CATEGORIZATION_UNAVAILABLE,
    AiCategorizationError.API_ERROR: ImportWarningType.AI_API_ERROR,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _short(description: str) -> str:
    return description[:50]


def derive_status(entity: EntityMatch, confidence_threshold: float) -> TransactionStatus:
    """Review bucket for a resolved (or unresolved) entity"""
    if entity.match_type == MatchType.NONE:
        return TransactionStatus.FAILED
    if entity.confidence is not None and entity.confidence < confidence_threshold:
        return TransactionStatus.UNCERTAIN
    if entity.match_type in _MATCHER_TYPES:
        return TransactionStatus.MATCHED
    return TransactionStatus.UNCERTAIN


class SessionProgress:
    """Running counters for one session, published to the progress store"""

    def __init__(self, store: ProgressStore, session_id: str):
        self.store = store
        self.session_id = session_id
        self.processed = 0
        self.batch: Deque[BatchItem] = deque(maxlen=BATCH_WINDOW)
        self.errors: List[str] = []

    def publish(self, **extra):
        self.store.update(
            self.session_id,
            processed_count=self.processed,
            current_batch=[item.model_copy() for item in self.batch],
            errors=list(self.errors),
            **extra,
        )

    def advance(self, count: int = 1, **extra):
        self.processed += count
        self.publish(**extra)

    def start_item(self, description: str) -> BatchItem:
        item = BatchItem(description=_short(description))
        self.batch.append(item)
        self.publish()
        return item

    def finish_item(self, item: BatchItem, error: Optional[str] = None):
        item.status = BatchItemStatus.FAILED if error else BatchItemStatus.SUCCESS
        item.error = error
        self.advance()

    def add_error(self, description: str, error: BaseException):
        self.errors.append(format_import_error(error, description).as_line(_short(description)))


class ImportService:
    """
    Import orchestrator.

    Collaborators are injected so tests can swap the AI client, the Notion
    client and the databases.
    """

    def __init__(
        self,
        progress: ProgressStore,
        categorizer: AiCategorizer,
        record_store: RecordStore,
        db: DatabaseRouter,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.progress = progress
        self.categorizer = categorizer
        self.record_store = record_store
        self.db = db
        self.settings = settings or get_settings()
        self._sleep = sleep
        self.entities = EntityRepository()
        self.transactions = TransactionRepository(self.settings.checksum_query_chunk)
        self._tasks: Set[asyncio.Task] = set()
        # (env, account, checksum) keys with a write in progress, across sessions
        self._claimed: Set[Tuple[str, str, str]] = set()

    # ---- Public operations -------------------------------------------------

    def start_process_import(
        self,
        transactions: Sequence[ParsedTransaction],
        account: str,
        storage: StorageContext = StorageContext(),
    ) -> str:
        """
        Create a processing session and start it in the background.

        Must be called from a running event loop.

        Returns:
            Session id for progress polling
        """
        session_id = self._create_session(ImportStep.DEDUPLICATING, len(transactions))
        logger.info("import_started",
                    operation="process",
                    session_id=session_id,
                    account=account,
                    total=len(transactions),
                    env=storage.label)
        self._spawn(
            "process",
            session_id,
            self._process(session_id, list(transactions), account, storage),
        )
        return session_id

    def start_execute_import(
        self,
        transactions: Sequence[ConfirmedTransaction],
        storage: StorageContext = StorageContext(),
    ) -> str:
        """Create a writing session and start it in the background"""
        session_id = self._create_session(ImportStep.WRITING, len(transactions))
        logger.info("import_started",
                    operation="execute",
                    session_id=session_id,
                    total=len(transactions),
                    env=storage.label)
        self._spawn(
            "execute",
            session_id,
            self._execute(session_id, list(transactions), storage),
        )
        return session_id

    def get_progress(self, session_id: str) -> Optional[ImportSession]:
        return self.progress.get(session_id)

    async def create_entity(
        self,
        name: str,
        storage: StorageContext = StorageContext(),
    ) -> CreateEntityOutput:
        """Create an entity in Notion and the local lookup table"""
        return await self.record_store.create_entity(name, storage)

    async def drain(self):
        """Wait for all running sessions to finish"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ---- Session plumbing ---------------------------------------------------

    def _create_session(self, step: ImportStep, total: int) -> str:
        session_id = str(uuid4())
        self.progress.create(ImportSession(
            session_id=session_id,
            current_step=step,
            total_transactions=total,
            started_at=_now(),
        ))
        return session_id

    def _spawn(self, operation: str, session_id: str, work: Awaitable[object]):
        task = asyncio.create_task(
            self._run(operation, session_id, work),
            name=f"import-{operation}-{session_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        IMPORT_SESSIONS.labels(operation=operation, status="started").inc()

    async def _run(self, operation: str, session_id: str, work: Awaitable[object]):
        try:
            result = await work
        except Exception as e:
            logger.error("import_session_failed",
                         operation=operation,
                         session_id=session_id,
                         error=str(e),
                         exc_info=True)
            self.progress.update(
                session_id,
                status=SessionStatus.FAILED,
                errors=[f"System: {format_import_error(e).as_line()}"],
                completed_at=_now(),
            )
            IMPORT_SESSIONS.labels(operation=operation, status="failed").inc()
            return

        self.progress.update(
            session_id,
            status=SessionStatus.COMPLETED,
            current_step=ImportStep.DONE,
            result=result,
            completed_at=_now(),
        )
        IMPORT_SESSIONS.labels(operation=operation, status="completed").inc()

    # ---- Process ----------------------------------------------------------------

    async def _process(
        self,
        session_id: str,
        transactions: List[ParsedTransaction],
        account: str,
        storage: StorageContext,
    ) -> ProcessImportOutput:
        import_batch_id = f"import-{session_id}"
        progress = SessionProgress(self.progress, session_id)

        async with self.db.session(storage) as db:
            existing = await self.transactions.find_existing_checksums(
                db, account, [t.checksum for t in transactions]
            )
            entity_lookup = await self.entities.load_entity_lookup(db)
            aliases = await self.entities.load_aliases(db)

        dedup = deduplicate(transactions, existing)
        logger.info("import_deduplicated",
                    session_id=session_id,
                    new=len(dedup.new),
                    skipped=len(dedup.skipped))

        output = ProcessImportOutput(skipped=dedup.skipped)
        progress.advance(len(dedup.skipped), current_step=ImportStep.MATCHING)

        unresolved = await self._match(dedup.new, entity_lookup, aliases, output, progress)

        progress.publish(current_step=ImportStep.CATEGORIZING)
        await self._categorize(
            unresolved, entity_lookup, import_batch_id, storage, output, progress
        )

        for status in TransactionStatus:
            count = len(getattr(output, status.value))
            if count:
                IMPORT_TRANSACTIONS.labels(status=status.value).inc(count)

        logger.info("import_processed",
                    session_id=session_id,
                    matched=len(output.matched),
                    uncertain=len(output.uncertain),
                    failed=len(output.failed),
                    skipped=len(output.skipped),
                    ai_api_calls=output.ai_usage.api_calls if output.ai_usage else 0,
                    ai_cost_usd=float(output.ai_usage.total_cost_usd) if output.ai_usage else 0.0)
        return output

    def _bucket(self, output: ProcessImportOutput, row: ProcessedTransaction):
        getattr(output, row.status.value).append(row)

    def _resolved(
        self,
        transaction: ParsedTransaction,
        entity: EntityMatch,
        error: Optional[str] = None,
    ) -> ProcessedTransaction:
        return ProcessedTransaction(
            **transaction.model_dump(),
            entity=entity,
            status=derive_status(entity, self.settings.match_confidence_threshold),
            error=error,
        )

    async def _match(
        self,
        transactions: List[ParsedTransaction],
        entity_lookup: Dict[str, str],
        aliases: Dict[str, str],
        output: ProcessImportOutput,
        progress: SessionProgress,
    ) -> List[ParsedTransaction]:
        """Run the matcher in chunks; returns rows left for the AI"""
        unresolved: List[ParsedTransaction] = []
        chunk_size = max(1, self.settings.import_batch_size)

        for start in range(0, len(transactions), chunk_size):
            for transaction in transactions[start:start + chunk_size]:
                match = match_entity(
                    transaction.description,
                    entity_lookup,
                    aliases,
                    min_contains_length=self.settings.match_min_contains_length,
                )
                if match is None:
                    unresolved.append(transaction)
                    continue

                item = progress.start_item(transaction.description)
                self._bucket(output, self._resolved(transaction, EntityMatch(
                    entity_id=match.entity_id,
                    entity_name=match.entity_name,
                    entity_url=notion_page_url(match.entity_id),
                    match_type=match.match_type,
                )))
                progress.finish_item(item)

            # yield between chunks so other sessions keep moving
            await asyncio.sleep(0)

        return unresolved

    async def _categorize(
        self,
        transactions: List[ParsedTransaction],
        entity_lookup: Dict[str, str],
        import_batch_id: str,
        storage: StorageContext,
        output: ProcessImportOutput,
        progress: SessionProgress,
    ):
        usage = AiUsageStats()
        ai_failures: Dict[ImportWarningType, List[AiCategorizationError]] = defaultdict(list)

        for transaction in transactions:
            item = progress.start_item(transaction.description)
            ai_error: Optional[AiCategorizationError] = None
            suggestion = None

            try:
                outcome = await self.categorizer.categorize(
                    transaction.description, import_batch_id, storage
                )
                suggestion = outcome.result
                if outcome.usage is not None:
                    usage.api_calls += 1
                    usage.total_input_tokens += outcome.usage.input_tokens
                    usage.total_output_tokens += outcome.usage.output_tokens
                    usage.total_cost_usd += outcome.usage.cost_usd
                elif outcome.cached:
                    usage.cache_hits += 1
            except AiCategorizationError as e:
                ai_error = e
            except Exception as e:
                ai_error = AiCategorizationError(str(e), AiCategorizationError.API_ERROR)

            if ai_error is not None:
                ai_failures[_WARNING_TYPES[ai_error.code]].append(ai_error)

            if suggestion is not None and suggestion.entity_name:
                known = find_in_lookup(suggestion.entity_name, entity_lookup)
                if known:
                    known_name, known_id = known
                    entity = EntityMatch(
                        entity_id=known_id,
                        entity_name=known_name,
                        entity_url=notion_page_url(known_id),
                        match_type=MatchType.AI,
                        confidence=self.settings.ai_known_entity_confidence,
                    )
                else:
                    entity = EntityMatch(
                        entity_name=suggestion.entity_name,
                        match_type=MatchType.AI,
                        confidence=self.settings.ai_new_entity_confidence,
                    )
                self._bucket(output, self._resolved(transaction, entity))
                progress.finish_item(item)
                continue

            message = AI_UNAVAILABLE_ERROR if ai_error else NO_MATCH_ERROR
            self._bucket(output, self._resolved(
                transaction, EntityMatch(match_type=MatchType.NONE), error=message
            ))
            if ai_error:
                progress.add_error(transaction.description, ai_error)
            else:
                progress.errors.append(f"{_short(transaction.description)}: {NO_MATCH_ERROR}")
            progress.finish_item(item, error=message)

        for warning_type, errors in ai_failures.items():
            last = errors[-1]
            output.warnings.append(ImportWarning(
                type=warning_type,
                message=last.message,
                affected_count=len(errors),
                details=format_import_error(last).suggestion,
            ))
            logger.warning("ai_categorization_degraded",
                           warning=warning_type.value,
                           code=last.code,
                           affected=len(errors))

        if usage.api_calls or usage.cache_hits:
            usage.total_tokens = usage.total_input_tokens + usage.total_output_tokens
            if usage.api_calls:
                usage.avg_cost_per_call = usage.total_cost_usd / usage.api_calls
            output.ai_usage = usage
            if usage.total_cost_usd > 0:
                AI_COST_USD.inc(float(usage.total_cost_usd))

    # ---- Execute ----------------------------------------------------------------

    async def _execute(
        self,
        session_id: str,
        transactions: List[ConfirmedTransaction],
        storage: StorageContext,
    ) -> ExecuteImportOutput:
        progress = SessionProgress(self.progress, session_id)
        failures: Dict[int, ImportResult] = {}
        counts = {"imported": 0, "skipped": 0}
        pending = iter(enumerate(transactions))

        async def worker():
            # workers share one iterator; each row is taken exactly once
            for index, transaction in pending:
                item = progress.start_item(transaction.description)
                key = (storage.label, transaction.account, transaction.checksum)

                # claimed before the first await so a concurrent copy sees it
                if key in self._claimed:
                    counts["skipped"] += 1
                    logger.debug("transaction_write_in_progress",
                                 session_id=session_id,
                                 index=index + 1,
                                 description=_short(transaction.description))
                    progress.finish_item(item)
                    continue
                self._claimed.add(key)

                error = None
                try:
                    if await self.record_store.is_stored(transaction, storage):
                        counts["skipped"] += 1
                        logger.debug("transaction_already_stored",
                                     session_id=session_id,
                                     index=index + 1,
                                     description=_short(transaction.description))
                        progress.finish_item(item)
                        continue

                    page_id = await self.record_store.write_transaction(transaction, storage)
                    counts["imported"] += 1
                    logger.debug("transaction_imported",
                                 session_id=session_id,
                                 index=index + 1,
                                 total=len(transactions),
                                 page_id=page_id)
                except Exception as e:
                    error = str(e) or type(e).__name__
                    logger.error("transaction_write_failed",
                                 session_id=session_id,
                                 index=index + 1,
                                 total=len(transactions),
                                 description=_short(transaction.description),
                                 error=error)
                    failures[index] = ImportResult(
                        transaction=transaction, success=False, error=error
                    )
                    progress.add_error(transaction.description, e)
                finally:
                    self._claimed.discard(key)

                progress.finish_item(item, error=error)
                await self._sleep(self.settings.import_write_delay)

        workers = max(1, self.settings.import_write_concurrency)
        await asyncio.gather(*(worker() for _ in range(workers)))

        result = ExecuteImportOutput(
            imported=counts["imported"],
            failed=[failures[i] for i in sorted(failures)],
            skipped=counts["skipped"],
        )
        IMPORT_TRANSACTIONS.labels(status="imported").inc(result.imported)
        logger.info("import_executed",
                    session_id=session_id,
                    imported=result.imported,
                    failed=len(result.failed),
                    skipped=result.skipped)
        return result
