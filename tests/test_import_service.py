import asyncio
from decimal import Decimal

from sqlalchemy import text

from packages.common.database import StorageContext
from packages.domain.ai_usage import AiUsageService
from packages.domain.imports.checksum import SKIP_REASON_IN_BATCH, SKIP_REASON_STORED
from packages.domain.imports.import_service import derive_status
from packages.domain.imports.repository import TransactionRepository
from packages.domain.imports.schemas import (
    EntityMatch,
    ImportStep,
    ImportWarningType,
    MatchType,
    SessionStatus,
    TransactionStatus,
    TransactionType,
)
from tests.helpers.anthropic_stub import (
    AnthropicStub,
    FakeApiError,
    empty_response,
    json_response,
    rate_limited,
)
from tests.helpers.factories import (
    buckets,
    confirm,
    create_env_database,
    make_row,
    make_settings,
    running_service,
    seed_entities,
)
from tests.helpers.notion_stub import NotionStub, title_of

WOOLWORTHS_ID = "1a2b3c4d-0000-4000-8000-000000000001"
COLES_ID = "1a2b3c4d-0000-4000-8000-000000000002"
COLES_EXPRESS_ID = "1a2b3c4d-0000-4000-8000-000000000003"

ENTITIES = [
    (WOOLWORTHS_ID, "Woolworths", ["WOOLIES"]),
    (COLES_ID, "Coles", []),
    (COLES_EXPRESS_ID, "Coles Express", []),
]


def ai_decisions(description):
    if "BEAN THERE" in description:
        return json_response("Bean There Cafe", "Dining")
    if "SP DIGITAL" in description:
        return json_response("coles", "Groceries")
    return empty_response()


def unresolvable(count):
    return [make_row(f"MERCHANT {n:03d} PTY LTD") for n in range(count)]


async def stored_count(harness, checksum):
    async with harness.db.session(StorageContext()) as db:
        result = await db.execute(
            text("SELECT COUNT(*) FROM transactions WHERE checksum = :checksum"),
            {"checksum": checksum},
        )
        return result.scalar_one()


class TestProcess:
    def test_rows_are_bucketed(self, settings):
        rows = [
            make_row("WOOLIES METRO 123"),
            make_row("COLES EXPRESS 55"),
            make_row("SQ *BEAN THERE CAFE"),
            make_row("SP DIGITAL PTY"),
            make_row("MYSTERY 0000"),
        ]

        async def run():
            async with running_service(settings, AnthropicStub(ai_decisions), entities=ENTITIES) as h:
                return await h.process(rows)

        session = asyncio.run(run())

        assert session.status == SessionStatus.COMPLETED
        assert session.current_step == ImportStep.DONE
        assert session.processed_count == session.total_transactions == 5
        assert session.completed_at is not None
        assert buckets(session) == {
            "matched": ["WOOLIES METRO 123", "COLES EXPRESS 55"],
            "uncertain": ["SQ *BEAN THERE CAFE", "SP DIGITAL PTY"],
            "failed": ["MYSTERY 0000"],
            "skipped": [],
        }

        woolies, coles_express = session.result.matched
        assert woolies.entity.match_type == MatchType.ALIAS
        assert woolies.entity.entity_id == WOOLWORTHS_ID
        assert woolies.entity.entity_url == "https://www.notion.so/1a2b3c4d000040008000000000000001"
        assert coles_express.entity.match_type == MatchType.PREFIX
        assert coles_express.entity.entity_id == COLES_EXPRESS_ID

        new_entity, known_entity = session.result.uncertain
        assert new_entity.entity.match_type == MatchType.AI
        assert new_entity.entity.entity_name == "Bean There Cafe"
        assert new_entity.entity.entity_id is None
        assert new_entity.entity.confidence == settings.ai_new_entity_confidence
        assert known_entity.entity.entity_name == "Coles"
        assert known_entity.entity.entity_id == COLES_ID
        assert known_entity.entity.confidence == settings.ai_known_entity_confidence

        failed = session.result.failed[0]
        assert failed.entity.match_type == MatchType.NONE
        assert failed.error == "No entity match found"
        assert session.errors == ["MYSTERY 0000: No entity match found"]
        assert session.result.warnings == []

    def test_ai_usage_is_aggregated_and_recorded(self, settings):
        rows = [make_row("SQ *BEAN THERE CAFE"), make_row("SP DIGITAL PTY"), make_row("SQ *BEAN THERE CAFE", ref="2")]

        async def run():
            async with running_service(settings, AnthropicStub(ai_decisions), entities=ENTITIES) as h:
                session = await h.process(rows)
                stats = await AiUsageService(h.db).get_stats()
                return session, stats, len(h.anthropic.calls)

        session, stats, api_calls = asyncio.run(run())

        usage = session.result.ai_usage
        assert api_calls == 2
        assert usage.api_calls == 2
        assert usage.cache_hits == 1
        assert usage.total_input_tokens == 240
        assert usage.total_output_tokens == 36
        assert usage.total_tokens == 276
        assert usage.total_cost_usd == Decimal("0.00042")
        assert usage.avg_cost_per_call == Decimal("0.00021")

        assert stats.total_api_calls == 2
        assert stats.total_cache_hits == 1
        assert abs(stats.total_cost - 0.00042) < 1e-9

    def test_repeated_rows_in_one_batch_are_skipped(self, settings):
        row = make_row("WOOLWORTHS 1234")

        async def run():
            async with running_service(settings, entities=ENTITIES) as h:
                return await h.process([row, row])

        session = asyncio.run(run())

        assert buckets(session)["matched"] == ["WOOLWORTHS 1234"]
        assert [s.skip_reason for s in session.result.skipped] == [SKIP_REASON_IN_BATCH]
        assert session.processed_count == 2

    def test_reimporting_the_same_statement_skips_everything(self, settings):
        rows = [make_row("WOOLIES METRO 123"), make_row("SQ *BEAN THERE CAFE"), make_row("COLES 0042")]

        async def run():
            async with running_service(settings, AnthropicStub(ai_decisions), entities=ENTITIES) as h:
                first = await h.process(rows)
                written = await h.execute([confirm(r) for r in rows])
                calls_after_first = len(h.anthropic.calls)
                second = await h.process(rows)
                return first, written, second, calls_after_first, len(h.anthropic.calls)

        first, written, second, calls_before, calls_after = asyncio.run(run())

        assert len(first.result.matched) + len(first.result.uncertain) == 3
        assert written.result.imported == 3
        assert second.result.matched == []
        assert second.result.uncertain == []
        assert [s.skip_reason for s in second.result.skipped] == [SKIP_REASON_STORED] * 3
        assert second.processed_count == 3
        assert calls_after == calls_before

    def test_duplicates_are_scoped_to_the_account(self, settings):
        amex = make_row("WOOLWORTHS 1234", account="Amex")

        async def run():
            async with running_service(settings, entities=ENTITIES) as h:
                await h.execute([confirm(amex)])
                return await h.process([amex], account="ING Everyday")

        session = asyncio.run(run())
        assert buckets(session)["matched"] == ["WOOLWORTHS 1234"]

    def test_progress_never_decreases(self, settings):
        rows = [make_row("WOOLWORTHS 1"), make_row("COLES 2")] + unresolvable(8)
        stub = AnthropicStub(lambda d: json_response(d.title()), latency=0.005)

        async def run():
            async with running_service(settings, stub, entities=ENTITIES) as h:
                session_id = h.service.start_process_import(rows, "Amex")
                observed = []
                while True:
                    session = h.service.get_progress(session_id)
                    observed.append(session.processed_count)
                    if session.is_terminal:
                        break
                    await asyncio.sleep(0.001)
                return observed, session

        observed, session = asyncio.run(run())

        assert session.status == SessionStatus.COMPLETED
        assert observed == sorted(observed)
        assert observed[-1] == session.total_transactions == 10
        assert len(set(observed)) > 2
        assert len(session.current_batch) == 5


class TestWarnings:
    def test_missing_api_key(self, tmp_path):
        settings = make_settings(tmp_path, claude_api_key=None)

        async def run():
            async with running_service(settings, entities=ENTITIES, with_client=False) as h:
                return await h.process([make_row("WOOLWORTHS 1")] + unresolvable(3))

        session = asyncio.run(run())

        assert session.status == SessionStatus.COMPLETED
        assert buckets(session)["matched"] == ["WOOLWORTHS 1"]
        assert len(session.result.failed) == 3
        assert all(r.error == "AI categorization unavailable" for r in session.result.failed)

        [warning] = session.result.warnings
        assert warning.type == ImportWarningType.AI_CATEGORIZATION_UNAVAILABLE
        assert warning.affected_count == 3
        assert len(session.errors) == 3
        assert session.errors[0] == (
            "MERCHANT 000 PTY LTD: AI categorization unavailable - Add CLAUDE_API_KEY to .env file"
        )
        assert session.result.ai_usage is None

    def test_insufficient_credits(self, settings):
        error = FakeApiError(400, "Your credit balance is too low to access the Anthropic API.")

        async def run():
            async with running_service(settings, AnthropicStub(lambda d: error)) as h:
                return await h.process(unresolvable(2))

        session = asyncio.run(run())

        [warning] = session.result.warnings
        assert warning.type == ImportWarningType.AI_CATEGORIZATION_UNAVAILABLE
        assert warning.affected_count == 2
        assert "credit balance" in warning.message

    def test_api_errors(self, settings):
        async def run():
            stub = AnthropicStub(lambda d: FakeApiError(529, "overloaded_error"))
            async with running_service(settings, stub) as h:
                return await h.process(unresolvable(2))

        session = asyncio.run(run())

        assert session.status == SessionStatus.COMPLETED
        [warning] = session.result.warnings
        assert warning.type == ImportWarningType.AI_API_ERROR
        assert warning.affected_count == 2
        assert warning.message == "Anthropic API error: overloaded_error"

    def test_rate_limit_exhaustion_fails_only_that_row(self, settings):
        stub = AnthropicStub(
            lambda d: json_response("Some Merchant"),
            replies=[rate_limited() for _ in range(6)],
        )

        async def run():
            async with running_service(settings, stub) as h:
                return await h.process(unresolvable(2))

        session = asyncio.run(run())

        assert len(stub.calls) == 7
        assert len(session.result.failed) == 1
        assert len(session.result.uncertain) == 1
        [warning] = session.result.warnings
        assert warning.type == ImportWarningType.AI_API_ERROR
        assert warning.affected_count == 1


class TestExecute:
    def test_one_failing_row_does_not_stop_the_rest(self, settings):
        rows = [make_row(f"ROW {n}") for n in range(1, 11)]
        notion = NotionStub(fail_when=lambda body: title_of(body) == "ROW 5")

        async def run():
            async with running_service(settings, notion=notion) as h:
                session = await h.execute([confirm(r) for r in rows])
                async with h.db.session(StorageContext()) as db:
                    stored = await TransactionRepository().find_existing_checksums(
                        db, "Amex", [r.checksum for r in rows]
                    )
                return session, stored

        session, stored = asyncio.run(run())

        assert session.status == SessionStatus.COMPLETED
        assert session.result.imported == 9
        assert session.result.skipped == 0
        [failure] = session.result.failed
        assert failure.transaction.description == "ROW 5"
        assert not failure.success
        assert "validation" in failure.error

        assert len(notion.requests) == 10
        assert session.processed_count == 10
        assert session.errors == [
            "ROW 5: Notion API validation error - "
            "Check that all required properties exist in your Notion database"
        ]
        assert len(stored) == 9
        assert rows[4].checksum not in stored

    def test_already_stored_rows_are_skipped(self, settings):
        rows = [confirm(make_row(f"ROW {n}")) for n in range(3)]

        async def run():
            async with running_service(settings) as h:
                first = await h.execute(rows)
                second = await h.execute(rows)
                return first, second, h.notion

        first, second, notion = asyncio.run(run())

        assert first.result.imported == 3
        assert second.result.imported == 0
        assert second.result.skipped == 3
        assert len(notion.requests) == 3

    def test_repeated_row_in_batch_is_written_once(self, settings):
        assert settings.import_write_concurrency > 1
        row = confirm(make_row("WOOLWORTHS 1234"))

        async def run():
            async with running_service(settings) as h:
                session = await h.execute([row, row])
                return session, await stored_count(h, row.checksum), h.notion

        session, stored, notion = asyncio.run(run())

        assert session.result.imported == 1
        assert session.result.skipped == 1
        assert session.result.failed == []
        assert stored == 1
        assert len(notion.requests) == 1

    def test_overlapping_sessions_write_each_checksum_once(self, settings):
        rows = [confirm(make_row(f"ROW {n}")) for n in range(4)]

        async def run():
            async with running_service(settings) as h:
                first = h.service.start_execute_import(rows)
                second = h.service.start_execute_import(rows)
                await h.service.drain()
                counts = [await stored_count(h, r.checksum) for r in rows]
                return h.service.get_progress(first), h.service.get_progress(second), counts, h.notion

        first, second, counts, notion = asyncio.run(run())

        assert first.result.imported + second.result.imported == 4
        assert first.result.skipped + second.result.skipped == 4
        assert counts == [1, 1, 1, 1]
        assert len(notion.requests) == 4

    def test_notion_properties(self, settings):
        purchase = confirm(
            make_row("WOOLWORTHS 1234"),
            entity_id=WOOLWORTHS_ID,
            entity_name="Woolworths",
            transaction_type=TransactionType.PURCHASE,
        )
        transfer = confirm(make_row("TRANSFER TO SAVINGS"), transaction_type=TransactionType.TRANSFER)

        async def run():
            async with running_service(settings) as h:
                await h.execute([purchase, transfer])
                return h.notion

        notion = asyncio.run(run())

        by_title = {title_of(body): body for body in notion.requests}
        purchase_props = by_title["WOOLWORTHS 1234"]["properties"]
        assert purchase_props["Type"] == {"select": {"name": "Expense"}}
        assert purchase_props["Entity"] == {"relation": [{"id": WOOLWORTHS_ID}]}
        assert purchase_props["Amount"] == {"number": -12.5}

        transfer_props = by_title["TRANSFER TO SAVINGS"]["properties"]
        assert transfer_props["Type"] == {"select": {"name": "Transfer"}}
        assert "Entity" not in transfer_props
        assert by_title["TRANSFER TO SAVINGS"]["parent"] == {"database_id": "balance-sheet-db"}

    def test_missing_balance_sheet_fails_each_row(self, tmp_path):
        settings = make_settings(tmp_path, notion_balance_sheet_id=None)

        async def run():
            async with running_service(settings) as h:
                return await h.execute([confirm(make_row("ROW 1")), confirm(make_row("ROW 2"))])

        session = asyncio.run(run())

        assert session.status == SessionStatus.COMPLETED
        assert session.result.imported == 0
        assert len(session.result.failed) == 2
        assert sorted(session.errors)[0].startswith(
            "ROW 1: Notion database not found - Check NOTION_BALANCE_SHEET_ID"
        )
        assert len(session.errors) == 2


class TestSessions:
    def test_storage_failure_fails_the_session(self, settings):
        async def run():
            async with running_service(settings) as h:
                return await h.process([make_row("WOOLWORTHS")], storage=StorageContext("missing"))

        session = asyncio.run(run())

        assert session.status == SessionStatus.FAILED
        assert session.errors == ["System: Environment 'missing' not found"]
        assert session.completed_at is not None

    def test_failed_session_does_not_affect_others(self, settings):
        async def run():
            async with running_service(settings, entities=ENTITIES) as h:
                broken = h.service.start_process_import(
                    [make_row("WOOLWORTHS")], "Amex", StorageContext("missing")
                )
                healthy = h.service.start_process_import([make_row("WOOLWORTHS")], "Amex")
                await h.service.drain()
                return h.service.get_progress(broken), h.service.get_progress(healthy)

        broken, healthy = asyncio.run(run())

        assert broken.status == SessionStatus.FAILED
        assert healthy.status == SessionStatus.COMPLETED
        assert buckets(healthy)["matched"] == ["WOOLWORTHS"]

    def test_storage_context_reaches_the_background_task(self, settings):
        create_env_database(settings, "staging")
        staging = StorageContext("staging")

        async def run():
            async with running_service(settings) as h:
                await seed_entities(h.db, ENTITIES, staging)
                in_staging = await h.process([make_row("WOOLWORTHS 1")], storage=staging)
                in_prod = await h.process([make_row("WOOLWORTHS 1")])
                return in_staging, in_prod

        in_staging, in_prod = asyncio.run(run())

        assert buckets(in_staging)["matched"] == ["WOOLWORTHS 1"]
        assert buckets(in_prod)["matched"] == []
        assert in_prod.result.uncertain[0].entity.match_type == MatchType.AI

    def test_unknown_session(self, settings):
        async def run():
            async with running_service(settings) as h:
                return h.service.get_progress("no-such-session")

        assert asyncio.run(run()) is None


def test_created_entity_is_matched_by_the_next_import(settings):
    async def run():
        async with running_service(settings, AnthropicStub(ai_decisions)) as h:
            created = await h.service.create_entity("  Bean There Cafe ")
            session = await h.process([make_row("BEAN THERE CAFE NEWTOWN")])
            return created, session, h

    created, session, h = asyncio.run(run())

    assert created.entity_name == "Bean There Cafe"
    assert created.entity_url == "https://www.notion.so/" + created.entity_id.replace("-", "")
    assert len(h.notion.pages_in("entities-db")) == 1
    [matched] = session.result.matched
    assert matched.entity.entity_id == created.entity_id
    assert matched.entity.match_type == MatchType.PREFIX
    assert h.anthropic.calls == []


class TestDeriveStatus:
    def test_matcher_hits_are_matched(self):
        for match_type in (MatchType.ALIAS, MatchType.EXACT, MatchType.PREFIX, MatchType.CONTAINS):
            assert derive_status(EntityMatch(entity_id="x", match_type=match_type), 0.9) == TransactionStatus.MATCHED

    def test_ai_is_uncertain(self):
        assert derive_status(EntityMatch(match_type=MatchType.AI, confidence=0.95), 0.9) == TransactionStatus.UNCERTAIN

    def test_low_confidence_is_uncertain(self):
        entity = EntityMatch(entity_id="x", match_type=MatchType.EXACT, confidence=0.5)
        assert derive_status(entity, 0.9) == TransactionStatus.UNCERTAIN

    def test_none_is_failed(self):
        assert derive_status(EntityMatch(), 0.9) == TransactionStatus.FAILED
