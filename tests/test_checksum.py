from packages.domain.imports.checksum import (
    SKIP_REASON_IN_BATCH,
    SKIP_REASON_STORED,
    compute_checksum,
    deduplicate,
)
from packages.domain.imports.schemas import MatchType, TransactionStatus
from tests.helpers.factories import make_row


class TestComputeChecksum:
    def test_sha256_hex(self):
        checksum = compute_checksum('{"Description":"WOOLWORTHS"}')
        assert len(checksum) == 64
        assert all(c in "0123456789abcdef" for c in checksum)

    def test_stable(self):
        assert compute_checksum("a,b,c") == compute_checksum("a,b,c")

    def test_formatting_differences_are_not_merged(self):
        assert compute_checksum("14/02/2025,WOOLWORTHS,42.15") != compute_checksum(
            "14/02/2025, WOOLWORTHS,42.15"
        )


class TestDeduplicate:
    def test_nothing_stored(self):
        rows = [make_row("WOOLWORTHS"), make_row("COLES")]
        result = deduplicate(rows, set())
        assert result.new == rows
        assert result.skipped == []

    def test_stored_rows_are_skipped(self):
        stored, fresh = make_row("WOOLWORTHS"), make_row("COLES")
        result = deduplicate([stored, fresh], {stored.checksum})

        assert result.new == [fresh]
        assert len(result.skipped) == 1
        skipped = result.skipped[0]
        assert skipped.checksum == stored.checksum
        assert skipped.status == TransactionStatus.SKIPPED
        assert skipped.skip_reason == SKIP_REASON_STORED
        assert skipped.entity.match_type == MatchType.NONE

    def test_repeats_within_batch_keep_first(self):
        first = make_row("WOOLWORTHS")
        repeat = make_row("WOOLWORTHS")
        other = make_row("COLES")
        result = deduplicate([first, other, repeat], set())

        assert result.new == [first, other]
        assert [s.skip_reason for s in result.skipped] == [SKIP_REASON_IN_BATCH]

    def test_similar_rows_with_different_source_are_kept(self):
        rows = [make_row("WOOLWORTHS", ref="A1"), make_row("WOOLWORTHS", ref="A2")]
        assert len(deduplicate(rows, set()).new) == 2

    def test_idempotent(self):
        rows = [make_row("WOOLWORTHS"), make_row("COLES"), make_row("WOOLWORTHS")]
        stored = {rows[1].checksum}
        assert deduplicate(rows, stored) == deduplicate(rows, stored)

    def test_second_pass_skips_everything(self):
        rows = [make_row("WOOLWORTHS"), make_row("COLES")]
        first = deduplicate(rows, set())
        second = deduplicate(rows, {row.checksum for row in first.new})
        assert second.new == []
        assert len(second.skipped) == 2
