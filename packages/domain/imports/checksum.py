"""
Checksum deduplication for imported statement rows

The checksum is a SHA-256 over the verbatim serialized source row, so a
re-uploaded statement is caught byte-for-byte while two rows that merely look
alike (same date, amount and merchant) are never merged.

Dedup is a pure filter: the caller supplies the checksums already stored for
the account and gets back the rows to keep plus the rows to skip.
"""
import hashlib
from dataclasses import dataclass, field
from typing import Iterable, List, Set

from packages.domain.imports.schemas import (
    EntityMatch,
    ParsedTransaction,
    ProcessedTransaction,
    TransactionStatus,
)

SKIP_REASON_STORED = "Duplicate transaction (checksum match)"
SKIP_REASON_IN_BATCH = "Duplicate (repeated in batch)"


def compute_checksum(raw_row: str) -> str:
    """SHA-256 hex digest of a raw row"""
    return hashlib.sha256(raw_row.encode("utf-8")).hexdigest()


@dataclass
class DedupResult:
    new: List[ParsedTransaction] = field(default_factory=list)
    skipped: List[ProcessedTransaction] = field(default_factory=list)


def mark_skipped(transaction: ParsedTransaction, reason: str) -> ProcessedTransaction:
    return ProcessedTransaction(
        **transaction.model_dump(),
        entity=EntityMatch(),
        status=TransactionStatus.SKIPPED,
        skip_reason=reason,
    )


def deduplicate(
    transactions: Iterable[ParsedTransaction],
    existing_checksums: Set[str],
) -> DedupResult:
    """
    Split a batch into rows not yet stored and skipped duplicates.

    Args:
        transactions: Rows in statement order
        existing_checksums: Checksums already stored for the account

    Returns:
        DedupResult; the first occurrence of a checksum within the batch is
        kept and later repeats are skipped.
    """
    result = DedupResult()
    seen: Set[str] = set()

    for transaction in transactions:
        if transaction.checksum in existing_checksums:
            result.skipped.append(mark_skipped(transaction, SKIP_REASON_STORED))
        elif transaction.checksum in seen:
            result.skipped.append(mark_skipped(transaction, SKIP_REASON_IN_BATCH))
        else:
            seen.add(transaction.checksum)
            result.new.append(transaction)

    return result
