"""
Import Repository - local relational cache of the Notion record store

Tables (see packages.common.database):
- entities: payee lookup and aliases used by the matcher
- transactions: mirrored rows, queried by (account, checksum) for dedup
- ai_usage: append-only AI cost ledger

Repositories take an AsyncSession; the caller picks the store through
DatabaseRouter.session(storage).
"""
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set

import structlog
from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.database import DatabaseRouter, StorageContext
from packages.domain.imports.ai_categorizer import AiUsageRecord
from packages.domain.imports.schemas import ConfirmedTransaction

logger = structlog.get_logger()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class EntityRepository:
    """Entity lookup, aliases and upserts"""

    async def load_entity_lookup(self, db: AsyncSession) -> Dict[str, str]:
        """Entity name → notion id"""
        result = await db.execute(text("SELECT notion_id, name FROM entities ORDER BY name"))
        return {row.name: row.notion_id for row in result}

    async def load_aliases(self, db: AsyncSession) -> Dict[str, str]:
        """
        Alias → canonical entity name.

        Aliases are stored comma separated on the entity row.
        """
        result = await db.execute(text("""
            SELECT name, aliases
            FROM entities
            WHERE aliases IS NOT NULL AND aliases != ''
            ORDER BY name
        """))

        aliases: Dict[str, str] = {}
        for row in result:
            for alias in row.aliases.split(","):
                alias = alias.strip()
                if alias:
                    aliases.setdefault(alias, row.name)
        return aliases

    async def upsert_entity(
        self,
        db: AsyncSession,
        notion_id: str,
        name: str,
        entity_type: Optional[str] = None,
        aliases: Optional[List[str]] = None,
    ):
        await db.execute(
            text("""
                INSERT INTO entities (notion_id, name, type, aliases, last_edited_time)
                VALUES (:notion_id, :name, :type, :aliases, :last_edited_time)
                ON CONFLICT (notion_id) DO UPDATE SET
                    name = excluded.name,
                    type = excluded.type,
                    aliases = excluded.aliases,
                    last_edited_time = excluded.last_edited_time
            """),
            {
                "notion_id": notion_id,
                "name": name,
                "type": entity_type,
                "aliases": ",".join(aliases) if aliases else None,
                "last_edited_time": _now_iso(),
            },
        )
        logger.info("entity_upserted", notion_id=notion_id, name=name)


class TransactionRepository:
    """Checksum lookups and mirrored transaction inserts"""

    def __init__(self, checksum_chunk: int = 100):
        self.checksum_chunk = checksum_chunk

    async def find_existing_checksums(
        self,
        db: AsyncSession,
        account: str,
        checksums: Iterable[str],
    ) -> Set[str]:
        """
        Checksums already stored for an account.

        Queried in chunks to stay under bound-parameter limits.
        """
        unique = sorted(set(checksums))
        found: Set[str] = set()

        query = text("""
            SELECT checksum
            FROM transactions
            WHERE account = :account AND checksum IN :checksums
        """).bindparams(bindparam("checksums", expanding=True))

        for start in range(0, len(unique), self.checksum_chunk):
            chunk = unique[start:start + self.checksum_chunk]
            result = await db.execute(query, {"account": account, "checksums": chunk})
            found.update(row.checksum for row in result)

        return found

    async def checksum_exists(self, db: AsyncSession, account: str, checksum: str) -> bool:
        result = await db.execute(
            text("""
                SELECT 1 FROM transactions
                WHERE account = :account AND checksum = :checksum
                LIMIT 1
            """),
            {"account": account, "checksum": checksum},
        )
        return result.first() is not None

    async def insert_transaction(
        self,
        db: AsyncSession,
        notion_id: str,
        transaction: ConfirmedTransaction,
        type_label: str,
    ):
        await db.execute(
            text("""
                INSERT INTO transactions (
                    notion_id, description, account, amount, date, type,
                    entity_id, entity_name, location, online, raw_row,
                    checksum, last_edited_time
                ) VALUES (
                    :notion_id, :description, :account, :amount, :date, :type,
                    :entity_id, :entity_name, :location, :online, :raw_row,
                    :checksum, :last_edited_time
                )
            """),
            {
                "notion_id": notion_id,
                "description": transaction.description,
                "account": transaction.account,
                "amount": float(transaction.amount),
                "date": transaction.date.isoformat(),
                "type": type_label,
                "entity_id": transaction.entity_id,
                "entity_name": transaction.entity_name,
                "location": transaction.location,
                "online": bool(transaction.online),
                "raw_row": transaction.raw_row,
                "checksum": transaction.checksum,
                "last_edited_time": _now_iso(),
            },
        )


class AiUsageRepository:
    async def insert(self, db: AsyncSession, record: AiUsageRecord):
        await db.execute(
            text("""
                INSERT INTO ai_usage (
                    description, entity_name, category, input_tokens,
                    output_tokens, cost_usd, cached, import_batch_id, created_at
                ) VALUES (
                    :description, :entity_name, :category, :input_tokens,
                    :output_tokens, :cost_usd, :cached, :import_batch_id, :created_at
                )
            """),
            {
                "description": record.description,
                "entity_name": record.entity_name,
                "category": record.category,
                "input_tokens": record.input_tokens,
                "output_tokens": record.output_tokens,
                "cost_usd": float(record.cost_usd),
                "cached": record.cached,
                "import_batch_id": record.import_batch_id,
                "created_at": record.created_at.isoformat(),
            },
        )


class AiUsageLedger:
    """Usage ledger backed by the ai_usage table of the session's store"""

    def __init__(self, db: DatabaseRouter, repository: Optional[AiUsageRepository] = None):
        self.db = db
        self.repository = repository or AiUsageRepository()

    async def record(self, record: AiUsageRecord, storage: StorageContext):
        async with self.db.session(storage) as session:
            await self.repository.insert(session, record)
