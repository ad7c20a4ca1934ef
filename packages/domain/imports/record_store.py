"""
Record store writes - Notion pages mirrored into the local cache

Every write goes to Notion first; the local tables are only updated once
Notion has accepted the page, so the cache never holds rows Notion lacks.
"""
from typing import Any, Dict, Optional

import structlog

from packages.common.config import Settings, get_settings
from packages.common.database import DatabaseRouter, StorageContext
from packages.common.notion_client import (
    NotionAPIError,
    NotionClient,
    notion_page_url,
    rich_text,
)
from packages.domain.imports.repository import EntityRepository, TransactionRepository
from packages.domain.imports.schemas import (
    ConfirmedTransaction,
    CreateEntityOutput,
    TransactionType,
)

logger = structlog.get_logger()

RAW_ROW_LIMIT = 2000

TYPE_LABELS = {
    TransactionType.TRANSFER: "Transfer",
    TransactionType.INCOME: "Income",
}


def transaction_type_label(transaction_type: Optional[TransactionType]) -> str:
    """Notion Type select value; purchases (or no type) are Expense"""
    return TYPE_LABELS.get(transaction_type, "Expense")


def build_transaction_properties(transaction: ConfirmedTransaction) -> Dict[str, Any]:
    """Map a confirmed transaction to Notion balance sheet properties"""
    properties: Dict[str, Any] = {
        "Description": {"title": [{"text": {"content": transaction.description}}]},
        "Account": {"select": {"name": transaction.account}},
        "Amount": {"number": float(transaction.amount)},
        "Date": {"date": {"start": transaction.date.isoformat()}},
        "Type": {"select": {"name": transaction_type_label(transaction.transaction_type)}},
        "Online": {"checkbox": bool(transaction.online)},
        "Raw Row": rich_text(transaction.raw_row[:RAW_ROW_LIMIT]),
        "Checksum": rich_text(transaction.checksum),
    }

    if transaction.entity_id:
        properties["Entity"] = {"relation": [{"id": transaction.entity_id}]}

    if transaction.location:
        properties["Location"] = {"select": {"name": transaction.location}}

    return properties


class RecordStore:
    """
    Writes transactions and entities to Notion and the local cache.

    Args:
        notion: Notion API client
        db: Database router for the local cache
        settings: Provides the Notion database ids
    """

    def __init__(
        self,
        notion: NotionClient,
        db: DatabaseRouter,
        settings: Optional[Settings] = None,
    ):
        self.notion = notion
        self.db = db
        self.settings = settings or get_settings()
        self.entities = EntityRepository()
        self.transactions = TransactionRepository(self.settings.checksum_query_chunk)

    async def _create_page(self, setting: str, properties: Dict[str, Any]) -> str:
        """Create a page in the database named by `setting`; returns the page id"""
        database_id = getattr(self.settings, setting.lower())
        if not database_id:
            raise NotionAPIError(
                f"{setting} not configured", code="object_not_found", setting=setting
            )

        try:
            page = await self.notion.create_page(database_id, properties)
        except NotionAPIError as e:
            if e.code == "object_not_found" and e.setting is None:
                e.setting = setting
            raise
        return page["id"]

    async def is_stored(self, transaction: ConfirmedTransaction, storage: StorageContext) -> bool:
        async with self.db.session(storage) as session:
            return await self.transactions.checksum_exists(
                session, transaction.account, transaction.checksum
            )

    async def write_transaction(
        self,
        transaction: ConfirmedTransaction,
        storage: StorageContext,
    ) -> str:
        """
        Create the Notion page for a transaction and mirror it locally.

        Returns:
            Notion page id
        """
        page_id = await self._create_page(
            "NOTION_BALANCE_SHEET_ID", build_transaction_properties(transaction)
        )

        async with self.db.session(storage) as session:
            await self.transactions.insert_transaction(
                session,
                notion_id=page_id,
                transaction=transaction,
                type_label=transaction_type_label(transaction.transaction_type),
            )

        logger.debug("transaction_written",
                     page_id=page_id,
                     account=transaction.account,
                     env=storage.label)
        return page_id

    async def create_entity(self, name: str, storage: StorageContext) -> CreateEntityOutput:
        name = name.strip()
        page_id = await self._create_page(
            "NOTION_ENTITIES_DB_ID", {"Name": {"title": [{"text": {"content": name}}]}}
        )

        async with self.db.session(storage) as session:
            await self.entities.upsert_entity(session, notion_id=page_id, name=name)

        logger.info("entity_created", entity_id=page_id, name=name, env=storage.label)
        return CreateEntityOutput(
            entity_id=page_id,
            entity_name=name,
            entity_url=notion_page_url(page_id),
        )
