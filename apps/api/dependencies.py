"""
FastAPI dependencies - services are built in the lifespan and kept on app.state
"""
from fastapi import Request

from packages.common.database import StorageContext, current_storage
from packages.domain.ai_usage import AiUsageService
from packages.domain.imports import ImportService


async def get_storage() -> StorageContext:
    """StorageContext resolved by the environment middleware"""
    return current_storage.get()


def get_import_service(request: Request) -> ImportService:
    return request.app.state.import_service


def get_ai_usage_service(request: Request) -> AiUsageService:
    return request.app.state.ai_usage_service
