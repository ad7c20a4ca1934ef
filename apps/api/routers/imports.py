"""
Imports API - statement import sessions with progress polling

Flow:
1. POST /imports/process → session id; poll progress until completed
2. Review UI shows matched / uncertain / failed / skipped buckets
3. POST /imports/execute with the confirmed rows → session id; poll again
"""
import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from apps.api.dependencies import get_import_service, get_storage
from packages.common.database import StorageContext
from packages.common.errors import format_import_error
from packages.common.notion_client import NotionAPIError
from packages.domain.imports import ImportService
from packages.domain.imports.schemas import (
    CreateEntityOutput,
    CreateEntityRequest,
    ExecuteImportRequest,
    ImportSession,
    ProcessImportRequest,
    SessionStartedResponse,
)

logger = structlog.get_logger()
router = APIRouter(prefix="/imports", tags=["imports"])


@router.post(
    "/process",
    response_model=SessionStartedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def process_import(
    request: ProcessImportRequest,
    storage: StorageContext = Depends(get_storage),
    service: ImportService = Depends(get_import_service),
) -> SessionStartedResponse:
    """
    Start deduplication, matching and AI categorization for a parsed statement.

    Returns immediately; results arrive through GET /imports/progress/{session_id}.
    """
    session_id = service.start_process_import(request.transactions, request.account, storage)
    return SessionStartedResponse(session_id=session_id)


@router.post(
    "/execute",
    response_model=SessionStartedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def execute_import(
    request: ExecuteImportRequest,
    storage: StorageContext = Depends(get_storage),
    service: ImportService = Depends(get_import_service),
) -> SessionStartedResponse:
    """Start writing reviewed transactions to Notion"""
    session_id = service.start_execute_import(request.transactions, storage)
    return SessionStartedResponse(session_id=session_id)


@router.get("/progress/{session_id}", response_model=ImportSession)
async def get_import_progress(
    session_id: str,
    service: ImportService = Depends(get_import_service),
) -> ImportSession:
    session = service.get_progress(session_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Import session {session_id} not found",
        )
    return session


@router.post(
    "/entities",
    response_model=CreateEntityOutput,
    status_code=status.HTTP_201_CREATED,
)
async def create_entity(
    request: CreateEntityRequest,
    storage: StorageContext = Depends(get_storage),
    service: ImportService = Depends(get_import_service),
) -> CreateEntityOutput:
    """Create a new payee entity (used for AI-suggested names during review)"""
    try:
        return await service.create_entity(request.name, storage)
    except NotionAPIError as e:
        logger.error("entity_create_failed", name=request.name, code=e.code, error=e.message)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=format_import_error(e).as_line(),
        )
