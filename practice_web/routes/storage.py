"""
Storage probe controllers.

Endpoints:
    GET /storage/relational - round-trip to the relational store
    GET /storage/document   - round-trip to the document store

Each request works on its own handle; an unreachable store fails only
that request (503).
"""

import logging

from fastapi import APIRouter, Depends

from practice_web.database.mongodb import DocumentHandle
from practice_web.database.sqlserver import RelationalHandle
from practice_web.database.storage import get_document_handle, get_relational_handle
from practice_web.models.responses import (
    DocumentStatusResponse,
    ErrorResponse,
    RelationalStatusResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/storage", tags=["Storage"])

UNAVAILABLE = {503: {"model": ErrorResponse, "description": "The store could not be reached."}}


@router.get(
    "/relational",
    response_model=RelationalStatusResponse,
    responses=UNAVAILABLE,
    summary="Probe the relational store",
)
def relational_status(
    handle: RelationalHandle = Depends(get_relational_handle),
) -> RelationalStatusResponse:
    result = handle.execute_scalar("SELECT 1")
    return RelationalStatusResponse(result=result)


@router.get(
    "/document",
    response_model=DocumentStatusResponse,
    responses=UNAVAILABLE,
    summary="Probe the document store",
)
async def document_status(
    handle: DocumentHandle = Depends(get_document_handle),
) -> DocumentStatusResponse:
    collections = await handle.list_collection_names()
    return DocumentStatusResponse(database=handle.database_name, collections=collections)
