"""
HTTP API exposing company search and document downloads.

Run with ``uvicorn api:app`` or ``python api.py``.
"""

import logging
import os
import sqlite3
from functools import lru_cache
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field

from batch_download import BatchDownloadManager
from config import Settings
from documents import DocumentMaterializer
from errors import ErrorKind, RegistryError, ValidationError
from local_lookup import init_db
from models import CartItem, Company, Source
from search import SearchOrchestrator

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

STATUS_FOR_KIND = {
    ErrorKind.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.NOT_CONFIGURED: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    ErrorKind.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
}

app = FastAPI(title="Registry Search API")


# =====================
# Request models
# =====================

class CartItemIn(BaseModel):
    """A document request as sent by the cart."""
    id: str
    type: str
    siren: str
    name: str = ""
    siret: Optional[str] = None
    description: str = ""
    url: Optional[str] = None
    available: bool = True
    addedAt: Optional[str] = None


class BatchDownloadRequest(BaseModel):
    items: List[CartItemIn] = Field(default_factory=list)
    force: bool = False


# =====================
# Dependencies
# =====================

@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()


@lru_cache()
def get_orchestrator() -> SearchOrchestrator:
    settings = get_settings()
    # An empty table answers with zero rows instead of a DATABASE_ERROR.
    try:
        init_db(settings.db_path)
    except (sqlite3.Error, OSError) as exc:
        logger.warning("Could not initialise local database %s: %s", settings.db_path, exc)
    return SearchOrchestrator(settings)


@lru_cache()
def get_materializer() -> DocumentMaterializer:
    return DocumentMaterializer(get_settings())


def get_batch_manager(
    settings: Settings = Depends(get_settings),
    materializer: DocumentMaterializer = Depends(get_materializer),
) -> BatchDownloadManager:
    return BatchDownloadManager(settings, materializer)


def http_status_for(error: RegistryError) -> int:
    return STATUS_FOR_KIND.get(error.kind, status.HTTP_502_BAD_GATEWAY)


# =====================
# Endpoints
# =====================

@app.get("/api/health")
def health(settings: Settings = Depends(get_settings)):
    return {
        "status": "ok",
        "sources": {s.value: settings.enabled.get(s.value, False) for s in Source},
        "insee_configured": settings.insee_configured,
        "inpi_configured": settings.inpi_configured,
    }


@app.get("/api/search")
def search(
    q: str = Query(""),
    source: str = Query("all"),
    limit: Optional[int] = Query(None),
    offset: int = Query(0),
    active_only: bool = Query(False, alias="activeOnly"),
    orchestrator: SearchOrchestrator = Depends(get_orchestrator),
):
    """
    Search every enabled source at once. Source failures are listed in
    ``errors`` and do not change the status code.
    """
    try:
        envelope = orchestrator.search(q, source=source, limit=limit, offset=offset, active_only=active_only)
    except ValidationError as exc:
        logger.info("Rejected search %r: %s", q, exc.message)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": exc.to_dict()},
        )
    return envelope.to_dict()


@app.post("/api/documents/batch-download")
def batch_download(
    request: BatchDownloadRequest,
    manager: BatchDownloadManager = Depends(get_batch_manager),
):
    items = [CartItem.from_dict(item.model_dump()) for item in request.items]
    try:
        result = manager.run_batch(items, force=request.force)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.to_dict()) from exc
    return result.to_dict()


@app.get("/api/documents/download/{doc_type}/{siren}")
def download_document(
    doc_type: str,
    siren: str,
    siret: Optional[str] = None,
    force: bool = False,
    materializer: DocumentMaterializer = Depends(get_materializer),
):
    """
    Materialize one document and send it back as a file attachment.
    """
    company = Company(siren=siren.strip(), siret=siret, denomination=siren, source=Source.LOCAL)
    result = materializer.materialize(company, doc_type, force=force)
    if not result.ok:
        raise HTTPException(status_code=http_status_for(result.error), detail=result.error.to_dict())

    artifact = result.artifact
    return FileResponse(
        artifact.path,
        media_type=artifact.content_type,
        filename=artifact.filename,
        headers={"X-Cache": "HIT" if artifact.cached else "MISS"},
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("API_HOST", "0.0.0.0"), port=int(os.getenv("API_PORT", "8000")))
