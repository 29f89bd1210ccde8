import logging
from typing import Any

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from app.core.config import get_settings
from app.schemas.ingestion import IngestionRecord, IngestionRecordsResponse, IngestionResponse
from app.services.ingestion_service import EmailIngestionService

router = APIRouter(prefix="/ingest", tags=["ingestion"])
logger = logging.getLogger(__name__)


@router.post(
    "/email",
    response_model=IngestionResponse,
    responses={
        208: {"model": IngestionResponse},
        400: {"model": IngestionResponse},
        401: {"model": IngestionResponse},
        409: {"model": IngestionResponse},
        500: {"model": IngestionResponse},
    },
)
def receive_email_webhook(
    payload: dict[str, Any],
    request: Request,
) -> JSONResponse:
    settings = get_settings()
    logger.info(
        "Webhook received path=%s has_signature=%s",
        str(request.url.path),
        bool(request.headers.get(settings.webhook_signature_header)),
    )
    service = EmailIngestionService(settings)
    outcome = service.process_webhook(payload=payload, headers=dict(request.headers))
    return JSONResponse(
        status_code=outcome.status_code,
        content=outcome.response.model_dump(mode="json", exclude_none=True),
    )


@router.get("/records", response_model=IngestionRecordsResponse)
def list_ingestion_records(limit: int = Query(default=50, ge=1)) -> IngestionRecordsResponse:
    service = EmailIngestionService(get_settings())
    return service.list_records(limit=limit)


@router.get("/records/{message_id}", response_model=IngestionRecord)
def get_ingestion_record(message_id: str) -> IngestionRecord:
    service = EmailIngestionService(get_settings())
    return service.get_record(message_id)
