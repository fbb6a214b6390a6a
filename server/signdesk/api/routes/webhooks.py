from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from signdesk.api.dependencies.database import get_db
from signdesk.api.dependencies.services import get_app_settings, get_correlation_id, get_signature_service
from signdesk.core.config import Settings
from signdesk.core.logging import get_logger
from signdesk.integrations.esignature import (
    InvalidWebhookSignature,
    ProviderInvalidPayload,
    ProviderMissingEnvelopeId,
    authenticate_webhook,
    parse_webhook_event,
)
from signdesk.integrations.esignature.signing import SIGNATURE_HEADER
from signdesk.models.signature import SignatureStatus
from signdesk.services.signature_service import SignatureService

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

WEBHOOK_ACTOR = "esign:webhook"


@router.post("/esign")
async def esign_webhook_endpoint(
    request: Request,
    session: AsyncSession = Depends(get_db),
    service: SignatureService = Depends(get_signature_service),
    settings: Settings = Depends(get_app_settings),
    correlation_id: str | None = Depends(get_correlation_id),
) -> JSONResponse:
    raw_body = await request.body()

    try:
        authenticate_webhook(
            raw_body,
            request.headers.get(SIGNATURE_HEADER),
            settings.esign_webhook_secret,
            require_signature=settings.hardened,
        )
    except InvalidWebhookSignature:
        logger.warning("esign.webhook.rejected", reason="invalid_signature")
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"error": "invalid_signature"})

    try:
        event = parse_webhook_event(raw_body)
    except ProviderMissingEnvelopeId:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "missing_envelope_id"})
    except ProviderInvalidPayload:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "invalid_json"})

    try:
        envelope = await service.ingest_signature_webhook_event(
            session, event, actor=WEBHOOK_ACTOR, correlation_id=correlation_id
        )
        if envelope is None:
            logger.warning("esign.webhook.unknown_envelope", signature_id=event.signature_id)
            return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content={"ok": False})

        if not event.certificate and event.status == SignatureStatus.SIGNED.value:
            await service.sync_signature_envelope_from_provider(
                session,
                event.signature_id,
                include_certificate=True,
                actor=WEBHOOK_ACTOR,
                correlation_id=correlation_id,
                source="webhook_reconciliation",
            )
    except Exception as exc:
        logger.error(
            "esign.webhook.processing_failed",
            signature_id=event.signature_id,
            error=str(exc) or type(exc).__name__,
        )
        await session.rollback()
        await service.flag_signature_envelope_for_manual_reconciliation(
            session,
            event.signature_id,
            "processing_error",
            actor=WEBHOOK_ACTOR,
            correlation_id=correlation_id,
        )
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content={"ok": False})

    logger.info("esign.webhook.processed", signature_id=event.signature_id, source=event.source)
    return JSONResponse(status_code=status.HTTP_200_OK, content={"ok": True})
