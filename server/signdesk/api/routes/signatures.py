from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from signdesk.api.dependencies.auth import Actor, require_admin
from signdesk.api.dependencies.database import get_db
from signdesk.api.dependencies.services import get_correlation_id, get_signature_service
from signdesk.core.logging import get_logger
from signdesk.integrations.esignature import ProviderError, SignerInput
from signdesk.models.signature import SignatureEnvelope
from signdesk.schemas.signature import (
    AuditEntryRead,
    ChainVerificationRead,
    EnvelopeCreate,
    EnvelopeRead,
    FlagRequest,
    SyncRequest,
)
from signdesk.services.signature_service import SignatureService

logger = get_logger(__name__)

router = APIRouter(prefix="/signatures", tags=["signatures"])


def _provider_failure(exc: ProviderError) -> HTTPException:
    logger.warning(
        "signature.api.provider_error",
        error_code=exc.error_code,
        provider=exc.provider,
        envelope_id=exc.envelope_id,
    )
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.to_dict())


def _found(envelope: SignatureEnvelope | None) -> EnvelopeRead:
    if envelope is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="signature_not_found")
    return EnvelopeRead.model_validate(envelope)


@router.post("", response_model=EnvelopeRead, status_code=status.HTTP_201_CREATED)
async def create_signature_endpoint(
    payload: EnvelopeCreate,
    session: AsyncSession = Depends(get_db),
    service: SignatureService = Depends(get_signature_service),
    actor: Actor = Depends(require_admin),
    correlation_id: str | None = Depends(get_correlation_id),
) -> EnvelopeRead:
    try:
        envelope = await service.create_signature_envelope(
            session,
            job_id=payload.job_id,
            document_id=payload.document_id,
            signers=[SignerInput(name=signer.name, email=str(signer.email)) for signer in payload.signers],
            actor=actor.audit_name,
            correlation_id=correlation_id,
        )
    except ProviderError as exc:
        raise _provider_failure(exc) from exc
    return _found(envelope)


@router.get("", response_model=List[EnvelopeRead])
async def list_signatures_endpoint(
    document_id: str = Query(min_length=1),
    session: AsyncSession = Depends(get_db),
    service: SignatureService = Depends(get_signature_service),
    _: Actor = Depends(require_admin),
) -> List[EnvelopeRead]:
    envelopes = await service.list_signatures_for_document(session, document_id)
    return [EnvelopeRead.model_validate(envelope) for envelope in envelopes]


@router.get("/{signature_id}", response_model=EnvelopeRead)
async def get_signature_endpoint(
    signature_id: str,
    session: AsyncSession = Depends(get_db),
    service: SignatureService = Depends(get_signature_service),
    _: Actor = Depends(require_admin),
) -> EnvelopeRead:
    return _found(await service.get_signature_envelope(session, signature_id))


@router.put("/{signature_id}/complete", response_model=EnvelopeRead)
async def complete_signature_endpoint(
    signature_id: str,
    session: AsyncSession = Depends(get_db),
    service: SignatureService = Depends(get_signature_service),
    actor: Actor = Depends(require_admin),
    correlation_id: str | None = Depends(get_correlation_id),
) -> EnvelopeRead:
    try:
        envelope = await service.complete_signature_envelope(
            session, signature_id, actor=actor.audit_name, correlation_id=correlation_id
        )
    except ProviderError as exc:
        raise _provider_failure(exc) from exc
    return _found(envelope)


@router.post("/{signature_id}/sync", response_model=EnvelopeRead)
async def sync_signature_endpoint(
    signature_id: str,
    payload: SyncRequest | None = None,
    session: AsyncSession = Depends(get_db),
    service: SignatureService = Depends(get_signature_service),
    actor: Actor = Depends(require_admin),
    correlation_id: str | None = Depends(get_correlation_id),
) -> EnvelopeRead:
    envelope = await service.sync_signature_envelope_from_provider(
        session,
        signature_id,
        include_certificate=(payload or SyncRequest()).include_certificate,
        actor=actor.audit_name,
        correlation_id=correlation_id,
        source="operator_sync",
    )
    return _found(envelope)


@router.post("/{signature_id}/flag", response_model=EnvelopeRead)
async def flag_signature_endpoint(
    signature_id: str,
    payload: FlagRequest | None = None,
    session: AsyncSession = Depends(get_db),
    service: SignatureService = Depends(get_signature_service),
    actor: Actor = Depends(require_admin),
    correlation_id: str | None = Depends(get_correlation_id),
) -> EnvelopeRead:
    envelope = await service.flag_signature_envelope_for_manual_reconciliation(
        session, signature_id, (payload or FlagRequest()).reason, actor=actor.audit_name, correlation_id=correlation_id
    )
    return _found(envelope)


@router.get("/{signature_id}/audit", response_model=List[AuditEntryRead])
async def list_signature_audit_endpoint(
    signature_id: str,
    session: AsyncSession = Depends(get_db),
    service: SignatureService = Depends(get_signature_service),
    _: Actor = Depends(require_admin),
) -> List[AuditEntryRead]:
    _found(await service.get_signature_envelope(session, signature_id))
    entries = await service.list_signature_audit(session, signature_id)
    return [AuditEntryRead.model_validate(entry) for entry in entries]


@router.get("/{signature_id}/audit/verify", response_model=ChainVerificationRead)
async def verify_signature_audit_endpoint(
    signature_id: str,
    session: AsyncSession = Depends(get_db),
    service: SignatureService = Depends(get_signature_service),
    actor: Actor = Depends(require_admin),
    correlation_id: str | None = Depends(get_correlation_id),
) -> ChainVerificationRead:
    verification = await service.verify_signature_audit_chain(
        session, signature_id, actor=actor.audit_name, correlation_id=correlation_id
    )
    if verification is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="signature_not_found")
    return ChainVerificationRead.model_validate(verification)
