from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Sequence

from sqlalchemy import DateTime, String, func, literal, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from signdesk.core.logging import get_logger
from signdesk.models.mixins import utcnow
from signdesk.models.signature import TERMINAL_STATUSES, SignatureEnvelope, SignatureSigner

logger = get_logger(__name__)


@dataclass(slots=True)
class SignerRecord:
    email: str
    name: str = ""
    signing_url: str = ""


@dataclass(slots=True)
class SignerCompletion:
    email: str
    completed_at: datetime | None = None


def _keep_existing(value: str | None, column):
    """Incoming value unless empty, then whatever is stored."""
    return func.coalesce(func.nullif(literal(value or "", String()), ""), column)


async def get_envelope(
    session: AsyncSession, envelope_id: str, *, for_update: bool = False
) -> SignatureEnvelope | None:
    stmt = (
        select(SignatureEnvelope)
        .where(SignatureEnvelope.id == envelope_id)
        .options(selectinload(SignatureEnvelope.signers))
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalars().first()


async def list_envelopes_for_document(session: AsyncSession, document_id: str) -> Sequence[SignatureEnvelope]:
    result = await session.execute(
        select(SignatureEnvelope)
        .where(SignatureEnvelope.document_id == document_id)
        .options(selectinload(SignatureEnvelope.signers))
        .order_by(SignatureEnvelope.created_at.desc(), SignatureEnvelope.id)
    )
    return result.scalars().all()


async def list_open_envelopes(session: AsyncSession, limit: int = 100) -> Sequence[SignatureEnvelope]:
    result = await session.execute(
        select(SignatureEnvelope)
        .where(SignatureEnvelope.status.not_in(TERMINAL_STATUSES))
        .order_by(SignatureEnvelope.created_at)
        .limit(limit)
    )
    return result.scalars().all()


async def insert_envelope(
    session: AsyncSession,
    *,
    envelope_id: str,
    job_id: str,
    document_id: str,
    provider: str,
    status: str,
    provider_reference: str | None,
    signers: Iterable[SignerRecord],
) -> SignatureEnvelope:
    envelope = SignatureEnvelope(
        id=envelope_id,
        job_id=job_id,
        document_id=document_id,
        provider=provider,
        status=status,
        provider_reference=provider_reference,
        certificate_hash="",
        signers=[
            SignatureSigner(
                email=signer.email,
                name=signer.name,
                signing_url=signer.signing_url,
                completed=False,
                position=position,
            )
            for position, signer in enumerate(signers)
        ],
    )
    session.add(envelope)
    await session.flush()
    return envelope


async def update_envelope_fields(
    session: AsyncSession,
    envelope_id: str,
    *,
    status: str | None = None,
    provider_reference: str | None = None,
    certificate_hash: str | None = None,
    signed_at: datetime | None = None,
) -> None:
    """Write only the supplied fields; ``signed_at`` never replaces a stored value."""
    values = {}
    if status is not None:
        values["status"] = func.coalesce(literal(status, String()), SignatureEnvelope.status)
    if provider_reference is not None:
        values["provider_reference"] = func.coalesce(
            literal(provider_reference, String()), SignatureEnvelope.provider_reference
        )
    if certificate_hash is not None:
        values["certificate_hash"] = func.coalesce(
            literal(certificate_hash, String()), SignatureEnvelope.certificate_hash
        )
    if signed_at is not None:
        values["signed_at"] = func.coalesce(
            SignatureEnvelope.signed_at, literal(signed_at, DateTime(timezone=True))
        )
    if not values:
        return
    await session.execute(
        update(SignatureEnvelope)
        .where(SignatureEnvelope.id == envelope_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


async def update_signer_links(
    session: AsyncSession, envelope_id: str, signers: Iterable[SignerRecord]
) -> list[str]:
    """Update name/link by email for signers stored at creation. Returns emails with no stored signer."""
    unmatched: list[str] = []
    for signer in signers:
        result = await session.execute(
            update(SignatureSigner)
            .where(SignatureSigner.signature_id == envelope_id, SignatureSigner.email == signer.email)
            .values(
                name=_keep_existing(signer.name, SignatureSigner.name),
                signing_url=_keep_existing(signer.signing_url, SignatureSigner.signing_url),
            )
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount and signer.email not in unmatched:
            unmatched.append(signer.email)
    if unmatched:
        logger.warning("signature.signer.unmatched", signature_id=envelope_id, emails=unmatched)
    return unmatched


async def mark_signers_completed(
    session: AsyncSession, envelope_id: str, completions: Iterable[SignerCompletion]
) -> list[str]:
    """Flag signers completed; returns the emails that matched a stored signer."""
    now = utcnow()
    matched: list[str] = []
    for completion in completions:
        candidates = [SignatureSigner.completed_at, literal(now, DateTime(timezone=True))]
        if completion.completed_at is not None:
            candidates.insert(0, literal(completion.completed_at, DateTime(timezone=True)))
        result = await session.execute(
            update(SignatureSigner)
            .where(SignatureSigner.signature_id == envelope_id, SignatureSigner.email == completion.email)
            .values(completed=True, completed_at=func.coalesce(*candidates))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            matched.append(completion.email)
    return matched
