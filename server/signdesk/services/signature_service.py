from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from signdesk.core.logging import get_logger
from signdesk.integrations.esignature import (
    ESignatureProvider,
    ProviderCompletedSigner,
    ProviderEnvelope,
    ProviderError,
    ProviderSigner,
    SignerInput,
    WebhookEvent,
)
from signdesk.integrations.esignature.normalize import normalize_email, normalize_status, parse_timestamp
from signdesk.models.mixins import utcnow
from signdesk.models.signature import (
    TERMINAL_STATUSES,
    SignatureAuditEntry,
    SignatureEnvelope,
    SignatureStatus,
)
from signdesk.services import audit_chain, envelope_store
from signdesk.services.audit_chain import ChainVerification, sha256_hex
from signdesk.services.envelope_store import SignerCompletion, SignerRecord
from signdesk.services.locks import EnvelopeLocks

logger = get_logger(__name__)

SYSTEM_ACTOR = "system"


@dataclass
class SignatureUpdate:
    """Provider-observed state to merge into a stored envelope."""
    status: str | None = None
    provider_reference: str | None = None
    certificate: str | None = None
    signers: list[ProviderSigner] = field(default_factory=list)
    completed: list[ProviderCompletedSigner] = field(default_factory=list)

    @classmethod
    def from_provider_envelope(cls, envelope: ProviderEnvelope) -> "SignatureUpdate":
        return cls(
            status=envelope.status,
            provider_reference=envelope.provider_reference,
            certificate=envelope.certificate,
            signers=list(envelope.signers),
            completed=list(envelope.completed_by),
        )

    @classmethod
    def from_webhook_event(cls, event: WebhookEvent) -> "SignatureUpdate":
        return cls(
            status=event.status,
            provider_reference=event.provider_reference,
            certificate=event.certificate,
            signers=list(event.signers),
            completed=list(event.completed),
        )


def resolve_status(current: str, incoming: str | None) -> str:
    """Terminal states stick; manual review only yields to a terminal state."""
    if not incoming or incoming == current:
        return current
    if current in TERMINAL_STATUSES:
        return current
    if current == SignatureStatus.PENDING_MANUAL_REVIEW.value and incoming not in TERMINAL_STATUSES:
        return current
    return incoming


def latest_completion(update: SignatureUpdate) -> datetime | None:
    stamps = [
        parse_timestamp(entry.completed_at)
        for entry in [*update.completed, *update.signers]
        if entry.completed_at
    ]
    stamps = [stamp for stamp in stamps if stamp is not None]
    return max(stamps) if stamps else None


def merge_creation_signers(requested: Sequence[SignerInput], provided: Sequence[ProviderSigner]) -> list[SignerRecord]:
    """Caller order first, provider data winning per email, provider-only signers appended."""
    by_email = {signer.email: signer for signer in provided}
    merged: list[SignerRecord] = []
    seen: set[str] = set()
    for signer in requested:
        email = normalize_email(signer.email)
        remote = by_email.get(email)
        merged.append(
            SignerRecord(
                email=email,
                name=(remote.name if remote and remote.name else signer.name.strip()),
                signing_url=(remote.signing_url if remote and remote.signing_url else ""),
            )
        )
        seen.add(email)
    for remote in provided:
        if remote.email not in seen:
            merged.append(SignerRecord(email=remote.email, name=remote.name or "", signing_url=remote.signing_url or ""))
            seen.add(remote.email)
    return merged


def _dedupe_requested(signers: Sequence[SignerInput]) -> list[SignerInput]:
    unique: dict[str, SignerInput] = {}
    for signer in signers:
        email = normalize_email(signer.email or "")
        if email and email not in unique:
            unique[email] = SignerInput(name=(signer.name or "").strip(), email=email)
    return list(unique.values())


def _isoformat(moment: datetime | None) -> str | None:
    return moment.isoformat() if moment else None


class SignatureService:
    """
    Envelope lifecycle and reconciliation.

    Every path that changes an envelope (creation, operator completion,
    provider webhooks and poll sweeps) ends in a locked read-modify-write
    that appends exactly one audit chain entry. Provider calls always run
    outside the envelope lock.
    """

    def __init__(self, provider: ESignatureProvider, locks: EnvelopeLocks | None = None) -> None:
        self.provider = provider
        self.locks = locks or EnvelopeLocks()

    async def get_signature_envelope(self, session: AsyncSession, envelope_id: str) -> SignatureEnvelope | None:
        return await envelope_store.get_envelope(session, envelope_id)

    async def list_signatures_for_document(
        self, session: AsyncSession, document_id: str
    ) -> Sequence[SignatureEnvelope]:
        return await envelope_store.list_envelopes_for_document(session, document_id)

    async def list_signature_audit(self, session: AsyncSession, envelope_id: str) -> Sequence[SignatureAuditEntry]:
        return await audit_chain.list_audit(session, envelope_id)

    async def create_signature_envelope(
        self,
        session: AsyncSession,
        *,
        job_id: str,
        document_id: str,
        signers: Sequence[SignerInput],
        actor: str = SYSTEM_ACTOR,
        correlation_id: str | None = None,
    ) -> SignatureEnvelope:
        requested = _dedupe_requested(signers)
        if not requested:
            raise ValueError("At least one signer with an email address is required")

        # Provider errors propagate before anything is persisted.
        remote = await self.provider.create_envelope(job_id, document_id, requested)
        records = merge_creation_signers(requested, remote.signers)
        status = normalize_status(remote.status) or SignatureStatus.SENT.value

        async with self.locks.hold(remote.envelope_id):
            try:
                envelope = await envelope_store.insert_envelope(
                    session,
                    envelope_id=remote.envelope_id,
                    job_id=job_id,
                    document_id=document_id,
                    provider=self.provider.provider_id,
                    status=status,
                    provider_reference=remote.provider_reference,
                    signers=records,
                )
                await audit_chain.record_audit(
                    session,
                    envelope.id,
                    "envelope_created",
                    actor,
                    {
                        "jobId": job_id,
                        "documentId": document_id,
                        "provider": self.provider.provider_id,
                        "status": status,
                        "providerReference": remote.provider_reference,
                        "signers": [record.email for record in records],
                    },
                    correlation_id=correlation_id,
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        logger.info(
            "signature.envelope.created",
            signature_id=remote.envelope_id,
            job_id=job_id,
            document_id=document_id,
            provider=self.provider.provider_id,
            signers=len(records),
        )
        return await envelope_store.get_envelope(session, remote.envelope_id)

    async def apply_update(
        self,
        session: AsyncSession,
        envelope_id: str,
        update: SignatureUpdate,
        *,
        actor: str = SYSTEM_ACTOR,
        correlation_id: str | None = None,
        source: str = "provider",
    ) -> SignatureEnvelope | None:
        """
        Merge provider-observed state into a stored envelope.

        Args:
            session: Database session
            envelope_id: Envelope to update
            update: Observed state
            actor: Audit actor
            correlation_id: Request correlation id
            source: Origin tag, recorded as ``provider_update.{source}``

        Returns:
            The refreshed envelope, or None when it does not exist
        """
        async with self.locks.hold(envelope_id):
            try:
                envelope = await envelope_store.get_envelope(session, envelope_id, for_update=True)
                if envelope is None:
                    await session.rollback()
                    logger.warning("signature.update.unknown_envelope", signature_id=envelope_id, source=source)
                    return None

                previous_status = envelope.status
                incoming_status = SignatureStatus.SIGNED.value if update.certificate else normalize_status(update.status)
                next_status = resolve_status(previous_status, incoming_status)
                is_signed = next_status == SignatureStatus.SIGNED.value

                # Only a signed envelope holds a certificate hash.
                certificate_hash = sha256_hex(update.certificate) if update.certificate else None
                rejected_certificate = certificate_hash if certificate_hash and not is_signed else None
                certificate_changed = (
                    is_signed and certificate_hash is not None and certificate_hash != envelope.certificate_hash
                )

                signed_at = None
                if envelope.signed_at is None and is_signed:
                    signed_at = latest_completion(update) or utcnow()

                reference_changed = bool(update.provider_reference) and (
                    update.provider_reference != envelope.provider_reference
                )
                await envelope_store.update_envelope_fields(
                    session,
                    envelope_id,
                    status=next_status if next_status != previous_status else None,
                    provider_reference=update.provider_reference if reference_changed else None,
                    certificate_hash=certificate_hash if certificate_changed else None,
                    signed_at=signed_at,
                )
                unmatched = await envelope_store.update_signer_links(
                    session,
                    envelope_id,
                    [
                        SignerRecord(
                            email=normalize_email(signer.email),
                            name=signer.name or "",
                            signing_url=signer.signing_url or "",
                        )
                        for signer in update.signers
                    ],
                )
                completed = await envelope_store.mark_signers_completed(
                    session,
                    envelope_id,
                    [
                        SignerCompletion(
                            email=normalize_email(entry.email),
                            completed_at=parse_timestamp(entry.completed_at),
                        )
                        for entry in update.completed
                    ],
                )

                envelope = await envelope_store.get_envelope(session, envelope_id)
                details: dict[str, Any] = {
                    "previousStatus": previous_status,
                    "status": envelope.status,
                    "providerReference": envelope.provider_reference,
                    "certificateHash": envelope.certificate_hash or None,
                    "certificateChanged": certificate_changed,
                    "signedAt": _isoformat(envelope.signed_at),
                    "completedSigners": sorted(completed),
                    "signers": [
                        {"email": signer.email, "completed": signer.completed}
                        for signer in envelope.signers
                    ],
                }
                if unmatched:
                    details["unmatchedSigners"] = sorted(unmatched)
                if rejected_certificate:
                    details["rejectedCertificateHash"] = rejected_certificate
                await audit_chain.record_audit(
                    session,
                    envelope_id,
                    f"provider_update.{source}",
                    actor,
                    details,
                    correlation_id=correlation_id,
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        logger.info(
            "signature.envelope.updated",
            signature_id=envelope_id,
            source=source,
            previous_status=previous_status,
            status=envelope.status,
        )
        return envelope

    async def complete_signature_envelope(
        self,
        session: AsyncSession,
        envelope_id: str,
        *,
        actor: str = SYSTEM_ACTOR,
        correlation_id: str | None = None,
    ) -> SignatureEnvelope | None:
        envelope = await envelope_store.get_envelope(session, envelope_id)
        if envelope is None:
            return None
        await session.commit()

        await self.sync_signature_envelope_from_provider(
            session,
            envelope_id,
            include_certificate=False,
            actor=actor,
            correlation_id=correlation_id,
            source="manual_completion_preflight",
        )
        certificate = await self.provider.download_certificate(envelope_id)
        return await self.apply_update(
            session,
            envelope_id,
            SignatureUpdate(
                status=certificate.status or SignatureStatus.SIGNED.value,
                provider_reference=certificate.provider_reference,
                certificate=certificate.certificate,
                completed=list(certificate.completed_by),
            ),
            actor=actor,
            correlation_id=correlation_id,
            source="manual_completion",
        )

    async def sync_signature_envelope_from_provider(
        self,
        session: AsyncSession,
        envelope_id: str,
        *,
        include_certificate: bool = True,
        actor: str = SYSTEM_ACTOR,
        correlation_id: str | None = None,
        source: str = "provider_sync",
    ) -> SignatureEnvelope | None:
        """Pull remote state into the local envelope. Provider failures are audited, never raised."""
        local = await envelope_store.get_envelope(session, envelope_id)
        if local is None:
            return None
        has_certificate = bool(local.certificate_hash)
        await session.commit()

        try:
            remote = await self.provider.get_envelope(envelope_id)
        except ProviderError as exc:
            logger.warning(
                "signature.sync.failed",
                signature_id=envelope_id,
                error_code=exc.error_code,
                provider=exc.provider,
            )
            await self._record_event(
                session,
                envelope_id,
                "provider_sync_failed",
                actor,
                {"source": source, "error": exc.error_code, "provider": exc.provider},
                correlation_id=correlation_id,
            )
            return await envelope_store.get_envelope(session, envelope_id)

        update = SignatureUpdate.from_provider_envelope(remote)
        if include_certificate and not has_certificate and not update.certificate:
            try:
                certificate = await self.provider.download_certificate(envelope_id)
            except ProviderError as exc:
                logger.warning(
                    "signature.sync.certificate_failed",
                    signature_id=envelope_id,
                    error_code=exc.error_code,
                )
                await self._record_event(
                    session,
                    envelope_id,
                    "provider_certificate_download_failed",
                    actor,
                    {"source": source, "error": exc.error_code, "provider": exc.provider},
                    correlation_id=correlation_id,
                )
            else:
                update.certificate = certificate.certificate
                update.provider_reference = update.provider_reference or certificate.provider_reference
                update.completed.extend(certificate.completed_by)

        return await self.apply_update(
            session,
            envelope_id,
            update,
            actor=actor,
            correlation_id=correlation_id,
            source=source,
        )

    async def ingest_signature_webhook_event(
        self,
        session: AsyncSession,
        event: WebhookEvent,
        *,
        actor: str = "esign:webhook",
        correlation_id: str | None = None,
    ) -> SignatureEnvelope | None:
        return await self.apply_update(
            session,
            event.signature_id,
            SignatureUpdate.from_webhook_event(event),
            actor=actor,
            correlation_id=correlation_id,
            source=event.source,
        )

    async def flag_signature_envelope_for_manual_reconciliation(
        self,
        session: AsyncSession,
        envelope_id: str,
        reason: str,
        *,
        actor: str = SYSTEM_ACTOR,
        correlation_id: str | None = None,
    ) -> SignatureEnvelope | None:
        async with self.locks.hold(envelope_id):
            try:
                envelope = await envelope_store.get_envelope(session, envelope_id, for_update=True)
                if envelope is None:
                    await session.rollback()
                    return None
                previous_status = envelope.status
                if not envelope.is_terminal:
                    await envelope_store.update_envelope_fields(
                        session, envelope_id, status=SignatureStatus.PENDING_MANUAL_REVIEW.value
                    )
                await audit_chain.record_audit(
                    session,
                    envelope_id,
                    "manual_reconciliation_flagged",
                    actor,
                    {"reason": reason, "previousStatus": previous_status},
                    correlation_id=correlation_id,
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        logger.warning("signature.envelope.flagged", signature_id=envelope_id, reason=reason)
        return await envelope_store.get_envelope(session, envelope_id)

    async def verify_signature_audit_chain(
        self,
        session: AsyncSession,
        envelope_id: str,
        *,
        actor: str = SYSTEM_ACTOR,
        correlation_id: str | None = None,
    ) -> ChainVerification | None:
        envelope = await envelope_store.get_envelope(session, envelope_id)
        if envelope is None:
            return None
        verification = await audit_chain.verify_chain(session, envelope_id)
        await session.commit()
        if not verification.valid:
            logger.error(
                "signature.audit.chain_broken",
                signature_id=envelope_id,
                broken_entry_id=verification.broken_entry_id,
                reason=verification.reason,
            )
            await self.flag_signature_envelope_for_manual_reconciliation(
                session,
                envelope_id,
                "audit_chain_broken",
                actor=actor,
                correlation_id=correlation_id,
            )
        return verification

    async def _record_event(
        self,
        session: AsyncSession,
        envelope_id: str,
        action: str,
        actor: str,
        metadata: dict[str, Any],
        *,
        correlation_id: str | None = None,
    ) -> None:
        async with self.locks.hold(envelope_id):
            try:
                await audit_chain.record_audit(
                    session, envelope_id, action, actor, metadata, correlation_id=correlation_id
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise
