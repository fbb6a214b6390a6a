"""
Provider payload normalization

Every adapter funnels raw provider payloads through
``normalize_envelope_payload``. Providers differ only in the alias table they
hand it, never in merge logic.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .base import (
    ProviderCertificate,
    ProviderCompletedSigner,
    ProviderEnvelope,
    ProviderInvalidPayload,
    ProviderMissingCertificate,
    ProviderMissingEnvelopeId,
    ProviderSigner,
)


SIGNED_STATUSES = frozenset({"completed", "signed", "finished"})
DECLINED_STATUSES = frozenset({"declined", "voided", "canceled", "cancelled", "rejected"})
SENT_STATUSES = frozenset({"sent", "delivered", "pending", "created", "in_progress", "in-progress"})


@dataclass(frozen=True)
class ProviderFieldAliases:
    """Field names tried, in priority order, for each canonical field."""
    envelope_id: Tuple[str, ...] = ("envelopeId", "id", "envelope_id")
    status: Tuple[str, ...] = ("status", "state")
    provider_reference: Tuple[str, ...] = ("providerReference", "reference", "externalId")
    certificate: Tuple[str, ...] = ("certificate", "certificateData", "certificateBase64")
    signers: Tuple[str, ...] = ("signers", "recipients")
    signer_email: Tuple[str, ...] = ("email", "emailAddress", "address")
    signer_name: Tuple[str, ...] = ("name", "fullName", "recipientName")
    signer_url: Tuple[str, ...] = ("signingUrl", "url", "recipientUrl", "link")
    signer_status: Tuple[str, ...] = ("status", "state")
    completed_at: Tuple[str, ...] = ("completedAt", "completed_at", "signedAt")
    completed: Tuple[str, ...] = ("completed", "completedBy")
    completed_email: Tuple[str, ...] = ("email", "emailAddress")
    # Wrapper objects some vendors nest the envelope inside.
    unwrap: Tuple[str, ...] = ()


DEFAULT_ALIASES = ProviderFieldAliases()


def normalize_status(status: Any) -> Optional[str]:
    """Map a provider status onto the canonical vocabulary, case-insensitively."""
    if not isinstance(status, str) or not status.strip():
        return None
    normalized = status.strip().lower()
    if normalized in SIGNED_STATUSES:
        return "signed"
    if normalized in DECLINED_STATUSES:
        return "declined"
    if normalized in SENT_STATUSES:
        return "sent"
    return status.strip()


def normalize_email(email: str) -> str:
    return email.strip().lower()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a provider ISO-8601 timestamp; naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _string(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _first(node: Dict[str, Any], names: Iterable[str]) -> Optional[str]:
    for name in names:
        value = _string(node.get(name))
        if value:
            return value
    return None


def _first_list(node: Dict[str, Any], names: Iterable[str]) -> List[Any]:
    for name in names:
        value = node.get(name)
        if isinstance(value, list):
            return value
    return []


def _unwrap(node: Dict[str, Any], names: Iterable[str]) -> Dict[str, Any]:
    for name in names:
        inner = node.get(name)
        if isinstance(inner, dict):
            return inner
    return node


def dedupe_completed(entries: Iterable[ProviderCompletedSigner]) -> List[ProviderCompletedSigner]:
    """De-duplicate by email keeping first-seen order; a timestamp beats none."""
    merged: Dict[str, ProviderCompletedSigner] = {}
    for entry in entries:
        existing = merged.get(entry.email)
        if existing is None:
            merged[entry.email] = entry
        elif not existing.completed_at and entry.completed_at:
            merged[entry.email] = replace(existing, completed_at=entry.completed_at)
    return list(merged.values())


def normalize_envelope_payload(
    payload: Any,
    fallback_id: Optional[str] = None,
    aliases: ProviderFieldAliases = DEFAULT_ALIASES,
) -> ProviderEnvelope:
    """
    Normalize a raw provider payload into a ProviderEnvelope.

    Args:
        payload: Decoded provider response
        fallback_id: Envelope id to use when the payload carries none
        aliases: Provider specific field aliases

    Returns:
        ProviderEnvelope

    Raises:
        ProviderInvalidPayload: If the payload is not an object
        ProviderMissingEnvelopeId: If no envelope id can be resolved
    """
    if not isinstance(payload, dict):
        raise ProviderInvalidPayload()
    node = _unwrap(payload, aliases.unwrap)

    envelope_id = _first(node, aliases.envelope_id) or _string(fallback_id)
    if not envelope_id:
        raise ProviderMissingEnvelopeId()

    signers: List[ProviderSigner] = []
    completed: List[ProviderCompletedSigner] = []

    for entry in _first_list(node, aliases.signers):
        if not isinstance(entry, dict):
            continue
        email = _first(entry, aliases.signer_email)
        if not email:
            continue
        email = normalize_email(email)
        completed_at = _first(entry, aliases.completed_at)
        signers.append(
            ProviderSigner(
                email=email,
                name=_first(entry, aliases.signer_name),
                signing_url=_first(entry, aliases.signer_url),
                completed_at=completed_at,
            )
        )
        if normalize_status(_first(entry, aliases.signer_status)) == "signed" or completed_at:
            completed.append(ProviderCompletedSigner(email=email, completed_at=completed_at))

    for entry in _first_list(node, aliases.completed):
        if not isinstance(entry, dict):
            continue
        email = _first(entry, aliases.completed_email)
        if not email:
            continue
        completed.append(
            ProviderCompletedSigner(
                email=normalize_email(email),
                completed_at=_first(entry, aliases.completed_at),
            )
        )

    return ProviderEnvelope(
        envelope_id=envelope_id,
        provider_reference=_first(node, aliases.provider_reference),
        status=normalize_status(_first(node, aliases.status)),
        signers=signers,
        completed_by=dedupe_completed(completed),
        certificate=_first(node, aliases.certificate),
        raw=payload,
    )


def to_certificate(envelope: ProviderEnvelope, provider_id: Optional[str] = None) -> ProviderCertificate:
    """Narrow a normalized envelope to a certificate, or fail if none was issued."""
    if not envelope.certificate:
        raise ProviderMissingCertificate(provider=provider_id, envelope_id=envelope.envelope_id)
    return ProviderCertificate(
        envelope_id=envelope.envelope_id,
        certificate=envelope.certificate,
        provider_reference=envelope.provider_reference,
        status=envelope.status,
        completed_by=list(envelope.completed_by),
        raw=envelope.raw,
    )
