from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from signdesk.core.logging import get_logger
from signdesk.models.signature import SignatureAuditEntry
from signdesk.services.tracing import emit_trace

logger = get_logger(__name__)

GENESIS_HASH = ""


@dataclass(slots=True)
class ChainVerification:
    signature_id: str
    valid: bool
    entries_checked: int
    broken_entry_id: str | None = None
    reason: str | None = None


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def canonical_metadata(metadata: dict[str, Any] | None) -> str:
    return json.dumps(metadata or {}, sort_keys=True, separators=(",", ":"), default=str)


def audit_timestamp(moment: datetime | None = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def compute_entry_hash(
    previous_hash: str,
    signature_id: str,
    action: str,
    actor: str,
    created_at: str,
    metadata_json: str,
) -> str:
    return sha256_hex(f"{previous_hash}:{signature_id}:{action}:{actor}:{created_at}:{metadata_json}")


async def latest_entry(session: AsyncSession, signature_id: str) -> SignatureAuditEntry | None:
    result = await session.execute(
        select(SignatureAuditEntry)
        .where(SignatureAuditEntry.signature_id == signature_id)
        .order_by(SignatureAuditEntry.sequence.desc())
        .limit(1)
    )
    return result.scalars().first()


async def record_audit(
    session: AsyncSession,
    signature_id: str,
    action: str,
    actor: str,
    metadata: dict[str, Any] | None = None,
    *,
    correlation_id: str | None = None,
) -> SignatureAuditEntry:
    """Append a chained entry. Callers must hold the envelope lock."""
    previous = await latest_entry(session, signature_id)
    previous_hash = previous.entry_hash if previous else GENESIS_HASH
    created_at = audit_timestamp()
    # Keep creation order monotonic even if the wall clock steps back.
    if previous is not None and created_at < previous.created_at:
        created_at = previous.created_at

    details = dict(metadata or {})
    if correlation_id:
        details["correlationId"] = correlation_id
    metadata_json = canonical_metadata(details)

    entry = SignatureAuditEntry(
        signature_id=signature_id,
        sequence=(previous.sequence + 1) if previous else 1,
        action=action,
        actor=actor,
        metadata_json=metadata_json,
        created_at=created_at,
        previous_hash=previous_hash,
        entry_hash=compute_entry_hash(previous_hash, signature_id, action, actor, created_at, metadata_json),
    )
    session.add(entry)
    await session.flush()

    logger.info("signature.audit.recorded", signature_id=signature_id, action=action, sequence=entry.sequence)
    emit_trace(
        correlation_id or signature_id,
        "signature_audit",
        signature_id=signature_id,
        action=action,
        actor=actor,
        entry_hash=entry.entry_hash,
    )
    return entry


async def list_audit(session: AsyncSession, signature_id: str) -> Sequence[SignatureAuditEntry]:
    result = await session.execute(
        select(SignatureAuditEntry)
        .where(SignatureAuditEntry.signature_id == signature_id)
        .order_by(SignatureAuditEntry.sequence)
    )
    return result.scalars().all()


def verify_entries(signature_id: str, entries: Sequence[SignatureAuditEntry]) -> ChainVerification:
    expected_previous = GENESIS_HASH
    last_created_at = ""
    for index, entry in enumerate(entries, start=1):
        if entry.sequence != index:
            return ChainVerification(signature_id, False, index, entry.id, "sequence_gap")
        if entry.previous_hash != expected_previous:
            return ChainVerification(signature_id, False, index, entry.id, "previous_hash_mismatch")
        if entry.created_at < last_created_at:
            return ChainVerification(signature_id, False, index, entry.id, "timestamp_out_of_order")
        recomputed = compute_entry_hash(
            entry.previous_hash,
            entry.signature_id,
            entry.action,
            entry.actor,
            entry.created_at,
            entry.metadata_json,
        )
        if recomputed != entry.entry_hash:
            return ChainVerification(signature_id, False, index, entry.id, "entry_hash_mismatch")
        expected_previous = entry.entry_hash
        last_created_at = entry.created_at
    return ChainVerification(signature_id, True, len(entries))


async def verify_chain(session: AsyncSession, signature_id: str) -> ChainVerification:
    entries = await list_audit(session, signature_id)
    return verify_entries(signature_id, entries)
