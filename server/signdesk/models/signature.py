from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from signdesk.db.base import Base
from signdesk.models.mixins import CreatedAtMixin, Identifier


class SignatureStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    SIGNED = "signed"
    DECLINED = "declined"
    PENDING_MANUAL_REVIEW = "pending_manual_review"


TERMINAL_STATUSES = frozenset({SignatureStatus.SIGNED.value, SignatureStatus.DECLINED.value})


class SignatureEnvelope(CreatedAtMixin, Base):
    __tablename__ = "document_signatures"

    # Provider-assigned envelope id doubles as the local key.
    id: Mapped[str] = mapped_column(String(120), primary_key=True)
    job_id: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    document_id: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(80), nullable=False)
    status: Mapped[str] = mapped_column(String(40), nullable=False, default=SignatureStatus.PENDING.value)
    provider_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    certificate_hash: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    signed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    signers: Mapped[list["SignatureSigner"]] = relationship(
        back_populates="envelope",
        order_by="SignatureSigner.position",
        lazy="selectin",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class SignatureSigner(CreatedAtMixin, Base):
    __tablename__ = "document_signature_signers"
    __table_args__ = (UniqueConstraint("signature_id", "email", name="uq_signature_signer_email"),)

    id: Mapped[Identifier]
    signature_id: Mapped[str] = mapped_column(ForeignKey("document_signatures.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    signing_url: Mapped[str] = mapped_column(Text, nullable=False, default="")
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    envelope: Mapped[SignatureEnvelope] = relationship(back_populates="signers")


class SignatureAuditEntry(Base):
    __tablename__ = "document_signature_audit"
    __table_args__ = (UniqueConstraint("signature_id", "sequence", name="uq_signature_audit_sequence"),)

    id: Mapped[Identifier]
    signature_id: Mapped[str] = mapped_column(ForeignKey("document_signatures.id"), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(120), nullable=False)
    actor: Mapped[str] = mapped_column(String(255), nullable=False, default="system")
    # Exact serialized metadata and timestamp strings that were hashed.
    metadata_json: Mapped[str] = mapped_column("metadata", Text, nullable=False, default="{}")
    created_at: Mapped[str] = mapped_column(String(32), nullable=False)
    previous_hash: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)
