from signdesk.models.signature import (
    SignatureAuditEntry,
    SignatureEnvelope,
    SignatureSigner,
    SignatureStatus,
    TERMINAL_STATUSES,
)

__all__ = [
    "SignatureAuditEntry",
    "SignatureEnvelope",
    "SignatureSigner",
    "SignatureStatus",
    "TERMINAL_STATUSES",
]
