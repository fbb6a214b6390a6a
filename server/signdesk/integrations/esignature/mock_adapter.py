"""
In-memory e-signature provider

Simulates a provider state machine for tests and local operation. Every
response is built as a raw payload and normalized like a live provider's.
"""

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional
from urllib.parse import quote

from signdesk.core.logging import get_logger

from .base import (
    ESignatureProvider,
    ESignatureType,
    ProviderCertificate,
    ProviderEnvelope,
    ProviderError,
    ProviderNotConfigured,
    SignerInput,
)
from .normalize import normalize_email, normalize_envelope_payload, to_certificate

logger = get_logger(__name__)

MOCK_SIGNING_HOST = "https://mock-esign.local"


@dataclass
class _MockSigner:
    name: str
    email: str
    signing_url: str
    completed_at: Optional[str] = None


@dataclass
class _MockEnvelope:
    id: str
    provider_reference: str
    status: str
    signers: List[_MockSigner] = field(default_factory=list)
    certificate: Optional[str] = None

    def to_payload(self) -> Dict[str, object]:
        return {
            "envelopeId": self.id,
            "providerReference": self.provider_reference,
            "status": self.status,
            "signers": [
                {
                    "email": signer.email,
                    "name": signer.name,
                    "signingUrl": signer.signing_url,
                    "completedAt": signer.completed_at,
                }
                for signer in self.signers
            ],
            "certificate": self.certificate,
        }


def _isoformat(moment: datetime) -> str:
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class MockESignatureProvider(ESignatureProvider):
    """Deterministic in-process provider simulation."""

    def __init__(self, provider_id: str = "mock", hardened: bool = False, **config):
        super().__init__(provider_id=provider_id, hardened=hardened, **config)
        self.hardened = hardened
        self._envelopes: Dict[str, _MockEnvelope] = {}

    def _get_provider_type(self) -> ESignatureType:
        return ESignatureType.MOCK

    def _guard(self, operation: str, envelope_id: Optional[str] = None) -> None:
        if self.hardened:
            logger.error("esign.mock.refused", operation=operation, envelope_id=envelope_id)
            raise ProviderNotConfigured(
                message="No live e-signature provider is configured",
                provider=self.provider_id,
                envelope_id=envelope_id,
            )

    def _ensure(self, envelope_id: str) -> _MockEnvelope:
        record = self._envelopes.get(envelope_id)
        if record is None:
            raise ProviderError(
                message="mock_envelope_not_found",
                error_code="mock_envelope_not_found",
                provider=self.provider_id,
                envelope_id=envelope_id,
            )
        return record

    async def create_envelope(
        self,
        job_id: str,
        document_id: str,
        signers: List[SignerInput],
    ) -> ProviderEnvelope:
        self._guard("create_envelope")
        envelope_id = f"mock_{uuid.uuid4()}"
        record = _MockEnvelope(
            id=envelope_id,
            provider_reference=f"MOCK-{secrets.token_hex(4).upper()}",
            status="sent",
            signers=[
                _MockSigner(
                    name=signer.name.strip(),
                    email=normalize_email(signer.email),
                    signing_url=f"{MOCK_SIGNING_HOST}/envelopes/{quote(envelope_id, safe='')}/sign/{index}",
                )
                for index, signer in enumerate(signers, start=1)
            ],
        )
        self._envelopes[envelope_id] = record
        logger.info("esign.mock.envelope_created", envelope_id=envelope_id, job_id=job_id, document_id=document_id)
        return normalize_envelope_payload(record.to_payload())

    async def get_envelope(self, envelope_id: str) -> ProviderEnvelope:
        self._guard("get_envelope", envelope_id)
        record = self._ensure(envelope_id)
        return normalize_envelope_payload(record.to_payload(), fallback_id=envelope_id)

    async def download_certificate(self, envelope_id: str) -> ProviderCertificate:
        self._guard("download_certificate", envelope_id)
        record = self._ensure(envelope_id)
        if not record.certificate:
            issued_at = _isoformat(datetime.now(timezone.utc))
            for signer in record.signers:
                if not signer.completed_at:
                    signer.completed_at = issued_at
            record.status = "signed"
            record.certificate = "\n".join(
                [
                    "-----BEGIN MOCK CERTIFICATE-----",
                    f"Envelope: {envelope_id}",
                    f"Issued: {issued_at}",
                    "-----END MOCK CERTIFICATE-----",
                ]
            )
            logger.info("esign.mock.certificate_issued", envelope_id=envelope_id)
        normalized = normalize_envelope_payload(record.to_payload(), fallback_id=envelope_id)
        return to_certificate(normalized, self.provider_id)

    def complete_signer(self, envelope_id: str, email: str, completed_at: Optional[str] = None) -> None:
        """Simulate one signer finishing in the hosted signing flow."""
        record = self._ensure(envelope_id)
        target = normalize_email(email)
        for signer in record.signers:
            if signer.email == target:
                signer.completed_at = completed_at or _isoformat(datetime.now(timezone.utc))
