"""
E-signature Base Classes and Interfaces

Defines the canonical provider envelope model, the provider error taxonomy and
the contract every e-signature adapter implements.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ESignatureType(str, Enum):
    """Built-in provider implementations."""
    MOCK = "mock"
    SIGNED_HTTP = "signed_http"
    VENDOR = "vendor"


@dataclass
class SignerInput:
    """Signer as supplied by the caller when an envelope is created."""
    name: str
    email: str


@dataclass
class ProviderSigner:
    """Signer as reported by a provider, after normalization."""
    email: str
    name: Optional[str] = None
    signing_url: Optional[str] = None
    completed_at: Optional[str] = None


@dataclass
class ProviderCompletedSigner:
    """Signer known to have completed signing."""
    email: str
    completed_at: Optional[str] = None


@dataclass
class ProviderEnvelope:
    """Canonical view of a provider envelope."""
    envelope_id: str
    provider_reference: Optional[str] = None
    status: Optional[str] = None
    signers: List[ProviderSigner] = field(default_factory=list)
    completed_by: List[ProviderCompletedSigner] = field(default_factory=list)
    certificate: Optional[str] = None
    raw: Any = None


@dataclass
class ProviderCertificate:
    """Finished signing certificate plus whatever state came with it."""
    envelope_id: str
    certificate: str
    provider_reference: Optional[str] = None
    status: Optional[str] = None
    completed_by: List[ProviderCompletedSigner] = field(default_factory=list)
    raw: Any = None


class ProviderError(Exception):
    """E-signature provider specific errors."""

    default_code = "esign_provider_error"

    def __init__(
        self,
        message: Optional[str] = None,
        error_code: Optional[str] = None,
        provider: Optional[str] = None,
        provider_response: Any = None,
        envelope_id: Optional[str] = None
    ):
        self.error_code = error_code or self.default_code
        self.error_message = message or self.error_code
        super().__init__(self.error_message)
        self.provider = provider
        self.provider_response = provider_response
        self.envelope_id = envelope_id

    def to_dict(self) -> Dict[str, Any]:
        """Diagnostic view that is safe to show an operator."""
        return {
            "error": "provider_error",
            "detail": self.error_code,
            "provider": self.provider,
            "envelope_id": self.envelope_id,
        }


class ProviderInvalidPayload(ProviderError):
    default_code = "esign_provider_invalid_payload"


class ProviderMissingEnvelopeId(ProviderError):
    default_code = "esign_provider_missing_envelope_id"


class ProviderMissingCertificate(ProviderError):
    default_code = "esign_provider_missing_certificate"


class ProviderNotConfigured(ProviderError):
    default_code = "esign_provider_not_configured"


class ProviderUnavailable(ProviderError):
    default_code = "esign_provider_unavailable"


class ProviderHttpError(ProviderError):
    """Non-success HTTP status from a provider."""

    def __init__(self, status: int, body: Any = None, **kwargs):
        super().__init__(
            message=f"esign_provider_{status}",
            error_code=f"esign_provider_{status}",
            provider_response=body,
            **kwargs
        )
        self.status = status
        self.body = body


class InvalidWebhookSignature(Exception):
    """Inbound webhook failed HMAC verification."""


class ESignatureProvider(ABC):
    """Abstract base class for e-signature providers."""

    def __init__(self, provider_id: str, **config):
        """Initialize the e-signature provider with configuration."""
        self.provider_id = provider_id
        self.config = config
        self.provider_type = self._get_provider_type()

    @abstractmethod
    def _get_provider_type(self) -> ESignatureType:
        """Return the provider type identifier."""
        pass

    @abstractmethod
    async def create_envelope(
        self,
        job_id: str,
        document_id: str,
        signers: List[SignerInput],
    ) -> ProviderEnvelope:
        """
        Create an e-signature envelope.

        Args:
            job_id: Business job the document belongs to
            document_id: Document to be signed
            signers: Signers in routing order

        Returns:
            ProviderEnvelope with envelope id, initial status and signer links

        Raises:
            ProviderInvalidPayload: If the response cannot be parsed
            ProviderMissingEnvelopeId: If no envelope id is present
        """
        pass

    @abstractmethod
    async def get_envelope(self, envelope_id: str) -> ProviderEnvelope:
        """
        Fetch current remote state of an envelope.

        Args:
            envelope_id: Envelope ID

        Returns:
            ProviderEnvelope with current status and signers

        Raises:
            ProviderError: If the query fails
        """
        pass

    @abstractmethod
    async def download_certificate(self, envelope_id: str) -> ProviderCertificate:
        """
        Download the completion certificate of an envelope.

        Args:
            envelope_id: Envelope ID

        Returns:
            ProviderCertificate

        Raises:
            ProviderMissingCertificate: If the provider has not produced one yet
        """
        pass

    async def close(self) -> None:
        """Release any transport resources."""
        return None


class ESignatureFactory:
    """Factory for creating e-signature provider instances."""

    _providers: Dict[ESignatureType, type] = {}

    @classmethod
    def register_provider(
        cls,
        provider_type: ESignatureType,
        provider_class: type[ESignatureProvider]
    ):
        """Register an e-signature provider implementation."""
        cls._providers[provider_type] = provider_class

    @classmethod
    def create_provider(
        cls,
        provider_type: ESignatureType,
        **config
    ) -> ESignatureProvider:
        """Create an e-signature provider instance."""
        if provider_type not in cls._providers:
            raise ValueError(f"Unsupported provider type: {provider_type}")

        provider_class = cls._providers[provider_type]
        return provider_class(**config)

    @classmethod
    def get_supported_providers(cls) -> List[ESignatureType]:
        """Get list of registered provider types."""
        return list(cls._providers.keys())
