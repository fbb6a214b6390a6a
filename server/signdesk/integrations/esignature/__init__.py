"""
E-signature integration modules

Provides provider adapters behind one contract, a shared payload normalizer
and inbound webhook authentication.
"""

from .base import (
    ESignatureFactory,
    ESignatureProvider,
    ESignatureType,
    InvalidWebhookSignature,
    ProviderCertificate,
    ProviderCompletedSigner,
    ProviderEnvelope,
    ProviderError,
    ProviderHttpError,
    ProviderInvalidPayload,
    ProviderMissingCertificate,
    ProviderMissingEnvelopeId,
    ProviderNotConfigured,
    ProviderSigner,
    ProviderUnavailable,
    SignerInput,
)
from .factory import build_provider
from .normalize import normalize_envelope_payload, normalize_status
from .webhook import WebhookEvent, authenticate_webhook, parse_webhook_event

__all__ = [
    "ESignatureFactory",
    "ESignatureProvider",
    "ESignatureType",
    "InvalidWebhookSignature",
    "ProviderCertificate",
    "ProviderCompletedSigner",
    "ProviderEnvelope",
    "ProviderError",
    "ProviderHttpError",
    "ProviderInvalidPayload",
    "ProviderMissingCertificate",
    "ProviderMissingEnvelopeId",
    "ProviderNotConfigured",
    "ProviderSigner",
    "ProviderUnavailable",
    "SignerInput",
    "WebhookEvent",
    "authenticate_webhook",
    "build_provider",
    "normalize_envelope_payload",
    "normalize_status",
    "parse_webhook_event",
]
