"""
Inbound provider webhook authentication and parsing.

Verification runs over the raw body before any JSON decoding, so a forged
payload never reaches reconciliation.
"""

import json
from dataclasses import dataclass, field
from typing import Any, List, Optional, Union

from signdesk.core.logging import get_logger

from .base import InvalidWebhookSignature, ProviderCompletedSigner, ProviderInvalidPayload, ProviderSigner
from .normalize import ProviderFieldAliases, normalize_envelope_payload
from .signing import compute_signature, signatures_match

logger = get_logger(__name__)

WEBHOOK_ALIASES = ProviderFieldAliases(
    envelope_id=("signatureId", "envelopeId", "id", "envelope_id"),
)


@dataclass
class WebhookEvent:
    """Parsed provider callback."""
    signature_id: str
    source: str = "webhook"
    status: Optional[str] = None
    provider_reference: Optional[str] = None
    certificate: Optional[str] = None
    signers: List[ProviderSigner] = field(default_factory=list)
    completed: List[ProviderCompletedSigner] = field(default_factory=list)


def authenticate_webhook(
    raw_body: Union[str, bytes],
    provided_signature: Optional[str],
    secret: Optional[str],
    require_signature: bool = False,
) -> None:
    """
    Verify an inbound webhook signature.

    Args:
        raw_body: Body exactly as received
        provided_signature: Value of the signature header
        secret: Shared webhook secret, None when not configured
        require_signature: Reject when no secret is configured

    Raises:
        InvalidWebhookSignature: If the signature does not verify
    """
    if not secret:
        if require_signature:
            logger.warning("esign.webhook.secret_missing")
            raise InvalidWebhookSignature("webhook secret not configured")
        return
    expected = compute_signature(raw_body, secret)
    if not signatures_match(expected, provided_signature):
        raise InvalidWebhookSignature("invalid_signature")


def parse_webhook_event(raw_body: Union[str, bytes]) -> WebhookEvent:
    """
    Decode a webhook body into a WebhookEvent.

    Raises:
        ProviderInvalidPayload: If the body is not a JSON object
        ProviderMissingEnvelopeId: If no envelope id is present
    """
    try:
        payload: Any = json.loads(raw_body) if raw_body else {}
    except (TypeError, ValueError) as exc:
        raise ProviderInvalidPayload("invalid_json") from exc

    envelope = normalize_envelope_payload(payload, aliases=WEBHOOK_ALIASES)
    source = None
    for key in ("event", "type"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            source = value.strip()
            break

    return WebhookEvent(
        signature_id=envelope.envelope_id,
        source=(source or "webhook")[:80],
        status=envelope.status,
        provider_reference=envelope.provider_reference,
        certificate=envelope.certificate,
        signers=envelope.signers,
        completed=envelope.completed_by,
    )
