"""
Provider construction from settings.

The provider is built once at process start and injected into the
reconciliation service; nothing here caches an instance.
"""

from signdesk.core.config import Settings
from signdesk.core.logging import get_logger

from .base import ESignatureFactory, ESignatureProvider, ESignatureType
from .http_adapter import SignedHttpESignatureProvider
from .mock_adapter import MockESignatureProvider
from .vendor_adapter import VendorESignatureProvider

logger = get_logger(__name__)

ESignatureFactory.register_provider(ESignatureType.MOCK, MockESignatureProvider)
ESignatureFactory.register_provider(ESignatureType.SIGNED_HTTP, SignedHttpESignatureProvider)
ESignatureFactory.register_provider(ESignatureType.VENDOR, VendorESignatureProvider)


def build_provider(settings: Settings) -> ESignatureProvider:
    """Resolve the configured provider variant."""
    if settings.uses_mock_provider:
        logger.info("esign.provider.selected", provider="mock", hardened=settings.hardened)
        return ESignatureFactory.create_provider(
            ESignatureType.MOCK, provider_id="mock", hardened=settings.hardened
        )

    configured = settings.esign_provider.strip()
    if settings.esign_vendor_base_url:
        logger.info("esign.provider.selected", provider=configured, variant="vendor")
        return ESignatureFactory.create_provider(
            ESignatureType.VENDOR,
            provider_id=configured,
            base_url=settings.esign_vendor_base_url.strip(),
            api_key=(settings.esign_vendor_api_key or "").strip(),
            api_secret=(settings.esign_vendor_api_secret or "").strip(),
            api_prefix=settings.esign_vendor_api_prefix,
            account_id=settings.esign_vendor_account_id,
            timeout_seconds=settings.esign_timeout_seconds,
        )

    base_url = configured if "://" in configured else f"https://{configured}"
    logger.info("esign.provider.selected", provider=configured, variant="signed_http")
    return ESignatureFactory.create_provider(
        ESignatureType.SIGNED_HTTP,
        provider_id=configured,
        base_url=base_url,
        secret=(settings.esign_webhook_secret or "").strip() or None,
        timeout_seconds=settings.esign_timeout_seconds,
    )
