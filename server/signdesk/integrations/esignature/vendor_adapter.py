"""
Vendor E-signature Adapter

Vendor-flavoured variant of the signed HTTP client: Basic credentials, a
versioned API prefix, the job id carried as ``externalId`` and responses that
may be wrapped in ``data``/``envelope`` objects with vendor specific names.
"""

import base64
from typing import Any, Dict, List, Optional

from .base import ESignatureType, SignerInput
from .http_adapter import SignedHttpESignatureProvider
from .normalize import ProviderFieldAliases

VENDOR_ALIASES = ProviderFieldAliases(
    envelope_id=("envelopeId", "id", "envelope_id", "envelopeUuid"),
    signer_status=("status", "state", "signerStatus"),
    completed_at=("completedAt", "completed_at", "signedAt", "signed_at"),
    unwrap=("data", "envelope"),
)


class VendorESignatureProvider(SignedHttpESignatureProvider):
    """Vendor flavoured e-signature adapter."""

    aliases = VENDOR_ALIASES

    def __init__(
        self,
        provider_id: str,
        base_url: str,
        api_key: str,
        api_secret: str,
        api_prefix: str = "/v1",
        account_id: Optional[str] = None,
        timeout_seconds: int = 30,
        **config
    ):
        """
        Initialize the vendor adapter.

        Args:
            provider_id: Configured vendor id
            base_url: Vendor API root
            api_key: Vendor API key
            api_secret: Vendor API secret, also the request signing key
            api_prefix: Versioned path prefix
            account_id: Vendor account, sent on envelope creation when set
            timeout_seconds: Total timeout for a single request
        """
        super().__init__(
            provider_id=provider_id,
            base_url=base_url,
            secret=api_secret,
            timeout_seconds=timeout_seconds,
            **config
        )
        self.api_key = api_key
        self.api_secret = api_secret
        self.api_prefix = "/" + api_prefix.strip().strip("/") if api_prefix.strip("/ ") else ""
        self.account_id = account_id or None
        self._auth_header = base64.b64encode(f"{api_key}:{api_secret}".encode("utf-8")).decode("ascii")

    def _get_provider_type(self) -> ESignatureType:
        return ESignatureType.VENDOR

    def _path(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}{self.api_prefix}{path}"

    def _headers(self, body_text: Optional[str]) -> Dict[str, str]:
        headers = super()._headers(body_text)
        headers["Authorization"] = f"Basic {self._auth_header}"
        return headers

    def _create_body(self, job_id: str, document_id: str, signers: List[SignerInput]) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "externalId": job_id,
            "documentId": document_id,
            "signers": [{"name": signer.name, "email": signer.email} for signer in signers],
        }
        if self.account_id:
            body["accountId"] = self.account_id
        return body
