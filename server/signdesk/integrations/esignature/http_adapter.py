"""
Signed HTTP E-signature Adapter

Talks to any provider exposing the generic envelope API
(``POST /envelopes``, ``GET /envelopes/{id}``, ``GET /envelopes/{id}/certificate``).
Every request body is serialized once and signed with HMAC-SHA256 so the
provider can authenticate the caller.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp
from aiohttp import ClientTimeout

from signdesk.core.logging import get_logger

from .base import (
    ESignatureProvider,
    ESignatureType,
    ProviderCertificate,
    ProviderEnvelope,
    ProviderHttpError,
    ProviderUnavailable,
    SignerInput,
)
from .normalize import DEFAULT_ALIASES, ProviderFieldAliases, normalize_envelope_payload, to_certificate
from .signing import SIGNATURE_HEADER, compute_signature

logger = get_logger(__name__)


def _decode_body(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


class SignedHttpESignatureProvider(ESignatureProvider):
    """Generic signed-HTTP e-signature adapter."""

    aliases: ProviderFieldAliases = DEFAULT_ALIASES

    def __init__(
        self,
        provider_id: str,
        base_url: str,
        secret: Optional[str] = None,
        timeout_seconds: int = 30,
        **config
    ):
        """
        Initialize the adapter.

        Args:
            provider_id: Identifier stored on envelopes owned by this adapter
            base_url: Provider API root
            secret: Shared HMAC secret, requests go unsigned without one
            timeout_seconds: Total timeout for a single request
            **config: Additional configuration
        """
        super().__init__(provider_id=provider_id, base_url=base_url, **config)
        self.base_url = base_url.rstrip('/')
        self.secret = secret or None

        # Session will be created lazily to avoid event loop issues during initialization
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = ClientTimeout(total=timeout_seconds, connect=min(10, timeout_seconds))

    def _get_provider_type(self) -> ESignatureType:
        return ESignatureType.SIGNED_HTTP

    @property
    def session(self) -> aiohttp.ClientSession:
        """Get or create the HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={"Accept": "application/json"},
            )
        return self._session

    def _path(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _signing_secret(self) -> Optional[str]:
        return self.secret

    def _headers(self, body_text: Optional[str]) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if body_text is not None:
            headers["Content-Type"] = "application/json"
        secret = self._signing_secret()
        if secret:
            headers[SIGNATURE_HEADER] = compute_signature(body_text or "", secret)
        return headers

    def _create_body(self, job_id: str, document_id: str, signers: List[SignerInput]) -> Dict[str, Any]:
        return {
            "jobId": job_id,
            "documentId": document_id,
            "signers": [{"name": signer.name, "email": signer.email} for signer in signers],
        }

    async def _request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        envelope_id: Optional[str] = None,
    ) -> Any:
        """Send one signed request and return the decoded body."""
        body_text = json.dumps(body, separators=(",", ":")) if body is not None else None
        url = self._path(path)
        try:
            async with self.session.request(
                method, url, data=body_text, headers=self._headers(body_text)
            ) as response:
                payload = _decode_body(await response.text())
                if response.status < 200 or response.status >= 300:
                    logger.warning(
                        "esign.provider.http_error",
                        provider=self.provider_id,
                        status=response.status,
                        method=method,
                        envelope_id=envelope_id,
                    )
                    raise ProviderHttpError(
                        response.status,
                        payload,
                        provider=self.provider_id,
                        envelope_id=envelope_id,
                    )
                return payload
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error(
                "esign.provider.request_failed",
                provider=self.provider_id,
                method=method,
                envelope_id=envelope_id,
                error=str(exc) or type(exc).__name__,
            )
            raise ProviderUnavailable(
                message=f"Provider request failed: {type(exc).__name__}",
                provider=self.provider_id,
                envelope_id=envelope_id,
            ) from exc

    def _normalize(self, payload: Any, fallback_id: Optional[str] = None) -> ProviderEnvelope:
        return normalize_envelope_payload(payload, fallback_id=fallback_id, aliases=self.aliases)

    async def create_envelope(
        self,
        job_id: str,
        document_id: str,
        signers: List[SignerInput],
    ) -> ProviderEnvelope:
        payload = await self._request("POST", "/envelopes", self._create_body(job_id, document_id, signers))
        return self._normalize(payload)

    async def get_envelope(self, envelope_id: str) -> ProviderEnvelope:
        payload = await self._request("GET", f"/envelopes/{quote(envelope_id, safe='')}", envelope_id=envelope_id)
        return self._normalize(payload, envelope_id)

    async def download_certificate(self, envelope_id: str) -> ProviderCertificate:
        payload = await self._request(
            "GET", f"/envelopes/{quote(envelope_id, safe='')}/certificate", envelope_id=envelope_id
        )
        return to_certificate(self._normalize(payload, envelope_id), self.provider_id)

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
