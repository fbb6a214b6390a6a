"""
E-signature Integration Tests

Test suite for the mock, signed-HTTP and vendor e-signature adapters.
"""

import base64
import json
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from signdesk.core.config import Settings
from signdesk.integrations.esignature import (
    ESignatureFactory,
    ESignatureProvider,
    ESignatureType,
    ProviderError,
    ProviderHttpError,
    ProviderMissingEnvelopeId,
    ProviderNotConfigured,
    ProviderUnavailable,
    SignerInput,
    build_provider,
)
from signdesk.integrations.esignature.http_adapter import SignedHttpESignatureProvider
from signdesk.integrations.esignature.mock_adapter import MockESignatureProvider
from signdesk.integrations.esignature.signing import SIGNATURE_HEADER, compute_signature
from signdesk.integrations.esignature.vendor_adapter import VendorESignatureProvider


def _response(status: int, body) -> MagicMock:
    response = MagicMock()
    response.status = status
    response.text = AsyncMock(return_value=body if isinstance(body, str) else json.dumps(body))
    return response


def _patched_request(response: MagicMock):
    mock_request = MagicMock()
    mock_request.return_value.__aenter__.return_value = response
    mock_request.return_value.__aexit__.return_value = None
    return patch("aiohttp.ClientSession.request", new=mock_request)


class TestESignatureContract:
    """Contract tests for all e-signature providers."""

    def test_provider_interface_compliance(self):
        required_methods = ["create_envelope", "get_envelope", "download_certificate", "close"]

        for provider_class in [MockESignatureProvider, SignedHttpESignatureProvider, VendorESignatureProvider]:
            assert issubclass(provider_class, ESignatureProvider)
            for method_name in required_methods:
                assert callable(getattr(provider_class, method_name)), f"{provider_class.__name__} missing {method_name}"

    def test_factory_registers_every_variant(self):
        assert set(ESignatureFactory.get_supported_providers()) >= {
            ESignatureType.MOCK,
            ESignatureType.SIGNED_HTTP,
            ESignatureType.VENDOR,
        }


class TestMockProvider:

    @pytest.mark.asyncio
    async def test_create_envelope_issues_links_and_reference(self):
        provider = MockESignatureProvider()

        envelope = await provider.create_envelope(
            "job-1", "doc-1", [SignerInput("Avery", "Avery@Example.com"), SignerInput("Sam", "sam@example.com")]
        )

        assert envelope.envelope_id.startswith("mock_")
        assert envelope.status == "sent"
        assert envelope.provider_reference.startswith("MOCK-")
        assert len(envelope.provider_reference) == len("MOCK-") + 8
        assert [signer.email for signer in envelope.signers] == ["avery@example.com", "sam@example.com"]
        assert envelope.signers[1].signing_url == (
            f"https://mock-esign.local/envelopes/{envelope.envelope_id}/sign/2"
        )
        assert envelope.completed_by == []

    @pytest.mark.asyncio
    async def test_certificate_download_completes_every_signer(self):
        provider = MockESignatureProvider()
        created = await provider.create_envelope(
            "job-1", "doc-1", [SignerInput("Avery", "avery@example.com"), SignerInput("Sam", "sam@example.com")]
        )
        provider.complete_signer(created.envelope_id, "avery@example.com", "2024-05-01T10:00:00.000Z")

        certificate = await provider.download_certificate(created.envelope_id)
        again = await provider.download_certificate(created.envelope_id)

        assert certificate.status == "signed"
        assert "BEGIN MOCK CERTIFICATE" in certificate.certificate
        assert again.certificate == certificate.certificate
        completed = {entry.email: entry.completed_at for entry in certificate.completed_by}
        assert completed["avery@example.com"] == "2024-05-01T10:00:00.000Z"
        assert completed["sam@example.com"]

    @pytest.mark.asyncio
    async def test_unknown_envelope_is_a_provider_error(self):
        provider = MockESignatureProvider()
        with pytest.raises(ProviderError) as exc_info:
            await provider.get_envelope("missing")
        assert exc_info.value.error_code == "mock_envelope_not_found"

    @pytest.mark.asyncio
    async def test_hardened_mode_refuses_every_operation(self):
        provider = MockESignatureProvider(hardened=True)

        with pytest.raises(ProviderNotConfigured):
            await provider.create_envelope("job-1", "doc-1", [SignerInput("Avery", "avery@example.com")])
        with pytest.raises(ProviderNotConfigured):
            await provider.get_envelope("mock_1")
        with pytest.raises(ProviderNotConfigured):
            await provider.download_certificate("mock_1")


class TestSignedHttpProvider:

    @pytest.fixture
    def adapter(self):
        return SignedHttpESignatureProvider(
            provider_id="esign.example.com",
            base_url="https://esign.example.com/",
            secret="outbound-secret",
            timeout_seconds=5,
        )

    @pytest.mark.asyncio
    async def test_create_envelope_signs_the_exact_body(self, adapter):
        response = _response(
            201,
            {
                "envelopeId": "env-100",
                "status": "Created",
                "providerReference": "REF-100",
                "signers": [{"email": "avery@example.com", "signingUrl": "https://esign.example.com/s/1"}],
            },
        )

        with _patched_request(response) as mock_request:
            envelope = await adapter.create_envelope("job-1", "doc-1", [SignerInput("Avery", "avery@example.com")])
        await adapter.close()

        assert envelope.envelope_id == "env-100"
        assert envelope.status == "sent"
        assert envelope.signers[0].signing_url == "https://esign.example.com/s/1"

        args, kwargs = mock_request.call_args
        assert args == ("POST", "https://esign.example.com/envelopes")
        body = kwargs["data"]
        assert json.loads(body) == {
            "jobId": "job-1",
            "documentId": "doc-1",
            "signers": [{"name": "Avery", "email": "avery@example.com"}],
        }
        assert kwargs["headers"][SIGNATURE_HEADER] == compute_signature(body, "outbound-secret")
        assert kwargs["headers"]["Content-Type"] == "application/json"

    @pytest.mark.asyncio
    async def test_get_requests_sign_an_empty_body(self, adapter):
        response = _response(200, {"status": "completed"})

        with _patched_request(response) as mock_request:
            envelope = await adapter.get_envelope("env/100")
        await adapter.close()

        assert envelope.envelope_id == "env/100"
        assert envelope.status == "signed"
        args, kwargs = mock_request.call_args
        assert args == ("GET", "https://esign.example.com/envelopes/env%2F100")
        assert kwargs["data"] is None
        assert kwargs["headers"][SIGNATURE_HEADER] == compute_signature("", "outbound-secret")

    @pytest.mark.asyncio
    async def test_unsigned_without_secret(self):
        adapter = SignedHttpESignatureProvider(provider_id="esign.example.com", base_url="https://esign.example.com")
        response = _response(200, {"envelopeId": "env-1", "status": "sent"})

        with _patched_request(response) as mock_request:
            await adapter.get_envelope("env-1")
        await adapter.close()

        assert SIGNATURE_HEADER not in mock_request.call_args.kwargs["headers"]

    @pytest.mark.asyncio
    async def test_non_success_status_carries_parsed_body(self, adapter):
        response = _response(409, {"message": "duplicate job"})

        with _patched_request(response):
            with pytest.raises(ProviderHttpError) as exc_info:
                await adapter.create_envelope("job-1", "doc-1", [SignerInput("Avery", "avery@example.com")])
        await adapter.close()

        error = exc_info.value
        assert error.status == 409
        assert error.body == {"message": "duplicate job"}
        assert error.error_code == "esign_provider_409"
        assert error.provider == "esign.example.com"

    @pytest.mark.asyncio
    async def test_non_json_error_body_kept_as_text(self, adapter):
        response = _response(502, "upstream exploded")

        with _patched_request(response):
            with pytest.raises(ProviderHttpError) as exc_info:
                await adapter.get_envelope("env-1")
        await adapter.close()

        assert exc_info.value.body == "upstream exploded"
        assert exc_info.value.envelope_id == "env-1"

    @pytest.mark.asyncio
    async def test_response_without_identifier_is_rejected(self, adapter):
        response = _response(201, {"status": "sent"})

        with _patched_request(response):
            with pytest.raises(ProviderMissingEnvelopeId):
                await adapter.create_envelope("job-1", "doc-1", [SignerInput("Avery", "avery@example.com")])
        await adapter.close()

    @pytest.mark.asyncio
    async def test_transport_failure_is_unavailable(self, adapter):
        mock_request = MagicMock(side_effect=aiohttp.ClientConnectionError("connection reset"))

        with patch("aiohttp.ClientSession.request", new=mock_request):
            with pytest.raises(ProviderUnavailable) as exc_info:
                await adapter.get_envelope("env-1")
        await adapter.close()

        assert exc_info.value.error_code == "esign_provider_unavailable"


class TestVendorProvider:

    @pytest.fixture
    def adapter(self):
        return VendorESignatureProvider(
            provider_id="acme-sign",
            base_url="https://api.acme-sign.test",
            api_key="key-1",
            api_secret="secret-1",
            account_id="acct-9",
        )

    @pytest.mark.asyncio
    async def test_create_envelope_uses_vendor_conventions(self, adapter):
        response = _response(
            200,
            {
                "envelope": {
                    "envelopeUuid": "vendor-env-1",
                    "state": "in_progress",
                    "externalId": "job-1",
                    "recipients": [{"emailAddress": "Avery@Example.com", "url": "https://acme/s/1"}],
                }
            },
        )

        with _patched_request(response) as mock_request:
            envelope = await adapter.create_envelope("job-1", "doc-1", [SignerInput("Avery", "avery@example.com")])
        await adapter.close()

        assert envelope.envelope_id == "vendor-env-1"
        assert envelope.status == "sent"
        assert envelope.signers[0].email == "avery@example.com"

        args, kwargs = mock_request.call_args
        assert args == ("POST", "https://api.acme-sign.test/v1/envelopes")
        body = json.loads(kwargs["data"])
        assert body["externalId"] == "job-1"
        assert body["accountId"] == "acct-9"
        expected_auth = base64.b64encode(b"key-1:secret-1").decode("ascii")
        assert kwargs["headers"]["Authorization"] == f"Basic {expected_auth}"
        assert kwargs["headers"][SIGNATURE_HEADER] == compute_signature(kwargs["data"], "secret-1")

    @pytest.mark.asyncio
    async def test_certificate_download_unwraps_data(self, adapter):
        response = _response(
            200,
            {
                "data": {
                    "status": "finished",
                    "certificateData": "PDF-BYTES",
                    "recipients": [{"emailAddress": "avery@example.com", "signerStatus": "Completed"}],
                }
            },
        )

        with _patched_request(response) as mock_request:
            certificate = await adapter.download_certificate("vendor-env-1")
        await adapter.close()

        assert mock_request.call_args.args == ("GET", "https://api.acme-sign.test/v1/envelopes/vendor-env-1/certificate")
        assert certificate.envelope_id == "vendor-env-1"
        assert certificate.certificate == "PDF-BYTES"
        assert certificate.status == "signed"
        assert [entry.email for entry in certificate.completed_by] == ["avery@example.com"]


class TestProviderSelection:

    def test_mock_is_the_default(self):
        provider = build_provider(Settings(esign_provider="mock"))
        assert isinstance(provider, MockESignatureProvider)
        assert provider.hardened is False

    def test_production_mock_is_hardened(self):
        provider = build_provider(Settings(esign_provider="mock", environment="production"))
        assert isinstance(provider, MockESignatureProvider)
        assert provider.hardened is True

    def test_host_selects_signed_http(self):
        provider = build_provider(Settings(esign_provider="esign.example.com", esign_webhook_secret="shh"))
        assert isinstance(provider, SignedHttpESignatureProvider)
        assert not isinstance(provider, VendorESignatureProvider)
        assert provider.base_url == "https://esign.example.com"
        assert provider.secret == "shh"

    def test_vendor_base_url_selects_vendor(self):
        provider = build_provider(
            Settings(
                esign_provider="acme-sign",
                esign_vendor_base_url="https://api.acme-sign.test",
                esign_vendor_api_key="key-1",
                esign_vendor_api_secret="secret-1",
                esign_vendor_api_prefix="v2/",
            )
        )
        assert isinstance(provider, VendorESignatureProvider)
        assert provider.provider_id == "acme-sign"
        assert provider.api_prefix == "/v2"
