import json
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from signdesk.integrations.esignature import ProviderHttpError
from signdesk.models.signature import SignatureAuditEntry

CREATE_PAYLOAD = {
    "job_id": "job-42",
    "document_id": "doc-42",
    "signers": [
        {"name": "Avery Buyer", "email": "avery@example.com"},
        {"name": "Sam Seller", "email": "sam@example.com"},
    ],
}


async def _create(client, admin_headers) -> dict:
    response = await client.post("/signatures", json=CREATE_PAYLOAD, headers=admin_headers)
    assert response.status_code == 201, response.text
    return response.json()


async def _audit_count(session) -> int:
    return await session.scalar(select(func.count()).select_from(SignatureAuditEntry))


class TestOperatorApi:

    @pytest.mark.asyncio
    async def test_create_envelope(self, client, admin_headers):
        body = await _create(client, admin_headers)

        assert body["status"] == "sent"
        assert body["job_id"] == "job-42"
        assert [signer["email"] for signer in body["signers"]] == ["avery@example.com", "sam@example.com"]
        assert body["signers"][0]["signing_url"].startswith("https://mock-esign.local/envelopes/")

    @pytest.mark.asyncio
    async def test_requires_bearer_token(self, client):
        response = await client.post("/signatures", json=CREATE_PAYLOAD)
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_requires_admin_role(self, client, make_token):
        headers = {"Authorization": f"Bearer {make_token(roles=['agent'])}"}
        response = await client.post("/signatures", json=CREATE_PAYLOAD, headers=headers)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_rejects_envelope_without_signers(self, client, admin_headers):
        response = await client.post("/signatures", json={**CREATE_PAYLOAD, "signers": []}, headers=admin_headers)
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_provider_error_maps_to_bad_gateway(self, client, provider, admin_headers):
        failure = ProviderHttpError(503, {"secret": "never shown"}, provider="mock")
        with patch.object(provider, "create_envelope", AsyncMock(side_effect=failure)):
            response = await client.post("/signatures", json=CREATE_PAYLOAD, headers=admin_headers)

        assert response.status_code == 502
        assert response.json()["detail"] == {
            "error": "provider_error",
            "detail": "esign_provider_503",
            "provider": "mock",
            "envelope_id": None,
        }
        assert "never shown" not in response.text

    @pytest.mark.asyncio
    async def test_complete_and_read_back(self, client, admin_headers):
        created = await _create(client, admin_headers)

        completed = await client.put(f"/signatures/{created['id']}/complete", headers=admin_headers)
        fetched = await client.get(f"/signatures/{created['id']}", headers=admin_headers)
        listed = await client.get("/signatures", params={"document_id": "doc-42"}, headers=admin_headers)

        assert completed.status_code == 200
        assert completed.json()["status"] == "signed"
        assert all(signer["completed"] for signer in completed.json()["signers"])
        assert fetched.json()["certificate_hash"] == completed.json()["certificate_hash"]
        assert [envelope["id"] for envelope in listed.json()] == [created["id"]]

    @pytest.mark.asyncio
    async def test_unknown_envelope_is_not_found(self, client, admin_headers):
        for method, path in [
            ("get", "/signatures/ghost"),
            ("put", "/signatures/ghost/complete"),
            ("post", "/signatures/ghost/sync"),
            ("post", "/signatures/ghost/flag"),
            ("get", "/signatures/ghost/audit"),
            ("get", "/signatures/ghost/audit/verify"),
        ]:
            response = await getattr(client, method)(path, headers=admin_headers)
            assert response.status_code == 404, path
            assert response.json()["detail"] == "signature_not_found"

    @pytest.mark.asyncio
    async def test_audit_trail_and_verification(self, client, admin_headers):
        created = await _create(client, admin_headers)
        await client.post(f"/signatures/{created['id']}/flag", json={"reason": "customer_dispute"}, headers=admin_headers)

        audit = await client.get(f"/signatures/{created['id']}/audit", headers=admin_headers)
        verify = await client.get(f"/signatures/{created['id']}/audit/verify", headers=admin_headers)

        entries = audit.json()
        assert [entry["action"] for entry in entries] == ["envelope_created", "manual_reconciliation_flagged"]
        assert entries[1]["metadata"]["reason"] == "customer_dispute"
        assert entries[1]["actor"] == "user:ops@signdesk.test"
        assert entries[1]["previous_hash"] == entries[0]["entry_hash"]
        assert verify.json() == {
            "signature_id": created["id"],
            "valid": True,
            "entries_checked": 2,
            "broken_entry_id": None,
            "reason": None,
        }

    @pytest.mark.asyncio
    async def test_sync_endpoint(self, client, provider, admin_headers):
        created = await _create(client, admin_headers)
        provider.complete_signer(created["id"], "sam@example.com")

        response = await client.post(
            f"/signatures/{created['id']}/sync", json={"include_certificate": False}, headers=admin_headers
        )

        assert response.status_code == 200
        assert [signer["completed"] for signer in response.json()["signers"]] == [False, True]

    @pytest.mark.asyncio
    async def test_correlation_id_is_echoed_and_audited(self, client, admin_headers):
        headers = {**admin_headers, "X-Correlation-Id": "corr-123"}
        response = await client.post("/signatures", json=CREATE_PAYLOAD, headers=headers)

        assert response.headers["X-Correlation-Id"] == "corr-123"
        audit = await client.get(f"/signatures/{response.json()['id']}/audit", headers=admin_headers)
        assert audit.json()[0]["metadata"]["correlationId"] == "corr-123"


class TestWebhookEndpoint:

    @pytest.mark.asyncio
    async def test_forged_signature_rejected_without_mutation(self, client, session, admin_headers):
        created = await _create(client, admin_headers)
        before = await _audit_count(session)
        body = json.dumps({"signatureId": created["id"], "status": "signed"}).encode()

        response = await client.post(
            "/webhooks/esign",
            content=body,
            headers={"X-ESign-Signature": "0" * 64, "Content-Type": "application/json"},
        )

        assert response.status_code == 401
        assert response.json() == {"error": "invalid_signature"}
        assert await _audit_count(session) == before
        fetched = await client.get(f"/signatures/{created['id']}", headers=admin_headers)
        assert fetched.json()["status"] == "sent"

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, client, admin_headers):
        created = await _create(client, admin_headers)
        response = await client.post("/webhooks/esign", json={"signatureId": created["id"], "status": "signed"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_valid_event_is_applied(self, client, sign_webhook, admin_headers):
        created = await _create(client, admin_headers)
        body = json.dumps(
            {
                "signatureId": created["id"],
                "event": "recipient.completed",
                "completed": [{"email": "Avery@Example.com", "completedAt": "2024-05-01T10:00:00Z"}],
            }
        ).encode()

        response = await client.post("/webhooks/esign", content=body, headers=sign_webhook(body))

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        audit = await client.get(f"/signatures/{created['id']}/audit", headers=admin_headers)
        assert audit.json()[-1]["action"] == "provider_update.recipient.completed"
        assert audit.json()[-1]["actor"] == "esign:webhook"
        fetched = await client.get(f"/signatures/{created['id']}", headers=admin_headers)
        assert fetched.json()["signers"][0]["completed"] is True

    @pytest.mark.asyncio
    async def test_signed_without_certificate_reconciles(self, client, sign_webhook, admin_headers):
        created = await _create(client, admin_headers)
        body = json.dumps({"signatureId": created["id"], "status": "signed"}).encode()

        response = await client.post("/webhooks/esign", content=body, headers=sign_webhook(body))

        assert response.status_code == 200
        audit = await client.get(f"/signatures/{created['id']}/audit", headers=admin_headers)
        assert [entry["action"] for entry in audit.json()][-2:] == [
            "provider_update.webhook",
            "provider_update.webhook_reconciliation",
        ]

    @pytest.mark.asyncio
    async def test_invalid_json(self, client, sign_webhook):
        body = b"{not json"
        response = await client.post("/webhooks/esign", content=body, headers=sign_webhook(body))
        assert response.status_code == 400
        assert response.json() == {"error": "invalid_json"}

    @pytest.mark.asyncio
    async def test_missing_envelope_id(self, client, sign_webhook):
        body = json.dumps({"status": "signed"}).encode()
        response = await client.post("/webhooks/esign", content=body, headers=sign_webhook(body))
        assert response.status_code == 400
        assert response.json() == {"error": "missing_envelope_id"}

    @pytest.mark.asyncio
    async def test_unknown_envelope_is_accepted(self, client, sign_webhook, session):
        body = json.dumps({"signatureId": "ghost", "status": "signed"}).encode()

        response = await client.post("/webhooks/esign", content=body, headers=sign_webhook(body))

        assert response.status_code == 202
        assert response.json() == {"ok": False}
        assert await _audit_count(session) == 0

    @pytest.mark.asyncio
    async def test_processing_error_flags_envelope(self, client, app, sign_webhook, admin_headers):
        created = await _create(client, admin_headers)
        service = app.state.signature_service
        body = json.dumps({"signatureId": created["id"], "status": "sent"}).encode()

        with patch.object(
            service, "ingest_signature_webhook_event", AsyncMock(side_effect=RuntimeError("database hiccup"))
        ):
            response = await client.post("/webhooks/esign", content=body, headers=sign_webhook(body))

        assert response.status_code == 202
        assert response.json() == {"ok": False}
        fetched = await client.get(f"/signatures/{created['id']}", headers=admin_headers)
        assert fetched.json()["status"] == "pending_manual_review"


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["provider"] == "mock"
