"""
API tests through the FastAPI app with startup skipped.

Components are attached to app.state by hand so the LLM and Graph calls can
be replaced; everything else (validator, merger, mock blob store, services)
runs for real against the fake DB.
"""
import json
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

ADMIN = {"X-Actor-Id": "admin-1", "X-Actor-Role": "admin"}
MEMBER = {"X-Actor-Id": "user-1", "X-Actor-Role": "member"}
OTHER_MEMBER = {"X-Actor-Id": "user-2"}


@pytest.fixture
def graph():
    graph = MagicMock()
    graph.request = AsyncMock()
    return graph


@pytest.fixture
def model_lookup():
    return AsyncMock(return_value="Gemini 1.5 Flash")


@pytest.fixture
def client(app_without_lifespan, fake_db, config_store, template_doc, generated_content, graph, model_lookup):
    from services.credential_cache import create_llm_credential_cache
    from services.docx_merger import DocxMerger
    from services.settings_service import SettingsService
    from services.sow_orchestrator import SOWOrchestrator
    from services.sow_service import SOWService
    from services.template_service import TemplateService
    from utils.rate_limiter import RateLimiter

    fake_db.templates.docs.append(dict(template_doc, created_at=datetime(2026, 1, 1, tzinfo=timezone.utc)))

    generator = MagicMock()
    generator.generate = AsyncMock(return_value=generated_content)

    app = app_without_lifespan
    app.state.config_store = config_store
    app.state.orchestrator = SOWOrchestrator(
        config_store=config_store,
        rate_limiter=RateLimiter(max_attempts=2, window_seconds=60),
        generator=generator,
        merger=DocxMerger(),
        graph=graph,
    )
    app.state.generator = generator
    app.state.template_service = TemplateService()
    app.state.sow_service = SOWService()
    app.state.settings_service = SettingsService(
        config_store, graph, create_llm_credential_cache(config_store), model_lookup=model_lookup
    )

    with TestClient(app) as test_client:
        yield test_client


def _generate(client, intake_data, headers=MEMBER, template_id="demo-template-001"):
    return client.post(
        "/api/generate",
        json={"template_id": template_id, "intake_data": intake_data},
        headers=headers,
    )


# ============================================================================
# AUTH
# ============================================================================

def test_health_needs_no_actor(client):
    assert client.get("/api/health").json()["status"] == "healthy"


@pytest.mark.parametrize("method, path", [
    ("get", "/api/templates"),
    ("get", "/api/sows"),
    ("post", "/api/generate"),
    ("get", "/api/settings"),
])
def test_missing_actor_is_401(client, method, path):
    assert getattr(client, method)(path).status_code == 401


@pytest.mark.parametrize("method, path", [
    ("get", "/api/settings"),
    ("patch", "/api/settings"),
    ("post", "/api/settings/test?service=llm"),
    ("post", "/api/templates"),
    ("delete", "/api/templates/demo-template-001"),
])
def test_member_cannot_reach_admin_routes(client, method, path):
    kwargs = {"headers": MEMBER}
    if method in ("patch", "post"):
        kwargs["json"] = {}
    response = client.request(method.upper(), path, **kwargs)
    assert response.status_code == 403


def test_unknown_role_treated_as_member(client):
    response = client.get("/api/settings", headers={"X-Actor-Id": "x", "X-Actor-Role": "superuser"})
    assert response.status_code == 403


# ============================================================================
# GENERATE
# ============================================================================

def test_generate_success_in_mock_mode(client, fake_db, intake_data):
    response = _generate(client, intake_data)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["status"] == "COMPLETE"
    assert body["mock"] is True
    assert "SOW_Acme_Corp_" in body["sharepoint_web_url"]
    assert fake_db.sows.docs[0]["created_by"] == "user-1"


def test_generate_invalid_intake_returns_field_errors(client, fake_db, intake_data):
    intake_data["project_type"] = "Consulting"
    del intake_data["client_name"]

    response = _generate(client, intake_data)

    assert response.status_code == 400
    body = response.json()
    assert body["error_code"] == "VALIDATION_FAILED"
    assert [e["path"] for e in body["field_errors"]] == ["client_name", "project_type"]
    assert fake_db.sows.docs == []


def test_generate_unknown_template_is_404(client, intake_data):
    response = _generate(client, intake_data, template_id="nope")
    assert response.status_code == 404
    assert response.json()["error_code"] == "NOT_FOUND"


def test_generate_malformed_body_is_422(client):
    response = client.post("/api/generate", json={"intake_data": {}}, headers=MEMBER)
    assert response.status_code == 422
    assert "request_id" in response.json()


def test_generate_rate_limited_with_retry_after(client, fake_db, intake_data):
    assert _generate(client, intake_data).status_code == 200
    assert _generate(client, intake_data).status_code == 200

    response = _generate(client, intake_data)
    assert response.status_code == 429
    assert response.json()["error_code"] == "RATE_LIMITED"
    assert 0 < int(response.headers["Retry-After"]) <= 60
    assert len(fake_db.sows.docs) == 2


def test_generate_pipeline_failure_returns_failed_record(client, fake_db, intake_data):
    from services.sow_generator import ProviderUnavailable

    client.app.state.generator.generate.side_effect = ProviderUnavailable("LLM API key is not configured")
    response = _generate(client, intake_data)

    assert response.status_code == 502
    body = response.json()
    assert body["success"] is False
    assert body["status"] == "FAILED"
    assert body["error_code"] == "PROVIDER_UNAVAILABLE"
    assert fake_db.sows.docs[0]["sow_id"] == body["sow_id"]


# ============================================================================
# SOWS
# ============================================================================

def test_sow_visibility(client, intake_data):
    sow_id = _generate(client, intake_data).json()["sow_id"]

    own = client.get(f"/api/sows/{sow_id}", headers=MEMBER)
    assert own.status_code == 200
    assert own.json()["generated_content"]["sow"]["client_name"] == "Acme Corp"

    assert client.get(f"/api/sows/{sow_id}", headers=OTHER_MEMBER).status_code == 403
    assert client.get(f"/api/sows/{sow_id}", headers=ADMIN).status_code == 200
    assert client.get("/api/sows/missing", headers=ADMIN).status_code == 404

    assert client.get("/api/sows", headers=OTHER_MEMBER).json()["total"] == 0
    listing = client.get("/api/sows", headers=ADMIN).json()
    assert listing["total"] == 1
    assert "input_data" not in listing["sows"][0]
    assert "generated_content" not in listing["sows"][0]


def test_sow_audit_trail(client, intake_data):
    sow_id = _generate(client, intake_data).json()["sow_id"]

    sow = client.get(f"/api/sows/{sow_id}?include_audit=true", headers=MEMBER).json()
    actions = {entry["action"] for entry in sow["audit_trail"]}
    assert {"SOW_GENERATION_STARTED", "SOW_GENERATED"} <= actions


# ============================================================================
# TEMPLATES
# ============================================================================

def test_template_lifecycle(client, fake_db, intake_schema):
    payload = {
        "name": "Managed Services Retainer",
        "intake_schema": intake_schema,
        "sharepoint_file_id": "file-2",
        "output_folder_id": "folder-2",
    }
    created = client.post("/api/templates", json=payload, headers=ADMIN)
    assert created.status_code == 201
    template_id = created.json()["template_id"]
    assert created.json()["active"] is True

    listing = client.get("/api/templates", headers=MEMBER).json()
    assert listing["total"] == 2
    assert listing["templates"][0]["template_id"] == template_id

    form = client.get(f"/api/templates/{template_id}/form", headers=MEMBER).json()
    assert [f["key"] for f in form["fields"]][:3] == ["client_name", "project_type", "project_description"]

    assert client.delete(f"/api/templates/{template_id}", headers=ADMIN).status_code == 204
    assert client.get("/api/templates", headers=MEMBER).json()["total"] == 1
    assert client.get("/api/templates?include_inactive=true", headers=MEMBER).json()["total"] == 1
    assert client.get("/api/templates?include_inactive=true", headers=ADMIN).json()["total"] == 2
    assert client.get(f"/api/templates/{template_id}/form", headers=MEMBER).status_code == 404

    actions = [a["action"] for a in fake_db.audit_logs.docs]
    assert actions == ["TEMPLATE_CREATED", "TEMPLATE_DEACTIVATED"]


def test_template_with_bad_schema_rejected(client, fake_db):
    payload = {
        "name": "Broken",
        "intake_schema": {"type": "object", "properties": {"a": {"type": "date"}}},
        "sharepoint_file_id": "file-2",
        "output_folder_id": "folder-2",
    }
    response = client.post("/api/templates", json=payload, headers=ADMIN)
    assert response.status_code == 400
    assert response.json()["error_code"] == "INVALID_SCHEMA"
    assert len(fake_db.templates.docs) == 1


def test_deactivating_unknown_template_is_404(client):
    assert client.delete("/api/templates/nope", headers=ADMIN).status_code == 404


# ============================================================================
# SETTINGS
# ============================================================================

def test_settings_show_flags_never_values(client, fake_db):
    response = client.patch(
        "/api/settings",
        json={"azure.tenantId": "tenant-1", "gemini.apiKey": "super-secret-key", "gemini.model": None},
        headers=ADMIN,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["updated"] == ["azure.tenantId", "gemini.apiKey"]
    assert body["configured"]["gemini.apiKey"] is True
    assert body["configured"]["gemini.model"] is False
    assert body["status"] == {"sharepoint": True, "llm": True, "degraded_mode": False}
    assert "super-secret-key" not in response.text

    stored = next(d for d in fake_db.app_config.docs if d["key"] == "gemini.apiKey")
    assert "super-secret-key" not in json.dumps(stored, default=str)

    cleared = client.patch("/api/settings", json={"azure.tenantId": ""}, headers=ADMIN).json()
    assert cleared["configured"]["azure.tenantId"] is False
    assert cleared["status"]["degraded_mode"] is True

    assert "super-secret-key" not in client.get("/api/settings", headers=ADMIN).text


def test_settings_unknown_key_rejects_whole_update(client):
    response = client.patch(
        "/api/settings",
        json={"gemini.apiKey": "k", "stripe.secret": "x"},
        headers=ADMIN,
    )
    assert response.status_code == 400
    assert "stripe.secret" in response.json()["message"]
    assert client.get("/api/settings", headers=ADMIN).json()["configured"]["gemini.apiKey"] is False


def test_connection_test_llm(client, model_lookup):
    not_configured = client.post("/api/settings/test?service=llm", headers=ADMIN).json()
    assert not_configured["ok"] is False
    model_lookup.assert_not_called()

    client.patch("/api/settings", json={"gemini.apiKey": "k"}, headers=ADMIN)
    ok = client.post("/api/settings/test?service=llm", headers=ADMIN).json()
    assert ok == {"ok": True, "detail": "Connected - model Gemini 1.5 Flash is available"}


def test_connection_test_sharepoint(client, graph):
    graph.request.return_value = SimpleNamespace(json=lambda: {"value": [{"displayName": "Contoso", "id": "t"}]})

    result = client.post("/api/settings/test?service=sharepoint", headers=ADMIN).json()
    assert result == {"ok": True, "detail": "Connected to tenant: Contoso"}


def test_connection_test_sharepoint_failure_is_reported(client, graph):
    from services.storage_adapter import StorageError

    graph.request.side_effect = StorageError("Graph GET /organization returned 401: unauthorized", http_status=401)
    result = client.post("/api/settings/test?service=sharepoint", headers=ADMIN).json()
    assert result["ok"] is False
    assert "401" in result["detail"]


def test_connection_test_unknown_service_is_400(client):
    response = client.post("/api/settings/test?service=stripe", headers=ADMIN)
    assert response.status_code == 400
