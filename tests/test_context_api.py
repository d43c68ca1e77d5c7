#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Tests for the context REST API (tools/dashboard/app.py)."""

import io
import threading

import pytest

PROJECT = "PROJ-API"
DOC_TYPE = "requirements"


@pytest.fixture
def api(monkeypatch):
    """The Flask app module with API key auth disabled."""
    from tools.dashboard import app as app_module
    monkeypatch.setattr(app_module, "_API_KEY", "")
    return app_module


@pytest.fixture
def client(api, service):
    api.app.config["TESTING"] = True
    api.app.config["CONTEXT_SERVICE"] = service
    with api.app.test_client() as c:
        yield c
    api.app.config.pop("CONTEXT_SERVICE", None)


def _upload(client, name="RFP_Final.txt", body=b"SECTION C\n\nThe contractor shall comply.",
            project=PROJECT, category="solicitations"):
    return client.post("/api/documents/upload", data={
        "file": (io.BytesIO(body), name),
        "project_name": project,
        "category": category,
    }, content_type="multipart/form-data")


def _built(client, service):
    doc_id = _upload(client).get_json()["document_id"]
    assert service.build_now(PROJECT, DOC_TYPE)["status"] == "complete"
    return doc_id


# =========================================================================
# HEALTH & AUTH
# =========================================================================
class TestHealthAndAuth:

    def test_health(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["status"] == "healthy"
        assert data["model_category"] == "medium"

    def test_api_key_required(self, client, api, monkeypatch):
        monkeypatch.setattr(api, "_API_KEY", "secret")
        assert client.get(f"/api/context/summary/{PROJECT}/{DOC_TYPE}").status_code == 401
        ok = client.get(f"/api/context/summary/{PROJECT}/{DOC_TYPE}",
                        headers={"X-Api-Key": "secret"})
        assert ok.status_code == 200
        assert client.get("/api/health").status_code == 200

    def test_unknown_route_is_json(self, client):
        resp = client.get("/api/nothing/here")
        assert resp.status_code == 404
        assert resp.get_json()["status"] == "error"


# =========================================================================
# DOCUMENT ENDPOINTS
# =========================================================================
class TestDocumentEndpoints:

    def test_upload_and_list(self, client):
        resp = _upload(client)
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["filename"] == "RFP_Final.txt"
        assert data["category"] == "solicitations"

        listed = client.get(f"/api/documents?project={PROJECT}").get_json()
        assert listed["count"] == 1
        assert listed["documents"][0]["original_name"] == "RFP_Final.txt"

    def test_duplicate_upload(self, client):
        first = _upload(client).get_json()
        resp = _upload(client)
        assert resp.status_code == 409
        assert resp.get_json()["document_id"] == first["document_id"]

    def test_upload_validation(self, client):
        assert client.post("/api/documents/upload", data={"project_name": PROJECT},
                           content_type="multipart/form-data").status_code == 400
        resp = client.post("/api/documents/upload", data={
            "file": (io.BytesIO(b"text"), "a.txt"),
        }, content_type="multipart/form-data")
        assert resp.status_code == 400

    def test_list_requires_project(self, client):
        assert client.get("/api/documents").status_code == 400

    def test_patch_and_delete(self, client):
        doc_id = _upload(client).get_json()["document_id"]
        resp = client.patch(f"/api/documents/{doc_id}", json={"status": "archived"})
        assert resp.status_code == 200
        listed = client.get(f"/api/documents?project={PROJECT}&status=archived").get_json()
        assert listed["count"] == 1

        assert client.patch(f"/api/documents/{doc_id}", json={}).status_code == 400
        assert client.patch("/api/documents/DOC-missing",
                            json={"status": "active"}).status_code == 404

        assert client.delete(f"/api/documents/{doc_id}").status_code == 200
        assert client.delete(f"/api/documents/{doc_id}").status_code == 404

    def test_upload_rebuilds_cached_context(self, client, service):
        _built(client, service)
        _upload(client, name="amendment.txt", body=b"Amendment 1.", category="requirements")
        summary = client.get(f"/api/context/summary/{PROJECT}/{DOC_TYPE}").get_json()
        assert summary["status"] == "building"
        assert service.wait_for_build(PROJECT, DOC_TYPE, timeout=10)
        ctx = client.get(f"/api/context/{PROJECT}/{DOC_TYPE}").get_json()
        assert ctx["stale"] is False
        assert ctx["context"]["document_count"] == 2

    def test_project_profile(self, client, service):
        assert client.get(f"/api/projects/{PROJECT}/profile").status_code == 404
        _built(client, service)
        resp = client.put(f"/api/projects/{PROJECT}/profile",
                          json={"agency": "DISA", "technologies": ["cloud", "zero trust"]})
        assert resp.status_code == 200
        profile = client.get(f"/api/projects/{PROJECT}/profile").get_json()["profile"]
        assert profile["agency"] == "DISA"
        assert profile["technologies"] == ["cloud", "zero trust"]
        assert service.cache.get_record(PROJECT, DOC_TYPE)["fingerprint"] is None


# =========================================================================
# CONTEXT ENDPOINTS
# =========================================================================
class TestContextEndpoints:

    def test_summary_without_build(self, client):
        data = client.get(f"/api/context/summary/{PROJECT}/{DOC_TYPE}").get_json()
        assert data["status"] == "none"
        assert data["busy"] is False
        assert data["document_type"] == DOC_TYPE

    def test_get_context_pending(self, api, tmp_db, context_config):
        from tools.context.context_service import ContextService
        from tools.documents.document_store import get_extracted_text
        release = threading.Event()

        def extract(doc):
            release.wait(10)
            return get_extracted_text(doc.id, tmp_db)

        svc = ContextService(db_path=tmp_db, config=context_config, extract_fn=extract)
        api.app.config["CONTEXT_SERVICE"] = svc
        try:
            with api.app.test_client() as c:
                _upload(c)
                resp = c.get(f"/api/context/{PROJECT}/{DOC_TYPE}")
                assert resp.status_code == 202
                assert resp.get_json()["status"] == "pending"
                release.set()
                assert svc.wait_for_build(PROJECT, DOC_TYPE, timeout=10)
                assert c.get(f"/api/context/{PROJECT}/{DOC_TYPE}").status_code == 200
        finally:
            release.set()
            api.app.config.pop("CONTEXT_SERVICE", None)
            svc.shutdown(wait=True)

    def test_get_context_wait(self, client):
        _upload(client)
        resp = client.get(f"/api/context/{PROJECT}/{DOC_TYPE}?wait=1&timeout=10")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["status"] == "ok"
        assert data["stale"] is False
        assert data["build_status"]["status"] == "complete"
        assert data["context"]["chunks"][0]["document_name"] == "RFP_Final.txt"
        assert data["context"]["text"].startswith("[1] RFP_Final.txt")

    def test_get_context_without_chunks(self, client, service):
        _built(client, service)
        data = client.get(f"/api/context/{PROJECT}/{DOC_TYPE}?include_chunks=0").get_json()
        assert "chunks" not in data["context"]
        assert data["context"]["token_count"] > 0

    def test_invalid_model_category(self, client, service):
        _built(client, service)
        resp = client.get(f"/api/context/{PROJECT}/{DOC_TYPE}?model_category=huge")
        assert resp.status_code == 400
        assert "huge" in resp.get_json()["error"]

    def test_trigger(self, client, service):
        assert client.post("/api/context/trigger", json={"project_name": PROJECT}).status_code == 400
        _upload(client)
        resp = client.post("/api/context/trigger", json={
            "project_name": PROJECT, "document_type": DOC_TYPE, "immediate": True,
        })
        assert resp.status_code == 202
        assert resp.get_json()["status"] in ("started", "queued")
        assert service.wait_for_build(PROJECT, DOC_TYPE, timeout=10)
        assert service.get_build_status(PROJECT, DOC_TYPE).status == "complete"

    def test_trigger_debounced(self, client, service):
        _upload(client)
        resp = client.post("/api/context/trigger", json={
            "project_name": PROJECT, "document_type": DOC_TYPE,
        })
        assert resp.status_code == 202
        assert resp.get_json()["status"] == "scheduled"
        assert service.wait_for_build(PROJECT, DOC_TYPE, timeout=10)
        assert service.get_build_status(PROJECT, DOC_TYPE).status == "complete"

    def test_overflow(self, client, service):
        body = {"project_name": PROJECT, "document_type": DOC_TYPE}
        assert client.post("/api/context/overflow", json=body).status_code == 409
        _built(client, service)
        resp = client.post("/api/context/overflow", json=dict(body, model_category="small"))
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["will_overflow"] is False
        assert data["max_context_tokens"] == 2800
        assert len(data["document_breakdown"]) == 1

    def test_overflow_stats(self, client):
        data = client.get(f"/api/context/overflow/stats?project={PROJECT}").get_json()
        assert data["status"] == "ok"
        assert data["total_overflow_events"] == 0

    def test_citations(self, client, service):
        _built(client, service)
        resp = client.post("/api/context/citations", json={
            "project_name": PROJECT, "document_type": DOC_TYPE,
            "generated_text": "The contractor shall comply [1].",
        })
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["count"] == 1
        assert data["citations"][0]["document_name"] == "RFP_Final.txt"

    def test_citation_preview(self, client, service):
        url = f"/api/context/citations/preview/{PROJECT}/{DOC_TYPE}"
        assert client.get(f"{url}/DOC-X").status_code == 409
        doc_id = _built(client, service)
        resp = client.get(f"{url}/{doc_id}?chunk=0&context=1&highlight=contractor")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["document_info"]["name"] == "RFP_Final.txt"
        assert data["highlight_terms"] == ["contractor"]
        shown = [data["target_chunk"]] + data["context_chunks"]
        assert any("<mark>contractor</mark>" in c["highlighted"] for c in shown)
        assert client.get(f"{url}/DOC-X").status_code == 404

    def test_citation_access_and_analytics(self, client):
        resp = client.post("/api/context/citations/access", json={"citation_id": "abc"})
        assert resp.status_code == 400
        resp = client.post("/api/context/citations/access", json={
            "citation_id": "abc", "project_name": PROJECT, "document_id": "DOC-1",
            "user_id": "analyst", "duration_seconds": 12,
        })
        assert resp.status_code == 201
        assert resp.get_json()["status"] == "ok"

        data = client.get(f"/api/context/citations/analytics?project={PROJECT}").get_json()
        assert data["total_accesses"] == 1
        assert data["unique_users"] == 1
        assert data["most_accessed_documents"] == [{"document_id": "DOC-1", "count": 1}]
        other = client.get("/api/context/citations/analytics?project=OTHER").get_json()
        assert other["total_accesses"] == 0

    def test_delete_context(self, client, service):
        assert client.delete(f"/api/context/{PROJECT}/{DOC_TYPE}").status_code == 404
        _built(client, service)
        assert client.delete(f"/api/context/{PROJECT}/{DOC_TYPE}").status_code == 200
        assert service.get_build_status(PROJECT, DOC_TYPE).status == "none"

    def test_invalidate_and_cleanup(self, client, service):
        assert client.post("/api/context/invalidate", json={}).status_code == 400
        _built(client, service)
        data = client.post("/api/context/invalidate", json={"project_name": PROJECT}).get_json()
        assert data["invalidated"] == 1
        assert client.post("/api/context/cleanup",
                           json={"older_than_hours": "soon"}).status_code == 400
        data = client.post("/api/context/cleanup", json={"older_than_hours": 24}).get_json()
        assert data["deleted"] == 0
