#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: GovProposal Portal
# CUI Category: PROPIN
# Distribution: D
# POC: GovProposal System Administrator
"""GovProposal Context API — Flask JSON endpoints for document context.

Context:
    /api/health                                       — Liveness + DB path
    /api/context/summary/<project>/<document_type>    — Build status (GET, cheap poll)
    /api/context/<project>/<document_type>            — Context bundle (GET)
        ?model_category=small|medium|large  ?pinned=DOC-1,DOC-2
        ?wait=1  ?timeout=30  ?force_rebuild=1
    /api/context/<project>/<document_type>            — Delete cached context (DELETE)
    /api/context/trigger                              — Trigger build (POST JSON)
    /api/context/overflow                             — Overflow analysis (POST JSON)
    /api/context/citations                            — Resolve citations (POST JSON)
    /api/context/invalidate                           — Forget fingerprints (POST JSON)
    /api/context/cleanup                              — Delete stale rows (POST JSON)
    /api/context/overflow/stats                       — Overflow statistics (GET)
    /api/context/citations/preview/<project>/<document_type>/<document_id>
        ?chunk=0  ?context=2  ?highlight=term1,term2  — Chunk preview (GET)
    /api/context/citations/access                     — Record citation access (POST JSON)
    /api/context/citations/analytics                  — Citation analytics (GET ?project= ?days=)

Documents:
    /api/documents                     — List project documents (GET ?project=)
    /api/documents/upload              — Upload document (POST multipart)
    /api/documents/<id>                — Update metadata/status (PATCH JSON)
    /api/documents/<id>                — Delete document (DELETE)
    /api/projects/<project>/profile    — Project profile (GET / PUT JSON)

Every document mutation notifies the context service, which schedules a
debounced rebuild for the project's cached contexts.

Usage:
    python tools/dashboard/app.py [--port 5001] [--debug]
"""

import json
import logging
import os
import sys
import threading
import time
from collections import defaultdict, deque
from datetime import datetime, timezone
from pathlib import Path

from flask import Flask, jsonify, request

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)
logger = logging.getLogger("govproposal")

BASE_DIR = Path(__file__).resolve().parent.parent.parent
DB_PATH = Path(os.environ.get(
    "GOVPROPOSAL_DB_PATH", str(BASE_DIR / "data" / "govproposal.db")
))

sys.path.insert(0, str(BASE_DIR))

from tools.context.context_service import ContextService, get_service  # noqa: E402
from tools.context.citations import get_citation_analytics, track_citation_access  # noqa: E402
from tools.context.models import BuildStatus, ConfigurationError  # noqa: E402
from tools.context.overflow import get_overflow_statistics  # noqa: E402
from tools.documents import document_store  # noqa: E402

# =========================================================================
# RATE LIMITER (in-memory, per-IP sliding window)
# =========================================================================
_rl_lock = threading.Lock()
_rl_windows: dict = defaultdict(deque)  # key -> deque of timestamps


def _check_rate_limit(key: str, max_calls: int, window_secs: int) -> bool:
    """Return True if the call is allowed, False if rate-limited."""
    now = time.monotonic()
    with _rl_lock:
        dq = _rl_windows[key]
        cutoff = now - window_secs
        while dq and dq[0] < cutoff:
            dq.popleft()
        if len(dq) >= max_calls:
            return False
        dq.append(now)
        return True


# =========================================================================
# APP SETUP
# =========================================================================
app = Flask(__name__)


def _now():
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _service() -> ContextService:
    """The context service backing the API. Tests inject one via app.config."""
    return app.config.get("CONTEXT_SERVICE") or get_service()


def _flag(value) -> bool:
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


def _id_list(value) -> list:
    if not value:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [str(v) for v in value]


def _json_body() -> dict:
    return request.get_json(silent=True) or {}


# =========================================================================
# AUTH + RATE LIMITING (before_request)
# =========================================================================
_API_KEY = os.environ.get("GOVPROPOSAL_API_KEY", "").strip()
# Forced rebuilds re-extract every document: max 10 per minute per IP
_REBUILD_RATE_LIMIT = (10, 60)


@app.before_request
def _before_request():
    path = request.path

    # ── Optional API key auth for /api/* routes ───────────────────────────
    if _API_KEY and path.startswith("/api/") and path != "/api/health":
        provided = (
            request.headers.get("X-Api-Key", "")
            or request.args.get("api_key", "")
        )
        if provided != _API_KEY:
            return jsonify({"error": "Unauthorized. Provide X-Api-Key header."}), 401

    # ── Rate limit forced rebuilds ────────────────────────────────────────
    if path == "/api/context/trigger" and request.method == "POST":
        if _flag(_json_body().get("force")):
            ip = request.remote_addr or "unknown"
            max_calls, window = _REBUILD_RATE_LIMIT
            if not _check_rate_limit(f"rebuild:{ip}", max_calls, window):
                return jsonify({
                    "error": f"Rate limit exceeded. Max {max_calls} forced rebuilds per {window}s."
                }), 429


@app.errorhandler(ConfigurationError)
def _configuration_error(exc):
    return jsonify({"status": "error", "error": str(exc)}), 400


@app.errorhandler(404)
def _not_found(exc):
    return jsonify({"status": "error", "error": "Not found"}), 404


# =========================================================================
# HEALTH
# =========================================================================
@app.route("/api/health")
def api_health():
    service = _service()
    return jsonify({
        "status": "healthy",
        "service": "govproposal-context",
        "db_path": service.db_path or str(DB_PATH),
        "model_category": service.settings.model_category,
        "timestamp": _now(),
    })


# =========================================================================
# CONTEXT
# =========================================================================
@app.route("/api/context/summary/<project>/<document_type>")
def api_context_summary(project, document_type):
    """Build status only. Cheap enough for UI polling."""
    service = _service()
    status = service.get_build_status(project, document_type).to_dict()
    status["busy"] = service.is_busy(project, document_type)
    status["project_name"] = project
    status["document_type"] = document_type
    return jsonify(status)


@app.route("/api/context/<project>/<document_type>", methods=["GET"])
def api_context_get(project, document_type):
    """Context bundle for generation. 202 while nothing has been built yet."""
    service = _service()
    timeout = request.args.get("timeout", type=float)
    result = service.get_context(
        project, document_type,
        model_category=request.args.get("model_category") or None,
        pinned_document_ids=_id_list(request.args.get("pinned")),
        wait=_flag(request.args.get("wait")),
        timeout=timeout,
        force_rebuild=_flag(request.args.get("force_rebuild")),
    )
    build_status = service.get_build_status(project, document_type).to_dict()
    if isinstance(result, BuildStatus):
        return jsonify({"status": "pending", "build_status": build_status}), 202

    body = result.to_dict()
    if not _flag(request.args.get("include_chunks", "1")):
        body.pop("chunks", None)
    _, current = service.current_fingerprint(project, document_type)
    return jsonify({
        "status": "ok",
        "stale": result.fingerprint != current,
        "build_status": build_status,
        "context": body,
    })


@app.route("/api/context/<project>/<document_type>", methods=["DELETE"])
def api_context_delete(project, document_type):
    result = _service().delete_context(project, document_type)
    return jsonify(result), 200 if result["status"] == "deleted" else 404


@app.route("/api/context/trigger", methods=["POST"])
def api_context_trigger():
    """Trigger a build. ``immediate`` skips the debounce window."""
    data = _json_body()
    project = data.get("project_name")
    document_type = data.get("document_type")
    if not project or not document_type:
        return jsonify({"error": "project_name and document_type are required"}), 400

    service = _service()
    if _flag(data.get("immediate")) or _flag(data.get("force")):
        result = service.request_build(project, document_type, force=_flag(data.get("force")))
    else:
        result = service.schedule_build(project, document_type)
    logger.info("Context build %s for %s/%s", result["status"], project, document_type)
    return jsonify(result), 202


@app.route("/api/context/overflow", methods=["POST"])
def api_context_overflow():
    """Overflow analysis with optional user document selection and pins."""
    data = _json_body()
    project = data.get("project_name")
    document_type = data.get("document_type")
    if not project or not document_type:
        return jsonify({"error": "project_name and document_type are required"}), 400

    result = _service().analyze_overflow(
        project, document_type,
        model_category=data.get("model_category") or None,
        selected_document_ids=_id_list(data.get("selected_document_ids")) or None,
        pinned_document_ids=_id_list(data.get("pinned_document_ids")),
    )
    return jsonify(result), 200 if result["status"] == "ok" else 409


@app.route("/api/context/overflow/stats")
def api_context_overflow_stats():
    service = _service()
    days = request.args.get("days", default=30, type=int)
    result = get_overflow_statistics(request.args.get("project") or None, days,
                                     db_path=service.db_path)
    return jsonify(result)


@app.route("/api/context/citations", methods=["POST"])
def api_context_citations():
    """Map generated text back to the context chunks it cites."""
    data = _json_body()
    project = data.get("project_name")
    document_type = data.get("document_type")
    if not project or not document_type:
        return jsonify({"error": "project_name and document_type are required"}), 400

    result = _service().resolve_citations(
        project, document_type, data.get("generated_text") or "",
        model_category=data.get("model_category") or None,
        pinned_document_ids=_id_list(data.get("pinned_document_ids")),
    )
    return jsonify(result), 200 if result["status"] == "ok" else 409


@app.route("/api/context/citations/preview/<project>/<document_type>/<document_id>")
def api_context_citation_preview(project, document_type, document_id):
    """Navigable preview of a cited document around one chunk."""
    result = _service().preview_document(
        project, document_type, document_id,
        chunk_index=request.args.get("chunk", default=0, type=int),
        context_chunks=max(0, request.args.get("context", default=2, type=int)),
        terms=_id_list(request.args.get("highlight")),
    )
    codes = {"ok": 200, "not_found": 404}
    return jsonify(result), codes.get(result["status"], 409)


@app.route("/api/context/citations/access", methods=["POST"])
def api_context_citation_access():
    data = _json_body()
    citation_id = data.get("citation_id")
    project = data.get("project_name")
    if not citation_id or not project:
        return jsonify({"error": "citation_id and project_name are required"}), 400
    entry = track_citation_access(
        citation_id, project,
        document_id=data.get("document_id"),
        access_type=data.get("access_type") or "view",
        user_id=data.get("user_id") or request.remote_addr or "anonymous",
        duration_seconds=data.get("duration_seconds"),
        rating=data.get("rating"),
        db_path=_service().db_path,
    )
    return jsonify({"status": "ok", "recorded_at": entry["created_at"]}), 201


@app.route("/api/context/citations/analytics")
def api_context_citation_analytics():
    days = request.args.get("days", default=30, type=int)
    return jsonify(get_citation_analytics(request.args.get("project") or None, days,
                                          db_path=_service().db_path))


@app.route("/api/context/invalidate", methods=["POST"])
def api_context_invalidate():
    data = _json_body()
    project = data.get("project_name")
    if not project:
        return jsonify({"error": "project_name is required"}), 400
    return jsonify(_service().invalidate(project, data.get("document_type") or None))


@app.route("/api/context/cleanup", methods=["POST"])
def api_context_cleanup():
    hours = _json_body().get("older_than_hours")
    if hours is not None and not isinstance(hours, int):
        return jsonify({"error": "older_than_hours must be an integer"}), 400
    return jsonify(_service().cleanup(hours))


# =========================================================================
# DOCUMENTS
# =========================================================================
@app.route("/api/documents")
def api_documents_list():
    project = request.args.get("project")
    if not project:
        return jsonify({"error": "project is required"}), 400
    docs = document_store.list_documents(
        project, category=request.args.get("category") or None,
        status=request.args.get("status") or None, db_path=_service().db_path,
    )
    return jsonify({"status": "ok", "documents": docs, "count": len(docs)})


@app.route("/api/documents/upload", methods=["POST"])
def api_documents_upload():
    """Upload a project document. Multipart form-data."""
    import tempfile

    if "file" not in request.files:
        return jsonify({"error": "No file provided"}), 400
    project = request.form.get("project_name")
    if not project:
        return jsonify({"error": "project_name is required"}), 400

    f = request.files["file"]
    try:
        metadata = json.loads(request.form.get("metadata") or "{}")
    except json.JSONDecodeError:
        return jsonify({"error": "metadata must be a JSON object"}), 400
    service = _service()

    # Save to temp file then hand to the store
    with tempfile.NamedTemporaryFile(delete=False, suffix=Path(f.filename).suffix) as tmp:
        f.save(tmp.name)
        tmp_path = Path(tmp.name)

    try:
        result = document_store.store_document(
            tmp_path, project,
            category=request.form.get("category") or "references",
            description=request.form.get("description") or "",
            metadata=metadata if isinstance(metadata, dict) else {},
            original_name=f.filename,
            db_path=service.db_path,
            on_change=service.notify_documents_changed,
        )
    finally:
        if tmp_path.exists():
            tmp_path.unlink()

    if result["status"] == "error":
        return jsonify(result), 400
    return jsonify(result), 200 if result["status"] != "duplicate" else 409


@app.route("/api/documents/<doc_id>", methods=["PATCH"])
def api_documents_update(doc_id):
    """Update category, status (active/archived), description or metadata."""
    data = _json_body()
    service = _service()
    result = document_store.update_document(
        doc_id,
        category=data.get("category"),
        status=data.get("status"),
        description=data.get("description"),
        metadata=data.get("metadata"),
        db_path=service.db_path,
        on_change=service.notify_documents_changed,
    )
    if result["status"] == "error":
        code = 404 if "not found" in result["message"] else 400
        return jsonify(result), code
    return jsonify(result)


@app.route("/api/documents/<doc_id>", methods=["DELETE"])
def api_documents_delete(doc_id):
    service = _service()
    ok = document_store.delete_document(doc_id, db_path=service.db_path,
                                        on_change=service.notify_documents_changed)
    return jsonify({"deleted": ok}), 200 if ok else 404


@app.route("/api/projects/<project>/profile", methods=["GET"])
def api_project_profile_get(project):
    profile = document_store.get_project_profile(project, db_path=_service().db_path)
    if not profile:
        return jsonify({"status": "error", "error": f"No profile for {project}"}), 404
    return jsonify({"status": "ok", "profile": profile})


@app.route("/api/projects/<project>/profile", methods=["PUT"])
def api_project_profile_put(project):
    """Agency, technologies and keywords feed the metadata relevance bonus."""
    data = _json_body()
    service = _service()
    result = document_store.upsert_project_profile(
        project,
        agency=data.get("agency"),
        technologies=_id_list(data.get("technologies")) if "technologies" in data else None,
        keywords=_id_list(data.get("keywords")) if "keywords" in data else None,
        description=data.get("description"),
        db_path=service.db_path,
    )
    # Profile edits move relevance but not the document fingerprint
    service.invalidate(project)
    return jsonify(result)


# =========================================================================
# MAIN
# =========================================================================
if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="GovProposal Context API")
    parser.add_argument("--port", type=int, default=5001)
    parser.add_argument("--debug", action="store_true")
    parser.add_argument("--host", default="127.0.0.1")
    args = parser.parse_args()

    print(f"GovProposal Context API starting on http://{args.host}:{args.port}")
    print(f"Database: {DB_PATH}")
    app.run(host=args.host, port=args.port, debug=args.debug)
