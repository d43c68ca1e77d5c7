#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Tests for ContextService: background builds, caching, debounce, retry,
failure handling and generation-time reads."""

import copy
import threading
import time

import pytest

PROJECT = "PROJ-A"
DOC_TYPE = "requirements"


@pytest.fixture
def make_service(tmp_db, context_config):
    """Factory for ContextServices with build overrides. All are shut down after."""
    from tools.context.context_service import ContextService
    created = []

    def _make(extract_fn=None, sleep=None, **build):
        config = copy.deepcopy(context_config)
        config["build"].update(build)
        svc = ContextService(db_path=tmp_db, config=config, extract_fn=extract_fn,
                             sleep=sleep or (lambda s: None))
        created.append(svc)
        return svc

    yield _make
    for svc in created:
        svc.shutdown(wait=True)


@pytest.fixture
def stored_text(tmp_db):
    """Extractor reading the stored file through the document store."""
    from tools.documents.document_store import get_extracted_text

    def _extract(doc):
        return get_extracted_text(doc.id, tmp_db)

    return _extract


def _events(tmp_db, event_type):
    from tools.audit.audit_logger import query_events
    return query_events(event_type, db_path=tmp_db)


# =========================================================================
# BUILD TESTS
# =========================================================================
class TestContextBuild:
    """Test synchronous builds and the idempotent cache."""

    def test_build_and_get_context(self, service, add_document, tmp_db):
        from tools.context.models import ContextBundle
        add_document(PROJECT, "RFP_Final.txt", "SECTION C\n\nThe contractor shall comply.",
                     category="solicitations")
        add_document(PROJECT, "notes.txt", "Background notes.")
        result = service.build_now(PROJECT, DOC_TYPE)
        assert result["status"] == "complete"
        assert result["document_count"] == 2

        ctx = service.get_context(PROJECT, DOC_TYPE)
        assert isinstance(ctx, ContextBundle)
        assert ctx.fingerprint == result["fingerprint"]
        assert ctx.chunks[0].document_name == "RFP_Final.txt"
        assert ctx.text.startswith("[1] RFP_Final.txt")
        assert service.get_build_status(PROJECT, DOC_TYPE).status == "complete"
        assert len(_events(tmp_db, "context.build.complete")) == 1

    def test_unchanged_documents_skip_extraction(self, make_service, add_document,
                                                 stored_text):
        calls = []

        def counting(doc):
            calls.append(doc.id)
            return stored_text(doc)

        svc = make_service(extract_fn=counting)
        add_document(PROJECT, "a.txt", "alpha text")
        add_document(PROJECT, "b.txt", "bravo text")
        first = svc.build_now(PROJECT, DOC_TYPE)
        bundle = svc.get_context(PROJECT, DOC_TYPE)
        second = svc.build_now(PROJECT, DOC_TYPE)
        assert first["status"] == "complete"
        assert second["status"] == "unchanged"
        assert len(calls) == 2
        assert svc.get_context(PROJECT, DOC_TYPE) == bundle
        assert not svc.is_busy(PROJECT, DOC_TYPE)

    def test_empty_document_set(self, service):
        from tools.context.models import ContextBundle
        result = service.build_now("EMPTY", DOC_TYPE)
        assert result["status"] == "complete"
        bundle = service.get_context("EMPTY", DOC_TYPE)
        assert isinstance(bundle, ContextBundle)
        assert bundle.chunk_count == 0
        assert bundle.token_count == 0
        assert bundle.overflowed is False
        assert service.get_build_status("EMPTY", DOC_TYPE).status == "complete"

    def test_force_rebuild(self, service, add_document, tmp_db):
        add_document(PROJECT, "a.txt", "alpha text")
        service.build_now(PROJECT, DOC_TYPE)
        assert service.build_now(PROJECT, DOC_TYPE, force=True)["status"] == "complete"
        assert len(_events(tmp_db, "context.build.complete")) == 2

    def test_overflow_event_recorded(self, make_service, add_document, long_text, tmp_db):
        from tools.context.overflow import get_overflow_statistics
        svc = make_service(model_category="small")
        for name in ("a.txt", "b.txt", "c.txt"):
            add_document(PROJECT, name, long_text(label=name))
        result = svc.build_now(PROJECT, DOC_TYPE)
        assert result["overflowed"] is True
        stats = get_overflow_statistics(PROJECT, db_path=tmp_db)
        assert stats["total_overflow_events"] == 1
        assert stats["by_document_type"] == {DOC_TYPE: 1}


# =========================================================================
# EXTRACTION FAILURE TESTS
# =========================================================================
class TestExtractionFailures:
    """Test retry with backoff, per-document skips and whole-build failures."""

    def test_transient_failure_retried_with_backoff(self, make_service, add_document,
                                                    stored_text):
        from tools.context.models import ExtractionError
        flaky = add_document(PROJECT, "flaky.txt", "eventually readable")
        add_document(PROJECT, "ok.txt", "always readable")
        attempts = {"n": 0}
        sleeps = []

        def extract(doc):
            if doc.id == flaky and attempts["n"] < 2:
                attempts["n"] += 1
                raise ExtractionError("share locked", doc.id, transient=True)
            return stored_text(doc)

        svc = make_service(extract_fn=extract, sleep=sleeps.append,
                           retry_backoff_seconds=0.5)
        result = svc.build_now(PROJECT, DOC_TYPE)
        assert result["status"] == "complete"
        assert result["document_count"] == 2
        assert result["failed_documents"] == []
        assert sleeps == [0.5, 1.0]

    def test_transient_failure_exhausts_attempts(self, make_service, add_document,
                                                 stored_text):
        from tools.context.models import ExtractionError
        flaky = add_document(PROJECT, "flaky.txt", "never readable")
        add_document(PROJECT, "ok.txt", "always readable")
        calls = []

        def extract(doc):
            if doc.id == flaky:
                calls.append(doc.id)
                raise ExtractionError("share locked", doc.id, transient=True)
            return stored_text(doc)

        svc = make_service(extract_fn=extract)
        result = svc.build_now(PROJECT, DOC_TYPE)
        assert result["status"] == "complete"
        assert len(calls) == 3
        assert [f["document_id"] for f in result["failed_documents"]] == [flaky]

    def test_permanent_failure_skips_document(self, make_service, add_document,
                                              stored_text):
        from tools.context.models import ExtractionError
        bad = add_document(PROJECT, "corrupt.txt", "unreadable")
        good = add_document(PROJECT, "ok.txt", "readable")
        calls = []

        def extract(doc):
            calls.append(doc.id)
            if doc.id == bad:
                raise ExtractionError("corrupt file", doc.id)
            return stored_text(doc)

        svc = make_service(extract_fn=extract)
        result = svc.build_now(PROJECT, DOC_TYPE)
        assert result["status"] == "complete"
        assert calls.count(bad) == 1
        bundle = svc.get_context(PROJECT, DOC_TYPE)
        assert {c.document_id for c in bundle.chunks} == {good}
        assert bundle.failed_documents[0]["document_id"] == bad
        assert svc.get_build_status(PROJECT, DOC_TYPE).warning == \
            "1 document(s) could not be extracted and were skipped"

    def test_all_documents_failing_serves_previous_bundle(self, make_service, add_document,
                                                          stored_text, tmp_db):
        from tools.context.models import ContextBundle, ExtractionError
        from tools.documents.document_store import update_document
        behavior = {"fail": False}

        def extract(doc):
            if behavior["fail"]:
                raise ExtractionError("corrupt file", doc.id)
            return stored_text(doc)

        svc = make_service(extract_fn=extract)
        doc_a = add_document(PROJECT, "a.txt", "alpha text")
        add_document(PROJECT, "b.txt", "bravo text")
        assert svc.build_now(PROJECT, DOC_TYPE)["status"] == "complete"

        behavior["fail"] = True
        update_document(doc_a, metadata={"revision": 2}, db_path=tmp_db)
        result = svc.build_now(PROJECT, DOC_TYPE)
        assert result["status"] == "failed"
        assert "All 2 documents failed extraction" in result["error"]

        status = svc.get_build_status(PROJECT, DOC_TYPE)
        assert status.status == "failed"
        assert status.warning.startswith("Serving previous context built")
        ctx = svc.get_context(PROJECT, DOC_TYPE)
        assert isinstance(ctx, ContextBundle)
        assert ctx.document_count == 2
        assert not svc.is_busy(PROJECT, DOC_TYPE)
        assert len(_events(tmp_db, "context.build.failed")) == 1

    def test_failure_without_previous_bundle(self, make_service, add_document):
        from tools.context.models import BuildStatus, ExtractionError

        def extract(doc):
            raise ExtractionError("corrupt file", doc.id)

        svc = make_service(extract_fn=extract)
        add_document(PROJECT, "a.txt", "alpha text")
        assert svc.build_now(PROJECT, DOC_TYPE)["status"] == "failed"
        ctx = svc.get_context(PROJECT, DOC_TYPE)
        assert isinstance(ctx, BuildStatus)
        assert ctx.status == "failed"
        assert "failed extraction" in ctx.error_message

    def test_build_timeout(self, make_service, add_document):
        svc = make_service(timeout_seconds=0)
        add_document(PROJECT, "a.txt", "alpha text")
        result = svc.build_now(PROJECT, DOC_TYPE)
        assert result["status"] == "failed"
        assert "timeout" in result["error"]
        assert svc.get_build_status(PROJECT, DOC_TYPE).status == "failed"

    def test_slow_extraction_times_out(self, make_service, add_document):
        def extract(doc):
            time.sleep(0.6)
            return "late text"

        svc = make_service(extract_fn=extract, timeout_seconds=0.2)
        add_document(PROJECT, "a.txt", "alpha text")
        started = time.monotonic()
        result = svc.build_now(PROJECT, DOC_TYPE)
        assert result["status"] == "failed"
        assert "timeout" in result["error"]
        assert time.monotonic() - started < 0.6
        assert not svc.is_busy(PROJECT, DOC_TYPE)

    def test_malformed_docx_skipped(self, make_service, add_document, broken_docx,
                                    tmp_db, tmp_path):
        from tools.documents.document_store import store_document
        good = add_document(PROJECT, "a.txt", "alpha text")
        stored = store_document(broken_docx(tmp_path / "volume.docx"), PROJECT, db_path=tmp_db)
        assert stored["status"] == "ok"

        svc = make_service()
        result = svc.build_now(PROJECT, DOC_TYPE)
        assert result["status"] == "complete"
        bundle = svc.get_context(PROJECT, DOC_TYPE)
        assert bundle.document_count == 1
        assert {c.document_id for c in bundle.chunks} == {good}
        assert [f["document_id"] for f in bundle.failed_documents] == [stored["document_id"]]

    def test_unexpected_extractor_error_skipped(self, make_service, add_document, stored_text):
        bad = add_document(PROJECT, "bad.txt", "bad text")
        add_document(PROJECT, "good.txt", "good text")

        def extract(doc):
            if doc.id == bad:
                raise RuntimeError("parser blew up")
            return stored_text(doc)

        svc = make_service(extract_fn=extract)
        assert svc.build_now(PROJECT, DOC_TYPE)["status"] == "complete"
        failed = svc.get_context(PROJECT, DOC_TYPE).failed_documents
        assert failed[0]["document_id"] == bad
        assert "Unexpected error" in failed[0]["error"]


# =========================================================================
# BACKGROUND BUILD & INVALIDATION TESTS
# =========================================================================
class TestBackgroundBuilds:
    """Test debounced rebuilds, stale commits and single-flight builds."""

    def test_new_document_rebuilds_while_old_bundle_served(self, make_service, add_document):
        from tools.context.models import ContextBundle
        svc = make_service(debounce_seconds=0.5)
        add_document(PROJECT, "rfp.txt", "SECTION C\n\nThe contractor shall comply.",
                     category="requirements")
        svc.build_now(PROJECT, DOC_TYPE)
        old = svc.get_context(PROJECT, DOC_TYPE)

        add_document(PROJECT, "amendment.txt", "Amendment 1 adds a requirement.",
                     category="requirements", on_change=svc.notify_documents_changed)
        assert svc.get_build_status(PROJECT, DOC_TYPE).status == "building"
        served = svc.get_context(PROJECT, DOC_TYPE)
        assert isinstance(served, ContextBundle)
        assert served.fingerprint == old.fingerprint

        assert svc.wait_for_build(PROJECT, DOC_TYPE, timeout=10)
        assert svc.get_build_status(PROJECT, DOC_TYPE).status == "complete"
        fresh = svc.get_context(PROJECT, DOC_TYPE)
        assert fresh.document_count == 2
        assert fresh.fingerprint != old.fingerprint

    def test_burst_of_edits_builds_once(self, make_service, add_document, tmp_db):
        from tools.documents.document_store import update_document
        svc = make_service(debounce_seconds=0.5)
        doc_id = add_document(PROJECT, "a.txt", "alpha text")
        svc.build_now(PROJECT, DOC_TYPE)
        for revision in range(3):
            update_document(doc_id, metadata={"revision": revision}, db_path=tmp_db,
                            on_change=svc.notify_documents_changed)
        assert svc.wait_for_build(PROJECT, DOC_TYPE, timeout=10)
        assert len(_events(tmp_db, "context.build.complete")) == 2

    def test_notify_returns_changed_types(self, service, add_document):
        add_document(PROJECT, "a.txt", "alpha text")
        service.build_now(PROJECT, "requirements")
        service.build_now(PROJECT, "technical")
        assert service.notify_documents_changed(PROJECT) == []
        add_document(PROJECT, "b.txt", "bravo text")
        assert service.notify_documents_changed(PROJECT) == ["requirements", "technical"]
        assert service.wait_for_build(PROJECT, "requirements", timeout=10)
        assert service.wait_for_build(PROJECT, "technical", timeout=10)
        assert service.get_context(PROJECT, "technical").document_count == 2

    def test_stale_build_discarded_and_followed_up(self, make_service, add_document,
                                                   stored_text, tmp_db):
        state = {"added": False}

        def extract(doc):
            if not state["added"]:
                state["added"] = True
                add_document(PROJECT, "late.txt", "arrived mid-build")
            return stored_text(doc)

        svc = make_service(extract_fn=extract)
        add_document(PROJECT, "a.txt", "alpha text")
        add_document(PROJECT, "b.txt", "bravo text")
        result = svc.build_now(PROJECT, DOC_TYPE)
        assert result["status"] == "stale"
        assert len(_events(tmp_db, "context.build.stale")) == 1

        assert svc.wait_for_build(PROJECT, DOC_TYPE, timeout=10)
        assert svc.get_build_status(PROJECT, DOC_TYPE).status == "complete"
        assert svc.get_context(PROJECT, DOC_TYPE).document_count == 3

    def test_single_flight_with_one_follow_up(self, make_service, add_document,
                                              stored_text, tmp_db):
        release = threading.Event()

        def extract(doc):
            release.wait(10)
            return stored_text(doc)

        svc = make_service(extract_fn=extract)
        add_document(PROJECT, "a.txt", "alpha text")
        assert svc.request_build(PROJECT, DOC_TYPE)["status"] == "started"
        assert svc.request_build(PROJECT, DOC_TYPE)["status"] == "queued"
        assert svc.request_build(PROJECT, DOC_TYPE)["status"] == "queued"
        release.set()
        assert svc.wait_for_build(PROJECT, DOC_TYPE, timeout=10)
        assert len(_events(tmp_db, "context.build.complete")) == 1

    def test_get_context_before_first_build(self, make_service, add_document, stored_text):
        from tools.context.models import BuildStatus, ContextBundle
        release = threading.Event()

        def extract(doc):
            release.wait(10)
            return stored_text(doc)

        svc = make_service(extract_fn=extract)
        add_document(PROJECT, "a.txt", "alpha text")
        pending = svc.get_context(PROJECT, DOC_TYPE)
        assert isinstance(pending, BuildStatus)
        assert pending.status in ("none", "building")
        assert svc.is_busy(PROJECT, DOC_TYPE)
        release.set()
        assert svc.wait_for_build(PROJECT, DOC_TYPE, timeout=10)
        assert isinstance(svc.get_context(PROJECT, DOC_TYPE), ContextBundle)

    def test_get_context_wait(self, service, add_document):
        from tools.context.models import ContextBundle
        add_document(PROJECT, "a.txt", "alpha text")
        ctx = service.get_context(PROJECT, DOC_TYPE, wait=True, timeout=10)
        assert isinstance(ctx, ContextBundle)
        assert ctx.document_count == 1

    def test_cancel_pending_build(self, make_service, add_document):
        svc = make_service(debounce_seconds=5)
        add_document(PROJECT, "a.txt", "alpha text")
        svc.schedule_build(PROJECT, DOC_TYPE)
        assert svc.get_build_status(PROJECT, DOC_TYPE).status == "building"
        assert svc.cancel_build(PROJECT, DOC_TYPE)["status"] == "cancelled"
        assert svc.get_build_status(PROJECT, DOC_TYPE).status == "none"
        assert not svc.is_busy(PROJECT, DOC_TYPE)

    def test_invalidate_forces_rebuild(self, service, add_document, tmp_db):
        add_document(PROJECT, "a.txt", "alpha text")
        service.build_now(PROJECT, DOC_TYPE)
        assert service.invalidate(PROJECT)["invalidated"] == 1
        service.get_context(PROJECT, DOC_TYPE, wait=True, timeout=10)
        assert len(_events(tmp_db, "context.build.complete")) == 2

    def test_config_reload_keeps_cached_bundle(self, service, add_document, context_config):
        add_document(PROJECT, "a.txt", "alpha text")
        service.build_now(PROJECT, DOC_TYPE)
        old_hash = service.get_context(PROJECT, DOC_TYPE).policy_hash
        tuned = copy.deepcopy(context_config)
        tuned["section_bonuses"]["technical"] = 3
        result = service.reload_config(config=tuned)
        assert result["policy_hash"] != old_hash
        assert service.build_now(PROJECT, DOC_TYPE)["status"] == "unchanged"
        assert service.get_context(PROJECT, DOC_TYPE).policy_hash == old_hash

    def test_delete_and_cleanup(self, service, add_document):
        add_document(PROJECT, "a.txt", "alpha text")
        service.build_now(PROJECT, DOC_TYPE)
        assert service.delete_context(PROJECT, DOC_TYPE)["status"] == "deleted"
        assert service.get_build_status(PROJECT, DOC_TYPE).status == "none"
        assert service.delete_context(PROJECT, DOC_TYPE)["status"] == "not_found"
        assert service.cleanup(24) == {"status": "ok", "deleted": 0, "older_than_hours": 24}


# =========================================================================
# GENERATION-TIME READ TESTS
# =========================================================================
class TestGenerationReads:
    """Test per-model re-selection, pins, overflow analysis and citations."""

    @pytest.fixture
    def built(self, service, add_document, long_text):
        ids = [add_document(PROJECT, name, long_text(label=name))
               for name in ("a.txt", "b.txt", "c.txt")]
        service.build_now(PROJECT, DOC_TYPE)
        return ids

    def test_medium_fits_everything(self, service, built):
        bundle = service.get_context(PROJECT, DOC_TYPE)
        assert bundle.model_category == "medium"
        assert bundle.overflowed is False
        assert bundle.document_count == 3

    def test_small_model_reselects(self, service, built):
        bundle = service.get_context(PROJECT, DOC_TYPE, model_category="small")
        assert bundle.model_category == "small"
        assert bundle.token_ceiling == 2800
        assert bundle.token_count <= 2800
        assert bundle.overflowed is True
        assert service.get_context(PROJECT, DOC_TYPE).model_category == "medium"

    def test_unknown_model_category(self, service, built):
        from tools.context.models import ConfigurationError
        with pytest.raises(ConfigurationError):
            service.get_context(PROJECT, DOC_TYPE, model_category="huge")

    def test_pinned_document_first(self, service, built):
        last = built[-1]
        bundle = service.get_context(PROJECT, DOC_TYPE, model_category="small",
                                     pinned_document_ids=[last])
        assert bundle.chunks[0].document_id == last
        assert bundle.chunks[0].pinned is True

    def test_analyze_overflow(self, service, built):
        analysis = service.analyze_overflow(PROJECT, DOC_TYPE, model_category="small")
        assert analysis["status"] == "ok"
        assert analysis["will_overflow"] is True
        assert analysis["max_context_tokens"] == 2800
        narrowed = service.analyze_overflow(PROJECT, DOC_TYPE, model_category="small",
                                            selected_document_ids=[built[0]])
        assert narrowed["will_overflow"] is False

    def test_analyze_overflow_before_build(self, service):
        assert service.analyze_overflow("NOPE", DOC_TYPE)["status"] == "unavailable"

    def test_resolve_citations(self, service, built):
        result = service.resolve_citations(PROJECT, DOC_TYPE, "As stated in [1] and [2].")
        assert result["status"] == "ok"
        assert result["count"] == 2
        assert [c["citation_number"] for c in result["citations"]] == [1, 2]

    def test_preview_document(self, service, built):
        preview = service.preview_document(PROJECT, DOC_TYPE, built[0], chunk_index=0,
                                           context_chunks=1, terms=["word"])
        assert preview["status"] == "ok"
        assert preview["document_info"]["id"] == built[0]
        assert preview["target_chunk"]["index"] == 0
        assert "<mark>word</mark>" in preview["target_chunk"]["highlighted"]
        assert preview["navigation"]["total_chunks"] >= 1

    def test_preview_unknown_document(self, service, built):
        result = service.preview_document(PROJECT, DOC_TYPE, "NOPE")
        assert result == {"status": "not_found", "document_id": "NOPE"}

    def test_preview_before_build(self, service):
        assert service.preview_document("NOPE", DOC_TYPE, "X")["status"] == "unavailable"
