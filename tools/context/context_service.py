#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: GovProposal Portal
# CUI Category: PROPIN
# Distribution: D
# POC: GovProposal System Administrator
"""Context Service — background context builds and generation-time lookups.

Pipeline per build:
    list documents -> fingerprint -> extract (retry w/ backoff) -> chunk ->
    score -> allocate + select -> assemble -> commit (fingerprint check)

Concurrency model:
    - At most one build in flight per (project, document_type) key; keys
      build in parallel on a ThreadPoolExecutor.
    - A build requested while one is in flight queues a single follow-up.
      Further requests collapse into it.
    - Document changes are debounced: each change restarts a short timer and
      the build runs once the burst is over.
    - Readers never block on a builder. The last complete bundle stays
      servable while a key is building or after it failed.
    - A build whose target fingerprint went stale while it ran is discarded
      at commit time and a fresh build is queued instead.
    - Each extraction runs on a separate pool and is waited on for at most
      the time left before build.timeout_seconds; the deadline is checked
      again before commit.

Scoring, selection and assembly are pure; extraction and the database are
the only blocking steps.

Usage:
    python tools/context/context_service.py --build --project PROJ-A --document-type requirements
    python tools/context/context_service.py --status --project PROJ-A --document-type requirements --json
    python tools/context/context_service.py --context --project PROJ-A --document-type requirements \
        --model-category small --pin DOC-123
    python tools/context/context_service.py --cleanup [--hours 24]
"""

import json
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from tools.audit.audit_logger import log_event
from tools.context.allocator import context_ceiling
from tools.context.assembler import assemble_selection, document_set_fingerprint
from tools.context.cache import ContextCache
from tools.context.chunker import chunk_document
from tools.context.citations import document_preview, resolve_citations
from tools.context.models import (
    STATUS_BUILDING,
    STATUS_FAILED,
    BuildStatus,
    BuildTimeoutError,
    ConfigurationError,
    ContextBundle,
    ContextEngineError,
    Document,
    ExtractionError,
)
from tools.context.overflow import (
    analyze_overflow,
    apply_document_selection,
    record_overflow_event,
)
from tools.context.policy import (
    get_allocation_policy,
    get_build_settings,
    load_context_config,
)
from tools.context.scorer import score_documents
from tools.context.selector import select
from tools.context.tokens import resolve_estimator
from tools.documents.document_store import (
    get_extracted_text,
    get_project_profile,
    list_active_documents,
)

logger = logging.getLogger("govproposal.context.service")

Key = Tuple[str, str]


class ContextService:
    """Builds, caches and serves context bundles per (project, document_type)."""

    def __init__(self, db_path=None, config: Optional[dict] = None, config_path=None,
                 extract_fn: Optional[Callable[[Document], str]] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.db_path = str(db_path) if db_path else None
        self.config = config if config is not None else load_context_config(config_path)
        self.settings = get_build_settings(self.config)
        self.cache = ContextCache(self.db_path)
        self._extract = extract_fn or (lambda doc: get_extracted_text(doc.id, self.db_path))
        self._estimate = resolve_estimator(self.settings.token_estimator)
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=self.settings.max_workers,
                                            thread_name_prefix="context-build")
        self._extract_pool = ThreadPoolExecutor(max_workers=self.settings.max_workers,
                                                thread_name_prefix="context-extract")
        self._cond = threading.Condition()
        self._timers: Dict[Key, threading.Timer] = {}
        self._in_flight: Dict[Key, Future] = {}
        self._follow_up: Dict[Key, bool] = {}

    # ── configuration ──────────────────────────────────────────────────────────

    def reload_config(self, config_path=None, config: Optional[dict] = None) -> dict:
        """Swap in a new config for subsequent builds.

        Cached bundles are not invalidated; each bundle carries the
        policy_hash it was built with. Call invalidate() to force rebuilds.
        """
        new_config = config if config is not None else load_context_config(config_path)
        settings = get_build_settings(new_config)
        policy_hash = get_allocation_policy(settings.model_category, new_config).policy_hash
        self.config = new_config
        self.settings = settings
        self._estimate = resolve_estimator(settings.token_estimator)
        logger.info("Context config reloaded (policy %s)", policy_hash)
        return {"status": "ok", "policy_hash": policy_hash}

    def policy(self, model_category: Optional[str] = None):
        return get_allocation_policy(model_category or self.settings.model_category,
                                     self.config)

    # ── fingerprints ───────────────────────────────────────────────────────────

    def list_documents(self, project_name: str, document_type: str) -> List[Document]:
        return list_active_documents(
            project_name, document_type,
            include_archived=self.settings.include_archived,
            scopes=self.settings.document_type_scopes,
            db_path=self.db_path,
        )

    def current_fingerprint(self, project_name: str,
                            document_type: str) -> Tuple[List[Document], str]:
        documents = self.list_documents(project_name, document_type)
        return documents, document_set_fingerprint(documents)

    # ── scheduling ─────────────────────────────────────────────────────────────

    def _submit_locked(self, key: Key, force: bool):
        """Start a build for ``key`` or fold it into the pending follow-up. Caller holds _cond."""
        if key in self._in_flight:
            self._follow_up[key] = self._follow_up.get(key, False) or force
            return "queued"
        self._in_flight[key] = self._executor.submit(self._run_build, key, force)
        return "started"

    def request_build(self, project_name: str, document_type: str,
                      force: bool = False) -> dict:
        """Build now in the background (no debounce)."""
        key = (project_name, document_type)
        with self._cond:
            timer = self._timers.pop(key, None)
            if timer:
                timer.cancel()
            state = self._submit_locked(key, force)
            self._cond.notify_all()
        logger.debug("Build %s for %s/%s", state, project_name, document_type)
        return {"status": state, "project_name": project_name,
                "document_type": document_type}

    def request_rebuild(self, project_name: str, document_type: str,
                        force: bool = True) -> dict:
        return self.request_build(project_name, document_type, force=force)

    def schedule_build(self, project_name: str, document_type: str,
                       delay: Optional[float] = None) -> dict:
        """Debounced build: restart the quiet-period timer for the key."""
        key = (project_name, document_type)
        delay = self.settings.debounce_seconds if delay is None else delay
        self.cache.mark_pending(project_name, document_type)
        with self._cond:
            old = self._timers.pop(key, None)
            if old:
                old.cancel()
            timer = threading.Timer(delay, self._fire, args=(key,))
            timer.daemon = True
            self._timers[key] = timer
            timer.start()
        return {"status": "scheduled", "project_name": project_name,
                "document_type": document_type, "debounce_seconds": delay}

    def _fire(self, key: Key):
        with self._cond:
            if self._timers.get(key) is None:
                return
            self._timers.pop(key)
            self._submit_locked(key, False)
            self._cond.notify_all()

    def _run_build(self, key: Key, force: bool) -> dict:
        try:
            return self.build_now(key[0], key[1], force=force)
        except Exception:
            logger.error("Context build %s/%s crashed", key[0], key[1], exc_info=True)
            raise
        finally:
            with self._cond:
                self._in_flight.pop(key, None)
                if key in self._follow_up:
                    self._submit_locked(key, self._follow_up.pop(key))
                self._cond.notify_all()

    def _queue_follow_up(self, key: Key):
        with self._cond:
            self._submit_locked(key, False)
            self._cond.notify_all()

    def wait_for_build(self, project_name: str, document_type: str,
                       timeout: Optional[float] = None) -> bool:
        """Block until no build is pending or in flight for the key."""
        key = (project_name, document_type)
        with self._cond:
            return self._cond.wait_for(
                lambda: key not in self._in_flight and key not in self._timers
                and key not in self._follow_up,
                timeout,
            )

    def is_busy(self, project_name: str, document_type: str) -> bool:
        key = (project_name, document_type)
        with self._cond:
            return key in self._in_flight or key in self._timers

    def cancel_build(self, project_name: str, document_type: str) -> dict:
        """Cancel a pending debounce timer and any queued follow-up.

        A build already running is allowed to finish.
        """
        key = (project_name, document_type)
        with self._cond:
            timer = self._timers.pop(key, None)
            if timer:
                timer.cancel()
            had_follow_up = self._follow_up.pop(key, None) is not None
            running = key in self._in_flight
            self._cond.notify_all()
        if not running:
            record = self.cache.get_record(project_name, document_type)
            if record and record["status"] == STATUS_BUILDING:
                if record["payload"]:
                    self.cache.restore_complete(project_name, document_type)
                else:
                    self.cache.delete(project_name, document_type)
        cancelled = timer is not None or had_follow_up
        return {"status": "cancelled" if cancelled else "not_pending",
                "project_name": project_name, "document_type": document_type,
                "build_running": running}

    def notify_documents_changed(self, project_name: str,
                                 document_type: Optional[str] = None) -> List[str]:
        """React to a document add/remove/edit by scheduling debounced rebuilds.

        Every cached key of the project whose fingerprint moved is marked
        building (its old bundle stays servable) and gets a debounced build.
        Returns the affected document types.
        """
        keys = self.cache.list_keys(project_name)
        if document_type and (project_name, document_type) not in keys:
            keys.append((project_name, document_type))
        changed = []
        for proj, doc_type in keys:
            if document_type and doc_type != document_type:
                continue
            record = self.cache.get_record(proj, doc_type)
            _, fingerprint = self.current_fingerprint(proj, doc_type)
            if record and record.get("fingerprint") == fingerprint:
                continue
            self.schedule_build(proj, doc_type)
            changed.append(doc_type)
        if changed:
            logger.info("Documents changed for %s, rebuilding: %s",
                        project_name, ", ".join(changed))
        return changed

    # ── building ───────────────────────────────────────────────────────────────

    def _extract_bounded(self, document: Document, deadline: float) -> str:
        """Run one extraction on the extraction pool, waiting at most until ``deadline``.

        A hung extractor keeps its worker thread but releases the build.
        """
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise BuildTimeoutError(
                f"Build exceeded {self.settings.timeout_seconds}s timeout")
        future = self._extract_pool.submit(self._extract, document)
        try:
            return future.result(timeout=remaining)
        except FutureTimeoutError as e:
            future.cancel()
            raise BuildTimeoutError(
                f"Build exceeded {self.settings.timeout_seconds}s timeout "
                f"extracting {document.name}") from e

    def _extract_with_retry(self, document: Document, deadline: float) -> str:
        attempts = self.settings.extraction_attempts
        for attempt in range(1, attempts + 1):
            try:
                return self._extract_bounded(document, deadline)
            except ExtractionError as e:
                if not e.transient or attempt == attempts:
                    raise
                delay = self.settings.retry_backoff_seconds * (2 ** (attempt - 1))
                if time.monotonic() + delay > deadline:
                    raise BuildTimeoutError(
                        f"Build timed out retrying extraction of {document.name}") from e
                logger.warning("Transient extraction failure for %s (attempt %d/%d): %s",
                               document.name, attempt, attempts, e)
                self._sleep(delay)
        raise ExtractionError(f"Extraction failed for {document.name}", document.id)

    def build_now(self, project_name: str, document_type: str,
                  force: bool = False) -> dict:
        """Run one build synchronously and commit it. Never raises for build failures."""
        documents, fingerprint = self.current_fingerprint(project_name, document_type)
        record = self.cache.get_record(project_name, document_type)
        if (not force and record and record.get("payload")
                and record.get("fingerprint") == fingerprint):
            self.cache.restore_complete(project_name, document_type)
            logger.debug("Context %s/%s unchanged, skipping build", project_name, document_type)
            return {"status": "unchanged", "fingerprint": fingerprint}

        attempt = self.cache.mark_building(project_name, document_type, fingerprint)
        started = time.monotonic()
        deadline = started + self.settings.timeout_seconds
        logger.info("Building context %s/%s (attempt %d, %d documents)",
                    project_name, document_type, attempt, len(documents))
        try:
            policy = self.policy()
            profile = get_project_profile(project_name, self.db_path)
            doc_chunks, failed = [], []
            for doc in documents:
                if time.monotonic() > deadline:
                    raise BuildTimeoutError(
                        f"Build exceeded {self.settings.timeout_seconds}s timeout")
                try:
                    text = self._extract_with_retry(doc, deadline)
                except ExtractionError as e:
                    logger.warning("Skipping document %s (%s): %s", doc.id, doc.name, e)
                    failed.append({"document_id": doc.id, "name": doc.name, "error": str(e)})
                    continue
                except BuildTimeoutError:
                    raise
                except Exception as e:
                    logger.error("Unexpected error extracting %s (%s)", doc.id, doc.name,
                                 exc_info=True)
                    failed.append({"document_id": doc.id, "name": doc.name,
                                   "error": f"Unexpected error: {e}"})
                    continue
                doc_chunks.append((doc, chunk_document(text, doc, policy,
                                                       estimate=self._estimate)))
            if documents and len(failed) == len(documents):
                raise ContextEngineError(
                    f"All {len(documents)} documents failed extraction")

            candidates = score_documents(doc_chunks, policy, profile)
            selection = select(candidates, context_ceiling(policy), policy=policy)
            bundle = assemble_selection(
                selection, fingerprint=fingerprint,
                model_category=policy.model_category,
                source_document_count=len(documents),
                failed_documents=failed,
                policy_hash=policy.policy_hash,
            )
            warning = (f"{len(failed)} document(s) could not be extracted and were skipped"
                       if failed else None)
            if time.monotonic() > deadline:
                raise BuildTimeoutError(
                    f"Build exceeded {self.settings.timeout_seconds}s timeout before commit")

            with self.cache.key_lock(project_name, document_type):
                _, current = self.current_fingerprint(project_name, document_type)
                committed = self.cache.commit(project_name, document_type, attempt,
                                              fingerprint, current, bundle, candidates,
                                              warning=warning)
        except (ConfigurationError, BuildTimeoutError, ContextEngineError) as e:
            return self._fail(project_name, document_type, attempt, str(e))
        except Exception as e:
            logger.error("Unexpected error building %s/%s", project_name, document_type,
                         exc_info=True)
            return self._fail(project_name, document_type, attempt, f"Unexpected error: {e}")

        if not committed:
            self._audit("context.build.stale", project_name, document_type,
                        "Discarded stale context build", {"attempt": attempt})
            self._queue_follow_up((project_name, document_type))
            return {"status": "stale", "fingerprint": fingerprint}

        elapsed = round(time.monotonic() - started, 3)
        if selection.overflowed:
            record_overflow_event(project_name, document_type, selection,
                                  policy.model_category, db_path=self.db_path)
        self._audit("context.build.complete", project_name, document_type,
                    f"Built {document_type} context: {bundle.token_count} tokens, "
                    f"{bundle.document_count} documents",
                    {"attempt": attempt, "fingerprint": fingerprint,
                     "token_count": bundle.token_count, "overflowed": bundle.overflowed,
                     "failed_documents": len(failed), "elapsed_seconds": elapsed})
        logger.info("Context %s/%s complete: %d tokens, %d chunks, overflowed=%s (%.2fs)",
                    project_name, document_type, bundle.token_count, bundle.chunk_count,
                    bundle.overflowed, elapsed)
        return {"status": "complete", "fingerprint": fingerprint,
                "token_count": bundle.token_count, "document_count": bundle.document_count,
                "overflowed": bundle.overflowed, "failed_documents": failed,
                "warning": warning}

    def _fail(self, project_name: str, document_type: str, attempt: int,
              message: str) -> dict:
        logger.error("Context build %s/%s failed: %s", project_name, document_type, message)
        self.cache.mark_failed(project_name, document_type, attempt, message)
        self._audit("context.build.failed", project_name, document_type,
                    f"Context build failed: {message}", {"attempt": attempt})
        return {"status": STATUS_FAILED, "error": message}

    def _audit(self, event_type: str, project_name: str, document_type: str,
               action: str, details: dict):
        details = dict(details, document_type=document_type)
        log_event(event_type, "context_service", action, entity_type="project_context",
                  entity_id=project_name, details=details, db_path=self.db_path)

    # ── reads ──────────────────────────────────────────────────────────────────

    def get_build_status(self, project_name: str, document_type: str) -> BuildStatus:
        return self.cache.get_build_status(project_name, document_type)

    def get_context(self, project_name: str, document_type: str,
                    model_category: Optional[str] = None,
                    pinned_document_ids: Optional[Sequence[str]] = None,
                    wait: bool = False, timeout: Optional[float] = None,
                    force_rebuild: bool = False) -> Union[ContextBundle, BuildStatus]:
        """Context for a generation call.

        Returns the cached bundle when it is fresh. Otherwise a build is
        triggered and, unless ``wait`` is set, the last complete bundle is
        returned as-is (its fingerprint tells the caller it is stale). With
        no bundle at all the current BuildStatus is returned.

        A model category other than the build's, or a pin list, re-selects
        from the cached candidate pool without re-extracting anything.
        """
        model_category = model_category or self.settings.model_category
        policy = self.policy(model_category)
        _, fingerprint = self.current_fingerprint(project_name, document_type)
        record = self.cache.get_record(project_name, document_type)
        fresh = bool(record and record.get("payload")
                     and record.get("fingerprint") == fingerprint)

        if force_rebuild or not fresh:
            failed_same = bool(record and record["status"] == STATUS_FAILED
                               and record.get("building_fingerprint") == fingerprint)
            if wait or force_rebuild:
                self.request_build(project_name, document_type, force=force_rebuild)
            elif not self.is_busy(project_name, document_type) and not failed_same:
                self.request_build(project_name, document_type)
            if wait:
                self.wait_for_build(project_name, document_type, timeout)

        bundle = self.cache.get_bundle(project_name, document_type)
        if bundle is None:
            return self.get_build_status(project_name, document_type)
        if pinned_document_ids or model_category != bundle.model_category:
            bundle = self._reselect(project_name, document_type, bundle, policy,
                                    pinned_document_ids or [])
        return bundle

    def _reselect(self, project_name: str, document_type: str, base: ContextBundle,
                  policy, pinned_document_ids: Sequence[str]) -> ContextBundle:
        candidates = self.cache.get_candidates(project_name, document_type) or []
        known = {c.document_id for c in candidates}
        missing = [d for d in pinned_document_ids if d not in known]
        if missing:
            logger.warning("Pinned documents not in %s/%s candidate pool: %s",
                           project_name, document_type, ", ".join(missing))
        selection = select(candidates, context_ceiling(policy), pinned_document_ids,
                           policy=policy)
        return assemble_selection(
            selection, fingerprint=base.fingerprint,
            model_category=policy.model_category,
            source_document_count=base.source_document_count,
            failed_documents=base.failed_documents,
            policy_hash=policy.policy_hash,
            build_timestamp=base.build_timestamp,
        )

    def analyze_overflow(self, project_name: str, document_type: str,
                         model_category: Optional[str] = None,
                         selected_document_ids: Optional[Sequence[str]] = None,
                         pinned_document_ids: Optional[Sequence[str]] = None) -> dict:
        """Overflow analysis over the cached candidate pool of a key."""
        candidates = self.cache.get_candidates(project_name, document_type)
        if candidates is None:
            status = self.get_build_status(project_name, document_type)
            return {"status": "unavailable", "build_status": status.to_dict()}
        if selected_document_ids:
            candidates = apply_document_selection(selected_document_ids, candidates)
        analysis = analyze_overflow(candidates, self.policy(model_category),
                                    pinned_document_ids)
        analysis["status"] = "ok"
        return analysis

    def resolve_citations(self, project_name: str, document_type: str,
                          generated_text: str,
                          model_category: Optional[str] = None,
                          pinned_document_ids: Optional[Sequence[str]] = None) -> dict:
        context = self.get_context(project_name, document_type, model_category,
                                   pinned_document_ids)
        if isinstance(context, BuildStatus):
            return {"status": "unavailable", "build_status": context.to_dict(),
                    "citations": []}
        citations = resolve_citations(context, generated_text)
        return {"status": "ok", "citations": citations, "count": len(citations)}

    def preview_document(self, project_name: str, document_type: str, document_id: str,
                         chunk_index: int = 0, context_chunks: int = 2,
                         terms: Optional[Sequence[str]] = None) -> dict:
        """Navigable chunk preview of one document from the cached candidate pool."""
        candidates = self.cache.get_candidates(project_name, document_type)
        if candidates is None:
            status = self.get_build_status(project_name, document_type)
            return {"status": "unavailable", "build_status": status.to_dict()}
        preview = document_preview(candidates, document_id, chunk_index,
                                   context_chunks, terms)
        if preview is None:
            return {"status": "not_found", "document_id": document_id}
        preview["status"] = "ok"
        return preview

    # ── maintenance ────────────────────────────────────────────────────────────

    def invalidate(self, project_name: str, document_type: Optional[str] = None) -> dict:
        count = self.cache.invalidate(project_name, document_type)
        logger.info("Invalidated %d context record(s) for %s", count, project_name)
        return {"status": "ok", "invalidated": count}

    def delete_context(self, project_name: str, document_type: str) -> dict:
        self.cancel_build(project_name, document_type)
        deleted = self.cache.delete(project_name, document_type)
        return {"status": "deleted" if deleted else "not_found",
                "project_name": project_name, "document_type": document_type}

    def cleanup(self, older_than_hours: Optional[int] = None) -> dict:
        hours = self.settings.cleanup_hours if older_than_hours is None else older_than_hours
        return {"status": "ok", "deleted": self.cache.cleanup(hours),
                "older_than_hours": hours}

    def shutdown(self, wait: bool = True):
        with self._cond:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._follow_up.clear()
            self._cond.notify_all()
        self._executor.shutdown(wait=wait)
        self._extract_pool.shutdown(wait=wait)


# ── module-level service ───────────────────────────────────────────────────────

_service: Optional[ContextService] = None
_service_lock = threading.Lock()


def get_service() -> ContextService:
    """Process-wide ContextService, created on first use."""
    global _service
    with _service_lock:
        if _service is None:
            _service = ContextService()
        return _service


def main():
    import argparse

    logging.basicConfig(level=logging.INFO,
                        format="%(asctime)s %(name)s %(levelname)s %(message)s")

    parser = argparse.ArgumentParser(description="Document context service")
    parser.add_argument("--build", action="store_true", help="Build context synchronously")
    parser.add_argument("--force", action="store_true", help="Rebuild even if unchanged")
    parser.add_argument("--status", action="store_true", help="Show build status")
    parser.add_argument("--context", action="store_true", help="Print assembled context")
    parser.add_argument("--overflow", action="store_true", help="Show overflow analysis")
    parser.add_argument("--cleanup", action="store_true", help="Delete stale failed/building rows")
    parser.add_argument("--hours", type=int, help="Cleanup age threshold")
    parser.add_argument("--project", help="Project name")
    parser.add_argument("--document-type", help="Target document type")
    parser.add_argument("--model-category", help="small | medium | large")
    parser.add_argument("--pin", action="append", default=[], help="Pinned document id")
    parser.add_argument("--json", action="store_true")
    args = parser.parse_args()

    if not args.cleanup and not (args.project and args.document_type):
        parser.error("--project and --document-type are required")

    service = ContextService()
    try:
        if args.build:
            result = service.build_now(args.project, args.document_type, force=args.force)
        elif args.status:
            result = service.get_build_status(args.project, args.document_type).to_dict()
        elif args.context:
            ctx = service.get_context(args.project, args.document_type,
                                      args.model_category, args.pin, wait=True)
            result = ctx.to_dict()
            if not args.json and isinstance(ctx, ContextBundle):
                print(ctx.text)
                return
        elif args.overflow:
            result = service.analyze_overflow(args.project, args.document_type,
                                              args.model_category, pinned_document_ids=args.pin)
        elif args.cleanup:
            result = service.cleanup(args.hours)
        else:
            parser.error("Specify --build, --status, --context, --overflow or --cleanup")
    except ConfigurationError as e:
        result = {"status": "error", "message": str(e)}
    finally:
        service.shutdown()

    if args.json:
        print(json.dumps(result, indent=2, default=str))
    else:
        for key, value in result.items():
            if key != "chunks":
                print(f"  {key}: {value}")


if __name__ == "__main__":
    main()
