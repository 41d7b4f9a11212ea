"""
Pipeline orchestrator: resolve -> fetch -> extract -> reconcile for one crash, and batches of crashes.

Every crash ends in exactly one of three outcomes:
- linked: attached to a component
- unlinked: automation could not find a location, the source or an action id (reason stored on the crash)
- failed: an upstream host or the state store failed for this crash (reason stored, batch continues)
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from config import PipelineConfig
from correlate.extract import build_extractor
from correlate.gemini import GeminiClient
from correlate.models import ActionExtraction, CrashLocation
from correlate.stack import parse_stack_trace
from errors import CrashLinkError, CrashNotFoundError, SourceHostError, StateConflictError
from ingest.github import GitHubSourceClient
from ingest.source import SourceFetcher, FetchResult
from normalize.models import CrashReport, Component, CRASH_FAILED, CRASH_LINKED, CRASH_UNLINKED
from reconcile.reconciler import Reconciler, REASON_NO_ACTION_ID
from storage.store import CrashStore

logger = logging.getLogger(__name__)

REASON_PARSE_FAILED = 'stack trace parsing failed'
REASON_FETCH_FAILED = 'source fetch failed'
REASON_SEARCH_FAILED = 'source search failed'

STAGE_RESOLVE = 'resolve'
STAGE_FETCH = 'fetch'
STAGE_EXTRACT = 'extract'
STAGE_RECONCILE = 'reconcile'


class PipelineResult:
    def __init__(self, crash_id: str, outcome: str, stage: str, reason: Optional[str] = None):
        self.crash_id = crash_id
        self.outcome = outcome
        self.stage = stage  # last stage reached
        self.reason = reason
        self.location: Optional[CrashLocation] = None
        self.fetch: Optional[FetchResult] = None
        self.extraction: Optional[ActionExtraction] = None
        self.component: Optional[Component] = None

    @property
    def linked(self) -> bool:
        return self.outcome == CRASH_LINKED

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict.fromkeys(
            ('file_path', 'line_number', 'fetch_via', 'action_id', 'confidence', 'method', 'rationale', 'component', 'component_status', 'crash_count')
        )
        data.update(crash_id=self.crash_id, outcome=self.outcome, stage=self.stage, reason=self.reason)
        if self.location is not None:
            data.update(file_path=self.location.file_path, line_number=self.location.line_number)
        if self.fetch is not None:
            data['fetch_via'] = self.fetch.via
            if self.fetch.found:
                data['file_path'] = self.fetch.window.path
        if self.extraction is not None:
            ext = self.extraction
            data.update(action_id=ext.action_id, confidence=ext.confidence, method=ext.method, rationale=ext.rationale)
        if self.component is not None:
            data.update(component=self.component.identifier, component_status=self.component.status, crash_count=self.component.crash_count)
        return data


class CrashPipeline:
    def __init__(self, store: CrashStore, fetcher: SourceFetcher, extractor, reconciler: Reconciler, config: Optional[PipelineConfig] = None):
        self.store = store
        self.fetcher = fetcher
        self.extractor = extractor
        self.reconciler = reconciler
        self.config = config or PipelineConfig()
        self._stop = threading.Event()

    @classmethod
    def from_config(cls, config: PipelineConfig, store: CrashStore, cache=None, generative_client=None) -> 'CrashPipeline':
        """Wire the GitHub source host and (when a key is configured) the Gemini fallback."""
        host = GitHubSourceClient(
            config.github_token,
            config.repo_owner,
            config.repo_name,
            branch=config.branch,
            base_url=config.api_base_url,
            cache=cache,
            source_root=config.source_root,
            test_root=config.test_root,
            timeout=config.http_timeout,
        )
        if generative_client is None and config.gemini_api_key:
            generative_client = GeminiClient(config.gemini_api_key, config.gemini_model, config.gemini_base_url, timeout=config.generative_timeout)
        fetcher = SourceFetcher(host, config.context_lines, config.wide_context_lines)
        extractor = build_extractor(config.guard_calls, generative_client)
        reconciler = Reconciler(store, crash_threshold=config.crash_threshold)
        return cls(store, fetcher, extractor, reconciler, config)

    # --- location ---

    def _search_message(self, crash: CrashReport) -> Optional[CrashLocation]:
        snippet = (crash.error_message or '')[: self.config.message_search_chars].strip()
        if not snippet:
            return None
        hits = self.fetcher.host.search_by_text(snippet)
        if not hits:
            return None
        logger.info("message search for crash %s matched %s", crash.crash_id, hits[0])
        return CrashLocation(hits[0], 0, 0, 'unknown', snippet, origin='message_search')

    def _synthetic(self, crash: CrashReport) -> Optional[CrashLocation]:
        marker = self.config.synthetic_marker
        if not marker or marker not in (crash.error_message or ''):
            return None
        cfg = self.config
        return CrashLocation(cfg.synthetic_file, cfg.synthetic_line, cfg.synthetic_column, cfg.synthetic_function, crash.error_message, origin='synthetic')

    def resolve(self, crash: CrashReport) -> Optional[CrashLocation]:
        """Stack trace first, then message search, then the synthetic test marker."""
        location = parse_stack_trace(crash.stack_trace, self.config.source_extensions, self.config.deny_list)
        if location is None:
            logger.warning("no user frame in stack trace of crash %s; trying fallbacks", crash.crash_id)
            location = self._search_message(crash) or self._synthetic(crash)
        return location

    # --- single crash ---

    def _finish(self, crash: CrashReport, result: PipelineResult, status: str, reason: str) -> PipelineResult:
        result.outcome = status
        result.reason = reason
        analysis = {'stage': result.stage}
        if result.location is not None:
            analysis['location'] = result.location.to_dict()
        if result.fetch is not None:
            analysis['attempted_paths'] = result.fetch.attempts
        self.store.mark_crash(crash.crash_id, status, reason, analysis)
        log = logger.error if status == CRASH_FAILED else logger.warning
        log("crash %s %s at %s: %s", crash.crash_id, status, result.stage, reason)
        return result

    def process_crash(self, crash_id: str) -> PipelineResult:
        crash = self.store.get_crash(crash_id)
        if crash is None:
            raise CrashNotFoundError(crash_id)
        return self.process_report(crash)

    def process_report(self, crash: CrashReport) -> PipelineResult:
        """Run one crash to its terminal state. Stores the crash first if it is new."""
        self.store.add_crash(crash)
        crash = self.store.get_crash(crash.crash_id) or crash
        result = PipelineResult(crash.crash_id, CRASH_UNLINKED, STAGE_RESOLVE)

        try:
            result.location = self.resolve(crash)
        except SourceHostError as exc:
            return self._finish(crash, result, CRASH_FAILED, f"{REASON_SEARCH_FAILED}: {exc}")
        if result.location is None:
            return self._finish(crash, result, CRASH_UNLINKED, REASON_PARSE_FAILED)
        logger.info("resolved %s:%s in %s", result.location.file_path, result.location.line_number, result.location.function_name)

        result.stage = STAGE_FETCH
        try:
            result.fetch = self.fetcher.fetch(result.location)
        except SourceHostError as exc:
            return self._finish(crash, result, CRASH_FAILED, f"{REASON_FETCH_FAILED}: {exc}")
        if not result.fetch.found:
            return self._finish(crash, result, CRASH_UNLINKED, REASON_FETCH_FAILED)

        result.stage = STAGE_EXTRACT
        window = result.fetch.window
        result.extraction = self.extractor.extract(window, result.location)

        result.stage = STAGE_RECONCILE
        extra = {'fetched_path': window.path, 'fetch_via': result.fetch.via}
        try:
            outcome = self.reconciler.reconcile(crash, result.extraction, result.location, extra)
        except StateConflictError as exc:
            return self._finish(crash, result, CRASH_FAILED, str(exc))
        if not outcome.linked:
            result.outcome = CRASH_UNLINKED
            result.reason = REASON_NO_ACTION_ID
            return result
        result.outcome = CRASH_LINKED
        result.component = outcome.component
        return result

    # --- batches ---

    def stop(self):
        """Stop a running batch after the items already started."""
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def _safe_process(self, crash: CrashReport) -> PipelineResult:
        try:
            return self.process_report(crash)
        except CrashLinkError as exc:
            reason = str(exc)
        except Exception as exc:
            logger.error("unexpected failure processing crash %s", crash.crash_id, exc_info=True)
            reason = f"unexpected error: {exc}"
        result = PipelineResult(crash.crash_id, CRASH_FAILED, 'error', reason)
        self.store.mark_crash(crash.crash_id, CRASH_FAILED, reason)
        return result

    def _pause(self, index: int) -> bool:
        """Wait batch_delay before every item but the first; False when stop() was called."""
        if index and self.config.batch_delay > 0:
            self._stop.wait(self.config.batch_delay)
        return not self._stop.is_set()

    def process_batch(self, limit: Optional[int] = None) -> List[PipelineResult]:
        """Process the oldest unlinked crashes that carry a stack trace, up to `limit` (default batch_size)."""
        self._stop.clear()
        crashes = self.store.list_unlinked_crashes(limit or self.config.batch_size)
        logger.info("batch of %d crashes (workers=%d)", len(crashes), self.config.workers)
        started = time.time()
        if self.config.workers <= 1:
            results = []
            for i, crash in enumerate(crashes):
                if not self._pause(i):
                    break
                results.append(self._safe_process(crash))
        else:
            futures = []
            with ThreadPoolExecutor(max_workers=self.config.workers) as pool:
                for i, crash in enumerate(crashes):
                    if not self._pause(i):
                        break
                    futures.append(pool.submit(self._safe_process, crash))
            results = [f.result() for f in futures]
        linked = sum(1 for r in results if r.linked)
        logger.info("batch done: %d/%d linked in %.1fs", linked, len(results), time.time() - started)
        return results

    # --- maintenance ---

    def recompute_all_components(self, project_id: Optional[str] = None) -> List[Component]:
        return self.reconciler.recompute_all(project_id)

    def archive_and_recompute(self, days: float, project_id: Optional[str] = None) -> Dict[str, Any]:
        archived = self.store.archive_errors_older_than(days)
        components = self.recompute_all_components(project_id)
        logger.info("archived %d error records; recomputed %d components", archived, len(components))
        return {'archived': archived, 'components': components}
