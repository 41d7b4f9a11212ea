"""
Crash reconciler: attach a resolved crash to its component and keep the component's aggregate and status in step.

Every write after the component lookup is idempotent per crash id, so a crash can be re-run safely.
Updates to one component are serialized by a per-(project, identifier) lock and the aggregate write is
a compare-and-swap on the component revision, so concurrent writers (threads or other processes) never
lose an increment.
"""
import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from correlate.models import ActionExtraction, CrashLocation
from errors import StateConflictError
from normalize.models import CrashReport, Component, ComponentErrorRecord, CRASH_UNLINKED
from normalize.util import is_placeholder_action_id, normalize_app_version
from scoring.health import aggregate_crash_count, next_status
from storage.store import CrashStore

logger = logging.getLogger(__name__)

REASON_NO_ACTION_ID = 'no action id found'


class ReconcileOutcome:
    def __init__(
        self,
        linked: bool,
        component: Optional[Component] = None,
        error: Optional[ComponentErrorRecord] = None,
        created_component: bool = False,
        created_error: bool = False,
        counted: bool = False,
        previous_status: Optional[str] = None,
    ):
        self.linked = linked
        self.component = component
        self.error = error
        self.created_component = created_component
        self.created_error = created_error
        self.counted = counted  # False when this crash id had already been folded into the error record
        self.previous_status = previous_status

    @property
    def status_changed(self) -> bool:
        return bool(self.component) and self.previous_status is not None and self.previous_status != self.component.status


class Reconciler:
    def __init__(self, store: CrashStore, crash_threshold: int = 3, max_cas_retries: int = 5):
        self.store = store
        self.crash_threshold = crash_threshold
        self.max_cas_retries = max_cas_retries
        self._locks: Dict[Tuple[str, str], threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, project_id: str, identifier: str) -> threading.RLock:
        key = (project_id, identifier)
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    def _metadata(self, extraction: ActionExtraction, location: Optional[CrashLocation], extra: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        meta: Dict[str, Any] = {'extraction': extraction.to_dict()}
        if location is not None:
            meta['location'] = location.to_dict()
        if extra:
            meta.update(extra)
        return meta

    def find_or_create_component(self, project_id: str, action_id: str, display_name: Optional[str] = None) -> Tuple[Component, bool]:
        existing = self.store.get_component(project_id, action_id)
        if existing is not None:
            return existing, False
        # a concurrent creator may have won the insert; its row is returned unchanged
        comp, created = self.store.create_component(project_id, action_id, name=display_name or action_id, crash_threshold=self.crash_threshold)
        if created:
            logger.info("created component %s/%s", project_id, action_id)
        return comp, created

    def reconcile(
        self,
        crash: CrashReport,
        extraction: ActionExtraction,
        location: Optional[CrashLocation] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> ReconcileOutcome:
        """Apply one extraction result to durable state."""
        metadata = self._metadata(extraction, location, extra)
        if not extraction.found or is_placeholder_action_id(extraction.action_id):
            self.store.mark_crash(crash.crash_id, CRASH_UNLINKED, REASON_NO_ACTION_ID, metadata)
            logger.warning("crash %s left unlinked: %s", crash.crash_id, extraction.rationale)
            return ReconcileOutcome(linked=False)

        action_id = extraction.action_id
        app_version = normalize_app_version(crash.app_version)
        with self._lock_for(crash.project_id, action_id):
            component, created_component = self.find_or_create_component(crash.project_id, action_id, extraction.component_name)
            previous_status = component.status
            error, created_error, counted = self.store.upsert_error(
                component,
                crash.crash_id,
                crash.error_message,
                crash.stack_trace,
                action_id,
                app_version,
                crash.event_count,
                metadata,
            )
            if counted:
                self.store.increment_version_stat(component.component_id, app_version, crashes=1)
            else:
                logger.info("crash %s already recorded on %s; metadata refreshed", crash.crash_id, action_id)
            component = self.recompute(component.component_id)
            self.store.link_crash(crash.crash_id, component.component_id, metadata)

        if component.status != previous_status:
            logger.warning("component %s/%s is now %s (%d crashes, threshold %d)", component.project_id, component.identifier, component.status, component.crash_count, component.crash_threshold)
        return ReconcileOutcome(
            linked=True,
            component=component,
            error=error,
            created_component=created_component,
            created_error=created_error,
            counted=counted,
            previous_status=previous_status,
        )

    def recompute(self, component_id: int) -> Component:
        """Re-derive crash count and status from the error records and write them back."""
        for attempt in range(1, self.max_cas_retries + 1):
            component = self.store.get_component_by_id(component_id)
            if component is None:
                raise StateConflictError(f"Component {component_id} disappeared during recompute")
            count = aggregate_crash_count(self.store.list_errors(component_id, include_archived=False))
            status = next_status(component, count)
            if count == component.crash_count and status == component.status:
                return component
            if self.store.compare_and_set_aggregate(component_id, component.revision, count, status):
                return self.store.get_component_by_id(component_id)
            logger.debug("revision conflict on component %s (attempt %d)", component_id, attempt)
        raise StateConflictError(f"Component {component_id} aggregate update lost {self.max_cas_retries} races")

    def recompute_all(self, project_id: Optional[str] = None) -> List[Component]:
        out = []
        for comp in self.store.list_components(project_id):
            with self._lock_for(comp.project_id, comp.identifier):
                out.append(self.recompute(comp.component_id))
        return out
