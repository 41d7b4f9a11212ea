"""
Unified data models for crash reports, fetched source and durable component state.
"""

from typing import Optional, Dict, Any

# component lifecycle statuses
STATUS_ACTIVE = 'active'
STATUS_MAINTENANCE = 'maintenance'
STATUS_DEPRECATED = 'deprecated'
COMPONENT_STATUSES = (STATUS_ACTIVE, STATUS_MAINTENANCE, STATUS_DEPRECATED)

# crash processing statuses stored on the crash row
CRASH_PENDING = 'pending'
CRASH_LINKED = 'linked'
CRASH_UNLINKED = 'unlinked'
CRASH_FAILED = 'failed'


class CrashReport:
    """
    One crash as delivered by the ingestion boundary. Treated as read-only once built.
    """
    def __init__(self, crash_id: str, project_id: str, error_message: str, stack_trace: Optional[str], app_version: str = 'unknown', event_count: int = 1, created_at: Optional[float] = None, source: str = 'sdk'):
        self.crash_id = crash_id
        self.project_id = project_id
        self.error_message = error_message or ''
        self.stack_trace = stack_trace
        self.app_version = app_version or 'unknown'
        self.event_count = max(1, int(event_count or 1))
        self.created_at = created_at
        self.source = source  # sdk / sentry

    def to_dict(self) -> Dict[str, Any]:
        return {
            'crash_id': self.crash_id,
            'project_id': self.project_id,
            'error_message': self.error_message,
            'stack_trace': self.stack_trace,
            'app_version': self.app_version,
            'event_count': self.event_count,
            'created_at': self.created_at,
            'source': self.source,
        }


class CodeWindow:
    """
    Source text fetched for one resolution attempt.
    `content` is the numbered window (or the whole file when no target line was given).
    """
    def __init__(self, path: str, content: str, full_content: str, total_lines: int, start_line: int = 1, end_line: Optional[int] = None, target_line: Optional[int] = None):
        self.path = path
        self.content = content
        self.full_content = full_content
        self.total_lines = total_lines
        self.start_line = start_line
        self.end_line = end_line if end_line is not None else total_lines
        self.target_line = target_line

    @property
    def line_count(self) -> int:
        return max(0, self.end_line - self.start_line + 1)


class Component:
    """
    Durable tracked feature keyed by (project_id, identifier).
    `status_source` is 'auto' when the reconciler owns the status, 'manual' after an operator override.
    """
    def __init__(self, component_id: int, project_id: str, identifier: str, name: str, status: str = STATUS_ACTIVE, fallback_message: Optional[str] = None, crash_threshold: int = 3, crash_count: int = 0, status_source: str = 'auto', revision: int = 0, created_at: Optional[float] = None, updated_at: Optional[float] = None):
        self.component_id = component_id
        self.project_id = project_id
        self.identifier = identifier
        self.name = name
        self.status = status
        self.fallback_message = fallback_message
        self.crash_threshold = crash_threshold
        self.crash_count = crash_count
        self.status_source = status_source
        self.revision = revision
        self.created_at = created_at
        self.updated_at = updated_at

    @property
    def is_manual(self) -> bool:
        return self.status_source == 'manual'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'component_id': self.component_id,
            'project_id': self.project_id,
            'identifier': self.identifier,
            'name': self.name,
            'status': self.status,
            'fallback_message': self.fallback_message,
            'crash_threshold': self.crash_threshold,
            'crash_count': self.crash_count,
            'status_source': self.status_source,
        }


class ComponentErrorRecord:
    """
    One error message seen on a component; repeated occurrences are merged into it.
    """
    def __init__(self, error_id: int, component_id: int, project_id: str, action_id: str, app_version: str, error_message: str, stack_trace: Optional[str], event_count: int = 1, metadata: Optional[Dict[str, Any]] = None, archived: bool = False, last_seen: Optional[float] = None):
        self.error_id = error_id
        self.component_id = component_id
        self.project_id = project_id
        self.action_id = action_id
        self.app_version = app_version
        self.error_message = error_message
        self.stack_trace = stack_trace
        self.event_count = event_count
        self.metadata = metadata or {}
        self.archived = bool(archived)
        self.last_seen = last_seen


class VersionStat:
    """
    Per (component, app version) counters.
    """
    def __init__(self, component_id: int, app_version: str, crash_count: int = 0, action_count: int = 0):
        self.component_id = component_id
        self.app_version = app_version
        self.crash_count = crash_count
        self.action_count = action_count
