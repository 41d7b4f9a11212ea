"""
Normalization utility helpers.
Turn raw ingestion payloads (SDK reports, Sentry issue webhooks) into CrashReport objects.
"""
import time
import uuid
from typing import Dict, Any, Optional

from normalize.models import CrashReport

# values a model (or a sloppy template) may hand back instead of a real identifier
PLACEHOLDER_ACTION_IDS = frozenset({
    '',
    'exact_string_from_code_or_empty',
    'none',
    'null',
    'undefined',
    'unknown',
    'n/a',
})


def is_placeholder_action_id(value: Optional[str]) -> bool:
    if value is None:
        return True
    return value.strip().lower() in PLACEHOLDER_ACTION_IDS


def normalize_app_version(raw: Optional[str]) -> str:
    """Reduce release strings like 'my_app@1.2.0+7 (7)' to '1.2.0'."""
    if not raw:
        return 'unknown'
    version = str(raw).strip()
    if '@' in version:
        version = version.split('@', 1)[1]
    if '+' in version:
        version = version.split('+', 1)[0]
    if ' (' in version:
        version = version.split(' (', 1)[0]
    return version.strip() or 'unknown'


def _sentry_issue(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    data = raw.get('data')
    if isinstance(data, dict) and isinstance(data.get('issue'), dict):
        return data['issue']
    if isinstance(raw.get('issue'), dict):
        return raw['issue']
    return None


def _from_sentry(issue: Dict[str, Any], raw: Dict[str, Any], project_id: Optional[str]) -> CrashReport:
    release = issue.get('release') or raw.get('release')
    if isinstance(release, dict):
        release = release.get('version')
    return CrashReport(
        crash_id=f"sentry-{issue.get('id') or uuid.uuid4().hex}",
        project_id=project_id or raw.get('project_id') or '',
        error_message=issue.get('title') or '',
        stack_trace=issue.get('culprit') or None,
        app_version=normalize_app_version(release),
        event_count=int(issue.get('count') or 1),
        created_at=time.time(),
        source='sentry',
    )


def crash_report_from_payload(raw: Dict[str, Any], project_id: Optional[str] = None) -> CrashReport:
    """Create a CrashReport from an SDK report or a Sentry issue webhook.

    SDK reports carry snake_case keys (error_message, stack_trace, app_version, event_count);
    Sentry webhooks wrap the issue in data.issue with title/culprit/count.
    """
    if not isinstance(raw, dict):
        raise ValueError(f"crash payload must be an object, got {type(raw).__name__}")
    issue = _sentry_issue(raw)
    if issue is not None:
        return _from_sentry(issue, raw, project_id)
    return CrashReport(
        crash_id=str(raw.get('crash_id') or raw.get('id') or uuid.uuid4()),
        project_id=project_id or raw.get('project_id') or '',
        error_message=raw.get('error_message') or raw.get('errorMessage') or '',
        stack_trace=raw.get('stack_trace') or raw.get('stackTrace') or None,
        app_version=normalize_app_version(raw.get('app_version') or raw.get('appVersion')),
        event_count=int(raw.get('event_count') or raw.get('eventCount') or 1),
        created_at=float(raw['created_at']) if raw.get('created_at') is not None else time.time(),
        source='sdk',
    )
