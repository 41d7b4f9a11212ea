"""
Stack trace location resolver.
Finds the first frame of a crash report that points into application code:
- strict match: "<file> in <function> at line <L>:<C>"
- degraded match: first line mentioning a source file that is not a framework file
"""
import os
import re
from typing import List, Optional, Iterable, Tuple

from correlate.models import CrashLocation

# Flutter/Dart runtime and framework files that never hold application actions
FRAMEWORK_FILES = (
    'errors.dart',
    'zone.dart',
    'isolate_helper.dart',
    'future.dart',
    'binding.dart',
    'platform_dispatcher.dart',
    'pointer_binding.dart',
    'operations.dart',
    'js_allow_interop_patch.dart',
    'window.dart',
    'framework.dart',
    'component_stat.dart',
    'view.dart',
    'binding_wrapper.dart',
    'frame_service.dart',
)

DEFAULT_EXTENSIONS = ('.dart',)


def _frame_pattern(extensions: Iterable[str]) -> re.Pattern:
    exts = '|'.join(re.escape(e) for e in extensions)
    return re.compile(rf"^(.+?(?:{exts}))\s+in\s+(.+?)\s+at\s+line\s+(\d+):(\d+)")


def _path_pattern(extensions: Iterable[str]) -> re.Pattern:
    exts = '|'.join(re.escape(e) for e in extensions)
    return re.compile(rf"([\w./:@-]+?(?:{exts}))\b")


def _clean_function_name(name: str) -> str:
    return re.sub(r"[\[\]<>]", '', name).strip()


def _is_framework_file(file_path: str, deny_list: Iterable[str]) -> bool:
    return os.path.basename(file_path) in deny_list or file_path in deny_list


def _split_lines(stack_trace) -> List[str]:
    if not stack_trace or not isinstance(stack_trace, str):
        return []
    return [line.strip() for line in stack_trace.splitlines() if line.strip()]


def _strict_frames(lines: List[str], pattern: re.Pattern, deny_list: Tuple[str, ...]):
    for line in lines:
        match = pattern.match(line)
        if not match:
            continue
        file_path = match.group(1).strip()
        if _is_framework_file(file_path, deny_list):
            continue
        yield CrashLocation(
            file_path=file_path,
            line_number=int(match.group(3)),
            column_number=int(match.group(4)),
            function_name=_clean_function_name(match.group(2)),
            raw_line=line,
        )


def _degraded_location(lines: List[str], extensions: Tuple[str, ...], deny_list: Tuple[str, ...]) -> Optional[CrashLocation]:
    path_re = _path_pattern(extensions)
    for line in lines:
        if not any(ext in line for ext in extensions):
            continue
        paths = path_re.findall(line)
        user_paths = [p for p in paths if not _is_framework_file(p, deny_list)]
        if paths and not user_paths:
            continue
        file_path = user_paths[0] if user_paths else 'unknown'
        return CrashLocation(file_path=file_path, line_number=0, column_number=0, function_name='unknown', raw_line=line, origin='degraded')
    return None


def parse_stack_trace(stack_trace, extensions: Optional[Iterable[str]] = None, deny_list: Optional[Iterable[str]] = None) -> Optional[CrashLocation]:
    """
    Return the first non-framework frame of a stack trace, or None.

    Traces are expected top-first, so the first surviving frame approximates the crash site.
    When no line matches the strict frame syntax, the first line that mentions a non-framework
    source file is returned as a degraded location (line/column 0, function "unknown").
    """
    exts = tuple(extensions or DEFAULT_EXTENSIONS)
    deny = tuple(deny_list) if deny_list is not None else FRAMEWORK_FILES
    lines = _split_lines(stack_trace)
    if not lines:
        return None
    for location in _strict_frames(lines, _frame_pattern(exts), deny):
        return location
    return _degraded_location(lines, exts, deny)


def get_all_user_frames(stack_trace, extensions: Optional[Iterable[str]] = None, deny_list: Optional[Iterable[str]] = None) -> List[CrashLocation]:
    """Return every strictly-matched non-framework frame, in trace order."""
    exts = tuple(extensions or DEFAULT_EXTENSIONS)
    deny = tuple(deny_list) if deny_list is not None else FRAMEWORK_FILES
    return list(_strict_frames(_split_lines(stack_trace), _frame_pattern(exts), deny))
