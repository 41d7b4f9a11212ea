"""
Source fetcher with search fallback.
Direct fetch of the stack-trace path first; on a miss, search the repository by file name, then by function name.
"""
import logging
from typing import List, Optional

from correlate.models import CrashLocation
from normalize.models import CodeWindow

logger = logging.getLogger(__name__)

VIA_DIRECT = 'direct'
VIA_FILENAME_SEARCH = 'filename_search'
VIA_TEXT_SEARCH = 'text_search'

# locations whose path already came from a repository search
_REPOSITORY_PATH_ORIGINS = ('message_search',)


class FetchResult:
    def __init__(self, window: Optional[CodeWindow], via: Optional[str], attempts: List[str]):
        self.window = window
        self.via = via
        self.attempts = attempts  # every path tried, in order

    @property
    def found(self) -> bool:
        return self.window is not None


def _dedupe(paths) -> List[str]:
    seen = set()
    out = []
    for p in paths or []:
        if p and p not in seen:
            seen.add(p)
            out.append(p)
    return out


class SourceFetcher:
    """Wraps a source host (fetch_file/search_by_filename/search_by_text) with the fallback chain.

    SourceHostError from the host is not caught here: a broken host is fatal for the crash being processed.
    """

    def __init__(self, host, context_lines: int = 15, wide_context_lines: int = 40):
        self.host = host
        self.context_lines = context_lines
        self.wide_context_lines = wide_context_lines

    def _try(self, attempts: List[str], path: str, line: Optional[int], context: int, exact: bool) -> Optional[CodeWindow]:
        attempts.append(path)
        return self.host.fetch_file(path, line, context, exact=exact)

    def fetch(self, location: CrashLocation) -> FetchResult:
        attempts: List[str] = []
        line = location.line_number if location.line_number > 0 else None
        exact = location.origin in _REPOSITORY_PATH_ORIGINS

        window = self._try(attempts, location.file_path, line, self.context_lines, exact)
        if window is not None:
            return FetchResult(window, VIA_DIRECT, attempts)

        file_name = location.file_path.rsplit('/', 1)[-1]
        hits = _dedupe(self.host.search_by_filename(file_name))
        if hits:
            logger.info("filename search for %s found %s", file_name, hits[0])
            window = self._try(attempts, hits[0], line, self.context_lines, True)
            if window is not None:
                return FetchResult(window, VIA_FILENAME_SEARCH, attempts)

        function_name = location.function_name
        if not hits and function_name and function_name != 'unknown':
            hits = _dedupe(self.host.search_by_text(function_name))
            if hits:
                logger.info("text search for %s found %s", function_name, hits[0])
                # the trace line belongs to another path, so look wider around it
                window = self._try(attempts, hits[0], line, self.wide_context_lines, True)
                if window is not None:
                    return FetchResult(window, VIA_TEXT_SEARCH, attempts)

        logger.warning("no source found for %s (tried %s)", location.file_path, ', '.join(attempts))
        return FetchResult(None, None, attempts)
