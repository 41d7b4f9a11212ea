"""
GitHub source-host client.
Reads application source through the contents API and finds files through the code search API.
"""
import base64
import binascii
import logging
from typing import List, Dict, Any, Optional

from normalize.models import CodeWindow
from storage.cache import rate_limited_get, Cache
from errors import SourceHostError

logger = logging.getLogger(__name__)


def normalize_source_path(file_path: str, source_root: str = 'lib/', test_root: str = 'test/') -> str:
    """Map a stack-trace file reference to a repository path.

    "package:my_app/screens/home.dart" -> "lib/screens/home.dart"; bare "main.dart" -> "lib/main.dart".
    """
    path = (file_path or '').strip()
    if path.startswith('package:'):
        parts = path.split('/')
        if len(parts) > 1:
            path = '/'.join(parts[1:])
    path = path.lstrip('/')
    if not path.startswith(source_root) and not path.startswith(test_root):
        path = f"{source_root}{path}"
    return path


def build_window(path: str, full_content: str, target_line: Optional[int] = None, context_lines: int = 10) -> CodeWindow:
    """Cut a numbered window of 2*context_lines+1 lines around target_line, clamped to the file."""
    lines = full_content.split('\n')
    total = len(lines)
    if not target_line or target_line <= 0:
        return CodeWindow(path=path, content=full_content, full_content=full_content, total_lines=total)
    target_line = min(target_line, total)
    start = max(1, target_line - context_lines)
    end = min(total, target_line + context_lines)
    numbered = '\n'.join(f"{start + idx}: {line}" for idx, line in enumerate(lines[start - 1:end]))
    return CodeWindow(path=path, content=numbered, full_content=full_content, total_lines=total, start_line=start, end_line=end, target_line=target_line)


def _unique_paths(items: List[Dict[str, Any]]) -> List[str]:
    seen = set()
    paths: List[str] = []
    for item in items or []:
        path = item.get('path') if isinstance(item, dict) else None
        if path and path not in seen:
            seen.add(path)
            paths.append(path)
    return paths


class GitHubSourceClient:
    """Read-only view of one repository branch."""

    def __init__(
        self,
        token: str,
        owner: str,
        repo: str,
        branch: str = 'main',
        base_url: str = None,
        cache: Optional[Cache] = None,
        source_root: str = 'lib/',
        test_root: str = 'test/',
        timeout: float = 20.0,
        max_retries: int = 3,
    ):
        self.token = token
        self.owner = owner
        self.repo = repo
        self.branch = branch
        self.base_url = (base_url or "https://api.github.com").rstrip('/')
        self.headers = {
            "Authorization": f"Bearer {self.token}" if self.token else "",
            "Accept": "application/vnd.github+json",
        }
        self.cache = cache
        self.source_root = source_root
        self.test_root = test_root
        self.timeout = timeout
        self.max_retries = max_retries

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.repo}"

    def _contents(self, path: str) -> Dict[str, Any]:
        url = f"{self.base_url}/repos/{self.slug}/contents/{path}"
        key = f"github:contents:{self.slug}@{self.branch}:{path}"
        return rate_limited_get(
            url,
            headers=self.headers,
            params={"ref": self.branch},
            cache=self.cache,
            cache_key=key,
            max_retries=self.max_retries,
            timeout=self.timeout,
        )

    @staticmethod
    def _decode(body: Any, path: str) -> str:
        if not isinstance(body, dict) or 'content' not in body:
            raise SourceHostError(f"Unexpected contents payload for {path}", status=200)
        try:
            return base64.b64decode(body['content']).decode('utf-8')
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise SourceHostError(f"Could not decode {path}: {exc}", status=200) from exc

    def fetch_file(self, path: str, target_line: Optional[int] = None, context_lines: int = 10, exact: bool = False) -> Optional[CodeWindow]:
        """Return the file (or a window of it) or None when the path does not exist.

        Stack-trace paths are normalized first; pass exact=True for paths that already came from search.
        Raises SourceHostError for anything other than 200/404, including timeouts.
        """
        normalized = path.lstrip('/') if exact else normalize_source_path(path, self.source_root, self.test_root)
        logger.info("fetching %s from %s@%s", normalized, self.slug, self.branch)
        res = self._contents(normalized)
        status = res.get('status', 0)
        if status == 404:
            logger.warning("file not found on source host: %s", normalized)
            return None
        if status != 200:
            raise SourceHostError(f"Fetching {normalized} failed with status {status}: {res.get('response')}", status=status)
        full = self._decode(res.get('response'), normalized)
        return build_window(normalized, full, target_line, context_lines)

    def _search(self, query: str) -> List[str]:
        url = f"{self.base_url}/search/code"
        res = rate_limited_get(
            url,
            headers=self.headers,
            params={"q": f"{query} repo:{self.slug}"},
            max_retries=self.max_retries,
            timeout=self.timeout,
        )
        status = res.get('status', 0)
        if status == 422:
            # query rejected by the search parser
            logger.warning("code search %r rejected: %s", query, res.get('response'))
            return []
        if status != 200:
            raise SourceHostError(f"Code search {query!r} failed with status {status}: {res.get('response')}", status=status)
        body = res.get('response') or {}
        return _unique_paths(body.get('items', []) if isinstance(body, dict) else [])

    def search_by_filename(self, name: str) -> List[str]:
        base = (name or '').rsplit('/', 1)[-1]
        if not base or base == 'unknown':
            return []
        return self._search(f"filename:{base}")

    def search_by_text(self, text: str) -> List[str]:
        text = (text or '').strip()
        if not text or text == 'unknown':
            return []
        # code search rejects embedded quotes
        return self._search(f'"{text.replace(chr(34), " ")}"')
