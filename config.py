"""
Pipeline configuration.
Values come from an optional YAML file (config/crashlink.yaml) and are then overridden by environment variables.
"""
import os
from typing import Any, Dict, Optional, Tuple

import yaml

from errors import ConfigError

# filename used for the default YAML configuration
CONFIG_FILENAME = 'crashlink.yaml'

# environment variable -> (attribute, converter)
ENV_OVERRIDES = {
    'GITHUB_TOKEN': ('github_token', str),
    'GITHUB_REPO_OWNER': ('repo_owner', str),
    'GITHUB_REPO_NAME': ('repo_name', str),
    'GITHUB_BRANCH': ('branch', str),
    'GEMINI_API_KEY': ('gemini_api_key', str),
    'GEMINI_MODEL': ('gemini_model', str),
    'CRASHLINK_BATCH_SIZE': ('batch_size', int),
    'CRASHLINK_BATCH_DELAY': ('batch_delay', float),
    'CRASHLINK_WORKERS': ('workers', int),
    'CRASHLINK_CRASH_THRESHOLD': ('crash_threshold', int),
    'CRASHLINK_HTTP_TIMEOUT': ('http_timeout', float),
}

_TUPLE_FIELDS = ('source_extensions', 'guard_calls', 'deny_list')


class PipelineConfig:
    """
    Every tunable used by the resolver, fetcher, extractor, reconciler and orchestrator.
    """

    def __init__(
        self,
        github_token: str = '',
        repo_owner: str = '',
        repo_name: str = '',
        branch: str = 'main',
        api_base_url: str = 'https://api.github.com',
        source_root: str = 'lib/',
        test_root: str = 'test/',
        source_extensions: Tuple[str, ...] = ('.dart',),
        deny_list: Optional[Tuple[str, ...]] = None,
        context_lines: int = 15,
        wide_context_lines: int = 40,
        gemini_api_key: str = '',
        gemini_model: str = 'gemini-1.5-flash',
        gemini_base_url: str = 'https://generativelanguage.googleapis.com/v1beta',
        guard_calls: Tuple[str, ...] = ('ActionGuard.guard', 'ActionGuard.run', 'SafeAction'),
        crash_threshold: int = 3,
        batch_size: int = 10,
        batch_delay: float = 1.0,
        workers: int = 1,
        message_search_chars: int = 50,
        synthetic_marker: str = 'Sentry Test',
        synthetic_file: str = 'lib/main.dart',
        synthetic_function: str = '_incrementCounter',
        synthetic_line: int = 95,
        synthetic_column: int = 7,
        http_timeout: float = 20.0,
        generative_timeout: float = 60.0,
    ):
        self.github_token = github_token
        self.repo_owner = repo_owner
        self.repo_name = repo_name
        self.branch = branch
        self.api_base_url = api_base_url
        self.source_root = source_root
        self.test_root = test_root
        self.source_extensions = tuple(source_extensions)
        # None means "use the resolver's built-in framework list"
        self.deny_list = tuple(deny_list) if deny_list is not None else None
        self.context_lines = int(context_lines)
        self.wide_context_lines = int(wide_context_lines)
        self.gemini_api_key = gemini_api_key
        self.gemini_model = gemini_model
        self.gemini_base_url = gemini_base_url
        self.guard_calls = tuple(guard_calls)
        self.crash_threshold = int(crash_threshold)
        self.batch_size = int(batch_size)
        self.batch_delay = float(batch_delay)
        self.workers = max(1, int(workers))
        self.message_search_chars = int(message_search_chars)
        self.synthetic_marker = synthetic_marker
        self.synthetic_file = synthetic_file
        self.synthetic_function = synthetic_function
        self.synthetic_line = int(synthetic_line)
        self.synthetic_column = int(synthetic_column)
        self.http_timeout = float(http_timeout)
        self.generative_timeout = float(generative_timeout)

    @property
    def repo_slug(self) -> str:
        return f"{self.repo_owner}/{self.repo_name}"

    def to_dict(self) -> Dict[str, Any]:
        data = dict(vars(self))
        # never echo secrets
        for secret in ('github_token', 'gemini_api_key'):
            if data.get(secret):
                data[secret] = '***'
        return data


def _read_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Failed to read config {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must contain a mapping, got {type(data).__name__}")
    return data


def _apply_env(values: Dict[str, Any], environ) -> None:
    for env_key, (attr, convert) in ENV_OVERRIDES.items():
        raw = environ.get(env_key)
        if raw is None or raw == '':
            continue
        try:
            values[attr] = convert(raw)
        except ValueError as exc:
            raise ConfigError(f"Invalid value for {env_key}: {raw!r}") from exc


def load_config(path: Optional[str] = None, environ=None) -> PipelineConfig:
    """
    Build a PipelineConfig from YAML (if present) and environment variables.
    Unknown YAML keys are ignored so a shared config file can carry extra sections.
    """
    environ = os.environ if environ is None else environ
    if not path:
        path = os.path.join(os.path.dirname(__file__), 'config', CONFIG_FILENAME)
    values: Dict[str, Any] = {}
    if os.path.exists(path):
        known = set(PipelineConfig().__dict__.keys())
        for k, v in _read_yaml(path).items():
            if k not in known:
                continue
            values[k] = tuple(v) if k in _TUPLE_FIELDS and isinstance(v, list) else v
    _apply_env(values, environ)
    try:
        return PipelineConfig(**values)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
