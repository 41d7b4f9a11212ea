"""
Retry/backoff and rate-limit-aware HTTP helper.
Every outbound call (source host fetch/search, generative extraction) goes through here so each one has
an explicit timeout and the same 429/Retry-After handling.
"""

import os
import time
import random
import logging
import email.utils
from datetime import datetime, timezone
from typing import Optional, Dict, Any
import requests

logger = logging.getLogger(__name__)

# retry/backoff defaults from environment
DEFAULT_MAX_RETRIES = int(os.getenv("CRASHLINK_MAX_RETRIES", "3"))
DEFAULT_BACKOFF_BASE = float(os.getenv("CRASHLINK_BACKOFF_BASE", "0.5"))
_env_jitter = os.getenv("CRASHLINK_BACKOFF_JITTER")
DEFAULT_BACKOFF_JITTER = float(_env_jitter) if _env_jitter is not None and _env_jitter != "" else None
DEFAULT_MAX_BACKOFF = float(os.getenv("CRASHLINK_MAX_BACKOFF", "60.0"))
DEFAULT_TIMEOUT = 20.0

# a single wait is never longer than this, whatever the server asks for
MAX_SINGLE_WAIT = 120.0

# runtime-overrides
_runtime_max_retries: Optional[int] = None
_runtime_backoff_base: Optional[float] = None
_runtime_backoff_jitter: Optional[float] = None
_runtime_max_backoff: Optional[float] = None


def configure_retry(
    max_retries: Optional[int] = None, backoff_base: Optional[float] = None, backoff_jitter: Optional[float] = None, max_backoff: Optional[float] = None
):
    """Configure retry/backoff defaults at runtime (e.g. from CLI)."""
    global _runtime_max_retries, _runtime_backoff_base, _runtime_backoff_jitter, _runtime_max_backoff
    if max_retries is not None:
        _runtime_max_retries = int(max_retries)
    if backoff_base is not None:
        _runtime_backoff_base = float(backoff_base)
    if backoff_jitter is not None:
        _runtime_backoff_jitter = float(backoff_jitter)
    if max_backoff is not None:
        _runtime_max_backoff = float(max_backoff)


def reset_retry():
    """Drop runtime overrides (used by tests)."""
    global _runtime_max_retries, _runtime_backoff_base, _runtime_backoff_jitter, _runtime_max_backoff
    _runtime_max_retries = None
    _runtime_backoff_base = None
    _runtime_backoff_jitter = None
    _runtime_max_backoff = None


def _parse_retry_after(raw_ra: Optional[str]) -> Optional[float]:
    if not raw_ra:
        return None
    try:
        return float(raw_ra)
    except (TypeError, ValueError):
        pass
    try:
        dt = email.utils.parsedate_to_datetime(raw_ra)
    except (TypeError, ValueError, AttributeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return max(0.0, (dt - datetime.now(timezone.utc)).total_seconds())


def _header_number(headers: Dict[str, Any], key: str, convert):
    val = headers.get(key)
    if val is None:
        return None
    try:
        return convert(val)
    except (TypeError, ValueError):
        return None


def _parse_rate_headers(resp):
    headers = getattr(resp, 'headers', None) or {}
    ra = _parse_retry_after(headers.get('Retry-After'))
    rl_remaining = _header_number(headers, 'X-RateLimit-Remaining', int)
    rl_reset = _header_number(headers, 'X-RateLimit-Reset', float)
    return ra, rl_remaining, rl_reset


def _resolve_backoff_params(min_wait: float, backoff_base: Optional[float], backoff_jitter: Optional[float], max_backoff: Optional[float]):
    if backoff_base is not None:
        base = float(backoff_base)
    elif min_wait:
        base = float(min_wait)
    elif _runtime_backoff_base is not None:
        base = float(_runtime_backoff_base)
    else:
        base = float(DEFAULT_BACKOFF_BASE)

    if backoff_jitter is not None:
        jitter = float(backoff_jitter)
    elif _runtime_backoff_jitter is not None:
        jitter = float(_runtime_backoff_jitter)
    elif DEFAULT_BACKOFF_JITTER is not None:
        jitter = float(DEFAULT_BACKOFF_JITTER)
    else:
        jitter = base

    if max_backoff is not None:
        max_backoff_resolved = float(max_backoff)
    elif _runtime_max_backoff is not None:
        max_backoff_resolved = float(_runtime_max_backoff)
    else:
        max_backoff_resolved = float(DEFAULT_MAX_BACKOFF)

    return base, jitter, max_backoff_resolved


def _parse_body(resp):
    try:
        return resp.json()
    except ValueError:
        return getattr(resp, 'text', None)


def _should_retry_response(status_code: int, ra: Optional[float], rl_remaining: Optional[int]) -> bool:
    if status_code in (429, 503):
        return True
    # GitHub signals secondary rate limits with 403 + Retry-After / exhausted quota
    if ra is not None:
        return True
    if rl_remaining is not None and rl_remaining <= 0:
        return True
    return False


def _compute_wait_seconds(ra: Optional[float], rl_reset: Optional[float], backoff: float, jitter: float) -> float:
    if ra is not None:
        return min(float(ra) + random.uniform(0, jitter), MAX_SINGLE_WAIT)
    if rl_reset:
        wait = max(0.0, float(rl_reset) - time.time())
        return min(wait + random.uniform(0, jitter), MAX_SINGLE_WAIT)
    return min(backoff + random.uniform(0, jitter), MAX_SINGLE_WAIT)


def _attempt_request_once(method: str, url: str, headers: Dict[str, str], params: Dict[str, Any], json_body: Any, timeout: float):
    try:
        resp = requests.request(method, url, headers=headers or {}, params=params or {}, json=json_body, timeout=timeout)
    except requests.Timeout as ex:
        return 'error', {'exception': f"timeout after {timeout}s: {ex}"}
    except requests.RequestException as ex:
        return 'error', {'exception': str(ex)}

    status = getattr(resp, 'status_code', 0)
    if status == 200:
        return 'success', {'body': _parse_body(resp), 'status': status}

    ra, rl_remaining, rl_reset = _parse_rate_headers(resp)
    if _should_retry_response(status, ra, rl_remaining):
        return 'retry', {'status': status, 'ra': ra, 'rl_reset': rl_reset, 'text': getattr(resp, 'text', None)}

    return 'fail', {'body': _parse_body(resp), 'status': status}


def _handle_attempt_outcome(outcome: str, data: Dict[str, Any], cache, cache_key: str, backoff: float, max_backoff: float, jitter: float):
    if outcome == 'error':
        last_result = {'response': data.get('exception'), 'status': 0, 'timestamp': time.time()}
        return 'continue', last_result, min(backoff * 2, max_backoff)

    if outcome == 'success':
        result = {'response': data.get('body'), 'status': data.get('status', 200), 'timestamp': time.time()}
        if cache and cache_key:
            cache.set(cache_key, data.get('body'), data.get('status', 200))
        return 'return', result, backoff

    if outcome == 'retry':
        wait_seconds = _compute_wait_seconds(data.get('ra'), data.get('rl_reset'), backoff, jitter)
        logger.warning("rate limited (status %s); waiting %.1fs", data.get('status'), wait_seconds)
        time.sleep(wait_seconds)
        last_result = {'response': data.get('text'), 'status': data.get('status', 0), 'timestamp': time.time()}
        return 'continue', last_result, min(backoff * 2, max_backoff)

    result = {'response': data.get('body'), 'status': data.get('status', 0), 'timestamp': time.time()}
    return 'return', result, backoff


def _request_with_retries_core(
    method: str,
    url: str,
    headers: Dict[str, str],
    params: Dict[str, Any],
    json_body: Any,
    timeout: float,
    cache,
    cache_key: str,
    base: float,
    jitter: float,
    max_backoff: float,
    max_retries: int,
) -> Dict[str, Any]:
    attempt = 0
    backoff = base
    last_result: Dict[str, Any] = {'response': None, 'status': 0, 'timestamp': time.time()}

    while attempt < max_retries:
        if attempt > 0:
            time.sleep(min(backoff + random.uniform(0, jitter), max_backoff))

        outcome, data = _attempt_request_once(method, url, headers, params, json_body, timeout)
        if outcome == 'error':
            logger.debug("%s %s failed on attempt %d: %s", method, url, attempt + 1, data.get('exception'))

        action, payload, backoff = _handle_attempt_outcome(outcome, data, cache, cache_key, backoff, max_backoff, jitter)
        if action == 'continue':
            last_result = payload
            attempt += 1
            continue
        return payload

    logger.warning("%s %s gave up after %d attempts (last status %s)", method, url, max_retries, last_result.get('status'))
    return last_result


def perform_request_with_retries(
    url: str,
    headers: Dict[str, str],
    params: Dict[str, Any],
    cache,
    cache_key: str,
    min_wait: float,
    max_retries: int,
    backoff_base: Optional[float] = None,
    backoff_jitter: Optional[float] = None,
    max_backoff: Optional[float] = None,
    method: str = 'GET',
    json_body: Any = None,
    timeout: Optional[float] = None,
) -> Dict[str, Any]:
    """Send one logical request, retrying transport errors and rate limits.

    Returns a dict with 'response' (parsed JSON or text), 'status' (0 when no HTTP response was ever received)
    and 'timestamp'. Non-retryable HTTP errors (404, 401, 500...) come back immediately with their status.
    """
    base, jitter, max_backoff_resolved = _resolve_backoff_params(min_wait, backoff_base, backoff_jitter, max_backoff)
    effective_max_retries = int(_runtime_max_retries) if _runtime_max_retries is not None else int(max_retries or DEFAULT_MAX_RETRIES)
    return _request_with_retries_core(
        method.upper(),
        url,
        headers or {},
        params or {},
        json_body,
        float(timeout if timeout is not None else DEFAULT_TIMEOUT),
        cache,
        cache_key,
        base,
        jitter,
        max_backoff_resolved,
        max(1, effective_max_retries),
    )


__all__ = ["configure_retry", "reset_retry", "perform_request_with_retries"]
