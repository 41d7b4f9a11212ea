"""
Action identifier extraction.
An ordered chain of strategies, each returning an ActionExtraction or None for "no match":
- PatternExtractor: guard call with actionId (high), then any bare actionId literal (medium)
- GenerativeExtractor: ask a generative model, used only when patterns find nothing
"""
import logging
import re
from typing import Iterable, List, Optional

from correlate.models import (
    ActionExtraction,
    CrashLocation,
    CONFIDENCE_HIGH,
    CONFIDENCE_LEVELS,
    CONFIDENCE_LOW,
    CONFIDENCE_MEDIUM,
    CONFIDENCE_NONE,
    METHOD_GENERATIVE,
    METHOD_PATTERN,
)
from normalize.models import CodeWindow
from normalize.util import is_placeholder_action_id
from errors import GenerativeModelError

logger = logging.getLogger(__name__)

DEFAULT_GUARD_CALLS = ('ActionGuard.guard', 'ActionGuard.run', 'SafeAction')

_BARE_ACTION_ID = re.compile(r"\bactionId\s*:\s*(['\"])([^'\"\n]+)\1")

# guard arguments before actionId, allowing parentheses nested two deep: `action: () => save(x)`
_GUARD_ARGS = r"(?:[^()]|\((?:[^()]|\([^()]*\))*\))*?"


def _guard_pattern(guard_calls: Iterable[str]) -> re.Pattern:
    calls = '|'.join(re.escape(c) for c in guard_calls)
    return re.compile(rf"(?:{calls})\s*\({_GUARD_ARGS}\bactionId\s*:\s*(['\"])([^'\"\n]+)\1", re.DOTALL)


def _line_of(text: str, offset: int) -> int:
    return text.count('\n', 0, offset) + 1


class PatternExtractor:
    """Deterministic extraction; the identifier returned is always a literal from the scanned text."""

    method = METHOD_PATTERN

    def __init__(self, guard_calls: Iterable[str] = DEFAULT_GUARD_CALLS):
        self.guard_calls = tuple(guard_calls)
        self._rules = [
            (_guard_pattern(self.guard_calls), CONFIDENCE_HIGH, 'guard call'),
            (_BARE_ACTION_ID, CONFIDENCE_MEDIUM, 'bare actionId'),
        ]

    def extract(self, window: CodeWindow, location: Optional[CrashLocation] = None) -> Optional[ActionExtraction]:
        text = window.full_content or window.content or ''
        for regex, confidence, label in self._rules:
            for match in regex.finditer(text):
                action_id = match.group(2).strip()
                if is_placeholder_action_id(action_id):
                    continue
                line = _line_of(text, match.start(2))
                return ActionExtraction(
                    action_id=action_id,
                    confidence=confidence,
                    method=self.method,
                    rationale=f"{label} at {window.path}:{line}",
                    found_at_line=line,
                    pattern=label,
                )
        return None


def extract_action_id_from_code(code: str, guard_calls: Iterable[str] = DEFAULT_GUARD_CALLS) -> Optional[ActionExtraction]:
    """Convenience wrapper for scanning a plain string."""
    window = CodeWindow(path='<code>', content=code, full_content=code, total_lines=code.count('\n') + 1)
    return PatternExtractor(guard_calls).extract(window)


class GenerativeExtractor:
    """Model-backed fallback. Never raises: failures become confidence "none" with the reason as rationale."""

    method = METHOD_GENERATIVE

    def __init__(self, client):
        self.client = client

    def extract(self, window: CodeWindow, location: Optional[CrashLocation] = None) -> Optional[ActionExtraction]:
        file_name = window.path
        line = location.line_number if location else 0
        function_name = location.function_name if location else ''
        try:
            reply = self.client.extract_action_id(file_name, line, window.content, function_name)
        except GenerativeModelError as exc:
            logger.warning("generative extraction failed for %s: %s", file_name, exc)
            return ActionExtraction.not_found(self.method, f"generative extraction failed: {exc}")
        except Exception as exc:
            logger.error("generative client raised for %s", file_name, exc_info=True)
            return ActionExtraction.not_found(self.method, f"generative extraction failed: {type(exc).__name__}: {exc}")
        if not isinstance(reply, dict):
            logger.warning("generative client returned %s for %s", type(reply).__name__, file_name)
            return ActionExtraction.not_found(self.method, f"generative extraction failed: unexpected reply {type(reply).__name__}")
        return self._interpret(reply, window)

    def _interpret(self, reply, window: CodeWindow) -> ActionExtraction:
        action_id = _reply_action_id(reply)
        reasoning = str(reply.get('reasoning') or 'generative extraction')
        confidence = _reply_confidence(reply)

        if is_placeholder_action_id(action_id) or confidence == CONFIDENCE_NONE:
            return ActionExtraction.not_found(self.method, reasoning)

        code = window.full_content or window.content
        if action_id not in code and confidence != CONFIDENCE_LOW:
            confidence = CONFIDENCE_LOW
            reasoning = f"{reasoning} (identifier not found verbatim in code; confidence capped at low)"

        found_at = reply.get('foundAtLine')
        return ActionExtraction(
            action_id=action_id,
            confidence=confidence,
            method=self.method,
            rationale=reasoning,
            suggested_fix=reply.get('suggestedFix') or None,
            component_name=reply.get('componentName') or None,
            found_at_line=found_at if isinstance(found_at, int) else None,
        )


def _reply_action_id(reply) -> str:
    raw = reply.get('actionId')
    return raw.strip() if isinstance(raw, str) else ''


def _reply_confidence(reply) -> str:
    """Model self-assessment; anything outside the known levels counts as low."""
    confidence = str(reply.get('confidence') or CONFIDENCE_NONE).strip().lower()
    return confidence if confidence in CONFIDENCE_LEVELS else CONFIDENCE_LOW


class ActionExtractor:
    """Runs strategies in order and stops at the first one that finds an identifier."""

    def __init__(self, strategies: List):
        self.strategies = list(strategies)

    def extract(self, window: CodeWindow, location: Optional[CrashLocation] = None) -> ActionExtraction:
        last: Optional[ActionExtraction] = None
        for strategy in self.strategies:
            result = strategy.extract(window, location)
            if result is None:
                continue
            if result.found:
                logger.info("%s extraction found %r (%s)", result.method, result.action_id, result.confidence)
                return result
            last = result
        if last is not None:
            return last
        return ActionExtraction.not_found(METHOD_PATTERN, f"no actionId found in {window.path}")


def build_extractor(guard_calls: Iterable[str] = DEFAULT_GUARD_CALLS, generative_client=None) -> ActionExtractor:
    strategies: List = [PatternExtractor(guard_calls)]
    if generative_client is not None:
        strategies.append(GenerativeExtractor(generative_client))
    return ActionExtractor(strategies)
