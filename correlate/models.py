"""
Data models produced while resolving a crash: where it happened and which action it belongs to.
"""
from typing import Optional, Dict, Any

CONFIDENCE_NONE = 'none'
CONFIDENCE_LOW = 'low'
CONFIDENCE_MEDIUM = 'medium'
CONFIDENCE_HIGH = 'high'
CONFIDENCE_LEVELS = (CONFIDENCE_NONE, CONFIDENCE_LOW, CONFIDENCE_MEDIUM, CONFIDENCE_HIGH)

METHOD_PATTERN = 'pattern'
METHOD_GENERATIVE = 'generative'


class CrashLocation:
    """
    The innermost user-code frame of a stack trace.
    line_number/column_number are 0 for degraded matches; `origin` records which strategy produced it.
    """

    def __init__(self, file_path: str, line_number: int, column_number: int, function_name: str, raw_line: str, origin: str = 'stack'):
        self.file_path = file_path
        self.line_number = line_number
        self.column_number = column_number
        self.function_name = function_name
        self.raw_line = raw_line
        self.origin = origin  # stack / degraded / message_search / synthetic

    @property
    def is_degraded(self) -> bool:
        return self.line_number <= 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'file_path': self.file_path,
            'line_number': self.line_number,
            'column_number': self.column_number,
            'function_name': self.function_name,
            'raw_line': self.raw_line,
            'origin': self.origin,
        }

    def __repr__(self):
        return f"CrashLocation({self.file_path}:{self.line_number}:{self.column_number} in {self.function_name})"


class ActionExtraction:
    """
    Terminal judgment about which action identifier a crash belongs to.
    """

    def __init__(
        self,
        action_id: Optional[str],
        confidence: str,
        method: str,
        rationale: str,
        suggested_fix: Optional[str] = None,
        component_name: Optional[str] = None,
        found_at_line: Optional[int] = None,
        pattern: Optional[str] = None,
    ):
        self.action_id = action_id
        self.confidence = confidence
        self.method = method
        self.rationale = rationale
        self.suggested_fix = suggested_fix
        self.component_name = component_name  # display name suggested by the model
        self.found_at_line = found_at_line
        self.pattern = pattern

    @property
    def found(self) -> bool:
        return bool(self.action_id) and self.confidence != CONFIDENCE_NONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action_id': self.action_id,
            'confidence': self.confidence,
            'method': self.method,
            'rationale': self.rationale,
            'suggested_fix': self.suggested_fix,
            'component_name': self.component_name,
            'found_at_line': self.found_at_line,
            'pattern': self.pattern,
        }

    @classmethod
    def not_found(cls, method: str, rationale: str) -> 'ActionExtraction':
        return cls(action_id=None, confidence=CONFIDENCE_NONE, method=method, rationale=rationale)
