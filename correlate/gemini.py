"""
Gemini client for action-identifier extraction.
Talks to the generateContent REST endpoint and returns the model's structured JSON answer as a dict.
"""
import json
import logging
import re
from typing import Any, Dict, Optional

from storage.cache import rate_limited_request
from errors import GenerativeModelError

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = """You are looking at a crash in a Flutter/Dart application and must name the actionId it belongs to.

FILE: {file_name}
ERROR LINE: {line_number}
FUNCTION: {function_name}

CODE:
```dart
{code}
```

The application wraps risky operations in guard calls that carry an actionId string, for example:
  ActionGuard.guard(actionId: 'checkout_submit', action: _submit)
  ActionGuard.run(actionId: 'profile_save', ...)
  SafeAction(actionId: 'cart_clear', ...)

Return the LITERAL string value of the actionId the crashing code runs under.

Correct:   FloatingActionButton(onPressed: ActionGuard.guard(actionId: 'checkout_submit22', action: _incrementCounter))
           -> {{"actionId": "checkout_submit22", "confidence": "high"}}
Incorrect: the same code -> {{"actionId": "FloatingActionButton", "confidence": "medium"}}

Rules:
- Copy the string literal exactly as written in the code.
- Never answer with a widget, function, method or class name.
- Never invent an identifier that does not appear in the code.
- If there is no explicit actionId, answer with an empty actionId and confidence "none".
- Prefer guards within 20 lines of line {line_number}.

Reply with JSON only:
{{
  "actionId": "exact_string_from_code_or_empty",
  "componentName": "short display name for the feature or null",
  "confidence": "high|medium|low|none",
  "reasoning": "where you found it, or why you could not",
  "foundAtLine": null,
  "suggestedFix": "one-line fix suggestion or null"
}}"""

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def build_prompt(file_name: str, line_number: int, code: str, function_name: str = '') -> str:
    return PROMPT_TEMPLATE.format(file_name=file_name, line_number=line_number, code=code, function_name=function_name or 'unknown')


def parse_model_reply(text: str) -> Dict[str, Any]:
    """Parse the JSON object out of a model reply, tolerating markdown fences and chatter around it."""
    if not text or not text.strip():
        raise GenerativeModelError("empty model reply")
    cleaned = _FENCE_RE.sub('', text.strip()).strip()
    try:
        data = json.loads(cleaned)
    except ValueError:
        match = _OBJECT_RE.search(cleaned)
        if not match:
            raise GenerativeModelError(f"model reply is not JSON: {text[:120]!r}")
        try:
            data = json.loads(match.group(0))
        except ValueError as exc:
            raise GenerativeModelError(f"model reply is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise GenerativeModelError(f"model reply is {type(data).__name__}, expected an object")
    return data


def _reply_text(body: Any) -> str:
    try:
        parts = body['candidates'][0]['content']['parts']
    except (KeyError, IndexError, TypeError) as exc:
        raise GenerativeModelError(f"unexpected generateContent payload: {str(body)[:200]}") from exc
    return ''.join(p.get('text', '') for p in parts if isinstance(p, dict))


class GeminiClient:
    def __init__(self, api_key: str, model: str = 'gemini-1.5-flash', base_url: Optional[str] = None, timeout: float = 60.0, max_retries: int = 2):
        self.api_key = api_key
        self.model = model
        self.base_url = (base_url or 'https://generativelanguage.googleapis.com/v1beta').rstrip('/')
        self.timeout = timeout
        self.max_retries = max_retries

    def generate(self, prompt: str) -> str:
        if not self.api_key:
            raise GenerativeModelError("GEMINI_API_KEY is not configured")
        url = f"{self.base_url}/models/{self.model}:generateContent"
        payload = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": 0.0, "responseMimeType": "application/json"},
        }
        res = rate_limited_request(
            'POST',
            url,
            headers={"Content-Type": "application/json"},
            params={"key": self.api_key},
            json_body=payload,
            max_retries=self.max_retries,
            timeout=self.timeout,
        )
        status = res.get('status', 0)
        if status != 200:
            raise GenerativeModelError(f"generateContent failed with status {status}: {str(res.get('response'))[:200]}")
        return _reply_text(res.get('response'))

    def extract_action_id(self, file_name: str, line_number: int, code: str, function_name: str = '') -> Dict[str, Any]:
        """Ask the model for the action identifier; raises GenerativeModelError on any failure."""
        logger.info("asking %s for the action id at %s:%s", self.model, file_name, line_number)
        return parse_model_reply(self.generate(build_prompt(file_name, line_number, code, function_name)))
