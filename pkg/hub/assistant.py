"""
Gemini generateContent client.

One call is retried up to max_attempts times on network errors and non-2xx
responses, sleeping backoff * 2**(attempt-1) between tries. A 2xx body that
doesn't have the expected shape is not retried. Every failure surfaces as
AIError; the assistant never writes anything itself.
"""
import json
import logging
import re
import time
from typing import Any, Callable, Dict, Optional, Union

import requests

from .errors import AIError

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models"
DEFAULT_MODEL = "gemini-2.5-flash"


def parse_json_text(text: str) -> Any:
    """Parse model JSON output, tolerating markdown code fences around it."""
    text = (text or "").strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        # Some answers wrap the object in prose
        match = re.search(r"\{.*\}", text, re.DOTALL)
        if match:
            try:
                return json.loads(match.group())
            except json.JSONDecodeError:
                pass
    raise AIError("AI response was not valid JSON")


class AIAssistant:
    """Generative-language client with bounded retry."""

    def __init__(self, api_key: str = "", model: str = DEFAULT_MODEL,
                 endpoint: str = DEFAULT_ENDPOINT, max_attempts: int = 3,
                 backoff: float = 1.0, timeout: float = 30.0,
                 enabled: bool = True, sleep: Callable[[float], None] = time.sleep):
        self.api_key = api_key or ""
        self.model = model
        self.endpoint = endpoint.rstrip("/")
        self.max_attempts = max(1, int(max_attempts))
        self.backoff = backoff
        self.timeout = timeout
        self.enabled = enabled
        self._sleep = sleep

    @property
    def configured(self) -> bool:
        return self.enabled and bool(self.api_key)

    @property
    def url(self) -> str:
        return f"{self.endpoint}/{self.model}:generateContent"

    def generate(self, prompt: str, schema: Optional[Dict[str, Any]] = None) -> Union[str, Any]:
        """
        Run one prompt. Returns the generated text, or the parsed JSON value
        when a response schema is given.

        Raises AIError when not configured, when every attempt failed, or
        when the response is malformed.
        """
        if not self.configured:
            raise AIError("AI assistant is not configured")

        payload: Dict[str, Any] = {"contents": [{"parts": [{"text": prompt}]}]}
        if schema is not None:
            payload["generationConfig"] = {
                "responseMimeType": "application/json",
                "responseSchema": schema,
            }

        body = self._post(payload)
        text = self._extract_text(body)
        if schema is not None:
            return parse_json_text(text)
        return text

    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        last_error = "no attempt made"
        for attempt in range(1, self.max_attempts + 1):
            try:
                r = requests.post(
                    self.url,
                    params={"key": self.api_key},
                    json=payload,
                    headers={"Content-Type": "application/json"},
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                last_error = f"request failed: {e}"
            else:
                if r.ok:
                    try:
                        return r.json()
                    except ValueError as e:
                        raise AIError(f"AI response was not JSON: {e}") from e
                last_error = f"HTTP {r.status_code}: {_error_message(r)}"

            logger.warning(f"AI attempt {attempt}/{self.max_attempts} failed: {last_error}")
            if attempt < self.max_attempts:
                self._sleep(self.backoff * 2 ** (attempt - 1))

        raise AIError(f"AI request failed after {self.max_attempts} attempts: {last_error}")

    @staticmethod
    def _extract_text(body: Any) -> str:
        try:
            text = body["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            raise AIError("AI response had no generated text")
        if not isinstance(text, str):
            raise AIError("AI response had no generated text")
        return text


def _error_message(r: requests.Response) -> str:
    """Pull the API's error message out of a failed response, if any."""
    try:
        body = r.json()
    except ValueError:
        return (r.text or r.reason or "").strip()[:200]
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return str(body["error"].get("message", ""))[:200]
    return str(body)[:200]
