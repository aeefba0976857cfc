"""Chat-completion client (OpenAI SDK, Groq or OpenAI endpoint) with JSON validation."""
from __future__ import annotations

import json
import re
from typing import Type, TypeVar

from openai import APIConnectionError, APIError, OpenAI, RateLimitError
from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from autopilot.config import AppConfig, get_env
from autopilot.errors import ExternalServiceError
from autopilot.log import get_logger
from autopilot.retry import retry

log = get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"
JSON_ONLY = (
    "\n\nIMPORTANT: Respond ONLY with valid JSON. No explanatory text, "
    "no markdown formatting, no code fences."
)

T = TypeVar("T", bound=BaseModel)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)
_OBJECT = re.compile(r"\{[\s\S]*\}|\[[\s\S]*\]")
_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")


class AIResponseError(ExternalServiceError):
    """The model never produced JSON matching the requested schema."""

    code = "AI_RESPONSE_ERROR"


def _snake_keys(value):
    if isinstance(value, dict):
        return {_CAMEL.sub("_", str(k)).lower(): _snake_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_snake_keys(v) for v in value]
    return value


def parse_json_reply(text: str):
    """Strip code fences and pull the first JSON object/array out of *text*."""
    cleaned = _FENCE.sub("", text.strip()).strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        match = _OBJECT.search(cleaned)
        if not match:
            raise
        return json.loads(match.group(0))


class AIClient:
    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        *,
        timeout: float = 30.0,
        max_tokens: int = 2048,
        client: OpenAI | None = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self._client = client or OpenAI(api_key=api_key, base_url=base_url or None, timeout=timeout)

    @classmethod
    def from_env(cls, config: AppConfig) -> AIClient | None:
        """Groq key takes the Groq endpoint unless AI_BASE_URL says otherwise."""
        openai_key = get_env("OPENAI_API_KEY")
        groq_key = get_env("GROQ_API_KEY")
        if openai_key:
            return cls(openai_key, config.ai_model, config.ai_base_url or None)
        if groq_key:
            return cls(groq_key, config.ai_model, config.ai_base_url or GROQ_BASE_URL)
        log.info("No OPENAI_API_KEY or GROQ_API_KEY set, AI features use fallbacks")
        return None

    @retry(
        max_attempts=3,
        base_delay=2.0,
        retryable=(RateLimitError, APIConnectionError),
    )
    def _create(self, messages: list[dict], max_tokens: int, temperature: float, timeout: float | None) -> str:
        extra = {"timeout": timeout} if timeout is not None else {}
        r = self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            **extra,
        )
        return (r.choices[0].message.content or "").strip()

    def complete_text(
        self,
        system: str,
        user: str,
        *,
        max_tokens: int | None = None,
        temperature: float = 0.4,
        timeout: float | None = None,
    ) -> str:
        messages = [{"role": "system", "content": system}, {"role": "user", "content": user}]
        try:
            return self._create(messages, max_tokens or self.max_tokens, temperature, timeout)
        except APIError as exc:
            log.error("AI completion failed (model=%s): %s", self.model, exc)
            raise ExternalServiceError(f"AI API error: {exc}")

    def complete_structured(
        self,
        system: str,
        user: str,
        schema: Type[T],
        *,
        max_tokens: int | None = None,
        max_attempts: int = 3,
        timeout: float | None = None,
    ) -> T:
        """Ask for JSON and validate it against *schema*.

        A malformed or non-conforming reply is retried with the validation
        error fed back to the model; after *max_attempts* it raises
        ``AIResponseError``. *timeout* bounds each request in seconds.
        """
        prompt = user
        last_error = ""
        for attempt in range(1, max_attempts + 1):
            text = self.complete_text(
                system + JSON_ONLY, prompt, max_tokens=max_tokens, temperature=0.2, timeout=timeout,
            )
            try:
                return schema.model_validate(_snake_keys(parse_json_reply(text)))
            except (json.JSONDecodeError, SchemaError) as exc:
                last_error = str(exc)
                log.warning(
                    "AI reply for %s invalid (attempt %d/%d): %s",
                    schema.__name__, attempt, max_attempts, last_error.splitlines()[0],
                )
                prompt = (
                    f"{user}\n\nYour previous response was invalid: {last_error}\n"
                    "Respond again with corrected JSON only."
                )
        raise AIResponseError(f"AI reply did not match {schema.__name__}: {last_error}")
