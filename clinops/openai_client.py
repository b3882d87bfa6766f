"""
Wrapper for the OpenAI chat completions API used by the AI-backed checks.

Behaviour hierarchy:
1. If USE_OFFLINE_MODEL is set, return a deterministic ``{"status": "ok"}``
   placeholder without any external calls.
2. Otherwise call the real OpenAI API with the model selected per check.

Any exception raised by the SDK is converted into an
:class:`~clinops.errors.AIProviderError` carrying the HTTP status (when there
is one) and whether the failure looks transient, so the retry controller has
a single error path to classify.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from typing import Any, Optional

import structlog

from clinops.config import Settings
from clinops.errors import AIProviderError

# ``openai`` is imported lazily only when needed so offline mode works
# without the SDK configured.

logger = structlog.get_logger(__name__)

TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504, 529})


def _deterministic_placeholder(prompt: str, model: str) -> str:
    """Return a deterministic ok-verdict based on the prompt content."""
    h = hashlib.sha1(f"{model}:{prompt}".encode("utf-8")).hexdigest()[:12]
    return json.dumps({"status": "ok", "reason": f"Offline response ({h})"})


def _status_code(exc: BaseException) -> Optional[int]:
    code = getattr(exc, "status_code", None)
    if code is None:
        response = getattr(exc, "response", None)
        code = getattr(response, "status_code", None)
    return code if isinstance(code, int) else None


def _is_transient(exc: BaseException, status_code: Optional[int]) -> bool:
    if status_code in TRANSIENT_STATUS_CODES:
        return True
    try:
        import openai  # type: ignore
    except ImportError:  # pragma: no cover - SDK is a declared dependency
        return False
    return isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError, openai.RateLimitError))


class AIClient:
    """Chat completion client shared by all AI-backed checks."""

    def __init__(self, settings: Settings, client: Any = None) -> None:
        self.settings = settings
        self._client = client

    @property
    def offline(self) -> bool:
        return self.settings.offline_ai

    def _get_client(self) -> Any:
        if self._client is None:
            if not self.settings.openai_api_key:
                raise AIProviderError("OpenAI API key not configured")
            import openai  # type: ignore

            self._client = openai.OpenAI(api_key=self.settings.openai_api_key, timeout=self.settings.http_timeout * 6)
        return self._client

    def complete(self, prompt: str, model: str, *, check_type: Optional[str] = None) -> str:
        """Send ``prompt`` to ``model`` and return the raw response text."""

        if self.offline:
            return _deterministic_placeholder(prompt, model)

        client = self._get_client()
        try:
            response = client.chat.completions.create(
                model=model,
                messages=[{"role": "user", "content": prompt}],
            )
        except Exception as exc:
            status_code = _status_code(exc)
            transient = _is_transient(exc, status_code)
            logger.warning(
                "openai_call_failed",
                check_type=check_type,
                model=model,
                status_code=status_code,
                transient=transient,
                error=str(exc),
            )
            raise AIProviderError(
                f"Error calling OpenAI for {check_type or model}: {exc}",
                status_code=status_code,
                transient=transient,
                check_type=check_type,
            ) from exc

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise AIProviderError(
                f"No response content received from OpenAI for {check_type or model}",
                check_type=check_type,
            )
        return content

    async def acomplete(self, prompt: str, model: str, *, check_type: Optional[str] = None) -> str:
        return await asyncio.to_thread(self.complete, prompt, model, check_type=check_type)


__all__ = ["AIClient", "TRANSIENT_STATUS_CODES"]
