"""Gateway around the hosted generative text endpoint."""

from __future__ import annotations

import http.client
import json
import os
from dataclasses import dataclass
from typing import Callable, Optional, Sequence
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from ..errors import UpstreamCallFailed
from ..logging import get_logger
from ..models import Completion

_AUTO_API_KEY = object()


@dataclass
class ModelRequest:
    """Represents a single completion request."""

    prompt: str
    provider: str
    model: str
    base_url: str
    api_key: Optional[str]
    temperature: Optional[float]
    max_tokens: Optional[int]
    request_timeout: Optional[float]


class ModelGateway:
    """Sends one prompt to the configured model and returns plain text or a typed failure."""

    PROVIDERS = ("gemini", "openai")
    DEFAULT_MODELS = {
        "gemini": "gemini-2.0-flash-exp",
        "openai": "gpt-4o-mini",
    }
    DEFAULT_BASE_URLS = {
        "gemini": "https://generativelanguage.googleapis.com/v1beta",
        "openai": "https://api.openai.com/v1",
    }
    ENV_API_KEY_KEYS = ("EVOLVER_MODEL_API_KEY", "GEMINI_API_KEY")

    def __init__(
        self,
        model: str | None = None,
        *,
        provider: str = "gemini",
        base_url: str | None = None,
        api_key: str | None | object = _AUTO_API_KEY,
        temperature: Optional[float] = 0.7,
        max_tokens: Optional[int] = 8192,
        request_timeout: Optional[float] = 60.0,
        runner: Callable[[ModelRequest], str] | None = None,
    ) -> None:
        provider = (provider or "gemini").lower()
        if provider not in self.PROVIDERS:
            raise ValueError(f"Unsupported model provider '{provider}'")
        self.provider = provider
        self.model = model or self.DEFAULT_MODELS[provider]
        self.base_url = (base_url or self.DEFAULT_BASE_URLS[provider]).rstrip("/")
        self.api_key = self._resolve_api_key(api_key)
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.request_timeout = request_timeout
        self.logger = get_logger("llm")
        if runner is not None:
            self._runner = runner
        elif provider == "gemini":
            self._runner = self._gemini_runner
        else:
            self._runner = self._chat_runner

    @property
    def configured(self) -> bool:
        """True when a credential is available for the endpoint."""
        return bool(self.api_key)

    def complete(self, prompt: str) -> Completion:
        """Send the prompt and return the generated text; failures never raise."""
        if not prompt:
            return Completion(text="", ok=False, error="Prompt is required")
        if not self.api_key:
            return Completion(text="", ok=False, error="Model API key not configured")
        request = ModelRequest(
            prompt=prompt,
            provider=self.provider,
            model=self.model,
            base_url=self.base_url,
            api_key=self.api_key,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            request_timeout=self.request_timeout,
        )
        try:
            text = self._runner(request)
        except UpstreamCallFailed as exc:
            self.logger.debug("Model call failed: %s", exc)
            return Completion(text="", ok=False, error=str(exc))
        return Completion(text=text or "", ok=True)

    @staticmethod
    def _gemini_runner(request: ModelRequest) -> str:
        endpoint = f"{request.base_url}/models/{request.model}:generateContent"
        generation: dict[str, object] = {}
        if request.temperature is not None:
            generation["temperature"] = request.temperature
        if request.max_tokens is not None:
            generation["maxOutputTokens"] = request.max_tokens
        payload: dict[str, object] = {"contents": [{"parts": [{"text": request.prompt}]}]}
        if generation:
            payload["generationConfig"] = generation
        headers = {"Content-Type": "application/json"}
        if request.api_key:
            headers["x-goog-api-key"] = request.api_key
        response_payload = ModelGateway._post_json(endpoint, payload, headers, request.request_timeout)
        return ModelGateway._extract_gemini_text(response_payload)

    @staticmethod
    def _chat_runner(request: ModelRequest) -> str:
        endpoint = f"{request.base_url}/chat/completions"
        payload: dict[str, object] = {
            "model": request.model,
            "messages": [{"role": "user", "content": request.prompt}],
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        headers = {"Content-Type": "application/json"}
        if request.api_key:
            headers["Authorization"] = f"Bearer {request.api_key}"
        response_payload = ModelGateway._post_json(endpoint, payload, headers, request.request_timeout)
        return ModelGateway._extract_chat_text(response_payload)

    @staticmethod
    def _post_json(
        endpoint: str,
        payload: dict[str, object],
        headers: dict[str, str],
        timeout: Optional[float],
    ) -> dict[str, object]:
        data = json.dumps(payload).encode("utf-8")
        http_request = Request(endpoint, data=data, headers=headers, method="POST")
        try:
            with urlopen(http_request, timeout=timeout or 60.0) as response:  # type: ignore[arg-type]
                raw = response.read()
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="ignore") if hasattr(exc, "read") else ""
            message = _error_message(detail) or exc.reason
            raise UpstreamCallFailed(
                f"Model API failed with status {exc.code}: {message}", status=exc.code
            ) from exc
        except URLError as exc:
            raise UpstreamCallFailed(f"Model API request failed: {exc.reason}") from exc
        except TimeoutError as exc:
            raise UpstreamCallFailed("Model API request timed out") from exc
        except (http.client.HTTPException, OSError) as exc:
            raise UpstreamCallFailed(f"Model API connection failed: {exc}") from exc

        try:
            decoded = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise UpstreamCallFailed("Model API returned invalid JSON") from exc
        if not isinstance(decoded, dict):
            raise UpstreamCallFailed("Model API returned an unexpected payload")
        return decoded

    @staticmethod
    def _extract_gemini_text(payload: dict[str, object]) -> str:
        candidates = payload.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            return ""
        first = candidates[0]
        if not isinstance(first, dict):
            return ""
        content = first.get("content")
        if not isinstance(content, dict):
            return ""
        parts = content.get("parts")
        if not isinstance(parts, list) or not parts:
            return ""
        text = parts[0].get("text") if isinstance(parts[0], dict) else None
        return text if isinstance(text, str) else ""

    @staticmethod
    def _extract_chat_text(payload: dict[str, object]) -> str:
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            return ""
        first = choices[0]
        if not isinstance(first, dict):
            return ""
        message = first.get("message")
        if isinstance(message, dict):
            content = message.get("content")
            if isinstance(content, str):
                return content
        text = first.get("text")
        if isinstance(text, str):
            return text
        return ""

    def _resolve_api_key(self, api_key: str | None | object) -> str | None:
        if api_key is _AUTO_API_KEY:
            return self._first_env_value(self.ENV_API_KEY_KEYS)
        return api_key  # type: ignore[return-value]

    @staticmethod
    def _first_env_value(keys: Sequence[str]) -> str | None:
        for key in keys:
            value = os.getenv(key)
            if value:
                return value
        return None


def _error_message(detail: str) -> str:
    detail = detail.strip()
    if not detail:
        return ""
    try:
        payload = json.loads(detail)
    except json.JSONDecodeError:
        return detail
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
    return detail


__all__ = ["ModelGateway", "ModelRequest"]
