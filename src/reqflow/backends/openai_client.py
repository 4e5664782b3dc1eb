from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AuthenticationError,
    InternalServerError,
    OpenAI,
    PermissionDeniedError,
    RateLimitError,
)

from reqflow.backends.base import ModelClient, ModelInvocationError, RenderedPrompt

logger = logging.getLogger(__name__)


class OpenAIModelClient(ModelClient):
    """Chat Completions client; the SDK client is built on first use."""

    name = "openai"

    def __init__(
        self,
        *,
        api_key_env: str = "OPENAI_API_KEY",
        max_output_tokens: int = 4000,
        temperature: float = 0.4,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.api_key_env = api_key_env
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.timeout_seconds = timeout_seconds
        self._client: Any | None = None

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        api_key = os.getenv(self.api_key_env)
        if not api_key:
            raise ModelInvocationError(
                f"{self.api_key_env} is not set.",
                backend=self.name,
                retriable=False,
            )
        self._client = OpenAI(api_key=api_key, timeout=self.timeout_seconds, max_retries=0)
        return self._client

    @staticmethod
    def _extract_text(response: Any) -> str:
        choices = getattr(response, "choices", None) or []
        if not choices:
            return ""
        message = getattr(choices[0], "message", None)
        content = getattr(message, "content", None)
        return content if isinstance(content, str) else ""

    def _request(self, prompt: RenderedPrompt, model: str) -> Any:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": prompt.system},
                {"role": "user", "content": prompt.user},
            ],
            "max_tokens": self.max_output_tokens,
            "temperature": self.temperature,
        }
        if prompt.json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        return self._get_client().chat.completions.create(**kwargs)

    async def generate(self, prompt: RenderedPrompt, *, model: str) -> str:
        try:
            response = await asyncio.to_thread(self._request, prompt, model)
        except ModelInvocationError:
            raise
        except RateLimitError as exc:
            code = getattr(getattr(exc, "error", None), "code", None) or getattr(exc, "code", None)
            raise ModelInvocationError(
                f"OpenAI rate limited {model}: {exc}",
                backend=self.name,
                model=model,
                retriable=code != "insufficient_quota",
            ) from exc
        except (AuthenticationError, PermissionDeniedError) as exc:
            raise ModelInvocationError(
                f"OpenAI rejected credentials for {model}: {exc}",
                backend=self.name,
                model=model,
                retriable=False,
            ) from exc
        except (APITimeoutError, APIConnectionError, InternalServerError) as exc:
            raise ModelInvocationError(
                f"OpenAI transient failure for {model}: {exc}",
                backend=self.name,
                model=model,
                retriable=True,
            ) from exc
        except APIStatusError as exc:
            raise ModelInvocationError(
                f"OpenAI returned status {exc.status_code} for {model}: {exc}",
                backend=self.name,
                model=model,
                retriable=False,
            ) from exc

        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.debug(
                "openai model=%s prompt_tokens=%s completion_tokens=%s",
                model,
                getattr(usage, "prompt_tokens", None),
                getattr(usage, "completion_tokens", None),
            )
        text = self._extract_text(response).strip()
        if not text:
            raise ModelInvocationError(
                f"OpenAI returned empty content for {model}.",
                backend=self.name,
                model=model,
                retriable=False,
            )
        return text
