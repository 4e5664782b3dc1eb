from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from reqflow.backends.base import (
    ModelClient,
    ModelInvocationError,
    ModelTimeoutError,
    ModelUnavailable,
    RenderedPrompt,
)

logger = logging.getLogger(__name__)

CascadeEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    attempt_timeout_seconds: float = 30.0
    total_timeout_seconds: float = 60.0


@dataclass(slots=True)
class ModelCandidate:
    name: str
    client: ModelClient
    model: str


@dataclass(slots=True)
class CascadeResult:
    text: str
    candidate: str
    model: str
    attempts: int
    errors: list[str] = field(default_factory=list)


class ModelCascade:
    """Tries an ordered list of model candidates until one answers."""

    def __init__(
        self,
        candidates: list[ModelCandidate],
        retry_policy: RetryPolicy | None = None,
        event_hook: CascadeEventHook | None = None,
    ) -> None:
        self.candidates = list(candidates)
        self.retry_policy = retry_policy or RetryPolicy()
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _attempt(
        self, candidate: ModelCandidate, prompt: RenderedPrompt, timeout: float
    ) -> str:
        try:
            return await asyncio.wait_for(
                candidate.client.generate(prompt, model=candidate.model),
                timeout=timeout,
            )
        except TimeoutError as exc:
            raise ModelTimeoutError(
                f"Model request timed out after {timeout:.1f}s",
                backend=candidate.name,
                model=candidate.model,
                retriable=True,
            ) from exc

    async def generate(self, prompt: RenderedPrompt) -> CascadeResult:
        if not self.candidates:
            raise ModelUnavailable("No model candidates configured.")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.retry_policy.total_timeout_seconds
        errors: list[str] = []
        attempts = 0

        for index, candidate in enumerate(self.candidates):
            for attempt in range(self.retry_policy.max_retries + 1):
                remaining = deadline - loop.time()
                if remaining <= 0:
                    errors.append(f"{candidate.name}:{candidate.model}: cascade deadline reached")
                    self._emit({"event": "model_cascade_deadline", "intent": prompt.intent})
                    raise ModelUnavailable(
                        "Model cascade exceeded its total time budget. " + "; ".join(errors[-6:]),
                        errors=errors,
                    )
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "model_retry",
                            "candidate": candidate.name,
                            "model": candidate.model,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    await asyncio.sleep(min(delay, max(0.0, remaining)))
                attempts += 1
                timeout = min(self.retry_policy.attempt_timeout_seconds, max(0.001, remaining))
                try:
                    text = await self._attempt(candidate, prompt, timeout)
                except ModelInvocationError as exc:
                    errors.append(f"{candidate.name}:{candidate.model}[{attempt}]: {exc}")
                    logger.warning(
                        "model %s (%s) attempt %d failed: %s",
                        candidate.model,
                        candidate.name,
                        attempt,
                        exc,
                    )
                    self._emit(
                        {
                            "event": "model_attempt_failed",
                            "candidate": candidate.name,
                            "model": candidate.model,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break
                    continue
                except Exception as exc:
                    errors.append(f"{candidate.name}:{candidate.model}[{attempt}]: {exc}")
                    logger.warning(
                        "model %s (%s) attempt %d raised %s",
                        candidate.model,
                        candidate.name,
                        attempt,
                        type(exc).__name__,
                    )
                    self._emit(
                        {
                            "event": "model_attempt_failed",
                            "candidate": candidate.name,
                            "model": candidate.model,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": True,
                        }
                    )
                    continue

                if not text or not text.strip():
                    errors.append(f"{candidate.name}:{candidate.model}[{attempt}]: empty response")
                    self._emit(
                        {
                            "event": "model_attempt_failed",
                            "candidate": candidate.name,
                            "model": candidate.model,
                            "attempt": attempt,
                            "error": "empty response",
                            "retriable": False,
                        }
                    )
                    break

                if index > 0:
                    self._emit(
                        {
                            "event": "model_fallback_success",
                            "candidate": candidate.name,
                            "model": candidate.model,
                            "attempt": attempt,
                        }
                    )
                logger.info("model %s answered intent=%s", candidate.model, prompt.intent)
                return CascadeResult(
                    text=text,
                    candidate=candidate.name,
                    model=candidate.model,
                    attempts=attempts,
                    errors=errors,
                )
            logger.info("switching model after failures: %s", candidate.model)

        summary = "; ".join(errors[-6:])
        self._emit({"event": "model_cascade_exhausted", "intent": prompt.intent})
        raise ModelUnavailable(f"All model candidates failed. {summary}", errors=errors)
