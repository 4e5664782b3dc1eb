from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


class ModelInvocationError(RuntimeError):
    """Raised when a single model call fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        model: str | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.model = model
        self.retriable = retriable


class ModelTimeoutError(ModelInvocationError):
    """Raised when a model call exceeds its attempt timeout."""


class ModelUnavailable(RuntimeError):
    """Raised once every candidate in the fallback cascade has failed."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


@dataclass(slots=True, frozen=True)
class RenderedPrompt:
    system: str
    user: str
    intent: str = "sdlc_guidance"
    json_mode: bool = False


class ModelClient(ABC):
    name: str = "model"

    @abstractmethod
    async def generate(self, prompt: RenderedPrompt, *, model: str) -> str:
        """Return the model's text answer for the prompt."""
