from reqflow.backends.base import (
    ModelClient,
    ModelInvocationError,
    ModelTimeoutError,
    ModelUnavailable,
    RenderedPrompt,
)
from reqflow.backends.cascade import CascadeResult, ModelCandidate, ModelCascade, RetryPolicy
from reqflow.backends.openai_client import OpenAIModelClient

__all__ = [
    "CascadeResult",
    "ModelCandidate",
    "ModelCascade",
    "ModelClient",
    "ModelInvocationError",
    "ModelTimeoutError",
    "ModelUnavailable",
    "OpenAIModelClient",
    "RenderedPrompt",
    "RetryPolicy",
]
