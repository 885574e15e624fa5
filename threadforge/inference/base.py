"""
Abstract base class for model backends.

A backend turns one request (provider, model, chat messages) into an async
stream of typed increments. It never touches the store or the session
manager; the turn executor consumes the stream.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Optional

from threadforge.errors import ModelFailure

logger = logging.getLogger(__name__)


class IncrementKind(str, Enum):
    PROGRESS = "progress"
    THINKING = "thinking"
    TOKEN = "token"
    RESPONSE = "response"
    DELEGATE = "delegate"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class ModelIncrement:
    kind: IncrementKind
    content: str = ""
    type_tag: Optional[str] = None   # DELEGATE only: sub-agent type to hand the task to
    wait: bool = False               # DELEGATE only: block the lead turn on the reply
    token_count: int = 0             # DONE only: completion tokens reported by the provider

    @classmethod
    def token(cls, content: str) -> "ModelIncrement":
        return cls(IncrementKind.TOKEN, content)

    @classmethod
    def thinking(cls, content: str) -> "ModelIncrement":
        return cls(IncrementKind.THINKING, content)

    @classmethod
    def progress(cls, content: str) -> "ModelIncrement":
        return cls(IncrementKind.PROGRESS, content)

    @classmethod
    def response(cls, content: str) -> "ModelIncrement":
        return cls(IncrementKind.RESPONSE, content)

    @classmethod
    def delegate(cls, type_tag: str, task: str, wait: bool = False) -> "ModelIncrement":
        return cls(IncrementKind.DELEGATE, task, type_tag=type_tag, wait=wait)

    @classmethod
    def done(cls, token_count: int = 0) -> "ModelIncrement":
        return cls(IncrementKind.DONE, token_count=token_count)

    @classmethod
    def error(cls, content: str) -> "ModelIncrement":
        return cls(IncrementKind.ERROR, content)


@dataclass
class ModelRequest:
    provider: str
    model_name: str
    messages: list[dict] = field(default_factory=list)   # OpenAI-format chat messages
    allow_delegation: bool = False
    timeout: Optional[float] = None


class ModelBackend(ABC):
    """Abstract model backend interface."""

    def __init__(self, base_url: str = "", default_timeout: float = 300):
        self.base_url = base_url.rstrip("/")
        self.default_timeout = default_timeout

    @abstractmethod
    def stream(self, request: ModelRequest) -> AsyncIterator[ModelIncrement]:
        """Yield increments for one model call, ending with DONE or ERROR.

        Transport failures raise ModelFailure, flagged ``retryable`` when a
        second attempt may succeed.
        """
        ...

    async def aclose(self) -> None:
        """Release backend resources. Default: nothing to release."""
        return None


_RATE_LIMIT_MARKERS = ("ratelimit", "rate_limit", "rate limit", "too many requests")
_TRANSIENT_MARKERS = ("timeout", "timed out", "i/o error", "connection reset", "temporarily unavailable")


def is_rate_limit_text(text: str) -> bool:
    lowered = (text or "").lower()
    return any(m in lowered for m in _RATE_LIMIT_MARKERS)


def classify_failure(exc: BaseException) -> ModelFailure:
    """Map an arbitrary backend exception onto ModelFailure with retry flags."""
    if isinstance(exc, ModelFailure):
        return exc
    text = f"{type(exc).__name__}: {exc}"
    if is_rate_limit_text(text):
        return ModelFailure(text, retryable=True, rate_limited=True)
    if isinstance(exc, (OSError, TimeoutError)) or any(m in text.lower() for m in _TRANSIENT_MARKERS):
        return ModelFailure(text, retryable=True)
    return ModelFailure(text)
