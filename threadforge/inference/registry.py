"""
BackendRegistry: resolves a model backend for an agent's provider.

Backends are built lazily, once per provider, by a factory. The default
factory follows ``MODEL_BACKEND``: ``http`` builds an OpenAI-compatible
adapter against the provider's configured endpoint, ``echo`` answers locally.
"""
import logging
from typing import Callable, Optional

from threadforge.config import MODEL_BACKEND, MODEL_REQUEST_TIMEOUT, PROVIDER_ENDPOINTS
from threadforge.errors import ValidationError
from threadforge.inference.base import ModelBackend
from threadforge.inference.openai_compat import OpenAICompatBackend
from threadforge.inference.scripted import EchoBackend

logger = logging.getLogger(__name__)

BackendFactory = Callable[[str], ModelBackend]


def default_backend_factory(provider: str) -> ModelBackend:
    if MODEL_BACKEND == "echo":
        return EchoBackend()
    endpoint = PROVIDER_ENDPOINTS.get(provider)
    if endpoint is None:
        raise ValidationError("provider", f"no endpoint configured for '{provider}'")
    if not endpoint.get("api_key"):
        logger.warning(f"No API key configured for provider '{provider}'; requests will be unauthenticated")
    return OpenAICompatBackend(endpoint["base_url"], endpoint.get("api_key", ""), MODEL_REQUEST_TIMEOUT)


class BackendRegistry:

    def __init__(self, factory: Optional[BackendFactory] = None):
        self._factory = factory or default_backend_factory
        self._backends: dict[str, ModelBackend] = {}

    def get(self, provider: str) -> ModelBackend:
        backend = self._backends.get(provider)
        if backend is None:
            backend = self._factory(provider)
            self._backends[provider] = backend
            logger.info(f"Model backend for '{provider}': {type(backend).__name__}")
        return backend

    async def aclose(self) -> None:
        for backend in self._backends.values():
            await backend.aclose()
        self._backends.clear()
