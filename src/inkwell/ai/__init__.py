"""Model clients, budget allocation and the streaming pipeline."""

from .client import AnthropicModelClient, ApproxByteCounter, ClientSettings, TokenCounterRegistry
from .errors import InkwellError, PersistenceError, PromptTooLargeError, StreamError, TransportError
from .openai_client import OpenAICompatibleModelClient

__all__ = [
    "AnthropicModelClient",
    "ApproxByteCounter",
    "ClientSettings",
    "InkwellError",
    "OpenAICompatibleModelClient",
    "PersistenceError",
    "PromptTooLargeError",
    "StreamError",
    "TokenCounterRegistry",
    "TransportError",
]
