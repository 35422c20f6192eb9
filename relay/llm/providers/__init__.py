"""
Provider adapters, one per vendor, behind the BaseProvider contract.
"""

from relay.llm.providers.base import BaseProvider
from relay.llm.providers.claude_provider import ClaudeProvider
from relay.llm.providers.gemini_provider import GeminiProvider
from relay.llm.providers.openai_provider import OpenAIProvider

PROVIDER_CLASSES: dict[str, type[BaseProvider]] = {
    ClaudeProvider.id: ClaudeProvider,
    GeminiProvider.id: GeminiProvider,
    OpenAIProvider.id: OpenAIProvider,
}

__all__ = [
    "BaseProvider",
    "ClaudeProvider",
    "GeminiProvider",
    "OpenAIProvider",
    "PROVIDER_CLASSES",
]
