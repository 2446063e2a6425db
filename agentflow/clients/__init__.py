"""Clients for the language-model and tool collaborators."""

from .llm import Completion, LanguageModelClient, ModelRouter, OpenAICompatibleClient, build_model_router
from .tools import CompositeToolBackend, McpBrokerClient, ToolBackend, ToolRegistry

__all__ = [
    "Completion",
    "LanguageModelClient",
    "ModelRouter",
    "OpenAICompatibleClient",
    "build_model_router",
    "CompositeToolBackend",
    "McpBrokerClient",
    "ToolBackend",
    "ToolRegistry",
]
