"""Model client, conversation engine, tools and subagents."""

from .client import AIClient, ApproxByteCounter, ClientSettings, ModelInfo, TokenCounterRegistry

__all__ = ["AIClient", "ClientSettings", "ModelInfo", "TokenCounterRegistry", "ApproxByteCounter"]
