"""
Mocolamma: async client for the Ollama API.
"""

from mocolamma.core.config import APITimeoutOption, Settings, TimeoutSettings, settings
from mocolamma.core.state import ClientState, StateStore
from mocolamma.services.chat_session import ChatSession
from mocolamma.services.ollama_client import ChatStream, OllamaClient, PullHandle
from mocolamma.services.server_registry import ServerRegistry

__version__ = "0.1.0"

__all__ = [
    "APITimeoutOption",
    "ChatSession",
    "ChatStream",
    "ClientState",
    "OllamaClient",
    "PullHandle",
    "ServerRegistry",
    "Settings",
    "StateStore",
    "TimeoutSettings",
    "settings",
]
