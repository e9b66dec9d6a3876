"""
Pydantic schemas for Ollama API requests and responses.
"""

from mocolamma.schemas.chat import (
    ChatMessage,
    ChatRequest,
    ChatRequestOptions,
    ChatResponseChunk,
    ChatSettings,
    JSONSchema,
    JSONSchemaProperty,
    ThinkingOption,
    ToolCall,
    ToolDefinition,
    ToolFunction,
    ToolFunctionDefinition,
    build_chat_request,
)
from mocolamma.schemas.models import (
    ModelPullProgress,
    ModelsResponse,
    OllamaModel,
    OllamaModelDetails,
    PsResponse,
    RunningModel,
    ShowResponse,
    VersionResponse,
)
from mocolamma.schemas.server import (
    ConnectionState,
    ServerConnectionStatus,
    ServerInfo,
)

__all__ = [
    "ChatMessage",
    "ChatRequest",
    "ChatRequestOptions",
    "ChatResponseChunk",
    "ChatSettings",
    "JSONSchema",
    "JSONSchemaProperty",
    "ThinkingOption",
    "ToolCall",
    "ToolDefinition",
    "ToolFunction",
    "ToolFunctionDefinition",
    "build_chat_request",
    "ModelPullProgress",
    "ModelsResponse",
    "OllamaModel",
    "OllamaModelDetails",
    "PsResponse",
    "RunningModel",
    "ShowResponse",
    "VersionResponse",
    "ConnectionState",
    "ServerConnectionStatus",
    "ServerInfo",
]
