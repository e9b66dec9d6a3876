"""
Chat schemas for the /api/chat endpoint.

Request bodies omit every optional field that is not set, matching the wire
format Ollama expects.
"""

from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


class ThinkingOption(str, Enum):
    """Tri-state thinking toggle: unset, explicitly on, explicitly off."""

    NONE = "none"
    ON = "on"
    OFF = "off"

    @property
    def think(self) -> bool | None:
        """Value of the request's `think` field (None means omitted)."""
        if self is ThinkingOption.ON:
            return True
        if self is ThinkingOption.OFF:
            return False
        return None


# =============================================================================
# Messages and Tool Calls
# =============================================================================


class ToolFunction(BaseModel):
    """Function details of a tool call."""

    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolCall(BaseModel):
    """A tool call emitted by the model."""

    function: ToolFunction


class ChatMessage(BaseModel):
    """
    A single message in a chat conversation.

    Only role, content, thinking, images, tool_calls and tool_name are sent to
    the server; the remaining fields are client-side bookkeeping.
    """

    id: UUID = Field(default_factory=uuid4, exclude=True)
    role: str
    content: str = ""
    thinking: str | None = None
    images: list[str] | None = Field(default=None, description="Base64 encoded images")
    tool_calls: list[ToolCall] | None = None
    tool_name: str | None = None

    created_at: str | None = Field(default=None, exclude=True)
    total_duration: int | None = Field(default=None, exclude=True)
    eval_count: int | None = Field(default=None, exclude=True)
    eval_duration: int | None = Field(default=None, exclude=True)
    is_streaming: bool = Field(default=False, exclude=True)
    is_stopped: bool = Field(default=False, exclude=True)


# =============================================================================
# Tool Definitions
# =============================================================================


class JSONSchemaProperty(BaseModel):
    """A property within a tool parameter schema."""

    type: str
    description: str | None = None
    enum: list[str] | None = None


class JSONSchema(BaseModel):
    """JSON schema describing tool parameters."""

    type: str = "object"
    properties: dict[str, JSONSchemaProperty] | None = None
    required: list[str] | None = None


class ToolFunctionDefinition(BaseModel):
    """Function definition for a tool."""

    name: str
    description: str | None = None
    parameters: JSONSchema | None = None


class ToolDefinition(BaseModel):
    """Tool offered to the model."""

    type: str = "function"
    function: ToolFunctionDefinition


# =============================================================================
# Request
# =============================================================================


class ChatRequestOptions(BaseModel):
    """Runtime options of a chat request; unset options are omitted."""

    num_keep: int | None = None
    seed: int | None = None
    num_predict: int | None = None
    top_k: int | None = None
    top_p: float | None = None
    min_p: float | None = None
    typical_p: float | None = None
    repeat_last_n: int | None = None
    temperature: float | None = None
    repeat_penalty: float | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    penalize_newline: bool | None = None
    stop: list[str] | None = None
    numa: bool | None = None
    num_ctx: int | None = None
    num_batch: int | None = None
    num_gpu: int | None = None
    main_gpu: int | None = None
    use_mmap: bool | None = None
    num_thread: int | None = None
    keep_alive: str | None = Field(default=None, description='Duration string, e.g. "5m"')


class ChatRequest(BaseModel):
    """Request body of /api/chat."""

    model: str
    messages: list[ChatMessage]
    stream: bool
    think: bool | None = None
    options: ChatRequestOptions | None = None
    tools: list[ToolDefinition] | None = None

    def to_payload(self) -> dict[str, Any]:
        """JSON body with absent optional fields omitted."""
        return self.model_dump(mode="json", exclude_none=True)


class ChatSettings(BaseModel):
    """Per-request overrides chosen by the user."""

    use_custom_chat_settings: bool = False
    is_temperature_enabled: bool = False
    chat_temperature: float = Field(default=0.8, ge=0.0, le=2.0)
    is_context_window_enabled: bool = False
    context_window_value: float = Field(default=2048, ge=1)
    is_system_prompt_enabled: bool = False
    system_prompt: str = ""
    thinking_option: ThinkingOption = ThinkingOption.NONE


# =============================================================================
# Response
# =============================================================================


class ChatResponseChunk(BaseModel):
    """One decoded line of a streaming response, or a full non-streaming response."""

    model_config = ConfigDict(extra="ignore", protected_namespaces=())

    model: str
    created_at: str
    message: ChatMessage | None = None
    done: bool
    total_duration: int | None = None
    load_duration: int | None = None
    prompt_eval_count: int | None = None
    prompt_eval_duration: int | None = None
    eval_count: int | None = None
    eval_duration: int | None = None
    done_reason: str | None = None


def build_chat_request(
    model: str,
    messages: list[ChatMessage],
    stream: bool,
    chat_settings: ChatSettings | None = None,
    tools: list[ToolDefinition] | None = None,
) -> ChatRequest:
    """
    Build a ChatRequest from the conversation and the user's overrides.

    Options and the system prompt only apply when custom chat settings are
    enabled. The system prompt is inserted at position 0 unless the
    conversation already holds a system message.

    Args:
        model: Model name
        messages: Conversation so far
        stream: Whether to request a streaming response
        chat_settings: User overrides (defaults to none)
        tools: Optional tool definitions

    Returns:
        ChatRequest: The request body
    """
    chat_settings = chat_settings or ChatSettings()
    options: ChatRequestOptions | None = None
    final_messages = list(messages)

    if chat_settings.use_custom_chat_settings:
        options = ChatRequestOptions()
        if chat_settings.is_temperature_enabled:
            options.temperature = chat_settings.chat_temperature
        if chat_settings.is_context_window_enabled:
            options.num_ctx = int(chat_settings.context_window_value)

        if chat_settings.is_system_prompt_enabled and chat_settings.system_prompt:
            if not any(message.role == "system" for message in final_messages):
                final_messages.insert(
                    0, ChatMessage(role="system", content=chat_settings.system_prompt)
                )

    return ChatRequest(
        model=model,
        messages=final_messages,
        stream=stream,
        think=chat_settings.thinking_option.think,
        options=options,
        tools=tools,
    )
