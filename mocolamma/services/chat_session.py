"""
Chat conversation driven by OllamaClient.chat().

Folds streamed chunks into the assistant message and mirrors the
conversation into the client's state store.
"""

from mocolamma.core.exceptions import OllamaError, StreamCancelledError
from mocolamma.core.logging import get_logger
from mocolamma.schemas.chat import (
    ChatMessage,
    ChatResponseChunk,
    ChatSettings,
    ThinkingOption,
    ToolDefinition,
)

logger = get_logger(__name__)

THINK_OPEN_TAG = "<think>"
THINK_CLOSE_TAG = "</think>"


class ChatSession:
    """
    One conversation with a model.

    send() appends the user turn and a streaming assistant placeholder, then
    consumes the response. Only one response streams at a time.
    """

    def __init__(
        self,
        client,
        chat_settings: ChatSettings | None = None,
        stream: bool = True,
        tools: list[ToolDefinition] | None = None,
    ):
        """
        Initialize the session.

        Args:
            client: OllamaClient used to send requests
            chat_settings: Request overrides applied to every turn
            stream: Request streamed responses
            tools: Tool definitions offered to the model
        """
        self._client = client
        self.chat_settings = chat_settings or ChatSettings()
        self.stream = stream
        self.tools = tools
        self.messages: list[ChatMessage] = []
        self.last_error: OllamaError | None = None
        self._stream = None

    @property
    def is_streaming(self) -> bool:
        return self._stream is not None

    async def send(self, text: str, model: str) -> ChatMessage:
        """
        Send a user message and collect the assistant's reply.

        Errors do not propagate: they are kept in last_error and the partial
        reply stays in the conversation.

        Args:
            text: User message
            model: Model name to chat with

        Returns:
            ChatMessage: The assistant message
        """
        if self.is_streaming:
            raise RuntimeError("A response is already streaming")

        self.messages.append(ChatMessage(role="user", content=text))
        history = [m.model_copy(deep=True) for m in self.messages]
        assistant = ChatMessage(role="assistant", is_streaming=True)
        self.messages.append(assistant)
        self.last_error = None
        self._client.state.update(chat_input_text="")
        self._publish()

        self._stream = self._client.chat(
            model, history, stream=self.stream, chat_settings=self.chat_settings, tools=self.tools
        )
        inside_thinking = False
        try:
            async for chunk in self._stream:
                inside_thinking = self._apply_chunk(assistant, chunk, inside_thinking)
                self._publish()
        except StreamCancelledError:
            logger.info("Chat response stopped")
            assistant.is_stopped = True
        except OllamaError as e:
            logger.error(f"Chat API error: {e}")
            self.last_error = e
            assistant.is_stopped = False
        finally:
            assistant.is_streaming = False
            self._stream = None
            self._publish()

        return assistant

    def stop(self) -> None:
        """Stop the streaming response, keeping what has arrived so far."""
        for message in reversed(self.messages):
            if message.role == "assistant" and message.is_streaming:
                message.is_streaming = False
                message.is_stopped = True
                break
        if self._stream is not None:
            self._stream.cancel()
        self._publish()

    def clear(self) -> None:
        if self._stream is not None:
            self._stream.cancel()
        self.messages = []
        self.last_error = None
        self._client.clear_chat()

    def _apply_chunk(
        self, assistant: ChatMessage, chunk: ChatResponseChunk, inside_thinking: bool
    ) -> bool:
        message = chunk.message
        if message is not None:
            if assistant.created_at is None:
                assistant.created_at = chunk.created_at
            if message.thinking:
                assistant.thinking = (assistant.thinking or "") + message.thinking
            if self.chat_settings.thinking_option is ThinkingOption.ON:
                assistant.content += message.content
            else:
                inside_thinking = self._split_think_tags(assistant, message.content, inside_thinking)
            if message.tool_calls:
                assistant.tool_calls = (assistant.tool_calls or []) + list(message.tool_calls)

        if chunk.done:
            assistant.total_duration = chunk.total_duration
            assistant.eval_count = chunk.eval_count
            assistant.eval_duration = chunk.eval_duration
            assistant.is_streaming = False
        return inside_thinking

    @staticmethod
    def _split_think_tags(assistant: ChatMessage, content: str, inside_thinking: bool) -> bool:
        # Models without a thinking field inline their reasoning in <think> tags
        if THINK_OPEN_TAG in content:
            before, content = content.split(THINK_OPEN_TAG, 1)
            assistant.content += before
            inside_thinking = True

        if THINK_CLOSE_TAG in content:
            thought, after = content.split(THINK_CLOSE_TAG, 1)
            assistant.thinking = (assistant.thinking or "") + thought
            assistant.content += after
            return False

        if inside_thinking:
            assistant.thinking = (assistant.thinking or "") + content
        else:
            assistant.content += content
        return inside_thinking

    def _publish(self) -> None:
        self._client.state.update(
            chat_messages=[m.model_copy(deep=True) for m in self.messages]
        )
        self._client.update_is_chat_streaming()
