"""
Unit tests for request building and response decoding.
"""

from datetime import datetime, timezone

import pytest

from mocolamma.schemas import (
    ChatMessage,
    ChatSettings,
    ModelsResponse,
    PsResponse,
    ThinkingOption,
    ToolDefinition,
    ToolFunctionDefinition,
    build_chat_request,
)
from mocolamma.schemas.models import format_byte_count, parse_iso8601


class TestBuildChatRequest:
    """Test chat request construction from user settings."""

    def test_system_prompt_inserted_once(self):
        """Test that the system prompt is prepended when no system message exists."""
        settings = ChatSettings(
            use_custom_chat_settings=True,
            is_system_prompt_enabled=True,
            system_prompt="You are terse.",
        )
        messages = [ChatMessage(role="user", content="hi")]

        request = build_chat_request("llama3", messages, True, settings)

        assert [m.role for m in request.messages] == ["system", "user"]
        assert request.messages[0].content == "You are terse."
        assert len(messages) == 1

    def test_existing_system_message_is_kept(self):
        """Test that no second system message is added."""
        settings = ChatSettings(
            use_custom_chat_settings=True,
            is_system_prompt_enabled=True,
            system_prompt="new prompt",
        )
        messages = [
            ChatMessage(role="user", content="hi"),
            ChatMessage(role="system", content="old prompt"),
        ]

        request = build_chat_request("llama3", messages, True, settings)

        assert [m.role for m in request.messages].count("system") == 1
        assert request.messages[1].content == "old prompt"

    def test_settings_ignored_without_custom_switch(self):
        """Test that options and the system prompt need the custom settings switch."""
        settings = ChatSettings(
            is_temperature_enabled=True,
            chat_temperature=0.2,
            is_system_prompt_enabled=True,
            system_prompt="ignored",
        )

        payload = build_chat_request(
            "llama3", [ChatMessage(role="user", content="hi")], True, settings
        ).to_payload()

        assert "options" not in payload
        assert [m["role"] for m in payload["messages"]] == ["user"]

    def test_options_payload(self):
        """Test temperature and context window serialization."""
        settings = ChatSettings(
            use_custom_chat_settings=True,
            is_temperature_enabled=True,
            chat_temperature=0.3,
            is_context_window_enabled=True,
            context_window_value=4096.0,
        )

        payload = build_chat_request("llama3", [], False, settings).to_payload()

        assert payload["options"] == {"temperature": 0.3, "num_ctx": 4096}
        assert payload["stream"] is False

    @pytest.mark.parametrize(
        "option,expected",
        [(ThinkingOption.NONE, None), (ThinkingOption.ON, True), (ThinkingOption.OFF, False)],
    )
    def test_thinking_tri_state(self, option, expected):
        """Test that think is omitted when unset and explicit otherwise."""
        payload = build_chat_request(
            "qwen3", [], True, ChatSettings(thinking_option=option)
        ).to_payload()

        if expected is None:
            assert "think" not in payload
        else:
            assert payload["think"] is expected

    def test_client_fields_not_sent(self):
        """Test that client-side message metadata never reaches the wire."""
        message = ChatMessage(role="assistant", content="x", is_streaming=True, eval_count=3)
        tools = [ToolDefinition(function=ToolFunctionDefinition(name="get_weather"))]

        payload = build_chat_request("llama3", [message], True, tools=tools).to_payload()

        assert payload["messages"] == [{"role": "assistant", "content": "x"}]
        assert payload["tools"] == [{"type": "function", "function": {"name": "get_weather"}}]


class TestResponseModels:
    """Test decoding of server responses."""

    def test_models_response(self):
        """Test /api/tags decoding and derived properties."""
        response = ModelsResponse.model_validate(
            {
                "models": [
                    {
                        "name": "llama3:latest",
                        "model": "llama3:latest",
                        "modified_at": "2024-05-01T12:00:00.123456789+02:00",
                        "size": 4661224676,
                        "digest": "abc",
                    }
                ]
            }
        )
        model = response.models[0]

        assert model.id == "abc"
        assert model.formatted_size == "4.7 GB"
        assert model.comparable_modified_date == datetime(
            2024, 5, 1, 10, 0, 0, 123456, tzinfo=timezone.utc
        )
        assert "original_index" not in model.model_dump()

    def test_unparseable_modified_date(self):
        """Test that a bad timestamp sorts as the minimum date."""
        response = ModelsResponse.model_validate(
            {"models": [{"name": "a", "model": "a", "modified_at": "yesterday", "size": 1, "digest": "d"}]}
        )

        assert response.models[0].comparable_modified_date.year == 1

    def test_running_models_tolerate_bad_fields(self):
        """Test that a bad expires_at or size_vram becomes None."""
        response = PsResponse.model_validate(
            {
                "models": [
                    {"name": "a", "expires_at": "2024-05-01T12:00:00.5Z", "size_vram": 5_000_000},
                    {"name": "b", "expires_at": "soon", "size_vram": "lots"},
                    {"name": "c"},
                ]
            }
        )
        a, b, c = response.models

        assert a.expires_at == datetime(2024, 5, 1, 12, 0, 0, 500000, tzinfo=timezone.utc)
        assert a.formatted_vram_size == "5.0 MB"
        assert b.expires_at is None and b.size_vram is None
        assert c.formatted_vram_size is None

    @pytest.mark.parametrize(
        "size,expected",
        [(0, "Zero KB"), (512, "512 bytes"), (1500, "2 KB"), (4_700_000_000, "4.7 GB")],
    )
    def test_format_byte_count(self, size, expected):
        """Test human-readable sizes."""
        assert format_byte_count(size) == expected

    def test_parse_iso8601_naive_is_utc(self):
        """Test that timestamps without offset are read as UTC."""
        assert parse_iso8601("2024-01-01T00:00:00").tzinfo is timezone.utc
        assert parse_iso8601("not a date") is None
