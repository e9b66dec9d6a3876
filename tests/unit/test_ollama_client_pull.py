"""
Unit tests for model pulls through OllamaClient.
"""

import asyncio
import json

import httpx
import pytest

from conftest import MODELS_PAYLOAD, byte_stream, ndjson, wait_for
from mocolamma.core.exceptions import (
    NoServerSelectedError,
    OllamaHTTPStatusError,
    OllamaStreamError,
    OllamaTransportError,
    StreamCancelledError,
)
from mocolamma.services.multiplexer import TaskState
from mocolamma.services.ollama_client import (
    PULL_BAD_REQUEST_MESSAGE,
    PULL_UNKNOWN_ERROR_MESSAGE,
)


class TestPullSuccess:
    """Test a pull that runs to completion."""

    async def test_progress_then_completed(self, client, routes, requests_log):
        """Test that progress is committed before the pull is marked completed."""
        routes[("POST", "/api/pull")] = lambda request: httpx.Response(
            200,
            content=byte_stream(
                ndjson({"status": "downloading", "digest": "sha256:1", "total": 1000, "completed": 500}),
                ndjson({"status": "success"}),
            ),
        )
        commits = []
        client.state.subscribe(
            lambda state, changed: commits.append((state.pull_status, state.pull_progress))
            if "pull_progress" in changed or "pull_status" in changed
            else None
        )

        handle = client.pull_model("llama3")
        await handle.wait()

        assert ("success", 0.5) in commits
        assert commits[-1] == ("Completed", 1.0)
        assert commits.index(("success", 0.5)) < commits.index(("Completed", 1.0))
        state = client.state.state
        assert state.is_pulling is False
        assert state.output == "Successfully fetched models. Total: 2"
        assert state.last_pulled_model_name == "llama3"
        assert state.pull_total == 1000
        assert handle.state is TaskState.COMPLETED

        pull_request = next(r for r in requests_log if r.url.path == "/api/pull")
        assert json.loads(pull_request.content) == {"model": "llama3", "stream": True}
        assert requests_log[-1].url.path == "/api/tags"

    async def test_lines_split_across_chunks(self, client, routes):
        """Test that progress lines split mid-object are reassembled."""
        body = ndjson(
            {"status": "pulling manifest"},
            {"status": "downloading", "total": 200, "completed": 200},
            {"status": "success"},
        )
        routes[("POST", "/api/pull")] = lambda request: httpx.Response(
            200, content=byte_stream(body[:7], body[7:40], body[40:])
        )

        await client.pull_model("llama3").wait()

        assert client.state.state.pull_status == "Completed"
        assert client.state.state.pull_completed == 200
        assert client.state.state.pull_skipped_lines == 0

    async def test_unparseable_line_is_skipped(self, client, routes):
        """Test that a garbage line without an error is counted and ignored."""
        routes[("POST", "/api/pull")] = lambda request: httpx.Response(
            200,
            content=byte_stream(b"garbage\n", ndjson({"status": "success"})),
        )

        await client.pull_model("llama3").wait()

        assert client.state.state.pull_skipped_lines == 1
        assert client.state.state.pull_status == "Completed"


class TestPullFailures:
    """Test pull error paths."""

    @pytest.mark.parametrize(
        "status_code,message",
        [(400, PULL_BAD_REQUEST_MESSAGE), (500, PULL_UNKNOWN_ERROR_MESSAGE)],
    )
    async def test_http_error(self, client, routes, status_code, message):
        """Test that a non-200 response flags the pull with a matching message."""
        routes[("POST", "/api/pull")] = lambda request: httpx.Response(
            status_code, json={"error": "invalid model name"}
        )

        handle = client.pull_model("no such model")
        with pytest.raises(OllamaHTTPStatusError) as exc_info:
            await handle.wait()

        assert exc_info.value.status_code == status_code
        state = client.state.state
        assert state.pull_http_error_triggered is True
        assert state.pull_has_error is True
        assert state.pull_http_error_message == message
        assert state.pull_status == "Failed"
        assert state.is_pulling_error_hold is True
        assert state.is_pulling is False
        assert state.output == f"Model pull error: HTTP Status Code {status_code}"

    async def test_error_envelope_is_never_completed(self, client, routes):
        """Test that an error line holds the pull in the error state."""
        error_line = '{"error":"pull model manifest: file does not exist"}'
        routes[("POST", "/api/pull")] = lambda request: httpx.Response(
            200,
            content=byte_stream(
                ndjson({"status": "pulling manifest"}),
                error_line.encode() + b"\n",
            ),
        )

        with pytest.raises(OllamaStreamError):
            await client.pull_model("llama3").wait()

        state = client.state.state
        assert state.pull_has_error is True
        assert state.pull_status == "Error"
        assert state.output == error_line
        assert state.is_pulling_error_hold is True

    async def test_transport_error(self, client, routes):
        """Test that a dropped connection marks the pull as failed."""

        def refuse(request):
            raise httpx.ConnectError("Connection refused", request=request)

        routes[("POST", "/api/pull")] = refuse

        with pytest.raises(OllamaTransportError):
            await client.pull_model("llama3").wait()

        state = client.state.state
        assert state.pull_status == "Failed"
        assert state.output.startswith("Model pull failed: ")
        assert state.is_pulling_error_hold is True

    async def test_no_server_selected(self, client):
        """Test that pulling without a server raises immediately."""
        client.api_base_url = None

        with pytest.raises(NoServerSelectedError):
            client.pull_model("llama3")
        assert client.state.state.output == "Error: No Ollama server selected."


class TestPullSupersession:
    """Test single-flight pulls."""

    async def test_second_pull_supersedes_first(self, client, routes):
        """Test that a new pull cancels the running one and owns the state."""
        started = asyncio.Event()

        def pull(request):
            model = json.loads(request.content)["model"]
            if model == "first":
                started.set()
                return httpx.Response(
                    200,
                    content=byte_stream(
                        ndjson({"status": "downloading", "total": 100, "completed": 10}),
                        hang=True,
                    ),
                )
            return httpx.Response(200, content=byte_stream(ndjson({"status": "success"})))

        routes[("POST", "/api/pull")] = pull

        first = client.pull_model("first")
        await started.wait()
        second = client.pull_model("second")

        with pytest.raises(StreamCancelledError):
            await first.wait()
        await second.wait()

        assert first.state is TaskState.CANCELLED
        assert client.state.state.last_pulled_model_name == "second"
        assert client.state.state.pull_status == "Completed"
        assert client.multiplexer.pull_task is None

    async def test_cancel_pull(self, client, routes):
        """Test that a cancelled pull resolves its handle with a cancellation."""
        routes[("POST", "/api/pull")] = lambda request: httpx.Response(
            200, content=byte_stream(ndjson({"status": "pulling manifest"}), hang=True)
        )
        handle = client.pull_model("llama3")
        await wait_for(lambda: handle.state is TaskState.RECEIVING)

        assert handle.cancel() is True
        assert handle.cancel() is False
        with pytest.raises(StreamCancelledError):
            await handle.wait()

        state = client.state.state
        assert state.is_pulling is False
        assert state.pull_status == "Failed"
        assert state.is_pulling_error_hold is True
        assert not client._coalescer.timer_active
        assert client.multiplexer.pull_task is None

    async def test_cancel_without_pull(self, client):
        """Test that cancelling when nothing is pulling changes nothing."""
        assert client.cancel_pull() is False
        assert client.state.state.is_pulling is False

    async def test_new_pull_during_refresh_keeps_first_result(self, client, routes):
        """Test that a finished pull still refreshing models is not superseded."""

        async def slow_tags(request):
            await asyncio.sleep(0.3)
            return httpx.Response(200, json=MODELS_PAYLOAD)

        routes[("GET", "/api/tags")] = slow_tags
        routes[("POST", "/api/pull")] = lambda request: httpx.Response(
            200, content=byte_stream(ndjson({"status": "success"}))
        )

        first = client.pull_model("first")
        await wait_for(lambda: client.state.state.pull_status == "Completed")
        assert client.multiplexer.pull_task is None
        second = client.pull_model("second")

        await first.wait()
        await second.wait()

        assert first.state is TaskState.COMPLETED
        assert second.state is TaskState.COMPLETED
        assert client.state.state.last_pulled_model_name == "second"
        assert len(client.state.state.models) == 2
