"""
Ollama API client for model management and chat.

Handles communication with an Ollama server: listing, pulling, inspecting and
deleting models, probing connectivity and streaming chat completions. All
user-facing results are published through the client's StateStore.
"""

import asyncio
import json
import logging
import ssl
from collections.abc import Callable
from typing import Any

import httpx
from pydantic import ValidationError

from mocolamma.core.config import APITimeoutOption, TimeoutSettings, settings
from mocolamma.core.exceptions import (
    NoServerSelectedError,
    OllamaError,
    OllamaHTTPStatusError,
    OllamaStreamError,
    OllamaTLSError,
    OllamaTransportError,
    StreamCancelledError,
)
from mocolamma.core.logging import StreamLogContext, get_logger, log_with_context
from mocolamma.core.state import StateStore, pull_reset_values
from mocolamma.core.urls import build_api_url, normalize_host
from mocolamma.schemas.chat import (
    ChatMessage,
    ChatResponseChunk,
    ChatSettings,
    ToolDefinition,
    build_chat_request,
)
from mocolamma.schemas.models import (
    ModelPullProgress,
    ModelsResponse,
    PsResponse,
    RunningModel,
    ShowResponse,
    VersionResponse,
)
from mocolamma.schemas.server import ServerConnectionStatus
from mocolamma.services.model_info_cache import ModelInfoCache
from mocolamma.services.multiplexer import RequestMultiplexer, StreamTask, TaskKind, TaskState
from mocolamma.services.progress import ProgressTracker
from mocolamma.services.status_coalescer import StatusCoalescer, StatusUpdate

logger = get_logger(__name__)

NO_SERVER_MESSAGE = "Error: No Ollama server selected."
TLS_ERROR_MESSAGE = (
    "Could not connect to API.\nTLS error occurred, could not establish a secure connection."
)
PULL_BAD_REQUEST_MESSAGE = "Model pull failed.\nPlease make sure the model name is correct."
PULL_UNKNOWN_ERROR_MESSAGE = "Model pull failed.\nUnknown error occurred."

STATUS_COMPLETED = "Completed"
STATUS_FAILED = "Failed"
STATUS_ERROR = "Error"


def _is_tls_failure(error: BaseException) -> bool:
    """Check whether an httpx error was caused by a TLS/certificate failure."""
    current: BaseException | None = error
    while current is not None:
        if isinstance(current, ssl.SSLError):
            return True
        current = current.__cause__ or current.__context__
    return False


def _transport_error(error: httpx.HTTPError) -> OllamaTransportError:
    """Map an httpx failure to the client's error taxonomy."""
    detail = str(error) or error.__class__.__name__
    if isinstance(error, httpx.TimeoutException):
        return OllamaTransportError(f"Request timed out: {detail}")
    if _is_tls_failure(error):
        return OllamaTLSError(detail)
    return OllamaTransportError(detail)


def _error_field(body: bytes) -> str | None:
    """Extract the "error" string of a JSON error body, if present."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if isinstance(data, dict) and isinstance(data.get("error"), str):
        return data["error"]
    return None


class PullHandle:
    """
    Handle for a model pull started by OllamaClient.pull_model().

    wait() resolves once the pull completed and the model list was refreshed,
    and raises when the pull failed, was cancelled or was superseded by a
    newer pull.
    """

    def __init__(self, task: StreamTask, client: "OllamaClient"):
        self._task = task
        self._client = client

    @property
    def id(self) -> str:
        return self._task.id

    @property
    def state(self) -> TaskState:
        return self._task.state

    @property
    def done(self) -> bool:
        return self._task.finished

    async def wait(self) -> None:
        await self._task.wait()
        # The refresh after a successful pull runs outside the pull task
        handle = self._task.handle
        if handle is not None and not handle.done():
            await asyncio.wait({handle})

    def cancel(self) -> bool:
        return self._client.cancel_pull(self._task.id)


class ChatStream:
    """
    Lazy, cancellable async iterator over chat response chunks.

    The request is only sent when iteration starts.
    """

    def __init__(self, client: "OllamaClient", starter: Callable[[], StreamTask]):
        self._client = client
        self._starter = starter
        self._task: StreamTask | None = None
        self._cancelled = False

    @property
    def task(self) -> StreamTask | None:
        return self._task

    def __aiter__(self) -> "ChatStream":
        return self

    async def __anext__(self) -> ChatResponseChunk:
        if self._task is None:
            if self._cancelled:
                raise StreamCancelledError("Chat stream cancelled before start")
            self._task = self._starter()
        return await self._task.next_item()

    def cancel(self) -> None:
        """Stop the stream; chunks that have not been consumed are dropped."""
        self._cancelled = True
        if self._task is not None:
            self._client._mux.cancel(self._task.id, reason="Chat stream cancelled")

    async def aclose(self) -> None:
        self.cancel()

    async def collect(self) -> list[ChatResponseChunk]:
        """Consume the whole stream and return every chunk."""
        return [chunk async for chunk in self]


class OllamaClient:
    """
    Client for interacting with the Ollama API.

    Provides methods for:
    - Listing, pulling, inspecting and deleting models
    - Probing server connectivity, version and running models
    - Streaming or single-shot chat completions

    One-shot requests share a session built from the current API timeout
    option; model pulls use their own session with a long idle timeout.
    """

    def __init__(
        self,
        host: str | None = None,
        state: StateStore | None = None,
        timeout_settings: TimeoutSettings | None = None,
        server_registry=None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] | None = None,
    ):
        """
        Initialize Ollama client.

        Args:
            host: Ollama host (defaults to settings, ignored with a registry)
            state: State store receiving user-facing updates
            timeout_settings: Observable API timeout option
            server_registry: ServerRegistry whose selected host is followed
            transport: Custom httpx transport, used by tests
            clock: Monotonic time source for progress sampling
        """
        self.state = state or StateStore()
        self.timeout_settings = timeout_settings or TimeoutSettings()
        self.server_registry = server_registry
        self._transport = transport

        clock_kwargs = {"clock": clock} if clock is not None else {}
        self._tracker = ProgressTracker(**clock_kwargs)
        self._coalescer = StatusCoalescer(self._commit_pull_status, **clock_kwargs)
        self._mux = RequestMultiplexer(on_pull_line=self._handle_pull_line)
        self._model_info = ModelInfoCache(self._fetch_show)
        self._current_chat_id: str | None = None
        self._closing_sessions: set[asyncio.Task] = set()
        self._pull_runs: set[asyncio.Task] = set()

        self._http = self._create_http_client(self.timeout_settings.current_option)
        self._pull_http = httpx.AsyncClient(
            timeout=httpx.Timeout(float(settings.pull_timeout)),
            transport=transport,
        )

        self._unsubscribers = [self.timeout_settings.subscribe(self._on_timeout_changed)]
        if server_registry is not None:
            self._unsubscribers.append(server_registry.subscribe(self._on_server_changed))
            self.api_base_url = server_registry.current_host
        else:
            self.api_base_url = host if host is not None else settings.ollama_host

    async def __aenter__(self) -> "OllamaClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def api_base_url(self) -> str | None:
        return self.state.state.api_base_url

    @api_base_url.setter
    def api_base_url(self, host: str | None) -> None:
        self.state.update(api_base_url=host)

    @property
    def multiplexer(self) -> RequestMultiplexer:
        return self._mux

    @property
    def model_info_cache(self) -> ModelInfoCache:
        return self._model_info

    # =========================================================================
    # Session management
    # =========================================================================

    def _create_http_client(self, option: APITimeoutOption) -> httpx.AsyncClient:
        logger.debug(f"Creating HTTP session with timeout option {option.value}")
        return httpx.AsyncClient(
            timeout=httpx.Timeout(option.request_timeout_until_first_byte),
            transport=self._transport,
        )

    def _on_timeout_changed(self, option: APITimeoutOption) -> None:
        logger.info(f"API timeout changed to {option.value}, recreating HTTP session")
        old_http = self._http
        self._http = self._create_http_client(option)
        self._mux.abandon(
            OllamaTransportError("HTTP session was reset after a timeout change"),
            kind=TaskKind.CHAT,
        )
        self._current_chat_id = None
        try:
            closing = asyncio.get_running_loop().create_task(old_http.aclose())
        except RuntimeError:
            # No running loop: nothing can be in flight on the old session
            return
        self._closing_sessions.add(closing)
        closing.add_done_callback(self._on_session_closed)

    def _on_session_closed(self, closing: asyncio.Task) -> None:
        self._closing_sessions.discard(closing)
        if not closing.cancelled() and closing.exception() is not None:
            logger.warning(f"Closing the previous HTTP session failed: {closing.exception()}")

    def _on_server_changed(self, host: str | None) -> None:
        if host != self.api_base_url:
            logger.info(f"Following selected server: {host}")
            self.api_base_url = host

    async def close(self) -> None:
        """Cancel every in-flight task and close the HTTP sessions."""
        handles = [task.handle for task in self._mux.active_tasks() if task.handle is not None]
        self._mux.cancel_all()
        # Pull runs still refreshing the model list after completion
        for run in list(self._pull_runs):
            if run not in handles:
                run.cancel()
                handles.append(run)
        handles.extend(self._closing_sessions)
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)
        self._coalescer.stop()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        await self._http.aclose()
        await self._pull_http.aclose()

    def _resolve_url(self, path: str, host: str | None = None) -> str:
        """
        Build an endpoint URL for the given host or the current server.

        Raises:
            NoServerSelectedError: If no host is available
            ValueError: If the host cannot form a URL
        """
        base = host if host is not None else self.api_base_url
        if base is None:
            raise NoServerSelectedError()
        return build_api_url(base, path)

    # =========================================================================
    # Models
    # =========================================================================

    async def fetch_models(self) -> None:
        """
        Fetch the installed model list into state.models.

        Any failure empties the list and sets state.api_connection_error.
        """
        host = self.api_base_url
        if host is None:
            logger.warning("Ollama API base URL is not set, skipping model list retrieval")
            self.state.update(output=NO_SERVER_MESSAGE, api_connection_error=True)
            return

        logger.info(f"Fetching model list from Ollama API at {host}")
        self.state.update(
            output=f"Fetching models from API ({host})...",
            is_running=True,
            api_connection_error=False,
        )

        try:
            try:
                url = build_api_url(host, "/api/tags")
            except ValueError:
                self._fail_model_list("Error: Invalid API URL.")
                return

            try:
                response = await self._http.get(url)
            except httpx.HTTPError as e:
                logger.error(f"API request error: {e}")
                self._fail_model_list(f"API Request Error: {_transport_error(e)}")
                return

            if response.status_code != 200:
                logger.error(f"API error: HTTP status code {response.status_code}: {response.text}")
                self._fail_model_list(f"API Error: HTTP Status Code {response.status_code}")
                return

            try:
                models = ModelsResponse.model_validate_json(response.content).models
            except ValidationError as e:
                logger.error(f"API decoding error: {e}")
                self._fail_model_list(f"API Decode Error: {e}")
                return

            for index, model in enumerate(models):
                model.original_index = index
            logger.info(f"Successfully retrieved models. Total: {len(models)}")
            self.state.update(
                models=models,
                output=f"Successfully fetched models. Total: {len(models)}",
                api_connection_error=False,
            )
        finally:
            self.state.update(is_running=False)

    def _fail_model_list(self, message: str) -> None:
        self.state.update(output=message, models=(), api_connection_error=True)

    async def delete_model(self, model_name: str) -> bool:
        """
        Delete a model from the current server.

        Args:
            model_name: Name of the model to delete

        Returns:
            bool: True if the server deleted the model
        """
        host = self.api_base_url
        if host is None:
            self.state.update(output=NO_SERVER_MESSAGE)
            return False

        self.state.update(output=f"Deleting model '{model_name}' from {host}...")
        try:
            url = build_api_url(host, "/api/delete")
        except ValueError:
            self.state.update(output="Error: Invalid API URL for delete.")
            return False

        try:
            response = await self._http.request("DELETE", url, json={"model": model_name})
        except httpx.HTTPError as e:
            logger.error(f"Failed to delete model {model_name}: {e}")
            self.state.update(output=f"Model deletion failed: {_transport_error(e)}")
            return False

        if response.status_code == 200:
            logger.info(f"Successfully deleted model {model_name} from {host}")
            self.state.update(output=f"Successfully deleted model '{model_name}' from {host}.")
            await self.fetch_models()
            return True

        if response.status_code == 404:
            logger.warning(f"Model {model_name} not found on {host}")
            self.state.update(
                output=f"Delete Error: Model '{model_name}' not found (404 Not Found) on {host}."
            )
            return False

        body = response.text or "No data available"
        logger.error(f"Delete failed: HTTP status code {response.status_code} - {body} on {host}")
        self.state.update(
            output=f"Delete Error: HTTP Status Code {response.status_code} - {body} on {host}"
        )
        return False

    async def fetch_model_info(self, model_name: str) -> ShowResponse | None:
        """
        Get model details, served from cache after the first successful fetch.

        Returns:
            ShowResponse | None: Model details, or None on failure
        """
        return await self._model_info.get(model_name)

    def clear_model_info_cache(self) -> None:
        self._model_info.clear()

    async def _fetch_show(self, model_name: str) -> ShowResponse | None:
        try:
            url = self._resolve_url("/api/show")
        except (OllamaError, ValueError) as e:
            logger.warning(f"Skipping model details retrieval: {e}")
            return None

        logger.info(f"Fetching model {model_name} details from {self.api_base_url}")
        try:
            response = await self._http.post(url, json={"model": model_name})
        except httpx.HTTPError as e:
            logger.error(f"API request error: /api/show - {e}")
            return None

        if response.status_code != 200:
            logger.error(f"API error: /api/show - HTTP status code {response.status_code}")
            return None

        try:
            info = ShowResponse.model_validate_json(response.content)
        except ValidationError as e:
            logger.error(f"API decoding error: /api/show - {e}")
            return None

        logger.info(f"Successfully retrieved model {model_name} details")
        return info

    # =========================================================================
    # Server probes
    # =========================================================================

    async def check_api_connectivity(self, host: str) -> ServerConnectionStatus:
        """
        Check whether the Ollama API on a host is reachable.

        For https hosts, TLS and connection failures publish a dedicated
        message in state.specific_connection_error_message.

        Args:
            host: Host such as "localhost:11434" or "https://example.com"

        Returns:
            ServerConnectionStatus: Outcome of the probe
        """
        scheme, _ = normalize_host(host)
        try:
            url = build_api_url(host, "/api/tags")
        except ValueError:
            logger.warning(f"Connection check error: invalid URL for host {host}")
            return ServerConnectionStatus.unknown_host()

        try:
            response = await self._http.get(url)
        except httpx.TimeoutException as e:
            logger.warning(f"Connection check to {host} timed out: {e}")
            return ServerConnectionStatus.timed_out()
        except httpx.TransportError as e:
            logger.warning(f"Connection check error to {host}: {e}")
            tls_related = _is_tls_failure(e) or isinstance(
                e, (httpx.ConnectError, httpx.ReadError, httpx.RemoteProtocolError)
            )
            message = TLS_ERROR_MESSAGE if scheme == "https" and tls_related else None
            self.state.update(specific_connection_error_message=message)
            return ServerConnectionStatus.unknown_host()
        except httpx.HTTPError as e:
            logger.warning(f"Connection check error to {host}: {e}")
            self.state.update(specific_connection_error_message=None)
            return ServerConnectionStatus.unknown_host()

        if response.status_code == 200:
            logger.info(f"Connection check: successfully connected to {host}")
            return ServerConnectionStatus.connected()

        logger.warning(
            f"Connection check: failed to connect to {host} - HTTP status code {response.status_code}"
        )
        return ServerConnectionStatus.error_with_message(
            response.status_code, _error_field(response.content)
        )

    async def fetch_ollama_version(self, host: str | None = None) -> str | None:
        """
        Get the Ollama server version.

        Returns:
            str | None: Version string, or None on failure
        """
        version = await self._get_model("/api/version", VersionResponse, host)
        return version.version if version is not None else None

    async def fetch_running_models_count(self, host: str | None = None) -> int | None:
        """Get the number of models currently loaded in memory."""
        running = await self._get_model("/api/ps", PsResponse, host)
        return len(running.models) if running is not None else None

    async def fetch_running_models(self, host: str | None = None) -> list[RunningModel] | None:
        """Get the models currently loaded in memory."""
        running = await self._get_model("/api/ps", PsResponse, host)
        return running.models if running is not None else None

    async def _get_model(self, path: str, model_cls, host: str | None = None) -> Any:
        try:
            url = self._resolve_url(path, host)
            response = await self._http.get(url)
        except (OllamaError, ValueError, httpx.HTTPError) as e:
            logger.warning(f"Failed to retrieve {path}: {e}")
            return None

        if response.status_code != 200:
            logger.warning(f"Failed to retrieve {path}: HTTP status code {response.status_code}")
            return None

        try:
            return model_cls.model_validate_json(response.content)
        except ValidationError as e:
            logger.warning(f"Failed to decode {path}: {e}")
            return None

    # =========================================================================
    # Model pull
    # =========================================================================

    def pull_model(self, model_name: str) -> PullHandle:
        """
        Start pulling a model from the Ollama registry.

        A pull already in progress is cancelled first. Progress is published
        through the state store while the pull runs.

        Args:
            model_name: Name of the model to pull

        Returns:
            PullHandle: Handle to await or cancel the pull

        Raises:
            NoServerSelectedError: If no server is selected
            OllamaError: If the host cannot form a URL
        """
        host = self.api_base_url
        if host is None:
            logger.warning("Ollama API base URL is not set, skipping model pull")
            self.state.update(output=NO_SERVER_MESSAGE, is_pulling=False)
            raise NoServerSelectedError()

        try:
            url = build_api_url(host, "/api/pull")
        except ValueError as e:
            self.state.update(output="Error: Invalid API URL for pull.", is_pulling=False)
            raise OllamaError("Error: Invalid API URL for pull.") from e

        logger.info(f"Attempting to pull model {model_name} from {host}")
        task = self._mux.register(TaskKind.PULL, model=model_name)

        self._coalescer.stop()
        self._coalescer.reset()
        self._tracker.reset()
        self.state.update(
            output=f"Downloading model '{model_name}' from {host}...",
            last_pulled_model_name=model_name,
            **pull_reset_values(),
        )

        handle = asyncio.get_running_loop().create_task(self._run_pull(task, url, model_name))
        self._pull_runs.add(handle)
        handle.add_done_callback(self._pull_runs.discard)
        self._mux.attach(task.id, handle)
        return PullHandle(task, self)

    async def _run_pull(self, task: StreamTask, url: str, model_name: str) -> None:
        error: BaseException | None = None
        with StreamLogContext(stream_id=task.id, model=model_name):
            try:
                self._mux.mark_sending(task.id)
                async with self._pull_http.stream(
                    "POST", url, json={"model": model_name, "stream": True}
                ) as response:
                    if response.status_code != 200:
                        error = self._fail_pull_http(response.status_code)
                    else:
                        async for chunk in response.aiter_bytes():
                            self._mux.feed(task.id, chunk)
                        self._mux.flush(task.id)
            except asyncio.CancelledError:
                error = StreamCancelledError("Pull cancelled")
                raise
            except OllamaError as e:
                error = e
            except httpx.HTTPError as e:
                error = _transport_error(e)
            finally:
                # A superseded or cancelled pull no longer owns the pull state
                owns_state = task.id in self._mux
                if owns_state:
                    error = self._finish_pull(error)
                    self.state.update(is_pulling=False)
                    self._mux.complete(task.id, error)

            if owns_state and error is None:
                self._model_info.clear()
                await self.fetch_models()

    def cancel_pull(self, task_id: str | None = None) -> bool:
        """
        Cancel the running pull.

        Args:
            task_id: Only cancel if this is still the running pull

        Returns:
            bool: True if a pull was cancelled
        """
        task = self._mux.pull_task
        if task is None or (task_id is not None and task.id != task_id):
            return False
        if not self._mux.cancel(task.id, reason="Pull cancelled"):
            return False

        self._coalescer.stop()
        logger.info(f"Model pull cancelled: {task.model}")
        self.state.update(
            output="Model pull failed: Pull cancelled",
            pull_status=STATUS_FAILED,
            is_pulling_error_hold=True,
            is_pulling=False,
        )
        return True

    def _fail_pull_http(self, status_code: int) -> OllamaHTTPStatusError:
        logger.error(f"/api/pull HTTP error: {status_code}")
        message = PULL_BAD_REQUEST_MESSAGE if status_code == 400 else PULL_UNKNOWN_ERROR_MESSAGE
        self.state.update(
            output=f"Model pull error: HTTP Status Code {status_code}",
            pull_http_error_message=message,
            pull_http_error_triggered=True,
            pull_has_error=True,
            pull_status=STATUS_FAILED,
            is_pulling_error_hold=True,
            is_pulling=False,
        )
        return OllamaHTTPStatusError(status_code, message)

    def _finish_pull(self, error: BaseException | None) -> BaseException | None:
        """
        Publish the terminal pull state.

        Returns:
            BaseException | None: The error the pull handle resolves with
        """
        self._coalescer.stop()
        self._coalescer.flush()
        current = self.state.state

        if current.pull_has_error:
            logger.warning("Pull finished after an error, not marking it as completed")
            self.state.update(is_pulling_error_hold=True)
            return error or OllamaStreamError(current.output, payload=current.output)

        if error is not None:
            if isinstance(error, StreamCancelledError):
                logger.info("Model pull cancelled")
            else:
                logger.error(f"Model pull failed: {error}")
            self.state.update(
                output=f"Model pull failed: {error}",
                pull_status=STATUS_FAILED,
                is_pulling_error_hold=True,
            )
            return error

        log_with_context(
            logger,
            logging.INFO,
            "Model pull completed",
            total=current.pull_total,
            skipped_lines=current.pull_skipped_lines,
        )
        self.state.update(
            output=f"Model pull completed: {current.pull_status}",
            pull_progress=1.0,
            pull_status=STATUS_COMPLETED,
        )
        return None

    def _handle_pull_line(self, task: StreamTask, line: str) -> None:
        """Apply one NDJSON line of the pull stream."""
        try:
            progress = ModelPullProgress.model_validate_json(line)
        except ValidationError as e:
            if "error" in line.lower():
                logger.error(f"Pull stream reported an error: {line}")
                self.state.update(
                    output=line,
                    pull_has_error=True,
                    pull_status=STATUS_ERROR,
                    is_pulling_error_hold=True,
                )
            else:
                logger.warning(f"Pull stream JSON decode error: {e} - Line: {line}")
                self.state.update(pull_skipped_lines=self.state.state.pull_skipped_lines + 1)
            return

        snapshot = self._tracker.update(completed=progress.completed, total=progress.total)
        self.state.update(
            pull_speed_bytes_per_sec=snapshot.speed_bytes_per_sec,
            pull_eta_remaining=snapshot.eta_seconds,
        )
        self._coalescer.submit(
            status=None if self.state.state.pull_has_error else progress.status,
            total=snapshot.total,
            completed=snapshot.completed,
            progress=snapshot.progress,
        )
        logger.debug(
            f"Pull status: {progress.status}, completed: {snapshot.completed}, "
            f"total: {snapshot.total}, progress: {snapshot.progress:.2f}"
        )

    def _commit_pull_status(self, update: StatusUpdate) -> None:
        changes: dict[str, Any] = {
            "pull_total": update.total,
            "pull_completed": update.completed,
            "pull_progress": update.progress,
        }
        if update.status is not None and not self.state.state.pull_has_error:
            changes["pull_status"] = update.status
        self.state.update(**changes)

    # =========================================================================
    # Chat
    # =========================================================================

    def chat(
        self,
        model: str,
        messages: list[ChatMessage],
        stream: bool = True,
        chat_settings: ChatSettings | None = None,
        tools: list[ToolDefinition] | None = None,
    ) -> ChatStream:
        """
        Send a chat request.

        The request is sent when the returned stream is first iterated.

        Args:
            model: Model name to use
            messages: Conversation so far
            stream: Stream one chunk per line instead of a single response
            chat_settings: Request options and system prompt overrides
            tools: Tool definitions offered to the model

        Returns:
            ChatStream: Async iterator of ChatResponseChunk
        """
        request = build_chat_request(model, messages, stream, chat_settings, tools)

        def start() -> StreamTask:
            url = self._resolve_url("/api/chat")
            task = self._mux.register(TaskKind.CHAT, streaming=stream, model=model)
            handle = asyncio.get_running_loop().create_task(
                self._run_chat(task, url, request.to_payload())
            )
            self._mux.attach(task.id, handle)
            self._current_chat_id = task.id
            return task

        return ChatStream(self, start)

    async def _run_chat(self, task: StreamTask, url: str, payload: dict[str, Any]) -> None:
        error: BaseException | None = None
        with StreamLogContext(stream_id=task.id, model=task.model):
            logger.debug(f"Sending chat request: {payload}")
            try:
                self._mux.mark_sending(task.id)
                async with self._http.stream("POST", url, json=payload) as response:
                    if response.status_code != 200:
                        body = await response.aread()
                        error = OllamaHTTPStatusError(response.status_code, _error_field(body))
                        logger.error(f"Chat request failed: {error}")
                    else:
                        async for chunk in response.aiter_bytes():
                            self._mux.feed(task.id, chunk)
            except asyncio.CancelledError:
                error = StreamCancelledError("Chat stream cancelled")
                raise
            except OllamaError as e:
                error = e
            except httpx.HTTPError as e:
                logger.error(f"Chat transport error: {e}")
                error = _transport_error(e)
            finally:
                self._mux.complete(task.id, error)
                if self._current_chat_id == task.id:
                    self._current_chat_id = None

    def cancel_chat_streaming(self) -> None:
        """Cancel the most recently started chat stream, if any."""
        if self._current_chat_id is not None:
            self._mux.cancel(self._current_chat_id, reason="Chat streaming cancelled")
            self._current_chat_id = None
        logger.info("Chat streaming cancelled")

    def update_is_chat_streaming(self) -> None:
        streaming = any(message.is_streaming for message in self.state.state.chat_messages)
        self.state.update(is_chat_streaming=streaming)

    def clear_chat(self) -> None:
        """Clear the chat history and input text and stop the current stream."""
        self.state.update(chat_messages=(), chat_input_text="")
        self.update_is_chat_streaming()
        self.cancel_chat_streaming()
