"""
Request multiplexer for concurrent streaming responses.

Every in-flight request is a StreamTask with its own line buffer and consumer
channel. Network reads feed bytes in by task id; the multiplexer routes them
to the pull line handler or decodes them into chat chunks for the task's
consumer. All methods run on the client's event loop.
"""

import asyncio
import json
from collections.abc import Callable
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from mocolamma.core.exceptions import (
    OllamaDecodeError,
    OllamaError,
    OllamaStreamError,
    StreamCancelledError,
)
from mocolamma.core.logging import StreamLogContext, get_logger
from mocolamma.schemas.chat import ChatResponseChunk
from mocolamma.services.line_buffer import LineBuffer

logger = get_logger(__name__)

_END_OF_STREAM = object()


class TaskKind(str, Enum):
    PULL = "pull"
    CHAT = "chat"


class TaskState(str, Enum):
    """Lifecycle of a stream task."""

    CREATED = "created"
    SENDING = "sending"
    RECEIVING = "receiving"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED})


def decode_json_line(line: str | bytes, model_cls: type[BaseModel]) -> Any:
    """
    Decode one JSON document into a response model.

    Raises:
        OllamaStreamError: If the payload is an error envelope
        OllamaDecodeError: If the payload is not valid JSON or does not match
    """
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise OllamaDecodeError(f"Invalid JSON: {e}", payload=line) from e

    if isinstance(data, dict) and "error" in data:
        raise OllamaStreamError(str(data["error"]), payload=str(line))

    try:
        return model_cls.model_validate(data)
    except ValidationError as e:
        raise OllamaDecodeError(f"Unexpected response shape: {e}", payload=line) from e


class StreamTask:
    """
    One outstanding network operation and its consumer.

    Decoded chunks are queued for the consumer in arrival order. The task is
    finished exactly once; after that nothing more is delivered.
    """

    def __init__(
        self,
        kind: TaskKind,
        streaming: bool = True,
        model: str | None = None,
        response_model: type[BaseModel] = ChatResponseChunk,
    ):
        self.id = uuid4().hex
        self.kind = kind
        self.streaming = streaming
        self.model = model
        self.response_model = response_model
        self.buffer = LineBuffer()
        self.body = bytearray()
        self.state = TaskState.CREATED
        self.handle: asyncio.Task | None = None
        self.error: BaseException | None = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._done = asyncio.Event()
        self._exhausted = False

    def __repr__(self) -> str:
        return f"<StreamTask {self.kind.value} {self.id[:8]} {self.state.value}>"

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def deliverable(self) -> bool:
        return not self.finished

    def deliver(self, item: Any) -> None:
        if self.deliverable:
            self._queue.put_nowait(item)

    def finish(self, error: BaseException | None = None) -> None:
        """Move to a terminal state and signal the consumer."""
        if self.finished:
            return
        self.error = error
        if error is None:
            self.state = TaskState.COMPLETED
        elif isinstance(error, StreamCancelledError):
            self.state = TaskState.CANCELLED
            self._drain_queue()
        else:
            self.state = TaskState.FAILED
        self._queue.put_nowait(error if error is not None else _END_OF_STREAM)
        self._done.set()

    async def next_item(self) -> Any:
        """
        Wait for the next decoded chunk.

        Raises:
            StopAsyncIteration: When the stream completed
            OllamaError: The error that terminated the stream
        """
        if self._exhausted:
            if self.error is not None:
                raise self.error
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END_OF_STREAM:
            self._exhausted = True
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            self._exhausted = True
            raise item
        return item

    async def wait(self) -> None:
        """
        Wait until the task reaches a terminal state.

        Raises:
            BaseException: The error that terminated the task, if any
        """
        await self._done.wait()
        if self.error is not None:
            raise self.error

    def _drain_queue(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()


class RequestMultiplexer:
    """
    Registry of in-flight stream tasks keyed by task id.

    At most one pull task exists: registering a new pull cancels the previous
    one. Chat tasks are independent of each other.
    """

    def __init__(self, on_pull_line: Callable[[StreamTask, str], None] | None = None):
        """
        Initialize the multiplexer.

        Args:
            on_pull_line: Receives every non-empty line of the pull stream
        """
        self._on_pull_line = on_pull_line
        self._tasks: dict[str, StreamTask] = {}
        self._pull_task: StreamTask | None = None

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def pull_task(self) -> StreamTask | None:
        return self._pull_task

    def get(self, task_id: str) -> StreamTask | None:
        return self._tasks.get(task_id)

    def active_tasks(self, kind: TaskKind | None = None) -> list[StreamTask]:
        return [task for task in self._tasks.values() if kind is None or task.kind == kind]

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def register(
        self,
        kind: TaskKind,
        streaming: bool = True,
        model: str | None = None,
        response_model: type[BaseModel] = ChatResponseChunk,
    ) -> StreamTask:
        """Create and register a task; a new pull supersedes the previous one."""
        if kind == TaskKind.PULL and self._pull_task is not None:
            logger.info(f"Superseding pull task {self._pull_task.id[:8]}")
            self.cancel(self._pull_task.id, reason="Superseded by a newer pull request")

        task = StreamTask(kind, streaming=streaming, model=model, response_model=response_model)
        self._tasks[task.id] = task
        if kind == TaskKind.PULL:
            self._pull_task = task
        logger.debug(f"Registered {task!r}")
        return task

    def attach(self, task_id: str, handle: asyncio.Task) -> None:
        task = self._tasks.get(task_id)
        if task is not None:
            task.handle = handle

    def mark_sending(self, task_id: str) -> None:
        task = self._tasks.get(task_id)
        if task is not None and task.state == TaskState.CREATED:
            task.state = TaskState.SENDING

    def feed(self, task_id: str, chunk: bytes) -> None:
        """
        Route a received chunk to its task.

        Chunks for unknown or finished tasks are discarded.

        Raises:
            LineDecodeError: If the chunk is not valid text
            OllamaStreamError: If a chat line is an error envelope
        """
        task = self._tasks.get(task_id)
        if task is None or not task.deliverable:
            logger.debug(f"Discarding {len(chunk)} bytes for inactive task {task_id[:8]}")
            return

        task.state = TaskState.RECEIVING

        if task.kind == TaskKind.CHAT and not task.streaming:
            task.body.extend(chunk)
            return

        for line in task.buffer.feed(chunk):
            self._dispatch_line(task, line)

    def flush(self, task_id: str) -> None:
        """Process a trailing line that arrived without a final newline."""
        task = self._tasks.get(task_id)
        if task is None or not task.deliverable:
            return
        if task.kind == TaskKind.CHAT and not task.streaming:
            return
        tail = task.buffer.flush()
        if tail:
            self._dispatch_line(task, tail)

    def complete(self, task_id: str, error: BaseException | None = None) -> StreamTask | None:
        """
        Finalize a task's consumer and drop all per-task state.

        Returns:
            StreamTask | None: The task, or None if it was no longer registered
        """
        task = self._tasks.get(task_id)
        if task is None:
            return None

        with StreamLogContext(stream_id=task.id, model=task.model):
            if error is None and task.deliverable:
                try:
                    self.flush(task_id)
                    if task.kind == TaskKind.CHAT and not task.streaming:
                        task.deliver(decode_json_line(bytes(task.body), task.response_model))
                except OllamaError as e:
                    logger.error(f"Response decode failed: {e}")
                    error = e

            self._remove(task)
            task.finish(error)
            if error is None:
                logger.debug(f"Completed {task!r}")
            else:
                logger.info(f"Finished {task!r}: {error}")
        return task

    def cancel(self, task_id: str, reason: str = "Stream cancelled") -> bool:
        """
        Cancel a task. Cancelling an unknown or finished task is a no-op.

        Returns:
            bool: True if a task was cancelled
        """
        task = self._tasks.get(task_id)
        if task is None or task.finished:
            return False
        self._remove(task)
        task.finish(StreamCancelledError(reason))
        self._cancel_handle(task)
        logger.info(f"Cancelled {task!r}: {reason}")
        return True

    def abandon(self, error: BaseException, kind: TaskKind | None = None) -> list[StreamTask]:
        """
        Resolve every matching task with an error and stop its transport.

        Used when the HTTP session is torn down under in-flight requests.
        """
        abandoned = self.active_tasks(kind)
        for task in abandoned:
            self._remove(task)
            task.finish(error)
            self._cancel_handle(task)
        if abandoned:
            logger.warning(f"Abandoned {len(abandoned)} in-flight task(s): {error}")
        return abandoned

    def cancel_all(self, reason: str = "Client closed") -> None:
        for task in self.active_tasks():
            self.cancel(task.id, reason=reason)

    # =========================================================================
    # Internal
    # =========================================================================

    def _dispatch_line(self, task: StreamTask, line: str) -> None:
        if not line.strip():
            return

        if task.kind == TaskKind.PULL:
            if self._on_pull_line is not None:
                self._on_pull_line(task, line)
            return

        try:
            chunk = decode_json_line(line, task.response_model)
        except OllamaStreamError:
            raise
        except OllamaDecodeError as e:
            logger.warning(f"Chat response JSON decode error: {e} - Line: {line}")
            return
        task.deliver(chunk)

    def _remove(self, task: StreamTask) -> None:
        self._tasks.pop(task.id, None)
        if self._pull_task is task:
            self._pull_task = None

    @staticmethod
    def _cancel_handle(task: StreamTask) -> None:
        handle = task.handle
        if handle is None or handle.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if handle is not current:
            handle.cancel()
