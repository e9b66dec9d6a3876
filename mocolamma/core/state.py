"""
Observable client state.

The client publishes every user-facing field through a StateStore. Observers
(a UI layer, a CLI, a test) subscribe and receive immutable snapshots; only the
client itself mutates the state.
"""

import copy
from collections.abc import Callable
from dataclasses import dataclass, fields, replace

from mocolamma.core.logging import get_logger
from mocolamma.schemas.chat import ChatMessage
from mocolamma.schemas.models import OllamaModel

logger = get_logger(__name__)

PREPARING_STATUS = "Preparing..."


@dataclass(frozen=True)
class ClientState:
    """Snapshot of everything an observer can see."""

    output: str = ""
    is_running: bool = False
    models: tuple[OllamaModel, ...] = ()
    api_connection_error: bool = False
    specific_connection_error_message: str | None = None

    # Model pull
    is_pulling: bool = False
    is_pulling_error_hold: bool = False
    pull_has_error: bool = False
    pull_http_error_triggered: bool = False
    pull_http_error_message: str = ""
    pull_status: str = PREPARING_STATUS
    pull_progress: float = 0.0
    pull_total: int = 0
    pull_completed: int = 0
    pull_speed_bytes_per_sec: float = 0.0
    pull_eta_remaining: float = 0.0
    pull_skipped_lines: int = 0
    last_pulled_model_name: str = ""

    # Chat
    chat_messages: tuple[ChatMessage, ...] = ()
    chat_input_text: str = ""
    is_chat_streaming: bool = False

    api_base_url: str | None = None


StateListener = Callable[[ClientState, frozenset[str]], None]


class StateStore:
    """
    Holds the current ClientState and notifies subscribers of changes.

    Subscribers are called with the new snapshot and the names of the fields
    that changed. Updates that change nothing are not published.
    """

    def __init__(self, initial: ClientState | None = None):
        self._state = initial or ClientState()
        self._listeners: list[StateListener] = []
        self._field_names = frozenset(f.name for f in fields(ClientState))

    @property
    def state(self) -> ClientState:
        return self._state

    def snapshot(self) -> ClientState:
        """Return a deep copy that cannot alias the live chat messages."""
        return copy.deepcopy(self._state)

    def update(self, **changes) -> ClientState:
        """
        Apply field changes and publish them.

        Args:
            **changes: ClientState field values

        Returns:
            ClientState: The new state

        Raises:
            AttributeError: If an unknown field is given
        """
        unknown = set(changes) - self._field_names
        if unknown:
            raise AttributeError(f"Unknown state fields: {sorted(unknown)}")

        for key in ("models", "chat_messages"):
            if key in changes:
                changes[key] = tuple(changes[key])

        changed = frozenset(
            name for name, value in changes.items() if getattr(self._state, name) != value
        )
        if not changed:
            return self._state

        self._state = replace(self._state, **changes)
        self._publish(changed)
        return self._state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """
        Register a listener for state changes.

        Returns:
            Callable: Function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, changed: frozenset[str]) -> None:
        snapshot = self._state
        for listener in list(self._listeners):
            try:
                listener(snapshot, changed)
            except Exception as e:
                logger.error(f"State listener failed: {e}", exc_info=True)


def pull_reset_values() -> dict:
    """Pull fields as they must look right before a new pull is sent."""
    return {
        "is_pulling": True,
        "is_pulling_error_hold": False,
        "pull_has_error": False,
        "pull_http_error_triggered": False,
        "pull_http_error_message": "",
        "pull_status": PREPARING_STATUS,
        "pull_progress": 0.0,
        "pull_total": 0,
        "pull_completed": 0,
        "pull_speed_bytes_per_sec": 0.0,
        "pull_eta_remaining": 0.0,
        "pull_skipped_lines": 0,
    }
