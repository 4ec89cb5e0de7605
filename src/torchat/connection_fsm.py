"""
TorChat-Paste - Session state machine.

Lifecycle of one peer session:

    DISCONNECTED --start--> HANDSHAKE --complete--> CONNECTED --close--> CLOSING
                               |
                               +--failed--> DISCONNECTED

CLOSING is terminal. No partially authenticated state exists: the only way
into CONNECTED is a fully validated handshake.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

from .constants import HANDSHAKE_TIMEOUT

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Session states."""

    DISCONNECTED = auto()  # Initial, or after a failed handshake
    HANDSHAKE = auto()  # Key exchange in progress
    CONNECTED = auto()  # Authenticated and encrypted
    CLOSING = auto()  # Keys released; terminal


class ConnectionEvent(Enum):
    """Events that trigger state transitions."""

    HANDSHAKE_STARTED = auto()
    HANDSHAKE_COMPLETE = auto()
    HANDSHAKE_FAILED = auto()
    CLOSE_REQUESTED = auto()
    TRANSPORT_FAILED = auto()


@dataclass
class StateTransition:
    """Represents a state transition."""

    from_state: ConnectionState
    event: ConnectionEvent
    to_state: ConnectionState
    timestamp: float = field(default_factory=time.time)


class ConnectionStateMachine:
    """
    Finite state machine for one session.

    Enforces valid state transitions and tracks state history.
    """

    TRANSITIONS: Dict[ConnectionState, Dict[ConnectionEvent, ConnectionState]] = {
        ConnectionState.DISCONNECTED: {
            ConnectionEvent.HANDSHAKE_STARTED: ConnectionState.HANDSHAKE,
            ConnectionEvent.CLOSE_REQUESTED: ConnectionState.CLOSING,
        },
        ConnectionState.HANDSHAKE: {
            ConnectionEvent.HANDSHAKE_COMPLETE: ConnectionState.CONNECTED,
            ConnectionEvent.HANDSHAKE_FAILED: ConnectionState.DISCONNECTED,
            ConnectionEvent.TRANSPORT_FAILED: ConnectionState.DISCONNECTED,
            ConnectionEvent.CLOSE_REQUESTED: ConnectionState.CLOSING,
        },
        ConnectionState.CONNECTED: {
            ConnectionEvent.CLOSE_REQUESTED: ConnectionState.CLOSING,
            ConnectionEvent.TRANSPORT_FAILED: ConnectionState.CLOSING,
        },
        ConnectionState.CLOSING: {},
    }

    # State timeouts (seconds)
    STATE_TIMEOUTS: Dict[ConnectionState, Optional[float]] = {
        ConnectionState.DISCONNECTED: None,
        ConnectionState.HANDSHAKE: HANDSHAKE_TIMEOUT,
        ConnectionState.CONNECTED: None,
        ConnectionState.CLOSING: None,
    }

    def __init__(self, initial_state: ConnectionState = ConnectionState.DISCONNECTED):
        self.current_state = initial_state
        self.previous_state: Optional[ConnectionState] = None
        self.state_entry_time = time.time()
        self.error_message: Optional[str] = None
        self.transition_history: List[StateTransition] = []
        self.max_history = 100

        # Callbacks
        self.on_state_change: Optional[Callable[[ConnectionState, ConnectionState], None]] = None
        self.on_connected: Optional[Callable[[], None]] = None
        self.on_closed: Optional[Callable[[], None]] = None

        logger.debug(f"State machine initialized in state: {self.current_state.name}")

    def transition(self, event: ConnectionEvent, error_msg: Optional[str] = None) -> bool:
        """
        Attempt state transition based on event.

        Args:
            event: Event triggering transition
            error_msg: Reason, recorded for failure events

        Returns:
            True if transition successful, False otherwise
        """
        if not self.is_valid_transition(self.current_state, event):
            logger.warning(
                f"Invalid transition: {self.current_state.name} + "
                f"{event.name} (no valid target state)"
            )
            return False

        new_state = self.TRANSITIONS[self.current_state][event]

        if event in (ConnectionEvent.HANDSHAKE_FAILED, ConnectionEvent.TRANSPORT_FAILED):
            self.error_message = error_msg or "Unknown error"
        elif new_state == ConnectionState.CONNECTED:
            self.error_message = None

        old_state = self.current_state
        self.previous_state = old_state
        self.current_state = new_state
        self.state_entry_time = time.time()

        self.transition_history.append(StateTransition(old_state, event, new_state))
        if len(self.transition_history) > self.max_history:
            self.transition_history = self.transition_history[-self.max_history :]

        logger.debug(
            f"State transition: {old_state.name} -> {new_state.name} (event: {event.name})"
        )

        if self.on_state_change:
            try:
                self.on_state_change(old_state, new_state)
            except Exception as e:
                logger.error(f"State change callback error: {e}")

        if new_state == ConnectionState.CONNECTED and self.on_connected:
            try:
                self.on_connected()
            except Exception as e:
                logger.error(f"Connected callback error: {e}")

        if new_state == ConnectionState.CLOSING and self.on_closed:
            try:
                self.on_closed()
            except Exception as e:
                logger.error(f"Closed callback error: {e}")

        return True

    def is_valid_transition(self, from_state: ConnectionState, event: ConnectionEvent) -> bool:
        """Check if a transition is valid."""
        return event in self.TRANSITIONS.get(from_state, {})

    def get_state(self) -> ConnectionState:
        """Get current state."""
        return self.current_state

    def get_time_in_state(self) -> float:
        """Get time spent in current state (seconds)."""
        return time.time() - self.state_entry_time

    def is_timeout_exceeded(self) -> bool:
        """Check if current state has exceeded its timeout."""
        timeout = self.STATE_TIMEOUTS.get(self.current_state)
        if timeout is None:
            return False
        return self.get_time_in_state() > timeout

    def is_connected(self) -> bool:
        return self.current_state == ConnectionState.CONNECTED

    def is_closed(self) -> bool:
        return self.current_state == ConnectionState.CLOSING

    def get_history(self, count: int = 10) -> List[StateTransition]:
        """Get recent transition history."""
        return self.transition_history[-count:]

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get state machine statistics.

        Returns:
            Dictionary with statistics
        """
        event_counts: Dict[str, int] = {}
        for transition in self.transition_history:
            event_name = transition.event.name
            event_counts[event_name] = event_counts.get(event_name, 0) + 1

        return {
            "current_state": self.current_state.name,
            "previous_state": self.previous_state.name if self.previous_state else None,
            "time_in_state": self.get_time_in_state(),
            "error_message": self.error_message,
            "total_transitions": len(self.transition_history),
            "event_counts": event_counts,
            "is_connected": self.is_connected(),
        }

    def __repr__(self) -> str:
        return (
            f"ConnectionStateMachine(state={self.current_state.name}, "
            f"time_in_state={self.get_time_in_state():.1f}s)"
        )
