"""
Session lifecycle state machine.

Tracks where a strategy session is in its life: idle, starting, running, or
finished (stopped or errored). Transitions are validated against a fixed
table; anything else is logged and refused.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50


class SessionPhase(Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    ERRORED = "errored"


VALID_TRANSITIONS: Dict[SessionPhase, Set[SessionPhase]] = {
    SessionPhase.IDLE: {
        SessionPhase.STARTING,
    },
    SessionPhase.STARTING: {
        SessionPhase.RUNNING,
        SessionPhase.STOPPED,
        SessionPhase.ERRORED,
    },
    SessionPhase.RUNNING: {
        SessionPhase.STOPPED,
        SessionPhase.ERRORED,
    },
    SessionPhase.STOPPED: {
        SessionPhase.STARTING,
        SessionPhase.IDLE,
    },
    SessionPhase.ERRORED: {
        SessionPhase.STARTING,
        SessionPhase.IDLE,
    },
}

ACTIVE_PHASES = frozenset({SessionPhase.STARTING, SessionPhase.RUNNING})


@dataclass
class PhaseTransition:
    from_phase: SessionPhase
    to_phase: SessionPhase
    context: str
    timestamp: float
    duration_ms: Optional[float] = None
    metadata: Optional[Dict[str, Any]] = None


class SessionStateMachine:
    """
    Validated phase tracking for one session controller.

    ``transition_to`` returns False instead of raising when a transition is
    not allowed, so callers can treat a refused transition as a no-op.
    """

    def __init__(self):
        self._current_phase = SessionPhase.IDLE
        self._previous_phase: Optional[SessionPhase] = None
        self._phase_entered_at = time.time()
        self._total_transitions = 0
        self._error_count = 0
        self._last_error: Optional[str] = None
        self._transition_history: List[PhaseTransition] = []
        self._on_enter_callbacks: Dict[SessionPhase, List[Callable[[PhaseTransition], None]]] = {}

    @property
    def current_phase(self) -> SessionPhase:
        return self._current_phase

    @property
    def previous_phase(self) -> Optional[SessionPhase]:
        return self._previous_phase

    @property
    def is_active(self) -> bool:
        """True while starting or running."""
        return self._current_phase in ACTIVE_PHASES

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def time_in_current_phase(self) -> float:
        return time.time() - self._phase_entered_at

    @property
    def history(self) -> List[PhaseTransition]:
        return list(self._transition_history)

    def can_transition_to(self, new_phase: SessionPhase) -> bool:
        return new_phase in VALID_TRANSITIONS.get(self._current_phase, set())

    def transition_to(self, new_phase: SessionPhase, context: str, metadata: Optional[Dict[str, Any]] = None) -> bool:
        """
        Move to ``new_phase``.

        Args:
            new_phase: Target phase
            context: Human-readable reason for the transition
            metadata: Optional extra data kept in the history

        Returns:
            True if the machine is now in ``new_phase``
        """
        if new_phase == self._current_phase:
            logger.debug(f"Ignoring transition to same phase: {new_phase.value}")
            return True

        if not self.can_transition_to(new_phase):
            logger.warning(f"Invalid phase transition: {self._current_phase.value} -> {new_phase.value} ({context})")
            return False

        now = time.time()
        transition = PhaseTransition(
            from_phase=self._current_phase,
            to_phase=new_phase,
            context=context,
            timestamp=now,
            duration_ms=(now - self._phase_entered_at) * 1000,
            metadata=metadata,
        )

        self._previous_phase = self._current_phase
        self._current_phase = new_phase
        self._phase_entered_at = now
        self._total_transitions += 1

        self._transition_history.append(transition)
        if len(self._transition_history) > HISTORY_LIMIT:
            self._transition_history = self._transition_history[-HISTORY_LIMIT:]

        if new_phase == SessionPhase.ERRORED:
            self._error_count += 1
            self._last_error = context

        logger.info(f"Phase transition: {transition.from_phase.value} -> {new_phase.value} | Context: {context}")

        for callback in self._on_enter_callbacks.get(new_phase, []):
            try:
                callback(transition)
            except Exception as e:
                logger.error(f"Phase callback failed for {new_phase.value}: {e}")

        return True

    def on_enter(self, phase: SessionPhase, callback: Callable[[PhaseTransition], None]) -> None:
        self._on_enter_callbacks.setdefault(phase, []).append(callback)

    def get_status(self) -> Dict[str, Any]:
        last = self._transition_history[-1] if self._transition_history else None
        return {
            "phase": self._current_phase.value,
            "previous_phase": self._previous_phase.value if self._previous_phase else None,
            "time_in_phase": self.time_in_current_phase,
            "total_transitions": self._total_transitions,
            "error_count": self._error_count,
            "last_error": self._last_error,
            "last_transition": last.context if last else None,
        }
