"""Detailed agent status state machine.

Status reaches the hub from two sources:
- explicit: the agent called report_status
- inferred: the hub noticed terminal output (activity) or silence

Inferred status never overrides a sticky state the agent reported itself.
`done` is terminal for explicit reports, but renewed output revives it to
`working`: a human may keep talking to a finished agent.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

from hivegrid.core.models import DetailedStatus
from hivegrid.logging_config import get_logger

logger = get_logger(__name__)

StatusSource = Literal["explicit", "inferred"]

S = DetailedStatus

TRANSITIONS: dict[DetailedStatus, frozenset[DetailedStatus]] = {
    S.PENDING: frozenset({S.IDLE, S.WORKING, S.ERROR, S.CANCELLED}),
    S.IDLE: frozenset({S.WORKING, S.DONE, S.ERROR, S.CANCELLED}),
    S.WORKING: frozenset(
        {S.IDLE, S.WAITING_INPUT, S.WAITING_PERMISSION, S.STUCK, S.DONE, S.ERROR, S.CANCELLED}
    ),
    S.WAITING_INPUT: frozenset({S.WORKING, S.IDLE, S.ERROR, S.CANCELLED}),
    S.WAITING_PERMISSION: frozenset({S.WORKING, S.IDLE, S.ERROR, S.CANCELLED}),
    S.STUCK: frozenset({S.WORKING, S.IDLE, S.ERROR, S.CANCELLED}),
    S.DONE: frozenset(),
    S.ERROR: frozenset(),
    S.CANCELLED: frozenset(),
}

TERMINAL_STATES: frozenset[DetailedStatus] = frozenset({S.DONE, S.ERROR, S.CANCELLED})

# Explicitly reported states that activity inference must not overwrite
STICKY_STATES: frozenset[DetailedStatus] = frozenset(
    {S.ERROR, S.CANCELLED, S.WAITING_INPUT, S.WAITING_PERMISSION, S.STUCK}
)


def can_transition(current: DetailedStatus, target: DetailedStatus) -> bool:
    """True if `current -> target` is in the transition table (staying put is not a transition)."""
    return target in TRANSITIONS[current]


def can_infer(current: DetailedStatus, target: DetailedStatus) -> bool:
    """Whether an activity-inferred status may replace `current`."""
    if current in STICKY_STATES:
        return False
    if current is S.DONE:
        return target is S.WORKING
    return can_transition(current, target)


@dataclass(frozen=True)
class StatusChange:
    agent_id: str
    state: DetailedStatus
    previous: DetailedStatus
    source: StatusSource
    message: Optional[str] = None

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "agentId": self.agent_id,
            "state": self.state.value,
            "previousStatus": self.previous.value,
            "source": self.source,
        }
        if self.message:
            payload["message"] = self.message
        return payload


class StatusTracker:
    """Current detailed status per agent, guarded by the transition table."""

    def __init__(self) -> None:
        self._states: dict[str, DetailedStatus] = {}
        self._messages: dict[str, Optional[str]] = {}

    def register(self, agent_id: str, state: DetailedStatus = S.PENDING) -> None:
        self._states[agent_id] = state
        self._messages.pop(agent_id, None)

    def forget(self, agent_id: str) -> None:
        self._states.pop(agent_id, None)
        self._messages.pop(agent_id, None)

    def get(self, agent_id: str) -> Optional[DetailedStatus]:
        return self._states.get(agent_id)

    def get_message(self, agent_id: str) -> Optional[str]:
        return self._messages.get(agent_id)

    def report(self, agent_id: str, state: DetailedStatus, message: Optional[str] = None) -> Optional[StatusChange]:
        """Apply an explicit report from the agent.

        Reporting the current state again only refreshes the message. Returns
        None (and leaves the status untouched) when the transition is invalid.
        """
        current = self._states.get(agent_id, S.PENDING)
        if state is current:
            self._messages[agent_id] = message
            return None
        if not can_transition(current, state):
            logger.warning("Rejected status %s -> %s for %s", current.value, state.value, agent_id)
            return None
        return self._apply(agent_id, current, state, "explicit", message)

    def infer(self, agent_id: str, state: DetailedStatus) -> Optional[StatusChange]:
        """Apply a status inferred from process activity; sticky states win."""
        current = self._states.get(agent_id)
        if current is None or state is current:
            return None
        if not can_infer(current, state):
            logger.debug("Ignoring inferred %s for %s (currently %s)", state.value, agent_id, current.value)
            return None
        return self._apply(agent_id, current, state, "inferred", None)

    def _apply(
        self,
        agent_id: str,
        current: DetailedStatus,
        state: DetailedStatus,
        source: StatusSource,
        message: Optional[str],
    ) -> StatusChange:
        self._states[agent_id] = state
        self._messages[agent_id] = message
        logger.info("Agent %s status %s -> %s (%s)", agent_id, current.value, state.value, source)
        return StatusChange(agent_id=agent_id, state=state, previous=current, source=source, message=message)
