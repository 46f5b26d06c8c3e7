from enum import Enum
from typing import Optional, Callable
from dataclasses import dataclass

from frilan.errors import StateError


class TournamentStatus(str, Enum):
    HIDDEN = "hidden"
    READY = "ready"
    STARTED = "started"
    FINISHED = "finished"


# Statuses in which teams, members and scheduling fields are frozen.
LOCKED_STATUSES = (TournamentStatus.STARTED, TournamentStatus.FINISHED)


class TransitionError(StateError):
    def __init__(self, from_state: str, to_state: str, reason: str = None):
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason or f"Cannot transition from {from_state} to {to_state}"
        super().__init__(self.reason)


@dataclass
class Transition:
    from_state: TournamentStatus
    to_state: TournamentStatus
    action: str
    guard: Optional[Callable] = None


def team_count_guard(context: dict) -> Optional[str]:
    """Complete teams must lie within [team_count_min, team_count_max]."""
    count = context.get("team_count", 0)
    count_min = context.get("team_count_min", 2)
    count_max = context.get("team_count_max", count)
    if count < count_min:
        return f"The tournament needs at least {count_min} complete teams"
    if count > count_max:
        return f"The tournament cannot have more than {count_max} complete teams"
    return None


class TournamentStateMachine:
    TRANSITIONS = [
        Transition(TournamentStatus.HIDDEN, TournamentStatus.READY, "publish", team_count_guard),
        Transition(TournamentStatus.READY, TournamentStatus.HIDDEN, "unpublish"),
        Transition(TournamentStatus.READY, TournamentStatus.STARTED, "start", team_count_guard),
        Transition(TournamentStatus.STARTED, TournamentStatus.FINISHED, "finish"),
        Transition(TournamentStatus.FINISHED, TournamentStatus.FINISHED, "refinish"),
    ]

    # Statuses a tournament may be created with.
    INITIAL_STATES = (TournamentStatus.HIDDEN, TournamentStatus.READY)

    def __init__(self, initial_state: TournamentStatus = TournamentStatus.HIDDEN):
        self._state = initial_state

    @property
    def state(self) -> TournamentStatus:
        return self._state

    @property
    def is_locked(self) -> bool:
        return self._state in LOCKED_STATUSES

    def can_transition(self, action: str) -> bool:
        return self._find(action) is not None

    def _find(self, action: str) -> Optional[Transition]:
        for t in self.TRANSITIONS:
            if t.from_state == self._state and t.action == action:
                return t
        return None

    def transition(self, action: str, guard_context: dict = None) -> TournamentStatus:
        t = self._find(action)
        if t is None:
            raise TransitionError(
                self._state.value,
                "unknown",
                f"No valid transition for action '{action}' from state '{self._state.value}'"
            )

        if t.guard:
            reason = t.guard(guard_context or {})
            if reason:
                raise TransitionError(self._state.value, t.to_state.value, reason)

        self._state = t.to_state
        return self._state

    def transition_to(self, target: TournamentStatus, guard_context: dict = None) -> TournamentStatus:
        """Move to ``target`` using whichever action leads there from the current state."""
        target = TournamentStatus(target)
        if target == self._state:
            return self._state

        if target == TournamentStatus.FINISHED:
            raise TransitionError(
                self._state.value, target.value,
                "Cannot set status to finished before the tournament ended"
            )

        for t in self.TRANSITIONS:
            if t.from_state == self._state and t.to_state == target:
                return self.transition(t.action, guard_context)

        raise TransitionError(self._state.value, target.value, self._rejection_reason(target))

    def _rejection_reason(self, target: TournamentStatus) -> str:
        if self.is_locked:
            return "Cannot change the status of a tournament that has already started"
        if target == TournamentStatus.STARTED:
            return "Cannot start tournament if it is not ready"
        return f"Cannot transition from {self._state.value} to {target.value}"

    @classmethod
    def from_state_string(cls, state_str: str) -> "TournamentStateMachine":
        try:
            state = TournamentStatus(state_str)
        except ValueError:
            state = TournamentStatus.HIDDEN
        return cls(initial_state=state)

    @classmethod
    def check_initial_state(cls, state: TournamentStatus):
        if TournamentStatus(state) not in cls.INITIAL_STATES:
            raise TransitionError(
                "none", TournamentStatus(state).value,
                "The tournament cannot have already started"
            )
