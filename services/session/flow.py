"""
Explicit state machine for one user-facing operation.

    idle -> deriving_identity -> resolving / fetching -> proof_fetch
         -> signing -> sending -> confirming -> success | error

Forward only. Any in-progress state may fall to ``error``; ``error`` returns
to ``idle`` only through ``retry()``. ``success`` is terminal.
"""
from __future__ import annotations

from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional

from services.api.logging_config import get_logger
from services.errors import ConcurrentFlowError, InvalidTransitionError

logger = get_logger("flow")


class FlowState(str, Enum):
    IDLE = "idle"
    DERIVING_IDENTITY = "deriving_identity"
    RESOLVING = "resolving"
    FETCHING = "fetching"
    PROOF_FETCH = "proof_fetch"
    SIGNING = "signing"
    SENDING = "sending"
    CONFIRMING = "confirming"
    SUCCESS = "success"
    ERROR = "error"


S = FlowState

TRANSITIONS: Dict[FlowState, FrozenSet[FlowState]] = {
    S.IDLE: frozenset({S.DERIVING_IDENTITY, S.RESOLVING, S.FETCHING}),
    S.DERIVING_IDENTITY: frozenset({S.RESOLVING, S.FETCHING, S.SIGNING}),
    S.RESOLVING: frozenset({S.FETCHING, S.SIGNING}),
    S.FETCHING: frozenset({S.PROOF_FETCH, S.SIGNING}),
    S.PROOF_FETCH: frozenset({S.SIGNING}),
    S.SIGNING: frozenset({S.SENDING}),
    S.SENDING: frozenset({S.CONFIRMING}),
    S.CONFIRMING: frozenset({S.SUCCESS}),
    S.SUCCESS: frozenset(),
    S.ERROR: frozenset(),
}

TERMINAL = frozenset({S.SUCCESS, S.ERROR})

Listener = Callable[[FlowState, FlowState], None]


class FlowMachine:
    def __init__(self, name: str = "flow") -> None:
        self.name = name
        self.state = FlowState.IDLE
        self.error: Optional[BaseException] = None
        self.history: List[FlowState] = [FlowState.IDLE]
        self._listeners: List[Listener] = []

    @property
    def busy(self) -> bool:
        return self.state not in TERMINAL and self.state != FlowState.IDLE

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def clear_listeners(self) -> None:
        self._listeners.clear()

    def _set(self, new: FlowState) -> None:
        old, self.state = self.state, new
        self.history.append(new)
        logger.debug(f"{self.name}: {old.value} -> {new.value}")
        for fn in list(self._listeners):
            fn(old, new)

    def advance(self, new: FlowState) -> None:
        """The single transition function; rejects anything not in TRANSITIONS."""
        new = FlowState(new)
        if new == FlowState.ERROR:
            raise InvalidTransitionError("Use fail() to enter the error state")
        if new not in TRANSITIONS[self.state]:
            if self.busy and self.state == new:
                raise ConcurrentFlowError(f"{self.name} is already {new.value}")
            raise InvalidTransitionError(
                f"{self.name}: cannot go from {self.state.value} to {new.value}",
                details={"from": self.state.value, "to": new.value},
            )
        self._set(new)

    def fail(self, error: BaseException) -> None:
        if self.state in TERMINAL or self.state == FlowState.IDLE:
            raise InvalidTransitionError(f"{self.name}: cannot fail from {self.state.value}")
        self.error = error
        self._set(FlowState.ERROR)

    def retry(self) -> None:
        if self.state != FlowState.ERROR:
            raise InvalidTransitionError(f"{self.name}: retry only allowed from error, not {self.state.value}")
        self.error = None
        self._set(FlowState.IDLE)
