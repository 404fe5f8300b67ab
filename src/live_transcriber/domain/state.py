from enum import Enum, auto


class SessionState(Enum):
    IDLE = auto()
    CONNECTING = auto()
    STREAMING = auto()
    STOPPING = auto()
    CLOSED = auto()


VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {SessionState.CONNECTING},
    SessionState.CONNECTING: {SessionState.STREAMING, SessionState.STOPPING, SessionState.CLOSED},
    SessionState.STREAMING: {SessionState.STOPPING, SessionState.CLOSED},
    SessionState.STOPPING: {SessionState.CLOSED},
    SessionState.CLOSED: {SessionState.IDLE},
}


class InvalidTransitionError(Exception):
    pass


def validate_transition(current: SessionState, target: SessionState) -> None:
    if target not in VALID_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Cannot transition from {current.name} to {target.name}")
