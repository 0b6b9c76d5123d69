from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class SessionState(StrEnum):
    CREATED = "created"
    INJECTED = "injected"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        """Return whether no further transition may leave this state.

        Example:
            ```python
            assert SessionState.TIMED_OUT.terminal
            ```
        """
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {SessionState.SUCCEEDED, SessionState.FAILED, SessionState.TIMED_OUT, SessionState.CANCELLED}
)
_FORWARD = {
    SessionState.CREATED: SessionState.INJECTED,
    SessionState.INJECTED: SessionState.RUNNING,
    SessionState.RUNNING: SessionState.SUCCEEDED,
}


class StreamKind(StrEnum):
    STDOUT = "stdout"
    STDERR = "stderr"


class ExecutionStatus(StrEnum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    """Source text submitted by a caller for one session.

    Example:
        ```python
        req = ExecutionRequest(source_text='package main\\nfunc main() {}')
        ```
    """

    source_text: str


@dataclass(frozen=True, slots=True)
class ContainerSpec:
    """Container configuration handed to the runtime facade.

    Example:
        ```python
        spec = ContainerSpec(image="golang:1.21", command=("go", "run", "main.go"), workdir="/app")
        ```
    """

    image: str
    command: tuple[str, ...]
    workdir: str
    tty: bool = False
    auto_remove: bool = True
    network_disabled: bool = True
    name: str | None = None
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class OutputChunk:
    """One decoded piece of console output.

    Example:
        ```python
        chunk = OutputChunk(StreamKind.STDOUT, b"1\\n", sequence=1)
        ```
    """

    stream: StreamKind
    data: bytes
    sequence: int


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Terminal artifact returned to the caller.

    Example:
        ```python
        result = ExecutionResult(ExecutionStatus.SUCCESS, "1\\n", exit_code=0)
        ```
    """

    status: ExecutionStatus
    output: str
    exit_code: int | None = None
    truncated: bool = False


@dataclass(slots=True)
class Session:
    """Runtime handle and lifecycle state of one execution session.

    `clock_deadline` is on the event loop clock and bounds every runtime call
    after creation; `deadline` is the same instant in wall-clock time.

    Example:
        ```python
        session = Session("4f2a", "snippet-runner-4f2a", created_at, deadline, clock_deadline)
        ```
    """

    container_id: str
    name: str
    created_at: datetime
    deadline: datetime
    clock_deadline: float
    state: SessionState = SessionState.CREATED
    exit_code: int | None = None
    cleaned_up: bool = False

    def advance(self, state: SessionState) -> None:
        """Move forward along CREATED -> INJECTED -> RUNNING -> SUCCEEDED.

        Example:
            ```python
            session.advance(SessionState.INJECTED)
            ```
        """
        if _FORWARD.get(self.state) is not state:
            raise ValueError(f"Invalid session transition {self.state} -> {state}")
        self.state = state

    def finish(self, state: SessionState) -> bool:
        """Record a terminal state unless one was already reached.

        Returns True when this call decided the outcome.

        Example:
            ```python
            session.finish(SessionState.TIMED_OUT)
            ```
        """
        if state not in _TERMINAL_STATES:
            raise ValueError(f"{state} is not a terminal state")
        if self.state.terminal:
            return False
        if state is SessionState.SUCCEEDED:
            self.advance(state)
        else:
            self.state = state
        return True
