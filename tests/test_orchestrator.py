from __future__ import annotations

import asyncio
import logging

import pytest
from conftest import CONTAINER_ID, FakeRuntime, frame

from snippet_runner import RunnerSettings
from snippet_runner.errors import (
    ClientDisconnected,
    DeadlineExceeded,
    EnvironmentCreateError,
    InjectionError,
    RuntimeClientError,
    RuntimeWaitError,
    StartError,
    StreamDecodeError,
)
from snippet_runner.execution import (
    CallbackSink,
    CollectingSink,
    ExecutionRequest,
    ExecutionStatus,
    OutputChunk,
    Session,
    SessionOrchestrator,
    SessionState,
)
from snippet_runner.execution.orchestrator import terminal_state_for


def _orchestrator(runtime: FakeRuntime, settings: RunnerSettings) -> tuple[SessionOrchestrator, list[Session]]:
    finished: list[Session] = []
    orchestrator = SessionOrchestrator(runtime, settings)
    orchestrator.add_listener(finished.append)
    return orchestrator, finished


def test_execute_success_returns_collected_output(fast_settings: RunnerSettings) -> None:
    runtime = FakeRuntime(frames=[frame(1, b"1\n")])
    orchestrator, finished = _orchestrator(runtime, fast_settings)

    result = asyncio.run(orchestrator.execute(ExecutionRequest("print(1)"), CollectingSink()))

    assert result.status is ExecutionStatus.SUCCESS
    assert result.output == "1\n"
    assert result.exit_code == 0
    assert [session.state for session in finished] == [SessionState.SUCCEEDED]
    assert runtime.removed == [(CONTAINER_ID, True)]
    assert runtime.calls[:3] == ["create", "copy", "start"]


def test_execute_copies_archive_to_workdir(fast_settings: RunnerSettings) -> None:
    runtime = FakeRuntime()
    orchestrator, _ = _orchestrator(runtime, fast_settings)

    asyncio.run(orchestrator.execute(ExecutionRequest("package main"), CollectingSink()))

    [(path, archive)] = runtime.archives
    assert path == "/app"
    assert b"package main" in archive
    spec = runtime.specs[0]
    assert spec.image == "golang:1.21"
    assert spec.command == ("go", "run", "main.go")
    assert spec.auto_remove is True
    assert spec.name is not None and spec.name.startswith("snippet-runner-")


def test_nonzero_exit_is_error_not_timeout(fast_settings: RunnerSettings) -> None:
    runtime = FakeRuntime(frames=[frame(1, b"out\n"), frame(2, b"panic\n")], exit_code=2)
    orchestrator, finished = _orchestrator(runtime, fast_settings)

    result = asyncio.run(orchestrator.execute(ExecutionRequest("x"), CollectingSink()))

    assert result.status is ExecutionStatus.ERROR
    assert result.exit_code == 2
    assert result.output == "out\npanic\n"
    assert finished[0].state is SessionState.FAILED
    assert len(runtime.removed) == 1


def test_create_failure_skips_cleanup(fast_settings: RunnerSettings) -> None:
    runtime = FakeRuntime(create_error=RuntimeClientError("No such image: golang:1.21", status_code=404))
    orchestrator, finished = _orchestrator(runtime, fast_settings)

    with pytest.raises(EnvironmentCreateError, match="Failed to create container"):
        asyncio.run(orchestrator.execute(ExecutionRequest("x"), CollectingSink()))

    assert runtime.calls == ["create"]
    assert runtime.removed == []
    assert finished == []


def test_create_timeout_removes_container_by_name() -> None:
    runtime = FakeRuntime(create_delay=5)
    orchestrator, finished = _orchestrator(runtime, RunnerSettings(timeout_seconds=0.1))

    with pytest.raises(EnvironmentCreateError, match="timed out after 0.1s"):
        asyncio.run(orchestrator.execute(ExecutionRequest("x"), CollectingSink()))

    [spec] = runtime.specs
    assert runtime.removed == [(spec.name, True)]
    assert "copy" not in runtime.calls
    assert finished == []


def test_cancelled_create_removes_container_by_name(fast_settings: RunnerSettings) -> None:
    runtime = FakeRuntime(create_delay=5)
    orchestrator, finished = _orchestrator(runtime, fast_settings)

    async def run() -> None:
        task = asyncio.create_task(orchestrator.execute(ExecutionRequest("x"), CollectingSink()))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(run())

    [spec] = runtime.specs
    assert runtime.removed == [(spec.name, True)]
    assert finished == []


def test_abandoned_create_tolerates_missing_container() -> None:
    runtime = FakeRuntime(create_delay=5, remove_error=RuntimeClientError("No such container", status_code=404))
    orchestrator, _ = _orchestrator(runtime, RunnerSettings(timeout_seconds=0.1))

    with pytest.raises(EnvironmentCreateError):
        asyncio.run(orchestrator.execute(ExecutionRequest("x"), CollectingSink()))

    assert len(runtime.removed) == 1


@pytest.mark.parametrize(
    ("failure", "error_type"),
    [
        ({"copy_error": RuntimeClientError("no space left")}, InjectionError),
        ({"start_error": RuntimeClientError("exec format error")}, StartError),
        ({"wait_error": RuntimeClientError("wait failed")}, RuntimeWaitError),
    ],
)
def test_lifecycle_failures_still_remove_container(
    fast_settings: RunnerSettings, failure: dict, error_type: type[Exception]
) -> None:
    runtime = FakeRuntime(**failure)
    orchestrator, finished = _orchestrator(runtime, fast_settings)

    with pytest.raises(error_type):
        asyncio.run(orchestrator.execute(ExecutionRequest("x"), CollectingSink()))

    assert finished[0].state is SessionState.FAILED
    assert runtime.removed == [(CONTAINER_ID, True)]


def test_deadline_times_out_and_force_removes() -> None:
    runtime = FakeRuntime(frames=[frame(1, b"partial\n")], hang=True)
    orchestrator, finished = _orchestrator(runtime, RunnerSettings(timeout_seconds=0.2))
    sink = CollectingSink()

    with pytest.raises(DeadlineExceeded, match="Execution timed out"):
        asyncio.run(orchestrator.execute(ExecutionRequest("for {}"), sink))

    assert sink.output() == "partial\n"
    assert [session.state for session in finished] == [SessionState.TIMED_OUT]
    assert runtime.removed == [(CONTAINER_ID, True)]


def test_deadline_applies_to_injection() -> None:
    runtime = FakeRuntime(copy_delay=5)
    orchestrator, finished = _orchestrator(runtime, RunnerSettings(timeout_seconds=0.1))

    with pytest.raises(DeadlineExceeded):
        asyncio.run(orchestrator.execute(ExecutionRequest("x"), CollectingSink()))

    assert finished[0].state is SessionState.TIMED_OUT
    assert "start" not in runtime.calls
    assert len(runtime.removed) == 1


class _TickingRuntime(FakeRuntime):
    """Emits a stdout frame every 50ms until the log stream is closed."""

    def __init__(self) -> None:
        super().__init__(hang=True)
        self.ticks = 0

    async def stream_logs(self, container_id: str, *, follow: bool = True):
        self.calls.append("logs")
        while True:
            self.ticks += 1
            yield frame(1, b"tick\n")
            await asyncio.sleep(0.05)


def test_no_chunks_are_delivered_after_the_deadline() -> None:
    runtime = _TickingRuntime()
    orchestrator, finished = _orchestrator(runtime, RunnerSettings(timeout_seconds=0.3))
    delivered: list[OutputChunk] = []

    async def collect(chunk: OutputChunk) -> None:
        delivered.append(chunk)

    async def run() -> tuple[int, int, int, int]:
        with pytest.raises(DeadlineExceeded):
            await orchestrator.execute(ExecutionRequest("for {}"), CallbackSink(collect))
        at_deadline, ticks = len(delivered), runtime.ticks
        await asyncio.sleep(0.3)
        return at_deadline, len(delivered), ticks, runtime.ticks

    at_deadline, later, ticks, later_ticks = asyncio.run(run())

    assert at_deadline > 0
    assert later == at_deadline
    assert later_ticks == ticks
    assert finished[0].state is SessionState.TIMED_OUT
    assert runtime.removed == [(CONTAINER_ID, True)]


def test_cancel_event_cancels_session(fast_settings: RunnerSettings) -> None:
    runtime = FakeRuntime(hang=True)
    orchestrator, finished = _orchestrator(runtime, fast_settings)

    async def scenario() -> None:
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)
        await orchestrator.execute(ExecutionRequest("x"), CollectingSink(), cancel_event=cancel)

    with pytest.raises(ClientDisconnected):
        asyncio.run(scenario())

    assert finished[0].state is SessionState.CANCELLED
    assert runtime.removed == [(CONTAINER_ID, True)]


def test_sink_disconnect_cancels_session(fast_settings: RunnerSettings) -> None:
    runtime = FakeRuntime(frames=[frame(1, b"hello\n")], hang=True)
    orchestrator, finished = _orchestrator(runtime, fast_settings)

    async def gone(chunk) -> None:
        raise ClientDisconnected("socket closed")

    with pytest.raises(ClientDisconnected):
        asyncio.run(orchestrator.execute(ExecutionRequest("x"), CallbackSink(gone)))

    assert finished[0].state is SessionState.CANCELLED
    assert len(runtime.removed) == 1


def test_decode_error_keeps_earlier_chunks(fast_settings: RunnerSettings) -> None:
    bad = b"\x07\x00\x00\x00\x00\x00\x00\x01x"
    runtime = FakeRuntime(frames=[frame(1, b"ok\n"), bad], hang=True)
    orchestrator, finished = _orchestrator(runtime, fast_settings)
    sink = CollectingSink()

    with pytest.raises(StreamDecodeError):
        asyncio.run(orchestrator.execute(ExecutionRequest("x"), sink))

    assert sink.output() == "ok\n"
    assert finished[0].state is SessionState.FAILED
    assert len(runtime.removed) == 1


def test_log_stream_failure_is_wait_error(fast_settings: RunnerSettings) -> None:
    runtime = FakeRuntime(log_error=RuntimeClientError("connection reset"), hang=True)
    orchestrator, finished = _orchestrator(runtime, fast_settings)

    with pytest.raises(RuntimeWaitError, match="log stream failed"):
        asyncio.run(orchestrator.execute(ExecutionRequest("x"), CollectingSink()))

    assert finished[0].state is SessionState.FAILED


def test_streaming_sequences_increase_per_stream(fast_settings: RunnerSettings) -> None:
    runtime = FakeRuntime(frames=[frame(1, b"a"), frame(2, b"b"), frame(1, b"c"), frame(2, b"d")])
    orchestrator, _ = _orchestrator(runtime, fast_settings)
    received = []

    async def collect(chunk) -> None:
        received.append(chunk)

    result = asyncio.run(orchestrator.execute(ExecutionRequest("x"), CallbackSink(collect)))

    assert result.output == ""
    assert [(chunk.stream.value, chunk.data, chunk.sequence) for chunk in received] == [
        ("stdout", b"a", 1),
        ("stderr", b"b", 1),
        ("stdout", b"c", 2),
        ("stderr", b"d", 2),
    ]


def test_output_cap_marks_result_truncated(fast_settings: RunnerSettings) -> None:
    runtime = FakeRuntime(frames=[frame(1, b"123456")])
    orchestrator, _ = _orchestrator(runtime, fast_settings)

    result = asyncio.run(orchestrator.execute(ExecutionRequest("x"), CollectingSink(max_bytes=4)))

    assert result.output == "1234"
    assert result.truncated is True


def test_cleanup_is_idempotent(fast_settings: RunnerSettings) -> None:
    runtime = FakeRuntime()
    orchestrator = SessionOrchestrator(runtime, fast_settings)

    async def scenario() -> Session:
        session = await orchestrator.create_session()
        await orchestrator.cleanup(session)
        await orchestrator.cleanup(session)
        return session

    session = asyncio.run(scenario())

    assert session.cleaned_up is True
    assert runtime.removed == [(CONTAINER_ID, True)]


def test_cleanup_failure_is_logged_not_raised(fast_settings: RunnerSettings, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="snippet_runner")
    runtime = FakeRuntime(frames=[frame(1, b"1\n")], remove_error=RuntimeClientError("daemon busy", status_code=500))
    orchestrator, _ = _orchestrator(runtime, fast_settings)

    result = asyncio.run(orchestrator.execute(ExecutionRequest("x"), CollectingSink()))

    assert result.status is ExecutionStatus.SUCCESS
    errors = [record for record in caplog.records if record.levelno == logging.ERROR]
    assert any("Failed to remove container" in record.getMessage() for record in errors)


def test_already_removed_container_counts_as_cleaned(
    fast_settings: RunnerSettings, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO, logger="snippet_runner")
    runtime = FakeRuntime(remove_error=RuntimeClientError("No such container", status_code=404))
    orchestrator, _ = _orchestrator(runtime, fast_settings)

    asyncio.run(orchestrator.execute(ExecutionRequest("x"), CollectingSink()))

    assert not [record for record in caplog.records if record.levelno >= logging.ERROR]


def test_lifecycle_calls_out_of_order_are_rejected(fast_settings: RunnerSettings) -> None:
    orchestrator = SessionOrchestrator(FakeRuntime(), fast_settings)

    async def scenario() -> None:
        session = await orchestrator.create_session()
        try:
            await orchestrator.start(session)
        finally:
            await orchestrator.cleanup(session)

    with pytest.raises(ValueError, match="expected state"):
        asyncio.run(scenario())


def test_failing_listener_does_not_break_execution(
    fast_settings: RunnerSettings, caplog: pytest.LogCaptureFixture
) -> None:
    runtime = FakeRuntime()
    orchestrator = SessionOrchestrator(runtime, fast_settings)
    calls: list[SessionState] = []

    def broken(session: Session) -> None:
        raise RuntimeError("listener bug")

    orchestrator.add_listener(broken)
    orchestrator.add_listener(lambda session: calls.append(session.state))

    result = asyncio.run(orchestrator.execute(ExecutionRequest("x"), CollectingSink()))

    assert result.status is ExecutionStatus.SUCCESS
    assert calls == [SessionState.SUCCEEDED]
    assert "Session listener failed" in caplog.text


def test_removed_listener_is_not_called(fast_settings: RunnerSettings) -> None:
    orchestrator = SessionOrchestrator(FakeRuntime(), fast_settings)
    calls: list[Session] = []
    orchestrator.add_listener(calls.append)
    orchestrator.remove_listener(calls.append)

    asyncio.run(orchestrator.execute(ExecutionRequest("x"), CollectingSink()))

    assert calls == []


def test_terminal_state_mapping() -> None:
    assert terminal_state_for(DeadlineExceeded()) is SessionState.TIMED_OUT
    assert terminal_state_for(ClientDisconnected()) is SessionState.CANCELLED
    assert terminal_state_for(asyncio.CancelledError()) is SessionState.CANCELLED
    assert terminal_state_for(StartError("boom")) is SessionState.FAILED
