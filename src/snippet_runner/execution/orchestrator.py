from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from ..errors import (
    CleanupError,
    ClientDisconnected,
    DeadlineExceeded,
    EnvironmentCreateError,
    ExecutionError,
    InjectionError,
    RuntimeClientError,
    RuntimeWaitError,
    StartError,
)
from ..settings import RunnerSettings
from .archive import build_source_archive
from .demux import demultiplex
from .runtime import RuntimeClient
from .sinks import OutputSink
from .types import (
    ContainerSpec,
    ExecutionRequest,
    ExecutionResult,
    ExecutionStatus,
    Session,
    SessionState,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
SessionListener = Callable[[Session], None]

# Output still arriving after exit gets at least this long, even at the deadline.
DRAIN_GRACE_SECONDS = 0.5
# Not found / removal in progress: auto-removal got there first.
_ALREADY_REMOVED = {404, 409}


def terminal_state_for(exc: BaseException) -> SessionState:
    """Map the error that ended a session to its terminal state.

    Example:
        ```python
        state = terminal_state_for(DeadlineExceeded())  # SessionState.TIMED_OUT
        ```
    """
    if isinstance(exc, DeadlineExceeded):
        return SessionState.TIMED_OUT
    if isinstance(exc, (ClientDisconnected, asyncio.CancelledError)):
        return SessionState.CANCELLED
    return SessionState.FAILED


async def _abandon(*tasks: asyncio.Task | None) -> None:
    """Cancel unfinished tasks and wait for all of them, discarding results.

    Example:
        ```python
        await _abandon(output_task, exit_task, None)
        ```
    """
    live = [task for task in tasks if task is not None]
    for task in live:
        if not task.done():
            task.cancel()
    results = await asyncio.gather(*live, return_exceptions=True)
    for task, result in zip(live, results):
        if isinstance(result, Exception):
            logger.debug("Discarding late result of %s: %r", task.get_name(), result)


class SessionOrchestrator:
    """Drive one container per request from creation to guaranteed removal.

    The runtime client is injected so several orchestrators (or tests) can
    share or replace it. One `execute` call owns its session exclusively.

    Example:
        ```python
        orchestrator = SessionOrchestrator(DockerRuntimeClient(), RunnerSettings())
        result = await orchestrator.execute(ExecutionRequest("package main"), CollectingSink())
        ```
    """

    def __init__(self, runtime: RuntimeClient, settings: RunnerSettings | None = None) -> None:
        """Bind the runtime facade and settings.

        Example:
            ```python
            orchestrator = SessionOrchestrator(runtime, RunnerSettings(timeout_seconds=5))
            ```
        """
        self._runtime = runtime
        self._settings = settings or RunnerSettings()
        self._listeners: list[SessionListener] = []

    @property
    def settings(self) -> RunnerSettings:
        """Return the settings this orchestrator was built with.

        Example:
            ```python
            timeout = orchestrator.settings.timeout_seconds
            ```
        """
        return self._settings

    def add_listener(self, listener: SessionListener) -> None:
        """Register a callback invoked once per finished session, after cleanup.

        Example:
            ```python
            orchestrator.add_listener(lambda session: print(session.state))
            ```
        """
        self._listeners.append(listener)

    def remove_listener(self, listener: SessionListener) -> None:
        """Unregister a session listener.

        Example:
            ```python
            orchestrator.remove_listener(listener)
            ```
        """
        if listener in self._listeners:
            self._listeners.remove(listener)

    def container_spec(self) -> ContainerSpec:
        """Build the container configuration for a new session.

        Example:
            ```python
            spec = orchestrator.container_spec()
            ```
        """
        return ContainerSpec(
            image=self._settings.image,
            command=self._settings.command,
            workdir=self._settings.workdir,
            tty=self._settings.tty,
            auto_remove=True,
            network_disabled=self._settings.network_disabled,
            name=f"snippet-runner-{uuid.uuid4().hex[:12]}",
        )

    async def execute(
        self,
        request: ExecutionRequest,
        sink: OutputSink,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionResult:
        """Run one request end to end and return its result.

        Raises one of the ExecutionError subclasses when the lifecycle is
        aborted; the container is removed either way.

        Example:
            ```python
            sink = CollectingSink()
            result = await orchestrator.execute(ExecutionRequest('fmt.Println(1)'), sink)
            ```
        """
        archive = build_source_archive(
            request.source_text,
            filename=self._settings.filename,
            mode=self._settings.file_mode,
        )
        async with self.session() as session:
            await self.inject_payload(session, archive)
            await self.start(session)
            return await self.run_and_collect(session, sink, cancel_event=cancel_event)

    @contextlib.asynccontextmanager
    async def session(self) -> AsyncIterator[Session]:
        """Create a session and remove its container on every exit path.

        Example:
            ```python
            async with orchestrator.session() as session:
                await orchestrator.inject_payload(session, archive)
            ```
        """
        session = await self.create_session()
        try:
            yield session
        except BaseException as exc:
            session.finish(terminal_state_for(exc))
            raise
        else:
            if session.finish(SessionState.CANCELLED):
                logger.warning("[%s] Session scope closed before the program finished", session.name)
        finally:
            try:
                await asyncio.shield(self.cleanup(session))
            finally:
                self._notify(session)

    async def create_session(self) -> Session:
        """Allocate the isolated container and fix the session deadline.

        Example:
            ```python
            session = await orchestrator.create_session()
            ```
        """
        spec = self.container_spec()
        timeout = self._settings.timeout_seconds
        loop = asyncio.get_running_loop()
        created_at = datetime.now(timezone.utc)
        clock_deadline = loop.time() + timeout
        try:
            async with asyncio.timeout_at(clock_deadline):
                container_id = await self._runtime.create_container(spec)
        except TimeoutError as exc:
            logger.error("[%s] Container creation did not finish within %gs", spec.name, timeout)
            await self._discard_unclaimed(spec)
            raise EnvironmentCreateError(f"timed out after {timeout:g}s") from exc
        except asyncio.CancelledError:
            logger.warning("[%s] Container creation cancelled", spec.name)
            await self._discard_unclaimed(spec)
            raise
        except RuntimeClientError as exc:
            logger.error("[%s] Failed to create container: %s", spec.name, exc)
            raise EnvironmentCreateError(str(exc)) from exc
        session = Session(
            container_id=container_id,
            name=spec.name or container_id[:12],
            created_at=created_at,
            deadline=created_at + timedelta(seconds=timeout),
            clock_deadline=clock_deadline,
        )
        logger.info("[%s] Created container %s from %s", session.name, container_id[:12], spec.image)
        return session

    async def inject_payload(self, session: Session, archive: bytes) -> None:
        """Copy the source archive into the container's working directory.

        Example:
            ```python
            await orchestrator.inject_payload(session, build_source_archive("package main"))
            ```
        """
        self._require(session, SessionState.CREATED)
        await self._bounded(
            session,
            InjectionError,
            self._runtime.copy_archive(session.container_id, self._settings.workdir, archive),
        )
        session.advance(SessionState.INJECTED)
        logger.debug("[%s] Copied %d byte archive to %s", session.name, len(archive), self._settings.workdir)

    async def start(self, session: Session) -> None:
        """Start the entry command inside the container.

        Example:
            ```python
            await orchestrator.start(session)
            ```
        """
        self._require(session, SessionState.INJECTED)
        await self._bounded(session, StartError, self._runtime.start_container(session.container_id))
        session.advance(SessionState.RUNNING)
        logger.info("[%s] Container started", session.name)

    async def run_and_collect(
        self,
        session: Session,
        sink: OutputSink,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionResult:
        """Stream output into `sink` while racing exit, deadline and cancellation.

        The output pump, the exit waiter and the cancel watcher run as
        separate tasks; all of them are cancelled and awaited before this
        returns, so nothing outlives the session.

        Example:
            ```python
            result = await orchestrator.run_and_collect(session, sink, cancel_event=disconnected)
            ```
        """
        self._require(session, SessionState.RUNNING)
        output_task = asyncio.create_task(self._pump_output(session, sink), name=f"{session.name}:output")
        exit_task = asyncio.create_task(self._wait_for_exit(session), name=f"{session.name}:wait")
        cancel_task = None
        signals: set[asyncio.Task] = {output_task, exit_task}
        if cancel_event is not None:
            cancel_task = asyncio.create_task(cancel_event.wait(), name=f"{session.name}:cancel")
            signals.add(cancel_task)

        loop = asyncio.get_running_loop()
        try:
            while not exit_task.done():
                remaining = max(session.clock_deadline - loop.time(), 0)
                done, _ = await asyncio.wait(signals, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
                if exit_task in done:
                    break
                if not done:
                    raise self._timed_out(session)
                if cancel_task is not None and cancel_task in done:
                    raise self._cancelled(session, "cancelled by client")
                if output_task in done:
                    signals.discard(output_task)
                    output_task.result()
            exit_code = exit_task.result()
            await self._drain(session, output_task)
        except BaseException as exc:
            session.finish(terminal_state_for(exc))
            raise
        finally:
            await _abandon(output_task, exit_task, cancel_task)

        session.exit_code = exit_code
        if exit_code == 0:
            session.finish(SessionState.SUCCEEDED)
            status = ExecutionStatus.SUCCESS
        else:
            session.finish(SessionState.FAILED)
            status = ExecutionStatus.ERROR
        elapsed = (datetime.now(timezone.utc) - session.created_at).total_seconds()
        logger.info("[%s] Program exited with code %d after %.2fs", session.name, exit_code, elapsed)
        return ExecutionResult(status=status, output=sink.output(), exit_code=exit_code, truncated=sink.truncated)

    async def cleanup(self, session: Session) -> None:
        """Force-remove the container; failures are logged, never raised.

        Calling it again for the same session does nothing.

        Example:
            ```python
            await orchestrator.cleanup(session)
            ```
        """
        if session.cleaned_up:
            logger.debug("[%s] Container already cleaned up", session.name)
            return
        session.cleaned_up = True
        try:
            await self._remove(session.container_id, session.name)
        except CleanupError as exc:
            logger.error("[%s] %s", session.name, exc)
        else:
            logger.info("[%s] Removed container (%s)", session.name, session.state)

    async def _remove(self, container_ref: str, label: str) -> None:
        """Issue the forced removal, translating runtime failures to CleanupError.

        `container_ref` is an id or a name; `label` prefixes the log lines.

        Example:
            ```python
            await orchestrator._remove(session.container_id, session.name)
            ```
        """
        try:
            async with asyncio.timeout(self._settings.cleanup_timeout_seconds):
                await self._runtime.remove_container(container_ref, force=True)
        except TimeoutError as exc:
            raise CleanupError(f"timed out after {self._settings.cleanup_timeout_seconds:g}s") from exc
        except RuntimeClientError as exc:
            if exc.status_code in _ALREADY_REMOVED:
                logger.debug("[%s] Container already removed: %s", label, exc)
                return
            raise CleanupError(str(exc)) from exc

    async def _discard_unclaimed(self, spec: ContainerSpec) -> None:
        """Remove, by name, a container whose create call was abandoned.

        The daemon may still finish the create after the caller stopped
        waiting. A missing container counts as removed.

        Example:
            ```python
            await orchestrator._discard_unclaimed(spec)
            ```
        """
        if spec.name is None:
            return
        try:
            await asyncio.shield(self._remove(spec.name, spec.name))
        except CleanupError as exc:
            logger.error("[%s] %s", spec.name, exc)
        else:
            logger.info("[%s] Removed abandoned container", spec.name)

    async def _bounded(self, session: Session, error_type: type[ExecutionError], call: Awaitable[T]) -> T:
        """Await a runtime call under the session deadline.

        Example:
            ```python
            await orchestrator._bounded(session, StartError, runtime.start_container(cid))
            ```
        """
        try:
            async with asyncio.timeout_at(session.clock_deadline):
                return await call
        except TimeoutError as exc:
            raise self._timed_out(session) from exc
        except RuntimeClientError as exc:
            logger.error("[%s] %s: %s", session.name, error_type.summary, exc)
            raise error_type(str(exc)) from exc

    async def _pump_output(self, session: Session, sink: OutputSink) -> None:
        """Forward demultiplexed chunks to the sink until the stream ends.

        Example:
            ```python
            await orchestrator._pump_output(session, sink)
            ```
        """
        try:
            async with contextlib.aclosing(self._runtime.stream_logs(session.container_id, follow=True)) as raw:
                async with contextlib.aclosing(demultiplex(raw, tty=self._settings.tty)) as chunks:
                    async for chunk in chunks:
                        await sink.send(chunk)
        except RuntimeClientError as exc:
            logger.error("[%s] Failed to read container output: %s", session.name, exc)
            raise RuntimeWaitError(f"log stream failed: {exc}") from exc

    async def _wait_for_exit(self, session: Session) -> int:
        """Wait for the entry command to exit and return its exit code.

        Example:
            ```python
            exit_code = await orchestrator._wait_for_exit(session)
            ```
        """
        try:
            return await self._runtime.wait_container(session.container_id)
        except RuntimeClientError as exc:
            logger.error("[%s] Container wait error: %s", session.name, exc)
            raise RuntimeWaitError(str(exc)) from exc

    async def _drain(self, session: Session, output_task: asyncio.Task) -> None:
        """Let the output pump reach end of stream after the program exited.

        Example:
            ```python
            await orchestrator._drain(session, output_task)
            ```
        """
        if not output_task.done():
            loop = asyncio.get_running_loop()
            grace = max(session.clock_deadline - loop.time(), DRAIN_GRACE_SECONDS)
            done, _ = await asyncio.wait({output_task}, timeout=grace)
            if not done:
                logger.warning("[%s] Output still open %.1fs after exit; dropping the rest", session.name, grace)
                return
        output_task.result()

    def _timed_out(self, session: Session) -> DeadlineExceeded:
        """Mark the session timed out and build the error to raise.

        Example:
            ```python
            raise orchestrator._timed_out(session)
            ```
        """
        session.finish(SessionState.TIMED_OUT)
        timeout = self._settings.timeout_seconds
        logger.warning("[%s] Deadline of %gs elapsed", session.name, timeout)
        return DeadlineExceeded(f"deadline of {timeout:g}s elapsed")

    def _cancelled(self, session: Session, reason: str) -> ClientDisconnected:
        """Mark the session cancelled and build the error to raise.

        Example:
            ```python
            raise orchestrator._cancelled(session, "client went away")
            ```
        """
        session.finish(SessionState.CANCELLED)
        logger.info("[%s] Session cancelled: %s", session.name, reason)
        return ClientDisconnected(reason)

    def _require(self, session: Session, state: SessionState) -> None:
        """Reject lifecycle calls made out of order.

        Example:
            ```python
            orchestrator._require(session, SessionState.CREATED)
            ```
        """
        if session.state is not state:
            raise ValueError(f"[{session.name}] expected state {state}, found {session.state}")

    def _notify(self, session: Session) -> None:
        """Call every listener with the finished session.

        Example:
            ```python
            orchestrator._notify(session)
            ```
        """
        for listener in list(self._listeners):
            try:
                listener(session)
            except Exception:
                logger.exception("[%s] Session listener failed", session.name)
