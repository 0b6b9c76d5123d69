from __future__ import annotations

import asyncio
import codecs
import contextlib
import json
import logging
import time
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import AsyncIterator

from fastapi import APIRouter, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError, field_validator
from starlette.types import ASGIApp, Message, Receive, Scope, Send
from starlette.websockets import WebSocketState

from . import __version__
from .errors import ClientDisconnected, DeadlineExceeded, ExecutionError
from .execution import (
    CallbackSink,
    CollectingSink,
    DockerRuntimeClient,
    ExecutionRequest,
    ExecutionStatus,
    OutputChunk,
    RuntimeClient,
    SessionOrchestrator,
    StreamKind,
)
from .settings import RunnerSettings

logger = logging.getLogger(__name__)

# Close codes for abnormal ends: 4000 + the equivalent HTTP status.
WS_CLOSE_BASE = 4000
DISCONNECT_POLL_SECONDS = 0.25

router = APIRouter()


class ExecuteBody(BaseModel):
    text: str

    @field_validator("text")
    @classmethod
    def _encodable(cls, value: str) -> str:
        """Reject text that has no UTF-8 encoding (lone surrogates from `\\ud800` escapes).

        Example:
            ```python
            ExecuteBody(text="\\ud800")  # raises ValidationError
            ```
        """
        try:
            value.encode("utf-8")
        except UnicodeEncodeError as exc:
            raise ValueError(f"text is not valid UTF-8 ({exc.reason})") from exc
        return value


class RequestLogMiddleware:
    """Log method, path, status and duration of every HTTP request.

    Example:
        ```python
        app.add_middleware(RequestLogMiddleware)
        ```
    """

    def __init__(self, app: ASGIApp) -> None:
        """Wrap the downstream ASGI app.

        Example:
            ```python
            middleware = RequestLogMiddleware(app)
            ```
        """
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Record the response status while passing messages through.

        Example:
            ```python
            await middleware(scope, receive, send)
            ```
        """
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        started = time.perf_counter()
        status_code = HTTPStatus.INTERNAL_SERVER_ERROR.value

        async def send_with_status(message: Message) -> None:
            """Capture the status line before forwarding.

            Example:
                ```python
                await send_with_status({"type": "http.response.start", "status": 200})
                ```
            """
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_with_status)
        finally:
            client = scope.get("client")
            remote = f"{client[0]}:{client[1]}" if client else "-"
            level = logging.ERROR if status_code >= 400 else logging.INFO
            logger.log(
                level,
                "%s %s %s %d %.1fms",
                remote,
                scope["method"],
                scope["path"],
                status_code,
                (time.perf_counter() - started) * 1000,
            )


def _orchestrator(connection: Request | WebSocket) -> SessionOrchestrator:
    """Return the orchestrator attached to the application.

    Example:
        ```python
        orchestrator = _orchestrator(request)
        ```
    """
    return connection.app.state.orchestrator


def _error_response(status: HTTPStatus, message: str) -> JSONResponse:
    """Build the JSON error envelope.

    Example:
        ```python
        response = _error_response(HTTPStatus.INTERNAL_SERVER_ERROR, "Failed to create container")
        ```
    """
    return JSONResponse(status_code=status.value, content={"error": message})


async def _bad_request(request: Request, exc: Exception) -> JSONResponse:
    """Turn body validation failures into 400 responses.

    Example:
        ```python
        app.add_exception_handler(RequestValidationError, _bad_request)
        ```
    """
    if isinstance(exc, RequestValidationError):
        problems = [
            f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg', 'invalid')}"
            for error in exc.errors()
        ]
        message = "; ".join(problems) or "invalid request body"
    else:
        message = str(exc)
    return _error_response(HTTPStatus.BAD_REQUEST, f"Bad request: {message}")


async def _watch_http_disconnect(request: Request, disconnected: asyncio.Event) -> None:
    """Set `disconnected` once the HTTP client goes away.

    Example:
        ```python
        watcher = asyncio.create_task(_watch_http_disconnect(request, event))
        ```
    """
    while not await request.is_disconnected():
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)
    logger.info("HTTP client disconnected during execution")
    disconnected.set()


def _is_cancel_message(text: str | None) -> bool:
    """Return whether a client text frame asks to cancel the run.

    Example:
        ```python
        assert _is_cancel_message('{"type": "cancel"}')
        ```
    """
    if not text:
        return False
    if text.strip().lower() == "cancel":
        return True
    try:
        payload = json.loads(text)
    except ValueError:
        return False
    return isinstance(payload, dict) and payload.get("type") == "cancel"


async def _watch_websocket(websocket: WebSocket, cancelled: asyncio.Event) -> None:
    """Set `cancelled` on disconnect or on a client cancel message.

    Example:
        ```python
        watcher = asyncio.create_task(_watch_websocket(websocket, event))
        ```
    """
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            logger.info("WebSocket client disconnected during execution")
            break
        if _is_cancel_message(message.get("text")):
            logger.info("WebSocket client requested cancellation")
            break
    cancelled.set()


async def _stop_watcher(watcher: asyncio.Task) -> None:
    """Cancel a watcher task and wait for it to finish.

    Example:
        ```python
        await _stop_watcher(watcher)
        ```
    """
    watcher.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await watcher


class _WebSocketWriter:
    """Send output chunks as text frames, decoding UTF-8 per stream.

    A multi-byte character split across two frames of the same stream is held
    back until it is complete.
    """

    def __init__(self, websocket: WebSocket) -> None:
        """Create one incremental decoder per output stream.

        Example:
            ```python
            writer = _WebSocketWriter(websocket)
            ```
        """
        self._websocket = websocket
        self._decoders = {stream: codecs.getincrementaldecoder("utf-8")(errors="replace") for stream in StreamKind}

    async def send(self, chunk: OutputChunk) -> None:
        """Send whatever text the chunk completes.

        Example:
            ```python
            await writer.send(chunk)
            ```
        """
        text = self._decoders[chunk.stream].decode(chunk.data)
        if text:
            await self._send_text(text)

    async def flush(self) -> None:
        """Send any bytes still held by the decoders.

        Example:
            ```python
            await writer.flush()
            ```
        """
        for decoder in self._decoders.values():
            tail = decoder.decode(b"", final=True)
            if tail:
                await self._send_text(tail)

    async def _send_text(self, text: str) -> None:
        """Send one text frame, reporting a vanished client as ClientDisconnected.

        Example:
            ```python
            await writer._send_text("1\\n")
            ```
        """
        try:
            await self._websocket.send_text(text)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            raise ClientDisconnected(str(exc) or "websocket closed") from exc


async def _close_websocket(websocket: WebSocket, status: HTTPStatus | None) -> None:
    """Close normally, or with `4000 + status` and the status phrase.

    Example:
        ```python
        await _close_websocket(websocket, HTTPStatus.REQUEST_TIMEOUT)
        ```
    """
    if websocket.client_state is not WebSocketState.CONNECTED:
        return
    if websocket.application_state is not WebSocketState.CONNECTED:
        return
    code = 1000 if status is None else WS_CLOSE_BASE + status.value
    reason = "" if status is None else status.phrase
    try:
        await websocket.close(code=code, reason=reason)
    except (WebSocketDisconnect, RuntimeError, OSError) as exc:
        logger.debug("WebSocket already closed: %s", exc)


@router.get("/v1/healthcheck")
async def healthcheck(request: Request) -> dict[str, str]:
    """Report liveness with the running environment and version.

    Example:
        ```python
        # GET /v1/healthcheck -> {"status": "available", ...}
        ```
    """
    settings: RunnerSettings = request.app.state.settings
    return {"status": "available", "environment": settings.env, "version": __version__}


@router.post("/v1/execute")
async def execute(body: ExecuteBody, request: Request) -> JSONResponse:
    """Run the submitted code and answer with the collected output.

    Example:
        ```python
        # POST /v1/execute {"text": "..."} -> {"status": "success", "output": "1\\n"}
        ```
    """
    orchestrator = _orchestrator(request)
    sink = CollectingSink(max_bytes=orchestrator.settings.max_output_bytes)
    disconnected = asyncio.Event()
    watcher = asyncio.create_task(_watch_http_disconnect(request, disconnected))
    try:
        result = await orchestrator.execute(ExecutionRequest(body.text), sink, cancel_event=disconnected)
    except DeadlineExceeded as exc:
        return JSONResponse(
            status_code=HTTPStatus.REQUEST_TIMEOUT.value,
            content={"status": ExecutionStatus.TIMEOUT.value, "output": sink.output(), "error": str(exc)},
        )
    except ClientDisconnected as exc:
        return _error_response(HTTPStatus.BAD_REQUEST, str(exc))
    except ExecutionError as exc:
        return _error_response(HTTPStatus.INTERNAL_SERVER_ERROR, str(exc))
    finally:
        await _stop_watcher(watcher)
    content: dict[str, object] = {"status": result.status.value, "output": result.output}
    if result.truncated:
        content["truncated"] = True
    return JSONResponse(content)


@router.websocket("/v1/execute")
async def execute_stream(websocket: WebSocket) -> None:
    """Run the submitted code and stream each output chunk as a text frame.

    Example:
        ```python
        # ws /v1/execute: send {"text": "..."}, receive text frames, then close 1000
        ```
    """
    await websocket.accept()
    try:
        body = ExecuteBody.model_validate(await websocket.receive_json())
    except WebSocketDisconnect:
        logger.info("WebSocket client left before sending a request")
        return
    except (ValueError, KeyError, ValidationError) as exc:
        logger.error("Failed to read request: %s", exc)
        await _close_websocket(websocket, HTTPStatus.BAD_REQUEST)
        return

    orchestrator = _orchestrator(websocket)
    writer = _WebSocketWriter(websocket)
    cancelled = asyncio.Event()
    watcher = asyncio.create_task(_watch_websocket(websocket, cancelled))
    status: HTTPStatus | None = None
    try:
        await orchestrator.execute(ExecutionRequest(body.text), CallbackSink(writer.send), cancel_event=cancelled)
        await writer.flush()
    except DeadlineExceeded:
        status = HTTPStatus.REQUEST_TIMEOUT
    except ClientDisconnected:
        logger.info("Streaming session ended by the client")
    except ExecutionError as exc:
        logger.error("Streaming session failed: %s", exc)
        status = HTTPStatus.INTERNAL_SERVER_ERROR
    finally:
        await _stop_watcher(watcher)
    await _close_websocket(websocket, status)


def create_app(settings: RunnerSettings | None = None, runtime: RuntimeClient | None = None) -> FastAPI:
    """Build the API application around one orchestrator.

    A runtime client created here is closed on shutdown; an injected one is
    left to its owner.

    Example:
        ```python
        app = create_app(RunnerSettings(port=4000))
        ```
    """
    settings = settings or RunnerSettings()
    owned: DockerRuntimeClient | None = None
    if runtime is None:
        owned = DockerRuntimeClient(docker_host=settings.resolved_docker_host, api_version=settings.api_version)
        runtime = owned

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Log startup and release the owned runtime client on shutdown.

        Example:
            ```python
            app = FastAPI(lifespan=lifespan)
            ```
        """
        logger.info(
            "Starting %s server (image %s, deadline %gs)",
            settings.env,
            settings.image,
            settings.timeout_seconds,
        )
        yield
        if owned is not None:
            await owned.aclose()
        logger.info("Server stopped")

    app = FastAPI(title="snippet-runner", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.orchestrator = SessionOrchestrator(runtime, settings)
    app.add_exception_handler(RequestValidationError, _bad_request)
    app.add_middleware(RequestLogMiddleware)
    app.include_router(router)
    return app
