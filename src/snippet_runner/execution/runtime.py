from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Protocol

import httpx

from ..errors import RuntimeClientError
from ..settings import resolve_docker_host
from .types import ContainerSpec

logger = logging.getLogger(__name__)

MANAGED_LABEL = "snippet_runner.managed"
MANAGED_LABEL_VALUE = "true"
MANAGED_LABELS = {
    MANAGED_LABEL: MANAGED_LABEL_VALUE,
    "snippet_runner.project": "snippet-runner",
}


class RuntimeClient(Protocol):
    async def create_container(self, spec: ContainerSpec) -> str:
        """Create (but do not start) a container and return its id.

        Example:
            ```python
            container_id = await runtime.create_container(spec)
            ```
        """
        ...

    async def copy_archive(self, container_id: str, path: str, archive: bytes) -> None:
        """Extract a tar archive into a directory of the container.

        Example:
            ```python
            await runtime.copy_archive(container_id, "/app", archive)
            ```
        """
        ...

    async def start_container(self, container_id: str) -> None:
        """Start the container's entry command.

        Example:
            ```python
            await runtime.start_container(container_id)
            ```
        """
        ...

    def stream_logs(self, container_id: str, *, follow: bool = True) -> AsyncIterator[bytes]:
        """Yield the combined stdout/stderr stream as raw bytes.

        Example:
            ```python
            async for data in runtime.stream_logs(container_id):
                ...
            ```
        """
        ...

    async def wait_container(self, container_id: str) -> int:
        """Block until the container stops and return its exit code.

        Example:
            ```python
            exit_code = await runtime.wait_container(container_id)
            ```
        """
        ...

    async def remove_container(self, container_id: str, *, force: bool = True) -> None:
        """Remove the container, killing it first when `force` is set.

        Example:
            ```python
            await runtime.remove_container(container_id, force=True)
            ```
        """
        ...


@dataclass(frozen=True, slots=True)
class ContainerInfo:
    """Snapshot of a managed container returned by DockerRuntimeClient.

    Example:
        ```python
        info = ContainerInfo("abc", "snippet-runner-1f2e", "golang:1.21", "running", "Up 2s")
        ```
    """

    id: str
    name: str
    image: str
    state: str
    status: str


def _endpoint(docker_host: str) -> tuple[str, httpx.AsyncBaseTransport | None]:
    """Translate a DOCKER_HOST style URL into an httpx base URL and transport.

    Example:
        ```python
        base_url, transport = _endpoint("unix:///var/run/docker.sock")
        ```
    """
    if docker_host.startswith("unix://"):
        return "http://docker", httpx.AsyncHTTPTransport(uds=docker_host[len("unix://"):])
    if docker_host.startswith("tcp://"):
        return "http://" + docker_host[len("tcp://"):], None
    if docker_host.startswith(("http://", "https://")):
        return docker_host, None
    raise ValueError(f"Unsupported docker host '{docker_host}'; use unix://, tcp:// or http(s)://")


def _error_from(response: httpx.Response) -> RuntimeClientError:
    """Build a RuntimeClientError from a non-success Engine API answer.

    Example:
        ```python
        raise _error_from(response)
        ```
    """
    try:
        message = response.json().get("message") or response.text
    except (ValueError, AttributeError):
        message = response.text
    return RuntimeClientError(
        f"{message.strip() or 'no message'} (HTTP {response.status_code})",
        status_code=response.status_code,
    )


class DockerRuntimeClient:
    """Runtime facade speaking the Docker Engine HTTP API.

    One instance owns one connection pool and may serve many concurrent
    sessions; calls share no per-session state.

    Example:
        ```python
        async with DockerRuntimeClient(docker_host="unix:///var/run/docker.sock") as runtime:
            container_id = await runtime.create_container(spec)
        ```
    """

    def __init__(
        self,
        *,
        docker_host: str | None = None,
        api_version: str | None = "1.43",
        request_timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Prepare the HTTP client; no connection is made until the first call.

        Example:
            ```python
            runtime = DockerRuntimeClient(docker_host="tcp://127.0.0.1:2375", api_version="1.43")
            ```
        """
        self.docker_host = resolve_docker_host(docker_host)
        base_url, default_transport = _endpoint(self.docker_host)
        self._prefix = f"/v{api_version}" if api_version else ""
        self._timeout = request_timeout_seconds
        self._client = httpx.AsyncClient(
            base_url=base_url,
            transport=transport or default_transport,
            timeout=httpx.Timeout(request_timeout_seconds),
        )

    async def __aenter__(self) -> "DockerRuntimeClient":
        """Enter an async context that closes the client on exit.

        Example:
            ```python
            async with DockerRuntimeClient() as runtime:
                ...
            ```
        """
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        """Close the underlying connection pool.

        Example:
            ```python
            await runtime.__aexit__(None, None, None)
            ```
        """
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying connection pool.

        Example:
            ```python
            await runtime.aclose()
            ```
        """
        await self._client.aclose()

    async def ping(self) -> tuple[bool, str | None]:
        """Check that the Docker daemon answers on the configured endpoint.

        Example:
            ```python
            ok, reason = await runtime.ping()
            ```
        """
        try:
            response = await self._client.get("/_ping")
        except httpx.HTTPError as exc:
            return False, f"Docker daemon is not reachable at {self.docker_host}: {exc}"
        if response.status_code != 200:
            return False, f"Docker daemon answered HTTP {response.status_code} at {self.docker_host}"
        return True, None

    async def create_container(self, spec: ContainerSpec) -> str:
        """Create a container from `spec` and return the runtime-assigned id.

        Example:
            ```python
            container_id = await runtime.create_container(spec)
            ```
        """
        host_config: dict[str, Any] = {"AutoRemove": spec.auto_remove}
        if spec.network_disabled:
            host_config["NetworkMode"] = "none"
        body = {
            "Image": spec.image,
            "Cmd": list(spec.command),
            "WorkingDir": spec.workdir,
            "Tty": spec.tty,
            "AttachStdout": True,
            "AttachStderr": True,
            "NetworkDisabled": spec.network_disabled,
            "Labels": {**MANAGED_LABELS, **spec.labels},
            "HostConfig": host_config,
        }
        params = {"name": spec.name} if spec.name else None
        response = await self._request("POST", "/containers/create", params=params, json=body, expected=(201,))
        container_id = response.json().get("Id")
        if not container_id:
            raise RuntimeClientError("Docker create response did not include a container id")
        for warning in response.json().get("Warnings") or []:
            logger.warning("Docker create warning for %s: %s", spec.name or container_id[:12], warning)
        return str(container_id)

    async def copy_archive(self, container_id: str, path: str, archive: bytes) -> None:
        """Upload a tar archive and extract it at `path` inside the container.

        Example:
            ```python
            await runtime.copy_archive(container_id, "/app", archive)
            ```
        """
        await self._request(
            "PUT",
            f"/containers/{container_id}/archive",
            params={"path": path},
            content=archive,
            headers={"Content-Type": "application/x-tar"},
            expected=(200,),
        )

    async def start_container(self, container_id: str) -> None:
        """Start a created container.

        Example:
            ```python
            await runtime.start_container(container_id)
            ```
        """
        await self._request("POST", f"/containers/{container_id}/start", expected=(204, 304))

    async def stream_logs(self, container_id: str, *, follow: bool = True) -> AsyncIterator[bytes]:
        """Yield the raw (multiplexed unless tty) log stream as it arrives.

        Example:
            ```python
            async for data in runtime.stream_logs(container_id, follow=True):
                decoder.feed(data)
            ```
        """
        params = {"follow": int(follow), "stdout": 1, "stderr": 1}
        url = f"{self._prefix}/containers/{container_id}/logs"
        try:
            async with self._client.stream(
                "GET",
                url,
                params=params,
                timeout=httpx.Timeout(self._timeout, read=None),
            ) as response:
                if response.status_code != 200:
                    await response.aread()
                    raise _error_from(response)
                async for data in response.aiter_raw():
                    yield data
        except httpx.HTTPError as exc:
            raise RuntimeClientError(f"Docker log stream failed: {exc}") from exc

    async def wait_container(self, container_id: str) -> int:
        """Wait for the container to stop running and return its exit code.

        Example:
            ```python
            exit_code = await runtime.wait_container(container_id)
            ```
        """
        response = await self._request(
            "POST",
            f"/containers/{container_id}/wait",
            params={"condition": "not-running"},
            timeout=httpx.Timeout(self._timeout, read=None),
            expected=(200,),
        )
        payload = response.json()
        error = payload.get("Error") or {}
        if error.get("Message"):
            raise RuntimeClientError(str(error["Message"]))
        return int(payload.get("StatusCode", -1))

    async def remove_container(self, container_id: str, *, force: bool = True) -> None:
        """Remove a container and its anonymous volumes.

        Example:
            ```python
            await runtime.remove_container(container_id, force=True)
            ```
        """
        await self._request(
            "DELETE",
            f"/containers/{container_id}",
            params={"force": int(force), "v": 1},
            expected=(204,),
        )

    async def list_containers(self, all_states: bool = False) -> list[ContainerInfo]:
        """List containers carrying the snippet-runner management label.

        Example:
            ```python
            containers = await runtime.list_containers(all_states=True)
            ```
        """
        filters = json.dumps({"label": [f"{MANAGED_LABEL}={MANAGED_LABEL_VALUE}"]})
        response = await self._request(
            "GET",
            "/containers/json",
            params={"all": int(all_states), "filters": filters},
            expected=(200,),
        )
        items: list[ContainerInfo] = []
        for row in response.json():
            names = row.get("Names") or [""]
            items.append(
                ContainerInfo(
                    id=str(row.get("Id", ""))[:12],
                    name=names[0].lstrip("/"),
                    image=str(row.get("Image", "")),
                    state=str(row.get("State", "")),
                    status=str(row.get("Status", "")),
                )
            )
        return items

    async def _request(
        self,
        method: str,
        path: str,
        *,
        expected: tuple[int, ...],
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one versioned Engine API request and check its status.

        Example:
            ```python
            response = await runtime._request("POST", f"/containers/{cid}/start", expected=(204, 304))
            ```
        """
        try:
            response = await self._client.request(method, f"{self._prefix}{path}", **kwargs)
        except httpx.HTTPError as exc:
            raise RuntimeClientError(f"Docker request {method} {path} failed: {exc}") from exc
        if response.status_code not in expected:
            raise _error_from(response)
        return response
