from __future__ import annotations


class ExecutionError(Exception):
    """Base class for failures of one execution session.

    Example:
        ```python
        raise ExecutionError("boom")
        ```
    """

    summary = "Execution failed"

    def __init__(self, detail: str | None = None) -> None:
        """Build the message from the class summary and optional detail.

        Example:
            ```python
            err = StartError("container exited")  # "Failed to start container: container exited"
            ```
        """
        self.detail = detail
        message = f"{self.summary}: {detail}" if detail else self.summary
        super().__init__(message)


class PackagingError(ExecutionError):
    summary = "Failed to build source archive"


class EnvironmentCreateError(ExecutionError):
    summary = "Failed to create container"


class InjectionError(ExecutionError):
    summary = "Failed to copy files to container"


class StartError(ExecutionError):
    summary = "Failed to start container"


class RuntimeWaitError(ExecutionError):
    summary = "Container wait error"


class StreamDecodeError(ExecutionError):
    summary = "Failed to decode container output"


class DeadlineExceeded(ExecutionError):
    summary = "Execution timed out"


class ClientDisconnected(ExecutionError):
    summary = "Client disconnected"


class CleanupError(ExecutionError):
    summary = "Failed to remove container"


class RuntimeClientError(RuntimeError):
    """Error reported by the container runtime or its transport.

    Example:
        ```python
        raise RuntimeClientError("No such image: golang:1.21", status_code=404)
        ```
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        """Keep the HTTP status of the runtime answer when there is one.

        Example:
            ```python
            err = RuntimeClientError("conflict", status_code=409)
            ```
        """
        super().__init__(message)
        self.status_code = status_code
