from .execution import (
    CallbackSink,
    CollectingSink,
    DockerRuntimeClient,
    ExecutionRequest,
    ExecutionResult,
    SessionOrchestrator,
)
from .settings import RunnerSettings

__version__ = "0.1.0"

__all__ = [
    "CallbackSink",
    "CollectingSink",
    "DockerRuntimeClient",
    "ExecutionRequest",
    "ExecutionResult",
    "RunnerSettings",
    "SessionOrchestrator",
]
