from .archive import build_source_archive
from .demux import FrameDecoder, demultiplex
from .orchestrator import SessionOrchestrator
from .runtime import ContainerInfo, DockerRuntimeClient, RuntimeClient
from .sinks import CallbackSink, CollectingSink, OutputSink
from .types import (
    ContainerSpec,
    ExecutionRequest,
    ExecutionResult,
    ExecutionStatus,
    OutputChunk,
    Session,
    SessionState,
    StreamKind,
)

__all__ = [
    "CallbackSink",
    "CollectingSink",
    "ContainerInfo",
    "ContainerSpec",
    "DockerRuntimeClient",
    "ExecutionRequest",
    "ExecutionResult",
    "ExecutionStatus",
    "FrameDecoder",
    "OutputChunk",
    "OutputSink",
    "RuntimeClient",
    "Session",
    "SessionOrchestrator",
    "SessionState",
    "StreamKind",
    "build_source_archive",
    "demultiplex",
]
