from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

class HandshakeStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    TIMED_OUT = "TIMED_OUT"

    @property
    def terminal(self) -> bool:
        return self is not HandshakeStatus.PENDING

    @property
    def favorable(self) -> bool:
        return self is HandshakeStatus.SUCCESS

# Values the bootstrap process may post; TIMED_OUT is controller-only.
SIGNAL_STATUSES = frozenset({HandshakeStatus.SUCCESS.value, HandshakeStatus.FAILURE.value})

class StageName(str, Enum):
    SOURCE = "Source"
    BUILD = "Build"
    DEPLOY = "Deploy"

PIPELINE_STAGES = [StageName.SOURCE, StageName.BUILD, StageName.DEPLOY]

class StageStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"

class ExecutionStatus(str, Enum):
    WAITING = "WAITING"
    BLOCKED = "BLOCKED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ABORTED = "ABORTED"

class NodeStatus(str, Enum):
    LIVE = "LIVE"
    TERMINATED = "TERMINATED"

class AckOutcome(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"

@dataclass(frozen=True)
class StageOutput:
    """Payload a stage hands to its successor through the Artifact Store."""
    name: str
    payload_ref: str
    size: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

@dataclass(frozen=True)
class StageInput:
    artifact_id: Optional[str]
    payload_ref: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)
