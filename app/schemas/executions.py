from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
from app.core.workflow import ExecutionStatus, StageName, StageStatus

class TriggerRequest(BaseModel):
    """Source-control webhook or poll event."""
    owner: str = Field(..., examples=["example-org"])
    repo: str = Field(..., examples=["websocket-client"])
    branch: str = Field(..., examples=["main"])
    revisionId: Optional[str] = Field(None, examples=["3f2c1e9d0b8a7c6d5e4f3a2b1c0d9e8f7a6b5c4d"])

class StageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    position: int
    name: StageName
    status: StageStatus
    input_artifact_id: Optional[str] = None
    output_artifact_id: Optional[str] = None
    error_message: Optional[str] = None
    detail: Dict[str, Any] = {}
    attempts: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

class ExecutionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    pipeline_id: str
    owner: str
    repo: str
    branch: str
    revision_id: Optional[str] = None
    status: ExecutionStatus
    error_message: Optional[str] = None
    cancel_requested: bool = False
    stages: List[StageResponse] = []
    created_at: datetime
    updated_at: datetime

class PipelineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    handshake_id: str
    definition: Dict[str, Any] = {}
    created_at: datetime

class StackOutputsResponse(BaseModel):
    pipeline_id: str
    handshake_id: str
    handshake_url: str
    node_id: str
    node_address: Optional[str] = None
    ssh_command: Optional[str] = None
    artifact_store: str
    deployment_group: str
    deployment_group_tags: Dict[str, str]
    user_data: str
