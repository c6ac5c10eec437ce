from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict
from datetime import datetime
from app.core.workflow import AckOutcome, NodeStatus

class NodeRegisterRequest(BaseModel):
    name: str = Field(..., examples=["websocket-client-1"])
    agent_url: str = Field(..., examples=["http://10.0.0.10:8081"])
    address: Optional[str] = Field(None, examples=["10.0.0.10"])
    labels: Dict[str, str] = Field(default_factory=dict, examples=[{"Environment": "Development", "Name": "WebSocket-Client"}])

class NodeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    address: Optional[str] = None
    agent_url: str
    labels: Dict[str, str] = {}
    status: NodeStatus
    last_heartbeat: datetime

class AckRequest(BaseModel):
    """Per-node reply from the deployment agent."""
    targetId: str
    outcome: AckOutcome
    timestamp: datetime
    message: Optional[str] = None
