from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List
from datetime import datetime
from app.core.workflow import HandshakeStatus

class HandshakeSignalRequest(BaseModel):
    """Body the bootstrap script PUTs to its signaling address."""
    Status: str = Field(..., examples=["SUCCESS"])
    Reason: Optional[str] = Field(None, examples=["Configuration Complete"])
    UniqueId: Optional[str] = Field(None, examples=["ConfigComplete"])
    Data: Optional[str] = None

class SignalResponse(BaseModel):
    accepted: bool
    status: HandshakeStatus
    rejection: Optional[str] = None

class SignalInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: str
    reason: Optional[str] = None
    unique_id: Optional[str] = None
    received_at: datetime
    accepted: bool
    rejection: Optional[str] = None

class HandshakeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: HandshakeStatus
    deadline: datetime
    reason: Optional[str] = None
    resolved_at: Optional[datetime] = None
    signals: List[SignalInfo] = []
