from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.core.errors import HandshakeNotFound
from app.core.handshake import HandshakeService
from app.schemas.handshakes import HandshakeSignalRequest, SignalResponse, HandshakeResponse

router = APIRouter(prefix="/handshakes")

@router.put("/{handshake_id}", response_model=SignalResponse)
def signal_handshake(handshake_id: str, req: HandshakeSignalRequest, db: Session = Depends(get_db)):
    # Late, duplicate and malformed signals are answered 200 with accepted=false.
    try:
        outcome = HandshakeService(db).signal(
            handshake_id,
            status=req.Status,
            reason=req.Reason,
            unique_id=req.UniqueId,
            data=req.Data,
        )
    except HandshakeNotFound:
        raise HTTPException(status_code=404, detail="Handshake not found")
    return SignalResponse(accepted=outcome.accepted, status=outcome.status, rejection=outcome.rejection)

@router.get("/{handshake_id}", response_model=HandshakeResponse)
def get_handshake(handshake_id: str, db: Session = Depends(get_db)):
    try:
        hs = HandshakeService(db).get(handshake_id)
    except HandshakeNotFound:
        raise HTTPException(status_code=404, detail="Handshake not found")
    return HandshakeResponse.model_validate(hs)
