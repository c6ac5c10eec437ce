from datetime import timezone
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.db.models import Node, DeploymentAck
from app.core.clock import utcnow
from app.core.targets import matches
from app.core.workflow import NodeStatus
from app.schemas.nodes import NodeRegisterRequest, NodeResponse, AckRequest

router = APIRouter()

def _get_node(db: Session, node_id: str) -> Node:
    node = db.get(Node, node_id)
    if not node:
        raise HTTPException(status_code=404, detail="Node not found")
    return node

def _parse_labels(labels: List[str]) -> dict:
    selector = {}
    for item in labels:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise HTTPException(status_code=422, detail=f"Invalid label filter: {item!r}, expected key=value")
        selector[key] = value
    return selector

@router.post("/nodes", response_model=NodeResponse)
def register_node(req: NodeRegisterRequest, db: Session = Depends(get_db)):
    node = Node(
        name=req.name,
        agent_url=req.agent_url,
        address=req.address,
        labels=req.labels,
        status=NodeStatus.LIVE,
        last_heartbeat=utcnow(),
    )
    db.add(node)
    db.commit()
    db.refresh(node)
    return NodeResponse.model_validate(node)

@router.get("/nodes", response_model=List[NodeResponse])
def list_nodes(label: Optional[List[str]] = Query(None), db: Session = Depends(get_db)):
    selector = _parse_labels(label or [])
    nodes = db.scalars(select(Node).order_by(Node.name)).all()
    return [NodeResponse.model_validate(n) for n in nodes if matches(n.labels or {}, selector)]

@router.post("/nodes/{node_id}/heartbeat", response_model=NodeResponse)
def heartbeat(node_id: str, db: Session = Depends(get_db)):
    node = _get_node(db, node_id)
    if node.status is NodeStatus.TERMINATED:
        raise HTTPException(status_code=409, detail="Node is terminated")
    node.last_heartbeat = utcnow()
    db.commit()
    return NodeResponse.model_validate(node)

@router.delete("/nodes/{node_id}", response_model=NodeResponse)
def terminate_node(node_id: str, db: Session = Depends(get_db)):
    node = _get_node(db, node_id)
    node.status = NodeStatus.TERMINATED
    db.commit()
    return NodeResponse.model_validate(node)

@router.put("/deployments/{deployment_id}/acks")
def acknowledge(deployment_id: str, req: AckRequest, db: Session = Depends(get_db)):
    _get_node(db, req.targetId)
    timestamp = req.timestamp
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(timezone.utc).replace(tzinfo=None)
    db.add(DeploymentAck(
        deployment_id=deployment_id,
        target_id=req.targetId,
        outcome=req.outcome,
        timestamp=timestamp,
        message=req.message,
    ))
    db.commit()
    return {"deployment_id": deployment_id, "target_id": req.targetId, "outcome": req.outcome.value}
