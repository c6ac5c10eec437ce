from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy import String, DateTime, Enum, JSON, Text, Integer, Boolean, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship
from app.db.session import Base
from app.core.clock import utcnow
from app.core.workflow import (
    HandshakeStatus,
    StageName,
    StageStatus,
    ExecutionStatus,
    NodeStatus,
    AckOutcome,
)

def _uuid() -> str:
    return str(uuid.uuid4())

class Handshake(Base):
    __tablename__ = "handshakes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    deadline: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    status: Mapped[HandshakeStatus] = mapped_column(Enum(HandshakeStatus, native_enum=False, length=20), default=HandshakeStatus.PENDING, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    unique_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    data: Mapped[str | None] = mapped_column(Text, nullable=True)

    signals: Mapped[list["HandshakeSignal"]] = relationship(
        back_populates="handshake", order_by="HandshakeSignal.id", cascade="all, delete-orphan"
    )

class HandshakeSignal(Base):
    """Every signal received, including late, duplicate and malformed ones."""
    __tablename__ = "handshake_signals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    handshake_id: Mapped[str] = mapped_column(ForeignKey("handshakes.id"), nullable=False, index=True)
    received_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    status: Mapped[str] = mapped_column(String(50), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    unique_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    data: Mapped[str | None] = mapped_column(Text, nullable=True)

    accepted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    rejection: Mapped[str | None] = mapped_column(String(50), nullable=True)

    handshake: Mapped[Handshake] = relationship(back_populates="signals")

class Node(Base):
    __tablename__ = "nodes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    agent_url: Mapped[str] = mapped_column(Text, nullable=False)
    labels: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    status: Mapped[NodeStatus] = mapped_column(Enum(NodeStatus, native_enum=False, length=20), default=NodeStatus.LIVE, nullable=False)
    last_heartbeat: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    # Bootstrap handshake of a provisioned node; its SUCCESS counts as a heartbeat.
    handshake_id: Mapped[str | None] = mapped_column(ForeignKey("handshakes.id"), nullable=True, index=True)

class Pipeline(Base):
    __tablename__ = "pipelines"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    definition: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    handshake_id: Mapped[str] = mapped_column(ForeignKey("handshakes.id"), nullable=False)

    handshake: Mapped[Handshake] = relationship()

class PipelineExecution(Base):
    __tablename__ = "pipeline_executions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    pipeline_id: Mapped[str] = mapped_column(ForeignKey("pipelines.id"), nullable=False, index=True)
    owner: Mapped[str] = mapped_column(String(255), nullable=False)
    repo: Mapped[str] = mapped_column(String(255), nullable=False)
    branch: Mapped[str] = mapped_column(String(255), nullable=False)
    revision_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    status: Mapped[ExecutionStatus] = mapped_column(Enum(ExecutionStatus, native_enum=False, length=20), default=ExecutionStatus.WAITING, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Single-writer lease, taken with a conditional UPDATE.
    locked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    pipeline: Mapped[Pipeline] = relationship()
    stages: Mapped[list["StageRun"]] = relationship(
        back_populates="execution", order_by="StageRun.position", cascade="all, delete-orphan"
    )

class StageRun(Base):
    __tablename__ = "stage_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    execution_id: Mapped[str] = mapped_column(ForeignKey("pipeline_executions.id"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[StageName] = mapped_column(Enum(StageName, native_enum=False, length=20), nullable=False)

    status: Mapped[StageStatus] = mapped_column(Enum(StageStatus, native_enum=False, length=20), default=StageStatus.NOT_STARTED, nullable=False)
    input_artifact_id: Mapped[str | None] = mapped_column(ForeignKey("artifacts.id"), nullable=True)
    output_artifact_id: Mapped[str | None] = mapped_column(ForeignKey("artifacts.id"), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    detail: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    execution: Mapped[PipelineExecution] = relationship(back_populates="stages")

class Artifact(Base):
    __tablename__ = "artifacts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    execution_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    producing_stage: Mapped[StageName] = mapped_column(Enum(StageName, native_enum=False, length=20), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    payload_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    size: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # "metadata" is reserved on declarative classes.
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)

class DeploymentAck(Base):
    __tablename__ = "deployment_acks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deployment_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    target_id: Mapped[str] = mapped_column(String(36), nullable=False)
    outcome: Mapped[AckOutcome] = mapped_column(Enum(AckOutcome, native_enum=False, length=20), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
