from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass, asdict
from typing import Dict, Optional
from sqlalchemy.orm import Session
from app.core.artifacts import ArtifactStore
from app.core.bootstrap import render_bootstrap_script
from app.core.clock import Clock
from app.core.config import settings
from app.core.handshake import HandshakeService, signal_address
from app.core.pipeline_def import NodeConfig, PipelineDefinition
from app.core.workflow import NodeStatus
from app.db.models import Node, Pipeline

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class NodeSpec:
    id: str
    name: str
    labels: Dict[str, str]
    user_data: str
    address: Optional[str]
    agent_url: str
    handshake_id: Optional[str] = None


class NodeProvisioner:
    """Brings up one compute node. Cloud provisioning itself lives outside this service."""

    def provision(self, db: Session, spec: NodeSpec) -> Node:
        raise NotImplementedError


class StaticNodeProvisioner(NodeProvisioner):
    """Registers a host that already exists; its bootstrap is run out of band with `spec.user_data`."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or Clock()

    def provision(self, db: Session, spec: NodeSpec) -> Node:
        node = Node(
            id=spec.id,
            name=spec.name,
            address=spec.address,
            agent_url=spec.agent_url,
            labels=dict(spec.labels),
            handshake_id=spec.handshake_id,
            status=NodeStatus.LIVE,
            last_heartbeat=self.clock.now(),
            created_at=self.clock.now(),
        )
        db.add(node)
        db.commit()
        db.refresh(node)
        return node


@dataclass(frozen=True)
class StackOutputs:
    pipeline_id: str
    handshake_id: str
    handshake_url: str
    node_id: str
    node_address: Optional[str]
    ssh_command: Optional[str]
    artifact_store: str
    deployment_group: str
    deployment_group_tags: Dict[str, str]
    user_data: str

    def to_dict(self) -> dict:
        return asdict(self)


def heartbeat_address(node_id: str, base_url: Optional[str] = None) -> str:
    base = (base_url or settings.callback_base_url).rstrip("/")
    return f"{base}/v1/nodes/{node_id}/heartbeat"


def ssh_command(node: NodeConfig, address: Optional[str]) -> Optional[str]:
    if not address:
        return None
    key = f"-i ~/.ssh/{node.key_name} " if node.key_name else ""
    return f"ssh {key}{node.ssh_user}@{address}"


class Controller:
    """Handshake first, then the node, then the pipeline gated on the handshake."""

    def __init__(
        self,
        db: Session,
        provisioner: Optional[NodeProvisioner] = None,
        store: Optional[ArtifactStore] = None,
        clock: Optional[Clock] = None,
    ):
        self.db = db
        self.clock = clock or Clock()
        self.provisioner = provisioner or StaticNodeProvisioner(self.clock)
        self.store = store or ArtifactStore()
        self.handshakes = HandshakeService(db, self.clock)

    def provision(self, definition: PipelineDefinition) -> StackOutputs:
        # HandshakeAllocationError propagates: nothing else can proceed without it.
        handshake = self.handshakes.create(timeout_seconds=definition.handshake_timeout_seconds)
        url = signal_address(handshake.id)
        node_id = str(uuid.uuid4())
        user_data = render_bootstrap_script(
            url,
            user=definition.node.ssh_user,
            agent_install_url=definition.node.agent_install_url,
            heartbeat_url=heartbeat_address(node_id),
            heartbeat_interval=settings.node_heartbeat_interval_seconds,
        )

        node = self.provisioner.provision(self.db, NodeSpec(
            id=node_id,
            name=definition.node.name,
            labels=dict(definition.node.labels),
            user_data=user_data,
            address=definition.node.address,
            agent_url=definition.node.agent_url,
            handshake_id=handshake.id,
        ))
        log.info("Provisioned node %s (%s)", node.name, node.id, extra={"stage": "provision"})

        pipeline = Pipeline(
            name=definition.name,
            definition=definition.model_dump(mode="json"),
            handshake_id=handshake.id,
            created_at=self.clock.now(),
        )
        self.db.add(pipeline)
        self.db.commit()
        self.db.refresh(pipeline)
        log.info("Created pipeline %s gated on handshake %s", pipeline.id, handshake.id, extra={"stage": "provision"})

        self.store.ensure()
        return StackOutputs(
            pipeline_id=pipeline.id,
            handshake_id=handshake.id,
            handshake_url=url,
            node_id=node.id,
            node_address=node.address,
            ssh_command=ssh_command(definition.node, node.address),
            artifact_store=str(self.store.root),
            deployment_group=definition.deploy.deployment_group,
            deployment_group_tags=dict(definition.deploy.selector),
            user_data=user_data,
        )
