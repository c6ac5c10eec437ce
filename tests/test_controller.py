"""Provisioning order and outputs."""
from datetime import timedelta
from unittest.mock import MagicMock
import pytest
from sqlalchemy.exc import OperationalError
from app.actions.base import ActionResult, BaseAction
from app.actions.impl_deploy import AckStore, DeployAction
from app.actions.registry import ActionRegistry
from app.core.controller import Controller, StaticNodeProvisioner, ssh_command
from app.core.engine import PipelineEngine
from app.core.errors import HandshakeAllocationError
from app.core.handshake import HandshakeService
from app.core.pipeline_def import NodeConfig
from app.core.readiness import handshake_node, pipeline_graph
from app.core.targets import TargetResolver
from app.core.workflow import (
    AckOutcome,
    ExecutionStatus,
    HandshakeStatus,
    NodeStatus,
    PIPELINE_STAGES,
    StageName,
    StageOutput,
    StageStatus,
)
from app.db.models import Node, Pipeline
from tests.helpers import make_definition


def test_provision_creates_gated_pipeline(db, clock, store):
    definition = make_definition(node=NodeConfig(name="web-1", address="10.0.0.10", key_name="deploy-key"))

    outputs = Controller(db, StaticNodeProvisioner(clock), store, clock).provision(definition)

    pipeline = db.get(Pipeline, outputs.pipeline_id)
    assert pipeline.handshake_id == outputs.handshake_id
    assert pipeline.handshake.status is HandshakeStatus.PENDING
    assert pipeline.handshake.deadline == clock.now() + timedelta(seconds=300)

    node = db.get(Node, outputs.node_id)
    assert node.status is NodeStatus.LIVE
    assert node.labels == definition.deploy.selector

    assert outputs.handshake_url.endswith(f"/v1/handshakes/{outputs.handshake_id}")
    assert outputs.ssh_command == "ssh -i ~/.ssh/deploy-key ec2-user@10.0.0.10"
    assert outputs.artifact_store == str(store.root)
    assert outputs.to_dict()["deployment_group_tags"] == definition.deploy.selector


def test_pipeline_gate_is_the_handshake(db, clock, store):
    outputs = Controller(db, StaticNodeProvisioner(clock), store, clock).provision(make_definition())

    graph = pipeline_graph(outputs.handshake_id, [s.value for s in PIPELINE_STAGES])

    assert graph.dependencies("Source") == [handshake_node(outputs.handshake_id)]
    assert graph.order()[0] == handshake_node(outputs.handshake_id)


def test_node_receives_bootstrap_script(db, clock, store):
    provisioner = MagicMock(wraps=StaticNodeProvisioner(clock))

    outputs = Controller(db, provisioner, store, clock).provision(make_definition())

    spec = provisioner.provision.call_args.args[1]
    assert outputs.handshake_url in spec.user_data
    assert spec.user_data == outputs.user_data


def test_allocation_failure_stops_provisioning(clock, store):
    db = MagicMock()
    db.commit.side_effect = OperationalError("INSERT", {}, Exception("disk full"))
    provisioner = MagicMock()

    with pytest.raises(HandshakeAllocationError):
        Controller(db, provisioner, store, clock).provision(make_definition())

    provisioner.provision.assert_not_called()


def test_ssh_command_without_address():
    assert ssh_command(NodeConfig(), None) is None
    assert ssh_command(NodeConfig(ssh_user="ubuntu"), "h") == "ssh ubuntu@h"


def test_node_is_linked_to_its_handshake(db, clock, store):
    provisioner = MagicMock(wraps=StaticNodeProvisioner(clock))

    outputs = Controller(db, provisioner, store, clock).provision(make_definition())

    spec = provisioner.provision.call_args.args[1]
    assert spec.id == outputs.node_id
    assert db.get(Node, outputs.node_id).handshake_id == outputs.handshake_id
    assert f"http://controller.test/v1/nodes/{outputs.node_id}/heartbeat" in outputs.user_data


def test_agent_installer_url_reaches_the_node(db, clock, store):
    definition = make_definition(node=NodeConfig(agent_install_url="https://agents.example.org/install"))

    outputs = Controller(db, StaticNodeProvisioner(clock), store, clock).provision(definition)

    assert "AGENT_INSTALL_URL=https://agents.example.org/install" in outputs.user_data


def test_bootstrap_success_keeps_node_eligible(db, session_factory, clock, store):
    definition = make_definition()
    outputs = Controller(db, StaticNodeProvisioner(clock), store, clock).provision(definition)
    clock.advance(120)

    HandshakeService(db, clock).signal(outputs.handshake_id, "SUCCESS", reason="Configuration Complete")
    clock.advance(5)

    targets = TargetResolver(session_factory, clock=clock, liveness_seconds=120).resolve(definition.deploy.selector)
    assert [t.id for t in targets] == [outputs.node_id]


class SlowStage(BaseAction):
    """Takes `seconds` of clock time and hands on a stored payload."""

    def __init__(self, stage, clock, seconds):
        self.stage = stage
        self.clock = clock
        self.seconds = seconds

    def run(self, ctx, input):
        self.clock.advance(self.seconds)
        digest = ctx.store.put_bytes(f"{self.stage.value} payload".encode())
        return ActionResult(self.stage, True, "ok", StageOutput(name=f"{self.stage.value}Output", payload_ref=digest))


class AckingAgent:
    def __init__(self, acks, clock):
        self.acks = acks
        self.clock = clock

    def push(self, target, instruction):
        self.acks.record(instruction["deploymentId"], target.id, AckOutcome.SUCCEEDED, self.clock.now())


def test_provisioned_node_receives_deploy_after_bootstrap(db, session_factory, clock, store):
    outputs = Controller(db, StaticNodeProvisioner(clock), store, clock).provision(make_definition())
    handshakes = HandshakeService(db, clock)
    clock.at(120, lambda: handshakes.signal(outputs.handshake_id, "SUCCESS", reason="Configuration Complete"))
    acks = AckStore(session_factory)
    deploy = DeployAction(
        resolver=TargetResolver(session_factory, clock=clock, liveness_seconds=120),
        acks=acks,
        agent=AckingAgent(acks, clock),
        clock=clock,
        ack_timeout=60,
        poll_interval=5,
    )
    registry = ActionRegistry(mapping={
        StageName.SOURCE: SlowStage(StageName.SOURCE, clock, 40),
        StageName.BUILD: SlowStage(StageName.BUILD, clock, 40),
        StageName.DEPLOY: deploy,
    })
    engine = PipelineEngine(db=db, registry=registry, store=store, clock=clock, poll_interval=5)

    execution = engine.start(engine.create_execution(db.get(Pipeline, outputs.pipeline_id)).id)

    assert execution.status is ExecutionStatus.SUCCEEDED
    assert clock.elapsed() > 200
    assert [s.status for s in execution.stages] == [StageStatus.SUCCEEDED] * 3
