from __future__ import annotations
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional
import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session
from app.actions.base import BaseAction, ActionResult
from app.core.artifacts import ArtifactStore
from app.core.capabilities import DEPLOY, ARTIFACTS_READ, DEPLOY_INVOKE
from app.core.clock import Clock
from app.core.config import settings
from app.core.errors import StageError, PartialDeployFailure
from app.core.targets import Target, TargetResolver
from app.core.workflow import StageName, StageOutput, AckOutcome
from app.db.models import DeploymentAck

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Ack:
    target_id: str
    outcome: AckOutcome
    timestamp: datetime
    message: Optional[str] = None


class DeploymentAgentClient:
    """Pushes install instructions to the deployment agent on each node."""

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    def push(self, target: Target, instruction: dict) -> None:
        url = f"{target.agent_url.rstrip('/')}/deployments"
        with httpx.Client(timeout=self.timeout) as client:
            r = client.post(url, json=instruction)
            r.raise_for_status()


class AckStore:
    """Per-target acknowledgments, written by the API and polled by the Deploy stage."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def record(self, deployment_id: str, target_id: str, outcome: AckOutcome, timestamp: datetime, message: Optional[str] = None) -> None:
        db = self.session_factory()
        try:
            db.add(DeploymentAck(
                deployment_id=deployment_id,
                target_id=target_id,
                outcome=outcome,
                timestamp=timestamp,
                message=message,
            ))
            db.commit()
        finally:
            db.close()

    def acks(self, deployment_id: str) -> Dict[str, Ack]:
        """First acknowledgment per target wins."""
        db = self.session_factory()
        try:
            rows = db.scalars(
                select(DeploymentAck)
                .where(DeploymentAck.deployment_id == deployment_id)
                .order_by(DeploymentAck.id)
            ).all()
        finally:
            db.close()
        out: Dict[str, Ack] = {}
        for row in rows:
            out.setdefault(row.target_id, Ack(row.target_id, row.outcome, row.timestamp, row.message))
        return out


def ack_url(deployment_id: str) -> str:
    return f"{settings.callback_base_url.rstrip('/')}/v1/deployments/{deployment_id}/acks"


class DeployAction(BaseAction):
    stage = StageName.DEPLOY

    def __init__(
        self,
        resolver: TargetResolver,
        acks: AckStore,
        agent: Optional[DeploymentAgentClient] = None,
        clock: Optional[Clock] = None,
        ack_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ):
        self.resolver = resolver
        self.ack_store = acks
        self.agent = agent or DeploymentAgentClient()
        self.clock = clock or Clock()
        self.ack_timeout = settings.deploy_ack_timeout_seconds if ack_timeout is None else ack_timeout
        self.poll_interval = settings.deploy_ack_poll_interval if poll_interval is None else poll_interval

    def _await_acks(self, deployment_id: str, pending: Dict[str, Target], deadline: float, failed: Dict[str, str]) -> list[str]:
        succeeded: list[str] = []
        while pending:
            acks = self.ack_store.acks(deployment_id)
            for target_id in list(pending):
                ack = acks.get(target_id)
                if ack is None:
                    continue
                target = pending.pop(target_id)
                if ack.outcome is AckOutcome.SUCCEEDED:
                    succeeded.append(target.name)
                else:
                    failed[target.name] = f"agent reported failure: {ack.message or 'no detail'}"
            if not pending:
                break
            remaining = deadline - self.clock.monotonic()
            if remaining <= 0:
                for target in pending.values():
                    failed[target.name] = f"no acknowledgment within {self.ack_timeout:g}s"
                break
            self.clock.sleep(min(self.poll_interval, remaining))
        return succeeded

    def run(self, ctx, input):
        deploy = ctx.definition.deploy
        deployment_id = str(uuid.uuid4())
        try:
            ctx.fabric.require(DEPLOY, ARTIFACTS_READ)
            ctx.fabric.require(DEPLOY, DEPLOY_INVOKE, deploy.deployment_group)
            if not input.payload_ref or not ctx.store.exists(input.payload_ref):
                return ActionResult(self.stage, False, "build artifact not found in artifact store", None, {})

            # Membership is read once, at stage entry.
            targets = self.resolver.resolve(deploy.selector)
            artifact_location = ArtifactStore.location(input.payload_ref)
            deadline = self.clock.monotonic() + min(self.ack_timeout, ctx.timeout)

            failed: Dict[str, str] = {}
            pending: Dict[str, Target] = {}
            for target in targets:
                instruction = {
                    "deploymentId": deployment_id,
                    "targetId": target.id,
                    "artifactLocation": artifact_location,
                    "targetSelector": dict(deploy.selector),
                    "application": deploy.application,
                    "deploymentGroup": deploy.deployment_group,
                    "ackUrl": ack_url(deployment_id),
                }
                try:
                    self.agent.push(target, instruction)
                    pending[target.id] = target
                except httpx.HTTPError as e:
                    log.warning("Push to %s failed: %s", target.name, e, extra={"execution_id": ctx.execution_id, "stage": "Deploy"})
                    failed[target.name] = f"push rejected: {e}"

            succeeded = self._await_acks(deployment_id, pending, deadline, failed)
            if failed:
                raise PartialDeployFailure(failed, succeeded)

            record = {
                "deploymentId": deployment_id,
                "artifactLocation": artifact_location,
                "targetSelector": dict(deploy.selector),
                "targets": [{"id": t.id, "name": t.name, "address": t.address} for t in targets],
            }
            digest = ctx.store.put_bytes(json.dumps(record, indent=2, sort_keys=True).encode("utf-8"))
            log.info("Deployment %s acknowledged by %d target(s)", deployment_id, len(targets), extra={"execution_id": ctx.execution_id, "stage": "Deploy"})
            return ActionResult(self.stage, True, f"Deployed to {len(targets)} target(s)", StageOutput(
                name="DeployOutput",
                payload_ref=digest,
                size=0,
                metadata={"deployment_id": deployment_id, "targets": [t.name for t in targets]},
            ), {"deployment_id": deployment_id})
        except StageError as e:
            return ActionResult(self.stage, False, str(e), None, {**e.detail, "deployment_id": deployment_id})
        except Exception as e:
            return ActionResult(self.stage, False, f"Deploy failed: {e}", None, {"deployment_id": deployment_id})
