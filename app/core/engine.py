from __future__ import annotations
import logging
from typing import Iterable, Optional
from sqlalchemy import update
from sqlalchemy.orm import Session
from app.actions.base import ActionContext, ActionResult
from app.actions.registry import ActionRegistry
from app.core.artifacts import ArtifactStore
from app.core.capabilities import CapabilityFabric
from app.core.clock import Clock
from app.core.errors import EnvironmentNotReady, ExecutionBusy, ExecutionNotFound
from app.core.handshake import HandshakeService
from app.core.pipeline_def import PipelineDefinition
from app.core.readiness import ReadinessGraph, handshake_node, pipeline_graph
from app.core.workflow import (
    ExecutionStatus,
    HandshakeStatus,
    PIPELINE_STAGES,
    StageInput,
    StageStatus,
)
from app.db.models import Artifact, Pipeline, PipelineExecution, StageRun

log = logging.getLogger(__name__)

def derive_status(statuses: Iterable[StageStatus]) -> Optional[ExecutionStatus]:
    """SUCCEEDED iff every stage succeeded, FAILED iff any failed, otherwise undetermined."""
    statuses = list(statuses)
    if any(s is StageStatus.FAILED for s in statuses):
        return ExecutionStatus.FAILED
    if statuses and all(s is StageStatus.SUCCEEDED for s in statuses):
        return ExecutionStatus.SUCCEEDED
    return None

class PipelineEngine:
    def __init__(
        self,
        db: Session,
        registry: Optional[ActionRegistry] = None,
        store: Optional[ArtifactStore] = None,
        fabric: Optional[CapabilityFabric] = None,
        clock: Optional[Clock] = None,
        poll_interval: Optional[float] = None,
    ):
        self.db = db
        self.registry = registry or ActionRegistry.default()
        self.store = store or ArtifactStore()
        self.fabric = fabric or CapabilityFabric()
        self.clock = clock or Clock()
        self.poll_interval = poll_interval
        self.handshakes = HandshakeService(db, self.clock)

    def get(self, execution_id: str) -> PipelineExecution:
        execution = self.db.get(PipelineExecution, execution_id)
        if execution is None:
            raise ExecutionNotFound(execution_id)
        self.db.refresh(execution)
        return execution

    def create_execution(
        self,
        pipeline: Pipeline,
        owner: Optional[str] = None,
        repo: Optional[str] = None,
        branch: Optional[str] = None,
        revision_id: Optional[str] = None,
    ) -> PipelineExecution:
        definition = PipelineDefinition.model_validate(pipeline.definition)
        execution = PipelineExecution(
            pipeline_id=pipeline.id,
            owner=owner or definition.source.owner,
            repo=repo or definition.source.repo,
            branch=branch or definition.source.branch,
            revision_id=revision_id,
            status=ExecutionStatus.WAITING,
            cancel_requested=False,
            locked=False,
            created_at=self.clock.now(),
            updated_at=self.clock.now(),
        )
        execution.stages = [
            StageRun(position=i, name=name, status=StageStatus.NOT_STARTED, detail={}, attempts=0)
            for i, name in enumerate(PIPELINE_STAGES)
        ]
        self.db.add(execution)
        self.db.commit()
        self.db.refresh(execution)
        log.info(
            "Created execution for %s/%s@%s revision %s",
            execution.owner, execution.repo, execution.branch, revision_id or "<head>",
            extra={"execution_id": execution.id, "stage": "-"},
        )
        return execution

    def _claim(self, execution_id: str) -> bool:
        result = self.db.execute(
            update(PipelineExecution)
            .where(PipelineExecution.id == execution_id, PipelineExecution.locked.is_(False))
            .values(locked=True)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def _release(self, execution_id: str) -> None:
        self.db.rollback()
        self.db.execute(
            update(PipelineExecution)
            .where(PipelineExecution.id == execution_id)
            .values(locked=False)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    def _graph(self, execution: PipelineExecution) -> ReadinessGraph:
        return pipeline_graph(execution.pipeline.handshake_id, [s.name.value for s in execution.stages])

    def _statuses(self, execution: PipelineExecution, gate: HandshakeStatus) -> dict:
        statuses = {handshake_node(execution.pipeline.handshake_id): gate}
        statuses.update({s.name.value: s.status for s in execution.stages})
        return statuses

    def _finish(self, execution: PipelineExecution, status: ExecutionStatus, error: Optional[str] = None) -> PipelineExecution:
        execution.status = status
        execution.error_message = error
        execution.updated_at = self.clock.now()
        self.db.commit()
        return execution

    def start(self, execution_id: str, wait: bool = True) -> PipelineExecution:
        """Gate on the handshake, then run every stage not yet SUCCEEDED, in order."""
        execution = self.get(execution_id)
        if execution.status in (ExecutionStatus.SUCCEEDED, ExecutionStatus.BLOCKED):
            log.info("Execution is %s, nothing to do", execution.status.value, extra={"execution_id": execution_id, "stage": "-"})
            return execution
        if not self._claim(execution_id):
            raise ExecutionBusy(execution_id)
        try:
            return self._drive(execution_id, wait)
        finally:
            self._release(execution_id)

    def _drive(self, execution_id: str, wait: bool) -> PipelineExecution:
        execution = self.get(execution_id)
        handshake_id = execution.pipeline.handshake_id
        if wait:
            gate = self.handshakes.wait(handshake_id, self.poll_interval)
        else:
            gate = self.handshakes.expire(handshake_id)
        execution = self.get(execution_id)

        if execution.cancel_requested:
            log.info("Execution aborted before start", extra={"execution_id": execution_id, "stage": "-"})
            return self._finish(execution, ExecutionStatus.ABORTED, "aborted")

        graph = self._graph(execution)
        statuses = self._statuses(execution, gate)
        first = execution.stages[0].name.value
        if graph.is_blocked(first, statuses):
            err = EnvironmentNotReady(handshake_id, gate.value)
            log.error(str(err), extra={"execution_id": execution_id, "stage": "-"})
            return self._finish(execution, ExecutionStatus.BLOCKED, str(err))
        if not graph.is_ready(first, statuses):
            return self._finish(execution, ExecutionStatus.WAITING)

        self._reset_from_first_unfinished(execution)
        self._finish(execution, ExecutionStatus.RUNNING)

        previous: Optional[StageRun] = None
        for stage in execution.stages:
            if stage.status is StageStatus.SUCCEEDED:
                previous = stage
                continue

            self.db.refresh(execution)
            if execution.cancel_requested:
                log.info("Execution aborted before %s", stage.name.value, extra={"execution_id": execution_id, "stage": stage.name.value})
                return self._finish(execution, ExecutionStatus.ABORTED, f"aborted before {stage.name.value}")

            if not graph.is_ready(stage.name.value, self._statuses(execution, gate)):
                return self._finish(execution, ExecutionStatus.FAILED, f"{stage.name.value} dependencies not satisfied")

            input_artifact = None
            if previous is not None and previous.output_artifact_id:
                input_artifact = self.db.get(Artifact, previous.output_artifact_id)
            self.run_stage(execution, stage, input_artifact)

            if stage.status is StageStatus.FAILED:
                return self._finish(execution, ExecutionStatus.FAILED, f"{stage.name.value} stage failed: {stage.error_message}")
            previous = stage

        status = derive_status(s.status for s in execution.stages)
        log.info("Execution finished %s", status.value, extra={"execution_id": execution_id, "stage": "-"})
        return self._finish(execution, status)

    def _reset_from_first_unfinished(self, execution: PipelineExecution) -> None:
        resetting = False
        for stage in execution.stages:
            if stage.status is not StageStatus.SUCCEEDED:
                resetting = True
            if resetting:
                stage.status = StageStatus.NOT_STARTED
                stage.error_message = None
                stage.detail = {}
                stage.input_artifact_id = None
                stage.output_artifact_id = None
                stage.started_at = None
                stage.finished_at = None
        self.db.commit()

    def run_stage(self, execution: PipelineExecution, stage: StageRun, input_artifact: Optional[Artifact]) -> StageRun:
        definition = PipelineDefinition.model_validate(execution.pipeline.definition)
        timeout = definition.timeouts.for_stage(stage.name)

        stage.status = StageStatus.RUNNING
        stage.started_at = self.clock.now()
        stage.attempts += 1
        stage.input_artifact_id = input_artifact.id if input_artifact else None
        self.db.commit()
        log.info("Running stage", extra={"execution_id": execution.id, "stage": stage.name.value})

        ctx = ActionContext(
            execution_id=execution.id,
            owner=execution.owner,
            repo=execution.repo,
            branch=execution.branch,
            revision_id=execution.revision_id,
            definition=definition,
            store=self.store,
            fabric=self.fabric,
            timeout=timeout,
        )
        stage_input = StageInput(
            artifact_id=input_artifact.id if input_artifact else None,
            payload_ref=input_artifact.payload_ref if input_artifact else None,
            metadata=dict(input_artifact.meta or {}) if input_artifact else {},
        )

        started = self.clock.monotonic()
        try:
            result = self.registry.get(stage.name).run(ctx, stage_input)
        except Exception as e:
            log.exception("Stage action raised", extra={"execution_id": execution.id, "stage": stage.name.value})
            result = ActionResult(stage.name, False, f"{stage.name.value} action raised: {e}", None, {})
        elapsed = self.clock.monotonic() - started
        if elapsed > timeout:
            result = ActionResult(stage.name, False, f"stage timed out after {timeout}s", None, {**result.detail, "elapsed": round(elapsed, 3)})

        # RUNNING -> terminal in a single commit.
        if result.ok and result.output is not None:
            artifact = Artifact(
                execution_id=execution.id,
                producing_stage=stage.name,
                name=result.output.name,
                payload_ref=result.output.payload_ref,
                size=result.output.size,
                meta=dict(result.output.metadata),
                created_at=self.clock.now(),
            )
            self.db.add(artifact)
            self.db.flush()
            stage.output_artifact_id = artifact.id
            stage.status = StageStatus.SUCCEEDED
            stage.error_message = None
        else:
            stage.status = StageStatus.FAILED
            stage.error_message = result.message if not result.ok else "stage produced no output artifact"
        stage.detail = dict(result.detail)
        stage.finished_at = self.clock.now()
        execution.updated_at = self.clock.now()
        self.db.commit()

        if stage.status is StageStatus.FAILED:
            log.error("Stage failed: %s", stage.error_message, extra={"execution_id": execution.id, "stage": stage.name.value})
        else:
            log.info("Stage succeeded: %s", result.message, extra={"execution_id": execution.id, "stage": stage.name.value})
        return stage

    def cancel(self, execution_id: str) -> PipelineExecution:
        """Request an abort. Honoured between stages; a running stage always finishes first."""
        execution = self.get(execution_id)
        if execution.status in (ExecutionStatus.SUCCEEDED, ExecutionStatus.ABORTED):
            return execution
        execution.cancel_requested = True
        self.db.commit()
        if not execution.locked and execution.status in (ExecutionStatus.WAITING, ExecutionStatus.BLOCKED, ExecutionStatus.FAILED):
            log.info("Execution aborted", extra={"execution_id": execution_id, "stage": "-"})
            return self._finish(execution, ExecutionStatus.ABORTED, "aborted")
        return execution

    def retry(self, execution_id: str, wait: bool = True) -> PipelineExecution:
        """Restart from the first stage that has not SUCCEEDED."""
        execution = self.get(execution_id)
        # Clears a cancel that landed while the failed stage was still running.
        if execution.status in (ExecutionStatus.FAILED, ExecutionStatus.ABORTED) and execution.cancel_requested:
            execution.cancel_requested = False
            self.db.commit()
        return self.start(execution_id, wait=wait)
