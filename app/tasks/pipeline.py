from __future__ import annotations
import asyncio
import logging
from sqlalchemy import select
from sqlalchemy.orm import Session
from app.tasks.celery_app import celery_app
from app.db.session import SessionLocal
from app.db.models import Pipeline, PipelineExecution
from app.core.engine import PipelineEngine
from app.core.errors import ExecutionBusy, ExecutionNotFound, StageError
from app.core.github import GitHubClient
from app.core.handshake import HandshakeService
from app.core.pipeline_def import PipelineDefinition

log = logging.getLogger(__name__)

def _drive(execution_id: str, retry: bool) -> None:
    db: Session = SessionLocal()
    try:
        engine = PipelineEngine(db=db)
        if retry:
            execution = engine.retry(execution_id)
        else:
            execution = engine.start(execution_id)
        log.info("Execution is %s", execution.status.value, extra={"execution_id": execution_id, "stage": "-"})
    except ExecutionNotFound:
        log.error("Execution not found", extra={"execution_id": execution_id, "stage": "-"})
    except ExecutionBusy:
        log.warning("Execution already being driven by another worker", extra={"execution_id": execution_id, "stage": "-"})
    finally:
        db.close()

@celery_app.task(name="run_execution")
def run_execution(execution_id: str) -> None:
    _drive(execution_id, retry=False)

@celery_app.task(name="retry_execution")
def retry_execution(execution_id: str) -> None:
    _drive(execution_id, retry=True)

def latest_revision(db: Session, pipeline_id: str) -> str | None:
    return db.scalars(
        select(PipelineExecution.revision_id)
        .where(PipelineExecution.pipeline_id == pipeline_id)
        .order_by(PipelineExecution.created_at.desc())
        .limit(1)
    ).first()

def poll_pipeline(db: Session, pipeline: Pipeline, client: GitHubClient) -> PipelineExecution | None:
    """Create an execution when the watched branch has moved."""
    source = PipelineDefinition.model_validate(pipeline.definition).source
    if source.trigger != "poll":
        return None
    try:
        head = asyncio.run(client.get_branch_head(source.owner, source.repo, source.branch))
    except StageError as e:
        log.warning("Polling %s/%s@%s failed: %s", source.owner, source.repo, source.branch, e)
        return None
    if head == latest_revision(db, pipeline.id):
        return None
    return PipelineEngine(db=db).create_execution(pipeline, revision_id=head)

@celery_app.task(name="poll_sources")
def poll_sources() -> None:
    db: Session = SessionLocal()
    try:
        client = GitHubClient()
        for pipeline in db.scalars(select(Pipeline)).all():
            execution = poll_pipeline(db, pipeline, client)
            if execution is not None:
                run_execution.delay(execution.id)
    finally:
        db.close()

@celery_app.task(name="expire_handshakes")
def expire_handshakes() -> None:
    db: Session = SessionLocal()
    try:
        expired = HandshakeService(db).expire_overdue()
        if expired:
            log.warning("Timed out %d handshake(s): %s", len(expired), ", ".join(expired))
    finally:
        db.close()
