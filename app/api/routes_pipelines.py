from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.db.models import Pipeline
from app.core.controller import Controller
from app.core.engine import PipelineEngine
from app.core.errors import ExecutionNotFound
from app.core.pipeline_def import PipelineDefinition
from app.core.workflow import ExecutionStatus
from app.schemas.executions import (
    TriggerRequest,
    ExecutionResponse,
    PipelineResponse,
    StackOutputsResponse,
)
from app.tasks.pipeline import run_execution, retry_execution

router = APIRouter()

def _engine(db: Session) -> PipelineEngine:
    return PipelineEngine(db=db)

@router.post("/pipelines", response_model=StackOutputsResponse)
def provision_pipeline(definition: PipelineDefinition, db: Session = Depends(get_db)):
    outputs = Controller(db).provision(definition)
    return StackOutputsResponse(**outputs.to_dict())

@router.get("/pipelines/{pipeline_id}", response_model=PipelineResponse)
def get_pipeline(pipeline_id: str, db: Session = Depends(get_db)):
    pipeline = db.get(Pipeline, pipeline_id)
    if not pipeline:
        raise HTTPException(status_code=404, detail="Pipeline not found")
    return PipelineResponse.model_validate(pipeline)

@router.post("/pipelines/{pipeline_id}/executions", response_model=ExecutionResponse)
def trigger_execution(pipeline_id: str, req: TriggerRequest, db: Session = Depends(get_db)):
    pipeline = db.get(Pipeline, pipeline_id)
    if not pipeline:
        raise HTTPException(status_code=404, detail="Pipeline not found")
    source = PipelineDefinition.model_validate(pipeline.definition).source
    if (req.owner, req.repo, req.branch) != (source.owner, source.repo, source.branch):
        raise HTTPException(status_code=400, detail="Event does not match the pipeline source")

    execution = _engine(db).create_execution(
        pipeline, owner=req.owner, repo=req.repo, branch=req.branch, revision_id=req.revisionId
    )
    run_execution.delay(execution.id)
    return ExecutionResponse.model_validate(execution)

@router.get("/executions/{execution_id}", response_model=ExecutionResponse)
def get_execution(execution_id: str, db: Session = Depends(get_db)):
    try:
        execution = _engine(db).get(execution_id)
    except ExecutionNotFound:
        raise HTTPException(status_code=404, detail="Execution not found")
    return ExecutionResponse.model_validate(execution)

@router.post("/executions/{execution_id}/retry", response_model=ExecutionResponse)
def retry(execution_id: str, db: Session = Depends(get_db)):
    try:
        execution = _engine(db).get(execution_id)
    except ExecutionNotFound:
        raise HTTPException(status_code=404, detail="Execution not found")
    if execution.status not in (ExecutionStatus.FAILED, ExecutionStatus.ABORTED):
        raise HTTPException(status_code=409, detail=f"Execution is {execution.status.value}; only FAILED or ABORTED executions can be retried")
    retry_execution.delay(execution.id)
    return ExecutionResponse.model_validate(execution)

@router.post("/executions/{execution_id}/cancel", response_model=ExecutionResponse)
def cancel(execution_id: str, db: Session = Depends(get_db)):
    try:
        execution = _engine(db).cancel(execution_id)
    except ExecutionNotFound:
        raise HTTPException(status_code=404, detail="Execution not found")
    return ExecutionResponse.model_validate(execution)
