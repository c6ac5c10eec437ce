from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from app.core.artifacts import ArtifactStore
from app.core.capabilities import CapabilityFabric
from app.core.pipeline_def import PipelineDefinition
from app.core.workflow import StageName, StageInput, StageOutput

@dataclass
class ActionResult:
    stage: StageName
    ok: bool
    message: str
    output: Optional[StageOutput] = None
    detail: Dict[str, Any] = field(default_factory=dict)

@dataclass
class ActionContext:
    execution_id: str
    owner: str
    repo: str
    branch: str
    revision_id: Optional[str]
    definition: PipelineDefinition
    store: ArtifactStore
    fabric: CapabilityFabric
    timeout: float

class BaseAction:
    """An opaque stage action: run(input) -> ActionResult within ctx.timeout seconds."""
    stage: StageName
    def run(self, ctx: ActionContext, input: StageInput) -> ActionResult:
        raise NotImplementedError
