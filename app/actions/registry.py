from dataclasses import dataclass
from typing import Dict
from app.core.workflow import StageName
from app.core.targets import TargetResolver
from app.actions.base import BaseAction
from app.actions.impl_source import SourceAction
from app.actions.impl_build import BuildAction
from app.actions.impl_deploy import DeployAction, AckStore

@dataclass
class ActionRegistry:
    mapping: Dict[StageName, BaseAction]

    def get(self, stage: StageName) -> BaseAction:
        return self.mapping[stage]

    @staticmethod
    def default() -> "ActionRegistry":
        from app.db.session import SessionLocal
        return ActionRegistry(mapping={
            StageName.SOURCE: SourceAction(),
            StageName.BUILD: BuildAction(),
            StageName.DEPLOY: DeployAction(resolver=TargetResolver(SessionLocal), acks=AckStore(SessionLocal)),
        })
