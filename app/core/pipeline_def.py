from __future__ import annotations
from pathlib import Path
from typing import Dict, List, Literal, Optional
import yaml
from pydantic import BaseModel, Field
from app.core.config import settings
from app.core.workflow import StageName

DEFAULT_TAGS = {"Environment": "Development", "Name": "WebSocket-Client"}


class SourceConfig(BaseModel):
    owner: str
    repo: str
    branch: str = "main"
    trigger: Literal["poll", "webhook"] = "poll"


class BuildArtifacts(BaseModel):
    base_directory: str = "."
    files: List[str] = Field(default_factory=lambda: ["**/*"])


class BuildConfig(BaseModel):
    image: str = "aws/codebuild/standard:7.0"
    phases: Dict[Literal["install", "pre_build", "build", "post_build"], List[str]] = Field(
        default_factory=lambda: {
            "pre_build": ["npm ci"],
            "build": ["npm run build", "npm ci --production"],
            "post_build": ["mkdir -p dist/logs"],
        }
    )
    environment_variables: Dict[str, str] = Field(default_factory=dict)
    artifacts: BuildArtifacts = Field(default_factory=lambda: BuildArtifacts(files=[
        "appspec.yml",
        "scripts/**/*",
        "ecosystem.config.js",
        "node_modules/**/*",
        "package*.json",
        "dist/**/*",
    ]))


class DeployConfig(BaseModel):
    application: str = "Application"
    deployment_group: str = "DeploymentGroup"
    selector: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_TAGS))
    config: Literal["ALL_AT_ONCE"] = "ALL_AT_ONCE"


class NodeConfig(BaseModel):
    name: str = "app-node"
    labels: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_TAGS))
    address: Optional[str] = None
    agent_url: str = "http://localhost:8081"
    agent_install_url: Optional[str] = None
    key_name: Optional[str] = None
    ssh_user: str = "ec2-user"


class StageTimeouts(BaseModel):
    source: int = Field(default_factory=lambda: settings.source_timeout_seconds)
    build: int = Field(default_factory=lambda: settings.build_timeout_seconds)
    deploy: int = Field(default_factory=lambda: settings.deploy_timeout_seconds)

    def for_stage(self, stage: StageName) -> int:
        return {
            StageName.SOURCE: self.source,
            StageName.BUILD: self.build,
            StageName.DEPLOY: self.deploy,
        }[stage]


class PipelineDefinition(BaseModel):
    name: str
    source: SourceConfig
    build: BuildConfig = Field(default_factory=BuildConfig)
    deploy: DeployConfig = Field(default_factory=DeployConfig)
    node: NodeConfig = Field(default_factory=NodeConfig)
    timeouts: StageTimeouts = Field(default_factory=StageTimeouts)
    handshake_timeout_seconds: int = Field(default_factory=lambda: settings.handshake_timeout_seconds)


def load_definition(path: Optional[str | Path] = None) -> PipelineDefinition:
    path = Path(path or settings.pipeline_file)
    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return PipelineDefinition.model_validate(raw)
