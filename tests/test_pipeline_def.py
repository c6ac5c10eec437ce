from pathlib import Path
import pytest
from pydantic import ValidationError
from app.core.pipeline_def import PipelineDefinition, load_definition
from app.core.workflow import StageName

ROOT = Path(__file__).resolve().parents[1]


def test_load_shipped_definition():
    definition = load_definition(ROOT / "pipeline.yml")

    assert definition.source.owner == "example-org"
    assert definition.source.trigger == "poll"
    assert definition.build.phases["pre_build"] == ["npm ci"]
    assert "dist/**/*" in definition.build.artifacts.files
    assert definition.deploy.selector == definition.node.labels
    assert definition.handshake_timeout_seconds == 300


def test_defaults(tmp_path):
    path = tmp_path / "pipeline.yml"
    path.write_text("name: app\nsource:\n  owner: o\n  repo: r\n")

    definition = load_definition(path)

    assert definition.source.branch == "main"
    assert definition.deploy.config == "ALL_AT_ONCE"
    assert definition.deploy.selector == {"Environment": "Development", "Name": "WebSocket-Client"}
    assert definition.timeouts.for_stage(StageName.BUILD) == definition.timeouts.build


def test_unknown_phase_is_rejected():
    with pytest.raises(ValidationError):
        PipelineDefinition.model_validate({
            "name": "app",
            "source": {"owner": "o", "repo": "r"},
            "build": {"phases": {"deploy": ["rm -rf /"]}},
        })


def test_only_all_at_once_deployments():
    with pytest.raises(ValidationError):
        PipelineDefinition.model_validate({
            "name": "app",
            "source": {"owner": "o", "repo": "r"},
            "deploy": {"config": "ROLLING"},
        })
