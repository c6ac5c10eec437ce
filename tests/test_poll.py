"""Branch polling creates one execution per new head revision."""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch
import httpx
import pytest
from app.core.errors import BranchNotFound, SourceUnavailable
from app.core.github import GitHubClient
from app.core.pipeline_def import SourceConfig
from app.db.models import PipelineExecution
from app.tasks.pipeline import latest_revision, poll_pipeline
from tests.helpers import make_definition


def head_client(*shas):
    client = MagicMock()
    client.get_branch_head = AsyncMock(side_effect=list(shas))
    return client


def test_new_head_creates_execution(db, make_pipeline):
    pipeline = make_pipeline()
    client = head_client("aaa", "aaa", "bbb")

    first = poll_pipeline(db, pipeline, client)
    assert first.revision_id == "aaa"
    assert latest_revision(db, pipeline.id) == "aaa"

    assert poll_pipeline(db, pipeline, client) is None

    second = poll_pipeline(db, pipeline, client)
    assert second.revision_id == "bbb"
    assert db.query(PipelineExecution).count() == 2
    client.get_branch_head.assert_awaited_with("example-org", "websocket-client", "main")


def test_webhook_pipelines_are_not_polled(db, make_pipeline):
    definition = make_definition(source=SourceConfig(owner="o", repo="r", trigger="webhook"))
    pipeline = make_pipeline(definition=definition)
    client = head_client("aaa")

    assert poll_pipeline(db, pipeline, client) is None
    client.get_branch_head.assert_not_called()


@pytest.mark.parametrize("error", [SourceUnavailable("down"), BranchNotFound("gone")])
def test_poll_errors_are_logged_not_raised(db, make_pipeline, error):
    pipeline = make_pipeline()
    client = MagicMock()
    client.get_branch_head = AsyncMock(side_effect=error)

    assert poll_pipeline(db, pipeline, client) is None
    assert db.query(PipelineExecution).count() == 0


def _mock_transport(handler):
    real = httpx.AsyncClient

    def factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return real(*args, **kwargs)

    return patch("app.core.github.httpx.AsyncClient", side_effect=factory)


@pytest.mark.parametrize("status,expected", [(404, BranchNotFound), (502, SourceUnavailable)])
def test_github_client_errors(status, expected):
    with _mock_transport(lambda request: httpx.Response(status)):
        with pytest.raises(expected):
            asyncio.run(GitHubClient(token=None, api_base="https://api.github.test").get_branch_head("o", "r", "main"))


def test_github_client_returns_head_sha():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"name": "main", "commit": {"sha": "3f2c1e9"}})

    with _mock_transport(handler):
        sha = asyncio.run(GitHubClient(token="t0k", api_base="https://api.github.test").get_branch_head("o", "r", "main"))

    assert sha == "3f2c1e9"
    assert seen == {"url": "https://api.github.test/repos/o/r/branches/main", "auth": "Bearer t0k"}
