import logging
import tempfile
import time
from pathlib import Path
from git import Git, Repo
from git.exc import GitCommandError, ODBError
from app.actions.base import BaseAction, ActionResult
from app.core.capabilities import BUILD, ARTIFACTS_WRITE
from app.core.config import settings
from app.core.errors import StageError, SourceUnavailable, BranchNotFound
from app.core.workflow import StageName, StageOutput

log = logging.getLogger(__name__)

_MISSING_REF_MARKERS = (
    "remote branch",
    "couldn't find remote ref",
    "not found in upstream",
)

def github_remote_url(owner: str, repo: str) -> str:
    base = settings.github_web_base.rstrip("/")
    if settings.github_token:
        scheme, _, host = base.partition("://")
        return f"{scheme}://x-access-token:{settings.github_token}@{host}/{owner}/{repo}.git"
    return f"{base}/{owner}/{repo}.git"

def classify_git_error(e: GitCommandError, branch: str) -> StageError:
    stderr = (e.stderr or "").lower()
    if "did not complete in" in stderr:
        return StageError("source fetch timed out", {"branch": branch})
    if any(marker in stderr for marker in _MISSING_REF_MARKERS):
        return BranchNotFound(f"branch '{branch}' not found", {"branch": branch})
    return SourceUnavailable(f"source unavailable: {(e.stderr or str(e)).strip()}")

class SourceAction(BaseAction):
    stage = StageName.SOURCE

    def __init__(self, remote_url=github_remote_url, sleep=time.sleep):
        self.remote_url = remote_url
        self.sleep = sleep

    def _snapshot(self, ctx, workdir: Path, remaining: float) -> StageOutput:
        checkout = workdir / "checkout"
        try:
            # Run through Git.execute so the clone is killed once the stage runs out of time.
            Git(str(workdir)).clone(
                "--branch", ctx.branch, "--single-branch", "--",
                self.remote_url(ctx.owner, ctx.repo), str(checkout),
                env={"GIT_TERMINAL_PROMPT": "0"},
                kill_after_timeout=max(1, int(remaining)),
            )
        except GitCommandError as e:
            raise classify_git_error(e, ctx.branch) from e
        repo = Repo(checkout)

        revision = ctx.revision_id or repo.head.commit.hexsha
        try:
            commit = repo.commit(revision)
        except (ValueError, ODBError, GitCommandError) as e:
            raise StageError(f"revision {revision} not found on {ctx.branch}", {"revision": revision}) from e

        archive = workdir / "source.tar"
        with archive.open("wb") as fh:
            repo.archive(fh, treeish=commit.hexsha, format="tar")
        digest = ctx.store.put_file(archive)
        return StageOutput(
            name="SourceOutput",
            payload_ref=digest,
            size=archive.stat().st_size,
            metadata={
                "repository": f"{ctx.owner}/{ctx.repo}",
                "branch": ctx.branch,
                "revision": commit.hexsha,
            },
        )

    def run(self, ctx, input):
        started = time.monotonic()
        attempts = 0
        try:
            ctx.fabric.require(BUILD, ARTIFACTS_WRITE)
            while True:
                attempts += 1
                try:
                    with tempfile.TemporaryDirectory(prefix="source-") as tmp:
                        output = self._snapshot(ctx, Path(tmp), ctx.timeout - (time.monotonic() - started))
                    log.info(
                        "Fetched %s/%s@%s revision %s",
                        ctx.owner, ctx.repo, ctx.branch, output.metadata["revision"],
                        extra={"execution_id": ctx.execution_id, "stage": str(self.stage.value)},
                    )
                    return ActionResult(self.stage, True, "Fetched source snapshot", output, {"attempts": attempts})
                except SourceUnavailable as e:
                    elapsed = time.monotonic() - started
                    if attempts > settings.source_max_retries or elapsed + settings.source_retry_delay >= ctx.timeout:
                        raise
                    log.warning(
                        "Source unavailable (attempt %d/%d), retrying in %ss: %s",
                        attempts, settings.source_max_retries + 1, settings.source_retry_delay, e,
                        extra={"execution_id": ctx.execution_id, "stage": str(self.stage.value)},
                    )
                    self.sleep(settings.source_retry_delay)
        except StageError as e:
            return ActionResult(self.stage, False, str(e), None, {**e.detail, "attempts": attempts, "retryable": e.retryable})
        except Exception as e:
            return ActionResult(self.stage, False, f"Failed to fetch source: {e}", None, {"attempts": attempts})
