import logging
import os
import subprocess
import tarfile
import tempfile
import time
import zipfile
from pathlib import Path
from app.actions.base import BaseAction, ActionResult
from app.core.capabilities import BUILD, ARTIFACTS_READ, ARTIFACTS_WRITE
from app.core.config import settings
from app.core.errors import StageError, BuildFailed
from app.core.workflow import StageName, StageOutput

log = logging.getLogger(__name__)

PHASE_ORDER = ("install", "pre_build", "build", "post_build")

def collect_files(base: Path, patterns) -> list[Path]:
    """Files under `base` matching any of the glob patterns, relative and sorted."""
    picked = set()
    for pattern in patterns:
        for p in base.glob(pattern):
            if p.is_file():
                picked.add(p.relative_to(base))
    return sorted(picked)

def _safe_extract(archive: Path, dest: Path) -> None:
    with tarfile.open(archive) as tar:
        tar.extractall(dest, filter="data")

class BuildAction(BaseAction):
    stage = StageName.BUILD

    def __init__(self, container_runtime=None):
        self.container_runtime = container_runtime if container_runtime is not None else settings.build_container_runtime

    def _command(self, cmd: str, src: Path, image: str, env: dict) -> list[str] | str:
        if not self.container_runtime:
            return cmd
        argv = [self.container_runtime, "run", "--rm", "-v", f"{src}:/workspace", "-w", "/workspace"]
        for key, value in env.items():
            argv += ["-e", f"{key}={value}"]
        return argv + [image, "sh", "-c", cmd]

    def _run_phases(self, ctx, src: Path, log_path: Path) -> None:
        build = ctx.definition.build
        env = {**build.environment_variables, "PIPELINE_EXECUTION_ID": ctx.execution_id}
        deadline = time.monotonic() + ctx.timeout
        with log_path.open("w", encoding="utf-8") as out:
            for phase in PHASE_ORDER:
                for cmd in build.phases.get(phase, []):
                    out.write(f"[{phase}] $ {cmd}\n")
                    out.flush()
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise StageError("build timed out", {"phase": phase, "command": cmd})
                    try:
                        proc = subprocess.run(
                            self._command(cmd, src, build.image, env),
                            shell=not self.container_runtime,
                            cwd=src,
                            env={**os.environ, **env},
                            stdout=out,
                            stderr=subprocess.STDOUT,
                            timeout=remaining,
                        )
                    except subprocess.TimeoutExpired as e:
                        raise StageError("build timed out", {"phase": phase, "command": cmd}) from e
                    if proc.returncode != 0:
                        out.write(f"[{phase}] exited with {proc.returncode}\n")
                        raise BuildFailed(f"{phase} command failed with exit code {proc.returncode}: {cmd}", proc.returncode)

    def run(self, ctx, input):
        log_ref = None
        try:
            ctx.fabric.require(BUILD, ARTIFACTS_READ)
            ctx.fabric.require(BUILD, ARTIFACTS_WRITE)
            if not input.payload_ref or not ctx.store.exists(input.payload_ref):
                return ActionResult(self.stage, False, "source artifact not found in artifact store", None, {})

            with tempfile.TemporaryDirectory(prefix="build-") as tmp:
                tmp = Path(tmp)
                src = tmp / "src"
                src.mkdir()
                _safe_extract(ctx.store.path(input.payload_ref), src)

                log_path = tmp / "build.log"
                try:
                    self._run_phases(ctx, src, log_path)
                finally:
                    log_ref = ctx.store.put_file(log_path)

                base = src / ctx.definition.build.artifacts.base_directory
                files = collect_files(base, ctx.definition.build.artifacts.files)
                if not files:
                    return ActionResult(self.stage, False, "build produced no files matching the artifact globs", None, {"log_ref": log_ref})

                bundle = tmp / "bundle.zip"
                with zipfile.ZipFile(bundle, "w", zipfile.ZIP_DEFLATED) as zf:
                    for rel in files:
                        zf.write(base / rel, rel.as_posix())
                digest = ctx.store.put_file(bundle)
                size = bundle.stat().st_size

            log.info("Build produced %d files", len(files), extra={"execution_id": ctx.execution_id, "stage": "Build"})
            return ActionResult(self.stage, True, f"Built bundle with {len(files)} files", StageOutput(
                name="BuildOutput",
                payload_ref=digest,
                size=size,
                metadata={
                    "image": ctx.definition.build.image,
                    "log_ref": log_ref,
                    "files": len(files),
                    "revision": input.metadata.get("revision"),
                },
            ), {"log_ref": log_ref})
        except BuildFailed as e:
            return ActionResult(self.stage, False, str(e), None, {"exit_code": e.exit_code, "log_ref": log_ref})
        except StageError as e:
            return ActionResult(self.stage, False, str(e), None, {**e.detail, "log_ref": log_ref})
        except Exception as e:
            return ActionResult(self.stage, False, f"Build failed: {e}", None, {"log_ref": log_ref})
