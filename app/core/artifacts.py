from __future__ import annotations
import hashlib
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import BinaryIO, Optional
from app.core.config import settings

log = logging.getLogger(__name__)

SCHEME = "artifact://"
_CHUNK = 1024 * 1024


class ArtifactStore:
    """Content-addressed object storage on the local filesystem.

    Objects live at ``<root>/<first two hex chars>/<sha256>``. Writing the same
    bytes twice is a no-op and an existing object is never rewritten.
    """

    def __init__(self, root: Optional[str | Path] = None):
        self.root = Path(root or settings.artifacts_dir)

    def ensure(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def path(self, digest: str) -> Path:
        digest = self.digest_of(digest)
        return self.root / digest[:2] / digest

    def exists(self, digest: str) -> bool:
        return self.path(digest).is_file()

    @staticmethod
    def location(digest: str) -> str:
        return f"{SCHEME}{digest}"

    @staticmethod
    def digest_of(ref: str) -> str:
        return ref[len(SCHEME):] if ref.startswith(SCHEME) else ref

    def put_bytes(self, payload: bytes) -> str:
        digest = hashlib.sha256(payload).hexdigest()
        if self.exists(digest):
            return digest
        self._commit(digest, lambda fh: fh.write(payload))
        return digest

    def put_file(self, src: str | Path) -> str:
        src = Path(src)
        h = hashlib.sha256()
        with src.open("rb") as fh:
            for chunk in iter(lambda: fh.read(_CHUNK), b""):
                h.update(chunk)
        digest = h.hexdigest()
        if self.exists(digest):
            return digest

        def copy(out: BinaryIO) -> None:
            with src.open("rb") as fh:
                shutil.copyfileobj(fh, out, _CHUNK)

        self._commit(digest, copy)
        return digest

    def _commit(self, digest: str, write) -> None:
        target = self.path(digest)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=".incoming-")
        try:
            with os.fdopen(fd, "wb") as out:
                write(out)
            if target.exists():
                return
            os.replace(tmp, target)
            os.chmod(target, 0o444)
            log.debug("Stored artifact %s", digest)
        finally:
            if os.path.exists(tmp):
                os.unlink(tmp)

    def open(self, digest: str) -> BinaryIO:
        path = self.path(digest)
        if not path.is_file():
            raise FileNotFoundError(f"artifact {digest} not found in {self.root}")
        return path.open("rb")

    def read_bytes(self, digest: str) -> bytes:
        with self.open(digest) as fh:
            return fh.read()
