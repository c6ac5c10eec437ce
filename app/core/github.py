from __future__ import annotations
import httpx
from dataclasses import dataclass, field
from typing import Optional
from app.core.config import settings
from app.core.errors import BranchNotFound, SourceUnavailable

@dataclass
class GitHubClient:
    token: Optional[str] = field(default_factory=lambda: settings.github_token)
    api_base: str = field(default_factory=lambda: settings.github_api_base)

    def _headers(self) -> dict:
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def get_branch_head(self, owner: str, repo: str, branch: str) -> str:
        """Commit SHA at the tip of `branch`."""
        url = f"{self.api_base}/repos/{owner}/{repo}/branches/{branch}"
        try:
            async with httpx.AsyncClient(timeout=60) as client:
                r = await client.get(url, headers=self._headers())
        except httpx.HTTPError as e:
            raise SourceUnavailable(f"source unavailable: {e}") from e
        if r.status_code == 404:
            raise BranchNotFound(f"branch '{branch}' not found in {owner}/{repo}", {"branch": branch})
        if r.status_code >= 400:
            raise SourceUnavailable(f"source unavailable: HTTP {r.status_code}", {"status_code": r.status_code})
        return r.json()["commit"]["sha"]
