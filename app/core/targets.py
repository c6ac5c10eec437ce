from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Mapping, Optional
from sqlalchemy import select
from sqlalchemy.orm import Session
from app.core.clock import Clock
from app.core.config import settings
from app.core.errors import NoEligibleTargets
from app.core.workflow import NodeStatus
from app.db.models import Node

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Target:
    id: str
    name: str
    address: Optional[str]
    agent_url: str
    labels: Mapping[str, str]


def matches(labels: Mapping[str, str], selector: Mapping[str, str]) -> bool:
    return all(labels.get(key) == value for key, value in selector.items())


def select_targets(
    nodes: Iterable[Node],
    selector: Mapping[str, str],
    now: datetime,
    liveness_seconds: int,
) -> List[Target]:
    """Live nodes whose labels contain every selector key/value, ordered by name."""
    cutoff = now - timedelta(seconds=liveness_seconds)
    picked = [
        Target(id=n.id, name=n.name, address=n.address, agent_url=n.agent_url, labels=dict(n.labels or {}))
        for n in nodes
        if n.status is NodeStatus.LIVE and n.last_heartbeat >= cutoff and matches(n.labels or {}, selector)
    ]
    return sorted(picked, key=lambda t: (t.name, t.id))


class TargetResolver:
    """Resolves a label selector against current membership on every call."""

    def __init__(self, session_factory: Callable[[], Session], clock: Optional[Clock] = None, liveness_seconds: Optional[int] = None):
        self.session_factory = session_factory
        self.clock = clock or Clock()
        self.liveness_seconds = settings.node_liveness_seconds if liveness_seconds is None else liveness_seconds

    def resolve(self, selector: Dict[str, str]) -> List[Target]:
        db = self.session_factory()
        try:
            nodes = db.scalars(select(Node).where(Node.status == NodeStatus.LIVE)).all()
            targets = select_targets(nodes, selector, self.clock.now(), self.liveness_seconds)
        finally:
            db.close()
        if not targets:
            raise NoEligibleTargets(selector)
        log.info("Selector %s resolved to %s", selector, [t.name for t in targets], extra={"stage": "Deploy"})
        return targets
