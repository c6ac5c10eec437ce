from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from app.core.clock import Clock
from app.core.config import settings
from app.core.errors import HandshakeAllocationError, HandshakeNotFound
from app.core.workflow import HandshakeStatus, NodeStatus, SIGNAL_STATUSES
from app.db.models import Handshake, HandshakeSignal, Node

log = logging.getLogger(__name__)

REJECT_INVALID_STATUS = "invalid_status"
REJECT_ALREADY_RESOLVED = "already_resolved"
REJECT_DEADLINE_PASSED = "deadline_passed"


@dataclass(frozen=True)
class SignalOutcome:
    accepted: bool
    status: HandshakeStatus
    rejection: Optional[str] = None


def signal_address(handshake_id: str, base_url: Optional[str] = None) -> str:
    base = (base_url or settings.callback_base_url).rstrip("/")
    return f"{base}/v1/handshakes/{handshake_id}"


class HandshakeService:
    """Single-use, first-writer-wins signaling cell between a booting node and the controller.

    The cell is a row in ``handshakes``. Every transition out of PENDING is a
    conditional UPDATE guarded on ``status = PENDING``, so whichever of the
    node's signal or the controller's deadline lands first is the only one
    recorded. Losing signals are still written to ``handshake_signals``.
    """

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or Clock()

    def create(self, timeout_seconds: Optional[int] = None, deadline: Optional[datetime] = None) -> Handshake:
        if deadline is None:
            seconds = settings.handshake_timeout_seconds if timeout_seconds is None else timeout_seconds
            deadline = self.clock.now() + timedelta(seconds=seconds)
        try:
            hs = Handshake(status=HandshakeStatus.PENDING, deadline=deadline, created_at=self.clock.now())
            self.db.add(hs)
            self.db.commit()
            self.db.refresh(hs)
        except SQLAlchemyError as e:
            self.db.rollback()
            log.error("Could not allocate handshake: %s", e, extra={"stage": "handshake"})
            raise HandshakeAllocationError(str(e)) from e
        log.info("Created handshake %s (deadline %s)", hs.id, hs.deadline.isoformat(), extra={"stage": "handshake"})
        return hs

    def get(self, handshake_id: str) -> Handshake:
        hs = self.db.get(Handshake, handshake_id)
        if hs is None:
            raise HandshakeNotFound(handshake_id)
        self.db.refresh(hs)
        return hs

    def signal(
        self,
        handshake_id: str,
        status: str,
        reason: Optional[str] = None,
        unique_id: Optional[str] = None,
        data: Optional[str] = None,
    ) -> SignalOutcome:
        hs = self.get(handshake_id)
        now = self.clock.now()
        status = (status or "").strip().upper()

        rejection: Optional[str] = None
        if status not in SIGNAL_STATUSES:
            rejection = REJECT_INVALID_STATUS
        else:
            result = self.db.execute(
                update(Handshake)
                .where(
                    Handshake.id == handshake_id,
                    Handshake.status == HandshakeStatus.PENDING,
                    Handshake.deadline > now,
                )
                .values(
                    status=HandshakeStatus(status),
                    reason=reason,
                    unique_id=unique_id,
                    data=data,
                    resolved_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.refresh(hs)
                rejection = REJECT_DEADLINE_PASSED if hs.status is HandshakeStatus.PENDING else REJECT_ALREADY_RESOLVED
            elif status == HandshakeStatus.SUCCESS.value:
                # A node that finished bootstrapping is alive as of now.
                self.db.execute(
                    update(Node)
                    .where(Node.handshake_id == handshake_id, Node.status == NodeStatus.LIVE)
                    .values(last_heartbeat=now)
                    .execution_options(synchronize_session=False)
                )

        self.db.add(HandshakeSignal(
            handshake_id=handshake_id,
            received_at=now,
            status=status or "<empty>",
            reason=reason,
            unique_id=unique_id,
            data=data,
            accepted=rejection is None,
            rejection=rejection,
        ))
        self.db.commit()

        if rejection is not None and now >= hs.deadline:
            # The deadline has already elapsed; record the timeout it implies.
            self.expire(handshake_id)
        self.db.refresh(hs)

        if rejection is None:
            log.info("Handshake %s resolved %s: %s", handshake_id, status, reason, extra={"stage": "handshake"})
        else:
            log.warning(
                "Ignored handshake signal %s for %s (%s); current status %s",
                status, handshake_id, rejection, hs.status.value,
                extra={"stage": "handshake"},
            )
        return SignalOutcome(accepted=rejection is None, status=hs.status, rejection=rejection)

    def expire(self, handshake_id: str) -> HandshakeStatus:
        """Resolve to TIMED_OUT if still PENDING past the deadline; returns the resolved status."""
        now = self.clock.now()
        result = self.db.execute(
            update(Handshake)
            .where(
                Handshake.id == handshake_id,
                Handshake.status == HandshakeStatus.PENDING,
                Handshake.deadline <= now,
            )
            .values(status=HandshakeStatus.TIMED_OUT, reason="deadline elapsed", resolved_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        hs = self.get(handshake_id)
        if result.rowcount == 1:
            log.warning("Handshake %s timed out", handshake_id, extra={"stage": "handshake"})
        return hs.status

    def expire_overdue(self) -> list[str]:
        now = self.clock.now()
        overdue = self.db.scalars(
            select(Handshake.id).where(Handshake.status == HandshakeStatus.PENDING, Handshake.deadline <= now)
        ).all()
        return [hid for hid in overdue if self.expire(hid) is HandshakeStatus.TIMED_OUT]

    def wait(self, handshake_id: str, poll_interval: Optional[float] = None) -> HandshakeStatus:
        """Block until the handshake leaves PENDING; the deadline resolves it to TIMED_OUT."""
        interval = settings.handshake_poll_interval if poll_interval is None else poll_interval
        while True:
            hs = self.get(handshake_id)
            if hs.status is not HandshakeStatus.PENDING:
                return hs.status
            now = self.clock.now()
            if now >= hs.deadline:
                return self.expire(handshake_id)
            # End the read transaction so the next poll sees other writers.
            self.db.rollback()
            remaining = (hs.deadline - now).total_seconds()
            self.clock.sleep(max(0.0, min(interval, remaining)))
