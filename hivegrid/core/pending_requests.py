"""Correlation of in-flight tool-call requests with their originating channel."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Generic, Hashable, Optional, TypeVar

from hivegrid.logging_config import get_logger

logger = get_logger(__name__)

C = TypeVar("C", bound=Hashable)


@dataclass(frozen=True)
class PendingRequest(Generic[C]):
    request_id: str
    agent_id: str
    kind: str
    connection: C
    created_at: float = field(default_factory=time.monotonic)


class PendingRequestTable(Generic[C]):
    """Maps request ids to the channel waiting for the response.

    Entries are removed when the response is routed, when the originating
    channel closes, or once they outlive the caller's own request timeout. Orphaned requests are dropped, never retried.
    """

    def __init__(self) -> None:
        self._pending: dict[str, PendingRequest[C]] = {}

    def add(self, request_id: str, agent_id: str, kind: str, connection: C) -> PendingRequest[C]:
        if request_id in self._pending:
            logger.warning("Duplicate request id %s from %s, replacing", request_id, agent_id)
        pending = PendingRequest(
            request_id=request_id,
            agent_id=agent_id,
            kind=kind,
            connection=connection,
            created_at=time.monotonic(),
        )
        self._pending[request_id] = pending
        return pending

    def resolve(self, request_id: str) -> Optional[PendingRequest[C]]:
        """Remove and return the matching request, or None if unknown (late or duplicate response)."""
        return self._pending.pop(request_id, None)

    def expire(self, max_age_s: float, now: Optional[float] = None) -> list[PendingRequest[C]]:
        """Remove and return requests older than `max_age_s` (no response will be awaited)."""
        now = time.monotonic() if now is None else now
        expired = [p for p in self._pending.values() if now - p.created_at >= max_age_s]
        for pending in expired:
            del self._pending[pending.request_id]
            logger.warning("Expired %s %s from %s", pending.kind, pending.request_id, pending.agent_id)
        return expired

    def drop_connection(self, connection: C) -> int:
        """Forget every request that originated on `connection`."""
        orphaned = [rid for rid, p in self._pending.items() if p.connection is connection]
        for request_id in orphaned:
            del self._pending[request_id]
        if orphaned:
            logger.info("Dropped %d pending request(s) from closed channel", len(orphaned))
        return len(orphaned)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)
