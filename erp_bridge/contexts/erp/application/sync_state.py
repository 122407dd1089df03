from __future__ import annotations

from typing import Iterable

from erp_bridge.contexts.erp.domain.contracts import (
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SENT,
    SYNC_FAILED,
    SYNC_IDLE,
    SYNC_OFFLINE,
    SYNC_PENDING,
    SYNC_SENT,
    OutboxEvent,
    SyncState,
)


DEFAULT_OFFLINE_ATTEMPTS = 3


def newest_first(events: Iterable[OutboxEvent]) -> list[OutboxEvent]:
    return sorted(events, key=lambda event: (event.created_at, event.seq), reverse=True)


def project_sync_state(events: Iterable[OutboxEvent], offline_attempts: int = DEFAULT_OFFLINE_ATTEMPTS) -> SyncState:
    ordered = newest_first(events)
    if not ordered:
        return SyncState(state=SYNC_IDLE)

    latest = ordered[0]
    if any(event.status == STATUS_PENDING for event in ordered):
        return SyncState(
            state=SYNC_PENDING,
            attempts=latest.attempts,
            last_attempt_at=latest.last_attempt_at,
            dead_letter=latest.dead_letter,
        )

    if latest.status == STATUS_SENT:
        return SyncState(state=SYNC_SENT, attempts=latest.attempts, last_attempt_at=latest.last_attempt_at)

    if latest.status == STATUS_FAILED:
        state = SYNC_OFFLINE if latest.attempts >= max(1, int(offline_attempts)) else SYNC_FAILED
        return SyncState(
            state=state,
            attempts=latest.attempts,
            last_error=latest.last_error,
            last_attempt_at=latest.last_attempt_at,
            dead_letter=latest.dead_letter,
        )

    return SyncState(state=SYNC_IDLE)
