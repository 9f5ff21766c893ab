"""Live membership table for the fleet.

Each entry is an immutable record replaced as a whole, so readers can take a
snapshot at any time while the gossip layer remains the only writer per key.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, replace

from fleet.nodes import LiveStats, MemberStatus, NodeKind, NodeKey
from fleet.wire import MemberUpdate

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MemberRecord:
    kind: NodeKind
    node_id: int
    sequence: int
    status: MemberStatus
    active_calls: int
    cpu_pct: float
    host: str
    port: int
    last_heard: float
    status_since: float

    @property
    def key(self) -> NodeKey:
        return (self.kind, self.node_id)

    @property
    def address(self) -> tuple[str, int]:
        return (self.host, self.port)

    def to_update(self) -> MemberUpdate:
        return MemberUpdate(
            kind=self.kind,
            node_id=self.node_id,
            sequence=self.sequence,
            status=self.status,
            active_calls=self.active_calls,
            cpu_pct=self.cpu_pct,
            host=self.host,
            port=self.port,
        )


class MembershipTable:
    """Per-node state machine: unknown -> alive -> suspect -> dead.

    Updates are merged by per-node sequence number: older sequences are ignored,
    newer ones replace the record, and an equal sequence may only escalate the
    status (alive < suspect < dead). Re-delivering a message is therefore a no-op.
    """

    def __init__(
        self,
        *,
        suspect_after: float,
        suspicion_timeout: float,
        staleness_window: float,
        dead_retention: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._suspect_after = suspect_after
        self._suspicion_timeout = suspicion_timeout
        self._staleness_window = staleness_window
        self._dead_retention = dead_retention
        self._clock = clock
        self._records: dict[NodeKey, MemberRecord] = {}

    @classmethod
    def from_settings(cls, settings, *, clock: Callable[[], float] = time.monotonic) -> MembershipTable:
        return cls(
            suspect_after=settings.suspect_after_seconds,
            suspicion_timeout=settings.suspicion_timeout_seconds,
            staleness_window=settings.staleness_window_seconds,
            dead_retention=settings.dead_retention_seconds,
            clock=clock,
        )

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[MemberRecord]:
        return iter(list(self._records.values()))

    def get(self, key: NodeKey) -> MemberRecord | None:
        return self._records.get(key)

    def snapshot(self) -> dict[NodeKey, MemberRecord]:
        return dict(self._records)

    def apply(self, update: MemberUpdate) -> bool:
        """Merge a gossiped or pushed update. Returns True if the stored state changed."""

        now = self._clock()
        key = update.key
        current = self._records.get(key)

        if current is None:
            if update.status is not MemberStatus.ALIVE:
                return False
            self._records[key] = self._fresh(update, now)
            LOGGER.info("Member %s/%s joined (seq=%s)", key[0].value, key[1], update.sequence)
            return True

        if update.sequence < current.sequence:
            return False

        if current.status is MemberStatus.DEAD:
            # Rejoin starts from scratch; nothing from the previous life is trusted.
            if update.sequence == current.sequence or update.status is not MemberStatus.ALIVE:
                return False
            self._records[key] = self._fresh(update, now)
            LOGGER.info("Member %s/%s rejoined (seq=%s)", key[0].value, key[1], update.sequence)
            return True

        if update.sequence > current.sequence:
            alive = update.status is MemberStatus.ALIVE
            self._records[key] = MemberRecord(
                kind=update.kind,
                node_id=update.node_id,
                sequence=update.sequence,
                status=update.status,
                active_calls=update.active_calls,
                cpu_pct=update.cpu_pct,
                host=update.host or current.host,
                port=update.port or current.port,
                last_heard=now if alive else current.last_heard,
                status_since=current.status_since if update.status is current.status else now,
            )
            if update.status is not current.status:
                self._log_transition(key, current.status, update.status)
            return True

        if update.status <= current.status:
            return False
        self._records[key] = replace(current, status=update.status, status_since=now)
        self._log_transition(key, current.status, update.status)
        return True

    def record_contact(self, key: NodeKey) -> bool:
        """Note direct evidence of life, e.g. a probe acknowledgment."""

        current = self._records.get(key)
        if current is None or current.status is MemberStatus.DEAD:
            return False
        now = self._clock()
        if current.status is MemberStatus.SUSPECT:
            self._records[key] = replace(current, status=MemberStatus.ALIVE, last_heard=now, status_since=now)
            self._log_transition(key, MemberStatus.SUSPECT, MemberStatus.ALIVE)
            return True
        self._records[key] = replace(current, last_heard=now)
        return False

    def suspect(self, key: NodeKey) -> MemberRecord | None:
        """Mark an alive member suspect after a failed probe. Returns the new record."""

        current = self._records.get(key)
        if current is None or current.status is not MemberStatus.ALIVE:
            return None
        record = replace(current, status=MemberStatus.SUSPECT, status_since=self._clock())
        self._records[key] = record
        self._log_transition(key, MemberStatus.ALIVE, MemberStatus.SUSPECT)
        return record

    def expire(self) -> list[MemberRecord]:
        """Advance timers. Returns the records whose status changed."""

        now = self._clock()
        changed: list[MemberRecord] = []
        for key, record in list(self._records.items()):
            if record.status is MemberStatus.ALIVE and now - record.last_heard > self._suspect_after:
                updated = replace(record, status=MemberStatus.SUSPECT, status_since=now)
            elif record.status is MemberStatus.SUSPECT and now - record.status_since > self._suspicion_timeout:
                updated = replace(record, status=MemberStatus.DEAD, status_since=now)
            elif record.status is MemberStatus.DEAD and now - record.status_since > self._dead_retention:
                del self._records[key]
                LOGGER.info("Member %s/%s removed after dead retention", key[0].value, key[1])
                continue
            else:
                continue
            self._records[key] = updated
            self._log_transition(key, record.status, updated.status)
            changed.append(updated)
        return changed

    def live_view(self, kind: NodeKind) -> dict[int, LiveStats]:
        """Members of ``kind`` whose live data may be used for placement."""

        now = self._clock()
        view: dict[int, LiveStats] = {}
        for record in list(self._records.values()):
            if record.kind is not kind or record.status is MemberStatus.DEAD:
                continue
            age = now - record.last_heard
            if age > self._staleness_window:
                continue
            view[record.node_id] = LiveStats(
                status=record.status,
                active_calls=record.active_calls,
                cpu_pct=record.cpu_pct,
                sequence=record.sequence,
                age_seconds=age,
            )
        return view

    @staticmethod
    def _fresh(update: MemberUpdate, now: float) -> MemberRecord:
        return MemberRecord(
            kind=update.kind,
            node_id=update.node_id,
            sequence=update.sequence,
            status=update.status,
            active_calls=update.active_calls,
            cpu_pct=update.cpu_pct,
            host=update.host,
            port=update.port,
            last_heard=now,
            status_since=now,
        )

    @staticmethod
    def _log_transition(key: NodeKey, old: MemberStatus, new: MemberStatus) -> None:
        level = logging.WARNING if new is not MemberStatus.ALIVE else logging.INFO
        LOGGER.log(level, "Member %s/%s %s -> %s", key[0].value, key[1], old.label, new.label)
