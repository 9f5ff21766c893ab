"""Domain types shared by the registry, the membership table and the selector."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum


class NodeKind(str, Enum):
    MEDIA_RELAY = "media-relay"
    SIP_ROUTER = "sip-router"
    CONTROL_PLANE = "control-plane"

    @property
    def placeable(self) -> bool:
        return self is not NodeKind.CONTROL_PLANE


class MemberStatus(IntEnum):
    """Liveness as seen by the local observer.

    The integer order is the precedence used when two updates carry the same
    sequence number: a higher value wins.
    """

    ALIVE = 1
    SUSPECT = 2
    DEAD = 3

    @property
    def label(self) -> str:
        return self.name.lower()


NodeKey = tuple[NodeKind, int]


@dataclass(frozen=True, slots=True)
class LiveStats:
    status: MemberStatus
    active_calls: int
    cpu_pct: float
    sequence: int
    age_seconds: float


@dataclass(frozen=True, slots=True)
class Node:
    """Durable node attributes, optionally joined with the live view."""

    id: int
    kind: NodeKind
    public_address: str
    private_address: str | None = None
    rtc_optimized: bool = False
    region: str | None = None
    live: LiveStats | None = field(default=None, compare=False)

    @property
    def key(self) -> NodeKey:
        return (self.kind, self.id)


@dataclass(frozen=True, slots=True)
class NodeConstraints:
    """Placement constraints for a call.

    ``rtc_optimized`` expresses a preference unless ``require_capability`` is set,
    in which case nodes without the capability are excluded.
    """

    rtc_optimized: bool = False
    require_capability: bool = False
    region: str | None = None


@dataclass(frozen=True, slots=True)
class NoCandidateAvailable:
    kind: NodeKind
    reason: str
