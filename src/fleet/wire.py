from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Final

from fleet.nodes import MemberStatus, NodeKind, NodeKey

WIRE_VERSION: Final[int] = 1
MAX_UPDATES: Final[int] = 255
MAX_DATAGRAM: Final[int] = 1400

_HEADER = struct.Struct("!BBIBIBIB")
_UPDATE = struct.Struct("!BIQBIHHB")

_KIND_CODES: Final[dict[NodeKind, int]] = {
    NodeKind.MEDIA_RELAY: 1,
    NodeKind.SIP_ROUTER: 2,
    NodeKind.CONTROL_PLANE: 3,
}
_KINDS_BY_CODE: Final[dict[int, NodeKind]] = {code: kind for kind, code in _KIND_CODES.items()}


class MessageType(IntEnum):
    PING = 1
    ACK = 2
    PING_REQ = 3


@dataclass(frozen=True, slots=True)
class MemberUpdate:
    """One node's self-reported state as it travels through the cluster."""

    kind: NodeKind
    node_id: int
    sequence: int
    status: MemberStatus
    active_calls: int
    cpu_pct: float
    host: str
    port: int

    @property
    def key(self) -> NodeKey:
        return (self.kind, self.node_id)


@dataclass(frozen=True, slots=True)
class GossipMessage:
    type: MessageType
    probe_seq: int
    sender: NodeKey
    target: NodeKey | None = None
    updates: tuple[MemberUpdate, ...] = field(default=())


def _kind_from_code(code: int) -> NodeKind:
    try:
        return _KINDS_BY_CODE[code]
    except KeyError:
        raise ValueError(f"Unknown node kind code: {code}") from None


def encode_update(update: MemberUpdate) -> bytes:
    host = update.host.encode("utf-8")
    if len(host) > 255:
        raise ValueError("Host name too long")
    cpu = int(round(min(max(update.cpu_pct, 0.0), 100.0) * 100))
    return (
        _UPDATE.pack(
            _KIND_CODES[update.kind],
            update.node_id & 0xFFFFFFFF,
            update.sequence & 0xFFFFFFFFFFFFFFFF,
            int(update.status),
            min(max(update.active_calls, 0), 0xFFFFFFFF),
            cpu,
            update.port & 0xFFFF,
            len(host),
        )
        + host
    )


def build_message(message: GossipMessage) -> bytes:
    """Serialize a gossip message, dropping trailing updates that do not fit a datagram."""

    target_kind, target_id = message.target if message.target else (None, 0)
    body = b""
    count = 0
    for update in message.updates[:MAX_UPDATES]:
        chunk = encode_update(update)
        if _HEADER.size + len(body) + len(chunk) > MAX_DATAGRAM:
            break
        body += chunk
        count += 1

    header = _HEADER.pack(
        WIRE_VERSION,
        int(message.type),
        message.probe_seq & 0xFFFFFFFF,
        _KIND_CODES[message.sender[0]],
        message.sender[1] & 0xFFFFFFFF,
        _KIND_CODES[target_kind] if target_kind else 0,
        target_id & 0xFFFFFFFF,
        count,
    )
    return header + body


def parse_message(data: bytes) -> GossipMessage:
    """Parse a gossip datagram.

    Raises:
        ValueError: if the datagram is truncated or carries unknown codes.
    """

    if len(data) < _HEADER.size:
        raise ValueError("Gossip message too short")

    version, msg_type, probe_seq, sender_kind, sender_id, target_kind, target_id, count = (
        _HEADER.unpack_from(data, 0)
    )
    if version != WIRE_VERSION:
        raise ValueError(f"Unsupported gossip version: {version}")
    try:
        message_type = MessageType(msg_type)
    except ValueError:
        raise ValueError(f"Unknown message type: {msg_type}") from None

    target: NodeKey | None = None
    if target_kind:
        target = (_kind_from_code(target_kind), target_id)
    if message_type is MessageType.PING_REQ and target is None:
        raise ValueError("PING_REQ without target")

    offset = _HEADER.size
    updates: list[MemberUpdate] = []
    for _ in range(count):
        if len(data) < offset + _UPDATE.size:
            raise ValueError("Truncated member update")
        kind, node_id, sequence, status, calls, cpu, port, host_len = _UPDATE.unpack_from(data, offset)
        offset += _UPDATE.size
        if len(data) < offset + host_len:
            raise ValueError("Truncated member host")
        try:
            host = data[offset : offset + host_len].decode("utf-8")
            member_status = MemberStatus(status)
        except (UnicodeDecodeError, ValueError) as exc:
            raise ValueError(f"Malformed member update: {exc}") from exc
        offset += host_len
        updates.append(
            MemberUpdate(
                kind=_kind_from_code(kind),
                node_id=node_id,
                sequence=sequence,
                status=member_status,
                active_calls=calls,
                cpu_pct=cpu / 100.0,
                host=host,
                port=port,
            )
        )

    if offset != len(data):
        raise ValueError("Trailing bytes after member updates")

    return GossipMessage(
        type=message_type,
        probe_seq=probe_seq,
        sender=(_kind_from_code(sender_kind), sender_id),
        target=target,
        updates=tuple(updates),
    )
