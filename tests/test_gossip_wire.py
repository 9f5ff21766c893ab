from __future__ import annotations

import struct

import pytest

from fleet.nodes import MemberStatus, NodeKind
from fleet.wire import (
    MAX_DATAGRAM,
    GossipMessage,
    MessageType,
    build_message,
    parse_message,
)


def test_ping_req_carries_target_and_updates(make_update):
    message = GossipMessage(
        type=MessageType.PING_REQ,
        probe_seq=42,
        sender=(NodeKind.CONTROL_PLANE, 1),
        target=(NodeKind.SIP_ROUTER, 7),
        updates=(
            make_update(3, sequence=2**40, status=MemberStatus.SUSPECT, active_calls=12, cpu_pct=37.25),
            make_update(7, kind=NodeKind.SIP_ROUTER, host="router-7.internal", port=9000),
        ),
    )

    parsed = parse_message(build_message(message))

    assert parsed == message


def test_cpu_is_clamped_to_percentage(make_update):
    message = GossipMessage(
        type=MessageType.ACK,
        probe_seq=1,
        sender=(NodeKind.MEDIA_RELAY, 1),
        updates=(make_update(1, cpu_pct=250.0),),
    )

    parsed = parse_message(build_message(message))

    assert parsed.updates[0].cpu_pct == 100.0


def test_updates_beyond_one_datagram_are_dropped(make_update):
    updates = tuple(make_update(i, host="h" * 200) for i in range(20))
    message = GossipMessage(type=MessageType.PING, probe_seq=1, sender=(NodeKind.MEDIA_RELAY, 1), updates=updates)

    data = build_message(message)
    parsed = parse_message(data)

    assert len(data) <= MAX_DATAGRAM
    assert 0 < len(parsed.updates) < len(updates)
    assert parsed.updates == updates[: len(parsed.updates)]


def _ping(**overrides) -> bytes:
    fields = {
        "version": 1,
        "type": 1,
        "probe_seq": 1,
        "sender_kind": 1,
        "sender_id": 1,
        "target_kind": 0,
        "target_id": 0,
        "count": 0,
    }
    fields.update(overrides)
    return struct.pack("!BBIBIBIB", *fields.values())


@pytest.mark.parametrize(
    "data",
    [
        b"",
        b"\x01\x01",
        _ping(version=2),
        _ping(type=9),
        _ping(sender_kind=8),
        _ping(type=3),
        _ping(count=1),
        _ping() + b"\x00",
    ],
    ids=[
        "empty",
        "short-header",
        "unknown-version",
        "unknown-type",
        "unknown-sender-kind",
        "ping-req-without-target",
        "missing-update",
        "trailing-bytes",
    ],
)
def test_malformed_datagrams_are_rejected(data):
    with pytest.raises(ValueError):
        parse_message(data)


def test_update_with_unknown_status_is_rejected(make_update):
    data = bytearray(
        build_message(
            GossipMessage(
                type=MessageType.PING,
                probe_seq=1,
                sender=(NodeKind.MEDIA_RELAY, 1),
                updates=(make_update(2),),
            )
        )
    )
    # Header is 17 bytes; status follows kind (1), id (4) and sequence (8).
    data[17 + 13] = 9

    with pytest.raises(ValueError):
        parse_message(bytes(data))
