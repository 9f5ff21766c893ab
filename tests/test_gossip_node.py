from __future__ import annotations

import asyncio

from fleet.gossip import GossipNode
from fleet.membership import MembershipTable
from fleet.nodes import MemberStatus, NodeKind
from fleet.wire import GossipMessage, MessageType, build_message


def _node(
    table: MembershipTable,
    *,
    node_id: int = 1,
    probe_timeout: float = 0.05,
    probe_interval: float = 0.2,
) -> GossipNode:
    return GossipNode(
        kind=NodeKind.MEDIA_RELAY,
        node_id=node_id,
        table=table,
        host="127.0.0.1",
        port=0,
        advertise_host="127.0.0.1",
        probe_interval=probe_interval,
        probe_timeout=probe_timeout,
        indirect_probes=2,
    )


class _Outbox:
    def __init__(self) -> None:
        self.sent: list[tuple[GossipMessage, tuple[str, int]]] = []

    async def __call__(self, message: GossipMessage, address: tuple[str, int]) -> None:
        self.sent.append((message, address))


def test_ping_is_acked_and_sender_learned(table, make_update):
    node = _node(table)
    outbox = _Outbox()
    node._send = outbox

    ping = GossipMessage(
        type=MessageType.PING,
        probe_seq=77,
        sender=(NodeKind.MEDIA_RELAY, 2),
        updates=(make_update(2, sequence=10, active_calls=4, host="10.0.0.2", port=8000),),
    )

    asyncio.run(node.handle_datagram(build_message(ping), ("10.0.0.2", 8000)))

    record = table.get((NodeKind.MEDIA_RELAY, 2))
    assert record is not None
    assert record.active_calls == 4

    assert len(outbox.sent) == 1
    reply, address = outbox.sent[0]
    assert address == ("10.0.0.2", 8000)
    assert reply.type is MessageType.ACK
    assert reply.probe_seq == 77
    assert reply.updates[0] == node.self_update()


def test_malformed_datagram_is_dropped(table):
    node = _node(table)
    outbox = _Outbox()
    node._send = outbox

    asyncio.run(node.handle_datagram(b"\x01garbage", ("10.0.0.2", 8000)))

    assert outbox.sent == []
    assert len(table) == 0


def test_suspicion_about_self_is_refuted(table, make_update):
    node = _node(table)
    node._send = _Outbox()
    rumour = make_update(1, sequence=node.sequence + 5, status=MemberStatus.SUSPECT)
    message = GossipMessage(type=MessageType.ACK, probe_seq=1, sender=(NodeKind.MEDIA_RELAY, 3), updates=(rumour,))

    asyncio.run(node.handle_datagram(build_message(message), ("10.0.0.3", 7946)))

    assert node.sequence == rumour.sequence + 1
    assert node.self_update().status is MemberStatus.ALIVE
    assert table.get(node.key) is None


def test_stale_suspicion_about_self_is_ignored(table, make_update):
    node = _node(table)
    node._send = _Outbox()
    before = node.sequence
    rumour = make_update(1, sequence=before - 1, status=MemberStatus.DEAD)
    message = GossipMessage(type=MessageType.ACK, probe_seq=1, sender=(NodeKind.MEDIA_RELAY, 3), updates=(rumour,))

    asyncio.run(node.handle_datagram(build_message(message), ("10.0.0.3", 7946)))

    assert node.sequence == before


def test_unanswered_probe_marks_target_suspect(table, make_update):
    node = _node(table)
    outbox = _Outbox()
    node._send = outbox
    table.apply(make_update(2, sequence=1, host="10.0.0.2"))
    table.apply(make_update(3, sequence=1, host="10.0.0.3"))

    asyncio.run(node.probe_round())

    suspects = [record for record in table if record.status is MemberStatus.SUSPECT]
    assert len(suspects) == 1
    # One direct PING, then a PING_REQ through the remaining alive member.
    assert [message.type for message, _ in outbox.sent] == [MessageType.PING, MessageType.PING_REQ]
    assert outbox.sent[1][0].target == suspects[0].key


def test_probe_round_bumps_sequence_and_reads_load(table):
    node = _node(table)
    node._load_provider = lambda: (7, 42.0)
    before = node.sequence

    asyncio.run(node.probe_round())

    update = node.self_update()
    assert update.sequence == before + 1
    assert update.active_calls == 7
    assert update.cpu_pct == 42.0


def test_two_members_converge_over_udp():
    async def scenario() -> tuple[MembershipTable, MembershipTable, GossipNode, GossipNode]:
        tables = [
            MembershipTable(suspect_after=30, suspicion_timeout=30, staleness_window=60, dead_retention=60)
            for _ in range(2)
        ]
        first = _node(tables[0], node_id=1, probe_timeout=0.1)
        second = _node(tables[1], node_id=2, probe_timeout=0.1)
        second.report_load(3, 12.5)

        await first.start()
        await second.start([("127.0.0.1", first.port)])
        try:
            for _ in range(100):
                if len(tables[0]) and len(tables[1]):
                    break
                await asyncio.sleep(0.05)
        finally:
            await second.stop()
            await first.stop()
        return tables[0], tables[1], first, second

    first_table, second_table, first, second = asyncio.run(scenario())

    learned = first_table.get(second.key)
    assert learned is not None
    assert learned.status is MemberStatus.ALIVE
    assert learned.active_calls == 3
    assert learned.address == ("127.0.0.1", second.port)
    assert second_table.get(first.key) is not None


def test_helper_relays_ack_when_direct_path_fails(make_update):
    async def scenario():
        tables = [
            MembershipTable(suspect_after=30, suspicion_timeout=30, staleness_window=60, dead_retention=60)
            for _ in range(3)
        ]
        observer = _node(tables[0], node_id=1, probe_timeout=0.3, probe_interval=30)
        helper = _node(tables[1], node_id=2, probe_timeout=0.3, probe_interval=30)
        target = _node(tables[2], node_id=3, probe_timeout=0.3, probe_interval=30)
        target.report_load(6, 20.0)

        nodes = (observer, helper, target)
        for node in nodes:
            await node.start()
        try:
            # Let the first rounds run against empty tables.
            await asyncio.sleep(0.05)

            # The observer only knows a dead port for the target; the helper knows the real one.
            observer.table.apply(make_update(3, sequence=1, host="127.0.0.1", port=1))
            observer.table.apply(make_update(2, sequence=1, host="127.0.0.1", port=helper.port))
            helper.table.apply(make_update(3, sequence=1, host="127.0.0.1", port=target.port))
            observer.table.suspect(target.key)

            reached = await observer._probe(target.key)
            return reached, observer.table.get(target.key), target.port
        finally:
            for node in reversed(nodes):
                await node.stop()

    reached, record, target_port = asyncio.run(scenario())

    assert reached is True
    assert record is not None
    assert record.status is MemberStatus.ALIVE
    assert record.address == ("127.0.0.1", target_port)
    assert record.active_calls == 6
