from __future__ import annotations

import argparse
import asyncio
import contextlib
import itertools
import logging
import math
import os
import random
import socket
import time
from collections.abc import Callable, Iterable
from typing import Final

from config.settings import Settings, get_settings
from fleet.membership import MembershipTable
from fleet.nodes import MemberStatus, NodeKind, NodeKey
from fleet.wire import GossipMessage, MemberUpdate, MessageType, build_message, parse_message

LOGGER = logging.getLogger(__name__)

MAX_PIGGYBACK: Final[int] = 16
RECV_BUFFER: Final[int] = 2048

LoadProvider = Callable[[], tuple[int, float]]


class GossipNode:
    """SWIM-style UDP gossip member.

    Every probe interval the node:
    - bumps its own sequence number and refreshes its load metrics,
    - advances the membership timers (alive -> suspect -> dead),
    - probes one member with PING, falling back to PING_REQ through up to
      ``indirect_probes`` other members, and marks it suspect if nobody answers.

    Every message piggybacks this node's own state plus recently changed member
    updates. Lost or malformed datagrams are dropped silently.
    """

    def __init__(
        self,
        *,
        kind: NodeKind,
        node_id: int,
        table: MembershipTable,
        host: str,
        port: int,
        advertise_host: str,
        probe_interval: float,
        probe_timeout: float,
        indirect_probes: int = 3,
        retransmit_multiplier: int = 3,
        load_provider: LoadProvider | None = None,
    ) -> None:
        self._kind = kind
        self._node_id = node_id
        self._table = table
        self._host = host
        self._port = port
        self._advertise_host = advertise_host
        self._probe_interval = probe_interval
        self._probe_timeout = probe_timeout
        self._indirect_probes = indirect_probes
        self._retransmit_multiplier = retransmit_multiplier
        self._load_provider = load_provider

        # Seeded from the wall clock so a restarted node outranks its previous life.
        self._sequence = time.time_ns() // 1_000_000
        self._active_calls = 0
        self._cpu_pct = 0.0

        self._sock: socket.socket | None = None
        self._tasks: list[asyncio.Task] = []
        self._probe_ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[bool]] = {}
        self._relays: dict[int, tuple[tuple[str, int], int]] = {}
        self._broadcasts: dict[NodeKey, tuple[MemberUpdate, int]] = {}
        self._probe_order: list[NodeKey] = []

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        kind: NodeKind,
        node_id: int,
        table: MembershipTable,
        load_provider: LoadProvider | None = None,
    ) -> GossipNode:
        return cls(
            kind=kind,
            node_id=node_id,
            table=table,
            host=settings.gossip_host,
            port=settings.gossip_port,
            advertise_host=settings.gossip_advertise_host,
            probe_interval=settings.probe_interval_seconds,
            probe_timeout=settings.probe_timeout_seconds,
            indirect_probes=settings.indirect_probe_count,
            retransmit_multiplier=settings.gossip_retransmit_multiplier,
            load_provider=load_provider,
        )

    @property
    def key(self) -> NodeKey:
        return (self._kind, self._node_id)

    @property
    def port(self) -> int:
        return self._port

    @property
    def sequence(self) -> int:
        return self._sequence

    @property
    def table(self) -> MembershipTable:
        return self._table

    def report_load(self, active_calls: int, cpu_pct: float) -> None:
        self._active_calls = max(0, int(active_calls))
        self._cpu_pct = min(max(float(cpu_pct), 0.0), 100.0)

    def self_update(self) -> MemberUpdate:
        return MemberUpdate(
            kind=self._kind,
            node_id=self._node_id,
            sequence=self._sequence,
            status=MemberStatus.ALIVE,
            active_calls=self._active_calls,
            cpu_pct=self._cpu_pct,
            host=self._advertise_host,
            port=self._port,
        )

    def disseminate(self, update: MemberUpdate) -> None:
        """Queue an update for piggybacking on the next outgoing messages."""

        self._broadcasts[update.key] = (update, 0)

    async def start(self, seeds: Iterable[tuple[str, int]] = ()) -> None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.bind((self._host, self._port))
        sock.setblocking(False)
        self._sock = sock
        self._port = sock.getsockname()[1]

        LOGGER.info(
            "Gossip member %s/%s listening on %s:%s",
            self._kind.value,
            self._node_id,
            self._host,
            self._port,
        )

        self._tasks = [
            asyncio.create_task(self._receive_loop(), name="gossip-receive"),
            asyncio.create_task(self._probe_loop(), name="gossip-probe"),
        ]
        await self.join(seeds)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        for future in self._pending.values():
            future.cancel()
        self._pending.clear()
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    async def join(self, seeds: Iterable[tuple[str, int]]) -> None:
        """Announce ourselves to seed addresses; their ACKs populate the table."""

        for address in seeds:
            if address == (self._advertise_host, self._port):
                continue
            await self._send(
                GossipMessage(
                    type=MessageType.PING,
                    probe_seq=self._next_probe_id(),
                    sender=self.key,
                    updates=self._piggyback(),
                ),
                address,
            )

    async def _receive_loop(self) -> None:
        loop = asyncio.get_running_loop()
        sock = self._sock
        if sock is None:
            return
        while True:
            try:
                data, addr = await loop.sock_recvfrom(sock, RECV_BUFFER)
            except OSError as exc:
                LOGGER.debug("Gossip receive failed: %s", exc)
                continue
            await self.handle_datagram(data, (addr[0], addr[1]))

    async def handle_datagram(self, data: bytes, addr: tuple[str, int]) -> None:
        try:
            message = parse_message(data)
        except ValueError as exc:
            LOGGER.debug("Dropping malformed gossip datagram from %s: %s", addr, exc)
            return

        self._merge(message.updates)
        if message.sender != self.key:
            self._table.record_contact(message.sender)

        if message.type is MessageType.PING:
            await self._send(
                GossipMessage(
                    type=MessageType.ACK,
                    probe_seq=message.probe_seq,
                    sender=self.key,
                    updates=self._piggyback(),
                ),
                addr,
            )
        elif message.type is MessageType.ACK:
            future = self._pending.get(message.probe_seq)
            if future is not None and not future.done():
                future.set_result(True)
            relay = self._relays.pop(message.probe_seq, None)
            if relay is not None:
                requester, requester_seq = relay
                await self._send(
                    GossipMessage(
                        type=MessageType.ACK,
                        probe_seq=requester_seq,
                        sender=self.key,
                        updates=self._piggyback(),
                    ),
                    requester,
                )
        elif message.type is MessageType.PING_REQ and message.target is not None:
            await self._relay_probe(message.target, addr, message.probe_seq)

    async def _relay_probe(self, target: NodeKey, requester: tuple[str, int], requester_seq: int) -> None:
        record = self._table.get(target)
        if record is None or record.status is MemberStatus.DEAD:
            return
        probe_id = self._next_probe_id()
        self._relays[probe_id] = (requester, requester_seq)
        asyncio.get_running_loop().call_later(self._probe_timeout, self._relays.pop, probe_id, None)
        await self._send(
            GossipMessage(
                type=MessageType.PING,
                probe_seq=probe_id,
                sender=self.key,
                updates=self._piggyback(),
            ),
            record.address,
        )

    def _merge(self, updates: Iterable[MemberUpdate]) -> None:
        for update in updates:
            if update.key == self.key:
                if update.status is not MemberStatus.ALIVE and update.sequence >= self._sequence:
                    self._refute(update)
                continue
            if self._table.apply(update):
                stored = self._table.get(update.key)
                if stored is not None:
                    self.disseminate(stored.to_update())

    def _refute(self, update: MemberUpdate) -> None:
        LOGGER.warning(
            "Refuting %s claim about ourselves (seq=%s)",
            update.status.label,
            update.sequence,
        )
        self._sequence = update.sequence + 1

    async def _probe_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            started = loop.time()
            try:
                await self.probe_round()
            except Exception:
                LOGGER.exception("Gossip probe round failed")
            elapsed = loop.time() - started
            await asyncio.sleep(max(0.0, self._probe_interval - elapsed))

    async def probe_round(self) -> None:
        self._sequence += 1
        if self._load_provider is not None:
            calls, cpu = self._load_provider()
            self.report_load(calls, cpu)

        for record in self._table.expire():
            self.disseminate(record.to_update())

        target = self._next_probe_target()
        if target is None:
            return
        if await self._probe(target):
            self._table.record_contact(target)
            return

        suspected = self._table.suspect(target)
        if suspected is not None:
            self.disseminate(suspected.to_update())

    async def _probe(self, target: NodeKey) -> bool:
        record = self._table.get(target)
        if record is None:
            return False

        probe_id = self._next_probe_id()
        direct = GossipMessage(
            type=MessageType.PING,
            probe_seq=probe_id,
            sender=self.key,
            updates=self._piggyback(),
        )
        if await self._exchange(probe_id, direct, [record.address]):
            return True

        helpers = [
            member.address
            for member in self._table
            if member.key != target and member.status is MemberStatus.ALIVE
        ]
        if not helpers or self._indirect_probes <= 0:
            return False
        helpers = random.sample(helpers, min(self._indirect_probes, len(helpers)))

        probe_id = self._next_probe_id()
        indirect = GossipMessage(
            type=MessageType.PING_REQ,
            probe_seq=probe_id,
            sender=self.key,
            target=target,
            updates=self._piggyback(),
        )
        LOGGER.debug("Direct probe of %s/%s timed out; asking %s helpers", target[0].value, target[1], len(helpers))
        return await self._exchange(probe_id, indirect, helpers)

    async def _exchange(self, probe_id: int, message: GossipMessage, addresses: list[tuple[str, int]]) -> bool:
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._pending[probe_id] = future
        try:
            for address in addresses:
                await self._send(message, address)
            return await asyncio.wait_for(future, timeout=self._probe_timeout)
        except asyncio.TimeoutError:
            return False
        finally:
            self._pending.pop(probe_id, None)

    def _next_probe_target(self) -> NodeKey | None:
        """Round-robin over live members, reshuffled at the end of each pass."""

        while self._probe_order:
            key = self._probe_order.pop()
            record = self._table.get(key)
            if record is not None and record.status is not MemberStatus.DEAD:
                return key

        order = [
            record.key
            for record in self._table
            if record.key != self.key and record.status is not MemberStatus.DEAD
        ]
        if not order:
            return None
        random.shuffle(order)
        self._probe_order = order
        return self._probe_order.pop()

    def _piggyback(self) -> tuple[MemberUpdate, ...]:
        limit = self._retransmit_multiplier * math.ceil(math.log2(len(self._table) + 2))
        pending = sorted(self._broadcasts.items(), key=lambda item: item[1][1])
        selected: list[MemberUpdate] = [self.self_update()]
        for key, (update, sent) in pending[: MAX_PIGGYBACK - 1]:
            selected.append(update)
            if sent + 1 >= limit:
                del self._broadcasts[key]
            else:
                self._broadcasts[key] = (update, sent + 1)
        return tuple(selected)

    def _next_probe_id(self) -> int:
        return next(self._probe_ids) & 0xFFFFFFFF

    async def _send(self, message: GossipMessage, address: tuple[str, int]) -> None:
        if self._sock is None:
            return
        try:
            await asyncio.get_running_loop().sock_sendto(self._sock, build_message(message), address)
        except OSError as exc:
            LOGGER.debug("Gossip send to %s failed: %s", address, exc)


def _system_load() -> tuple[int, float]:
    load1, _, _ = os.getloadavg()
    cpus = os.cpu_count() or 1
    return 0, min(100.0, load1 / cpus * 100.0)


def _parse_seed(value: str) -> tuple[str, int]:
    host, _, port = value.rpartition(":")
    if not host or not port.isdigit():
        raise argparse.ArgumentTypeError(f"Seed must be host:port, got {value!r}")
    return host, int(port)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fleet gossip agent for media relays and SIP routers")
    parser.add_argument(
        "--kind",
        choices=[NodeKind.MEDIA_RELAY.value, NodeKind.SIP_ROUTER.value],
        default=os.getenv("GOSSIP_NODE_KIND", NodeKind.MEDIA_RELAY.value),
    )
    parser.add_argument("--node-id", type=int, default=int(os.getenv("GOSSIP_NODE_ID", "0")))
    parser.add_argument("--host", default=os.getenv("GOSSIP_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("GOSSIP_PORT", "7946")))
    parser.add_argument("--advertise-host", default=os.getenv("GOSSIP_ADVERTISE_HOST", "127.0.0.1"))
    parser.add_argument("--seed", action="append", type=_parse_seed, default=[])
    return parser.parse_args()


async def _amain() -> None:
    args = _parse_args()
    settings = get_settings()
    table = MembershipTable.from_settings(settings)
    node = GossipNode(
        kind=NodeKind(args.kind),
        node_id=args.node_id,
        table=table,
        host=args.host,
        port=args.port,
        advertise_host=args.advertise_host,
        probe_interval=settings.probe_interval_seconds,
        probe_timeout=settings.probe_timeout_seconds,
        indirect_probes=settings.indirect_probe_count,
        retransmit_multiplier=settings.gossip_retransmit_multiplier,
        load_provider=_system_load,
    )
    await node.start(args.seed)
    try:
        await asyncio.Event().wait()
    finally:
        await node.stop()


def main() -> None:
    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    asyncio.run(_amain())


if __name__ == "__main__":
    main()
