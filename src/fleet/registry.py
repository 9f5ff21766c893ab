"""Durable node registry backed by the relational store."""

from __future__ import annotations

import logging

from control.errors import RegistryUnavailableError
from db.models import MediaServer, SIPRouter
from db.repository import NodeModel, NodeRepository
from fleet.nodes import MemberStatus, Node, NodeKind

LOGGER = logging.getLogger(__name__)

_MODELS: dict[NodeKind, NodeModel] = {
    NodeKind.MEDIA_RELAY: MediaServer,
    NodeKind.SIP_ROUTER: SIPRouter,
}


def _model_for(kind: NodeKind) -> NodeModel:
    try:
        return _MODELS[kind]
    except KeyError:
        raise ValueError(f"{kind.value} nodes are not registered") from None


def _to_node(kind: NodeKind, row: MediaServer | SIPRouter) -> Node:
    return Node(
        id=row.id,
        kind=kind,
        public_address=row.ip_address,
        private_address=row.private_ip_address,
        rtc_optimized=bool(getattr(row, "webrtc_optimized", False)),
        region=row.region,
    )


class NodeRegistry:
    """Lists media relays and SIP routers with their durable attributes only.

    Never talks to the nodes themselves. Any storage failure or deadline overrun
    raises ``RegistryUnavailableError``.
    """

    def __init__(self, repository: NodeRepository) -> None:
        self._repository = repository

    async def list_nodes(
        self,
        kind: NodeKind,
        *,
        region: str | None = None,
        timeout: float | None = None,
    ) -> list[Node]:
        model = _model_for(kind)
        # Region only scopes SIP routers.
        region_filter = region if kind is NodeKind.SIP_ROUTER else None
        try:
            rows = await self._repository.list_nodes(model, region=region_filter, timeout=timeout)
        except RegistryUnavailableError as exc:
            LOGGER.error("Node registry lookup failed: %s", exc.detail)
            raise
        return [_to_node(kind, row) for row in rows]

    async def get_node(self, kind: NodeKind, node_id: int, *, timeout: float | None = None) -> Node | None:
        row = await self._repository.get_node(_model_for(kind), node_id, timeout=timeout)
        return _to_node(kind, row) if row is not None else None

    async def update_live_stats(
        self,
        kind: NodeKind,
        node_id: int,
        *,
        status: MemberStatus,
        active_calls: int,
        cpu_pct: float,
        timeout: float | None = None,
    ) -> None:
        await self._repository.update_live_stats(
            _model_for(kind),
            node_id,
            status=status.label,
            active_calls=active_calls,
            cpu_pct=cpu_pct,
            timeout=timeout,
        )
