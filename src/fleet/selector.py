from __future__ import annotations

import logging
from dataclasses import replace

from fleet.membership import MembershipTable
from fleet.nodes import LiveStats, NoCandidateAvailable, Node, NodeConstraints, NodeKind
from fleet.registry import NodeRegistry

LOGGER = logging.getLogger(__name__)


def _rank(node: Node, stats: LiveStats, prefer_rtc: bool) -> tuple[int, int, float, int]:
    """A preferred capability outranks load; then fewest calls, lowest CPU, lowest id."""
    mismatch = 1 if prefer_rtc and not node.rtc_optimized else 0
    return (mismatch, stats.active_calls, stats.cpu_pct, node.id)


class LoadBalancingSelector:
    """Pick the least loaded live node for a new call.

    Candidates are registry nodes the membership table reports as alive, or as
    suspect but still inside the staleness window. Ranking: capability match
    (when preferred), then fewest active calls, then lowest CPU, then lowest id.
    Selection is a pure read over current state.
    """

    def __init__(self, registry: NodeRegistry, table: MembershipTable) -> None:
        self._registry = registry
        self._table = table

    async def select_node(
        self,
        kind: NodeKind,
        constraints: NodeConstraints | None = None,
        *,
        timeout: float | None = None,
    ) -> Node | NoCandidateAvailable:
        constraints = constraints or NodeConstraints()
        nodes = await self._registry.list_nodes(kind, region=constraints.region, timeout=timeout)
        if not nodes:
            return NoCandidateAvailable(kind, "no registered nodes match the constraints")

        live = self._table.live_view(kind)
        candidates = [replace(node, live=live[node.id]) for node in nodes if node.id in live]
        if not candidates:
            return NoCandidateAvailable(kind, "no live nodes")

        if constraints.rtc_optimized and constraints.require_capability:
            candidates = [node for node in candidates if node.rtc_optimized]
            if not candidates:
                return NoCandidateAvailable(kind, "no live node with the required capability")

        prefer_rtc = constraints.rtc_optimized and not constraints.require_capability
        chosen = min(candidates, key=lambda node: _rank(node, live[node.id], prefer_rtc))
        LOGGER.debug(
            "Selected %s %s (calls=%s cpu=%.1f) out of %s candidates",
            kind.value,
            chosen.id,
            chosen.live.active_calls if chosen.live else None,
            chosen.live.cpu_pct if chosen.live else 0.0,
            len(candidates),
        )
        return chosen
