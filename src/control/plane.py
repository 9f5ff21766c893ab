"""Explicitly constructed control plane: registry, membership, selector and admission.

Built once at process start and shared read-only afterwards; the gossip layer is
the only writer of the membership table.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from admission.caller_id import CallerIdentityValidator, Tenant
from admission.cidr import AdmissionGate
from admission.results import AdmissionOutcome, AdmissionResult, ValidationOutcome, ValidationResult
from config.settings import Settings
from control.errors import AdmissionCheckFailedError, RegistryUnavailableError, UnknownNodeError, UnknownTenantError
from db.base import build_engine, build_session_factory, init_db
from db.models import Workspace
from db.repository import NodeRepository, NumberRepository, WhitelistRepository
from fleet.gossip import GossipNode
from fleet.membership import MemberRecord, MembershipTable
from fleet.nodes import MemberStatus, NoCandidateAvailable, Node, NodeConstraints, NodeKind
from fleet.registry import NodeRegistry
from fleet.selector import LoadBalancingSelector
from fleet.wire import MemberUpdate

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CallDecision:
    """Outcome of a call admission flow; ``stage`` names the step that decided."""

    admitted: bool
    stage: str
    admission: AdmissionResult | None = None
    validation: ValidationResult | None = None
    node: Node | None = None
    no_candidate: NoCandidateAvailable | None = None


def tenant_from_workspace(workspace: Workspace, default_region: str = "US") -> Tenant:
    return Tenant(
        id=workspace.id,
        name=workspace.name,
        default_region=(workspace.default_region or default_region).upper(),
        verify_caller_id=bool(workspace.verify_caller_id),
    )


class ControlPlane:
    def __init__(
        self,
        *,
        settings: Settings,
        registry: NodeRegistry,
        table: MembershipTable,
        selector: LoadBalancingSelector,
        gate: AdmissionGate,
        validator: CallerIdentityValidator,
        numbers: NumberRepository,
        engine: AsyncEngine | None = None,
        gossip: GossipNode | None = None,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.table = table
        self.selector = selector
        self.gate = gate
        self.validator = validator
        self.numbers = numbers
        self.gossip = gossip
        self._engine = engine
        self._tasks: list[asyncio.Task] = []

    @classmethod
    def build(cls, settings: Settings, *, clock: Callable[[], float] = time.monotonic) -> ControlPlane:
        engine = build_engine(settings)
        session_factory = build_session_factory(engine)
        timeout = settings.lookup_timeout_seconds

        registry = NodeRegistry(NodeRepository(session_factory, timeout=timeout))
        numbers = NumberRepository(session_factory, timeout=timeout)
        table = MembershipTable.from_settings(settings, clock=clock)
        gossip = None
        if settings.gossip_enabled:
            gossip = GossipNode.from_settings(
                settings,
                kind=NodeKind.CONTROL_PLANE,
                node_id=settings.control_node_id,
                table=table,
            )

        return cls(
            settings=settings,
            registry=registry,
            table=table,
            selector=LoadBalancingSelector(registry, table),
            gate=AdmissionGate(
                WhitelistRepository(session_factory, timeout=timeout),
                region=settings.default_number_region,
            ),
            validator=CallerIdentityValidator(numbers, verify_caller_id=settings.validate_caller_id),
            numbers=numbers,
            engine=engine,
            gossip=gossip,
        )

    async def start(self) -> None:
        if self._engine is not None:
            await init_db(self._engine, self.settings)
        if self.gossip is not None:
            await self.gossip.start(await self._seed_addresses())
        else:
            # Push-only mode: nobody else advances the membership timers.
            self._tasks.append(asyncio.create_task(self._expiry_loop(), name="membership-expiry"))
        if self.settings.live_stats_flush_seconds > 0:
            self._tasks.append(asyncio.create_task(self._flush_loop(), name="live-stats-flush"))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        try:
            results = await asyncio.gather(*self._tasks, return_exceptions=True)
            for task, result in zip(self._tasks, results):
                if isinstance(result, Exception):
                    LOGGER.error("Background task %s had failed: %r", task.get_name(), result)
        finally:
            self._tasks = []
            if self.gossip is not None:
                await self.gossip.stop()
            if self._engine is not None:
                await self._engine.dispose()

    async def load_tenant(self, workspace_id: int) -> Tenant:
        workspace = await self.numbers.get_workspace(workspace_id)
        if workspace is None:
            raise UnknownTenantError(f"Workspace {workspace_id} does not exist.")
        return tenant_from_workspace(workspace, self.settings.default_number_region)

    async def admit_inbound(
        self,
        inbound_number: str,
        source_ip: str,
        caller_number: str,
        constraints: NodeConstraints | None = None,
    ) -> CallDecision:
        """Carrier IP check, then the caller against the DID owner's blocklist, then placement."""

        admission = await self.gate.authorize(inbound_number, source_ip)
        if not admission.authorized:
            return CallDecision(admitted=False, stage="admission", admission=admission)

        try:
            owner = await self.numbers.get_did_owner(admission.did or inbound_number.strip())
        except AdmissionCheckFailedError as exc:
            failed = AdmissionResult(AdmissionOutcome.CHECK_FAILED, did=admission.did, detail=exc.detail)
            return CallDecision(admitted=False, stage="admission", admission=failed)
        if owner is None:
            denied = AdmissionResult(
                AdmissionOutcome.DENIED,
                did=admission.did,
                detail="inbound number is not provisioned",
            )
            return CallDecision(admitted=False, stage="admission", admission=denied)

        validation = await self.validator.validate(
            caller_number,
            tenant_from_workspace(owner, self.settings.default_number_region),
            check_ownership=False,
        )
        if not validation.valid:
            return CallDecision(admitted=False, stage="caller", admission=admission, validation=validation)

        return await self._place(constraints, admission=admission, validation=validation)

    async def admit_outbound(
        self,
        workspace_id: int,
        caller_number: str,
        constraints: NodeConstraints | None = None,
    ) -> CallDecision:
        """Caller-ID ownership check, then placement.

        An unknown workspace raises ``UnknownTenantError``; a store fault while
        loading it is a ``check-failed`` decision, as in the inbound flow.
        """

        try:
            tenant = await self.load_tenant(workspace_id)
        except AdmissionCheckFailedError as exc:
            failed = ValidationResult(ValidationOutcome.CHECK_FAILED, reason=exc.detail)
            return CallDecision(admitted=False, stage="caller", validation=failed)
        validation = await self.validator.validate(caller_number, tenant)
        if not validation.valid:
            return CallDecision(admitted=False, stage="caller", validation=validation)
        return await self._place(constraints, validation=validation)

    async def _place(
        self,
        constraints: NodeConstraints | None,
        *,
        admission: AdmissionResult | None = None,
        validation: ValidationResult | None = None,
    ) -> CallDecision:
        placed = await self.selector.select_node(NodeKind.MEDIA_RELAY, constraints)
        if isinstance(placed, NoCandidateAvailable):
            LOGGER.info("No media relay available: %s", placed.reason)
            return CallDecision(
                admitted=False,
                stage="placement",
                admission=admission,
                validation=validation,
                no_candidate=placed,
            )
        return CallDecision(
            admitted=True,
            stage="placement",
            admission=admission,
            validation=validation,
            node=placed,
        )

    async def report(
        self,
        kind: NodeKind,
        node_id: int,
        *,
        sequence: int,
        active_calls: int,
        cpu_pct: float,
        status: MemberStatus = MemberStatus.ALIVE,
    ) -> bool:
        """Apply a node's self-reported liveness and load. Returns True if it was newer."""

        node = await self.registry.get_node(kind, node_id)
        if node is None:
            raise UnknownNodeError(f"{kind.value} {node_id} is not registered.")

        update = MemberUpdate(
            kind=kind,
            node_id=node_id,
            sequence=sequence,
            status=status,
            active_calls=active_calls,
            cpu_pct=cpu_pct,
            host=node.private_address or node.public_address,
            port=self.settings.gossip_port,
        )
        changed = self.table.apply(update)
        if changed and self.gossip is not None:
            stored = self.table.get(update.key)
            if stored is not None:
                self.gossip.disseminate(stored.to_update())
        return changed

    def members(self) -> list[MemberRecord]:
        return sorted(self.table, key=lambda record: (record.kind.value, record.node_id))

    async def _seed_addresses(self) -> list[tuple[str, int]]:
        seeds: list[tuple[str, int]] = []
        for kind in (NodeKind.MEDIA_RELAY, NodeKind.SIP_ROUTER):
            try:
                nodes = await self.registry.list_nodes(kind)
            except RegistryUnavailableError:
                LOGGER.warning("Could not seed gossip from the %s registry", kind.value)
                continue
            seeds.extend((node.private_address or node.public_address, self.settings.gossip_port) for node in nodes)
        return seeds

    async def flush_live_stats(self) -> int:
        """Mirror the live view into the node tables. Returns the number of rows written."""

        written = 0
        for record in self.table:
            if not record.kind.placeable:
                continue
            await self.registry.update_live_stats(
                record.kind,
                record.node_id,
                status=record.status,
                active_calls=record.active_calls,
                cpu_pct=record.cpu_pct,
            )
            written += 1
        return written

    async def _expiry_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.probe_interval_seconds)
            self.table.expire()

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.live_stats_flush_seconds)
            try:
                await self.flush_live_stats()
            except RegistryUnavailableError as exc:
                LOGGER.warning("Live stats flush skipped: %s", exc.detail)
