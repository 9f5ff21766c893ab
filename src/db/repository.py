"""Repositories for the durable lookups the control plane consumes.

Every lookup runs under a deadline. Timeouts and storage errors surface as the
repository's fault type, never as an empty result.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from control.errors import AdmissionCheckFailedError, ControlPlaneError, RegistryUnavailableError
from db.models import (
    BlockedNumber,
    BYOCarrier,
    BYOCarrierIP,
    BYODIDNumber,
    DIDNumber,
    MediaServer,
    SIPProvider,
    SIPProviderWhitelistIP,
    SIPRouter,
    Workspace,
)

T = TypeVar("T")

NodeModel = type[MediaServer] | type[SIPRouter]


class _GuardedRepository:
    fault: type[ControlPlaneError] = ControlPlaneError

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, timeout: float) -> None:
        self._session_factory = session_factory
        self._timeout = timeout

    async def _guard(self, operation: Awaitable[T], what: str, timeout: float | None) -> T:
        deadline = self._timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(operation, timeout=deadline)
        except asyncio.TimeoutError as exc:
            raise self.fault(f"{what} timed out after {deadline:.2f}s") from exc
        except (SQLAlchemyError, OSError) as exc:
            raise self.fault(f"{what} failed: {exc}") from exc


class NodeRepository(_GuardedRepository):
    """Durable media-relay and SIP-router attributes."""

    fault = RegistryUnavailableError

    async def list_nodes(
        self,
        model: NodeModel,
        *,
        region: str | None = None,
        timeout: float | None = None,
    ) -> list[MediaServer | SIPRouter]:
        async def _query() -> list[MediaServer | SIPRouter]:
            async with self._session_factory() as session:
                query = select(model).order_by(model.id)
                if region is not None:
                    query = query.where(model.region == region)
                result = await session.execute(query)
                return list(result.scalars().all())

        return await self._guard(_query(), f"listing {model.__tablename__}", timeout)

    async def get_node(
        self,
        model: NodeModel,
        node_id: int,
        *,
        timeout: float | None = None,
    ) -> MediaServer | SIPRouter | None:
        async def _query() -> MediaServer | SIPRouter | None:
            async with self._session_factory() as session:
                return await session.get(model, node_id)

        return await self._guard(_query(), f"loading {model.__tablename__} {node_id}", timeout)

    async def update_live_stats(
        self,
        model: NodeModel,
        node_id: int,
        *,
        status: str,
        active_calls: int,
        cpu_pct: float,
        timeout: float | None = None,
    ) -> None:
        async def _write() -> None:
            async with self._session_factory() as session:
                await session.execute(
                    update(model)
                    .where(model.id == node_id)
                    .values(
                        live_status=status,
                        live_call_count=active_calls,
                        live_cpu_pct_used=cpu_pct,
                    )
                )
                await session.commit()

        await self._guard(_write(), f"updating live stats of {model.__tablename__} {node_id}", timeout)


class WhitelistRepository(_GuardedRepository):
    """Carrier IP whitelists, scoped to the workspace that owns the DID."""

    fault = AdmissionCheckFailedError

    async def provider_entries(self, did: str, *, timeout: float | None = None) -> list[tuple[str, str]]:
        async def _query() -> list[tuple[str, str]]:
            async with self._session_factory() as session:
                query = (
                    select(SIPProviderWhitelistIP.ip_address, SIPProviderWhitelistIP.ip_address_range)
                    .join(SIPProvider, SIPProvider.id == SIPProviderWhitelistIP.provider_id)
                    .join(DIDNumber, DIDNumber.workspace_id == SIPProviderWhitelistIP.workspace_id)
                    .where(or_(DIDNumber.api_number == did, DIDNumber.number == did))
                    .order_by(SIPProviderWhitelistIP.id)
                )
                result = await session.execute(query)
                return [(ip, ip_range or "") for ip, ip_range in result.all()]

        return await self._guard(_query(), f"loading provider whitelist for {did}", timeout)

    async def byo_carrier_entries(self, did: str, *, timeout: float | None = None) -> list[tuple[str, str]]:
        async def _query() -> list[tuple[str, str]]:
            async with self._session_factory() as session:
                query = (
                    select(BYOCarrierIP.ip, BYOCarrierIP.range)
                    .join(BYOCarrier, BYOCarrier.id == BYOCarrierIP.carrier_id)
                    .join(BYODIDNumber, BYODIDNumber.workspace_id == BYOCarrier.workspace_id)
                    .where(BYODIDNumber.number == did)
                    .order_by(BYOCarrierIP.id)
                )
                result = await session.execute(query)
                return [(ip, ip_range or "") for ip, ip_range in result.all()]

        return await self._guard(_query(), f"loading BYO carrier whitelist for {did}", timeout)


class NumberRepository(_GuardedRepository):
    """Tenants, their provisioned numbers and their blocklists."""

    fault = AdmissionCheckFailedError

    async def get_workspace(self, workspace_id: int, *, timeout: float | None = None) -> Workspace | None:
        async def _query() -> Workspace | None:
            async with self._session_factory() as session:
                return await session.get(Workspace, workspace_id)

        return await self._guard(_query(), f"loading workspace {workspace_id}", timeout)

    async def get_did_owner(self, did: str, *, timeout: float | None = None) -> Workspace | None:
        async def _query() -> Workspace | None:
            async with self._session_factory() as session:
                owned = (
                    select(Workspace)
                    .join(DIDNumber, DIDNumber.workspace_id == Workspace.id)
                    .where(or_(DIDNumber.api_number == did, DIDNumber.number == did))
                    .limit(1)
                )
                workspace = (await session.execute(owned)).scalars().first()
                if workspace is not None:
                    return workspace
                brought = (
                    select(Workspace)
                    .join(BYODIDNumber, BYODIDNumber.workspace_id == Workspace.id)
                    .where(BYODIDNumber.number == did)
                    .limit(1)
                )
                return (await session.execute(brought)).scalars().first()

        return await self._guard(_query(), f"resolving owner of {did}", timeout)

    async def is_blocked(self, workspace_id: int, number: str, *, timeout: float | None = None) -> bool:
        async def _query() -> bool:
            async with self._session_factory() as session:
                query = (
                    select(BlockedNumber.id)
                    .where(BlockedNumber.workspace_id == workspace_id, BlockedNumber.number == number)
                    .limit(1)
                )
                return (await session.execute(query)).first() is not None

        return await self._guard(_query(), f"checking blocklist of workspace {workspace_id}", timeout)

    async def owns_number(self, workspace_id: int, number: str, *, timeout: float | None = None) -> bool:
        async def _query() -> bool:
            async with self._session_factory() as session:
                provisioned = (
                    select(DIDNumber.id)
                    .where(DIDNumber.workspace_id == workspace_id, DIDNumber.number == number)
                    .limit(1)
                )
                if (await session.execute(provisioned)).first() is not None:
                    return True
                brought = (
                    select(BYODIDNumber.id)
                    .where(BYODIDNumber.workspace_id == workspace_id, BYODIDNumber.number == number)
                    .limit(1)
                )
                return (await session.execute(brought)).first() is not None

        return await self._guard(_query(), f"checking number ownership of workspace {workspace_id}", timeout)
