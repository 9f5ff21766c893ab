from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from control.errors import AdmissionCheckFailedError, RegistryUnavailableError
from db.base import build_session_factory
from db.models import MediaServer
from db.repository import NodeRepository, NumberRepository, WhitelistRepository
from fleet.nodes import MemberStatus, NodeKind
from fleet.registry import NodeRegistry

UNREACHABLE_URL = "sqlite+aiosqlite:////nonexistent-directory/controlplane.db"


def _run(url: str, repository_cls, scenario):
    async def _main():
        engine = create_async_engine(url)
        try:
            return await scenario(repository_cls(build_session_factory(engine), timeout=2.0))
        finally:
            await engine.dispose()

    return asyncio.run(_main())


def test_provider_whitelist_is_scoped_to_the_did_workspace(database_url):
    async def scenario(repo: WhitelistRepository):
        return (
            await repo.provider_entries("+15551234567"),
            await repo.provider_entries("+15557654321"),
            await repo.provider_entries("+15559999999"),
        )

    acme, globex, unknown = _run(database_url, WhitelistRepository, scenario)

    assert acme == [("203.0.113.10", "/32")]
    assert globex == [("198.51.100.0", "/24")]
    assert unknown == []


def test_byo_carrier_whitelist(database_url):
    async def scenario(repo: WhitelistRepository):
        return await repo.byo_carrier_entries("+15551234567"), await repo.byo_carrier_entries("+15557654321")

    acme, globex = _run(database_url, WhitelistRepository, scenario)

    assert acme == [("192.0.2.0", "24")]
    assert globex == []


def test_number_lookups(database_url):
    async def scenario(repo: NumberRepository):
        owner = await repo.get_did_owner("+15551234567")
        return (
            owner.id if owner else None,
            await repo.get_did_owner("+15559999999"),
            await repo.is_blocked(1, "+15550000000"),
            await repo.is_blocked(2, "+15550000000"),
            await repo.owns_number(1, "+15551234567"),
            await repo.owns_number(1, "+15557654321"),
        )

    owner_id, unknown_owner, blocked_acme, blocked_globex, owns, owns_other = _run(
        database_url, NumberRepository, scenario
    )

    assert owner_id == 1
    assert unknown_owner is None
    assert blocked_acme is True
    assert blocked_globex is False
    assert owns is True
    assert owns_other is False


def test_registry_lists_nodes_with_durable_attributes(database_url):
    async def scenario(repo: NodeRepository):
        registry = NodeRegistry(repo)
        return (
            await registry.list_nodes(NodeKind.MEDIA_RELAY),
            await registry.list_nodes(NodeKind.MEDIA_RELAY, region="us-east"),
            await registry.list_nodes(NodeKind.SIP_ROUTER, region="us-east"),
            await registry.get_node(NodeKind.SIP_ROUTER, 99),
        )

    relays, relays_any_region, routers, missing = _run(database_url, NodeRepository, scenario)

    assert [(node.id, node.rtc_optimized) for node in relays] == [(1, False), (2, True)]
    assert relays[0].private_address == "10.1.0.1"
    assert relays[0].live is None
    assert [node.id for node in relays_any_region] == [1, 2]
    assert [(node.id, node.region) for node in routers] == [(1, "us-east")]
    assert missing is None


def test_live_stats_are_written_back(fresh_database_url):
    async def scenario(repo: NodeRepository):
        await NodeRegistry(repo).update_live_stats(
            NodeKind.MEDIA_RELAY,
            2,
            status=MemberStatus.SUSPECT,
            active_calls=17,
            cpu_pct=55.5,
        )
        async with repo._session_factory() as session:
            return await session.get(MediaServer, 2)

    row = _run(fresh_database_url, NodeRepository, scenario)

    assert row.live_status == "suspect"
    assert row.live_call_count == 17
    assert row.live_cpu_pct_used == 55.5


def test_unreachable_store_raises_registry_unavailable():
    async def scenario(repo: NodeRepository):
        return await NodeRegistry(repo).list_nodes(NodeKind.MEDIA_RELAY)

    with pytest.raises(RegistryUnavailableError):
        _run(UNREACHABLE_URL, NodeRepository, scenario)


def test_unreachable_store_fails_whitelist_lookup():
    async def scenario(repo: WhitelistRepository):
        return await repo.provider_entries("+15551234567")

    with pytest.raises(AdmissionCheckFailedError):
        _run(UNREACHABLE_URL, WhitelistRepository, scenario)


def test_lookup_deadline_is_enforced(database_url):
    async def scenario(repo: NumberRepository):
        return await repo._guard(asyncio.sleep(1.0), "slow lookup", 0.01)

    with pytest.raises(AdmissionCheckFailedError, match="slow lookup timed out"):
        _run(database_url, NumberRepository, scenario)
