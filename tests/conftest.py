from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from fleet.membership import MembershipTable  # noqa: E402
from fleet.nodes import MemberStatus, NodeKind  # noqa: E402
from fleet.wire import MemberUpdate  # noqa: E402


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def table(clock: FakeClock) -> MembershipTable:
    return MembershipTable(
        suspect_after=5.0,
        suspicion_timeout=5.0,
        staleness_window=10.0,
        dead_retention=60.0,
        clock=clock,
    )


@pytest.fixture()
def make_update():
    def _make(
        node_id: int,
        *,
        kind: NodeKind = NodeKind.MEDIA_RELAY,
        sequence: int = 1,
        status: MemberStatus = MemberStatus.ALIVE,
        active_calls: int = 0,
        cpu_pct: float = 0.0,
        host: str = "10.0.0.1",
        port: int = 7946,
    ) -> MemberUpdate:
        return MemberUpdate(
            kind=kind,
            node_id=node_id,
            sequence=sequence,
            status=status,
            active_calls=active_calls,
            cpu_pct=cpu_pct,
            host=host,
            port=port,
        )

    return _make


async def seed_database(database_url: str) -> None:
    from sqlalchemy.ext.asyncio import create_async_engine

    from db.base import Base, build_session_factory
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

    engine = create_async_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with build_session_factory(engine)() as session:
        acme = Workspace(id=1, name="Acme", default_region="US", verify_caller_id=True)
        globex = Workspace(id=2, name="Globex", default_region="US", verify_caller_id=True)
        session.add_all([acme, globex])
        await session.flush()

        provider = SIPProvider(id=1, name="Upstream A")
        session.add(provider)
        await session.flush()

        session.add_all(
            [
                DIDNumber(workspace_id=1, number="+15551234567", api_number="+15551234567"),
                DIDNumber(workspace_id=2, number="+15557654321", api_number="+15557654321"),
                SIPProviderWhitelistIP(
                    provider_id=1, workspace_id=1, ip_address="203.0.113.10", ip_address_range="/32"
                ),
                SIPProviderWhitelistIP(
                    provider_id=1, workspace_id=2, ip_address="198.51.100.0", ip_address_range="/24"
                ),
                BYOCarrier(
                    id=1,
                    workspace_id=1,
                    name="Own trunk",
                    ips=[BYOCarrierIP(ip="192.0.2.0", range="24")],
                ),
                BYODIDNumber(workspace_id=1, number="+15551234567"),
                BlockedNumber(workspace_id=1, number="+15550000000"),
                MediaServer(id=1, ip_address="10.0.0.1", private_ip_address="10.1.0.1", webrtc_optimized=False),
                MediaServer(id=2, ip_address="10.0.0.2", private_ip_address="10.1.0.2", webrtc_optimized=True),
                SIPRouter(id=1, ip_address="10.0.1.1", private_ip_address="10.1.1.1", region="us-east"),
                SIPRouter(id=2, ip_address="10.0.1.2", private_ip_address="10.1.1.2", region="eu-west"),
            ]
        )
        await session.commit()

    await engine.dispose()


@pytest.fixture(scope="session")
def database_url(tmp_path_factory: pytest.TempPathFactory) -> str:
    db_path = tmp_path_factory.mktemp("seeded") / "controlplane_test.db"
    url = f"sqlite+aiosqlite:///{db_path.as_posix()}"
    asyncio.run(seed_database(url))
    return url


@pytest.fixture()
def fresh_database_url(tmp_path: Path) -> str:
    url = f"sqlite+aiosqlite:///{(tmp_path / 'controlplane.db').as_posix()}"
    asyncio.run(seed_database(url))
    return url


@pytest.fixture(scope="session")
def app(tmp_path_factory: pytest.TempPathFactory, database_url: str):
    tmp_dir = tmp_path_factory.mktemp("runtime")

    # Must be set before the settings are first read.
    os.environ["DATABASE_URL"] = database_url
    os.environ["DATA_DIR"] = str(tmp_dir)
    os.environ["AUTO_CREATE_DB_SCHEMA"] = "true"
    os.environ["GOSSIP_ENABLED"] = "false"
    os.environ["LIVE_STATS_FLUSH_SECONDS"] = "0"
    os.environ["VALIDATE_CALLER_ID"] = "true"

    import importlib

    from config.settings import get_settings

    get_settings.cache_clear()
    sys.modules.pop("main", None)
    main = importlib.import_module("main")
    return main.app


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
