"""SQLAlchemy models for the fleet registry, carrier whitelists and tenant numbers."""

from __future__ import annotations

from sqlalchemy import Boolean, Float, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import Base


class Workspace(Base):
    """A tenant of the platform."""

    __tablename__ = "workspaces"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255))
    default_region: Mapped[str] = mapped_column(String(2), default="US")
    verify_caller_id: Mapped[bool] = mapped_column(Boolean, default=True)


class MediaServer(Base):
    __tablename__ = "media_servers"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    ip_address: Mapped[str] = mapped_column(String(64))
    private_ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    webrtc_optimized: Mapped[bool] = mapped_column(Boolean, default=False)
    region: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    # Observability mirror of the gossip view; never read for placement.
    live_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    live_call_count: Mapped[int] = mapped_column(Integer, default=0)
    live_cpu_pct_used: Mapped[float] = mapped_column(Float, default=0.0)


class SIPRouter(Base):
    __tablename__ = "sip_routers"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    ip_address: Mapped[str] = mapped_column(String(64))
    private_ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    region: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    live_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    live_call_count: Mapped[int] = mapped_column(Integer, default=0)
    live_cpu_pct_used: Mapped[float] = mapped_column(Float, default=0.0)


class SIPProvider(Base):
    """Platform-managed upstream carrier."""

    __tablename__ = "sip_providers"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255))

    whitelist_ips: Mapped[list[SIPProviderWhitelistIP]] = relationship(
        back_populates="provider",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class SIPProviderWhitelistIP(Base):
    __tablename__ = "sip_providers_whitelist_ips"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    provider_id: Mapped[int] = mapped_column(
        ForeignKey("sip_providers.id", ondelete="CASCADE"), index=True
    )
    workspace_id: Mapped[int] = mapped_column(
        ForeignKey("workspaces.id", ondelete="CASCADE"), index=True
    )
    ip_address: Mapped[str] = mapped_column(String(64))
    ip_address_range: Mapped[str] = mapped_column(String(8), default="")

    provider: Mapped[SIPProvider] = relationship(back_populates="whitelist_ips")


class DIDNumber(Base):
    """A platform-provisioned number owned by a workspace."""

    __tablename__ = "did_numbers"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    workspace_id: Mapped[int] = mapped_column(
        ForeignKey("workspaces.id", ondelete="CASCADE"), index=True
    )
    number: Mapped[str] = mapped_column(String(32), index=True)
    api_number: Mapped[str] = mapped_column(String(32), index=True)


class BYOCarrier(Base):
    """Customer-brought upstream carrier."""

    __tablename__ = "byo_carriers"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    workspace_id: Mapped[int] = mapped_column(
        ForeignKey("workspaces.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String(255))

    ips: Mapped[list[BYOCarrierIP]] = relationship(
        back_populates="carrier",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class BYOCarrierIP(Base):
    __tablename__ = "byo_carriers_ips"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    carrier_id: Mapped[int] = mapped_column(
        ForeignKey("byo_carriers.id", ondelete="CASCADE"), index=True
    )
    ip: Mapped[str] = mapped_column(String(64))
    range: Mapped[str] = mapped_column(String(8), default="")

    carrier: Mapped[BYOCarrier] = relationship(back_populates="ips")


class BYODIDNumber(Base):
    """A customer-brought number routed through one of the workspace's carriers."""

    __tablename__ = "byo_did_numbers"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    workspace_id: Mapped[int] = mapped_column(
        ForeignKey("workspaces.id", ondelete="CASCADE"), index=True
    )
    number: Mapped[str] = mapped_column(String(32), index=True)


class BlockedNumber(Base):
    __tablename__ = "blocked_numbers"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    workspace_id: Mapped[int] = mapped_column(
        ForeignKey("workspaces.id", ondelete="CASCADE"), index=True
    )
    number: Mapped[str] = mapped_column(String(32), index=True)
