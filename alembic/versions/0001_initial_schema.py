"""initial schema

Revision ID: 0001_initial_schema
Revises: 
Create Date: 2026-10-19

"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _workspace_fk() -> sa.ForeignKeyConstraint:
    return sa.ForeignKeyConstraint(["workspace_id"], ["workspaces.id"], ondelete="CASCADE")


def _live_columns() -> list[sa.Column]:
    return [
        sa.Column("live_status", sa.String(length=16), nullable=True),
        sa.Column("live_call_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("live_cpu_pct_used", sa.Float(), nullable=False, server_default="0"),
    ]


def upgrade() -> None:
    op.create_table(
        "workspaces",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("default_region", sa.String(length=2), nullable=False, server_default="US"),
        sa.Column("verify_caller_id", sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    op.create_table(
        "media_servers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=False),
        sa.Column("private_ip_address", sa.String(length=64), nullable=True),
        sa.Column("webrtc_optimized", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("region", sa.String(length=64), nullable=True),
        *_live_columns(),
    )
    op.create_index("ix_media_servers_region", "media_servers", ["region"], unique=False)

    op.create_table(
        "sip_routers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=False),
        sa.Column("private_ip_address", sa.String(length=64), nullable=True),
        sa.Column("region", sa.String(length=64), nullable=True),
        *_live_columns(),
    )
    op.create_index("ix_sip_routers_region", "sip_routers", ["region"], unique=False)

    op.create_table(
        "sip_providers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
    )

    op.create_table(
        "sip_providers_whitelist_ips",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("provider_id", sa.Integer(), nullable=False),
        sa.Column("workspace_id", sa.Integer(), nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=False),
        sa.Column("ip_address_range", sa.String(length=8), nullable=False, server_default=""),
        sa.ForeignKeyConstraint(["provider_id"], ["sip_providers.id"], ondelete="CASCADE"),
        _workspace_fk(),
    )
    op.create_index(
        "ix_sip_providers_whitelist_ips_provider_id",
        "sip_providers_whitelist_ips",
        ["provider_id"],
        unique=False,
    )
    op.create_index(
        "ix_sip_providers_whitelist_ips_workspace_id",
        "sip_providers_whitelist_ips",
        ["workspace_id"],
        unique=False,
    )

    op.create_table(
        "did_numbers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("workspace_id", sa.Integer(), nullable=False),
        sa.Column("number", sa.String(length=32), nullable=False),
        sa.Column("api_number", sa.String(length=32), nullable=False),
        _workspace_fk(),
    )
    op.create_index("ix_did_numbers_workspace_id", "did_numbers", ["workspace_id"], unique=False)
    op.create_index("ix_did_numbers_number", "did_numbers", ["number"], unique=False)
    op.create_index("ix_did_numbers_api_number", "did_numbers", ["api_number"], unique=False)

    op.create_table(
        "byo_carriers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("workspace_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        _workspace_fk(),
    )
    op.create_index("ix_byo_carriers_workspace_id", "byo_carriers", ["workspace_id"], unique=False)

    op.create_table(
        "byo_carriers_ips",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("carrier_id", sa.Integer(), nullable=False),
        sa.Column("ip", sa.String(length=64), nullable=False),
        sa.Column("range", sa.String(length=8), nullable=False, server_default=""),
        sa.ForeignKeyConstraint(["carrier_id"], ["byo_carriers.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_byo_carriers_ips_carrier_id", "byo_carriers_ips", ["carrier_id"], unique=False)

    op.create_table(
        "byo_did_numbers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("workspace_id", sa.Integer(), nullable=False),
        sa.Column("number", sa.String(length=32), nullable=False),
        _workspace_fk(),
    )
    op.create_index("ix_byo_did_numbers_workspace_id", "byo_did_numbers", ["workspace_id"], unique=False)
    op.create_index("ix_byo_did_numbers_number", "byo_did_numbers", ["number"], unique=False)

    op.create_table(
        "blocked_numbers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("workspace_id", sa.Integer(), nullable=False),
        sa.Column("number", sa.String(length=32), nullable=False),
        _workspace_fk(),
    )
    op.create_index("ix_blocked_numbers_workspace_id", "blocked_numbers", ["workspace_id"], unique=False)
    op.create_index("ix_blocked_numbers_number", "blocked_numbers", ["number"], unique=False)


def downgrade() -> None:
    for table, indexes in (
        ("blocked_numbers", ["ix_blocked_numbers_number", "ix_blocked_numbers_workspace_id"]),
        ("byo_did_numbers", ["ix_byo_did_numbers_number", "ix_byo_did_numbers_workspace_id"]),
        ("byo_carriers_ips", ["ix_byo_carriers_ips_carrier_id"]),
        ("byo_carriers", ["ix_byo_carriers_workspace_id"]),
        ("did_numbers", ["ix_did_numbers_api_number", "ix_did_numbers_number", "ix_did_numbers_workspace_id"]),
        (
            "sip_providers_whitelist_ips",
            [
                "ix_sip_providers_whitelist_ips_workspace_id",
                "ix_sip_providers_whitelist_ips_provider_id",
            ],
        ),
        ("sip_providers", []),
        ("sip_routers", ["ix_sip_routers_region"]),
        ("media_servers", ["ix_media_servers_region"]),
        ("workspaces", []),
    ):
        for index in indexes:
            op.drop_index(index, table_name=table)
        op.drop_table(table)
