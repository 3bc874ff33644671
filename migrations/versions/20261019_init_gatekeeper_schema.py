"""init gatekeeper schema: accounts, sessions, devices, blocks, quota ledger

Revision ID: 20261019_init_gatekeeper_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_init_gatekeeper_schema"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=None if nullable else sa.func.now(),
    )


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("subscription_type", sa.String(length=32), nullable=False, server_default="free"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
        _ts("updated_at"),
    )

    op.create_table(
        "device_fingerprints",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.BigInteger(), nullable=False),
        sa.Column("fingerprint_hash", sa.String(length=128), nullable=False),
        sa.Column("device_info", sa.JSON(), nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("first_seen"),
        _ts("last_seen"),
        sa.Column("session_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rapid_location_changes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unusual_usage_hours", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("simultaneous_activity", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("account_id", "fingerprint_hash", name="uq_device_account_hash"),
    )
    op.create_index(
        "ix_device_fingerprints_account_id", "device_fingerprints", ["account_id"]
    )

    op.create_table(
        "account_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.BigInteger(), nullable=False),
        sa.Column("token", sa.String(length=128), nullable=False, unique=True),
        sa.Column("ip_address", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("user_agent", sa.String(length=512), nullable=False, server_default=""),
        sa.Column(
            "device_fingerprint_id",
            sa.Integer(),
            sa.ForeignKey("device_fingerprints.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _ts("login_at"),
        _ts("last_activity"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("logout_at", nullable=True),
        sa.Column("logout_reason", sa.String(length=32), nullable=True),
    )
    # one active session per account
    op.create_index(
        "uq_account_sessions_one_active",
        "account_sessions",
        ["account_id"],
        unique=True,
        sqlite_where=sa.text("active = 1"),
        postgresql_where=sa.text("active"),
    )
    op.create_index(
        "ix_account_sessions_account_active", "account_sessions", ["account_id", "active"]
    )

    op.create_table(
        "account_blocks",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.BigInteger(), nullable=False),
        sa.Column("block_type", sa.String(length=16), nullable=False),
        sa.Column("block_reason", sa.String(length=64), nullable=False),
        sa.Column("sharing_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("hardware_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("behavior_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("session_score", sa.Integer(), nullable=False, server_default="0"),
        _ts("blocked_at"),
        _ts("blocked_until", nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="ACTIVE"),
        sa.Column("evidence", sa.JSON(), nullable=False),
        _ts("updated_at"),
    )
    op.create_index("ix_account_blocks_account_id", "account_blocks", ["account_id"])
    op.create_index(
        "ix_account_blocks_status_until", "account_blocks", ["status", "blocked_until"]
    )
    # one block in force (ACTIVE or APPEALED) per account
    op.create_index(
        "uq_account_blocks_one_in_force",
        "account_blocks",
        ["account_id"],
        unique=True,
        sqlite_where=sa.text("status IN ('ACTIVE', 'APPEALED')"),
        postgresql_where=sa.text("status IN ('ACTIVE', 'APPEALED')"),
    )

    op.create_table(
        "block_appeals",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "block_id",
            sa.Integer(),
            sa.ForeignKey("account_blocks.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        _ts("appealed_at"),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("evidence", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        sa.Column("reviewed_by", sa.String(length=128), nullable=True),
        _ts("reviewed_at", nullable=True),
        sa.Column("review_notes", sa.Text(), nullable=True),
    )

    op.create_table(
        "block_actions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "block_id",
            sa.Integer(),
            sa.ForeignKey("account_blocks.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("actor_id", sa.String(length=128), nullable=False),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_block_actions_block_id", "block_actions", ["block_id"])

    op.create_table(
        "quota_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.BigInteger(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("daily_limit", sa.Integer(), nullable=True),
        sa.Column("subscription_type", sa.String(length=32), nullable=False, server_default="free"),
        sa.Column("total_usage", sa.Float(), nullable=False, server_default="0"),
        sa.Column("is_blocked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("block_reason", sa.String(length=255), nullable=True),
        sa.Column("admin_blocked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("admin_block_reason", sa.String(length=255), nullable=True),
        _ts("admin_blocked_at", nullable=True),
        _ts("created_at"),
        _ts("last_activity"),
        sa.UniqueConstraint("account_id", "date", name="uq_quota_records_account_date"),
    )
    op.create_index("ix_quota_records_account_id", "quota_records", ["account_id"])
    op.create_index("ix_quota_records_date", "quota_records", ["date"])

    op.create_table(
        "quota_module_usage",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "record_id",
            sa.Integer(),
            sa.ForeignKey("quota_records.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("module_id", sa.String(length=64), nullable=False),
        sa.Column("request_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("weighted_usage", sa.Float(), nullable=False, server_default="0"),
        _ts("last_used", nullable=True),
        sa.UniqueConstraint(
            "record_id", "module_id", name="uq_quota_module_usage_record_module"
        ),
    )

    op.create_table(
        "quota_requests",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "record_id",
            sa.Integer(),
            sa.ForeignKey("quota_records.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("module_id", sa.String(length=64), nullable=False),
        sa.Column("weight", sa.Float(), nullable=False, server_default="1"),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column("request_id", sa.String(length=128), nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_quota_requests_record_id", "quota_requests", ["record_id"])

    op.create_table(
        "quota_warnings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "record_id",
            sa.Integer(),
            sa.ForeignKey("quota_records.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("percentage", sa.Integer(), nullable=False),
        sa.Column("message", sa.String(length=255), nullable=False),
        _ts("issued_at"),
        sa.UniqueConstraint("record_id", "percentage", name="uq_quota_warnings_record_pct"),
    )

    op.create_table(
        "rate_limit_config",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("daily_limit", sa.Integer(), nullable=False, server_default="200"),
        sa.Column("reset_time", sa.String(length=5), nullable=False, server_default="00:00"),
        sa.Column(
            "timezone", sa.String(length=64), nullable=False, server_default="Asia/Ho_Chi_Minh"
        ),
        sa.Column("restricted_modules", sa.JSON(), nullable=False),
        sa.Column("subscription_limits", sa.JSON(), nullable=False),
        sa.Column("exempted_accounts", sa.JSON(), nullable=False),
        sa.Column("limit_overrides", sa.JSON(), nullable=False),
        sa.Column("burst_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("burst_limit", sa.Integer(), nullable=False, server_default="20"),
        sa.Column("burst_window_seconds", sa.Integer(), nullable=False, server_default="3600"),
        sa.Column("warning_thresholds", sa.JSON(), nullable=False),
        sa.Column("maintenance_mode", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("maintenance_message", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("retention_days", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("updated_by", sa.String(length=128), nullable=False, server_default="system"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("updated_at"),
    )

    op.create_table(
        "reset_runs",
        sa.Column("reset_date", sa.Date(), primary_key=True),
        _ts("ran_at"),
        sa.Column("forced", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("run_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("records_reset", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_pruned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sessions_pruned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("devices_pruned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("blocks_expired", sa.Integer(), nullable=False, server_default="0"),
    )


def downgrade() -> None:
    op.drop_table("reset_runs")
    op.drop_table("rate_limit_config")
    op.drop_table("quota_warnings")
    op.drop_index("ix_quota_requests_record_id", table_name="quota_requests")
    op.drop_table("quota_requests")
    op.drop_table("quota_module_usage")
    op.drop_index("ix_quota_records_date", table_name="quota_records")
    op.drop_index("ix_quota_records_account_id", table_name="quota_records")
    op.drop_table("quota_records")
    op.drop_index("ix_block_actions_block_id", table_name="block_actions")
    op.drop_table("block_actions")
    op.drop_table("block_appeals")
    op.drop_index("uq_account_blocks_one_in_force", table_name="account_blocks")
    op.drop_index("ix_account_blocks_status_until", table_name="account_blocks")
    op.drop_index("ix_account_blocks_account_id", table_name="account_blocks")
    op.drop_table("account_blocks")
    op.drop_index("ix_account_sessions_account_active", table_name="account_sessions")
    op.drop_index("uq_account_sessions_one_active", table_name="account_sessions")
    op.drop_table("account_sessions")
    op.drop_index("ix_device_fingerprints_account_id", table_name="device_fingerprints")
    op.drop_table("device_fingerprints")
    op.drop_table("accounts")
