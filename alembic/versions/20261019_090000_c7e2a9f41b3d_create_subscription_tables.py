"""Create users, subscriptions and subscription_events tables

Revision ID: c7e2a9f41b3d
Revises:
Create Date: 2026-10-19 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "c7e2a9f41b3d"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# SQLAlchemy Enum columns store member names
ENTITLEMENT_VALUES = ("FREE", "TRIAL", "PREMIUM")
STATUS_VALUES = (
    "NEVER_SUBSCRIBED",
    "ACTIVE",
    "CANCELLING",
    "CANCELLED",
    "EXPIRED",
    "REFUNDED",
    "UNVERIFIED",
)
TYPE_VALUES = ("MONTHLY", "YEARLY")
SOURCE_VALUES = ("WEBHOOK", "SYNC_PURCHASE_INFO", "CHECK_SUBSCRIPTION_STATUS", "MIGRATION")
OUTCOME_VALUES = ("APPLIED", "PARTIAL")

ENUMS = {
    "entitlement": ENTITLEMENT_VALUES,
    "subscriptionstatus": STATUS_VALUES,
    "subscriptiontype": TYPE_VALUES,
    "updatesource": SOURCE_VALUES,
    "eventoutcome": OUTCOME_VALUES,
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def upgrade() -> None:
    """Upgrade database schema."""

    # ------------------------------------------------------------------
    # 1. Enum types
    # ------------------------------------------------------------------
    bind = op.get_bind()
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    # ------------------------------------------------------------------
    # 2. users (owned by the account service; created here if missing)
    # ------------------------------------------------------------------
    op.create_table(
        "users",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("legacy_subscription", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        if_not_exists=True,
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True, if_not_exists=True)

    # ------------------------------------------------------------------
    # 3. subscriptions (one row per user)
    # ------------------------------------------------------------------
    op.create_table(
        "subscriptions",
        sa.Column("subscription_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("entitlement", _enum("entitlement"), nullable=True),
        sa.Column("subscription_status", _enum("subscriptionstatus"), nullable=True),
        sa.Column("has_used_trial", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("auto_renew_enabled", sa.Boolean(), nullable=True),
        sa.Column("subscription_type", _enum("subscriptiontype"), nullable=True),
        sa.Column("expiration_date", sa.BigInteger(), nullable=True),
        sa.Column("grace_period_expires_date", sa.BigInteger(), nullable=True),
        sa.Column("original_transaction_id", sa.String(64), nullable=True),
        sa.Column("last_transaction_id", sa.String(64), nullable=True),
        sa.Column("product_id", sa.String(255), nullable=True),
        sa.Column("offer_type", sa.Integer(), nullable=True),
        sa.Column("purchase_date", sa.BigInteger(), nullable=True),
        sa.Column("app_account_token", sa.String(64), nullable=True),
        sa.Column("environment", sa.String(20), nullable=True),
        sa.Column("notification_type", sa.String(64), nullable=True),
        sa.Column("notification_subtype", sa.String(64), nullable=True),
        sa.Column("last_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_update_source", _enum("updatesource"), nullable=True),
        sa.Column("data_version", sa.String(10), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"], unique=True)
    op.create_index(
        "ix_subscriptions_original_transaction_id",
        "subscriptions",
        ["original_transaction_id"],
    )
    op.create_index(
        "idx_subscription_entitlement_expires",
        "subscriptions",
        ["entitlement", "expiration_date"],
    )

    # ------------------------------------------------------------------
    # 4. subscription_events (notification audit trail)
    # ------------------------------------------------------------------
    op.create_table(
        "subscription_events",
        sa.Column("event_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("notification_uuid", sa.String(64), nullable=True),
        sa.Column("notification_type", sa.String(64), nullable=False),
        sa.Column("notification_subtype", sa.String(64), nullable=True),
        sa.Column("transaction_id", sa.String(64), nullable=True),
        sa.Column("outcome", _enum("eventoutcome"), nullable=False),
        sa.Column("entitlement", _enum("entitlement"), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(
        "idx_sub_events_user_created",
        "subscription_events",
        ["user_id", "created_at"],
    )
    op.create_index(
        "idx_sub_events_outcome_created",
        "subscription_events",
        ["outcome", "created_at"],
    )


def downgrade() -> None:
    """Downgrade database schema (the users table is left in place)."""
    op.drop_index("idx_sub_events_outcome_created", table_name="subscription_events")
    op.drop_index("idx_sub_events_user_created", table_name="subscription_events")
    op.drop_table("subscription_events")

    op.drop_index("idx_subscription_entitlement_expires", table_name="subscriptions")
    op.drop_index("ix_subscriptions_original_transaction_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")
    op.drop_table("subscriptions")

    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
