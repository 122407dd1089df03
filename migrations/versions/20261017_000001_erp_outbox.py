"""Create ERP outbox events and delivery audit log tables.

Revision ID: 20261017_000001
Revises:
Create Date: 2026-10-17 00:00:01
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261017_000001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _seq_type():
    return sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def _table_exists(bind, table_name: str) -> bool:
    inspector = sa.inspect(bind)
    return bool(inspector.has_table(table_name))


def _index_exists(bind, table_name: str, index_name: str) -> bool:
    inspector = sa.inspect(bind)
    if not inspector.has_table(table_name):
        return False
    for index in inspector.get_indexes(table_name):
        if str(index.get("name") or "") == index_name:
            return True
    return False


def _create_index_if_missing(bind, index_name: str, table_name: str, columns: list[str]) -> None:
    if not _index_exists(bind, table_name, index_name):
        op.create_index(index_name, table_name, columns, unique=False)


def upgrade() -> None:
    bind = op.get_bind()

    if not _table_exists(bind, "erp_outbox_events"):
        op.create_table(
            "erp_outbox_events",
            sa.Column("seq", _seq_type(), primary_key=True, autoincrement=True),
            sa.Column("id", sa.Text(), nullable=False),
            sa.Column("tenant_id", sa.Text(), nullable=False),
            sa.Column("entity_id", sa.Text(), nullable=False),
            sa.Column("event_type", sa.Text(), nullable=False),
            sa.Column("payload_json", sa.Text(), nullable=False, server_default=sa.text("'{}'")),
            sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'PENDING'")),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("next_retry_at", sa.Text(), nullable=False),
            sa.Column("created_at", sa.Text(), nullable=False),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("last_attempt_at", sa.Text(), nullable=True),
            sa.Column("dead_letter", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.UniqueConstraint("id", name="uq_erp_outbox_events_id"),
            sa.CheckConstraint(
                "status IN ('PENDING','SENT','FAILED')",
                name="ck_erp_outbox_events_status",
            ),
        )
    _create_index_if_missing(bind, "idx_erp_outbox_events_tenant_entity", "erp_outbox_events", ["tenant_id", "entity_id"])
    _create_index_if_missing(bind, "idx_erp_outbox_events_status_due", "erp_outbox_events", ["status", "next_retry_at"])

    if not _table_exists(bind, "erp_delivery_audit_log"):
        op.create_table(
            "erp_delivery_audit_log",
            sa.Column("seq", _seq_type(), primary_key=True, autoincrement=True),
            sa.Column("tenant_id", sa.Text(), nullable=False),
            sa.Column("operation", sa.Text(), nullable=False),
            sa.Column("external_ref", sa.Text(), nullable=False),
            sa.Column("document_json", sa.Text(), nullable=False),
            sa.Column("delivered_at", sa.Text(), nullable=False),
        )
    _create_index_if_missing(bind, "idx_erp_delivery_audit_log_tenant", "erp_delivery_audit_log", ["tenant_id", "seq"])


def downgrade() -> None:
    bind = op.get_bind()

    if _index_exists(bind, "erp_delivery_audit_log", "idx_erp_delivery_audit_log_tenant"):
        op.drop_index("idx_erp_delivery_audit_log_tenant", table_name="erp_delivery_audit_log")
    if _table_exists(bind, "erp_delivery_audit_log"):
        op.drop_table("erp_delivery_audit_log")

    if _index_exists(bind, "erp_outbox_events", "idx_erp_outbox_events_status_due"):
        op.drop_index("idx_erp_outbox_events_status_due", table_name="erp_outbox_events")
    if _index_exists(bind, "erp_outbox_events", "idx_erp_outbox_events_tenant_entity"):
        op.drop_index("idx_erp_outbox_events_tenant_entity", table_name="erp_outbox_events")
    if _table_exists(bind, "erp_outbox_events"):
        op.drop_table("erp_outbox_events")
