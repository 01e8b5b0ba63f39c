"""Initial schema: operations, Shopify integrations, provider credentials, orders, polling executions.

Revision ID: initial_schema
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa


revision = "initial_schema"
down_revision = None
branch_labels = None
depends_on = None

DATA_SOURCE = ("storefront", "manual")
ORDER_STATUS = ("pending", "confirmed", "shipped", "delivered", "returned", "cancelled")
PAYMENT_STATUS = ("paid", "unpaid", "refunded")
INTEGRATION_STATUS = ("active", "paused")


def upgrade() -> None:
    op.create_table(
        "operations",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "shopify_integrations",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("operation_id", sa.String(), sa.ForeignKey("operations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("shop_domain", sa.String(), nullable=False),
        sa.Column("access_token", sa.String(), nullable=False),
        sa.Column("webhook_secret", sa.String(), nullable=True),
        sa.Column("status", sa.Enum(*INTEGRATION_STATUS, name="integrationstatus"), nullable=False, server_default="active"),
        sa.Column("integration_started_at", sa.DateTime(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("operation_id"),
    )
    op.create_index("ix_shopify_integrations_shop_domain", "shopify_integrations", ["shop_domain"])

    op.create_table(
        "provider_credentials",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("operation_id", sa.String(), sa.ForeignKey("operations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider_id", sa.String(), nullable=False),
        sa.Column("value_encrypted", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("operation_id", "provider_id", name="uq_provider_credentials_operation_provider"),
    )
    op.create_index("ix_provider_credentials_operation_id", "provider_credentials", ["operation_id"])
    op.create_index("ix_provider_credentials_provider_id", "provider_credentials", ["provider_id"])

    op.create_table(
        "orders",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("operation_id", sa.String(), sa.ForeignKey("operations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("data_source", sa.Enum(*DATA_SOURCE, name="datasource"), nullable=False),
        sa.Column("source_order_id", sa.String(), nullable=False),
        sa.Column("source_order_number", sa.String(), nullable=True),
        sa.Column("customer_name", sa.String(), nullable=True),
        sa.Column("customer_phone", sa.String(), nullable=True),
        sa.Column("customer_email", sa.String(), nullable=True),
        sa.Column("customer_address", sa.String(), nullable=True),
        sa.Column("customer_city", sa.String(), nullable=True),
        sa.Column("customer_state", sa.String(), nullable=True),
        sa.Column("customer_country", sa.String(), nullable=True),
        sa.Column("customer_zip", sa.String(), nullable=True),
        sa.Column("total", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("payment_status", sa.Enum(*PAYMENT_STATUS, name="paymentstatus"), nullable=True),
        sa.Column("payment_method", sa.String(), nullable=True),
        sa.Column("products", sa.JSON(), nullable=True),
        sa.Column("status", sa.Enum(*ORDER_STATUS, name="orderstatus"), nullable=False, server_default="pending"),
        sa.Column("carrier_imported", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("carrier_matched_at", sa.DateTime(), nullable=True),
        sa.Column("carrier_order_id", sa.String(), nullable=True),
        sa.Column("tracking_number", sa.String(), nullable=True),
        sa.Column("provider_data", sa.JSON(), nullable=True),
        sa.Column("order_date", sa.DateTime(), nullable=True),
        sa.Column("last_status_update", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("raw_source_data", sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("data_source", "source_order_id", name="orders_data_source_source_order_unique"),
    )
    op.create_index("ix_orders_operation_id", "orders", ["operation_id"])
    op.create_index("ix_orders_operation_match", "orders", ["operation_id", "data_source", "carrier_imported"])

    op.create_table(
        "polling_executions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("operation_id", sa.String(), sa.ForeignKey("operations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("executed_at", sa.DateTime(), nullable=False),
        sa.Column("orders_found", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("orders_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("orders_succeeded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_polling_executions_operation_id", "polling_executions", ["operation_id"])
    op.create_index("ix_polling_executions_executed_at", "polling_executions", ["executed_at"])


def downgrade() -> None:
    op.drop_table("polling_executions")
    op.drop_table("orders")
    op.drop_table("provider_credentials")
    op.drop_table("shopify_integrations")
    op.drop_table("operations")
    if op.get_bind().dialect.name == "postgresql":
        for name in ("orderstatus", "paymentstatus", "datasource", "integrationstatus"):
            op.execute(f"DROP TYPE IF EXISTS {name}")
