"""stock allocation and put-away tables

Revision ID: 0001_stock_engine
Revises:
Create Date: 2026-10-19T00:00:00Z
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_stock_engine"
down_revision = None
branch_labels = None
depends_on = None


def _base():
    return [
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def _tenant():
    return sa.Column("tenant_id", sa.String(length=64), nullable=False, server_default="default")


def _num(name, nullable=True, **kw):
    return sa.Column(name, sa.Numeric(18, 6), nullable=nullable, **kw)


def _party_refs():
    cols = [
        sa.Column("charge_to_id", sa.String(length=36), nullable=True),
        sa.Column("charge_to_collection", sa.String(length=32), nullable=True),
        sa.Column("charge_to_contact_name", sa.String(length=128), nullable=True),
        sa.Column("charge_to_contact_phone", sa.String(length=64), nullable=True),
    ]
    for side in ("from", "to"):
        cols += [
            sa.Column(f"{side}_id", sa.String(length=36), nullable=True),
            sa.Column(f"{side}_collection", sa.String(length=32), nullable=True),
            sa.Column(f"{side}_street", sa.String(length=256), nullable=True),
            sa.Column(f"{side}_city", sa.String(length=128), nullable=True),
            sa.Column(f"{side}_state", sa.String(length=64), nullable=True),
            sa.Column(f"{side}_postcode", sa.String(length=16), nullable=True),
        ]
    return cols


def _customer_fields():
    return [
        sa.Column("customer_name", sa.String(length=256), nullable=False),
        sa.Column("contact_name", sa.String(length=128), nullable=True, index=True),
        sa.Column("contact_phone", sa.String(length=64), nullable=True, index=True),
        sa.Column("email", sa.String(length=256), nullable=True),
        sa.Column("street", sa.String(length=256), nullable=True, index=True),
        sa.Column("city", sa.String(length=128), nullable=True),
        sa.Column("state", sa.String(length=64), nullable=True),
        sa.Column("postcode", sa.String(length=16), nullable=True),
    ]


def upgrade():
    op.create_table(
        "wms_warehouse",
        *_base(), _tenant(),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("code", sa.String(length=32), nullable=True, index=True),
        sa.Column("meta", sa.JSON(), nullable=False),
    )

    op.create_table(
        "wms_sku",
        *_base(), _tenant(),
        sa.Column("sku_code", sa.String(length=64), nullable=False, index=True),
        sa.Column("description", sa.String(length=512), nullable=True),
        _num("weight_per_hu_kg"),
        _num("length_per_hu_mm"),
        _num("width_per_hu_mm"),
        _num("height_per_hu_mm"),
        _num("hu_per_su"),
        sa.Column("lpn_qty", sa.String(length=32), nullable=True),
    )
    op.create_index("ix_sku_tenant_code", "wms_sku", ["tenant_id", "sku_code"])

    for table in ("party_customer", "party_paying_customer"):
        op.create_table(table, *_base(), _tenant(), *_customer_fields())
    for table in ("party_empty_park", "party_wharf"):
        op.create_table(
            table,
            *_base(), _tenant(),
            sa.Column("name", sa.String(length=256), nullable=False),
            sa.Column("address", sa.JSON(), nullable=False),
        )

    op.create_table(
        "freight_inbound_inventory",
        *_base(), _tenant(),
        sa.Column("job_code", sa.String(length=64), nullable=False, index=True),
        sa.Column("warehouse_id", sa.String(length=36), sa.ForeignKey("wms_warehouse.id"), nullable=True, index=True),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="OPEN"),
        sa.Column("completed_date", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "freight_inbound_product_line",
        *_base(),
        sa.Column("inbound_inventory_id", sa.String(length=36), sa.ForeignKey("freight_inbound_inventory.id"), nullable=False, index=True),
        sa.Column("sku_id", sa.String(length=36), sa.ForeignKey("wms_sku.id"), nullable=True, index=True),
        sa.Column("batch_number", sa.String(length=64), nullable=True, index=True),
        sa.Column("expected_qty", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("received_qty", sa.Integer(), nullable=True),
        sa.Column("lpn_qty", sa.String(length=32), nullable=True),
        _num("expected_weight"),
        _num("received_weight"),
        _num("received_cubic_per_hu"),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("split_from_id", sa.String(length=36), nullable=True, index=True),
        sa.Column("meta", sa.JSON(), nullable=False),
    )
    op.create_index("ix_inbound_line_batch_sku", "freight_inbound_product_line", ["batch_number", "sku_id"])

    op.create_table(
        "freight_outbound_inventory",
        *_base(), _tenant(),
        sa.Column("job_code", sa.String(length=64), nullable=False, index=True),
        sa.Column("warehouse_id", sa.String(length=36), sa.ForeignKey("wms_warehouse.id"), nullable=True, index=True),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="OPEN"),
    )

    op.create_table(
        "freight_outbound_product_line",
        *_base(),
        sa.Column("outbound_inventory_id", sa.String(length=36), sa.ForeignKey("freight_outbound_inventory.id"), nullable=False, index=True),
        sa.Column("sku_id", sa.String(length=36), sa.ForeignKey("wms_sku.id"), nullable=True, index=True),
        sa.Column("batch_number", sa.String(length=64), nullable=True),
        sa.Column("expected_qty", sa.Integer(), nullable=False, server_default="0"),
        _num("allocated_qty", nullable=False, server_default="0"),
        _num("allocated_weight"),
        _num("allocated_cubic_per_hu"),
        _num("plt_qty"),
        sa.Column("lpns", sa.JSON(), nullable=False),
        sa.Column("location", sa.String(length=128), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False),
    )

    for table in ("freight_import_container_booking", "freight_export_container_booking"):
        op.create_table(
            table,
            *_base(), _tenant(),
            sa.Column("booking_code", sa.String(length=64), nullable=False, index=True),
            sa.Column("customer_reference", sa.String(length=128), nullable=True),
            sa.Column("status", sa.String(length=24), nullable=False, server_default="OPEN"),
            sa.Column("meta", sa.JSON(), nullable=False),
            *_party_refs(),
        )

    op.create_table(
        "freight_container_detail",
        *_base(), _tenant(),
        sa.Column("booking_collection", sa.String(length=32), nullable=False),
        sa.Column("booking_id", sa.String(length=36), nullable=False, index=True),
        sa.Column("container_number", sa.String(length=32), nullable=True),
        sa.Column("warehouse_id", sa.String(length=36), sa.ForeignKey("wms_warehouse.id"), nullable=True, index=True),
    )

    op.create_table(
        "freight_container_stock_allocation",
        *_base(), _tenant(),
        sa.Column("container_detail_id", sa.String(length=36), sa.ForeignKey("freight_container_detail.id"), nullable=False, index=True),
        sa.Column("booking_collection", sa.String(length=32), nullable=False),
        sa.Column("booking_id", sa.String(length=36), nullable=False, index=True),
        sa.Column("stage", sa.String(length=24), nullable=False, server_default="expected"),
        sa.Column("product_lines", sa.JSON(), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False),
    )
    op.create_index("ix_csa_booking", "freight_container_stock_allocation", ["booking_collection", "booking_id"])

    op.create_table(
        "wms_put_away_stock",
        *_base(), _tenant(),
        sa.Column("lifecycle", sa.String(length=16), nullable=False, server_default="active", index=True),
        sa.Column("lpn_number", sa.String(length=64), nullable=False),
        sa.Column("sku_id", sa.String(length=36), sa.ForeignKey("wms_sku.id"), nullable=True, index=True),
        sa.Column("warehouse_id", sa.String(length=36), sa.ForeignKey("wms_warehouse.id"), nullable=True, index=True),
        sa.Column("location", sa.String(length=128), nullable=False),
        _num("hu_qty", nullable=False),
        sa.Column("inbound_inventory_id", sa.String(length=36), nullable=True, index=True),
        sa.Column("inbound_product_line_id", sa.String(length=36), nullable=True, index=True),
        sa.Column("source_allocation_id", sa.String(length=36), nullable=True, index=True),
        sa.Column("source_line_index", sa.Integer(), nullable=True),
        sa.Column("allocation_status", sa.String(length=24), nullable=False, server_default="available", index=True),
        sa.Column("outbound_inventory_id", sa.String(length=36), nullable=True, index=True),
        sa.Column("outbound_product_line_id", sa.String(length=36), nullable=True, index=True),
        sa.Column("container_stock_allocation_id", sa.String(length=36), nullable=True, index=True),
        sa.Column("container_detail_id", sa.String(length=36), nullable=True),
        sa.Column("allocated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("allocated_by", sa.String(length=128), nullable=True),
        sa.UniqueConstraint("tenant_id", "lpn_number", name="uq_put_away_lpn"),
    )
    op.create_index(
        "ix_put_away_pool", "wms_put_away_stock", ["tenant_id", "sku_id", "allocation_status", "created_at"]
    )

    op.create_table(
        "wms_pickup_stock",
        *_base(), _tenant(),
        sa.Column("outbound_inventory_id", sa.String(length=36), nullable=True, index=True),
        sa.Column("outbound_product_line_id", sa.String(length=36), nullable=True, index=True),
        sa.Column("container_stock_allocation_id", sa.String(length=36), nullable=True, index=True),
        sa.Column("container_detail_id", sa.String(length=36), nullable=True),
        sa.Column("picked_up_lpns", sa.JSON(), nullable=False),
        _num("picked_up_qty", nullable=False, server_default="0"),
        _num("buffer_qty", nullable=False, server_default="0"),
        _num("final_picked_up_qty", nullable=False, server_default="0"),
        sa.Column("pickup_status", sa.String(length=24), nullable=False, server_default="completed", index=True),
    )

    op.create_table(
        "sys_audit_log",
        *_base(), _tenant(),
        sa.Column("actor", sa.String(length=128), nullable=False, index=True),
        sa.Column("action", sa.String(length=128), nullable=False, index=True),
        sa.Column("entity_type", sa.String(length=64), nullable=False, index=True),
        sa.Column("entity_id", sa.String(length=64), nullable=True, index=True),
        sa.Column("payload", sa.JSON(), nullable=False),
    )
    op.create_index("ix_audit_tenant_time", "sys_audit_log", ["tenant_id", "created_at"])
    op.create_index("ix_audit_entity", "sys_audit_log", ["entity_type", "entity_id"])

    op.create_table(
        "outbox_event",
        *_base(), _tenant(),
        sa.Column("topic", sa.String(length=128), nullable=False, index=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("delivered", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_outbox_topic_created", "outbox_event", ["topic", "created_at"])


def downgrade():
    for table in (
        "outbox_event",
        "sys_audit_log",
        "wms_pickup_stock",
        "wms_put_away_stock",
        "freight_container_stock_allocation",
        "freight_container_detail",
        "freight_export_container_booking",
        "freight_import_container_booking",
        "freight_outbound_product_line",
        "freight_outbound_inventory",
        "freight_inbound_product_line",
        "freight_inbound_inventory",
        "party_wharf",
        "party_empty_park",
        "party_paying_customer",
        "party_customer",
        "wms_sku",
        "wms_warehouse",
    ):
        op.drop_table(table)
