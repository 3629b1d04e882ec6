"""vehicles, service reminders and expense ledger

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "vehicles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("odometer", sa.Float(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("odometer >= 0", name="ck_vehicle_odometer_positive"),
    )
    op.create_index("ix_vehicles_user", "vehicles", ["user_id"])

    op.create_table(
        "service_reminders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "vehicle_id",
            sa.Integer(),
            sa.ForeignKey("vehicles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", sa.String(length=120), nullable=False),
        sa.Column("distance_interval", sa.Float(), nullable=False, server_default="0"),
        sa.Column(
            "time_interval_months", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("last_service_odometer", sa.Float(), nullable=False),
        sa.Column("last_service_date", sa.DateTime(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "distance_interval >= 0", name="ck_reminder_distance_positive"
        ),
        sa.CheckConstraint(
            "time_interval_months >= 0", name="ck_reminder_months_positive"
        ),
    )
    op.create_index(
        "ix_service_reminders_vehicle", "service_reminders", ["vehicle_id"]
    )

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column(
            "vehicle_id",
            sa.Integer(),
            sa.ForeignKey("vehicles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "type",
            sa.Enum(
                "fuel", "service", "insurance", "registration", name="expensetype"
            ),
            nullable=False,
        ),
        sa.Column("fuel_brand", sa.String(length=120)),
        sa.Column("price_per_liter", sa.Float()),
        sa.Column("liters", sa.Float()),
        sa.Column("service_type", sa.String(length=120)),
        sa.Column(
            "recurring_interval",
            sa.String(length=40),
            nullable=False,
            server_default="none",
        ),
        sa.Column("odometer", sa.Float(), nullable=False),
        sa.Column("total_cost_cents", sa.Integer(), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("attachment_url", sa.String(length=500)),
        sa.Column("deleted_at", sa.DateTime()),
        sa.Column("deleted_by", sa.Integer()),
        sa.Column("date", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("total_cost_cents >= 0", name="ck_expenses_cost_positive"),
        sa.CheckConstraint("odometer >= 0", name="ck_expenses_odometer_positive"),
    )
    op.create_index(
        "ix_expenses_vehicle_type_date", "expenses", ["vehicle_id", "type", "date"]
    )
    op.create_index(
        "ix_expenses_vehicle_deleted", "expenses", ["vehicle_id", "deleted_at"]
    )


def downgrade():
    op.drop_index("ix_expenses_vehicle_deleted", table_name="expenses")
    op.drop_index("ix_expenses_vehicle_type_date", table_name="expenses")
    op.drop_table("expenses")
    op.drop_index("ix_service_reminders_vehicle", table_name="service_reminders")
    op.drop_table("service_reminders")
    op.drop_index("ix_vehicles_user", table_name="vehicles")
    op.drop_table("vehicles")
