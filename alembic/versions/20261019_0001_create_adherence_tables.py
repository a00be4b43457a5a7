"""create users, prescriptions, medicines and notifications tables

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


SLOT_FIELDS = (
    "before_breakfast",
    "after_breakfast",
    "before_lunch",
    "after_lunch",
    "before_dinner",
    "after_dinner",
)
SLOT_VALUES = (
    "beforeBreakfast",
    "afterBreakfast",
    "beforeLunch",
    "afterLunch",
    "beforeDinner",
    "afterDinner",
)


def _flag(name: str) -> sa.Column:
    return sa.Column(name, sa.Boolean(), nullable=False, server_default=sa.text("false"))


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("user_type", sa.Enum("user", "organisation", name="user_type"), nullable=False),
        sa.Column("emergency_contact_name", sa.String(length=255), nullable=True),
        sa.Column("emergency_contact_phone", sa.String(length=32), nullable=True),
        sa.Column("emergency_contact_relationship", sa.String(length=64), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index("ix_users_phone", "users", ["phone"])

    op.create_table(
        "prescriptions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("patient_id", sa.Integer(), nullable=False),
        sa.Column("prescribed_by", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["patient_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["prescribed_by"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_prescriptions_patient_id", "prescriptions", ["patient_id"])
    op.create_index("ix_prescriptions_prescribed_by", "prescriptions", ["prescribed_by"])

    op.create_table(
        "medicines",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("patient_id", sa.Integer(), nullable=False),
        sa.Column("prescribed_by", sa.Integer(), nullable=False),
        sa.Column("prescription_id", sa.Integer(), nullable=True),
        sa.Column("medicine_name", sa.String(length=255), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        *[_flag(f"timing_{field}") for field in SLOT_FIELDS],
        *[_flag(f"taken_{field}") for field in SLOT_FIELDS],
        sa.Column("last_reset_date", sa.Date(), nullable=True),
        sa.Column("taken_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("missed_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("consecutive_missed_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _flag("emergency_contact_notified"),
        sa.Column("last_emergency_notification_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("quantity >= 0", name="ck_medicines_quantity_non_negative"),
        sa.CheckConstraint("taken_count >= 0", name="ck_medicines_taken_count_non_negative"),
        sa.ForeignKeyConstraint(["patient_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["prescribed_by"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["prescription_id"], ["prescriptions.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_medicines_patient_id", "medicines", ["patient_id"])
    op.create_index("ix_medicines_prescribed_by", "medicines", ["prescribed_by"])
    op.create_index("ix_medicines_prescription_id", "medicines", ["prescription_id"])
    op.create_index("ix_medicines_active_window", "medicines", ["start_date", "end_date"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("medicine_id", sa.Integer(), nullable=True),
        sa.Column(
            "type",
            sa.Enum(
                "medicine_reminder",
                "missed_dose",
                "medicine_expired",
                "medicine_expiring_soon",
                "new_medicine_added",
                "emergency_contact_alert",
                name="notification_type",
            ),
            nullable=False,
        ),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("timing", sa.Enum(*SLOT_VALUES, name="dose_slot"), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        _flag("is_read"),
        _flag("is_sent"),
        _flag("is_emergency_contact_notification"),
        sa.Column("emergency_contact_phone", sa.String(length=32), nullable=True),
        sa.Column("emergency_contact_name", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["medicine_id"], ["medicines.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_notifications_dedupe",
        "notifications",
        ["medicine_id", "timing", "type", "scheduled_for"],
    )
    op.create_index("ix_notifications_pending", "notifications", ["is_sent", "scheduled_for"])
    op.create_index("ix_notifications_user_read", "notifications", ["user_id", "is_read"])


def downgrade() -> None:
    op.drop_index("ix_notifications_user_read", table_name="notifications")
    op.drop_index("ix_notifications_pending", table_name="notifications")
    op.drop_index("ix_notifications_dedupe", table_name="notifications")
    op.drop_table("notifications")

    op.drop_index("ix_medicines_active_window", table_name="medicines")
    op.drop_index("ix_medicines_prescription_id", table_name="medicines")
    op.drop_index("ix_medicines_prescribed_by", table_name="medicines")
    op.drop_index("ix_medicines_patient_id", table_name="medicines")
    op.drop_table("medicines")

    op.drop_index("ix_prescriptions_prescribed_by", table_name="prescriptions")
    op.drop_index("ix_prescriptions_patient_id", table_name="prescriptions")
    op.drop_table("prescriptions")

    op.drop_index("ix_users_phone", table_name="users")
    op.drop_table("users")

    op.execute("DROP TYPE IF EXISTS dose_slot")
    op.execute("DROP TYPE IF EXISTS notification_type")
    op.execute("DROP TYPE IF EXISTS user_type")
