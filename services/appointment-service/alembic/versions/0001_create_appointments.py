from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

_state = sa.Enum(
    "held",
    "confirmed",
    "payment_failed",
    name="appointment_state",
    native_enum=False,
    length=20,
)


def upgrade():
    op.create_table(
        "appointments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("user_email", sa.String(), nullable=False),
        sa.Column("user_name", sa.String(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.String(5), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=False),
        sa.Column("booked_slots", sa.JSON(), nullable=False),
        sa.Column("state", _state, nullable=False),
        sa.Column("amount", sa.String(20), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("external_order_id", sa.String(), nullable=True),
        sa.Column("external_payer_id", sa.String(), nullable=True),
        sa.Column("external_transaction_id", sa.String(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("meeting_link", sa.String(512), nullable=True),
        sa.Column("meeting_event_id", sa.String(255), nullable=True),
        sa.Column("category_id", sa.String(), nullable=True),
        sa.Column("category_name", sa.String(), nullable=True),
        sa.Column("form_answers", sa.JSON(), nullable=True),
        sa.Column("confirmed_day_key", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("confirmed_day_key", name="uq_appointments_confirmed_day_key"),
    )
    op.create_index("ix_appointments_user_id", "appointments", ["user_id"], unique=False)
    op.create_index("ix_appointments_date", "appointments", ["date"], unique=False)
    op.create_index("ix_appointments_state", "appointments", ["state"], unique=False)
    op.create_index("ix_appointments_external_order_id", "appointments", ["external_order_id"], unique=False)
    op.create_index("ix_appointments_created_at", "appointments", ["created_at"], unique=False)

    op.create_table(
        "appointment_slots",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "appointment_id",
            sa.String(36),
            sa.ForeignKey("appointments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("slot_time", sa.String(5), nullable=False),
        sa.Column("state", _state, nullable=False),
        sa.UniqueConstraint("date", "slot_time", "state", name="uq_appointment_slots_claim"),
    )
    op.create_index(
        "ix_appointment_slots_appointment_id", "appointment_slots", ["appointment_id"], unique=False
    )


def downgrade():
    op.drop_index("ix_appointment_slots_appointment_id", table_name="appointment_slots")
    op.drop_table("appointment_slots")
    op.drop_index("ix_appointments_created_at", table_name="appointments")
    op.drop_index("ix_appointments_external_order_id", table_name="appointments")
    op.drop_index("ix_appointments_state", table_name="appointments")
    op.drop_index("ix_appointments_date", table_name="appointments")
    op.drop_index("ix_appointments_user_id", table_name="appointments")
    op.drop_table("appointments")
