"""Initial schema: rides, ride_requests, strike_records, penalty_charges"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "rides",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("kind", sa.String(30), nullable=False, server_default="driver_posting"),
        sa.Column("driver_id", sa.String, nullable=False),
        sa.Column("origin", sa.String(120), nullable=False),
        sa.Column("origin_area", sa.String(120), nullable=False),
        sa.Column("destination", sa.String(120), nullable=False),
        sa.Column("destination_area", sa.String(120), nullable=False),
        sa.Column("departure_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("arrival_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("seats_total", sa.Integer, nullable=False),
        sa.Column("seats_left", sa.Integer, nullable=False),
        sa.Column("gender_preference", sa.String(20), nullable=False, server_default="none"),
        sa.Column("car_model", sa.String(120), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("driver_payment_token", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="OPEN"),
        sa.Column("start_code", sa.String(4), nullable=True),
        sa.Column("start_code_issued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("start_code_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completion_code", sa.String(6), nullable=True),
        sa.Column("completion_code_issued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completion_code_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text, nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("seats_left >= 0 AND seats_left <= seats_total", name="ck_rides_seats_left"),
    )
    op.create_index("idx_rides_status", "rides", ["status"])
    op.create_index("idx_rides_driver", "rides", ["driver_id"])
    op.create_index("idx_rides_departure", "rides", ["departure_time"])
    op.create_index("idx_rides_started", "rides", ["started_at"])
    op.create_index("idx_rides_created", "rides", ["created_at"])

    op.create_table(
        "ride_requests",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("ride_id", sa.String, sa.ForeignKey("rides.id"), nullable=False),
        sa.Column("passenger_id", sa.String, nullable=False),
        sa.Column("payment_token", sa.String(255), nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default="PENDING"),
        sa.Column("seat_held", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="NONE"),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("authorization_id", sa.String(255), nullable=True),
        sa.Column("receipt_id", sa.String(255), nullable=True),
        sa.Column("refund_reference", sa.String(255), nullable=True),
        sa.Column("platform_fee", sa.Numeric(10, 2), nullable=True),
        sa.Column("driver_payout", sa.Numeric(10, 2), nullable=True),
        sa.Column("refund_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("next_refund_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_payment_error", sa.Text, nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text, nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_ride_requests_ride", "ride_requests", ["ride_id"])
    op.create_index("idx_ride_requests_passenger", "ride_requests", ["passenger_id"])
    op.create_index("idx_ride_requests_status", "ride_requests", ["status"])
    op.create_index("idx_ride_requests_payment_status", "ride_requests", ["payment_status"])
    # At most one active request per (ride, passenger)
    op.create_index(
        "uq_ride_requests_active",
        "ride_requests",
        ["ride_id", "passenger_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('PENDING', 'APPROVED')"),
    )

    op.create_table(
        "strike_records",
        sa.Column("user_id", sa.String, primary_key=True),
        sa.Column("year_month", sa.String(7), primary_key=True),
        sa.Column("count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_penalty_amount", sa.Numeric(10, 2), nullable=False, server_default="0.00"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "penalty_charges",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("user_id", sa.String, nullable=False),
        sa.Column("ride_id", sa.String, sa.ForeignKey("rides.id"), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("payment_token", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("receipt_id", sa.String(255), nullable=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_penalty_charges_user", "penalty_charges", ["user_id"])
    op.create_index("idx_penalty_charges_status", "penalty_charges", ["status"])


def downgrade() -> None:
    op.drop_table("penalty_charges")
    op.drop_table("strike_records")
    op.drop_table("ride_requests")
    op.drop_table("rides")
