import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, Integer, Boolean, Numeric, DateTime, ForeignKey, Text, func
from sqlalchemy.orm import Mapped, mapped_column
from carpool.database import Base


class RideRequest(Base):
    __tablename__ = "ride_requests"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    ride_id: Mapped[str] = mapped_column(String, ForeignKey("rides.id"), nullable=False, index=True)
    passenger_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    payment_token: Mapped[str] = mapped_column(String(255), nullable=False)

    # PENDING | APPROVED | REJECTED | CANCELLED_BY_PASSENGER | CANCELLED_BY_DRIVER | COMPLETED
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="PENDING", index=True)
    seat_held: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # NONE | AUTHORIZED | CAPTURED | REFUND_PENDING | REFUNDED
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default="NONE", index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    authorization_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    receipt_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    refund_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    platform_fee: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    driver_payout: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    refund_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_refund_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_payment_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __mapper_args__ = {"version_id_col": version}
