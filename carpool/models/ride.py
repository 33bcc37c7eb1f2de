import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, Integer, Numeric, DateTime, Text, func
from sqlalchemy.orm import Mapped, mapped_column
from carpool.database import Base


class Ride(Base):
    __tablename__ = "rides"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    # driver_posting | passenger_request
    kind: Mapped[str] = mapped_column(String(30), nullable=False, default="driver_posting")
    driver_id: Mapped[str] = mapped_column(String, nullable=False, index=True)

    origin: Mapped[str] = mapped_column(String(120), nullable=False)
    origin_area: Mapped[str] = mapped_column(String(120), nullable=False)
    destination: Mapped[str] = mapped_column(String(120), nullable=False)
    destination_area: Mapped[str] = mapped_column(String(120), nullable=False)
    departure_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    arrival_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    seats_total: Mapped[int] = mapped_column(Integer, nullable=False)
    seats_left: Mapped[int] = mapped_column(Integer, nullable=False)
    # none | male_only | female_only
    gender_preference: Mapped[str] = mapped_column(String(20), nullable=False, default="none")
    car_model: Mapped[str | None] = mapped_column(String(120), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    driver_payment_token: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # OPEN | STARTED | COMPLETED | CANCELLED
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="OPEN", index=True)

    start_code: Mapped[str | None] = mapped_column(String(4), nullable=True)
    start_code_issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    start_code_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completion_code: Mapped[str | None] = mapped_column(String(6), nullable=True)
    completion_code_issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completion_code_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __mapper_args__ = {"version_id_col": version}
