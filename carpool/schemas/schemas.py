from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Literal, Optional, Union
from pydantic import BaseModel, Field, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class RideKindEnum(str, Enum):
    driver_posting = "driver_posting"
    passenger_request = "passenger_request"


class GenderPreferenceEnum(str, Enum):
    none = "none"
    male_only = "male_only"
    female_only = "female_only"


class RideStatusEnum(str, Enum):
    OPEN = "OPEN"
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class RequestStatusEnum(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED_BY_PASSENGER = "CANCELLED_BY_PASSENGER"
    CANCELLED_BY_DRIVER = "CANCELLED_BY_DRIVER"
    COMPLETED = "COMPLETED"


class PaymentStatusEnum(str, Enum):
    NONE = "NONE"
    AUTHORIZED = "AUTHORIZED"
    CAPTURED = "CAPTURED"
    REFUND_PENDING = "REFUND_PENDING"
    REFUNDED = "REFUNDED"


class PenaltyStatusEnum(str, Enum):
    PENDING = "PENDING"
    CHARGED = "CHARGED"


class ClaimantRoleEnum(str, Enum):
    driver = "driver"
    passenger = "passenger"


ACTIVE_REQUEST_STATUSES = (RequestStatusEnum.PENDING.value, RequestStatusEnum.APPROVED.value)
TERMINAL_RIDE_STATUSES = (RideStatusEnum.COMPLETED.value, RideStatusEnum.CANCELLED.value)


# ---------------------------------------------------------------------------
# Ride schemas
# ---------------------------------------------------------------------------

class _RidePostingBase(BaseModel):
    origin: str = Field(..., min_length=1, max_length=120)
    origin_area: str = Field(..., min_length=1, max_length=120)
    destination: str = Field(..., min_length=1, max_length=120)
    destination_area: str = Field(..., min_length=1, max_length=120)
    departure_time: datetime
    arrival_time: datetime
    price: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    gender_preference: GenderPreferenceEnum = GenderPreferenceEnum.none
    notes: Optional[str] = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def _arrival_after_departure(self):
        if self.arrival_time < self.departure_time:
            raise ValueError("arrival_time must not be before departure_time")
        return self


class DriverPostingCreate(_RidePostingBase):
    kind: Literal["driver_posting"] = "driver_posting"
    seats_total: int = Field(..., ge=1, le=8)
    car_model: Optional[str] = Field(default=None, max_length=120)
    payment_token: Optional[str] = Field(default=None, max_length=255)


class PassengerRequestCreate(_RidePostingBase):
    kind: Literal["passenger_request"] = "passenger_request"
    seats_needed: int = Field(default=1, ge=1, le=8)


# Tagged by `kind`; each variant pins it with a Literal.
RidePostingCreate = Union[DriverPostingCreate, PassengerRequestCreate]


class RideResponse(BaseModel):
    id: str
    kind: RideKindEnum
    driver_id: str
    origin: str
    origin_area: str
    destination: str
    destination_area: str
    departure_time: datetime
    arrival_time: datetime
    price: Decimal
    seats_total: int
    seats_left: int
    gender_preference: GenderPreferenceEnum
    car_model: Optional[str] = None
    status: RideStatusEnum
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class CancelRequest(BaseModel):
    cancellation_reason: Optional[str] = Field(default=None, max_length=500)


class CancellationResponse(BaseModel):
    id: str
    status: str
    strike_count: int
    penalty_applied: bool
    penalty_amount: Decimal


# ---------------------------------------------------------------------------
# Ride request schemas
# ---------------------------------------------------------------------------

class RideRequestCreate(BaseModel):
    ride_id: str
    payment_token: str = Field(..., min_length=1, max_length=255)


class RideRequestResponse(BaseModel):
    id: str
    ride_id: str
    passenger_id: str
    status: RequestStatusEnum
    payment_status: PaymentStatusEnum
    amount: Decimal
    platform_fee: Optional[Decimal] = None
    driver_payout: Optional[Decimal] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Verification schemas
# ---------------------------------------------------------------------------

class VerificationCodeResponse(BaseModel):
    ride_id: str
    code: str
    expires_at: datetime


class VerifyStartRequest(BaseModel):
    code: str = Field(..., pattern=r"^\d{4}$")


class VerifyCompletionRequest(BaseModel):
    code: str = Field(..., pattern=r"^\d{6}$")
    claimant_role: ClaimantRoleEnum
    request_id: Optional[str] = None


class VerifyCompletionResponse(BaseModel):
    request: RideRequestResponse
    ride_status: RideStatusEnum


# ---------------------------------------------------------------------------
# Strike schemas
# ---------------------------------------------------------------------------

class StrikeCountResponse(BaseModel):
    user_id: str
    year_month: str
    strikes: int
