from carpool.models.ride import Ride
from carpool.models.ride_request import RideRequest
from carpool.models.strike import StrikeRecord
from carpool.models.penalty import PenaltyCharge

__all__ = ["Ride", "RideRequest", "StrikeRecord", "PenaltyCharge"]
