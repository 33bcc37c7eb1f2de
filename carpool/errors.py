"""
Typed errors raised by the ride lifecycle engine.

Each error carries the HTTP status the API layer renders it with; the
`kind` is the stable name clients switch on.
"""


class EngineError(Exception):
    kind = "EngineError"
    status_code = 400

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.kind)
        self.detail = detail or self.kind


class NotFound(EngineError):
    kind = "NotFound"
    status_code = 404


class InvalidTransition(EngineError):
    """Operation not valid in the current ride/request state."""
    kind = "InvalidTransition"
    status_code = 409


class RideNotOpen(InvalidTransition):
    kind = "RideNotOpen"


class StaleState(InvalidTransition):
    """The row changed while a payment call was in flight."""
    kind = "InvalidTransition"


class NotAuthorized(EngineError):
    kind = "NotAuthorized"
    status_code = 403


class NoSeatsAvailable(EngineError):
    kind = "NoSeatsAvailable"
    status_code = 409


class DuplicateRequest(EngineError):
    kind = "DuplicateRequest"
    status_code = 409


class InvalidCode(EngineError):
    kind = "InvalidCode"
    status_code = 400


class CodeExpired(EngineError):
    kind = "CodeExpired"
    status_code = 410


class NoApprovedPassengers(EngineError):
    kind = "NoApprovedPassengers"
    status_code = 409


class PaymentProcessorUnavailable(EngineError):
    kind = "PaymentProcessorUnavailable"
    status_code = 503
