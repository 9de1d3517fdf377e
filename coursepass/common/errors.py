"""Engine error taxonomy.

Every failure the engine surfaces carries a stable ``code`` and the HTTP
status the API layer answers with. Validation and business errors are never
retried; ``PersistenceFailure`` is retried at the store boundary before it is
raised.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class EngineError(Exception):
    code = "ENGINE_ERROR"
    http_status = 500
    default_message = "Unexpected engine error."

    def __init__(self, message: Optional[str] = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class NotFound(EngineError):
    code = "NOT_FOUND"
    http_status = 404
    default_message = "Record not found."


class InvalidAmount(EngineError):
    code = "INVALID_AMOUNT"
    http_status = 400
    default_message = "Amount is invalid."


class InvalidStateTransition(EngineError):
    code = "INVALID_STATE_TRANSITION"
    http_status = 400
    default_message = "Transition not allowed from the current status."


class InvalidPlanType(EngineError):
    code = "INVALID_PLAN_TYPE"
    http_status = 400
    default_message = "Plan type does not fit this operation."


class PlanUnavailable(EngineError):
    code = "PLAN_UNAVAILABLE"
    http_status = 400
    default_message = "Plan is not available for purchase."


class DeadlineExpired(EngineError):
    code = "DEADLINE_EXPIRED"
    http_status = 409
    default_message = "Deadline has passed."


class SeatExhausted(EngineError):
    code = "SEAT_EXHAUSTED"
    http_status = 409
    default_message = "No seats are available in this subscription."


class DuplicateRecord(EngineError):
    code = "DUPLICATE_RECORD"
    http_status = 409
    default_message = "Record already exists."


class ActiveMembershipExists(EngineError):
    code = "ACTIVE_MEMBERSHIP_EXISTS"
    http_status = 409
    default_message = "User already holds an activated membership."


class PaymentFailed(EngineError):
    code = "PAYMENT_FAILED"
    http_status = 402
    default_message = "Payment was declined."


class GatewayUnavailable(EngineError):
    code = "GATEWAY_UNAVAILABLE"
    http_status = 503
    default_message = "Payment gateway is unreachable, try again later."


class GatewayTimeout(EngineError):
    code = "GATEWAY_TIMEOUT"
    http_status = 504
    default_message = "Payment gateway did not answer in time; outcome unknown."


class PersistenceFailure(EngineError):
    code = "PERSISTENCE_FAILURE"
    http_status = 503
    default_message = "Storage backend is unavailable."


class InvalidRequest(EngineError):
    code = "INVALID_REQUEST"
    http_status = 400
    default_message = "Request is missing required fields."
