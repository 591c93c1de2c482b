"""
Typed application errors.
Every error carries a machine code, a message, optional structured details
and an HTTP status hint. The API layer renders them as
{"success": false, "error": {message, code, httpStatus, details}}.
"""
from typing import Any, Dict, Optional


class AppError(Exception):
    code = "APP_ERROR"
    status_code = 400
    # Benign errors describe an already-satisfied condition; callers must not retry them.
    benign = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "httpStatus": self.status_code,
            "details": self.details,
        }


class ValidationFailed(AppError):
    code = "VALIDATION_ERROR"
    status_code = 400


class ReplayDetected(AppError):
    code = "REPLAY_DETECTED"
    status_code = 400


class LowAccuracy(AppError):
    code = "LOW_ACCURACY"
    status_code = 400


class NotFound(AppError):
    code = "NOT_FOUND"
    status_code = 404


class Forbidden(AppError):
    code = "FORBIDDEN"
    status_code = 403


class AlreadyClockedIn(AppError):
    code = "ALREADY_CLOCKED_IN"
    status_code = 409
    benign = True


class AlreadyClockedOut(AppError):
    code = "ALREADY_CLOCKED_OUT"
    status_code = 409


class NotClockedIn(AppError):
    code = "NOT_CLOCKED_IN"
    status_code = 400


class OutsideGeofence(AppError):
    code = "OUTSIDE_GEOFENCE"
    status_code = 400


class TooEarly(AppError):
    code = "TOO_EARLY"
    status_code = 400


class VenueNotConfigured(AppError):
    code = "VENUE_NOT_GEOCODED"
    status_code = 400


class RaceCondition(AppError):
    code = "RACE_CONDITION"
    status_code = 409
    benign = True


class DirtyData(AppError):
    code = "DIRTY_DATA"
    status_code = 409


class InvalidTransition(AppError):
    code = "INVALID_TRANSITION"
    status_code = 400


class DuplicateRequest(AppError):
    code = "DUPLICATE_REQUEST"
    status_code = 409


class AlreadyReviewed(AppError):
    code = "ALREADY_REVIEWED"
    status_code = 409


class GeocodingFailed(AppError):
    code = "GEOCODE_ERROR"
    status_code = 502
