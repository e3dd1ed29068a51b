"""
Errors raised by the booking engine.

Each carries the HTTP status and a stable code so the API layer can render it
without knowing which component failed.
"""


class BookingError(Exception):
    status_code = 400
    code = "booking_error"

    def __init__(self, message: str = None):
        self.message = message or (self.__doc__ or self.code).strip()
        super().__init__(self.message)


class InvalidCoordinates(BookingError):
    """Coordinates must be finite numbers"""
    status_code = 400
    code = "invalid_coordinates"


class PricingNotFound(BookingError):
    """No pricing found for the specified vehicle configuration"""
    status_code = 404
    code = "pricing_not_found"


class FareUnavailable(BookingError):
    """Fare could not be calculated for this trip"""
    status_code = 422
    code = "fare_unavailable"


class VehicleNotFound(BookingError):
    """Vehicle not found"""
    status_code = 404
    code = "vehicle_not_found"


class VehicleUnavailable(BookingError):
    """Vehicle is not available for booking"""
    status_code = 400
    code = "vehicle_unavailable"


class VehicleAlreadyBooked(BookingError):
    """Vehicle is already booked for the requested dates"""
    status_code = 409
    code = "vehicle_already_booked"


class InvalidTransition(BookingError):
    """Booking cannot move to the requested status"""
    status_code = 409
    code = "invalid_transition"


class NotAuthorized(BookingError):
    """Not authorized to perform this action on the booking"""
    status_code = 403
    code = "not_authorized"


class BookingNotFound(BookingError):
    """Booking not found"""
    status_code = 404
    code = "booking_not_found"


class RefundWindowExpired(BookingError):
    """Refund window has expired"""
    status_code = 400
    code = "refund_window_expired"


class PaymentMismatch(BookingError):
    """Amount does not match the amount due"""
    status_code = 400
    code = "payment_mismatch"


class PaymentGatewayError(BookingError):
    """Payment gateway request failed"""
    status_code = 502
    code = "payment_gateway_error"
