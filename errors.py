"""
Error taxonomy for the shop.

Domain errors (validation, missing items, stock conflicts) are kept apart from
infrastructure errors (Unavailable) so callers never retry a domain conflict
by accident. Each error carries a stable code and the HTTP status the JSON API
answers with.
"""


class ShopError(Exception):
    code = 'error'
    status_code = 500
    default_message = "Something went wrong."

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self):
        return {'error': {'code': self.code, 'message': self.message}}


class ValidationError(ShopError):
    """Malformed input. Fix the input; no retry needed."""
    code = 'validation_error'
    status_code = 400
    default_message = "Invalid input."


class NotFound(ShopError):
    code = 'not_found'
    status_code = 404
    default_message = "Item not found."


class InsufficientStock(ShopError):
    """Requested quantity exceeds stock at commit time. Refresh and retry."""
    code = 'insufficient_stock'
    status_code = 409
    default_message = "Insufficient stock for the requested quantity."


class Conflict(ShopError):
    code = 'conflict'
    status_code = 409
    default_message = "The request conflicts with the current state."


class Unavailable(ShopError):
    """Transient infrastructure failure. Retry with backoff."""
    code = 'unavailable'
    status_code = 503
    default_message = "The shop is temporarily unavailable. Please try again."


class Unauthorized(ShopError):
    code = 'unauthorized'
    status_code = 401
    default_message = "Please sign in."


class Forbidden(ShopError):
    code = 'forbidden'
    status_code = 403
    default_message = "Access denied."


ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (ValidationError, NotFound, InsufficientStock, Conflict,
                Unavailable, Unauthorized, Forbidden)
}


def error_from_payload(payload, status_code=None):
    """Rebuild a ShopError from an API error body ({"error": {"code", "message"}})."""
    body = payload.get('error', {}) if isinstance(payload, dict) else {}
    cls = ERRORS_BY_CODE.get(body.get('code'))
    if cls is None:
        cls = Unavailable if status_code is None or status_code >= 500 else ShopError
    return cls(body.get('message'))
