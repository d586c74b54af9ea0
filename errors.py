"""Error kinds raised by the marketplace core.

Every error is recoverable by the caller. The Flask layer maps each kind to
its HTTP status through ``status_code``.
"""


class MarketplaceError(Exception):
    status_code = 500

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {'error': self.message}


class ValidationError(MarketplaceError):
    """Invalid transition, missing precondition or malformed input"""
    status_code = 400


class ForbiddenError(MarketplaceError):
    """Actor lacks the required relationship to the entity"""
    status_code = 403

    def __init__(self, message='Forbidden'):
        super().__init__(message)


class NotFoundError(MarketplaceError):
    status_code = 404

    def __init__(self, message='Resource not found'):
        super().__init__(message)


class ConflictError(MarketplaceError):
    """Uniqueness violation: duplicate proposal, second contract, double funding"""
    status_code = 409


class PaymentGatewayError(ValidationError):
    """Gateway call failed.

    ``retryable`` is True when the gateway could not be reached (timeout,
    connection error, 5xx) and False when it answered with a rejection.
    """

    def __init__(self, message, retryable=False):
        super().__init__(message)
        self.retryable = retryable
