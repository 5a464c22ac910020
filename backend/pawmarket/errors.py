class MarketplaceError(ValueError):
    """Base class for user-visible marketplace errors."""

    status_code = 400


class ValidationError(MarketplaceError):
    status_code = 400


class NotFoundError(MarketplaceError):
    status_code = 404


class ForbiddenError(MarketplaceError):
    status_code = 403


class ConflictError(MarketplaceError):
    """Illegal state transition, duplicate record or scheduling clash."""

    status_code = 400


class PaymentRequiredError(ConflictError):
    pass


class UpstreamError(MarketplaceError):
    """The payment gateway failed or answered with an unexpected shape."""

    status_code = 502


class AuthError(MarketplaceError):
    status_code = 401
