"""
Typed errors for the PlotScore analysis and payment pipeline.

Each class carries the HTTP status and a short machine-readable code so the
Flask layer can map it with a single error handler.  Validation and
session-state errors are never retried; ProviderUnavailable is the only
class a caller may reasonably retry.
"""


class PlotScoreError(Exception):
    """Base class for every caller-visible pipeline failure."""

    status_code = 500
    error_code = "internal_error"


class InvalidInput(PlotScoreError):
    """Malformed coordinate, amount, property type or tier. Raised before any I/O."""

    status_code = 400
    error_code = "invalid_input"


class ProviderUnavailable(PlotScoreError):
    """The places/geocoding provider could not be reached or refused the request."""

    status_code = 503
    error_code = "provider_unavailable"


class InsufficientData(PlotScoreError):
    """The provider returned no usable places, so no report can be scored."""

    status_code = 422
    error_code = "insufficient_data"


class LocationBlocked(PlotScoreError):
    """Hard location block: no essential service coverage at all."""

    status_code = 409
    error_code = "location_blocked"


class AcknowledgementRequired(PlotScoreError):
    """High-risk location that the user has not explicitly accepted."""

    status_code = 409
    error_code = "acknowledgement_required"


class UnknownSession(PlotScoreError):
    status_code = 404
    error_code = "unknown_session"


class UnknownOrder(PlotScoreError):
    status_code = 404
    error_code = "unknown_order"


class AlreadyPaid(PlotScoreError):
    status_code = 409
    error_code = "already_paid"


class NotPaid(PlotScoreError):
    status_code = 402
    error_code = "not_paid"


class VerificationFailed(PlotScoreError):
    """Gateway signature did not match; the callback is treated as forged."""

    status_code = 400
    error_code = "verification_failed"


class SessionFailed(PlotScoreError):
    """The session reached the terminal 'failed' state and cannot be paid."""

    status_code = 409
    error_code = "session_failed"


class PaymentGatewayError(PlotScoreError):
    """The gateway refused or failed to create an order."""

    status_code = 502
    error_code = "payment_gateway_error"


class FreeLimitReached(PlotScoreError):
    status_code = 429
    error_code = "free_limit_reached"
