"""
Error taxonomy for the payment gateway layer.

Every error the engine raises on purpose derives from GatewayError, so the
HTTP layer can translate it into a ``{"message": ...}`` body without knowing
which component raised it. Provider call failures live in
``paygate.engine.retry`` next to the backoff logic that inspects them.
"""


class GatewayError(Exception):
    """Base class for errors surfaced to API callers."""

    http_status = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(GatewayError):
    """Provider configuration cannot build a working adapter."""


class InvalidRequestError(GatewayError):
    """Request rejected locally before any remote call was made."""


class NotFoundError(GatewayError):
    """A referenced record does not exist."""

    http_status = 404
