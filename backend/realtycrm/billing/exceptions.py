"""Billing error taxonomy."""


class BillingError(Exception):
    """A single charge attempt failed. Always handled as a billing failure."""


class MissingCredentialError(BillingError):
    """The subscription has no billing key, so it cannot be charged off-session."""

    def __init__(self, message: str = "Subscription has no billing key") -> None:
        super().__init__(message)


class GatewayError(BillingError):
    """The payment provider rejected the charge or could not be reached."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
        body: object = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.body = body


class GatewayTimeoutError(GatewayError):
    """The charge request did not complete within the configured timeout."""


class PersistenceError(Exception):
    """The subscription store failed during a billing pass."""
