class NotFound(Exception):
    pass


class ProviderError(Exception):
    """The payment provider rejected a request (bad reference, bad input)."""


class ProviderUnavailable(ProviderError):
    """Transient provider failure: unreachable, timed out, rate limited.

    Callers may retry; the ledger is left untouched.
    """

    retryable = True


class ProviderNotConfigured(ProviderError):
    pass


class Conflict(Exception):
    pass


class InvalidRequest(Exception):
    pass


class CheckoutFailed(Exception):
    """The provider session could not be opened; the transaction is failed."""

    def __init__(self, transaction_id: str, reason: str) -> None:
        super().__init__(reason)
        self.transaction_id = transaction_id
