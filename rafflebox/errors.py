"""Domain errors.

Each error carries the HTTP status the web layer answers with. Settlement
conflicts are normally reported in results instead of raised, because they
are the expected outcome of duplicate or out-of-order deliveries.
"""


class RaffleError(Exception):
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(RaffleError):
    status_code = 400


class NotFoundError(RaffleError):
    status_code = 404


class ConflictError(RaffleError):
    status_code = 409


class ExpiredError(RaffleError):
    status_code = 410


class StorageError(RaffleError):
    status_code = 500


class ProviderError(RaffleError):
    """The payment provider's own API failed us; the webhook will retry."""
    status_code = 502
