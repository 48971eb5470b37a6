"""Error taxonomy for wallet fee processing.

Every error carries a short machine ``code`` and a human-readable
``reason`` so routers can hand both back to the caller unchanged.
"""


class WalletFeeError(Exception):
    code = "wallet_fee_error"
    retryable = False

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    def __str__(self) -> str:
        return f"{self.code}: {self.reason}"


class NotFoundError(WalletFeeError):
    code = "not_found"


class ConflictError(WalletFeeError):
    """The stored due date moved between read and write."""

    code = "conflict"


class StorageError(WalletFeeError):
    """Transient persistence failure (driver error or timeout)."""

    code = "storage_error"
    retryable = True


class ConfigurationError(WalletFeeError):
    code = "configuration_error"
