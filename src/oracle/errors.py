"""
Oracle Agent Errors

Failure taxonomy for the update pipeline. Every error carries a ``retryable``
flag so callers can tell transient conditions (the next scheduler tick may
succeed) from ones that need an operator.
"""

from typing import Optional


class OracleError(Exception):
    """Base class for all oracle pipeline failures."""

    retryable = False

    def __init__(self, message: str, oracle_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.oracle_id = oracle_id


# Validation
class ValidationError(OracleError):
    """Bad input shape. Never retried."""


class ExtractionError(ValidationError):
    """A value could not be pulled out of a JSON document."""

    def __init__(self, message: str, path: str):
        super().__init__(message)
        self.path = path


class PathNotFound(ExtractionError):
    pass


class NotNumeric(ExtractionError):
    pass


class WrongType(ExtractionError):
    pass


# Missing records
class NotFoundError(OracleError):
    """Oracle, config or on-chain record is missing."""


class OracleNotFoundError(NotFoundError):
    def __init__(self, oracle_id: str):
        super().__init__(f"Oracle '{oracle_id}' not found", oracle_id)


class OracleNotDeployedError(NotFoundError):
    def __init__(self, oracle_id: str):
        super().__init__(
            f"Oracle '{oracle_id}' not found on blockchain. It may not have been deployed yet.",
            oracle_id,
        )


# External services
class ExternalServiceError(OracleError):
    """Transport or remote failure. Retried by the next scheduler tick."""

    retryable = True


class ApiFetchError(ExternalServiceError):
    pass


class ApiExtractionError(ExternalServiceError):
    pass


class ChainRpcError(ExternalServiceError):
    pass


class DerivationError(ExternalServiceError):
    pass


class BalanceQueryError(ExternalServiceError):
    pass


class SigningError(ExternalServiceError):
    pass


class BroadcastError(ExternalServiceError):
    pass


class NonceConflictError(ExternalServiceError):
    """The chain rejected the nonce; the update was most likely already processed."""


class PendingTransactionError(NonceConflictError):
    """Another transaction from the same sender is still in the mempool."""


# Authorization and funding
class AuthorizationError(OracleError):
    """Sender is not allowed to write. Needs operator intervention."""


class NotCreatorError(AuthorizationError):
    def __init__(self, oracle_id: str, sender: str, creator: str):
        super().__init__(
            f"Wallet {sender} is not the creator of oracle '{oracle_id}' (creator: {creator})",
            oracle_id,
        )
        self.sender = sender
        self.creator = creator


class InsufficientFundsError(OracleError):
    """Wallet balance is below the gas reserve. Retryable once funded."""

    retryable = True

    def __init__(self, oracle_id: str, address: str, balance: int, minimum: int):
        self.address = address
        self.balance = balance
        self.minimum = minimum
        self.shortfall = max(minimum - balance, 0)
        super().__init__(
            f"Insufficient wallet balance for {address}: have {balance} wei, "
            f"need at least {minimum} wei (short {self.shortfall} wei). Please fund the oracle wallet.",
            oracle_id,
        )
