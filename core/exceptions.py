from abc import ABC


class BaseCustomException(Exception, ABC):
    """
    Base class for all custom exceptions.
    """

    def __init__(self, message: str | None = None):
        self.message = message or self.get_default_message()
        super().__init__(self.message)

    def get_default_message(self) -> str:
        """
        Return default error message.

        Returns
        -------
        str
            Default error message
        """
        return "error.unknown"

    def get_status_code(self) -> int:
        """
        Return HTTP status code for exception.

        Returns
        -------
        int
            HTTP status code
        """
        return 500


class NotFoundException(BaseCustomException):
    """Not found exception (404)."""

    def get_status_code(self) -> int:
        return 404


class NetworkNotSupportedException(NotFoundException):
    """Network is not present in configuration."""

    def __init__(self, network: str):
        self.network = network
        super().__init__(f"error.network.not_supported: {network}")


class ConfigurationException(BaseCustomException):
    """Configuration could not be loaded or is invalid."""

    def get_default_message(self) -> str:
        return "error.config.invalid"


class TransportExhaustedException(BaseCustomException):
    """
    Every configured RPC endpoint of a network failed within one query.

    Parameters
    ----------
    network : str
        Network name
    errors : list[str] | None
        Per-endpoint failure descriptions, in attempt order
    """

    def __init__(self, network: str, errors: list[str] | None = None):
        self.network = network
        self.errors = errors or []
        super().__init__(f"error.rpc.exhausted: all endpoints failed for {network}")

    def get_status_code(self) -> int:
        return 502


class ReadFailedException(BaseCustomException):
    """
    Balance read failed for a monitored entity.

    Parameters
    ----------
    entity_key : str
        Key of the entity that could not be read
    cause : Exception
        Underlying transport or decoding error
    """

    def __init__(self, entity_key: str, cause: Exception):
        self.entity_key = entity_key
        self.cause = cause
        super().__init__(f"error.read.failed: {entity_key}: {cause}")

    def get_status_code(self) -> int:
        return 502


class PersistenceException(BaseCustomException):
    """
    State file could not be read or atomically written.

    Parameters
    ----------
    path : str
        Path of the state file
    reason : str
        Short description of the failure
    """

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"error.persistence.failed: {path}: {reason}")
