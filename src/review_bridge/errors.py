"""Bridge exceptions with component-specific handling."""


class BridgeError(Exception):
    """Base exception for bridge operations."""

    def __init__(self, message: str, component: str = "bridge"):
        self.component = component
        super().__init__(f"[{component}] {message}")


class ConfigurationError(BridgeError):
    """Required app or backend configuration is missing or invalid."""

    def __init__(self, message: str):
        super().__init__(message, "config")


class MigrationError(BridgeError):
    """A migration step failed; the schema stays at the last good version."""

    def __init__(self, message: str, version: int | None = None):
        self.version = version
        super().__init__(message, "migrations")


class StorageError(BridgeError):
    """Base exception for storage backend failures."""

    def __init__(self, message: str, backend: str = "storage"):
        self.backend = backend
        super().__init__(message, backend)


class StorageConnectionError(StorageError):
    """Storage backend is unreachable or the pool timed out."""

    pass


class ConstraintViolation(StorageError):
    """A unique or foreign-key constraint was breached."""

    pass


class NotInitializedError(StorageError):
    """An operation was attempted before initialize()."""

    pass


class DeliveryError(BridgeError):
    """Base exception for collaborator delivery failures."""

    def __init__(self, message: str, component: str = "delivery", status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message, component)


class TransientDeliveryError(DeliveryError):
    """Delivery failed temporarily and may be retried."""

    def __init__(
        self,
        message: str,
        component: str = "delivery",
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, component, status_code)


class PermanentDeliveryError(DeliveryError):
    """Delivery was explicitly refused and must not be retried."""

    def __init__(
        self,
        message: str,
        component: str = "delivery",
        status_code: int | None = None,
        errcode: str | None = None,
    ):
        self.errcode = errcode
        super().__init__(message, component, status_code)


class ReplyRejectedError(BridgeError):
    """A reply intent was refused by the dispatch queue."""

    def __init__(self, message: str, review_id: str):
        self.review_id = review_id
        super().__init__(message, "replies")


class DuplicateReplyError(ReplyRejectedError):
    """The review already has a dispatched or in-flight reply."""

    pass
