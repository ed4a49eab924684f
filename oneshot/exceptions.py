"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""


class OneShotError(Exception):
    """Base exception for all unlock and demand errors."""

    pass


class ProductNotFoundError(OneShotError):
    """Raised when an unlock references a product that doesn't exist."""

    def __init__(self, product_id: int) -> None:
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class DeviceBannedError(OneShotError):
    """Raised when a banned device attempts an unlock."""

    def __init__(self, device_id: str, reason: str | None = None) -> None:
        self.device_id = device_id
        self.reason = reason
        super().__init__(f"Device {device_id} is banned: {reason or 'no reason given'}")


class DeviceNotFoundError(OneShotError):
    """Raised when an admin action references an unknown device."""

    def __init__(self, device_id: str) -> None:
        self.device_id = device_id
        super().__init__(f"Device not found: {device_id}")


class InvalidSignalTypeError(OneShotError):
    """Raised when a demand signal has an unrecognized type."""

    def __init__(self, signal_type: str) -> None:
        self.signal_type = signal_type
        super().__init__(f"Invalid signal type: {signal_type}")


class DemandRecordNotFoundError(OneShotError):
    """Raised when no demand record exists for a product key."""

    def __init__(self, product_key: str) -> None:
        self.product_key = product_key
        super().__init__(f"No demand record for product key: {product_key}")


class InvalidStatusTransitionError(OneShotError):
    """Raised when a status change does not follow the forward-only order."""

    def __init__(self, product_key: str, current: str, requested: str) -> None:
        self.product_key = product_key
        self.current = current
        self.requested = requested
        super().__init__(
            f"Invalid status transition for {product_key}: {current} -> {requested}"
        )


class ConcurrencyError(OneShotError):
    """Raised when concurrent modification detected."""

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Concurrent modification detected for {resource}")


class DatabaseError(OneShotError):
    """Raised when database operation fails unexpectedly."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Database error: {message}")
