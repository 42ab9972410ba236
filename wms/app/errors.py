from __future__ import annotations


class InvalidQuantity(ValueError):
    """Negative, fractional or over-capacity tier/pieces values."""


class ConcurrentModification(RuntimeError):
    """A conditional write lost the race for an inventory row."""

    def __init__(self, record_id: str, detail: str = "inventory row changed concurrently"):
        super().__init__(f"{detail} (record_id={record_id})")
        self.record_id = record_id
        self.detail = detail


class ConservationViolation(AssertionError):
    # Raised when source + destination pieces != original pieces.
    # Never expected for valid inputs; callers must not swallow it.
    pass


class InvalidTransition(RuntimeError):
    def __init__(self, current: str, target: str):
        super().__init__(f"cannot move transfer from {current} to {target}")
        self.current = current
        self.target = target


class PermissionDenied(RuntimeError):
    pass


class RecordNotFound(LookupError):
    pass


class TransferClaimLost(RuntimeError):
    """Another executor took over the transfer; this one must stop without touching stock."""

    def __init__(self, transfer_id: str):
        super().__init__(f"transfer {transfer_id} is being executed elsewhere")
        self.transfer_id = transfer_id
