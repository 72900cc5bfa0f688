"""
errors.py
Error taxonomy for the billing engine.
"""

from __future__ import annotations


class DuesError(Exception):
    pass


class ValidationError(DuesError):
    """Input or state rejected synchronously; never downgraded silently."""


class InvalidTransitionError(ValidationError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Membership status cannot change from {current!r} to {target!r}")
        self.current = current
        self.target = target


class NotFoundError(DuesError):
    pass


class ConflictError(DuesError):
    """A guarded write found the work already done (duplicate event, lost race)."""


class DeliveryError(DuesError):
    pass


class PersistenceError(DuesError):
    pass
