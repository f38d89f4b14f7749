"""Exception types raised by the sync and points layers."""

from __future__ import annotations


class GochiError(Exception):
    """Base exception for gochi."""


class StoreError(GochiError):
    """A persistent store call failed."""

    def __init__(self, operation: str, details: str) -> None:
        self.operation = operation
        self.details = details
        super().__init__(f"Store {operation} failed: {details}")


class StoreUnavailableError(StoreError):
    """The persistent store cannot be reached. Aborts a sync run."""

    def __init__(self, details: str = "connection lost") -> None:
        super().__init__("connect", details)


class AccountUnavailableError(GochiError):
    """An account could not be loaded, so mutations for it are blocked."""

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"Account {account_id} could not be loaded")


class InvalidOperationError(GochiError):
    """An operation was called with arguments it does not accept."""


class PetStateError(GochiError):
    """A pet action is not allowed in the pet's current state."""

    def __init__(self, account_id: str, reason: str) -> None:
        self.account_id = account_id
        self.reason = reason
        super().__init__(f"Pet {account_id}: {reason}")


class SessionError(GochiError):
    """A game session operation failed."""
