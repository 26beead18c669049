"""Exceptions raised by the contact store and the identity resolver."""


class IdentityError(Exception):
    """Base class for identity reconciliation errors."""
    pass


class InvariantViolationError(IdentityError):
    """Stored contacts break the cluster invariants (missing primary, two-hop link)."""
    pass


class TransientStoreError(IdentityError):
    """The database was busy or locked; the whole request can be retried."""
    pass


class StaleRecordError(IdentityError):
    """A record disappeared or was deleted between read and write."""
    pass


class StoreUnavailableError(IdentityError):
    """Raised when retries against the store are exhausted."""
    pass
