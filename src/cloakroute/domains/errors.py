"""Domain directory errors."""

from __future__ import annotations


class DomainConflictError(ValueError):
    """The hostname is already claimed by another domain record."""

    def __init__(self, hostname: str) -> None:
        super().__init__(f"Domain {hostname} is already registered")
        self.hostname = hostname


class DomainNotFoundError(LookupError):
    """No domain record exists for the given id."""

    def __init__(self, domain_id: str) -> None:
        super().__init__(f"Domain {domain_id} not found")
        self.domain_id = domain_id


class InvalidHostnameError(ValueError):
    """The submitted hostname does not normalize to a usable host."""
