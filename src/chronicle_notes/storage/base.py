"""Base repository contract for Chronicle Notes storage."""
from abc import ABC, abstractmethod
from typing import Generic, TypeVar

T = TypeVar("T")


class Repository(ABC, Generic[T]):
    """CRUD contract shared by the SQL-backed repositories.

    Lookups of unknown IDs raise a NotFoundError subclass rather than
    returning None, so callers can tell a missing record from a no-op.
    """

    @abstractmethod
    def create(self, entity: T) -> T:
        """Persist a new entity and return it."""

    @abstractmethod
    def get(self, id: str) -> T:
        """Fetch an entity by ID."""

    @abstractmethod
    def update(self, entity: T) -> T:
        """Replace the mutable fields of an existing entity."""

    @abstractmethod
    def delete(self, id: str) -> None:
        """Delete an entity by ID."""
