"""
Domain driver contract.

A driver materializes domain records on a concrete execution backend
(a container host, a cluster, a simulator). The DomainService owns the
records and the transactions; drivers only perform the side effects and
report back any backend assigned attributes (addresses, handles) as a
mapping that gets merged into the record.

Drivers raise DriverError on backend failures.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..schemas import Domain, DomainCollection, DomainInstance, DomainLink


class DomainDriver(ABC):
    """Abstract base for domain drivers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Driver type name, matched against Domain.type."""
        ...

    async def list_domains(self, query: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Domains the backend knows about (for discovery)."""
        return []

    @abstractmethod
    async def add_domain(self, domain: Domain) -> dict[str, Any] | None: ...

    @abstractmethod
    async def remove_domain(self, domain: Domain) -> None: ...

    @abstractmethod
    async def add_collection(
        self, domain: Domain, collection: DomainCollection
    ) -> dict[str, Any] | None: ...

    @abstractmethod
    async def remove_collection(self, domain: Domain, collection: DomainCollection) -> None: ...

    @abstractmethod
    async def add_instance(
        self, domain: Domain, collection: DomainCollection, instance: DomainInstance
    ) -> dict[str, Any] | None: ...

    @abstractmethod
    async def remove_instance(
        self, domain: Domain, collection: DomainCollection, instance: DomainInstance
    ) -> None: ...

    @abstractmethod
    async def add_link(
        self,
        domain: Domain,
        link: DomainLink,
        src: DomainCollection,
        dst: DomainCollection,
    ) -> dict[str, Any] | None: ...

    @abstractmethod
    async def remove_link(self, domain: Domain, link: DomainLink) -> None: ...

    async def event_instance(self, domain: Domain, instance: DomainInstance, event: str) -> None:
        """Deliver a lifecycle event to an instance. No-op by default."""

    async def event_collection(
        self, domain: Domain, collection: DomainCollection, event: str
    ) -> None:
        """Deliver a lifecycle event to every instance of a collection. No-op by default."""
