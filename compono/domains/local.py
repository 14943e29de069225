"""
In-memory domain driver.

Simulates a backend without running anything: instances get addresses
allocated from a per-domain subnet and every side effect is recorded in
`resources`. Operations listed in `fail_on` raise DriverError, which is
how tests exercise failure handling.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import TYPE_CHECKING, Any

from ..errors import DriverError
from .base import DomainDriver

if TYPE_CHECKING:
    from ..schemas import Domain, DomainCollection, DomainInstance, DomainLink

logger = logging.getLogger(__name__)


class LocalDriver(DomainDriver):
    """
    Driver for the "local" domain type.

    Usage:
        driver = LocalDriver(subnet="10.10.0.0/16")
        domains.register_driver(driver)
    """

    def __init__(
        self,
        *,
        subnet: str = "10.0.0.0/8",
        domains: list[dict[str, Any]] | None = None,
        fail_on: set[str] | None = None,
    ):
        self._hosts = ipaddress.ip_network(subnet).hosts()
        self._known_domains = list(domains or [])
        self.fail_on: set[str] = set(fail_on or ())
        self.resources: dict[str, dict[str, Any]] = {
            "domains": {},
            "collections": {},
            "instances": {},
            "links": {},
        }
        self.events: list[tuple[str, str]] = []

    @property
    def name(self) -> str:
        return "local"

    def _check(self, operation: str) -> None:
        if operation in self.fail_on:
            raise DriverError(f"{operation} failed", driver=self.name)

    def _next_addr(self) -> str:
        try:
            return str(next(self._hosts))
        except StopIteration as e:
            raise DriverError("address space exhausted", driver=self.name) from e

    async def list_domains(self, query: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        return list(self._known_domains)

    async def add_domain(self, domain: Domain) -> dict[str, Any] | None:
        self._check("add_domain")
        self.resources["domains"][domain.id] = {"runtimes": domain.runtimes}
        return None

    async def remove_domain(self, domain: Domain) -> None:
        self._check("remove_domain")
        self.resources["domains"].pop(domain.id, None)

    async def add_collection(
        self, domain: Domain, collection: DomainCollection
    ) -> dict[str, Any] | None:
        self._check("add_collection")
        self.resources["collections"][collection.id] = {
            "domain": domain.id,
            "name": collection.name,
        }
        return None

    async def remove_collection(self, domain: Domain, collection: DomainCollection) -> None:
        self._check("remove_collection")
        self.resources["collections"].pop(collection.id, None)

    async def add_instance(
        self, domain: Domain, collection: DomainCollection, instance: DomainInstance
    ) -> dict[str, Any] | None:
        self._check("add_instance")
        if instance.proxy:
            self.resources["instances"][instance.id] = {"proxy_target": instance.proxy_target}
            return {"addr": instance.addr or self._next_addr()}

        addr = self._next_addr()
        self.resources["instances"][instance.id] = {
            "domain": domain.id,
            "collection": collection.id,
            "runtime": instance.runtime,
            "source": instance.source,
        }
        logger.debug(f"[local] started {instance.source or instance.id} at {addr}")
        return {"addr": addr, "proxy_addr": self._next_addr()}

    async def remove_instance(
        self, domain: Domain, collection: DomainCollection, instance: DomainInstance
    ) -> None:
        self._check("remove_instance")
        self.resources["instances"].pop(instance.id, None)

    async def add_link(
        self,
        domain: Domain,
        link: DomainLink,
        src: DomainCollection,
        dst: DomainCollection,
    ) -> dict[str, Any] | None:
        self._check("add_link")
        self.resources["links"][link.id] = {
            "src": (src.id, link.src.name),
            "dst": (dst.id, link.dst.name),
        }
        return None

    async def remove_link(self, domain: Domain, link: DomainLink) -> None:
        self._check("remove_link")
        self.resources["links"].pop(link.id, None)

    async def event_instance(self, domain: Domain, instance: DomainInstance, event: str) -> None:
        self._check("event_instance")
        self.events.append((instance.id, event))

    async def event_collection(
        self, domain: Domain, collection: DomainCollection, event: str
    ) -> None:
        self._check("event_collection")
        self.events.append((collection.id, event))
