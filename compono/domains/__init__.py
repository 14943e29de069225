"""
Execution domains: driver contract, local driver and the domain service.
"""

from .base import DomainDriver
from .local import LocalDriver
from .service import DomainService

__all__ = ["DomainDriver", "DomainService", "LocalDriver"]
