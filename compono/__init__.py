"""
Compono - component orchestration and reconciliation engine.

Compono deploys applications described as component models:

- **Models**: basic components (runnable units) and composites wiring
  subcomponents together through connectors
- **Instances**: a composite instance materializes into a tree of
  composite instances, collections (replica sets) and links
- **Scheduling**: cardinality and CPU driven replica counts
- **Domains**: execution environments reached through pluggable drivers
- **Daemons**: periodic passes converging stored state onto the domains

Quick Start:
    >>> from compono import create_engine
    >>> from compono.domains import LocalDriver
    >>>
    >>> engine = create_engine(drivers=[LocalDriver()])
    >>> await engine.domains.add_domain({"type": "local", "runtimes": ["docker"]})
    >>> tx_id = await engine.components.add_instance({"model": model_text})
    >>> await engine.start()
"""

__version__ = "0.1.0"

from compono.app import Engine, configure_logging, create_engine
from compono.config import EngineSettings, get_settings
from compono.errors import (
    ComponoError,
    DriverError,
    InvalidStateError,
    InvariantError,
    LockTimeoutError,
    LoopTimeoutError,
    ModelError,
    NotFoundError,
)

__all__ = [
    "__version__",
    # Engine
    "Engine",
    "EngineSettings",
    "configure_logging",
    "create_engine",
    "get_settings",
    # Errors
    "ComponoError",
    "DriverError",
    "InvalidStateError",
    "InvariantError",
    "LockTimeoutError",
    "LoopTimeoutError",
    "ModelError",
    "NotFoundError",
]
