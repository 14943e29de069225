"""
Engine configuration for Compono.

Settings are a pydantic model so every component receives typed values.
get_settings() builds them once from COMPONO_* environment variables;
tests and embedders construct EngineSettings directly instead.
"""

from __future__ import annotations

import os
from functools import lru_cache

from pydantic import BaseModel, Field


class EngineSettings(BaseModel):
    """Tunables for the reconciliation engine."""

    # Daemons
    daemon_interval: float = Field(default=5.0, description="Seconds between daemon passes")
    daemon_time_frame: float | None = Field(
        default=None, description="Only schedule composites touched within this window"
    )
    daemon_range: int | None = Field(default=None, description="Max composites per pass")

    # Polling loops
    loop_retry: float = Field(default=5.0, description="Seconds between loop attempts")
    component_loop_timeout: float = 300.0
    projection_loop_timeout: float = 900.0
    lock_timeout: float = Field(default=1.0, description="Seconds before a lock expires")

    # Scheduling
    min_instances: int = 2
    cpu_low: float = 0.3
    cpu_high: float = 0.8
    connector_cidr: str = "172.16.0.0/12"

    # Model imports
    fetch_timeout: float = 30.0

    log_level: str = "INFO"


def _optional_float(value: str | None) -> float | None:
    return float(value) if value else None


@lru_cache()
def get_settings() -> EngineSettings:
    """
    Get engine settings from environment.

    Uses lru_cache for singleton pattern.
    """
    return EngineSettings(
        daemon_interval=float(os.getenv("COMPONO_DAEMON_INTERVAL", "5")),
        daemon_time_frame=_optional_float(os.getenv("COMPONO_DAEMON_TIME_FRAME")),
        daemon_range=int(os.environ["COMPONO_DAEMON_RANGE"])
        if os.getenv("COMPONO_DAEMON_RANGE")
        else None,
        loop_retry=float(os.getenv("COMPONO_LOOP_RETRY", "5")),
        component_loop_timeout=float(os.getenv("COMPONO_COMPONENT_LOOP_TIMEOUT", "300")),
        projection_loop_timeout=float(os.getenv("COMPONO_PROJECTION_LOOP_TIMEOUT", "900")),
        lock_timeout=float(os.getenv("COMPONO_LOCK_TIMEOUT", "1")),
        min_instances=int(os.getenv("COMPONO_MIN_INSTANCES", "2")),
        cpu_low=float(os.getenv("COMPONO_CPU_LOW", "0.3")),
        cpu_high=float(os.getenv("COMPONO_CPU_HIGH", "0.8")),
        connector_cidr=os.getenv("COMPONO_CONNECTOR_CIDR", "172.16.0.0/12"),
        fetch_timeout=float(os.getenv("COMPONO_FETCH_TIMEOUT", "30")),
        log_level=os.getenv("COMPONO_LOG_LEVEL", "INFO"),
    )
