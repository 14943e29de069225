"""
Pytest configuration and fixtures for Compono tests.
"""

import random
import sys
from pathlib import Path

import pytest

# Add the repository root to path for imports
# This allows `from compono.engine import ...` to work
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from compono.app import create_engine  # noqa: E402
from compono.config import EngineSettings  # noqa: E402
from compono.domains import LocalDriver  # noqa: E402
from compono.store import MemoryStore  # noqa: E402


@pytest.fixture
def settings():
    """Engine settings with short loops for tests."""
    return EngineSettings(
        daemon_interval=0.05,
        loop_retry=0.01,
        component_loop_timeout=5.0,
        projection_loop_timeout=5.0,
        lock_timeout=1.0,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def driver():
    return LocalDriver(subnet="10.1.0.0/16")


@pytest.fixture
def engine(settings, store, driver):
    """Engine wired to the local driver, with a seeded random source."""
    return create_engine(settings, store=store, drivers=[driver], rng=random.Random(7))


@pytest.fixture
def producer_model():
    """Basic component emitting on `e`."""
    return {
        "type": "basic",
        "name": "producer",
        "runtime": "docker",
        "source": "registry/producer:1",
        "variables": {"port": 80},
        "endpoints": {"e": {"type": "out", "protocol": "tcp:{{port}}"}},
    }


@pytest.fixture
def consumer_model():
    """Basic component receiving on `f`."""
    return {
        "type": "basic",
        "name": "consumer",
        "runtime": "docker",
        "source": "registry/consumer:1",
        "endpoints": {"f": {"type": "in", "protocol": "TCP:80"}},
        "events": {"reload": "kill -HUP 1"},
    }


@pytest.fixture
def app_model(producer_model, consumer_model):
    """P --Link--> C."""
    return {
        "type": "composite",
        "name": "app",
        "labels": ["team=core"],
        "imports": {"producer": producer_model, "consumer": consumer_model},
        "subcomponents": {"P": {"type": "producer"}, "C": {"type": "consumer"}},
        "connectors": {
            "wire": {"type": "Link", "inputs": ["P.e"], "outputs": ["C.f"]},
        },
    }


@pytest.fixture
def nested_model(producer_model, consumer_model):
    """
    Outer composite Y holding composite X as subcomponent `s`.

    X publishes `pub` (mapped to inner.e); Y links s.pub to sibling z.f.
    """
    inner = {
        "type": "composite",
        "name": "X",
        "imports": {"producer": producer_model},
        "subcomponents": {"inner": {"type": "producer"}},
        "endpoints": {"pub": {"type": "out", "protocol": "tcp:80", "mapping": "inner.e"}},
    }
    return {
        "type": "composite",
        "name": "Y",
        "imports": {"X": inner, "consumer": consumer_model},
        "subcomponents": {"s": {"type": "X"}, "z": {"type": "consumer"}},
        "connectors": {
            "wire": {"type": "Link", "inputs": ["s.pub"], "outputs": ["z.f"]},
        },
    }


@pytest.fixture
def gateway_model(consumer_model):
    """
    Composite whose published in endpoint feeds a native connector.

    The connector type is itself a basic component (a balancer).
    """
    balancer = {
        "type": "basic",
        "name": "balancer",
        "runtime": "docker",
        "endpoints": {
            "in": {"type": "in", "protocol": "http"},
            "out": {"type": "out", "protocol": "http"},
        },
    }
    web = {
        "type": "basic",
        "name": "web",
        "runtime": "docker",
        "endpoints": {"req": {"type": "in", "protocol": "http"}},
    }
    return {
        "type": "composite",
        "name": "gateway",
        "imports": {"balancer": balancer, "web": web},
        "subcomponents": {"web": {"type": "web", "cardinality": "[1:3]"}},
        "connectors": {"lb": {"type": "balancer", "outputs": ["web.req"]}},
        "endpoints": {"entry": {"type": "in", "protocol": "http", "mapping": "lb"}},
    }
