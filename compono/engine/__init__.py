"""
Component engine: scheduling, adjacency, trees and the component service.
"""

from .adjacency import Adjacent, AdjacencyResolver
from .component import ComponentService, Graph, InstanceSpec
from .scheduler import (
    BasicScheduler,
    EventType,
    Scheduler,
    SchedulerRegistry,
    SchedulingEvent,
    pick_domain,
)
from .tree import Tree, TreeBuilder, TreeConnector, random_address, sort_collections

__all__ = [
    "AdjacencyResolver",
    "Adjacent",
    "BasicScheduler",
    "ComponentService",
    "EventType",
    "Graph",
    "InstanceSpec",
    "Scheduler",
    "SchedulerRegistry",
    "SchedulingEvent",
    "Tree",
    "TreeBuilder",
    "TreeConnector",
    "pick_domain",
    "random_address",
    "sort_collections",
]
