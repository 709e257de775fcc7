"""
Core services for Quadly.

This module contains the business logic: the unit-file parser and validator,
the quadlet store, the service-manager clients, the status aggregator and
the live update broadcaster.
"""

from .aggregator import StatusAggregator
from .broadcaster import StatusBroadcaster, Subscription, BroadcasterState
from .memory import InMemoryServiceManager
from .parser import parse_quadlet, serialize_quadlet
from .quadlet_manager import QuadletManager
from .store import QuadletStore
from .validator import QuadletValidator, ValidationViolation, build_document

__all__ = [
    'StatusAggregator',
    'StatusBroadcaster',
    'Subscription',
    'BroadcasterState',
    'InMemoryServiceManager',
    'parse_quadlet',
    'serialize_quadlet',
    'QuadletManager',
    'QuadletStore',
    'QuadletValidator',
    'ValidationViolation',
    'build_document'
]
