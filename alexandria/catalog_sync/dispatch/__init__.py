"""
Change event routing.

Routes each change-stream record to the handler registered for its
(operation, entity kind) pair. The routing table is built once by the
consumer and injected; there is no global registry.
"""

from .dispatcher import Dispatcher, RouteKey, RoutingTable

__all__ = ["Dispatcher", "RouteKey", "RoutingTable"]
