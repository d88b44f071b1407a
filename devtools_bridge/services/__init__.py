"""Service layer exports."""

from . import bridge, correlator, port_allocator, socket_listener, supervisor, translator

__all__ = ["bridge", "correlator", "port_allocator", "socket_listener", "supervisor", "translator"]
