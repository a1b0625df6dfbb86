"""
marker-sync: server-authoritative interactive marker synchronisation.

Markers live in a registry on the server; mutations are staged, coalesced
and published to clients as ordered batches, and client feedback is routed
back to callbacks registered per marker.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
