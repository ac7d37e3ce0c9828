"""headless-auth.

OAuth token acquisition and lifecycle management for headless MCP servers:
device and loopback authorization flows, a credential store, and
concurrency-safe token refresh.
"""

from headless_auth.__version__ import __version__

__all__ = ["__version__"]
