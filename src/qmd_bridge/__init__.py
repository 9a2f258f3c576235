"""qmd-bridge: tenant-scoped HTTP and MCP gateway in front of a host qmd install."""

from .constants import VERSION


__version__ = VERSION
