"""Version information for mcp-server-runtime."""

import importlib.metadata

try:
    __version__ = importlib.metadata.version("mcp-server-runtime")
except importlib.metadata.PackageNotFoundError:
    __version__ = "0.1.0+dev"
