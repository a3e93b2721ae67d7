"""selforge — an agent that rewrites its own source, one reviewed change at a time."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("selforge")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
