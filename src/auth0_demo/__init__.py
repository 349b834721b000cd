"""Bearer-token authentication backed by a remotely published JWKS."""

from .version import __version__

__all__ = ["__version__"]
