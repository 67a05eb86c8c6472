"""Registry HTTP API."""

from hookrelay.api.server import RegistryServer

__all__ = ["RegistryServer"]
