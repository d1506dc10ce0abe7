from . import velocity, bungeecord, rusty_connector  # noqa: F401  registers providers
from .providers import get_provider, list_providers, register_provider

__all__ = ["get_provider", "list_providers", "register_provider"]
