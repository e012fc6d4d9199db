"""Service modules for the broadcast layer, web API and CLI."""

from . import auth, gateway, session_registry, web_api, cli

__all__ = ["auth", "gateway", "session_registry", "web_api", "cli"]
