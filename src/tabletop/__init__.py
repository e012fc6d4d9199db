"""Live tabletop exercise progression service."""

from . import config, core, services, utils
from .core import errors, events, fsm, schemas, scoring, store, views
from .services import cli, web_api

__all__ = [
    "config",
    "core",
    "services",
    "utils",
    "errors",
    "events",
    "fsm",
    "schemas",
    "scoring",
    "store",
    "views",
    "cli",
    "web_api",
]
