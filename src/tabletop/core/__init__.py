"""Progression state machine, scoring and state store."""

from . import errors, events, fsm, schemas, scoring, store, views

__all__ = ["errors", "events", "fsm", "schemas", "scoring", "store", "views"]
