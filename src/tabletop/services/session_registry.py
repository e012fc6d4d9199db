"""Live connection to participant bindings owned by the transport.

A participant may hold several connections at once (two tabs, a flaky
network overlapping old and new sockets). Liveness follows the last one:
claiming restores a ``left`` participant, and only dropping the final
connection marks them ``left`` again.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

import structlog

from ..core.errors import NotFound
from ..core.events import exercise_topic, participant_topic
from ..core.fsm import ProgressionController
from ..core.schemas import Participant
from .gateway import BroadcastGateway, Subscriber

LOGGER = structlog.get_logger(__name__)


@dataclass(slots=True)
class Connection:
    connection_id: str
    subscriber: Subscriber
    exercise_ids: Set[str] = field(default_factory=set)
    participant_id: Optional[str] = None


class SessionRegistry:
    def __init__(self, controller: ProgressionController, gateway: BroadcastGateway) -> None:
        self.controller = controller
        self.gateway = gateway
        self._connections: Dict[str, Connection] = {}
        self._by_participant: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    async def attach(
        self,
        connection_id: str,
        subscriber: Subscriber,
        *,
        exercise_id: Optional[str] = None,
        participant_id: Optional[str] = None,
    ) -> Optional[Participant]:
        """Register a connection and optionally bind it right away."""

        with self._lock:
            self._connections.setdefault(connection_id, Connection(connection_id, subscriber))
        if exercise_id is not None:
            self.watch_exercise(connection_id, exercise_id)
        if participant_id is not None:
            return await self.claim_participant(connection_id, participant_id)
        return None

    def _connection(self, connection_id: str) -> Connection:
        with self._lock:
            connection = self._connections.get(connection_id)
        if connection is None:
            raise NotFound(f"Connection {connection_id} is not attached", connection_id=connection_id)
        return connection

    def watch_exercise(self, connection_id: str, exercise_id: str) -> None:
        connection = self._connection(connection_id)
        with self._lock:
            connection.exercise_ids.add(exercise_id)
        self.gateway.subscribe(exercise_topic(exercise_id), connection.subscriber)

    async def claim_participant(self, connection_id: str, participant_id: str) -> Participant:
        """Bind a connection to a participant identity, restoring it if it had left.

        Subscriptions are in place before the restore runs, so this connection
        sees its own ``reconnected`` notice.
        """

        connection = self._connection(connection_id)
        participant = await self.controller.store.get_participant(participant_id)
        with self._lock:
            previous = connection.participant_id
            if previous is not None and previous != participant_id:
                self._forget(previous, connection_id)
            connection.participant_id = participant_id
            connection.exercise_ids.add(participant.exercise_id)
            self._by_participant.setdefault(participant_id, set()).add(connection_id)
        self.gateway.subscribe(participant_topic(participant_id), connection.subscriber)
        self.gateway.subscribe(exercise_topic(participant.exercise_id), connection.subscriber)
        LOGGER.info("session.claimed", connection_id=connection_id, participant_id=participant_id)

        restored = await self.controller.restore_participant(participant_id)
        return restored if restored is not None else participant

    def _forget(self, participant_id: str, connection_id: str) -> int:
        """Drop one binding; returns how many connections the participant still has."""
        remaining = self._by_participant.get(participant_id)
        if remaining is None:
            return 0
        remaining.discard(connection_id)
        if not remaining:
            del self._by_participant[participant_id]
            return 0
        return len(remaining)

    async def detach(self, connection_id: str) -> Optional[str]:
        """Tear down a connection; returns the participant it was bound to, if any."""

        with self._lock:
            connection = self._connections.pop(connection_id, None)
            if connection is None:
                return None
            participant_id = connection.participant_id
            remaining = self._forget(participant_id, connection_id) if participant_id else 0
        self.gateway.unsubscribe_all(connection.subscriber)
        LOGGER.info("session.detached", connection_id=connection_id, participant_id=participant_id)

        if participant_id is not None and remaining == 0:
            try:
                await self.controller.mark_participant_left(
                    participant_id,
                    still_connected=lambda: bool(self.connections_for(participant_id)),
                )
            except NotFound:
                LOGGER.debug("session.participant_gone", participant_id=participant_id)
        return participant_id

    def participant_for(self, connection_id: str) -> Optional[str]:
        with self._lock:
            connection = self._connections.get(connection_id)
            return connection.participant_id if connection else None

    def connections_for(self, participant_id: str) -> List[str]:
        with self._lock:
            return sorted(self._by_participant.get(participant_id, ()))
