"""Identity and authorization collaborator consulted by the controller.

Authentication itself happens outside this package; the transport turns
whatever the authentication layer established into a :class:`Caller`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ..core.schemas import Exercise, Participant


@dataclass(frozen=True, slots=True)
class Caller:
    """Who is asking. Either id may be absent.

    ``trusted`` marks in-process callers (the session registry, the CLI); the
    transport never sets it from request data.
    """

    user_id: Optional[str] = None
    participant_id: Optional[str] = None
    trusted: bool = False

    @classmethod
    def facilitator(cls, user_id: str) -> "Caller":
        return cls(user_id=user_id)

    @classmethod
    def participant(cls, participant_id: str) -> "Caller":
        return cls(participant_id=participant_id)


SYSTEM = Caller(trusted=True)


class Authorizer(ABC):
    """Answers the two questions the controller needs before a transition."""

    @abstractmethod
    def is_exercise_owner(self, caller: Caller, exercise: Exercise) -> bool:
        """Return True when ``caller`` is the facilitator owning ``exercise``."""

    @abstractmethod
    def is_participant(self, caller: Caller, participant: Participant) -> bool:
        """Return True when ``caller`` is authenticated as ``participant``."""


class OwnershipAuthorizer(Authorizer):
    """Default policy: facilitators own what they created, participants are themselves.

    Trusted callers such as :data:`SYSTEM` pass every check.
    """

    def is_exercise_owner(self, caller: Caller, exercise: Exercise) -> bool:
        if caller.trusted:
            return True
        return caller.user_id is not None and caller.user_id == exercise.facilitator_id

    def is_participant(self, caller: Caller, participant: Participant) -> bool:
        if caller.trusted:
            return True
        return caller.participant_id is not None and caller.participant_id == participant.participant_id
