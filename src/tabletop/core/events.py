"""Domain events emitted by the progression controller."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Literal

from pydantic import Field

from .schemas import CamelModel, Inject, Magnitude, ParticipantStatus, utcnow

EXERCISE_TOPIC_PREFIX = "exercise:"
PARTICIPANT_TOPIC_PREFIX = "participant:"


def exercise_topic(exercise_id: str) -> str:
    return f"{EXERCISE_TOPIC_PREFIX}{exercise_id}"


def participant_topic(participant_id: str) -> str:
    return f"{PARTICIPANT_TOPIC_PREFIX}{participant_id}"


class DomainEvent(CamelModel):
    """Common envelope fields; ``sequence`` is stamped at commit time."""

    type: str
    exercise_id: str
    sequence: int = 0
    emitted_at: datetime = Field(default_factory=utcnow)


class InjectReleased(DomainEvent):
    type: Literal["injectReleased"] = "injectReleased"
    inject_number: int
    inject: Inject


class ResponsesToggled(DomainEvent):
    type: Literal["responsesToggled"] = "responsesToggled"
    inject_number: int
    responses_open: bool


class PhaseProgressionToggled(DomainEvent):
    type: Literal["phaseProgressionToggled"] = "phaseProgressionToggled"
    inject_number: int
    phase_progression_locked: bool


class ExerciseReset(DomainEvent):
    type: Literal["exerciseReset"] = "exerciseReset"


class InjectReset(DomainEvent):
    type: Literal["injectReset"] = "injectReset"
    inject_number: int


class InjectDeleted(DomainEvent):
    type: Literal["injectDeleted"] = "injectDeleted"
    inject_number: int
    renumbered: Dict[int, int] = Field(default_factory=dict)


class ScoreUpdate(DomainEvent):
    type: Literal["scoreUpdate"] = "scoreUpdate"
    participant_id: str
    name: str
    total_score: int
    inject_number: int
    points_earned: int
    magnitude: Magnitude


class ParticipantJoined(DomainEvent):
    type: Literal["participantJoined"] = "participantJoined"
    participant: Dict[str, Any]


class ParticipantStatusUpdated(DomainEvent):
    type: Literal["participantStatusUpdated"] = "participantStatusUpdated"
    participant_id: str
    status: ParticipantStatus
    participant: Dict[str, Any]


class ParticipantAdmitted(DomainEvent):
    type: Literal["participantAdmitted"] = "participantAdmitted"
    exercise_title: str


class ParticipantStatusChanged(DomainEvent):
    type: Literal["participantStatusChanged"] = "participantStatusChanged"
    status: ParticipantStatus


class ParticipantRemoved(DomainEvent):
    type: Literal["participantRemoved"] = "participantRemoved"
    participant_ids: List[str]


class ParticipantRejoined(DomainEvent):
    type: Literal["participantRejoined"] = "participantRejoined"
    participant_id: str
    name: str
    status: ParticipantStatus = ParticipantStatus.ACTIVE


class Reconnected(DomainEvent):
    type: Literal["reconnected"] = "reconnected"
    status: ParticipantStatus = ParticipantStatus.ACTIVE


class ParticipantDisconnected(DomainEvent):
    type: Literal["participantDisconnected"] = "participantDisconnected"
    participant_id: str
    name: str
    status: ParticipantStatus = ParticipantStatus.LEFT


@dataclass(frozen=True, slots=True)
class Dispatch:
    """An event bound to the topic it must be published on."""

    topic: str
    event: DomainEvent

    @classmethod
    def to_exercise(cls, event: DomainEvent) -> "Dispatch":
        return cls(topic=exercise_topic(event.exercise_id), event=event)

    @classmethod
    def to_participant(cls, participant_id: str, event: DomainEvent) -> "Dispatch":
        return cls(topic=participant_topic(participant_id), event=event)
