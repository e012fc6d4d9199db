from __future__ import annotations

from typing import Awaitable, Callable, List, Tuple

import pytest

from tabletop.core.events import DomainEvent
from tabletop.core.fsm import ProgressionController
from tabletop.core.schemas import (
    Exercise,
    InjectDraft,
    Magnitude,
    Option,
    Participant,
    ParticipantStatus,
    Phase,
    QuestionType,
)
from tabletop.core.store import InMemoryPersistence, StateStore
from tabletop.services.auth import Caller, OwnershipAuthorizer

FACILITATOR = Caller.facilitator("fac-1")
OTHER_FACILITATOR = Caller.facilitator("fac-2")


def single_phase(phase_number: int = 1) -> Phase:
    return Phase(
        phase_number=phase_number,
        question="Who do you call first?",
        question_type=QuestionType.SINGLE,
        options=[
            Option(id="A", text="Incident lead", points=10, magnitude=Magnitude.MOST_EFFECTIVE),
            Option(id="B", text="Nobody", points=0, magnitude=Magnitude.LEAST_EFFECTIVE),
        ],
        correct_answer=["A"],
    )


def multiple_phase(phase_number: int = 2) -> Phase:
    return Phase(
        phase_number=phase_number,
        question="Which containment steps apply?",
        question_type=QuestionType.MULTIPLE,
        options=[
            Option(id="A", points=3),
            Option(id="B", points=3),
            Option(id="C", points=2),
            Option(id="D", points=2),
        ],
    )


def text_phase(phase_number: int = 3, max_points=None) -> Phase:
    return Phase(
        phase_number=phase_number,
        question="Describe your communication plan.",
        question_type=QuestionType.TEXT,
        max_points=max_points,
    )


def inject_draft(title: str) -> InjectDraft:
    return InjectDraft(
        title=title,
        narrative=f"{title} narrative",
        phases=[single_phase(1), multiple_phase(2)],
    )


class RecordingPublisher:
    """Publisher double that remembers every event in publish order."""

    def __init__(self) -> None:
        self.published: List[Tuple[str, DomainEvent]] = []

    def publish(self, topic: str, event: DomainEvent) -> int:
        self.published.append((topic, event))
        return 1

    def types(self) -> List[str]:
        return [event.type for _, event in self.published]

    def clear(self) -> None:
        self.published.clear()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def store() -> StateStore:
    return StateStore(InMemoryPersistence(), timeout=1.0)


@pytest.fixture
def controller(store: StateStore, publisher: RecordingPublisher) -> ProgressionController:
    return ProgressionController(store, OwnershipAuthorizer(), publisher)


@pytest.fixture
async def exercise(controller: ProgressionController) -> Exercise:
    return await controller.create_exercise(
        FACILITATOR,
        "Ransomware drill",
        max_participants=3,
        injects=[inject_draft(f"Inject {n}") for n in range(1, 5)],
    )


@pytest.fixture
def admit(controller: ProgressionController) -> Callable[..., Awaitable[Participant]]:
    """Join an exercise by access code and promote the participant to active."""

    async def _admit(exercise: Exercise, name: str = "Player") -> Participant:
        joined = await controller.join_exercise(exercise.access_code, name, "Blue")
        return await controller.update_participant_status(
            FACILITATOR, joined.participant_id, ParticipantStatus.ACTIVE
        )

    return _admit
