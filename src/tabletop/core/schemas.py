"""Pydantic contracts for exercises, injects, phases and participants."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DEFAULT_MAX_PARTICIPANTS = 50
DEFAULT_TEXT_POINTS = 5

Answer = Union[str, List[str]]


def utcnow() -> datetime:
    return datetime.now(UTC)


class CamelModel(BaseModel):
    """Base model exposing camelCase aliases on the wire."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Magnitude(str, Enum):
    """Effectiveness rating, ordered from least to most effective."""

    LEAST_EFFECTIVE = "least_effective"
    SOMEWHAT_EFFECTIVE = "somewhat_effective"
    NOT_EFFECTIVE = "not_effective"
    EFFECTIVE = "effective"
    MOST_EFFECTIVE = "most_effective"


class QuestionType(str, Enum):
    """Answer shapes a phase accepts."""

    SINGLE = "single"
    MULTIPLE = "multiple"
    TEXT = "text"


class ExerciseStatus(str, Enum):
    """Exercise lifecycle."""

    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


JOINABLE_STATUSES = frozenset({ExerciseStatus.DRAFT, ExerciseStatus.ACTIVE})


class ParticipantStatus(str, Enum):
    """Participant lifecycle; ``left`` is a liveness signal, not a terminal state."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    LEFT = "left"


SEATED_STATUSES = frozenset({ParticipantStatus.WAITING, ParticipantStatus.ACTIVE})


class ArtifactType(str, Enum):
    LOG = "log"
    ALERT = "alert"
    NETWORK = "network"
    SCREENSHOT = "screenshot"
    DOCUMENT = "document"
    OTHER = "other"


class Artifact(CamelModel):
    """Evidence attached to an inject. Opaque to the progression logic."""

    name: str
    type: ArtifactType = ArtifactType.LOG
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    order: Optional[int] = None


class Option(CamelModel):
    """A selectable answer with its score contribution."""

    id: str
    text: str = ""
    points: int = 0
    magnitude: Magnitude = Magnitude.LEAST_EFFECTIVE


class Phase(CamelModel):
    """A single decision question inside an inject."""

    phase_number: int = Field(..., ge=1)
    phase_name: str = ""
    question: str
    question_type: QuestionType = QuestionType.SINGLE
    options: List[Option] = Field(default_factory=list)
    correct_answer: List[str] = Field(default_factory=list)
    max_points: Optional[int] = None

    def option(self, option_id: Any) -> Optional[Option]:
        return next((opt for opt in self.options if opt.id == option_id), None)


class Inject(CamelModel):
    """Scripted scenario event released to participants."""

    inject_number: int = Field(..., ge=1)
    title: str
    narrative: str
    artifacts: List[Artifact] = Field(default_factory=list)
    phases: List[Phase] = Field(default_factory=list)
    is_active: bool = False
    responses_open: bool = False
    phase_progression_locked: bool = False
    release_time: Optional[datetime] = None

    def phase(self, phase_number: int) -> Optional[Phase]:
        return next((p for p in self.phases if p.phase_number == phase_number), None)

    @property
    def phase_count(self) -> int:
        return len(self.phases)

    def clear_state(self) -> None:
        self.is_active = False
        self.responses_open = False
        self.phase_progression_locked = False
        self.release_time = None


class SummaryPhase(CamelModel):
    """Debrief section shown after the exercise; presentation only."""

    phase_number: int
    title: str
    description: str


class ExerciseSettings(CamelModel):
    scoring_enabled: bool = True
    auto_release: bool = False
    show_scores: bool = True


class Exercise(CamelModel):
    """Top-level exercise aggregate owning its injects outright."""

    id: str
    title: str
    description: str = ""
    facilitator_id: str
    access_code: str
    status: ExerciseStatus = ExerciseStatus.DRAFT
    max_participants: int = Field(DEFAULT_MAX_PARTICIPANTS, ge=1)
    settings: ExerciseSettings = Field(default_factory=ExerciseSettings)
    injects: List[Inject] = Field(default_factory=list)
    summary: List[SummaryPhase] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    event_sequence: int = 0
    version: int = 0

    def inject(self, inject_number: int) -> Optional[Inject]:
        return next((inj for inj in self.injects if inj.inject_number == inject_number), None)

    def active_injects(self) -> List[Inject]:
        return [inj for inj in self.injects if inj.is_active]

    def renumber_injects(self) -> Dict[int, int]:
        """Make inject numbers contiguous from 1 and return ``{old: new}``."""

        mapping: Dict[int, int] = {}
        for index, inject in enumerate(self.injects, start=1):
            mapping[inject.inject_number] = index
            inject.inject_number = index
        return mapping


class Response(CamelModel):
    """A scored answer; immutable once recorded."""

    inject_number: int
    phase_number: int
    question_index: int = 0
    answer: Optional[Answer] = None
    points_earned: int = 0
    magnitude: Magnitude = Magnitude.LEAST_EFFECTIVE
    submitted_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> tuple[int, int, int]:
        return (self.inject_number, self.phase_number, self.question_index)


class Participant(CamelModel):
    """A joined participant and its progression cursor."""

    participant_id: str
    exercise_id: str
    name: str = "Anonymous"
    team: str = "Individual"
    status: ParticipantStatus = ParticipantStatus.WAITING
    rejected: bool = False
    current_inject: int = 1
    current_phase: int = 1
    responses: List[Response] = Field(default_factory=list)
    total_score: int = 0
    joined_at: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)
    version: int = 0

    def find_response(self, inject_number: int, phase_number: int, question_index: int) -> Optional[Response]:
        key = (inject_number, phase_number, question_index)
        return next((resp for resp in self.responses if resp.key == key), None)

    def recompute_total(self) -> int:
        self.total_score = sum(resp.points_earned for resp in self.responses)
        return self.total_score

    def reset_progress(self) -> None:
        self.responses = []
        self.total_score = 0
        self.current_inject = 1
        self.current_phase = 1

    def touch(self) -> None:
        self.last_activity = utcnow()

    def roster_entry(self) -> Dict[str, Any]:
        return {
            "participantId": self.participant_id,
            "name": self.name,
            "team": self.team,
            "status": self.status.value,
            "currentInject": self.current_inject,
            "totalScore": self.total_score,
            "joinedAt": self.joined_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Authoring payloads
# ---------------------------------------------------------------------------


class InjectDraft(CamelModel):
    """Content fields of an inject; state flags are owned by the controller."""

    title: str
    narrative: str
    artifacts: List[Artifact] = Field(default_factory=list)
    phases: List[Phase] = Field(default_factory=list)


class InjectPatch(CamelModel):
    title: Optional[str] = None
    narrative: Optional[str] = None
    artifacts: Optional[List[Artifact]] = None
    phases: Optional[List[Phase]] = None


class ExercisePatch(CamelModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[ExerciseStatus] = None
    max_participants: Optional[int] = Field(None, ge=1)
    settings: Optional[ExerciseSettings] = None
