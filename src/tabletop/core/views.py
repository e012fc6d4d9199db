"""Read models served to participant dashboards and the facilitator panel."""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from pydantic import Field

from .schemas import (
    CamelModel,
    Exercise,
    ExerciseSettings,
    ExerciseStatus,
    Inject,
    Participant,
    ParticipantStatus,
    Phase,
    Response,
)


class ExerciseHeader(CamelModel):
    id: str
    title: str
    description: str
    status: ExerciseStatus
    settings: ExerciseSettings


class ParticipantSnapshot(CamelModel):
    """Participant fields a dashboard renders; excludes bookkeeping that churns on reconnect."""

    participant_id: str
    name: str
    team: str
    status: ParticipantStatus
    current_inject: int
    current_phase: int
    total_score: int
    responses: List[Response] = Field(default_factory=list)


class ParticipantView(CamelModel):
    """Everything a participant client needs to rebuild its screen."""

    exercise: ExerciseHeader
    participant: ParticipantSnapshot
    current_inject: Optional[Inject] = None
    active_injects: List[Inject] = Field(default_factory=list)
    phases: List[Phase] = Field(default_factory=list)
    current_phase_number: int = 1
    responses_open: bool = False
    phase_progression_locked: bool = False


class LeaderboardEntry(CamelModel):
    participant_id: str
    name: str
    team: str
    total_score: int
    inject_scores: Dict[int, int] = Field(default_factory=dict)


class Leaderboard(CamelModel):
    exercise_id: str
    title: str
    participants: List[LeaderboardEntry] = Field(default_factory=list)
    participant_count: int = 0
    average_score: float = 0.0


def current_inject_for(exercise: Exercise, participant: Participant) -> Optional[Inject]:
    """Return the inject a participant should be looking at.

    That is the released inject under the participant's cursor, falling back
    to the most recently numbered released inject.
    """

    cursor = exercise.inject(participant.current_inject)
    if cursor is not None and cursor.is_active:
        return cursor
    active = exercise.active_injects()
    return active[-1] if active else None


def participant_view(exercise: Exercise, participant: Participant) -> ParticipantView:
    inject = current_inject_for(exercise, participant)
    return ParticipantView(
        exercise=ExerciseHeader(
            id=exercise.id,
            title=exercise.title,
            description=exercise.description,
            status=exercise.status,
            settings=exercise.settings.model_copy(),
        ),
        participant=ParticipantSnapshot(
            participant_id=participant.participant_id,
            name=participant.name,
            team=participant.team,
            status=participant.status,
            current_inject=participant.current_inject,
            current_phase=participant.current_phase,
            total_score=participant.total_score,
            responses=[resp.model_copy() for resp in participant.responses],
        ),
        current_inject=inject.model_copy(deep=True) if inject else None,
        active_injects=[inj.model_copy(deep=True) for inj in exercise.active_injects()],
        phases=[phase.model_copy(deep=True) for phase in inject.phases] if inject else [],
        current_phase_number=participant.current_phase,
        responses_open=inject.responses_open if inject else False,
        phase_progression_locked=inject.phase_progression_locked if inject else False,
    )


def leaderboard(exercise: Exercise, participants: Sequence[Participant]) -> Leaderboard:
    """Rank active participants by total score, highest first."""

    entries: List[LeaderboardEntry] = []
    for participant in participants:
        if participant.status != ParticipantStatus.ACTIVE:
            continue
        inject_scores: Dict[int, int] = {inject.inject_number: 0 for inject in exercise.injects}
        for resp in participant.responses:
            inject_scores[resp.inject_number] = inject_scores.get(resp.inject_number, 0) + resp.points_earned
        entries.append(
            LeaderboardEntry(
                participant_id=participant.participant_id,
                name=participant.name,
                team=participant.team,
                total_score=participant.total_score,
                inject_scores=inject_scores,
            )
        )
    entries.sort(key=lambda entry: entry.total_score, reverse=True)
    average = sum(entry.total_score for entry in entries) / len(entries) if entries else 0.0
    return Leaderboard(
        exercise_id=exercise.id,
        title=exercise.title,
        participants=entries,
        participant_count=len(entries),
        average_score=round(average, 2),
    )
