"""Progression controller driving inject release, gating and participant answers.

Each transition runs as one :meth:`StateStore.run` call: the gate checks, the
mutation and the event stamping all happen against the same working copy of
the exercise, and events are only handed to the publisher once the store has
committed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, TypeVar

import structlog

from ..utils.codes import generate_access_code, new_exercise_id, new_participant_id, normalize_access_code
from . import views
from .errors import (
    CapacityExceeded,
    Conflict,
    DuplicateResponse,
    InvalidState,
    Locked,
    NotAuthorized,
    NotFound,
    NotOpen,
    ProgressionError,
)
from .events import (
    DomainEvent,
    Dispatch,
    ExerciseReset,
    InjectDeleted,
    InjectReleased,
    InjectReset,
    ParticipantAdmitted,
    ParticipantDisconnected,
    ParticipantJoined,
    ParticipantRejoined,
    ParticipantRemoved,
    ParticipantStatusChanged,
    ParticipantStatusUpdated,
    PhaseProgressionToggled,
    Reconnected,
    ResponsesToggled,
    ScoreUpdate,
)
from .schemas import (
    DEFAULT_MAX_PARTICIPANTS,
    JOINABLE_STATUSES,
    SEATED_STATUSES,
    Answer,
    Exercise,
    ExercisePatch,
    ExerciseSettings,
    Inject,
    InjectDraft,
    InjectPatch,
    Participant,
    ParticipantStatus,
    Response,
    SummaryPhase,
    utcnow,
)
from .scoring import score
from .store import ExerciseState, StateStore

if TYPE_CHECKING:
    from ..services.auth import Authorizer, Caller

LOGGER = structlog.get_logger(__name__)

ACCESS_CODE_ATTEMPTS = 10
DEFAULT_NAME = "Anonymous"
DEFAULT_TEAM = "Individual"

T = TypeVar("T")


class Publisher(Protocol):
    def publish(self, topic: str, event: DomainEvent) -> int: ...


@dataclass(frozen=True, slots=True)
class SubmissionResult:
    """Recorded response plus the participant's new running total."""

    response: Response
    total_score: int


@dataclass(frozen=True, slots=True)
class AdvanceResult:
    current_phase: int
    all_phases_completed: bool = False


class ProgressionController:
    """Facilitator and participant transitions over the state store."""

    def __init__(
        self,
        store: StateStore,
        authorizer: "Authorizer",
        publisher: Optional[Publisher] = None,
        *,
        default_max_participants: int = DEFAULT_MAX_PARTICIPANTS,
    ) -> None:
        self.store = store
        self.authorizer = authorizer
        self.publisher = publisher
        self.default_max_participants = default_max_participants

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _transition(self, name: str, exercise_id: str, mutate: Callable[[ExerciseState], T]) -> T:
        try:
            result, dispatches = await self.store.run(exercise_id, mutate)
        except ProgressionError as exc:
            LOGGER.debug("transition.rejected", transition=name, exercise_id=exercise_id, error=exc.code)
            raise
        self._publish(dispatches)
        return result

    def _publish(self, dispatches: Sequence[Dispatch]) -> None:
        if self.publisher is None:
            return
        # Work is already committed; a failed broadcast is logged, never raised.
        for dispatch in dispatches:
            try:
                self.publisher.publish(dispatch.topic, dispatch.event)
            except Exception:
                LOGGER.exception("broadcast.failed", topic=dispatch.topic, event_type=dispatch.event.type)

    def _require_owner(self, caller: "Caller", exercise: Exercise) -> None:
        if not self.authorizer.is_exercise_owner(caller, exercise):
            raise NotAuthorized(
                f"Caller does not own exercise {exercise.id}",
                exercise_id=exercise.id,
            )

    def _require_participant(self, caller: "Caller", participant: Participant) -> None:
        if not self.authorizer.is_participant(caller, participant):
            raise NotAuthorized(
                f"Caller is not participant {participant.participant_id}",
                participant_id=participant.participant_id,
            )

    async def _exercise_of(self, participant_id: str) -> str:
        participant = await self.store.get_participant(participant_id)
        return participant.exercise_id

    # ------------------------------------------------------------------
    # Facilitator transitions
    # ------------------------------------------------------------------

    async def release_inject(self, caller: "Caller", exercise_id: str, inject_number: int) -> Inject:
        """Open an inject and move every active participant onto its first phase."""

        def mutate(state: ExerciseState) -> Inject:
            self._require_owner(caller, state.exercise)
            inject = state.inject(inject_number)
            if inject.is_active:
                raise Conflict(
                    f"Inject {inject_number} is already released",
                    exercise_id=exercise_id,
                    inject_number=inject_number,
                )
            inject.is_active = True
            inject.responses_open = True
            inject.release_time = utcnow()
            for participant in state.participants(ParticipantStatus.ACTIVE):
                participant.current_inject = inject_number
                participant.current_phase = 1
            state.emit(InjectReleased(exercise_id=exercise_id, inject_number=inject_number, inject=inject.model_copy(deep=True)))
            return inject.model_copy(deep=True)

        inject = await self._transition("release_inject", exercise_id, mutate)
        LOGGER.info("inject.released", exercise_id=exercise_id, inject_number=inject_number)
        return inject

    async def toggle_responses(self, caller: "Caller", exercise_id: str, inject_number: int, desired: bool) -> Inject:
        def mutate(state: ExerciseState) -> Inject:
            self._require_owner(caller, state.exercise)
            inject = state.inject(inject_number)
            inject.responses_open = desired
            state.emit(ResponsesToggled(exercise_id=exercise_id, inject_number=inject_number, responses_open=desired))
            return inject.model_copy(deep=True)

        inject = await self._transition("toggle_responses", exercise_id, mutate)
        LOGGER.info("inject.responses_toggled", exercise_id=exercise_id, inject_number=inject_number, responses_open=desired)
        return inject

    async def toggle_phase_lock(self, caller: "Caller", exercise_id: str, inject_number: int, desired: bool) -> Inject:
        def mutate(state: ExerciseState) -> Inject:
            self._require_owner(caller, state.exercise)
            inject = state.inject(inject_number)
            inject.phase_progression_locked = desired
            state.emit(
                PhaseProgressionToggled(
                    exercise_id=exercise_id,
                    inject_number=inject_number,
                    phase_progression_locked=desired,
                )
            )
            return inject.model_copy(deep=True)

        inject = await self._transition("toggle_phase_lock", exercise_id, mutate)
        LOGGER.info("inject.phase_lock_toggled", exercise_id=exercise_id, inject_number=inject_number, locked=desired)
        return inject

    async def reset_exercise(self, caller: "Caller", exercise_id: str) -> Exercise:
        """Return every inject to unreleased and wipe all participant progress."""

        def mutate(state: ExerciseState) -> Exercise:
            self._require_owner(caller, state.exercise)
            for inject in state.exercise.injects:
                inject.clear_state()
            for participant in state.participants():
                participant.reset_progress()
            state.emit(ExerciseReset(exercise_id=exercise_id))
            return state.exercise.model_copy(deep=True)

        exercise = await self._transition("reset_exercise", exercise_id, mutate)
        LOGGER.info("exercise.reset", exercise_id=exercise_id)
        return exercise

    async def reset_inject(self, caller: "Caller", exercise_id: str, inject_number: int) -> Inject:
        """Clear one inject's gates and drop only the responses recorded under it.

        Totals are recomputed from the remaining responses.
        """

        def mutate(state: ExerciseState) -> Inject:
            self._require_owner(caller, state.exercise)
            inject = state.inject(inject_number)
            inject.clear_state()
            for participant in state.participants():
                kept = [resp for resp in participant.responses if resp.inject_number != inject_number]
                if len(kept) != len(participant.responses):
                    participant.responses = kept
                participant.recompute_total()
            state.emit(InjectReset(exercise_id=exercise_id, inject_number=inject_number))
            return inject.model_copy(deep=True)

        inject = await self._transition("reset_inject", exercise_id, mutate)
        LOGGER.info("inject.reset", exercise_id=exercise_id, inject_number=inject_number)
        return inject

    async def delete_inject(self, caller: "Caller", exercise_id: str, inject_number: int) -> Dict[int, int]:
        """Remove an inject and close the gap in numbering.

        Refused while any participant holds a response for the inject. Responses
        and cursors pointing at later injects follow them to their new numbers;
        a cursor on the deleted inject moves to whichever inject now holds its
        number (the last one when it was the tail) at phase 1. Returns the
        ``{old: new}`` numbers that changed.
        """

        def mutate(state: ExerciseState) -> Dict[int, int]:
            self._require_owner(caller, state.exercise)
            inject = state.inject(inject_number)
            participants = state.participants()
            answered = [
                p.participant_id
                for p in participants
                if any(resp.inject_number == inject_number for resp in p.responses)
            ]
            if answered:
                raise Conflict(
                    f"Inject {inject_number} has recorded responses; reset it before deleting",
                    exercise_id=exercise_id,
                    inject_number=inject_number,
                    participants=len(answered),
                )
            state.exercise.injects.remove(inject)
            mapping = state.exercise.renumber_injects()
            renumbered = {old: new for old, new in mapping.items() if old != new}
            remaining = len(state.exercise.injects)
            for participant in participants:
                for resp in participant.responses:
                    if resp.inject_number in renumbered:
                        resp.inject_number = renumbered[resp.inject_number]
                if participant.current_inject == inject_number:
                    participant.current_inject = max(1, min(inject_number, remaining))
                    participant.current_phase = 1
                elif participant.current_inject in renumbered:
                    participant.current_inject = renumbered[participant.current_inject]
            state.emit(InjectDeleted(exercise_id=exercise_id, inject_number=inject_number, renumbered=renumbered))
            return renumbered

        renumbered = await self._transition("delete_inject", exercise_id, mutate)
        LOGGER.info("inject.deleted", exercise_id=exercise_id, inject_number=inject_number, renumbered=len(renumbered))
        return renumbered

    async def update_participant_status(
        self,
        caller: "Caller",
        participant_id: str,
        status: ParticipantStatus,
    ) -> Participant:
        """Admit, complete or reject a participant.

        Admission restarts the participant at inject 1. Moving a participant
        that is not active to ``left`` is a rejection: it sticks across
        reconnects until the facilitator admits them again.
        """

        exercise_id = await self._exercise_of(participant_id)

        def mutate(state: ExerciseState) -> Participant:
            self._require_owner(caller, state.exercise)
            participant = state.participant(participant_id)
            previous = participant.status
            if status == ParticipantStatus.ACTIVE:
                participant.current_inject = 1
                participant.current_phase = 1
                participant.rejected = False
            elif status == ParticipantStatus.LEFT and previous != ParticipantStatus.ACTIVE:
                participant.rejected = True
            participant.status = status
            participant.touch()
            if status == ParticipantStatus.ACTIVE:
                private: DomainEvent = ParticipantAdmitted(exercise_id=exercise_id, exercise_title=state.exercise.title)
            else:
                private = ParticipantStatusChanged(exercise_id=exercise_id, status=status)
            state.emit(private, participant_id=participant_id)
            state.emit(
                ParticipantStatusUpdated(
                    exercise_id=exercise_id,
                    participant_id=participant_id,
                    status=status,
                    participant=participant.roster_entry(),
                )
            )
            return participant.model_copy(deep=True)

        participant = await self._transition("update_participant_status", exercise_id, mutate)
        LOGGER.info(
            "participant.status_updated",
            exercise_id=exercise_id,
            participant_id=participant_id,
            status=status.value,
            rejected=participant.rejected,
        )
        return participant

    # ------------------------------------------------------------------
    # Participant transitions
    # ------------------------------------------------------------------

    async def submit_response(
        self,
        caller: "Caller",
        participant_id: str,
        exercise_id: str,
        inject_number: int,
        phase_number: int,
        question_index: int,
        answer: Optional[Answer],
    ) -> SubmissionResult:
        """Score and record one answer. Answers are final once recorded."""

        def mutate(state: ExerciseState) -> SubmissionResult:
            participant = state.participant(participant_id)
            self._require_participant(caller, participant)
            inject = state.inject(inject_number)
            if not inject.responses_open:
                raise NotOpen(
                    f"Responses are closed for inject {inject_number}",
                    exercise_id=exercise_id,
                    inject_number=inject_number,
                )
            existing = participant.find_response(inject_number, phase_number, question_index)
            if existing is not None:
                raise DuplicateResponse(
                    "This question has already been answered",
                    existing=existing.to_wire(),
                )
            outcome = score(inject.phase(phase_number), answer)
            response = Response(
                inject_number=inject_number,
                phase_number=phase_number,
                question_index=question_index,
                answer=answer,
                points_earned=outcome.points,
                magnitude=outcome.magnitude,
            )
            participant.responses.append(response)
            participant.total_score += outcome.points
            participant.touch()
            state.emit(
                ScoreUpdate(
                    exercise_id=exercise_id,
                    participant_id=participant_id,
                    name=participant.name,
                    total_score=participant.total_score,
                    inject_number=inject_number,
                    points_earned=outcome.points,
                    magnitude=outcome.magnitude,
                )
            )
            return SubmissionResult(response=response.model_copy(), total_score=participant.total_score)

        result = await self._transition("submit_response", exercise_id, mutate)
        LOGGER.info(
            "response.submitted",
            exercise_id=exercise_id,
            participant_id=participant_id,
            inject_number=inject_number,
            phase_number=phase_number,
            points=result.response.points_earned,
        )
        return result

    async def advance_phase(
        self,
        caller: "Caller",
        participant_id: str,
        exercise_id: str,
        current_inject_number: int,
        current_phase_number: int,
    ) -> AdvanceResult:
        """Move the participant's phase cursor forward by one.

        The lock wins over everything else. Past the last phase the cursor
        stays put and the result reports ``all_phases_completed``.
        """

        def mutate(state: ExerciseState) -> AdvanceResult:
            participant = state.participant(participant_id)
            self._require_participant(caller, participant)
            inject = state.inject(current_inject_number)
            if inject.phase_progression_locked:
                raise Locked(
                    "Phase progression is locked by the facilitator",
                    exercise_id=exercise_id,
                    inject_number=current_inject_number,
                )
            next_phase = current_phase_number + 1
            if next_phase > inject.phase_count:
                return AdvanceResult(current_phase=current_phase_number, all_phases_completed=True)
            participant.current_phase = next_phase
            participant.touch()
            return AdvanceResult(current_phase=next_phase)

        result = await self._transition("advance_phase", exercise_id, mutate)
        LOGGER.debug(
            "phase.advanced",
            participant_id=participant_id,
            inject_number=current_inject_number,
            current_phase=result.current_phase,
            completed=result.all_phases_completed,
        )
        return result

    # ------------------------------------------------------------------
    # Exercise authoring
    # ------------------------------------------------------------------

    async def create_exercise(
        self,
        caller: "Caller",
        title: str,
        *,
        description: str = "",
        max_participants: Optional[int] = None,
        settings: Optional[ExerciseSettings] = None,
        injects: Iterable[InjectDraft] = (),
        summary: Iterable[SummaryPhase] = (),
    ) -> Exercise:
        if caller.user_id is None:
            raise NotAuthorized("Only a facilitator can create exercises")
        access_code = await self._unique_access_code()
        exercise = Exercise(
            id=new_exercise_id(),
            title=title,
            description=description,
            facilitator_id=caller.user_id,
            access_code=access_code,
            max_participants=max_participants or self.default_max_participants,
            settings=settings or ExerciseSettings(),
            injects=[
                Inject(inject_number=index, **draft.model_dump())
                for index, draft in enumerate(injects, start=1)
            ],
            summary=list(summary),
        )
        await self.store.insert_exercise(exercise)
        LOGGER.info("exercise.created", exercise_id=exercise.id, access_code=access_code, injects=len(exercise.injects))
        return exercise

    async def _unique_access_code(self) -> str:
        for _ in range(ACCESS_CODE_ATTEMPTS):
            code = generate_access_code()
            if await self.store.find_by_access_code(code) is None:
                return code
        raise Conflict("Could not allocate a unique access code")

    async def get_exercise(self, caller: "Caller", exercise_id: str) -> Exercise:
        exercise = await self.store.get_exercise(exercise_id)
        self._require_owner(caller, exercise)
        return exercise

    async def list_exercises(self, caller: "Caller") -> List[Exercise]:
        """Return the caller's exercises, newest first."""

        if caller.user_id is None:
            raise NotAuthorized("Only a facilitator can list exercises")
        exercises = await self.store.list_exercises(caller.user_id)
        return sorted(exercises, key=lambda exercise: exercise.created_at, reverse=True)

    async def update_exercise(self, caller: "Caller", exercise_id: str, patch: ExercisePatch) -> Exercise:
        changes = patch.model_dump(exclude_unset=True, exclude_none=True)

        def mutate(state: ExerciseState) -> Exercise:
            self._require_owner(caller, state.exercise)
            for field_name in changes:
                setattr(state.exercise, field_name, getattr(patch, field_name))
            return state.exercise.model_copy(deep=True)

        exercise = await self._transition("update_exercise", exercise_id, mutate)
        LOGGER.info("exercise.updated", exercise_id=exercise_id, fields=sorted(changes))
        return exercise

    async def delete_exercise(self, caller: "Caller", exercise_id: str) -> int:
        """Delete an exercise and all of its participants; returns how many were removed."""

        def mutate(state: ExerciseState) -> int:
            self._require_owner(caller, state.exercise)
            participants = state.participants()
            for participant in participants:
                state.emit(
                    ParticipantRemoved(exercise_id=exercise_id, participant_ids=[participant.participant_id]),
                    participant_id=participant.participant_id,
                )
            state.delete_exercise()
            return len(participants)

        removed = await self._transition("delete_exercise", exercise_id, mutate)
        LOGGER.info("exercise.deleted", exercise_id=exercise_id, participants=removed)
        return removed

    async def add_inject(self, caller: "Caller", exercise_id: str, draft: InjectDraft) -> Inject:
        def mutate(state: ExerciseState) -> Inject:
            self._require_owner(caller, state.exercise)
            inject = Inject(inject_number=len(state.exercise.injects) + 1, **draft.model_dump())
            state.exercise.injects.append(inject)
            return inject.model_copy(deep=True)

        inject = await self._transition("add_inject", exercise_id, mutate)
        LOGGER.info("inject.added", exercise_id=exercise_id, inject_number=inject.inject_number)
        return inject

    async def update_inject(
        self,
        caller: "Caller",
        exercise_id: str,
        inject_number: int,
        patch: InjectPatch,
    ) -> Inject:
        changes = patch.model_dump(exclude_unset=True, exclude_none=True)

        def mutate(state: ExerciseState) -> Inject:
            self._require_owner(caller, state.exercise)
            inject = state.inject(inject_number)
            for field_name in changes:
                setattr(inject, field_name, getattr(patch, field_name))
            return inject.model_copy(deep=True)

        inject = await self._transition("update_inject", exercise_id, mutate)
        LOGGER.info("inject.updated", exercise_id=exercise_id, inject_number=inject_number, fields=sorted(changes))
        return inject

    async def get_summary(self, caller: "Caller", exercise_id: str) -> List[SummaryPhase]:
        exercise = await self.get_exercise(caller, exercise_id)
        return exercise.summary

    async def update_summary(
        self,
        caller: "Caller",
        exercise_id: str,
        summary: Sequence[SummaryPhase],
    ) -> List[SummaryPhase]:
        def mutate(state: ExerciseState) -> List[SummaryPhase]:
            self._require_owner(caller, state.exercise)
            state.exercise.summary = [phase.model_copy() for phase in summary]
            return [phase.model_copy() for phase in state.exercise.summary]

        return await self._transition("update_summary", exercise_id, mutate)

    # ------------------------------------------------------------------
    # Roster
    # ------------------------------------------------------------------

    async def join_exercise(self, access_code: str, name: str = "", team: str = "") -> Participant:
        """Resolve an access code and seat a new participant in the waiting room."""

        code = normalize_access_code(access_code)
        exercise = await self.store.find_by_access_code(code)
        if exercise is None:
            raise NotFound("No exercise matches this access code", access_code=code)

        def mutate(state: ExerciseState) -> Participant:
            if state.exercise.status not in JOINABLE_STATUSES:
                raise InvalidState(
                    f"Exercise is {state.exercise.status.value} and no longer accepts participants",
                    exercise_id=state.exercise_id,
                    status=state.exercise.status.value,
                )
            seated = len(state.participants(*SEATED_STATUSES))
            if seated >= state.exercise.max_participants:
                raise CapacityExceeded(
                    "Exercise is full",
                    exercise_id=state.exercise_id,
                    max_participants=state.exercise.max_participants,
                )
            participant = Participant(
                participant_id=new_participant_id(),
                exercise_id=state.exercise_id,
                name=name.strip() or DEFAULT_NAME,
                team=team.strip() or DEFAULT_TEAM,
            )
            state.add_participant(participant)
            state.emit(ParticipantJoined(exercise_id=state.exercise_id, participant=participant.roster_entry()))
            return participant.model_copy(deep=True)

        participant = await self._transition("join_exercise", exercise.id, mutate)
        LOGGER.info("participant.joined", exercise_id=exercise.id, participant_id=participant.participant_id)
        return participant

    async def list_participants(self, caller: "Caller", exercise_id: str) -> List[Participant]:
        """Return the roster, most recent joiner first."""

        await self.get_exercise(caller, exercise_id)
        participants = await self.store.participants(exercise_id)
        return sorted(participants, key=lambda p: p.joined_at, reverse=True)

    async def leaderboard(self, caller: "Caller", exercise_id: str) -> views.Leaderboard:
        exercise = await self.get_exercise(caller, exercise_id)
        participants = await self.store.participants(exercise_id, ParticipantStatus.ACTIVE)
        return views.leaderboard(exercise, participants)

    async def participant_view(self, caller: "Caller", participant_id: str) -> views.ParticipantView:
        """Full current state for a participant client to reconcile against."""

        exercise_id = await self._exercise_of(participant_id)

        def build(state: ExerciseState) -> views.ParticipantView:
            participant = state.participant(participant_id)
            self._require_participant(caller, participant)
            return views.participant_view(state.exercise, participant)

        return await self._transition("participant_view", exercise_id, build)

    async def delete_participant(self, caller: "Caller", participant_id: str) -> None:
        exercise_id = await self._exercise_of(participant_id)

        def mutate(state: ExerciseState) -> None:
            self._require_owner(caller, state.exercise)
            state.remove_participant(participant_id)
            state.emit(
                ParticipantRemoved(exercise_id=exercise_id, participant_ids=[participant_id]),
                participant_id=participant_id,
            )

        await self._transition("delete_participant", exercise_id, mutate)
        LOGGER.info("participant.deleted", exercise_id=exercise_id, participant_id=participant_id)

    async def delete_all_participants(self, caller: "Caller", exercise_id: str) -> int:
        def mutate(state: ExerciseState) -> int:
            self._require_owner(caller, state.exercise)
            removed = [p.participant_id for p in state.participants()]
            for participant_id in removed:
                state.remove_participant(participant_id)
                state.emit(
                    ParticipantRemoved(exercise_id=exercise_id, participant_ids=[participant_id]),
                    participant_id=participant_id,
                )
            return len(removed)

        count = await self._transition("delete_all_participants", exercise_id, mutate)
        LOGGER.info("participant.deleted_all", exercise_id=exercise_id, count=count)
        return count

    # ------------------------------------------------------------------
    # Connection liveness (driven by the session registry)
    # ------------------------------------------------------------------

    async def restore_participant(self, participant_id: str) -> Optional[Participant]:
        """Flip a ``left`` participant back to ``active``; None when nothing changed.

        Rejected participants stay out.
        """

        exercise_id = await self._exercise_of(participant_id)

        def mutate(state: ExerciseState) -> Optional[Participant]:
            participant = state.participant(participant_id)
            if participant.status != ParticipantStatus.LEFT or participant.rejected:
                return None
            participant.status = ParticipantStatus.ACTIVE
            participant.touch()
            state.emit(ParticipantRejoined(exercise_id=exercise_id, participant_id=participant_id, name=participant.name))
            state.emit(Reconnected(exercise_id=exercise_id), participant_id=participant_id)
            return participant.model_copy(deep=True)

        restored = await self._transition("restore_participant", exercise_id, mutate)
        if restored is not None:
            LOGGER.info("participant.rejoined", exercise_id=exercise_id, participant_id=participant_id)
        return restored

    async def mark_participant_left(
        self,
        participant_id: str,
        still_connected: Optional[Callable[[], bool]] = None,
    ) -> bool:
        """Record a lost connection for an active participant; True when marked.

        ``still_connected`` is consulted inside the transaction; a participant
        that reconnected in the meantime stays active.
        """

        exercise_id = await self._exercise_of(participant_id)

        def mutate(state: ExerciseState) -> bool:
            participant = state.participant(participant_id)
            if participant.status != ParticipantStatus.ACTIVE:
                return False
            if still_connected is not None and still_connected():
                return False
            participant.status = ParticipantStatus.LEFT
            participant.touch()
            state.emit(
                ParticipantDisconnected(exercise_id=exercise_id, participant_id=participant_id, name=participant.name)
            )
            return True

        marked = await self._transition("mark_participant_left", exercise_id, mutate)
        if marked:
            LOGGER.info("participant.disconnected", exercise_id=exercise_id, participant_id=participant_id)
        return marked
