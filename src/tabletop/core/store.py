"""State store for exercises and participants plus its persistence adapters.

Every mutation goes through :meth:`StateStore.transaction`, which serialises
work per exercise, loads the exercise aggregate (the exercise and all of its
participants), lets the caller mutate plain pydantic models and then commits
only the entities that changed through the adapter's conditional
:meth:`PersistenceAdapter.commit`. A rejection raised inside the block
discards the working copies, so nothing is ever half-applied.
"""

from __future__ import annotations

import asyncio
import threading
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
)

import orjson
import structlog

from .errors import Conflict, NotFound, Unavailable
from .events import DomainEvent, Dispatch
from .schemas import Exercise, Inject, Participant, ParticipantStatus, utcnow

LOGGER = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = 5.0
DEFAULT_COMMIT_RETRIES = 3

T = TypeVar("T")


class PersistenceError(RuntimeError):
    """Raised when the backing store cannot be read or written."""


class StaleWriteError(PersistenceError):
    """Raised when a conditional write finds a newer version on record."""


@dataclass(slots=True)
class ChangeSet:
    """Entities to write or delete in one atomic, version-checked commit.

    Each saved entity must carry the version it was loaded with (``0`` for a
    new entity); the adapter rejects the whole set when any stored version
    differs, then writes everything with the version bumped by one.
    """

    exercises: List[Exercise] = field(default_factory=list)
    participants: List[Participant] = field(default_factory=list)
    deleted_exercises: List[str] = field(default_factory=list)
    deleted_participants: List[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.exercises or self.participants or self.deleted_exercises or self.deleted_participants)


class PersistenceAdapter(ABC):
    """Storage collaborator consumed by :class:`StateStore`."""

    @abstractmethod
    async def load_exercise(self, exercise_id: str) -> Optional[Exercise]:
        """Return the stored exercise or ``None``."""

    @abstractmethod
    async def load_participant(self, participant_id: str) -> Optional[Participant]:
        """Return the stored participant or ``None``."""

    @abstractmethod
    async def query_participants(
        self,
        exercise_id: str,
        statuses: Optional[Iterable[ParticipantStatus]] = None,
    ) -> List[Participant]:
        """Return an exercise's participants in join order, optionally filtered."""

    @abstractmethod
    async def find_exercise_by_code(self, access_code: str) -> Optional[Exercise]:
        """Return the exercise whose access code matches exactly."""

    @abstractmethod
    async def list_exercises(self, facilitator_id: Optional[str] = None) -> List[Exercise]:
        """Return exercises, optionally restricted to one facilitator."""

    @abstractmethod
    async def commit(self, changes: ChangeSet) -> None:
        """Apply ``changes`` atomically or raise :class:`StaleWriteError`."""

    async def save_exercise(self, exercise: Exercise) -> None:
        await self.commit(ChangeSet(exercises=[exercise]))

    async def save_participant(self, participant: Participant) -> None:
        await self.commit(ChangeSet(participants=[participant]))


class InMemoryPersistence(PersistenceAdapter):
    """Process-local adapter; stores serialised copies so callers never alias state."""

    def __init__(self) -> None:
        self._exercises: Dict[str, Exercise] = {}
        self._participants: Dict[str, Participant] = {}
        self._lock = threading.Lock()

    async def load_exercise(self, exercise_id: str) -> Optional[Exercise]:
        with self._lock:
            stored = self._exercises.get(exercise_id)
            return stored.model_copy(deep=True) if stored else None

    async def load_participant(self, participant_id: str) -> Optional[Participant]:
        with self._lock:
            stored = self._participants.get(participant_id)
            return stored.model_copy(deep=True) if stored else None

    async def query_participants(
        self,
        exercise_id: str,
        statuses: Optional[Iterable[ParticipantStatus]] = None,
    ) -> List[Participant]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            matches = [
                p.model_copy(deep=True)
                for p in self._participants.values()
                if p.exercise_id == exercise_id and (wanted is None or p.status in wanted)
            ]
        return sorted(matches, key=lambda p: p.joined_at)

    async def find_exercise_by_code(self, access_code: str) -> Optional[Exercise]:
        with self._lock:
            for exercise in self._exercises.values():
                if exercise.access_code == access_code:
                    return exercise.model_copy(deep=True)
        return None

    async def list_exercises(self, facilitator_id: Optional[str] = None) -> List[Exercise]:
        with self._lock:
            return [
                exercise.model_copy(deep=True)
                for exercise in self._exercises.values()
                if facilitator_id is None or exercise.facilitator_id == facilitator_id
            ]

    async def commit(self, changes: ChangeSet) -> None:
        with self._lock:
            self._check(changes)
            self._apply(changes)

    def seed(self, exercises: Iterable[Exercise], participants: Iterable[Participant]) -> None:
        """Replace the index wholesale, keeping the versions given."""

        with self._lock:
            self._exercises = {exercise.id: exercise for exercise in exercises}
            self._participants = {p.participant_id: p for p in participants}

    def check_versions(self, changes: ChangeSet) -> None:
        with self._lock:
            self._check(changes)

    def apply(self, changes: ChangeSet) -> None:
        with self._lock:
            self._apply(changes)

    def _check(self, changes: ChangeSet) -> None:
        for exercise in changes.exercises:
            stored = self._exercises.get(exercise.id)
            stored_version = stored.version if stored else 0
            if stored_version != exercise.version:
                raise StaleWriteError(
                    f"Exercise {exercise.id} is at version {stored_version}, write expected {exercise.version}"
                )
        for participant in changes.participants:
            stored_p = self._participants.get(participant.participant_id)
            stored_version = stored_p.version if stored_p else 0
            if stored_version != participant.version:
                raise StaleWriteError(
                    f"Participant {participant.participant_id} is at version {stored_version}, "
                    f"write expected {participant.version}"
                )

    def _apply(self, changes: ChangeSet) -> None:
        # Bump the caller's copy too so a reused working copy stays current.
        for exercise in changes.exercises:
            exercise.version += 1
            self._exercises[exercise.id] = exercise.model_copy(deep=True)
        for participant in changes.participants:
            participant.version += 1
            self._participants[participant.participant_id] = participant.model_copy(deep=True)
        for exercise_id in changes.deleted_exercises:
            self._exercises.pop(exercise_id, None)
        for participant_id in changes.deleted_participants:
            self._participants.pop(participant_id, None)


class JsonFilePersistence(PersistenceAdapter):
    """Adapter keeping one orjson document per entity under ``root``.

    The whole document set is indexed in memory at start-up. A commit stages
    every document of the change set as a temporary file and only then renames
    them into place; leftover temporary files are discarded on start-up.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self._exercise_dir = self.root / "exercises"
        self._participant_dir = self.root / "participants"
        self._exercise_dir.mkdir(parents=True, exist_ok=True)
        self._participant_dir.mkdir(parents=True, exist_ok=True)
        self._memory = InMemoryPersistence()
        self._write_lock = threading.Lock()
        self._load_from_disk()

    def _load_from_disk(self) -> None:
        try:
            for stale in [*self._exercise_dir.glob("*.json.tmp"), *self._participant_dir.glob("*.json.tmp")]:
                stale.unlink(missing_ok=True)
            exercises = [
                Exercise.model_validate(orjson.loads(path.read_bytes()))
                for path in sorted(self._exercise_dir.glob("*.json"))
            ]
            participants = [
                Participant.model_validate(orjson.loads(path.read_bytes()))
                for path in sorted(self._participant_dir.glob("*.json"))
            ]
        except (OSError, orjson.JSONDecodeError) as exc:
            raise PersistenceError(f"Failed to read documents under {self.root}: {exc}") from exc
        self._memory.seed(exercises, participants)
        LOGGER.debug("store.loaded", root=str(self.root), exercises=len(exercises), participants=len(participants))

    async def load_exercise(self, exercise_id: str) -> Optional[Exercise]:
        return await self._memory.load_exercise(exercise_id)

    async def load_participant(self, participant_id: str) -> Optional[Participant]:
        return await self._memory.load_participant(participant_id)

    async def query_participants(
        self,
        exercise_id: str,
        statuses: Optional[Iterable[ParticipantStatus]] = None,
    ) -> List[Participant]:
        return await self._memory.query_participants(exercise_id, statuses)

    async def find_exercise_by_code(self, access_code: str) -> Optional[Exercise]:
        return await self._memory.find_exercise_by_code(access_code)

    async def list_exercises(self, facilitator_id: Optional[str] = None) -> List[Exercise]:
        return await self._memory.list_exercises(facilitator_id)

    async def commit(self, changes: ChangeSet) -> None:
        await asyncio.to_thread(self._commit_sync, changes)

    def _commit_sync(self, changes: ChangeSet) -> None:
        with self._write_lock:
            self._memory.check_versions(changes)
            staged: List[Tuple[Path, Path]] = []
            try:
                for exercise in changes.exercises:
                    document = exercise.model_copy(update={"version": exercise.version + 1})
                    path = self._exercise_dir / f"{exercise.id}.json"
                    staged.append((_stage_document(path, document.model_dump(mode="json")), path))
                for participant in changes.participants:
                    document = participant.model_copy(update={"version": participant.version + 1})
                    path = self._participant_dir / f"{participant.participant_id}.json"
                    staged.append((_stage_document(path, document.model_dump(mode="json")), path))
            except OSError as exc:
                for tmp_path, _ in staged:
                    tmp_path.unlink(missing_ok=True)
                raise PersistenceError(f"Failed to write to {self.root}: {exc}") from exc

            # Every document is on disk before the first one becomes visible.
            try:
                for tmp_path, path in staged:
                    tmp_path.replace(path)
                for exercise_id in changes.deleted_exercises:
                    (self._exercise_dir / f"{exercise_id}.json").unlink(missing_ok=True)
                for participant_id in changes.deleted_participants:
                    (self._participant_dir / f"{participant_id}.json").unlink(missing_ok=True)
            except OSError as exc:
                raise PersistenceError(f"Failed to publish documents under {self.root}: {exc}") from exc
            self._memory.apply(changes)


def _stage_document(path: Path, payload: Dict[str, Any]) -> Path:
    """Write ``payload`` beside ``path`` and return the temporary file."""

    tmp_path = path.with_suffix(".json.tmp")
    try:
        tmp_path.write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2))
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise
    return tmp_path


# ---------------------------------------------------------------------------
# Exercise aggregate
# ---------------------------------------------------------------------------


class ExerciseState:
    """Working copy of one exercise and its participants inside a transaction."""

    def __init__(self, exercise: Exercise, participants: Sequence[Participant]) -> None:
        self.exercise = exercise
        self._participants: Dict[str, Participant] = {p.participant_id: p for p in participants}
        self._baseline_exercise = exercise.model_dump()
        self._baseline_participants = {p.participant_id: p.model_dump() for p in participants}
        self._added: List[str] = []
        self._removed: List[str] = []
        self.deleted = False
        self.dispatches: List[Dispatch] = []

    # -- lookups ---------------------------------------------------------

    @property
    def exercise_id(self) -> str:
        return self.exercise.id

    def inject(self, inject_number: int) -> Inject:
        inject = self.exercise.inject(inject_number)
        if inject is None:
            raise NotFound(
                f"Inject {inject_number} not found in exercise {self.exercise.id}",
                exercise_id=self.exercise.id,
                inject_number=inject_number,
            )
        return inject

    def participant(self, participant_id: str) -> Participant:
        participant = self._participants.get(participant_id)
        if participant is None:
            raise NotFound(f"Participant {participant_id} not found", participant_id=participant_id)
        return participant

    def participants(self, *statuses: ParticipantStatus) -> List[Participant]:
        members = sorted(self._participants.values(), key=lambda p: p.joined_at)
        if not statuses:
            return members
        return [p for p in members if p.status in statuses]

    # -- mutations -------------------------------------------------------

    def add_participant(self, participant: Participant) -> None:
        self._participants[participant.participant_id] = participant
        self._added.append(participant.participant_id)

    def remove_participant(self, participant_id: str) -> Participant:
        participant = self.participant(participant_id)
        del self._participants[participant_id]
        self._removed.append(participant_id)
        return participant

    def delete_exercise(self) -> None:
        self.deleted = True

    def emit(self, event: DomainEvent, *, participant_id: Optional[str] = None) -> DomainEvent:
        """Stamp ``event`` with the next exercise sequence number and queue it."""

        self.exercise.event_sequence += 1
        event.sequence = self.exercise.event_sequence
        if participant_id is None:
            self.dispatches.append(Dispatch.to_exercise(event))
        else:
            self.dispatches.append(Dispatch.to_participant(participant_id, event))
        return event

    # -- commit ----------------------------------------------------------

    def change_set(self) -> ChangeSet:
        changes = ChangeSet()
        if self.deleted:
            changes.deleted_exercises.append(self.exercise.id)
            changes.deleted_participants.extend(self._baseline_participants)
            return changes

        now = utcnow()
        if self.exercise.model_dump() != self._baseline_exercise:
            self.exercise.updated_at = now
            changes.exercises.append(self.exercise)
        for participant_id, participant in self._participants.items():
            baseline = self._baseline_participants.get(participant_id)
            if baseline is None or participant.model_dump() != baseline:
                changes.participants.append(participant)
        changes.deleted_participants.extend(pid for pid in self._removed if pid in self._baseline_participants)
        return changes


class StateStore:
    """Transactional access to exercises and participants."""

    def __init__(
        self,
        adapter: PersistenceAdapter,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        commit_retries: int = DEFAULT_COMMIT_RETRIES,
    ) -> None:
        self.adapter = adapter
        self.timeout = timeout
        self.commit_retries = max(1, commit_retries)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, exercise_id: str) -> asyncio.Lock:
        with self._locks_guard:
            lock = self._locks.get(exercise_id)
            if lock is None:
                lock = self._locks[exercise_id] = asyncio.Lock()
            return lock

    def _forget_lock(self, exercise_id: str) -> None:
        with self._locks_guard:
            self._locks.pop(exercise_id, None)

    async def _call(self, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise Unavailable("Storage did not respond in time") from exc
        except StaleWriteError:
            raise
        except PersistenceError as exc:
            raise Unavailable(f"Storage unavailable: {exc}") from exc

    # -- reads -----------------------------------------------------------

    async def get_exercise(self, exercise_id: str) -> Exercise:
        exercise = await self._call(self.adapter.load_exercise(exercise_id))
        if exercise is None:
            raise NotFound(f"Exercise {exercise_id} not found", exercise_id=exercise_id)
        return exercise

    async def get_participant(self, participant_id: str) -> Participant:
        participant = await self._call(self.adapter.load_participant(participant_id))
        if participant is None:
            raise NotFound(f"Participant {participant_id} not found", participant_id=participant_id)
        return participant

    async def participants(self, exercise_id: str, *statuses: ParticipantStatus) -> List[Participant]:
        return await self._call(self.adapter.query_participants(exercise_id, statuses or None))

    async def find_by_access_code(self, access_code: str) -> Optional[Exercise]:
        return await self._call(self.adapter.find_exercise_by_code(access_code))

    async def list_exercises(self, facilitator_id: Optional[str] = None) -> List[Exercise]:
        return await self._call(self.adapter.list_exercises(facilitator_id))

    # -- writes ----------------------------------------------------------

    async def insert_exercise(self, exercise: Exercise) -> Exercise:
        try:
            await self._call(self.adapter.save_exercise(exercise))
        except StaleWriteError as exc:
            raise Conflict(f"Exercise {exercise.id} already exists", exercise_id=exercise.id) from exc
        return exercise

    @asynccontextmanager
    async def transaction(self, exercise_id: str) -> AsyncIterator[ExerciseState]:
        """Yield a working copy of the exercise aggregate and commit it on exit.

        The per-exercise lock is held for load, mutation and commit only; the
        caller publishes ``state.dispatches`` after the block has returned.
        A :class:`StaleWriteError` from a concurrent writer outside this
        process surfaces as :class:`Unavailable` once the retries configured
        by :meth:`run` are exhausted.
        """

        lock = self._lock_for(exercise_id)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise Unavailable(f"Exercise {exercise_id} is busy, try again") from exc
        try:
            try:
                exercise = await self.get_exercise(exercise_id)
            except NotFound:
                self._forget_lock(exercise_id)
                raise
            participants = await self.participants(exercise_id)
            state = ExerciseState(exercise, participants)
            yield state
            changes = state.change_set()
            if not changes.is_empty():
                await self._call(self.adapter.commit(changes))
            if state.deleted:
                self._forget_lock(exercise_id)
        finally:
            lock.release()

    async def run(self, exercise_id: str, mutate: Callable[[ExerciseState], T]) -> Tuple[T, List[Dispatch]]:
        """Run ``mutate(state)`` in a transaction, retrying on stale writes.

        ``mutate`` must be a plain function of the working copy so it can be
        replayed against freshly loaded state. Returns ``(result, dispatches)``.
        """

        for attempt in range(1, self.commit_retries + 1):
            try:
                async with self.transaction(exercise_id) as state:
                    result = mutate(state)
                return result, state.dispatches
            except StaleWriteError as exc:
                LOGGER.warning("store.stale_write", exercise_id=exercise_id, attempt=attempt, error=str(exc))
        raise Unavailable(f"Exercise {exercise_id} changed concurrently, try again")
