"""FastAPI application exposing exercise progression over HTTP and WebSocket."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import anyio
import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import Field, ValidationError

from ..config.settings import ServerConfig
from ..core.errors import ProgressionError
from ..core.fsm import ProgressionController
from ..core.schemas import (
    Answer,
    CamelModel,
    ExercisePatch,
    ExerciseSettings,
    InjectDraft,
    InjectPatch,
    ParticipantStatus,
    SummaryPhase,
)
from ..core.store import InMemoryPersistence, JsonFilePersistence, PersistenceAdapter, StateStore
from .auth import Authorizer, Caller, OwnershipAuthorizer
from .gateway import BroadcastGateway, Subscriber
from .session_registry import SessionRegistry

LOGGER = structlog.get_logger(__name__)


@dataclass(slots=True)
class Runtime:
    """Everything one server process shares across requests."""

    config: ServerConfig
    store: StateStore
    gateway: BroadcastGateway
    controller: ProgressionController
    registry: SessionRegistry


def build_adapter(config: ServerConfig) -> PersistenceAdapter:
    if config.persistence == "json":
        return JsonFilePersistence(config.data_dir)
    return InMemoryPersistence()


def build_runtime(
    config: Optional[ServerConfig] = None,
    *,
    adapter: Optional[PersistenceAdapter] = None,
    authorizer: Optional[Authorizer] = None,
) -> Runtime:
    config = config or ServerConfig()
    store = StateStore(
        adapter or build_adapter(config),
        timeout=config.request_timeout,
        commit_retries=config.commit_retries,
    )
    gateway = BroadcastGateway()
    controller = ProgressionController(
        store,
        authorizer or OwnershipAuthorizer(),
        gateway,
        default_max_participants=config.default_max_participants,
    )
    registry = SessionRegistry(controller, gateway)
    return Runtime(config=config, store=store, gateway=gateway, controller=controller, registry=registry)


# ---------------------------------------------------------------------------
# Request payloads
# ---------------------------------------------------------------------------


class ExerciseCreate(CamelModel):
    """Payload for creating an exercise, optionally with its injects."""

    title: str = Field(..., min_length=1)
    description: str = ""
    max_participants: Optional[int] = Field(None, ge=1)
    settings: Optional[ExerciseSettings] = None
    injects: List[InjectDraft] = Field(default_factory=list)
    summary: List[SummaryPhase] = Field(default_factory=list)


class ResponsesToggle(CamelModel):
    responses_open: bool


class PhaseLockToggle(CamelModel):
    phase_progression_locked: bool


class StatusUpdate(CamelModel):
    status: ParticipantStatus


class JoinRequest(CamelModel):
    access_code: str = Field(..., min_length=1)
    name: str = ""
    team: str = ""


class ResponseSubmit(CamelModel):
    exercise_id: str
    inject_number: int
    phase_number: int
    question_index: int = 0
    answer: Optional[Answer] = None


class PhaseAdvance(CamelModel):
    exercise_id: str
    current_inject_number: int
    current_phase_number: int


class SummaryUpdate(CamelModel):
    summary: List[SummaryPhase] = Field(default_factory=list)


class SocketMessage(CamelModel):
    type: str
    exercise_id: Optional[str] = None
    participant_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_controller(runtime: Runtime = Depends(get_runtime)) -> ProgressionController:
    return runtime.controller


def get_caller(
    x_facilitator_id: Optional[str] = Header(None),
    x_participant_id: Optional[str] = Header(None),
) -> Caller:
    """Identity established upstream by the authentication layer."""
    return Caller(user_id=x_facilitator_id, participant_id=x_participant_id)


router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Exercises
# ---------------------------------------------------------------------------


@router.post("/exercises", status_code=201)
async def create_exercise(
    payload: ExerciseCreate,
    caller: Caller = Depends(get_caller),
    controller: ProgressionController = Depends(get_controller),
) -> Dict[str, Any]:
    exercise = await controller.create_exercise(
        caller,
        payload.title,
        description=payload.description,
        max_participants=payload.max_participants,
        settings=payload.settings,
        injects=payload.injects,
        summary=payload.summary,
    )
    return exercise.to_wire()


@router.get("/exercises")
async def list_exercises(
    caller: Caller = Depends(get_caller),
    controller: ProgressionController = Depends(get_controller),
) -> Dict[str, Any]:
    exercises = await controller.list_exercises(caller)
    return {"exercises": [exercise.to_wire() for exercise in exercises]}


@router.get("/exercises/{exercise_id}")
async def get_exercise(
    exercise_id: str,
    caller: Caller = Depends(get_caller),
    controller: ProgressionController = Depends(get_controller),
) -> Dict[str, Any]:
    exercise = await controller.get_exercise(caller, exercise_id)
    return exercise.to_wire()


@router.patch("/exercises/{exercise_id}")
async def update_exercise(
    exercise_id: str,
    payload: ExercisePatch,
    caller: Caller = Depends(get_caller),
    controller: ProgressionController = Depends(get_controller),
) -> Dict[str, Any]:
    exercise = await controller.update_exercise(caller, exercise_id, payload)
    return exercise.to_wire()


@router.delete("/exercises/{exercise_id}")
async def delete_exercise(
    exercise_id: str,
    caller: Caller = Depends(get_caller),
    controller: ProgressionController = Depends(get_controller),
) -> Dict[str, Any]:
    removed = await controller.delete_exercise(caller, exercise_id)
    return {"status": "deleted", "exerciseId": exercise_id, "participantsRemoved": removed}


@router.post("/exercises/{exercise_id}/reset")
async def reset_exercise(
    exercise_id: str,
    caller: Caller = Depends(get_caller),
    controller: ProgressionController = Depends(get_controller),
) -> Dict[str, Any]:
    exercise = await controller.reset_exercise(caller, exercise_id)
    return exercise.to_wire()


@router.get("/exercises/{exercise_id}/summary")
async def get_summary(
    exercise_id: str,
    caller: Caller = Depends(get_caller),
    controller: ProgressionController = Depends(get_controller),
) -> Dict[str, Any]:
    summary = await controller.get_summary(caller, exercise_id)
    return {"summary": [phase.to_wire() for phase in summary]}


@router.put("/exercises/{exercise_id}/summary")
async def update_summary(
    exercise_id: str,
    payload: SummaryUpdate,
    caller: Caller = Depends(get_caller),
    controller: ProgressionController = Depends(get_controller),
) -> Dict[str, Any]:
    summary = await controller.update_summary(caller, exercise_id, payload.summary)
    return {"summary": [phase.to_wire() for phase in summary]}


# ---------------------------------------------------------------------------
# Injects
# ---------------------------------------------------------------------------


@router.post("/exercises/{exercise_id}/injects", status_code=201)
async def add_inject(
    exercise_id: str,
    payload: InjectDraft,
    caller: Caller = Depends(get_caller),
    controller: ProgressionController = Depends(get_controller),
) -> Dict[str, Any]:
    inject = await controller.add_inject(caller, exercise_id, payload)
    return inject.to_wire()


@router.patch("/exercises/{exercise_id}/injects/{inject_number}")
async def update_inject(
    exercise_id: str,
    inject_number: int,
    payload: InjectPatch,
    caller: Caller = Depends(get_caller),
    controller: ProgressionController = Depends(get_controller),
) -> Dict[str, Any]:
    inject = await controller.update_inject(caller, exercise_id, inject_number, payload)
    return inject.to_wire()


@router.delete("/exercises/{exercise_id}/injects/{inject_number}")
async def delete_inject(
    exercise_id: str,
    inject_number: int,
    caller: Caller = Depends(get_caller),
    controller: ProgressionController = Depends(get_controller),
) -> Dict[str, Any]:
    renumbered = await controller.delete_inject(caller, exercise_id, inject_number)
    return {
        "status": "deleted",
        "injectNumber": inject_number,
        "renumbered": {str(old): new for old, new in renumbered.items()},
    }


@router.post("/exercises/{exercise_id}/injects/{inject_number}/release")
async def release_inject(
    exercise_id: str,
    inject_number: int,
    caller: Caller = Depends(get_caller),
    controller: ProgressionController = Depends(get_controller),
) -> Dict[str, Any]:
    inject = await controller.release_inject(caller, exercise_id, inject_number)
    return inject.to_wire()


@router.post("/exercises/{exercise_id}/injects/{inject_number}/toggle-responses")
async def toggle_responses(
    exercise_id: str,
    inject_number: int,
    payload: ResponsesToggle,
    caller: Caller = Depends(get_caller),
    controller: ProgressionController = Depends(get_controller),
) -> Dict[str, Any]:
    inject = await controller.toggle_responses(caller, exercise_id, inject_number, payload.responses_open)
    return inject.to_wire()


@router.post("/exercises/{exercise_id}/injects/{inject_number}/toggle-phase-lock")
async def toggle_phase_lock(
    exercise_id: str,
    inject_number: int,
    payload: PhaseLockToggle,
    caller: Caller = Depends(get_caller),
    controller: ProgressionController = Depends(get_controller),
) -> Dict[str, Any]:
    inject = await controller.toggle_phase_lock(caller, exercise_id, inject_number, payload.phase_progression_locked)
    return inject.to_wire()


@router.post("/exercises/{exercise_id}/injects/{inject_number}/reset")
async def reset_inject(
    exercise_id: str,
    inject_number: int,
    caller: Caller = Depends(get_caller),
    controller: ProgressionController = Depends(get_controller),
) -> Dict[str, Any]:
    inject = await controller.reset_inject(caller, exercise_id, inject_number)
    return inject.to_wire()


# ---------------------------------------------------------------------------
# Participants
# ---------------------------------------------------------------------------


@router.get("/exercises/{exercise_id}/participants")
async def list_participants(
    exercise_id: str,
    caller: Caller = Depends(get_caller),
    controller: ProgressionController = Depends(get_controller),
) -> Dict[str, Any]:
    participants = await controller.list_participants(caller, exercise_id)
    return {"participants": [participant.to_wire() for participant in participants]}


@router.delete("/exercises/{exercise_id}/participants")
async def delete_all_participants(
    exercise_id: str,
    caller: Caller = Depends(get_caller),
    controller: ProgressionController = Depends(get_controller),
) -> Dict[str, Any]:
    removed = await controller.delete_all_participants(caller, exercise_id)
    return {"status": "deleted", "count": removed}


@router.get("/exercises/{exercise_id}/scores")
async def get_scores(
    exercise_id: str,
    caller: Caller = Depends(get_caller),
    controller: ProgressionController = Depends(get_controller),
) -> Dict[str, Any]:
    board = await controller.leaderboard(caller, exercise_id)
    return board.to_wire()


@router.post("/join", status_code=201)
async def join_exercise(
    payload: JoinRequest,
    controller: ProgressionController = Depends(get_controller),
) -> Dict[str, Any]:
    participant = await controller.join_exercise(payload.access_code, payload.name, payload.team)
    return participant.to_wire()


@router.patch("/participants/{participant_id}/status")
async def update_participant_status(
    participant_id: str,
    payload: StatusUpdate,
    caller: Caller = Depends(get_caller),
    controller: ProgressionController = Depends(get_controller),
) -> Dict[str, Any]:
    participant = await controller.update_participant_status(caller, participant_id, payload.status)
    return participant.to_wire()


@router.delete("/participants/{participant_id}")
async def delete_participant(
    participant_id: str,
    caller: Caller = Depends(get_caller),
    controller: ProgressionController = Depends(get_controller),
) -> Dict[str, Any]:
    await controller.delete_participant(caller, participant_id)
    return {"status": "deleted", "participantId": participant_id}


@router.get("/participants/{participant_id}/view")
async def participant_view(
    participant_id: str,
    caller: Caller = Depends(get_caller),
    controller: ProgressionController = Depends(get_controller),
) -> Dict[str, Any]:
    view = await controller.participant_view(caller, participant_id)
    return view.to_wire()


@router.post("/participants/{participant_id}/responses", status_code=201)
async def submit_response(
    participant_id: str,
    payload: ResponseSubmit,
    caller: Caller = Depends(get_caller),
    controller: ProgressionController = Depends(get_controller),
) -> Dict[str, Any]:
    result = await controller.submit_response(
        caller,
        participant_id,
        payload.exercise_id,
        payload.inject_number,
        payload.phase_number,
        payload.question_index,
        payload.answer,
    )
    return {"response": result.response.to_wire(), "totalScore": result.total_score}


@router.post("/participants/{participant_id}/next-phase")
async def advance_phase(
    participant_id: str,
    payload: PhaseAdvance,
    caller: Caller = Depends(get_caller),
    controller: ProgressionController = Depends(get_controller),
) -> Dict[str, Any]:
    result = await controller.advance_phase(
        caller,
        participant_id,
        payload.exercise_id,
        payload.current_inject_number,
        payload.current_phase_number,
    )
    return {"currentPhase": result.current_phase, "allPhasesCompleted": result.all_phases_completed}


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------


async def _pump_events(websocket: WebSocket, subscriber: Subscriber, scope: anyio.CancelScope) -> None:
    try:
        while True:
            event = await subscriber.receive()
            await websocket.send_json(event.to_wire())
    except WebSocketDisconnect:
        scope.cancel()


async def _handle_messages(websocket: WebSocket, runtime: Runtime, connection_id: str) -> None:
    registry = runtime.registry
    while True:
        try:
            data = await websocket.receive_json()
        except WebSocketDisconnect:
            return
        except ValueError:
            await websocket.send_json({"type": "error", "error": "bad_request", "message": "Malformed JSON"})
            continue
        try:
            message = SocketMessage.model_validate(data)
            if message.type == "joinExercise" and message.exercise_id:
                registry.watch_exercise(connection_id, message.exercise_id)
                await websocket.send_json({"type": "subscribed", "exerciseId": message.exercise_id})
            elif message.type == "joinAsParticipant" and message.participant_id:
                participant = await registry.claim_participant(connection_id, message.participant_id)
                await websocket.send_json({"type": "claimed", "participant": participant.to_wire()})
            else:
                await websocket.send_json({"type": "error", "error": "bad_request", "message": "Unknown message"})
        except ValidationError as exc:
            await websocket.send_json({"type": "error", "error": "bad_request", "message": str(exc)})
        except ProgressionError as exc:
            await websocket.send_json({"type": "error", **exc.to_payload()})


async def exercise_socket(websocket: WebSocket) -> None:
    """Subscribe a live session to exercise and participant topics.

    The reader and the event pump share one task group; whichever side sees
    the disconnect first cancels the other.
    """

    runtime: Runtime = websocket.app.state.runtime
    await websocket.accept()
    connection_id = uuid.uuid4().hex
    subscriber = Subscriber(connection_id, maxsize=runtime.config.subscriber_queue_size)
    await runtime.registry.attach(connection_id, subscriber)
    LOGGER.info("socket.connected", connection_id=connection_id)

    try:
        async with anyio.create_task_group() as task_group:
            task_group.start_soon(_pump_events, websocket, subscriber, task_group.cancel_scope)
            await _handle_messages(websocket, runtime, connection_id)
            task_group.cancel_scope.cancel()
    finally:
        with anyio.CancelScope(shield=True):
            await runtime.registry.detach(connection_id)
        LOGGER.info("socket.disconnected", connection_id=connection_id)


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


async def _progression_error_handler(_request: Request, exc: ProgressionError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content=exc.to_payload())


async def health() -> Dict[str, Any]:
    return {"status": "ok"}


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the FastAPI application around ``runtime`` (a fresh in-memory one by default)."""

    runtime = runtime or build_runtime()
    app = FastAPI(title="Tabletop Exercise API", version="0.1.0")
    app.state.runtime = runtime
    app.add_middleware(
        CORSMiddleware,
        allow_origins=runtime.config.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ProgressionError, _progression_error_handler)
    app.include_router(router)
    app.add_api_route("/health", health, methods=["GET"])
    app.add_api_websocket_route("/ws", exercise_socket)
    return app
