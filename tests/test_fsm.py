import pytest

from conftest import FACILITATOR, OTHER_FACILITATOR, inject_draft, text_phase
from tabletop.core.errors import (
    CapacityExceeded,
    Conflict,
    DuplicateResponse,
    InvalidState,
    Locked,
    NotAuthorized,
    NotFound,
    NotOpen,
)
from tabletop.core.events import exercise_topic, participant_topic
from tabletop.core.fsm import ProgressionController
from tabletop.core.schemas import (
    ExercisePatch,
    ExerciseStatus,
    InjectDraft,
    InjectPatch,
    Magnitude,
    ParticipantStatus,
    SummaryPhase,
)
from tabletop.services.auth import Caller, OwnershipAuthorizer


def me(participant):
    return Caller.participant(participant.participant_id)


# ---------------------------------------------------------------------------
# Release and gates
# ---------------------------------------------------------------------------


async def test_release_moves_every_active_participant_to_phase_one(controller, store, exercise, admit):
    players = [await admit(exercise, f"P{i}") for i in range(3)]
    await controller.release_inject(FACILITATOR, exercise.id, 1)
    await controller.advance_phase(me(players[0]), players[0].participant_id, exercise.id, 1, 1)
    await controller.advance_phase(me(players[1]), players[1].participant_id, exercise.id, 1, 1)

    inject = await controller.release_inject(FACILITATOR, exercise.id, 3)

    assert inject.is_active and inject.responses_open and inject.release_time is not None
    for player in players:
        stored = await store.get_participant(player.participant_id)
        assert (stored.current_inject, stored.current_phase) == (3, 1)


async def test_release_skips_participants_who_are_not_active(controller, store, exercise):
    waiting = await controller.join_exercise(exercise.access_code, "Late")

    await controller.release_inject(FACILITATOR, exercise.id, 2)

    stored = await store.get_participant(waiting.participant_id)
    assert stored.current_inject == 1


async def test_release_twice_is_a_conflict(controller, exercise, publisher):
    await controller.release_inject(FACILITATOR, exercise.id, 1)
    publisher.clear()

    with pytest.raises(Conflict):
        await controller.release_inject(FACILITATOR, exercise.id, 1)
    assert publisher.published == []


async def test_release_unknown_inject_is_not_found(controller, exercise):
    with pytest.raises(NotFound):
        await controller.release_inject(FACILITATOR, exercise.id, 9)


async def test_release_requires_owner(controller, store, exercise):
    with pytest.raises(NotAuthorized):
        await controller.release_inject(OTHER_FACILITATOR, exercise.id, 1)

    stored = await store.get_exercise(exercise.id)
    assert not stored.inject(1).is_active


async def test_toggles_are_idempotent_and_always_broadcast(controller, exercise, publisher):
    await controller.release_inject(FACILITATOR, exercise.id, 1)
    publisher.clear()

    first = await controller.toggle_responses(FACILITATOR, exercise.id, 1, False)
    second = await controller.toggle_responses(FACILITATOR, exercise.id, 1, False)
    locked = await controller.toggle_phase_lock(FACILITATOR, exercise.id, 1, True)
    await controller.toggle_phase_lock(FACILITATOR, exercise.id, 1, True)

    assert not first.responses_open and not second.responses_open
    assert locked.phase_progression_locked
    assert publisher.types() == [
        "responsesToggled",
        "responsesToggled",
        "phaseProgressionToggled",
        "phaseProgressionToggled",
    ]
    assert all(topic == exercise_topic(exercise.id) for topic, _ in publisher.published)


# ---------------------------------------------------------------------------
# Submissions
# ---------------------------------------------------------------------------


async def test_submit_scores_and_broadcasts(controller, exercise, admit, publisher):
    player = await admit(exercise)
    await controller.release_inject(FACILITATOR, exercise.id, 1)
    publisher.clear()

    result = await controller.submit_response(me(player), player.participant_id, exercise.id, 1, 1, 0, "A")

    assert result.total_score == 10
    assert result.response.magnitude is Magnitude.MOST_EFFECTIVE
    topic, event = publisher.published[-1]
    assert topic == exercise_topic(exercise.id)
    assert event.type == "scoreUpdate"
    assert (event.participant_id, event.total_score, event.points_earned) == (player.participant_id, 10, 10)


async def test_duplicate_submission_is_rejected_and_total_unchanged(controller, store, exercise, admit):
    player = await admit(exercise)
    await controller.release_inject(FACILITATOR, exercise.id, 1)
    await controller.submit_response(me(player), player.participant_id, exercise.id, 1, 1, 0, "A")

    with pytest.raises(DuplicateResponse) as exc_info:
        await controller.submit_response(me(player), player.participant_id, exercise.id, 1, 1, 0, "B")

    assert exc_info.value.existing["answer"] == "A"
    assert exc_info.value.existing["pointsEarned"] == 10
    stored = await store.get_participant(player.participant_id)
    assert stored.total_score == 10
    assert len(stored.responses) == 1


async def test_same_phase_different_question_index_is_a_new_answer(controller, exercise, admit):
    player = await admit(exercise)
    await controller.release_inject(FACILITATOR, exercise.id, 1)
    await controller.submit_response(me(player), player.participant_id, exercise.id, 1, 2, 0, ["A"])

    result = await controller.submit_response(me(player), player.participant_id, exercise.id, 1, 2, 1, ["A", "B", "C"])

    assert result.total_score == 11


async def test_submit_while_closed_is_not_open(controller, exercise, admit):
    player = await admit(exercise)

    with pytest.raises(NotOpen):
        await controller.submit_response(me(player), player.participant_id, exercise.id, 1, 1, 0, "A")

    await controller.release_inject(FACILITATOR, exercise.id, 1)
    await controller.toggle_responses(FACILITATOR, exercise.id, 1, False)
    with pytest.raises(NotOpen):
        await controller.submit_response(me(player), player.participant_id, exercise.id, 1, 1, 0, "A")


async def test_submit_to_missing_inject_is_not_found(controller, exercise, admit):
    player = await admit(exercise)

    with pytest.raises(NotFound):
        await controller.submit_response(me(player), player.participant_id, exercise.id, 42, 1, 0, "A")


async def test_submit_to_missing_phase_scores_zero(controller, exercise, admit):
    player = await admit(exercise)
    await controller.release_inject(FACILITATOR, exercise.id, 1)

    result = await controller.submit_response(me(player), player.participant_id, exercise.id, 1, 7, 0, "A")

    assert result.response.points_earned == 0
    assert result.response.magnitude is Magnitude.LEAST_EFFECTIVE


async def test_submit_as_someone_else_is_not_authorized(controller, exercise, admit):
    player = await admit(exercise, "Owner")
    intruder = await admit(exercise, "Intruder")
    await controller.release_inject(FACILITATOR, exercise.id, 1)

    with pytest.raises(NotAuthorized):
        await controller.submit_response(me(intruder), player.participant_id, exercise.id, 1, 1, 0, "A")


async def test_text_answers_take_the_default_points(controller, exercise, admit):
    await controller.update_inject(
        FACILITATOR,
        exercise.id,
        1,
        InjectPatch(phases=[text_phase(1)]),
    )
    player = await admit(exercise)
    await controller.release_inject(FACILITATOR, exercise.id, 1)

    result = await controller.submit_response(me(player), player.participant_id, exercise.id, 1, 1, 0, "We call legal.")

    assert (result.response.points_earned, result.response.magnitude) == (5, Magnitude.NOT_EFFECTIVE)


# ---------------------------------------------------------------------------
# Phase progression
# ---------------------------------------------------------------------------


async def test_advance_moves_cursor(controller, store, exercise, admit):
    player = await admit(exercise)
    await controller.release_inject(FACILITATOR, exercise.id, 1)

    result = await controller.advance_phase(me(player), player.participant_id, exercise.id, 1, 1)

    assert (result.current_phase, result.all_phases_completed) == (2, False)
    assert (await store.get_participant(player.participant_id)).current_phase == 2


async def test_advance_past_last_phase_reports_completion(controller, store, exercise, admit):
    player = await admit(exercise)
    await controller.release_inject(FACILITATOR, exercise.id, 1)
    await controller.advance_phase(me(player), player.participant_id, exercise.id, 1, 1)

    result = await controller.advance_phase(me(player), player.participant_id, exercise.id, 1, 2)

    assert result.all_phases_completed
    assert (await store.get_participant(player.participant_id)).current_phase == 2


async def test_lock_takes_precedence_over_completion(controller, exercise, admit):
    player = await admit(exercise)
    await controller.release_inject(FACILITATOR, exercise.id, 1)
    await controller.toggle_phase_lock(FACILITATOR, exercise.id, 1, True)

    with pytest.raises(Locked) as exc_info:
        await controller.advance_phase(me(player), player.participant_id, exercise.id, 1, 2)
    assert exc_info.value.to_payload()["locked"] is True


# ---------------------------------------------------------------------------
# Resets and deletion
# ---------------------------------------------------------------------------


async def _answer_injects(controller, exercise, player, numbers):
    for number in numbers:
        await controller.release_inject(FACILITATOR, exercise.id, number)
        await controller.submit_response(me(player), player.participant_id, exercise.id, number, 1, 0, "A")
        await controller.submit_response(me(player), player.participant_id, exercise.id, number, 2, 0, ["C"])


async def test_reset_inject_removes_only_that_injects_responses(controller, store, exercise, admit):
    player = await admit(exercise)
    await _answer_injects(controller, exercise, player, [1, 2, 3])

    inject = await controller.reset_inject(FACILITATOR, exercise.id, 2)

    stored = await store.get_participant(player.participant_id)
    assert sorted({resp.inject_number for resp in stored.responses}) == [1, 3]
    assert stored.total_score == sum(resp.points_earned for resp in stored.responses) == 24
    assert not (inject.is_active or inject.responses_open or inject.phase_progression_locked)
    assert (await store.get_exercise(exercise.id)).inject(3).is_active


async def test_reset_exercise_clears_everything_and_broadcasts(controller, store, exercise, admit, publisher):
    player = await admit(exercise)
    await _answer_injects(controller, exercise, player, [1, 2])
    publisher.clear()

    await controller.reset_exercise(FACILITATOR, exercise.id)

    stored_exercise = await store.get_exercise(exercise.id)
    assert all(not inject.is_active and inject.release_time is None for inject in stored_exercise.injects)
    stored = await store.get_participant(player.participant_id)
    assert (stored.responses, stored.total_score, stored.current_inject, stored.current_phase) == ([], 0, 1, 1)
    assert publisher.types() == ["exerciseReset"]


async def test_delete_inject_renumbers_in_prior_order(controller, store, exercise, publisher):
    renumbered = await controller.delete_inject(FACILITATOR, exercise.id, 2)

    stored = await store.get_exercise(exercise.id)
    assert [(inj.inject_number, inj.title) for inj in stored.injects] == [
        (1, "Inject 1"),
        (2, "Inject 3"),
        (3, "Inject 4"),
    ]
    assert renumbered == {3: 2, 4: 3}
    assert publisher.published[-1][1].type == "injectDeleted"


async def test_delete_inject_with_responses_is_refused(controller, store, exercise, admit):
    player = await admit(exercise)
    await _answer_injects(controller, exercise, player, [2])

    with pytest.raises(Conflict):
        await controller.delete_inject(FACILITATOR, exercise.id, 2)
    assert len((await store.get_exercise(exercise.id)).injects) == 4


async def test_delete_inject_migrates_later_responses_and_cursors(controller, store, exercise, admit):
    player = await admit(exercise)
    await _answer_injects(controller, exercise, player, [1, 3])

    await controller.delete_inject(FACILITATOR, exercise.id, 2)

    stored = await store.get_participant(player.participant_id)
    assert sorted({resp.inject_number for resp in stored.responses}) == [1, 2]
    assert stored.current_inject == 2
    stored_exercise = await store.get_exercise(exercise.id)
    assert stored_exercise.inject(2).title == "Inject 3"
    assert stored_exercise.inject(2).is_active


# ---------------------------------------------------------------------------
# Roster
# ---------------------------------------------------------------------------


async def test_join_normalises_code_and_applies_defaults(controller, exercise, publisher):
    participant = await controller.join_exercise(f"  {exercise.access_code.lower()} ")

    assert participant.status is ParticipantStatus.WAITING
    assert (participant.name, participant.team) == ("Anonymous", "Individual")
    assert publisher.published[-1][1].type == "participantJoined"


async def test_join_at_capacity_is_rejected(controller, exercise, admit):
    await admit(exercise, "One")
    await admit(exercise, "Two")
    await controller.join_exercise(exercise.access_code, "Three")

    with pytest.raises(CapacityExceeded):
        await controller.join_exercise(exercise.access_code, "Four")


async def test_left_participants_free_a_seat(controller, exercise, admit):
    first = await admit(exercise, "One")
    await admit(exercise, "Two")
    await admit(exercise, "Three")
    await controller.mark_participant_left(first.participant_id)

    joined = await controller.join_exercise(exercise.access_code, "Four")

    assert joined.status is ParticipantStatus.WAITING


async def test_join_unknown_code_is_not_found(controller, exercise):
    with pytest.raises(NotFound):
        await controller.join_exercise("NOPE1234")


@pytest.mark.parametrize("status", [ExerciseStatus.COMPLETED, ExerciseStatus.ARCHIVED])
async def test_join_closed_exercise_is_invalid_state(controller, exercise, status):
    await controller.update_exercise(FACILITATOR, exercise.id, ExercisePatch(status=status))

    with pytest.raises(InvalidState):
        await controller.join_exercise(exercise.access_code, "Late")


async def test_admission_restarts_at_inject_one_and_notifies(controller, exercise, publisher):
    joined = await controller.join_exercise(exercise.access_code, "New")
    await controller.release_inject(FACILITATOR, exercise.id, 3)
    publisher.clear()

    admitted = await controller.update_participant_status(FACILITATOR, joined.participant_id, ParticipantStatus.ACTIVE)

    assert (admitted.status, admitted.current_inject) == (ParticipantStatus.ACTIVE, 1)
    topics = [topic for topic, _ in publisher.published]
    assert topics == [participant_topic(joined.participant_id), exercise_topic(exercise.id)]
    assert publisher.types() == ["participantAdmitted", "participantStatusUpdated"]
    assert publisher.published[0][1].exercise_title == "Ransomware drill"


async def test_rejecting_a_waiting_participant_is_sticky(controller, exercise):
    joined = await controller.join_exercise(exercise.access_code, "Unwanted")

    rejected = await controller.update_participant_status(FACILITATOR, joined.participant_id, ParticipantStatus.LEFT)

    assert rejected.rejected
    assert await controller.restore_participant(joined.participant_id) is None


async def test_status_update_requires_owner(controller, exercise):
    joined = await controller.join_exercise(exercise.access_code, "Someone")

    with pytest.raises(NotAuthorized):
        await controller.update_participant_status(OTHER_FACILITATOR, joined.participant_id, ParticipantStatus.ACTIVE)


async def test_delete_participant_notifies_private_topic(controller, store, exercise, admit, publisher):
    player = await admit(exercise)
    publisher.clear()

    await controller.delete_participant(FACILITATOR, player.participant_id)

    with pytest.raises(NotFound):
        await store.get_participant(player.participant_id)
    assert [(topic, event.type) for topic, event in publisher.published] == [
        (participant_topic(player.participant_id), "participantRemoved"),
    ]


async def test_delete_all_participants(controller, store, exercise, admit):
    await admit(exercise, "One")
    await controller.join_exercise(exercise.access_code, "Two")

    removed = await controller.delete_all_participants(FACILITATOR, exercise.id)

    assert removed == 2
    assert await store.participants(exercise.id) == []


async def test_leaderboard_ranks_active_participants(controller, exercise, admit):
    strong = await admit(exercise, "Strong")
    weak = await admit(exercise, "Weak")
    await controller.join_exercise(exercise.access_code, "Waiting")
    await controller.release_inject(FACILITATOR, exercise.id, 1)
    await controller.submit_response(me(strong), strong.participant_id, exercise.id, 1, 1, 0, "A")
    await controller.submit_response(me(weak), weak.participant_id, exercise.id, 1, 1, 0, "B")

    board = await controller.leaderboard(FACILITATOR, exercise.id)

    assert [entry.name for entry in board.participants] == ["Strong", "Weak"]
    assert board.participants[0].inject_scores[1] == 10
    assert board.participant_count == 2
    assert board.average_score == 5.0


async def test_participant_view_follows_cursor(controller, exercise, admit):
    player = await admit(exercise)
    await controller.release_inject(FACILITATOR, exercise.id, 1)
    await controller.release_inject(FACILITATOR, exercise.id, 2)

    view = await controller.participant_view(me(player), player.participant_id)

    assert view.current_inject.inject_number == 2
    assert [inj.inject_number for inj in view.active_injects] == [1, 2]
    assert view.responses_open and not view.phase_progression_locked
    assert len(view.phases) == 2


# ---------------------------------------------------------------------------
# Authoring
# ---------------------------------------------------------------------------


async def test_create_and_list_exercises(controller, exercise):
    second = await controller.create_exercise(FACILITATOR, "Phishing drill")
    await controller.create_exercise(OTHER_FACILITATOR, "Not mine")

    listed = await controller.list_exercises(FACILITATOR)

    assert [item.id for item in listed] == [second.id, exercise.id]
    assert len(exercise.access_code) == 8 and exercise.access_code == exercise.access_code.upper()


async def test_add_and_update_inject(controller, exercise):
    added = await controller.add_inject(FACILITATOR, exercise.id, inject_draft("Inject 5"))
    updated = await controller.update_inject(FACILITATOR, exercise.id, 5, InjectPatch(title="Exfiltration"))

    assert added.inject_number == 5
    assert updated.title == "Exfiltration"
    assert updated.narrative == "Inject 5 narrative"


async def test_update_inject_does_not_touch_state_flags(controller, exercise):
    await controller.release_inject(FACILITATOR, exercise.id, 1)

    updated = await controller.update_inject(FACILITATOR, exercise.id, 1, InjectPatch(narrative="Rewritten"))

    assert updated.is_active and updated.responses_open


async def test_summary_round_trip(controller, exercise):
    summary = [SummaryPhase(phase_number=1, title="Detection", description="How fast did we notice?")]

    await controller.update_summary(FACILITATOR, exercise.id, summary)

    assert await controller.get_summary(FACILITATOR, exercise.id) == summary


async def test_delete_exercise_cascades(controller, store, exercise, admit):
    player = await admit(exercise)

    removed = await controller.delete_exercise(FACILITATOR, exercise.id)

    assert removed == 1
    with pytest.raises(NotFound):
        await store.get_exercise(exercise.id)
    with pytest.raises(NotFound):
        await store.get_participant(player.participant_id)


async def test_events_carry_increasing_sequence_numbers(controller, exercise, admit, publisher):
    player = await admit(exercise)
    await controller.release_inject(FACILITATOR, exercise.id, 1)
    await controller.submit_response(me(player), player.participant_id, exercise.id, 1, 1, 0, "A")
    await controller.toggle_responses(FACILITATOR, exercise.id, 1, False)

    sequences = [event.sequence for _, event in publisher.published]

    assert sequences == sorted(sequences)
    assert len(set(sequences)) == len(sequences)


async def test_empty_exercise_accepts_injects_later(controller):
    created = await controller.create_exercise(FACILITATOR, "Blank")

    inject = await controller.add_inject(FACILITATOR, created.id, InjectDraft(title="Only", narrative="..."))

    assert inject.inject_number == 1 and inject.phase_count == 0


class FailingPublisher:
    def publish(self, topic, event):
        raise RuntimeError("socket layer is down")


async def test_failed_broadcast_keeps_committed_transition(store, exercise):
    controller = ProgressionController(store, OwnershipAuthorizer(), FailingPublisher())

    inject = await controller.release_inject(FACILITATOR, exercise.id, 1)

    assert inject.is_active
    assert (await store.get_exercise(exercise.id)).inject(1).is_active
