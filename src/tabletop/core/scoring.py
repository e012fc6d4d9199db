"""Scoring engine mapping a phase definition and an answer to points."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Tuple

from .schemas import DEFAULT_TEXT_POINTS, Magnitude, Phase, QuestionType

# Checked top-down; the first threshold the summed points reach wins.
MULTIPLE_CHOICE_THRESHOLDS: Tuple[Tuple[int, Magnitude], ...] = (
    (9, Magnitude.MOST_EFFECTIVE),
    (7, Magnitude.EFFECTIVE),
    (5, Magnitude.NOT_EFFECTIVE),
    (2, Magnitude.SOMEWHAT_EFFECTIVE),
)


@dataclass(frozen=True, slots=True)
class ScoreResult:
    """Outcome of scoring one answer."""

    points: int
    magnitude: Magnitude


ZERO_SCORE = ScoreResult(points=0, magnitude=Magnitude.LEAST_EFFECTIVE)


def magnitude_for_total(total: int) -> Magnitude:
    """Return the aggregate magnitude for a summed multiple-choice score."""

    for threshold, magnitude in MULTIPLE_CHOICE_THRESHOLDS:
        if total >= threshold:
            return magnitude
    return Magnitude.LEAST_EFFECTIVE


def unique_ids(answer: Iterable[Any]) -> List[Any]:
    """Return answer ids without repeats, keeping first-seen order."""

    return list(dict.fromkeys(answer))


def _score_single(phase: Phase, answer: Any) -> ScoreResult:
    if not isinstance(answer, str):
        return ZERO_SCORE
    option = phase.option(answer)
    if option is None:
        return ZERO_SCORE
    return ScoreResult(points=option.points, magnitude=option.magnitude)


def _score_multiple(phase: Phase, answer: Any) -> ScoreResult:
    if not isinstance(answer, (list, tuple)):
        return ZERO_SCORE
    total = 0
    for option_id in unique_ids(item for item in answer if isinstance(item, str)):
        option = phase.option(option_id)
        if option is not None:
            total += option.points
    return ScoreResult(points=total, magnitude=magnitude_for_total(total))


def _score_text(phase: Phase, _answer: Any) -> ScoreResult:
    points = phase.max_points if phase.max_points is not None else DEFAULT_TEXT_POINTS
    return ScoreResult(points=points, magnitude=Magnitude.NOT_EFFECTIVE)


_SCORERS = {
    QuestionType.SINGLE: _score_single,
    QuestionType.MULTIPLE: _score_multiple,
    QuestionType.TEXT: _score_text,
}


def score(phase: Optional[Phase], answer: Any) -> ScoreResult:
    """Score ``answer`` against ``phase``.

    Never raises: a missing phase, an unknown option id or a malformed answer
    are all valid zero-value outcomes. Free text is not evaluated and always
    earns the phase's ``max_points`` (default 5) rated ``not_effective``,
    pending the facilitator's debrief.
    """

    if phase is None:
        return ZERO_SCORE
    return _SCORERS[phase.question_type](phase, answer)
