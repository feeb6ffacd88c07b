"""
Evaluation Orchestrator for the Exposure State Worker.

Combines the Classification Engine and the Revocation Detector with the
previously persisted ``ExposureState`` to decide, once per scheduling cycle,
the new classification, the new score history, the notification to show (if
any) and the badge transitions.

Decision Table (``new`` = classification of the current daily summaries,
``stored`` = persisted classification)::

    new index 0, revoked        -> REVOKED notification, sentinel stored,
                                   revoked flag set, both badges cleared
    new index 0, not revoked    -> sentinel stored silently (fade-out)
    new index != stored index   -> CLASSIFICATION notification,
                                   both badges NEW
    same index, new date        -> CLASSIFICATION notification,
                                   date badge NEW only
    same index and date         -> nothing

The score history is replaced on every cycle regardless of the branch.
Since classification always runs over the complete set of daily summaries,
a less severe day never downgrades a more severe one that is still present.

Key Responsibilities:
    - Orchestration: ``evaluate`` is pure; the input state is never mutated.
    - Event Sequence: incremented only when a notification is emitted.
    - Badge Transitions: compare-and-set updates requested by UI collaborators.
    - Notification Events: builds the queue payload for the notification service.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Callable, Iterable

from worker.exposure.logic.classifier import DailySummaryClassifier, classify
from worker.exposure.logic.expiry import ExposureExpiry
from worker.exposure.logic.revocation import (
    daily_summaries_to_history,
    effective_threshold,
    is_revocation,
)
from worker.exposure.models import (
    BadgeKind,
    BadgeStatus,
    ClassificationThreshold,
    DailySummary,
    EvaluationResult,
    ExposureClassification,
    ExposureNotification,
    ExposureState,
    NotificationEvent,
    NotificationKind,
)

logger = logging.getLogger(__name__)

_EPOCH = date(1970, 1, 1)


def days_since_epoch(moment: datetime) -> int:
    """Convert a timestamp to its UTC day index."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment.astimezone(timezone.utc).date() - _EPOCH).days


# ---------------------------------------------------------------------------
# Core Decision
# ---------------------------------------------------------------------------


def evaluate(
    state: ExposureState,
    summaries: Iterable[DailySummary],
    thresholds: Iterable[ClassificationThreshold],
    days_since_exposure_threshold: int,
    today: int,
    now: datetime | None = None,
) -> EvaluationResult:
    """Run one evaluation cycle for a device.

    Parameters
    ----------
    state : ExposureState
        State persisted by the previous cycle (or a fresh default state).
    summaries : iterable of DailySummary
        All daily summaries currently reported upstream. May be empty.
    thresholds : iterable of ClassificationThreshold
        Health-authority classification rules.
    days_since_exposure_threshold : int
        Retention window in days. ``0`` selects the 14-day default.
    today : int
        Current day in days since epoch.
    now : datetime or None
        Evaluation timestamp recorded as ``last_evaluated_at``.

    Returns
    -------
    EvaluationResult
        The new state and the notification to emit, if any.
    """
    summaries = list(summaries)
    threshold = effective_threshold(days_since_exposure_threshold)

    new_classification = classify(summaries, thresholds)
    new_history = daily_summaries_to_history(summaries)
    revoked = is_revocation(state.history, new_history, today, threshold)

    stored = state.classification
    new_state = state.model_copy(deep=True)
    new_state.history = new_history
    if now is not None:
        new_state.last_evaluated_at = now

    notification: ExposureNotification | None = None

    if new_classification.is_no_exposure:
        new_state.classification = ExposureClassification.no_exposure()
        if revoked:
            notification = ExposureNotification.revoked()
            new_state.revoked = True
            new_state.classification_badge = BadgeStatus.SEEN
            new_state.classification_date_badge = BadgeStatus.SEEN
            logger.info(
                "Exposure revoked for device=%s (was classification %d on day %d)",
                state.device_id,
                stored.classification_index,
                stored.classification_date,
            )
        else:
            new_state.revoked = False
            if not stored.is_no_exposure:
                logger.info(
                    "Exposure faded out for device=%s (was classification %d on day %d)",
                    state.device_id,
                    stored.classification_index,
                    stored.classification_date,
                )

    elif new_classification.classification_index != stored.classification_index:
        notification = ExposureNotification.classification(
            new_classification.classification_index
        )
        new_state.classification = new_classification
        new_state.classification_badge = BadgeStatus.NEW
        new_state.classification_date_badge = BadgeStatus.NEW
        new_state.revoked = False
        logger.info(
            "Classification changed for device=%s: %d -> %d (day %d)",
            state.device_id,
            stored.classification_index,
            new_classification.classification_index,
            new_classification.classification_date,
        )

    elif new_classification.classification_date != stored.classification_date:
        notification = ExposureNotification.classification(
            new_classification.classification_index
        )
        new_state.classification = new_classification
        # Index badge keeps any earlier dismissal
        new_state.classification_date_badge = BadgeStatus.NEW
        new_state.revoked = False
        logger.info(
            "Classification date changed for device=%s: index %d, day %d -> %d",
            state.device_id,
            new_classification.classification_index,
            stored.classification_date,
            new_classification.classification_date,
        )

    else:
        logger.debug(
            "Classification unchanged for device=%s (index %d, day %d)",
            state.device_id,
            stored.classification_index,
            stored.classification_date,
        )

    if notification is not None:
        new_state.event_sequence += 1

    return EvaluationResult(state=new_state, notification=notification)


# ---------------------------------------------------------------------------
# Badge Transitions
# ---------------------------------------------------------------------------


def try_transition_badge(
    state: ExposureState,
    badge: BadgeKind,
    from_status: BadgeStatus,
    to_status: BadgeStatus,
) -> tuple[ExposureState, bool]:
    """Move ``badge`` to ``to_status`` if it currently holds ``from_status``.

    Returns
    -------
    tuple[ExposureState, bool]
        The (possibly) updated copy of the state and whether the transition
        was applied.
    """
    field = (
        "classification_badge"
        if badge == BadgeKind.CLASSIFICATION
        else "classification_date_badge"
    )
    if getattr(state, field) != from_status:
        return state, False

    new_state = state.model_copy(deep=True)
    setattr(new_state, field, to_status)
    return new_state, True


# ---------------------------------------------------------------------------
# Notification Builder
# ---------------------------------------------------------------------------


def build_notification_event(
    result: EvaluationResult,
    trace_id: str,
    days_until_expiry: int,
    now: datetime,
) -> NotificationEvent:
    """Build the queue payload for the notification service.

    Raises
    ------
    ValueError
        If the result carries no notification.
    """
    notification = result.notification
    if notification is None:
        raise ValueError("EvaluationResult has no notification to publish")

    state = result.state
    if notification.kind == NotificationKind.REVOKED:
        classification_index = None
        classification_name = ""
        classification_date = None
    else:
        classification_index = notification.classification_index
        classification_name = state.classification.classification_name
        classification_date = state.classification.classification_date

    return NotificationEvent(
        id=f"notif_{uuid.uuid4()}",
        device_id=state.device_id,
        trace_id=trace_id,
        kind=notification.kind,
        classification_index=classification_index,
        classification_name=classification_name,
        classification_date=classification_date,
        days_until_expiry=days_until_expiry,
        event_sequence=state.event_sequence,
        created_at=now,
    )


# ---------------------------------------------------------------------------
# ExposureEvaluator
# ---------------------------------------------------------------------------


class ExposureEvaluator:
    """Evaluator bound to one health-authority configuration.

    Parameters
    ----------
    thresholds : list[ClassificationThreshold]
        Classification rules, validated at configuration load time.
    days_since_exposure_threshold : int
        Retention window in days. ``0`` selects the 14-day default.
    clock : callable or None
        Returns the current UTC time. Defaults to ``datetime.now(timezone.utc)``.
    """

    def __init__(
        self,
        thresholds: list[ClassificationThreshold],
        days_since_exposure_threshold: int = 0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._classifier = DailySummaryClassifier(thresholds)
        self._threshold = effective_threshold(days_since_exposure_threshold)
        self._expiry = ExposureExpiry(self._threshold)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def expiry(self) -> ExposureExpiry:
        return self._expiry

    def now(self) -> datetime:
        return self._clock()

    def today(self) -> int:
        return days_since_epoch(self._clock())

    def evaluate(
        self,
        state: ExposureState,
        summaries: Iterable[DailySummary],
        today: int | None = None,
    ) -> EvaluationResult:
        """Evaluate ``summaries`` against ``state`` as of ``today``."""
        now = self._clock()
        if today is None:
            today = days_since_epoch(now)
        return evaluate(
            state=state,
            summaries=summaries,
            thresholds=self._classifier.thresholds,
            days_since_exposure_threshold=self._threshold,
            today=today,
            now=now,
        )

    def notification_event(
        self,
        result: EvaluationResult,
        trace_id: str,
        today: int | None = None,
    ) -> NotificationEvent:
        """Build the ``NotificationEvent`` for a result that notifies."""
        now = self._clock()
        if today is None:
            today = days_since_epoch(now)
        days_until_expiry = self._expiry.days_until_exposure_expires(result.state, today)
        return build_notification_event(result, trace_id, days_until_expiry, now)
