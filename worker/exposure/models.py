"""
Domain models for the Exposure State Worker.

Pydantic v2 models for the daily exposure summaries produced by the proximity
API, the health-authority classification rules, the persisted per-device
exposure state, and the SQS message schemas exchanged with the scheduler and
the notification service.

All JSON field names use ``snake_case``. Enum values are lowercase strings so
that persisted rows and queue payloads stay readable.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ReportType(str, Enum):
    """Verification category of the matched diagnosis key."""

    CONFIRMED_TEST = "confirmed_test"
    CONFIRMED_CLINICAL_DIAGNOSIS = "confirmed_clinical_diagnosis"
    SELF_REPORT = "self_report"
    RECURSIVE = "recursive"
    REVOKED = "revoked"
    UNKNOWN = "unknown"


class ExposureMetric(str, Enum):
    """Aggregate of a ``DailySummary`` that a classification rule can test.

    The four ``*_SCORE_SUM`` report-type metrics read the ``score_sum`` of that
    report type. The remaining three read the day's overall aggregate.
    """

    CONFIRMED_TEST_SCORE_SUM = "confirmed_test_score_sum"
    CLINICAL_DIAGNOSIS_SCORE_SUM = "clinical_diagnosis_score_sum"
    SELF_REPORT_SCORE_SUM = "self_report_score_sum"
    RECURSIVE_SCORE_SUM = "recursive_score_sum"
    SCORE_SUM = "score_sum"
    MAXIMUM_SCORE = "maximum_score"
    WEIGHTED_DURATION_SUM = "weighted_duration_sum"


class BadgeStatus(str, Enum):
    """State of a "new" badge shown next to an exposure detail."""

    NEW = "new"
    SEEN = "seen"
    DISMISSED = "dismissed"


class BadgeKind(str, Enum):
    """The two independently tracked badges."""

    CLASSIFICATION = "classification"
    CLASSIFICATION_DATE = "classification_date"


class NotificationKind(str, Enum):
    """User-facing notification emitted by an evaluation cycle."""

    CLASSIFICATION = "classification"
    REVOKED = "revoked"


class StateUpdateAction(str, Enum):
    """Determines the worker logic for processing a message."""

    EVALUATE = "evaluate"
    TRANSITION_BADGE = "transition_badge"


# ---------------------------------------------------------------------------
# Daily Summaries (input from the proximity API)
# ---------------------------------------------------------------------------


class ExposureSummaryData(BaseModel):
    """Aggregated scores for one day, overall or restricted to a report type."""

    model_config = {"populate_by_name": True}

    maximum_score: float = Field(default=0.0, ge=0.0)
    score_sum: float = Field(default=0.0, ge=0.0)
    weighted_duration_sum: float = Field(default=0.0, ge=0.0)


class DailySummary(BaseModel):
    """One calendar day of exposure data, broken down by report type.

    ``days_since_epoch`` identifies the UTC day. ``summary_data`` is the
    aggregate over all matches on that day; ``report_summaries`` holds the
    same triple restricted to each report type. Report types without
    matches may be omitted.
    """

    model_config = {"populate_by_name": True}

    days_since_epoch: int
    summary_data: ExposureSummaryData = Field(default_factory=ExposureSummaryData)
    report_summaries: dict[ReportType, ExposureSummaryData] = {}

    def summary_data_for_report_type(
        self, report_type: ReportType
    ) -> ExposureSummaryData:
        """Return the aggregate for ``report_type`` (zeros when absent)."""
        return self.report_summaries.get(report_type, ExposureSummaryData())


class DailySummaryExport(BaseModel):
    """The document the upstream collaborator writes for one device.

    Each day appears at most once; the score history is keyed by day.
    """

    model_config = {"populate_by_name": True}

    device_id: str
    generated_at: datetime | None = None
    daily_summaries: list[DailySummary] = []

    @model_validator(mode="after")
    def _require_unique_days(self) -> DailySummaryExport:
        seen: set[int] = set()
        for summary in self.daily_summaries:
            if summary.days_since_epoch in seen:
                raise ValueError(
                    f"day {summary.days_since_epoch} appears more than once"
                )
            seen.add(summary.days_since_epoch)
        return self


# ---------------------------------------------------------------------------
# Classification Rules (health-authority configuration)
# ---------------------------------------------------------------------------


class MatchCriterion(BaseModel):
    """A single ``(metric, cutoff)`` test of a classification rule."""

    model_config = {"populate_by_name": True}

    metric: ExposureMetric
    cutoff: float


class ClassificationThreshold(BaseModel):
    """One ranked classification rule.

    ``classification_index`` orders rules by severity: lower is more severe.
    Each cutoff enables one criterion; a cutoff of ``0`` disables it. A rule
    matches a day when any enabled criterion is met or exceeded.
    """

    model_config = {"populate_by_name": True}

    classification_index: int
    classification_name: str
    confirmed_test_per_day_sum: float = Field(default=0.0, ge=0.0)
    clinical_diagnosis_per_day_sum: float = Field(default=0.0, ge=0.0)
    self_report_per_day_sum: float = Field(default=0.0, ge=0.0)
    recursive_per_day_sum: float = Field(default=0.0, ge=0.0)
    per_day_sum: float = Field(default=0.0, ge=0.0)
    per_day_max: float = Field(default=0.0, ge=0.0)
    weighted_duration_sum: float = Field(default=0.0, ge=0.0)

    def criteria(self) -> list[MatchCriterion]:
        """Return the enabled criteria of this rule (non-zero cutoffs only)."""
        pairs = [
            (ExposureMetric.CONFIRMED_TEST_SCORE_SUM, self.confirmed_test_per_day_sum),
            (ExposureMetric.CLINICAL_DIAGNOSIS_SCORE_SUM, self.clinical_diagnosis_per_day_sum),
            (ExposureMetric.SELF_REPORT_SCORE_SUM, self.self_report_per_day_sum),
            (ExposureMetric.RECURSIVE_SCORE_SUM, self.recursive_per_day_sum),
            (ExposureMetric.SCORE_SUM, self.per_day_sum),
            (ExposureMetric.MAXIMUM_SCORE, self.per_day_max),
            (ExposureMetric.WEIGHTED_DURATION_SUM, self.weighted_duration_sum),
        ]
        return [
            MatchCriterion(metric=metric, cutoff=cutoff)
            for metric, cutoff in pairs
            if cutoff != 0
        ]


# ---------------------------------------------------------------------------
# Exposure State
# ---------------------------------------------------------------------------

NO_EXPOSURE_CLASSIFICATION_INDEX: int = 0
NO_EXPOSURE_CLASSIFICATION_NAME: str = "No Exposure"
NO_EXPOSURE_CLASSIFICATION_DATE: int = 0


class ExposureClassification(BaseModel):
    """The current belief about the device's exposure.

    ``classification_date`` is in days since epoch: the most recent day on
    which this classification occurred. Index ``0`` is the no-exposure
    sentinel.
    """

    model_config = {"populate_by_name": True}

    classification_index: int = NO_EXPOSURE_CLASSIFICATION_INDEX
    classification_name: str = NO_EXPOSURE_CLASSIFICATION_NAME
    classification_date: int = NO_EXPOSURE_CLASSIFICATION_DATE

    @classmethod
    def no_exposure(cls) -> ExposureClassification:
        return cls(
            classification_index=NO_EXPOSURE_CLASSIFICATION_INDEX,
            classification_name=NO_EXPOSURE_CLASSIFICATION_NAME,
            classification_date=NO_EXPOSURE_CLASSIFICATION_DATE,
        )

    @property
    def is_no_exposure(self) -> bool:
        return self.classification_index == NO_EXPOSURE_CLASSIFICATION_INDEX


class ExposureHistoryEntry(BaseModel):
    """Minimal per-day score kept for revocation detection."""

    model_config = {"populate_by_name": True}

    day: int
    score: float


class ExposureState(BaseModel):
    """Persisted per-device exposure state.

    Mirrors the ``exposure_state`` table. The evaluator receives this state
    and returns a new one; the repository writes it back as a unit.
    """

    model_config = {"populate_by_name": True}

    device_id: str

    classification: ExposureClassification = Field(
        default_factory=ExposureClassification.no_exposure
    )
    history: list[ExposureHistoryEntry] = []

    # Badges
    classification_badge: BadgeStatus = BadgeStatus.SEEN
    classification_date_badge: BadgeStatus = BadgeStatus.SEEN

    revoked: bool = False

    # Bookkeeping
    last_evaluated_at: datetime | None = None
    event_sequence: int = 0
    revision: int = 0


# ---------------------------------------------------------------------------
# Evaluation Output
# ---------------------------------------------------------------------------


class ExposureNotification(BaseModel):
    """Notification instruction produced by the evaluator.

    ``classification_index`` is set for ``CLASSIFICATION`` notifications and
    ``None`` for ``REVOKED``.
    """

    model_config = {"populate_by_name": True}

    kind: NotificationKind
    classification_index: int | None = None

    @classmethod
    def classification(cls, index: int) -> ExposureNotification:
        return cls(kind=NotificationKind.CLASSIFICATION, classification_index=index)

    @classmethod
    def revoked(cls) -> ExposureNotification:
        return cls(kind=NotificationKind.REVOKED)


class EvaluationResult(BaseModel):
    """Outcome of one evaluation cycle for a device."""

    model_config = {"populate_by_name": True}

    state: ExposureState
    notification: ExposureNotification | None = None


# ---------------------------------------------------------------------------
# Input: StateUpdateMessage (SQS message from the scheduler)
# ---------------------------------------------------------------------------


class BadgeTransitionRequest(BaseModel):
    """Badge change requested by a UI collaborator.

    The transition only applies if the badge still holds ``from_status``.
    """

    model_config = {"populate_by_name": True}

    badge: BadgeKind
    from_status: BadgeStatus
    to_status: BadgeStatus


class StateUpdateMessage(BaseModel):
    """SQS payload that triggers work for one device.

    ``summaries_key`` overrides the default S3 key of the device's daily
    summary export. ``badge_transition`` is required for the
    ``transition_badge`` action.
    """

    model_config = {"populate_by_name": True}

    device_id: str
    trace_id: str
    action: StateUpdateAction = StateUpdateAction.EVALUATE
    summaries_key: str | None = None
    badge_transition: BadgeTransitionRequest | None = None

    @model_validator(mode="after")
    def _require_badge_transition(self) -> StateUpdateMessage:
        if (
            self.action == StateUpdateAction.TRANSITION_BADGE
            and self.badge_transition is None
        ):
            raise ValueError("badge_transition is required for transition_badge")
        return self


# ---------------------------------------------------------------------------
# Output: NotificationEvent (worker -> Notification SQS Queue)
# ---------------------------------------------------------------------------


class NotificationEvent(BaseModel):
    """Notification event sent to the Notification Queue.

    The notification service maps ``kind`` (and, for classification
    notifications, ``classification_index``) to localized user-visible text.
    """

    model_config = {"populate_by_name": True}

    id: str  # "notif_..."
    device_id: str
    trace_id: str

    kind: NotificationKind
    classification_index: int | None = None
    classification_name: str = ""
    classification_date: int | None = None
    days_until_expiry: int = 0

    event_sequence: int
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
