"""
Classification Engine for the Exposure State Worker.

Applies the health-authority classification rules to a set of daily
summaries and decides which classification and which date matter most.

Matching:
    A rule matches a day if any of its enabled criteria is met or exceeded
    (``value >= cutoff``). A cutoff of ``0`` disables a criterion.

Selection:
    Among all matches the rule with the LOWEST ``classification_index`` wins.
    Ties at that index resolve to the most recent day. No match at all
    yields the no-exposure sentinel.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable

from worker.exposure.models import (
    ClassificationThreshold,
    DailySummary,
    ExposureClassification,
    ExposureMetric,
    MatchCriterion,
    ReportType,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Metric Selectors
# ---------------------------------------------------------------------------

_METRIC_SELECTORS: dict[ExposureMetric, Callable[[DailySummary], float]] = {
    ExposureMetric.CONFIRMED_TEST_SCORE_SUM: lambda ds: ds.summary_data_for_report_type(
        ReportType.CONFIRMED_TEST
    ).score_sum,
    ExposureMetric.CLINICAL_DIAGNOSIS_SCORE_SUM: lambda ds: ds.summary_data_for_report_type(
        ReportType.CONFIRMED_CLINICAL_DIAGNOSIS
    ).score_sum,
    ExposureMetric.SELF_REPORT_SCORE_SUM: lambda ds: ds.summary_data_for_report_type(
        ReportType.SELF_REPORT
    ).score_sum,
    ExposureMetric.RECURSIVE_SCORE_SUM: lambda ds: ds.summary_data_for_report_type(
        ReportType.RECURSIVE
    ).score_sum,
    ExposureMetric.SCORE_SUM: lambda ds: ds.summary_data.score_sum,
    ExposureMetric.MAXIMUM_SCORE: lambda ds: ds.summary_data.maximum_score,
    ExposureMetric.WEIGHTED_DURATION_SUM: lambda ds: ds.summary_data.weighted_duration_sum,
}


def metric_value(summary: DailySummary, metric: ExposureMetric) -> float:
    """Read the aggregate ``metric`` refers to from a daily summary."""
    return _METRIC_SELECTORS[metric](summary)


# ---------------------------------------------------------------------------
# Rule Matching
# ---------------------------------------------------------------------------


def check_criterion(summary: DailySummary, criterion: MatchCriterion) -> bool:
    """Evaluate a single criterion against a day.

    Disabled criteria (cutoff ``0``) never match.
    """
    if criterion.cutoff == 0:
        return False
    return metric_value(summary, criterion.metric) >= criterion.cutoff


def threshold_applies(
    threshold: ClassificationThreshold, summary: DailySummary
) -> bool:
    """Return True if any enabled criterion of ``threshold`` matches the day."""
    return any(check_criterion(summary, c) for c in threshold.criteria())


def best_threshold_for_day(
    summary: DailySummary,
    thresholds: Iterable[ClassificationThreshold],
) -> ClassificationThreshold | None:
    """Return the most severe (lowest index) rule matching the day, if any."""
    best: ClassificationThreshold | None = None
    for threshold in thresholds:
        if not threshold_applies(threshold, summary):
            continue
        if best is None or threshold.classification_index < best.classification_index:
            best = threshold
    return best


# ---------------------------------------------------------------------------
# DailySummaryClassifier
# ---------------------------------------------------------------------------


class DailySummaryClassifier:
    """Classifies daily summaries with a fixed, ordered rule set.

    Parameters
    ----------
    thresholds : list[ClassificationThreshold]
        Health-authority rules. Assumed valid (unique indices, see
        ``worker.exposure.config.validate_classification_thresholds``).
    """

    def __init__(self, thresholds: list[ClassificationThreshold]) -> None:
        self._thresholds = list(thresholds)

    @property
    def thresholds(self) -> list[ClassificationThreshold]:
        return list(self._thresholds)

    def classify(self, summaries: Iterable[DailySummary]) -> ExposureClassification:
        return classify(summaries, self._thresholds)


def classify(
    summaries: Iterable[DailySummary],
    thresholds: Iterable[ClassificationThreshold],
) -> ExposureClassification:
    """Apply the classification rules to a set of daily summaries.

    Parameters
    ----------
    summaries : iterable of DailySummary
        The complete set of daily summaries currently reported upstream.
    thresholds : iterable of ClassificationThreshold
        Classification rules. Their order is irrelevant; only indices are
        compared.

    Returns
    -------
    ExposureClassification
        The most severe matching classification, dated to the most recent
        day it occurred on, or the no-exposure sentinel.
    """
    rules = list(thresholds)
    summaries = list(summaries)

    logger.debug(
        "Classifying %d daily summaries with %d classification thresholds",
        len(summaries),
        len(rules),
    )

    prioritized: ClassificationThreshold | None = None
    most_recent_day = 0

    for summary in summaries:
        best = best_threshold_for_day(summary, rules)
        if best is None:
            continue

        logger.debug(
            "Day %d matches classification %d (%s)",
            summary.days_since_epoch,
            best.classification_index,
            best.classification_name,
        )

        if (
            prioritized is None
            or best.classification_index < prioritized.classification_index
        ):
            # Strictly more severe: take both classification and date
            prioritized = best
            most_recent_day = summary.days_since_epoch
        elif best.classification_index == prioritized.classification_index:
            most_recent_day = max(most_recent_day, summary.days_since_epoch)

    if prioritized is None:
        return ExposureClassification.no_exposure()

    return ExposureClassification(
        classification_index=prioritized.classification_index,
        classification_name=prioritized.classification_name,
        classification_date=most_recent_day,
    )
