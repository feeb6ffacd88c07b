"""
Revocation Detection for the Exposure State Worker.

Every cycle the worker keeps a minimal per-day score history
(``ExposureHistoryEntry``). Comparing the previous history with the one
derived from the current daily summaries tells a revocation apart from an
exposure that simply aged out of the retention window.

Window Logic::

    threshold                                  today
      15|14 13 12 ... 02 01 00                   days since exposure
    |10|  |  |10| ...  |  |10|                   previous history
       |  |  | 5| ...  |  |10|  |               current history
    \\/      \\/               \\/
    fade-out  revocation      no revocation

An entry from the previous history counts only while ``today - day`` is at
most ``threshold``. Such an entry that is missing from the current history,
or present with a strictly lower score, is a revocation. Older entries are
expected to disappear (the upstream window moves by one day per cycle).
"""

from __future__ import annotations

import logging
from typing import Iterable

from worker.exposure.models import DailySummary, ExposureHistoryEntry

logger = logging.getLogger(__name__)

# Used when the health authority leaves the threshold unset (0).
DEFAULT_DAYS_SINCE_EXPOSURE_THRESHOLD: int = 14


def effective_threshold(days_since_exposure_threshold: int) -> int:
    """Replace an unset (``0``) threshold with the default window."""
    if days_since_exposure_threshold == 0:
        return DEFAULT_DAYS_SINCE_EXPOSURE_THRESHOLD
    return days_since_exposure_threshold


def daily_summaries_to_history(
    summaries: Iterable[DailySummary],
) -> list[ExposureHistoryEntry]:
    """Project daily summaries onto the per-day score kept for comparison.

    The persisted score of a day is its overall ``score_sum``. Entries are
    returned ordered by day.

    Raises
    ------
    ValueError
        If a day appears more than once.
    """
    entries: dict[int, ExposureHistoryEntry] = {}
    for summary in summaries:
        day = summary.days_since_epoch
        if day in entries:
            raise ValueError(f"Daily summaries contain day {day} more than once")
        entries[day] = ExposureHistoryEntry(
            day=day, score=summary.summary_data.score_sum
        )
    return [entries[day] for day in sorted(entries)]


class RevocationDetector:
    """Detects upstream revocations by diffing two score histories.

    Parameters
    ----------
    days_since_exposure_threshold : int
        Retention window in days as configured by the health authority.
        ``0`` selects ``DEFAULT_DAYS_SINCE_EXPOSURE_THRESHOLD``.
    """

    def __init__(
        self,
        days_since_exposure_threshold: int = DEFAULT_DAYS_SINCE_EXPOSURE_THRESHOLD,
    ) -> None:
        self._threshold = effective_threshold(days_since_exposure_threshold)

    @property
    def threshold(self) -> int:
        return self._threshold

    @staticmethod
    def project(summaries: Iterable[DailySummary]) -> list[ExposureHistoryEntry]:
        return daily_summaries_to_history(summaries)

    def is_revocation(
        self,
        previous: Iterable[ExposureHistoryEntry],
        current: Iterable[ExposureHistoryEntry],
        today: int,
    ) -> bool:
        return is_revocation(previous, current, today, self._threshold)


def is_revocation(
    previous: Iterable[ExposureHistoryEntry],
    current: Iterable[ExposureHistoryEntry],
    today: int,
    threshold: int,
) -> bool:
    """Heuristic to detect revocations based on changes in daily scores.

    Parameters
    ----------
    previous : iterable of ExposureHistoryEntry
        History persisted by the previous cycle.
    current : iterable of ExposureHistoryEntry
        History derived from this cycle's daily summaries.
    today : int
        Current day in days since epoch.
    threshold : int
        Days since exposure after which an entry may disappear silently.

    Returns
    -------
    bool
        True if an in-window entry of ``previous`` is missing from
        ``current`` or has a strictly lower score there.
    """
    previous = list(previous)
    current_scores = {entry.day: entry.score for entry in current}

    logger.debug(
        "Checking for revocation: previous=%s current=%s today=%d threshold=%d",
        [(e.day, e.score) for e in previous],
        sorted(current_scores.items()),
        today,
        threshold,
    )

    for entry in previous:
        days_since_exposure = today - entry.day
        if days_since_exposure > threshold:
            # Aged out of the retention window: natural fade-out
            continue

        current_score = current_scores.get(entry.day)
        if current_score is None or current_score < entry.score:
            logger.debug(
                "Revocation detected on day %d (previous=%s, current=%s)",
                entry.day,
                entry.score,
                current_score,
            )
            return True

    logger.debug("No revocation detected")
    return False
