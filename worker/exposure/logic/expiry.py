"""
Exposure expiry for the Exposure State Worker.

Answers questions about the persisted classification relative to the
retention window: is the exposure still active, has it become outdated, and
how many days remain until it expires. All arithmetic is in whole UTC days
(days since epoch).
"""

from __future__ import annotations

from worker.exposure.logic.revocation import effective_threshold
from worker.exposure.models import ExposureClassification, ExposureState


class ExposureExpiry:
    """Expiry checks against a retention window.

    Parameters
    ----------
    days_since_exposure_threshold : int
        Retention window in days. ``0`` selects the 14-day default.
    """

    def __init__(self, days_since_exposure_threshold: int = 0) -> None:
        self._threshold = effective_threshold(days_since_exposure_threshold)

    @property
    def threshold(self) -> int:
        return self._threshold

    @staticmethod
    def days_from_start_of_exposure(
        classification: ExposureClassification, today: int
    ) -> int:
        """Days between the classification date and ``today``.

        A classification dated in the future counts as one day old.
        """
        days = today - classification.classification_date
        if days < 0:
            return 1
        return days

    @staticmethod
    def is_exposure(state: ExposureState) -> bool:
        # A revoked exposure still counts so the UI can explain it
        return not state.classification.is_no_exposure or state.revoked

    def is_active(self, classification: ExposureClassification, today: int) -> bool:
        return self.days_from_start_of_exposure(classification, today) <= self._threshold

    def is_active_exposure_present(self, state: ExposureState, today: int) -> bool:
        return self.is_exposure(state) and self.is_active(state.classification, today)

    def is_outdated_exposure_present(self, state: ExposureState, today: int) -> bool:
        return self.is_exposure(state) and not self.is_active(state.classification, today)

    def days_until_exposure_expires(self, state: ExposureState, today: int) -> int:
        """Days left until an active exposure leaves the window.

        For example, with a 14-day window an exposure that happened 10 days
        ago expires in 5 days. Returns 0 for no exposure or an exposure that
        is no longer active.
        """
        if not self.is_active_exposure_present(state, today):
            return 0
        days_from_start = self.days_from_start_of_exposure(state.classification, today)
        return max(self._threshold - days_from_start + 1, 0)
