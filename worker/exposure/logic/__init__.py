"""
Core exposure logic for the Exposure State Worker.

This package contains the classification engine, revocation detection,
the evaluation orchestrator and the expiry helpers.

Public API:
    - ``classify`` -- Applies classification rules to daily summaries.
    - ``DailySummaryClassifier`` -- Classifier bound to a fixed rule set.
    - ``is_revocation`` -- Diffs two score histories inside the window.
    - ``RevocationDetector`` -- Detector bound to a retention window.
    - ``ExposureEvaluator`` -- Runs one evaluation cycle for a device.
    - ``try_transition_badge`` -- Compare-and-set badge update.
    - ``ExposureExpiry`` -- Active/outdated checks and days until expiry.
"""

from worker.exposure.logic.classifier import DailySummaryClassifier, classify
from worker.exposure.logic.evaluator import (
    ExposureEvaluator,
    build_notification_event,
    days_since_epoch,
    evaluate,
    try_transition_badge,
)
from worker.exposure.logic.expiry import ExposureExpiry
from worker.exposure.logic.revocation import (
    RevocationDetector,
    daily_summaries_to_history,
    is_revocation,
)

__all__ = [
    "classify",
    "DailySummaryClassifier",
    "is_revocation",
    "daily_summaries_to_history",
    "RevocationDetector",
    "evaluate",
    "ExposureEvaluator",
    "try_transition_badge",
    "build_notification_event",
    "days_since_epoch",
    "ExposureExpiry",
]
