"""
Lambda handler for the Exposure State Worker.

Implements the ``handler(event, context)`` entrypoint for the SQS-triggered
Lambda function. Each message names one device; the worker reads the
device's current daily summaries, runs one evaluation cycle against the
persisted state, commits the new state and publishes the resulting
notification. Partial batch failure responses enable selective SQS retry.

Key Design Decisions:
    - **Partial Batch Failure**: Uses the ``batchItemFailures`` response format
      so that only failed messages are retried, not the entire batch.
    - **Terminal Error ACK**: Unparseable messages and
      ``DailySummariesCorruptError`` are ACKed because retrying cannot fix
      them.
    - **Retryable Error NACK**: ``DailySummariesUnavailableError``,
      ``StaleStateError`` and persistence failures are NACKed. Nothing is
      written when a cycle fails before its commit.
    - **Pending Notifications**: Each evaluation first re-publishes the
      device's notifications whose SQS publish failed after commit, so a
      NACKed publish failure is delivered on retry.
    - **TimeBudgetExceeded**: When the Lambda timeout is imminent, the current
      and all remaining messages in the batch are marked as failed for retry.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from worker.exposure.config import load_settings
from worker.exposure.logic.evaluator import ExposureEvaluator, try_transition_badge
from worker.exposure.models import (
    ExposureState,
    NotificationEvent,
    StateUpdateAction,
    StateUpdateMessage,
)
from worker.exposure.reader import (
    DailySummariesCorruptError,
    DailySummariesUnavailableError,
    DailySummaryReader,
    MetricEmitter,
)
from worker.exposure.repo import Repository, StaleStateError

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Metric Constants
# ---------------------------------------------------------------------------

METRIC_EXPOSURE_NOTIFICATION = "ExposureNotification"
METRIC_STALE_STATE = "StaleExposureState"


# ---------------------------------------------------------------------------
# SQS Batch Response Models
# ---------------------------------------------------------------------------


class SQSBatchItemFailure:
    """A single failed item in the SQS partial batch response."""

    __slots__ = ("item_identifier",)

    def __init__(self, item_identifier: str) -> None:
        self.item_identifier = item_identifier

    def to_dict(self) -> dict[str, str]:
        return {"itemIdentifier": self.item_identifier}


class SQSBatchResponse:
    """Partial batch failure response for SQS Lambda integration."""

    __slots__ = ("batch_item_failures",)

    def __init__(self) -> None:
        self.batch_item_failures: list[SQSBatchItemFailure] = []

    def add_failure(self, message_id: str) -> None:
        self.batch_item_failures.append(SQSBatchItemFailure(message_id))

    def to_dict(self) -> dict[str, list[dict[str, str]]]:
        return {
            "batchItemFailures": [
                f.to_dict() for f in self.batch_item_failures
            ]
        }


# ---------------------------------------------------------------------------
# Timeout Guard
# ---------------------------------------------------------------------------

# Threshold in milliseconds below which we consider timeout imminent.
_TIMEOUT_THRESHOLD_MS = 5000


class TimeBudgetExceededError(Exception):
    """Raised when the Lambda execution time budget is nearly exhausted."""

    pass


class TimeoutGuard:
    """Prevents the worker from being killed mid-batch by AWS Lambda.

    Raises ``TimeBudgetExceededError`` when less than 5 seconds remain, so
    the handler can still return a partial batch failure response.

    Parameters
    ----------
    context : Any
        AWS Lambda context object. Must expose ``get_remaining_time_in_millis()``.
    """

    def __init__(self, context: Any) -> None:
        self._context = context

    def check_remaining(self) -> None:
        """Raise TimeBudgetExceededError if < 5 seconds remain."""
        remaining = self._context.get_remaining_time_in_millis()
        if remaining < _TIMEOUT_THRESHOLD_MS:
            raise TimeBudgetExceededError(
                f"Lambda timeout imminent: {remaining}ms remaining "
                f"(threshold: {_TIMEOUT_THRESHOLD_MS}ms)"
            )


# ---------------------------------------------------------------------------
# Metric Emitter
# ---------------------------------------------------------------------------


def _default_metric_emitter(
    name: str, value: float, unit: str, dimensions: dict[str, str]
) -> None:
    """Default metric emitter that logs metrics when no CloudWatch emitter is configured."""
    logger.info(
        "Metric: %s=%.3f %s dimensions=%s",
        name,
        value,
        unit,
        dimensions,
    )


# ---------------------------------------------------------------------------
# Message Parsing
# ---------------------------------------------------------------------------


def _parse_sqs_records(
    event: dict[str, Any],
) -> list[tuple[str, StateUpdateMessage]]:
    """Parse SQS event records into (message_id, StateUpdateMessage) pairs.

    Records that cannot be parsed are logged and dropped, which ACKs them.
    """
    records = event.get("Records", [])
    if not records:
        logger.warning("SQS event contains no Records")
        return []

    parsed: list[tuple[str, StateUpdateMessage]] = []
    for record in records:
        message_id = record["messageId"]
        body_str = record["body"]
        try:
            body = json.loads(body_str)
            msg = StateUpdateMessage(**body)
            parsed.append((message_id, msg))
        except Exception:
            logger.exception(
                "Failed to parse SQS record messageId=%s body=%s",
                message_id,
                body_str[:500],  # Truncate for safety
            )
            # Parse failures are terminal: ACK by not adding to failures.
            continue

    return parsed


# ---------------------------------------------------------------------------
# StateUpdateWorker
# ---------------------------------------------------------------------------


class StateUpdateWorker:
    """Lambda handler for the Exposure State Worker.

    Parameters
    ----------
    repo : Repository
        Data access layer for exposure state and notifications.
    reader : DailySummaryReader
        Source of the device's current daily summaries.
    evaluator : ExposureEvaluator
        Core evaluation logic bound to the health-authority configuration.
    metric_emitter : callable or None
        Callback for emitting CloudWatch metrics. If None, metrics are
        logged but not sent to CloudWatch.
    """

    def __init__(
        self,
        repo: Repository,
        reader: DailySummaryReader,
        evaluator: ExposureEvaluator,
        metric_emitter: MetricEmitter | None = None,
    ) -> None:
        self._repo = repo
        self._reader = reader
        self._evaluator = evaluator
        self._metric_emitter = metric_emitter or _default_metric_emitter

    def handler(self, event: dict[str, Any], context: Any) -> dict[str, Any]:
        """Lambda handler entrypoint.

        Processing flow:
        1. Parse SQS batch (unparseable records are ACKed).
        2. For each message, in order:
           a. try: ``process_message``.
           b. catch TimeBudgetExceeded: fail this and all remaining messages.
           c. catch DailySummariesCorruptError: ACK (no retry).
           d. catch Exception: NACK for retry.
        3. Return ``SQSBatchResponse`` with partial failures.
        """
        response = SQSBatchResponse()
        timeout_guard = TimeoutGuard(context)

        parsed_messages = _parse_sqs_records(event)
        if not parsed_messages:
            return response.to_dict()

        timeout_hit = False

        for message_id, msg in parsed_messages:
            if timeout_hit:
                response.add_failure(message_id)
                continue

            try:
                self.process_message(msg, timeout_guard)

            except TimeBudgetExceededError:
                logger.warning(
                    "Timeout imminent while processing device=%s "
                    "messageId=%s. Marking remaining messages as failed.",
                    msg.device_id,
                    message_id,
                )
                timeout_hit = True
                response.add_failure(message_id)

            except DailySummariesCorruptError as exc:
                logger.critical(
                    "Daily summaries corrupt for device=%s messageId=%s: %s. "
                    "ACKing message to prevent infinite retry loop.",
                    msg.device_id,
                    message_id,
                    str(exc),
                )
                # Do NOT add to failures: ACK by omission

            except DailySummariesUnavailableError as exc:
                logger.warning(
                    "Daily summaries unavailable for device=%s messageId=%s: %s. "
                    "Message will be retried.",
                    msg.device_id,
                    message_id,
                    str(exc),
                )
                response.add_failure(message_id)

            except StaleStateError as exc:
                logger.warning(
                    "Stale exposure state for device=%s messageId=%s: %s. "
                    "Message will be retried.",
                    msg.device_id,
                    message_id,
                    str(exc),
                )
                self._emit(METRIC_STALE_STATE, {"Action": msg.action.value})
                response.add_failure(message_id)

            except Exception as exc:
                logger.exception(
                    "Error processing device=%s messageId=%s: %s. "
                    "Message will be retried.",
                    msg.device_id,
                    message_id,
                    str(exc),
                )
                response.add_failure(message_id)

        return response.to_dict()

    def process_message(
        self,
        msg: StateUpdateMessage,
        timeout_guard: TimeoutGuard,
    ) -> None:
        """Route a single message by its action.

        Raises
        ------
        TimeBudgetExceededError
            If the Lambda timeout is imminent before any write.
        DailySummariesUnavailableError, DailySummariesCorruptError
            Propagated from the reader.
        StaleStateError
            Propagated from the repository.
        """
        logger.info(
            "Processing device=%s trace_id=%s action=%s",
            msg.device_id,
            msg.trace_id,
            msg.action.value,
        )
        timeout_guard.check_remaining()

        if msg.action == StateUpdateAction.TRANSITION_BADGE:
            self._transition_badge(msg)
            return

        self._evaluate_device(msg, timeout_guard)

    def _evaluate_device(
        self,
        msg: StateUpdateMessage,
        timeout_guard: TimeoutGuard,
    ) -> None:
        # Step 0: Deliver notifications whose publish failed on an earlier try
        self._repo.republish_pending(msg.device_id)

        # Step 1: Read the complete set of current daily summaries
        summaries = self._reader.load_daily_summaries(
            device_id=msg.device_id,
            key=msg.summaries_key,
        )

        # Step 2: Fetch the persisted state (lazy init on first cycle)
        state = self._repo.fetch_state(msg.device_id)
        if state is None:
            logger.info(
                "No exposure state for device=%s. Starting from defaults.",
                msg.device_id,
            )
            state = ExposureState(device_id=msg.device_id)

        # Step 3: Evaluate
        today = self._evaluator.today()
        result = self._evaluator.evaluate(state, summaries, today=today)

        notification: NotificationEvent | None = None
        if result.notification is not None:
            notification = self._evaluator.notification_event(
                result, msg.trace_id, today=today
            )

        # Step 4: Commit state and notification in one transaction
        timeout_guard.check_remaining()
        committed = self._repo.commit_cycle(
            result=result,
            expected_revision=state.revision,
            notification=notification,
        )

        logger.info(
            "Committed cycle for device=%s: classification=%d day=%d revoked=%s "
            "notification=%s revision=%d",
            committed.device_id,
            committed.classification.classification_index,
            committed.classification.classification_date,
            committed.revoked,
            notification.kind.value if notification else None,
            committed.revision,
        )

        if notification is not None:
            self._emit(METRIC_EXPOSURE_NOTIFICATION, {"Kind": notification.kind.value})

    def _transition_badge(self, msg: StateUpdateMessage) -> None:
        request = msg.badge_transition
        if request is None:
            raise ValueError("transition_badge message without badge_transition")

        state = self._repo.fetch_state(msg.device_id)
        if state is None:
            logger.info(
                "No exposure state for device=%s. Ignoring badge transition.",
                msg.device_id,
            )
            return

        # Cheap precheck; the repository re-checks atomically
        _, applicable = try_transition_badge(
            state, request.badge, request.from_status, request.to_status
        )
        if not applicable:
            logger.info(
                "Badge %s of device=%s is not %s. Ignoring transition to %s.",
                request.badge.value,
                msg.device_id,
                request.from_status.value,
                request.to_status.value,
            )
            return

        self._repo.transition_badge(
            device_id=msg.device_id,
            badge=request.badge,
            from_status=request.from_status,
            to_status=request.to_status,
        )

    def _emit(self, name: str, dimensions: dict[str, str]) -> None:
        try:
            self._metric_emitter(name, 1.0, "Count", dimensions)
        except Exception:
            logger.warning("Failed to emit %s metric", name, exc_info=True)


# ---------------------------------------------------------------------------
# Module-level handler (Lambda entrypoint)
# ---------------------------------------------------------------------------

# Singleton worker instance, initialized on first cold start so clients
# persist across warm invocations.
_worker: StateUpdateWorker | None = None


def _create_worker() -> StateUpdateWorker:
    """Create and configure the StateUpdateWorker singleton."""
    from worker.exposure.reader import create_daily_summary_reader
    from worker.exposure.repo import PostgresRepository

    import boto3

    settings = load_settings()

    sqs_client = boto3.client("sqs", region_name=settings.aws_region)

    repo = PostgresRepository(
        conninfo=settings.database_url.get_secret_value(),
        sqs_client=sqs_client,
        queue_url=settings.queue_url,
    )

    metric_emitter = _default_metric_emitter

    reader = create_daily_summary_reader(
        bucket=settings.summaries_bucket,
        aws_region=settings.aws_region,
        metric_emitter=metric_emitter,
    )

    evaluator = ExposureEvaluator(
        thresholds=settings.classification_thresholds,
        days_since_exposure_threshold=settings.days_since_exposure_threshold,
    )

    return StateUpdateWorker(
        repo=repo,
        reader=reader,
        evaluator=evaluator,
        metric_emitter=metric_emitter,
    )


def handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """AWS Lambda handler entrypoint.

    Delegates to the ``StateUpdateWorker`` singleton.
    """
    global _worker
    if _worker is None:
        _worker = _create_worker()

    return _worker.handler(event, context)
