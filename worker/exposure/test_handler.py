"""
Tests for the Exposure State Worker Lambda Handler.

Validates:
1. SQS batch parsing (parse errors are ACKed).
2. Happy path: read summaries -> fetch state -> evaluate -> commit.
3. Lazy initialization of state on a device's first cycle.
4. DailySummariesCorruptError: ACKed.
5. DailySummariesUnavailableError / StaleStateError / generic errors: NACKed,
   with no commit when the failure happens before it.
6. TimeBudgetExceededError: current + remaining messages marked as failed.
7. Badge transition routing.
8. Partial batch failure response format and TimeoutGuard threshold.
9. Pending notifications are re-published before the next evaluation.

Uses ``unittest.mock`` for Repository and DailySummaryReader; the evaluator
is a real ``ExposureEvaluator`` with a fixed clock.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from worker.exposure.handler import (
    METRIC_EXPOSURE_NOTIFICATION,
    METRIC_STALE_STATE,
    SQSBatchResponse,
    StateUpdateWorker,
    TimeBudgetExceededError,
    TimeoutGuard,
    _parse_sqs_records,
)
from worker.exposure.logic.evaluator import ExposureEvaluator, days_since_epoch
from worker.exposure.models import (
    BadgeKind,
    BadgeStatus,
    ClassificationThreshold,
    DailySummary,
    EvaluationResult,
    ExposureClassification,
    ExposureHistoryEntry,
    ExposureState,
    ExposureSummaryData,
    NotificationKind,
    ReportType,
    StateUpdateAction,
)
from worker.exposure.reader import (
    DailySummariesCorruptError,
    DailySummariesUnavailableError,
    DailySummaryReader,
)
from worker.exposure.repo import PostgresRepository, Repository, StaleStateError


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

NOW = datetime(2022, 1, 8, 9, 30, 0, tzinfo=timezone.utc)
TODAY = days_since_epoch(NOW)
DEVICE_ID = "dev_001"
TRACE_ID = "trace-001"

THRESHOLDS = [
    ClassificationThreshold(
        classification_index=1,
        classification_name="Confirmed Long",
        confirmed_test_per_day_sum=2700,
    ),
    ClassificationThreshold(
        classification_index=3,
        classification_name="Likely Long",
        clinical_diagnosis_per_day_sum=2700,
    ),
]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_message(
    device_id: str = DEVICE_ID,
    trace_id: str = TRACE_ID,
    action: str = "evaluate",
    **extra: Any,
) -> dict[str, Any]:
    """Create a raw StateUpdateMessage dict (as it would appear in SQS body)."""
    msg = {"device_id": device_id, "trace_id": trace_id, "action": action}
    msg.update(extra)
    return msg


def _make_sqs_event(
    messages: list[tuple[str, dict[str, Any] | str]],
) -> dict[str, Any]:
    """Create a raw SQS Lambda event from (messageId, body) tuples."""
    records = []
    for message_id, body in messages:
        records.append(
            {
                "messageId": message_id,
                "body": body if isinstance(body, str) else json.dumps(body),
                "receiptHandle": f"receipt-{message_id}",
                "attributes": {},
                "messageAttributes": {},
                "eventSource": "aws:sqs",
                "eventSourceARN": "arn:aws:sqs:us-east-1:123456789:exposure-state-queue",
                "awsRegion": "us-east-1",
            }
        )
    return {"Records": records}


def _make_context(remaining_ms: int = 60000) -> MagicMock:
    ctx = MagicMock()
    ctx.get_remaining_time_in_millis.return_value = remaining_ms
    return ctx


def _confirmed(day: int, score: float = 3000) -> DailySummary:
    data = ExposureSummaryData(
        maximum_score=min(2700.0, score), score_sum=score, weighted_duration_sum=score
    )
    return DailySummary(
        days_since_epoch=day,
        summary_data=data,
        report_summaries={ReportType.CONFIRMED_TEST: data},
    )


def _commit_side_effect(
    result: EvaluationResult,
    expected_revision: int,
    notification: Any = None,
) -> ExposureState:
    return result.state.model_copy(update={"revision": expected_revision + 1})


def _make_repo(state: ExposureState | None = None) -> MagicMock:
    repo = MagicMock(spec=Repository)
    repo.fetch_state.return_value = state
    repo.commit_cycle.side_effect = _commit_side_effect
    repo.republish_pending.return_value = 0
    return repo


def _make_worker(
    repo: MagicMock | None = None,
    reader: MagicMock | None = None,
    metric_emitter: Any | None = None,
) -> StateUpdateWorker:
    """Create a StateUpdateWorker with mock collaborators."""
    if reader is None:
        reader = MagicMock(spec=DailySummaryReader)
        reader.load_daily_summaries.return_value = []
    return StateUpdateWorker(
        repo=repo or _make_repo(),
        reader=reader,
        evaluator=ExposureEvaluator(THRESHOLDS, 14, clock=lambda: NOW),
        metric_emitter=metric_emitter,
    )


def _failed_ids(response: dict[str, Any]) -> list[str]:
    return [f["itemIdentifier"] for f in response["batchItemFailures"]]


# ===========================================================================
# 1. Response Models & TimeoutGuard
# ===========================================================================


class TestSQSBatchResponse:
    def test_empty_response(self) -> None:
        assert SQSBatchResponse().to_dict() == {"batchItemFailures": []}

    def test_failures(self) -> None:
        response = SQSBatchResponse()
        response.add_failure("msg-001")
        response.add_failure("msg-002")
        assert response.to_dict() == {
            "batchItemFailures": [
                {"itemIdentifier": "msg-001"},
                {"itemIdentifier": "msg-002"},
            ]
        }


class TestTimeoutGuard:
    def test_sufficient_time(self) -> None:
        TimeoutGuard(_make_context(60000)).check_remaining()

    def test_exactly_at_threshold(self) -> None:
        TimeoutGuard(_make_context(5000)).check_remaining()

    def test_below_threshold(self) -> None:
        with pytest.raises(TimeBudgetExceededError):
            TimeoutGuard(_make_context(4999)).check_remaining()


# ===========================================================================
# 2. Parsing
# ===========================================================================


class TestParseSQSRecords:
    def test_parse_single_record(self) -> None:
        parsed = _parse_sqs_records(_make_sqs_event([("msg-001", _make_message())]))
        assert len(parsed) == 1
        message_id, msg = parsed[0]
        assert message_id == "msg-001"
        assert msg.device_id == DEVICE_ID
        assert msg.action == StateUpdateAction.EVALUATE

    def test_no_records_key(self) -> None:
        assert _parse_sqs_records({}) == []

    def test_malformed_body_skipped(self) -> None:
        event = _make_sqs_event([("msg-001", "{not json"), ("msg-002", _make_message())])
        parsed = _parse_sqs_records(event)
        assert [message_id for message_id, _ in parsed] == ["msg-002"]

    def test_missing_required_field_skipped(self) -> None:
        event = _make_sqs_event([("msg-001", {"trace_id": TRACE_ID})])
        assert _parse_sqs_records(event) == []

    def test_badge_transition_without_payload_skipped(self) -> None:
        event = _make_sqs_event([("msg-001", _make_message(action="transition_badge"))])
        assert _parse_sqs_records(event) == []


# ===========================================================================
# 3. Evaluate Action
# ===========================================================================


class TestEvaluateAction:
    """Tests for the evaluate flow and its error policy."""

    def test_first_cycle_notifies_and_commits(self) -> None:
        repo = _make_repo(state=None)
        reader = MagicMock(spec=DailySummaryReader)
        reader.load_daily_summaries.return_value = [_confirmed(TODAY - 1)]
        emitter = MagicMock()
        worker = _make_worker(repo=repo, reader=reader, metric_emitter=emitter)

        response = worker.handler(
            _make_sqs_event([("msg-001", _make_message())]), _make_context()
        )

        assert response == {"batchItemFailures": []}
        reader.load_daily_summaries.assert_called_once_with(device_id=DEVICE_ID, key=None)
        repo.fetch_state.assert_called_once_with(DEVICE_ID)

        kwargs = repo.commit_cycle.call_args[1]
        assert kwargs["expected_revision"] == 0
        result = kwargs["result"]
        assert result.state.classification.classification_index == 1
        assert result.state.classification_badge == BadgeStatus.NEW

        event = kwargs["notification"]
        assert event.kind == NotificationKind.CLASSIFICATION
        assert event.trace_id == TRACE_ID
        assert event.days_until_expiry == 14
        assert event.event_sequence == 1

        emitter.assert_called_once_with(
            METRIC_EXPOSURE_NOTIFICATION, 1.0, "Count", {"Kind": "classification"}
        )

    def test_revocation_publishes_revoked_event(self) -> None:
        state = ExposureState(
            device_id=DEVICE_ID,
            classification=ExposureClassification(
                classification_index=1,
                classification_name="Confirmed Long",
                classification_date=TODAY,
            ),
            history=[ExposureHistoryEntry(day=TODAY, score=3000)],
            event_sequence=1,
            revision=5,
        )
        repo = _make_repo(state=state)
        worker = _make_worker(repo=repo)

        response = worker.handler(
            _make_sqs_event([("msg-001", _make_message())]), _make_context()
        )

        assert response == {"batchItemFailures": []}
        kwargs = repo.commit_cycle.call_args[1]
        assert kwargs["expected_revision"] == 5
        assert kwargs["result"].state.revoked is True
        assert kwargs["notification"].kind == NotificationKind.REVOKED
        assert kwargs["notification"].event_sequence == 2

    def test_unchanged_cycle_commits_without_notification(self) -> None:
        worker_repo = _make_repo(state=ExposureState(device_id=DEVICE_ID, revision=2))
        emitter = MagicMock()
        worker = _make_worker(repo=worker_repo, metric_emitter=emitter)

        worker.handler(_make_sqs_event([("msg-001", _make_message())]), _make_context())

        kwargs = worker_repo.commit_cycle.call_args[1]
        assert kwargs["notification"] is None
        emitter.assert_not_called()

    def test_summaries_key_is_forwarded(self) -> None:
        reader = MagicMock(spec=DailySummaryReader)
        reader.load_daily_summaries.return_value = []
        worker = _make_worker(reader=reader)

        worker.handler(
            _make_sqs_event(
                [("msg-001", _make_message(summaries_key="exports/x.json"))]
            ),
            _make_context(),
        )

        reader.load_daily_summaries.assert_called_once_with(
            device_id=DEVICE_ID, key="exports/x.json"
        )

    def test_corrupt_summaries_are_acked(self) -> None:
        repo = _make_repo()
        reader = MagicMock(spec=DailySummaryReader)
        reader.load_daily_summaries.side_effect = DailySummariesCorruptError("bad json")
        worker = _make_worker(repo=repo, reader=reader)

        response = worker.handler(
            _make_sqs_event([("msg-001", _make_message())]), _make_context()
        )

        assert response == {"batchItemFailures": []}
        repo.commit_cycle.assert_not_called()

    def test_unavailable_summaries_are_nacked(self) -> None:
        repo = _make_repo()
        reader = MagicMock(spec=DailySummaryReader)
        reader.load_daily_summaries.side_effect = DailySummariesUnavailableError("404")
        worker = _make_worker(repo=repo, reader=reader)

        response = worker.handler(
            _make_sqs_event([("msg-001", _make_message())]), _make_context()
        )

        assert _failed_ids(response) == ["msg-001"]
        repo.fetch_state.assert_not_called()
        repo.commit_cycle.assert_not_called()

    def test_stale_state_is_nacked(self) -> None:
        repo = _make_repo()
        repo.commit_cycle.side_effect = StaleStateError("revision moved")
        emitter = MagicMock()
        worker = _make_worker(repo=repo, metric_emitter=emitter)

        response = worker.handler(
            _make_sqs_event([("msg-001", _make_message())]), _make_context()
        )

        assert _failed_ids(response) == ["msg-001"]
        emitter.assert_called_once_with(
            METRIC_STALE_STATE, 1.0, "Count", {"Action": "evaluate"}
        )

    def test_persistence_error_is_nacked(self) -> None:
        repo = _make_repo()
        repo.fetch_state.side_effect = RuntimeError("db down")
        worker = _make_worker(repo=repo)

        response = worker.handler(
            _make_sqs_event([("msg-001", _make_message())]), _make_context()
        )

        assert _failed_ids(response) == ["msg-001"]

    def test_partial_batch_mixed_errors(self) -> None:
        reader = MagicMock(spec=DailySummaryReader)

        def load(device_id: str, key: str | None = None) -> list[DailySummary]:
            if device_id == "dev_corrupt":
                raise DailySummariesCorruptError("corrupt")
            if device_id == "dev_missing":
                raise DailySummariesUnavailableError("missing")
            return []

        reader.load_daily_summaries.side_effect = load
        worker = _make_worker(reader=reader)

        event = _make_sqs_event(
            [
                ("msg-001", _make_message(device_id="dev_ok")),
                ("msg-002", _make_message(device_id="dev_corrupt")),
                ("msg-003", _make_message(device_id="dev_missing")),
                ("msg-004", "garbage"),
            ]
        )
        response = worker.handler(event, _make_context())

        assert _failed_ids(response) == ["msg-003"]

    def test_timeout_marks_remaining_as_failed(self) -> None:
        repo = _make_repo()
        worker = _make_worker(repo=repo)

        context = MagicMock()
        # msg-001 passes both checks, msg-002 hits the guard
        context.get_remaining_time_in_millis.side_effect = [60000, 60000, 1000]

        event = _make_sqs_event(
            [
                ("msg-001", _make_message(device_id="dev_1")),
                ("msg-002", _make_message(device_id="dev_2")),
                ("msg-003", _make_message(device_id="dev_3")),
            ]
        )
        response = worker.handler(event, context)

        assert _failed_ids(response) == ["msg-002", "msg-003"]
        assert repo.commit_cycle.call_count == 1

    def test_empty_event(self) -> None:
        worker = _make_worker()
        assert worker.handler({"Records": []}, _make_context()) == {
            "batchItemFailures": []
        }


# ===========================================================================
# 4. Pending Notification Delivery
# ===========================================================================


def _make_table_backed_conn() -> tuple[MagicMock, dict[str, Any]]:
    """Wire a psycopg connection mock whose cursor answers from in-memory tables.

    Only the statements ``PostgresRepository`` issues are understood.
    """
    tables: dict[str, Any] = {"state": None, "notifications": {}}
    last_rows: list[list[dict[str, Any]]] = [[]]

    def execute(sql: str, params: Any = None) -> None:
        rows: list[dict[str, Any]] = []
        if "INSERT INTO exposure_state" in sql:
            tables["state"] = dict(params)
            rows = [{"revision": params["new_revision"]}]
        elif "INSERT INTO exposure_notifications" in sql:
            tables["notifications"][params[0]] = {
                "payload": params[7],
                "published_at": None,
            }
        elif "UPDATE exposure_notifications" in sql:
            tables["notifications"][params[1]]["published_at"] = params[0]
        elif "FROM exposure_notifications" in sql:
            rows = [
                {"payload": n["payload"]}
                for n in tables["notifications"].values()
                if n["published_at"] is None
            ]
        elif "FROM exposure_state" in sql and tables["state"] is not None:
            stored = tables["state"]
            rows = [{**stored, "revision": stored["new_revision"]}]
        last_rows[0] = rows

    cursor = MagicMock()
    cursor.__enter__ = MagicMock(return_value=cursor)
    cursor.__exit__ = MagicMock(return_value=False)
    cursor.execute.side_effect = execute
    cursor.fetchall.side_effect = lambda: last_rows[0]
    cursor.fetchone.side_effect = lambda: last_rows[0][0] if last_rows[0] else None

    conn = MagicMock()
    conn.__enter__ = MagicMock(return_value=conn)
    conn.__exit__ = MagicMock(return_value=False)
    conn.cursor.return_value = cursor

    tx = MagicMock()
    tx.__enter__ = MagicMock(return_value=tx)
    tx.__exit__ = MagicMock(return_value=False)
    conn.transaction.return_value = tx

    return conn, tables


class TestPendingNotifications:
    """A notification whose publish failed after commit is delivered on retry."""

    def test_republish_runs_before_reading_summaries(self) -> None:
        repo = _make_repo()
        repo.republish_pending.side_effect = RuntimeError("SQS unavailable")
        reader = MagicMock(spec=DailySummaryReader)
        worker = _make_worker(repo=repo, reader=reader)

        response = worker.handler(
            _make_sqs_event([("msg-001", _make_message())]), _make_context()
        )

        assert _failed_ids(response) == ["msg-001"]
        repo.republish_pending.assert_called_once_with(DEVICE_ID)
        reader.load_daily_summaries.assert_not_called()
        repo.commit_cycle.assert_not_called()

    def test_badge_transition_does_not_republish(self) -> None:
        repo = _make_repo(state=ExposureState(device_id=DEVICE_ID))
        worker = _make_worker(repo=repo)

        worker.handler(
            _make_sqs_event(
                [
                    (
                        "msg-001",
                        _make_message(
                            action="transition_badge",
                            badge_transition={
                                "badge": "classification",
                                "from_status": "new",
                                "to_status": "seen",
                            },
                        ),
                    )
                ]
            ),
            _make_context(),
        )

        repo.republish_pending.assert_not_called()

    @patch("worker.exposure.repo.psycopg.connect")
    def test_failed_publish_is_delivered_on_retry(self, mock_connect: MagicMock) -> None:
        conn, tables = _make_table_backed_conn()
        mock_connect.return_value = conn

        sqs = MagicMock()
        sqs.send_message.side_effect = [Exception("SQS unavailable"), None]
        repo = PostgresRepository(
            "postgresql://test@localhost/exposure", sqs, "http://localhost/queue"
        )
        reader = MagicMock(spec=DailySummaryReader)
        reader.load_daily_summaries.return_value = [_confirmed(TODAY - 1)]
        worker = _make_worker(repo=repo, reader=reader)
        event = _make_sqs_event([("msg-001", _make_message())])

        first = worker.handler(event, _make_context())

        assert _failed_ids(first) == ["msg-001"]
        assert tables["state"]["classification_index"] == 1
        (pending,) = tables["notifications"].values()
        assert pending["published_at"] is None

        retry = worker.handler(event, _make_context())

        assert retry == {"batchItemFailures": []}
        assert sqs.send_message.call_count == 2
        bodies = [
            json.loads(c[1]["MessageBody"]) for c in sqs.send_message.call_args_list
        ]
        assert bodies[0]["id"] == bodies[1]["id"]
        assert bodies[1]["kind"] == "classification"
        assert pending["published_at"] is not None


# ===========================================================================
# 5. Badge Transition Action
# ===========================================================================


class TestTransitionBadgeAction:
    """Tests for the transition_badge flow."""

    @staticmethod
    def _message(from_status: str = "new", to_status: str = "seen") -> dict[str, Any]:
        return _make_message(
            action="transition_badge",
            badge_transition={
                "badge": "classification",
                "from_status": from_status,
                "to_status": to_status,
            },
        )

    def test_applies_transition(self) -> None:
        repo = _make_repo(
            state=ExposureState(device_id=DEVICE_ID, classification_badge=BadgeStatus.NEW)
        )
        reader = MagicMock(spec=DailySummaryReader)
        worker = _make_worker(repo=repo, reader=reader)

        response = worker.handler(
            _make_sqs_event([("msg-001", self._message())]), _make_context()
        )

        assert response == {"batchItemFailures": []}
        repo.transition_badge.assert_called_once_with(
            device_id=DEVICE_ID,
            badge=BadgeKind.CLASSIFICATION,
            from_status=BadgeStatus.NEW,
            to_status=BadgeStatus.SEEN,
        )
        reader.load_daily_summaries.assert_not_called()
        repo.commit_cycle.assert_not_called()

    def test_skips_when_status_differs(self) -> None:
        repo = _make_repo(
            state=ExposureState(
                device_id=DEVICE_ID, classification_badge=BadgeStatus.DISMISSED
            )
        )
        worker = _make_worker(repo=repo)

        worker.handler(_make_sqs_event([("msg-001", self._message())]), _make_context())

        repo.transition_badge.assert_not_called()

    def test_skips_unknown_device(self) -> None:
        repo = _make_repo(state=None)
        worker = _make_worker(repo=repo)

        response = worker.handler(
            _make_sqs_event([("msg-001", self._message())]), _make_context()
        )

        assert response == {"batchItemFailures": []}
        repo.transition_badge.assert_not_called()
