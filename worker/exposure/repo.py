"""
Repository: Atomic persistence layer for the Exposure State Worker.

Uses ``psycopg`` (v3) for PostgreSQL access with explicit transaction
handling, and ``boto3`` for publishing notification events to SQS.

Key Design Decisions:
    - **Optimistic Concurrency**: Every ``exposure_state`` row carries a
      ``revision``. ``commit_cycle`` writes conditionally on the revision the
      cycle started from; when another writer got there first no row is
      returned and ``StaleStateError`` rolls the whole transaction back.
    - **Single Transaction**: The state row (classification, history, badges,
      revoked flag) and the notification row are written together. A failure
      at any step leaves the previous cycle's state intact.
    - **Publish After Commit**: Notification events go to SQS only after the
      transaction commits, so a rolled back cycle never notifies.
    - **Pending Notifications**: A notification row stays pending
      (``published_at IS NULL``) until its SQS publish succeeds. The next
      cycle of the device re-publishes pending rows before evaluating, so a
      failed publish is retried even though the state already committed.
    - **Badge Transitions**: Compare-and-set ``UPDATE`` guarded by the
      badge's current status.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone

import psycopg
from psycopg.rows import dict_row

from worker.exposure.models import (
    BadgeKind,
    BadgeStatus,
    EvaluationResult,
    ExposureClassification,
    ExposureHistoryEntry,
    ExposureState,
    NotificationEvent,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logger = logging.getLogger(__name__)


class StaleStateError(Exception):
    """Raised when the stored revision no longer matches the cycle's input.

    Another cycle for the same device committed first. Nothing was written;
    the message must be retried so the evaluation runs on the newer state.
    """

    pass


# ---------------------------------------------------------------------------
# Repository Interface
# ---------------------------------------------------------------------------


class Repository(ABC):
    """Abstract base for Exposure State Worker data access."""

    @abstractmethod
    def fetch_state(self, device_id: str) -> ExposureState | None:
        """Fetch the persisted exposure state of a device.

        Returns
        -------
        ExposureState or None
            ``None`` if the device has never been evaluated.
        """
        ...

    @abstractmethod
    def commit_cycle(
        self,
        result: EvaluationResult,
        expected_revision: int,
        notification: NotificationEvent | None = None,
    ) -> ExposureState:
        """Atomically persist one evaluation cycle.

        Executes a single transaction:
        1. UPSERT ``exposure_state`` (conditional on ``revision``).
        2. INSERT INTO ``exposure_notifications`` if the cycle notifies.
        3. After commit, publish the ``NotificationEvent`` to SQS.

        Returns
        -------
        ExposureState
            The persisted state with its new ``revision``.

        Raises
        ------
        StaleStateError
            If the stored revision differs from ``expected_revision``.
        """
        ...

    @abstractmethod
    def republish_pending(self, device_id: str) -> int:
        """Publish notifications of a device whose earlier publish failed.

        Returns
        -------
        int
            Number of notifications published.
        """
        ...

    @abstractmethod
    def transition_badge(
        self,
        device_id: str,
        badge: BadgeKind,
        from_status: BadgeStatus,
        to_status: BadgeStatus,
    ) -> bool:
        """Move a badge from ``from_status`` to ``to_status``.

        Returns
        -------
        bool
            True if the badge held ``from_status`` and was updated.
        """
        ...


# ---------------------------------------------------------------------------
# SQL Constants
# ---------------------------------------------------------------------------

_FETCH_STATE_SQL = """\
SELECT
    device_id,
    classification_index,
    classification_name,
    classification_date,
    history,
    classification_badge,
    classification_date_badge,
    revoked,
    last_evaluated_at,
    event_sequence,
    revision
FROM exposure_state
WHERE device_id = %s
"""

# Optimistic concurrency:
# The UPSERT inserts the first row of a device (expected revision 0) or
# updates an existing row only while its revision is still the one the
# cycle read. RETURNING revision tells us whether the write happened.
_UPSERT_STATE_SQL = """\
INSERT INTO exposure_state (
    device_id,
    classification_index,
    classification_name,
    classification_date,
    history,
    classification_badge,
    classification_date_badge,
    revoked,
    last_evaluated_at,
    event_sequence,
    revision
) VALUES (
    %(device_id)s,
    %(classification_index)s,
    %(classification_name)s,
    %(classification_date)s,
    %(history)s,
    %(classification_badge)s,
    %(classification_date_badge)s,
    %(revoked)s,
    %(last_evaluated_at)s,
    %(event_sequence)s,
    %(new_revision)s
)
ON CONFLICT (device_id) DO UPDATE SET
    classification_index = EXCLUDED.classification_index,
    classification_name = EXCLUDED.classification_name,
    classification_date = EXCLUDED.classification_date,
    history = EXCLUDED.history,
    classification_badge = EXCLUDED.classification_badge,
    classification_date_badge = EXCLUDED.classification_date_badge,
    revoked = EXCLUDED.revoked,
    last_evaluated_at = EXCLUDED.last_evaluated_at,
    event_sequence = EXCLUDED.event_sequence,
    revision = EXCLUDED.revision
WHERE exposure_state.revision = %(expected_revision)s
RETURNING revision
"""

_INSERT_NOTIFICATION_SQL = """\
INSERT INTO exposure_notifications (
    id,
    device_id,
    trace_id,
    kind,
    classification_index,
    classification_date,
    event_sequence,
    payload,
    created_at
) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
"""

# published_at stays NULL until the SQS publish succeeds
_FETCH_PENDING_NOTIFICATIONS_SQL = """\
SELECT payload
FROM exposure_notifications
WHERE device_id = %s
  AND published_at IS NULL
ORDER BY event_sequence
"""

_MARK_PUBLISHED_SQL = """\
UPDATE exposure_notifications
SET published_at = %s
WHERE id = %s
"""

_TRANSITION_CLASSIFICATION_BADGE_SQL = """\
UPDATE exposure_state
SET classification_badge = %s,
    revision = revision + 1
WHERE device_id = %s
  AND classification_badge = %s
RETURNING revision
"""

_TRANSITION_CLASSIFICATION_DATE_BADGE_SQL = """\
UPDATE exposure_state
SET classification_date_badge = %s,
    revision = revision + 1
WHERE device_id = %s
  AND classification_date_badge = %s
RETURNING revision
"""

_TRANSITION_BADGE_SQL: dict[BadgeKind, str] = {
    BadgeKind.CLASSIFICATION: _TRANSITION_CLASSIFICATION_BADGE_SQL,
    BadgeKind.CLASSIFICATION_DATE: _TRANSITION_CLASSIFICATION_DATE_BADGE_SQL,
}


# ---------------------------------------------------------------------------
# Row -> Model Mapping Helpers
# ---------------------------------------------------------------------------


def _row_to_exposure_state(row: dict) -> ExposureState:
    """Convert a database row (dict) to an ExposureState model.

    The classification is stored as three flat columns; ``history`` is a
    JSONB array of ``{"day": ..., "score": ...}`` objects.
    """
    history_raw = row.get("history") or []
    if isinstance(history_raw, str):
        history_raw = json.loads(history_raw)

    return ExposureState(
        device_id=row["device_id"],
        classification=ExposureClassification(
            classification_index=row["classification_index"],
            classification_name=row["classification_name"],
            classification_date=row["classification_date"],
        ),
        history=[ExposureHistoryEntry(**entry) for entry in history_raw],
        classification_badge=BadgeStatus(row["classification_badge"]),
        classification_date_badge=BadgeStatus(row["classification_date_badge"]),
        revoked=row.get("revoked", False),
        last_evaluated_at=row.get("last_evaluated_at"),
        event_sequence=row.get("event_sequence", 0),
        revision=row.get("revision", 0),
    )


def _row_to_notification_event(row: dict) -> NotificationEvent:
    """Rebuild a NotificationEvent from its stored JSONB payload."""
    payload = row["payload"]
    if isinstance(payload, str):
        return NotificationEvent.model_validate_json(payload)
    return NotificationEvent.model_validate(payload)


def _state_to_params(state: ExposureState, expected_revision: int) -> dict:
    """Convert an ExposureState to a parameter dict for SQL execution."""
    history_json = json.dumps(
        [entry.model_dump(mode="json") for entry in state.history]
    )

    return {
        "device_id": state.device_id,
        "classification_index": state.classification.classification_index,
        "classification_name": state.classification.classification_name,
        "classification_date": state.classification.classification_date,
        "history": history_json,
        "classification_badge": state.classification_badge.value,
        "classification_date_badge": state.classification_date_badge.value,
        "revoked": state.revoked,
        "last_evaluated_at": state.last_evaluated_at,
        "event_sequence": state.event_sequence,
        "expected_revision": expected_revision,
        "new_revision": expected_revision + 1,
    }


# ---------------------------------------------------------------------------
# Concrete Implementation: PostgresRepository
# ---------------------------------------------------------------------------


class PostgresRepository(Repository):
    """PostgreSQL-backed Repository using psycopg v3.

    Parameters
    ----------
    conninfo : str
        PostgreSQL connection string (DSN).
    sqs_client : boto3 SQS client
        Pre-configured boto3 SQS client for publishing notifications.
    queue_url : str
        SQS queue URL of the notification queue.
    """

    def __init__(
        self,
        conninfo: str,
        sqs_client: object,
        queue_url: str,
    ) -> None:
        self._conninfo = conninfo
        self._sqs_client = sqs_client
        self._queue_url = queue_url

    def _connect(self) -> psycopg.Connection:
        """Create a new database connection.

        Uses ``row_factory=dict_row`` for dict-based row access and manages
        transactions explicitly.
        """
        return psycopg.connect(
            self._conninfo,
            row_factory=dict_row,
            autocommit=False,
        )

    def fetch_state(self, device_id: str) -> ExposureState | None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(_FETCH_STATE_SQL, (device_id,))
                row = cur.fetchone()

        if row is None:
            return None
        return _row_to_exposure_state(row)

    def commit_cycle(
        self,
        result: EvaluationResult,
        expected_revision: int,
        notification: NotificationEvent | None = None,
    ) -> ExposureState:
        """Atomically commit one evaluation cycle.

        The SQS publish happens AFTER the DB commit. If it fails, the
        notification row stays pending in ``exposure_notifications`` and the
        error is raised; ``republish_pending`` sends it on the retry.
        """
        state = result.state
        params = _state_to_params(state, expected_revision)

        with self._connect() as conn:
            with conn.transaction():
                cur = conn.cursor()
                try:
                    cur.execute(_UPSERT_STATE_SQL, params)
                    returned = cur.fetchall()
                    if not returned:
                        logger.warning(
                            "Stale state for device=%s (expected revision %d)",
                            state.device_id,
                            expected_revision,
                        )
                        raise StaleStateError(
                            f"Exposure state of device {state.device_id} changed "
                            f"since revision {expected_revision}"
                        )
                    new_revision = returned[0]["revision"]

                    if notification is not None:
                        cur.execute(
                            _INSERT_NOTIFICATION_SQL,
                            (
                                notification.id,
                                notification.device_id,
                                notification.trace_id,
                                notification.kind.value,
                                notification.classification_index,
                                notification.classification_date,
                                notification.event_sequence,
                                notification.model_dump_json(),
                                notification.created_at,
                            ),
                        )
                finally:
                    cur.close()

        logger.debug(
            "Committed state for device=%s at revision %d",
            state.device_id,
            new_revision,
        )

        if notification is not None:
            self._publish(notification)
            self._mark_published(notification.id)

        return state.model_copy(update={"revision": new_revision})

    def republish_pending(self, device_id: str) -> int:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(_FETCH_PENDING_NOTIFICATIONS_SQL, (device_id,))
                rows = cur.fetchall()

        for row in rows:
            notification = _row_to_notification_event(row)
            self._publish(notification)
            self._mark_published(notification.id)

        if rows:
            logger.info(
                "Re-published %d pending notification(s) for device=%s",
                len(rows),
                device_id,
            )
        return len(rows)

    def _mark_published(self, notification_id: str) -> None:
        with self._connect() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        _MARK_PUBLISHED_SQL,
                        (datetime.now(timezone.utc), notification_id),
                    )

    def _publish(self, notification: NotificationEvent) -> None:
        try:
            send_kwargs: dict = {
                "QueueUrl": self._queue_url,
                "MessageBody": notification.model_dump_json(),
            }
            if _is_fifo_queue(self._queue_url):
                send_kwargs["MessageGroupId"] = notification.device_id
                send_kwargs["MessageDeduplicationId"] = notification.id
            self._sqs_client.send_message(**send_kwargs)
            logger.info(
                "Published %s notification %s to SQS for device=%s",
                notification.kind.value,
                notification.id,
                notification.device_id,
            )
        except Exception:
            logger.exception(
                "Failed to publish notification %s to SQS for device=%s. "
                "The notification row stays pending for re-publish.",
                notification.id,
                notification.device_id,
            )
            raise

    def transition_badge(
        self,
        device_id: str,
        badge: BadgeKind,
        from_status: BadgeStatus,
        to_status: BadgeStatus,
    ) -> bool:
        sql = _TRANSITION_BADGE_SQL[badge]
        with self._connect() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(sql, (to_status.value, device_id, from_status.value))
                    returned = cur.fetchall()

        applied = bool(returned)
        logger.info(
            "Badge transition %s %s -> %s for device=%s: %s",
            badge.value,
            from_status.value,
            to_status.value,
            device_id,
            "applied" if applied else "skipped",
        )
        return applied


def _is_fifo_queue(queue_url: str) -> bool:
    """Check if a queue URL indicates a FIFO queue."""
    return queue_url.endswith(".fifo")
