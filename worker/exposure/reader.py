"""
Daily Summary Reader: S3 I/O abstraction for the Exposure State Worker.

The proximity API collaborator exports the complete set of daily summaries
it currently holds for a device as one JSON document (``DailySummaryExport``)
in S3 (or MinIO in local dev). Each cycle reads the whole document; there is
no incremental protocol.

Object Layout:
    s3://{bucket}/daily-summaries/{device_id}.json

Error Mapping:
    - Missing object or transport failure -> ``DailySummariesUnavailableError``
      (retryable, the handler NACKs).
    - Undecodable JSON or schema violation -> ``DailySummariesCorruptError``
      (terminal, the handler ACKs) plus a ``CorruptDailySummaries`` metric.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from worker.exposure.models import DailySummary, DailySummaryExport

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SUMMARIES_PREFIX = "daily-summaries"

_MISSING_OBJECT_CODES = frozenset({"NoSuchKey", "404", "NotFound"})

# Type alias for a metric emission callback.
# Signature: emit_metric(metric_name: str, value: float, unit: str, dimensions: dict)
MetricEmitter = Callable[[str, float, str, dict[str, str]], None]


# ---------------------------------------------------------------------------
# Custom Exceptions
# ---------------------------------------------------------------------------


class DailySummariesUnavailableError(Exception):
    """Raised when the daily summaries cannot be fetched right now.

    The handler MUST NOT write any state and MUST return the message as a
    batch item failure so it is retried.
    """

    pass


class DailySummariesCorruptError(Exception):
    """Raised when the export exists but cannot be parsed.

    Retrying cannot fix the payload. The reader logs a critical error and
    emits a ``CorruptDailySummaries`` metric; the handler ACKs the message.
    """

    pass


def build_summaries_key(device_id: str) -> str:
    """Build the default S3 key of a device's daily summary export."""
    return f"{SUMMARIES_PREFIX}/{device_id}.json"


# ---------------------------------------------------------------------------
# DailySummaryReader Interface
# ---------------------------------------------------------------------------


class DailySummaryReader(ABC):
    """Abstract base class for reading a device's daily summaries."""

    @abstractmethod
    def load_daily_summaries(
        self,
        device_id: str,
        key: str | None = None,
    ) -> list[DailySummary]:
        """Fetch all daily summaries currently reported for ``device_id``.

        An empty list is a valid result (no exposure reported).

        Error Handling:
            - Missing object / transport failure -> DailySummariesUnavailableError
            - Malformed payload -> DailySummariesCorruptError
        """
        ...


# ---------------------------------------------------------------------------
# Concrete Implementation: S3DailySummaryReader
# ---------------------------------------------------------------------------


class S3DailySummaryReader(DailySummaryReader):
    """Reads daily summary exports from S3/MinIO with boto3.

    Parameters
    ----------
    bucket : str
        S3 bucket holding the exports.
    aws_region : str
        AWS region for the S3 client.
    endpoint_url : str or None
        Custom endpoint (MinIO / LocalStack) for local development.
    s3_client : Any or None
        Pre-built boto3 S3 client. Created lazily when omitted.
    metric_emitter : MetricEmitter or None
        Callback used to emit ``CorruptDailySummaries``. If None, the metric
        is only logged.
    """

    def __init__(
        self,
        bucket: str,
        aws_region: str = "us-east-1",
        endpoint_url: str | None = None,
        s3_client: Any | None = None,
        metric_emitter: MetricEmitter | None = None,
    ) -> None:
        self._bucket = bucket
        self._aws_region = aws_region
        self._endpoint_url = endpoint_url
        self._s3_client = s3_client
        self._metric_emitter = metric_emitter

    @property
    def s3_client(self) -> Any:
        """Lazy-initialize the S3 client."""
        if self._s3_client is None:
            kwargs: dict[str, Any] = {"region_name": self._aws_region}
            if self._endpoint_url:
                kwargs["endpoint_url"] = self._endpoint_url
            self._s3_client = boto3.client("s3", **kwargs)
        return self._s3_client

    def _emit_corrupt_summaries_metric(self, device_id: str) -> None:
        if self._metric_emitter:
            try:
                self._metric_emitter(
                    "CorruptDailySummaries",
                    1.0,
                    "Count",
                    {"Bucket": self._bucket},
                )
            except Exception as metric_exc:
                # Never let metric emission failure mask the actual error
                logger.warning(
                    "Failed to emit CorruptDailySummaries metric: %s",
                    str(metric_exc),
                )
        else:
            logger.warning(
                "No metric emitter configured; CorruptDailySummaries metric "
                "for device=%s would have been emitted here.",
                device_id,
            )

    def load_daily_summaries(
        self,
        device_id: str,
        key: str | None = None,
    ) -> list[DailySummary]:
        key = key or build_summaries_key(device_id)
        body = self._fetch_object(device_id, key)
        export = self._parse_export(device_id, key, body)

        logger.info(
            "Loaded %d daily summaries for device=%s from s3://%s/%s",
            len(export.daily_summaries),
            device_id,
            self._bucket,
            key,
        )
        return export.daily_summaries

    def _fetch_object(self, device_id: str, key: str) -> bytes:
        try:
            response = self.s3_client.get_object(Bucket=self._bucket, Key=key)
            return response["Body"].read()
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in _MISSING_OBJECT_CODES:
                logger.warning(
                    "Daily summaries not found for device=%s at s3://%s/%s",
                    device_id,
                    self._bucket,
                    key,
                )
                raise DailySummariesUnavailableError(
                    f"Daily summaries not found: s3://{self._bucket}/{key}"
                ) from exc
            logger.error(
                "S3 error reading daily summaries for device=%s (%s): %s",
                device_id,
                code,
                str(exc),
            )
            raise DailySummariesUnavailableError(
                f"S3 error ({code}) reading s3://{self._bucket}/{key}"
            ) from exc
        except BotoCoreError as exc:
            logger.error(
                "Transport error reading daily summaries for device=%s: %s",
                device_id,
                str(exc),
            )
            raise DailySummariesUnavailableError(
                f"Transport error reading s3://{self._bucket}/{key}: {exc}"
            ) from exc

    def _parse_export(
        self, device_id: str, key: str, body: bytes
    ) -> DailySummaryExport:
        try:
            payload = json.loads(body)
            export = DailySummaryExport.model_validate(payload)
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as exc:
            logger.critical(
                "Corrupt daily summaries for device=%s at s3://%s/%s: %s",
                device_id,
                self._bucket,
                key,
                str(exc),
            )
            self._emit_corrupt_summaries_metric(device_id)
            raise DailySummariesCorruptError(
                f"Corrupt daily summaries at s3://{self._bucket}/{key}: {exc}"
            ) from exc

        if export.device_id != device_id:
            logger.critical(
                "Daily summary export at s3://%s/%s belongs to device=%s, expected %s",
                self._bucket,
                key,
                export.device_id,
                device_id,
            )
            self._emit_corrupt_summaries_metric(device_id)
            raise DailySummariesCorruptError(
                f"Export at s3://{self._bucket}/{key} belongs to another device"
            )

        return export


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def create_daily_summary_reader(
    bucket: str,
    aws_region: str = "us-east-1",
    endpoint_url: str | None = None,
    metric_emitter: MetricEmitter | None = None,
) -> DailySummaryReader:
    """Create a DailySummaryReader with the given configuration.

    For local development with MinIO or LocalStack, pass the endpoint_url.
    For production (AWS), leave endpoint_url as None to use the default
    AWS credential chain.
    """
    return S3DailySummaryReader(
        bucket=bucket,
        aws_region=aws_region,
        endpoint_url=endpoint_url,
        metric_emitter=metric_emitter,
    )
