#!/usr/bin/env python3
"""
generate_sample_summaries.py
============================

Generates daily summary exports for local development and integration testing.

Two modes of operation:

1. **Random Mode** (--random):
   Generates a handful of random exposures within the retention window.
   Useful for smoke tests of the worker and the notification pipeline.

2. **Scenario Mode** (--scenario config.json):
   Generates an export with deterministic exposures, each placed a number of
   days before ``today``. Exposures that fall on the same day are aggregated
   the way the proximity API aggregates them (sums add up, maxima take the
   maximum). This is what integration scenarios such as "confirmed exposure
   is revoked" need.

S3 Key Convention (see worker/exposure/reader.py):
    s3://{bucket}/daily-summaries/{device_id}.json

Usage:
    # Scenario mode (writes to MinIO)
    python scripts/generate_sample_summaries.py \\
        --scenario scripts/scenarios/confirmed_long.json \\
        --output s3://exposure-daily-summaries \\
        --endpoint-url http://localhost:9000

    # Local filesystem output (for quick inspection)
    python scripts/generate_sample_summaries.py \\
        --random --device-id dev_local_1 --output /tmp/summaries
"""

from __future__ import annotations

import argparse
import json
import os
import random
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Ensure project root is on sys.path so we can import worker modules.
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from worker.exposure.logic.evaluator import days_since_epoch  # noqa: E402
from worker.exposure.models import (  # noqa: E402
    DailySummary,
    DailySummaryExport,
    ExposureSummaryData,
    ReportType,
)
from worker.exposure.reader import build_summaries_key  # noqa: E402

# A single exposure window never scores above this.
MAX_WINDOW_SCORE = 2700.0

RANDOM_REPORT_TYPES = [
    ReportType.CONFIRMED_TEST,
    ReportType.CONFIRMED_CLINICAL_DIAGNOSIS,
    ReportType.SELF_REPORT,
]


# ---------------------------------------------------------------------------
# Scenario configuration
# ---------------------------------------------------------------------------


class ExposureSpec:
    """One exposure in a scenario configuration.

    Attributes:
        days_ago: Days before ``today`` the exposure happened (>= 0)
        report_type: Verification category of the matched key
        score: Score added to ``score_sum`` and ``weighted_duration_sum``
    """

    def __init__(self, days_ago: int, report_type: ReportType, score: float) -> None:
        self.days_ago = days_ago
        self.report_type = report_type
        self.score = score

    def validate(self) -> list[str]:
        errors: list[str] = []
        if self.days_ago < 0:
            errors.append(f"days_ago must be >= 0, got {self.days_ago}")
        if self.score <= 0:
            errors.append(f"score must be > 0, got {self.score}")
        return errors


class ScenarioConfig:
    """Parsed scenario configuration.

    JSON Schema::

        {
            "device_id": "dev_local_1",
            "today": 19000,                 // optional, default: current UTC day
            "exposures": [
                {"days_ago": 1, "report_type": "confirmed_test", "score": 3000}
            ]
        }
    """

    def __init__(
        self,
        device_id: str,
        exposures: list[ExposureSpec] | None = None,
        today: int | None = None,
    ) -> None:
        self.device_id = device_id
        self.exposures = exposures or []
        self.today = today

    def validate(self) -> list[str]:
        errors: list[str] = []
        if not self.device_id:
            errors.append("device_id must not be empty")
        for i, exposure in enumerate(self.exposures):
            for err in exposure.validate():
                errors.append(f"exposures[{i}]: {err}")
        return errors

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScenarioConfig:
        exposures = [
            ExposureSpec(
                days_ago=int(e["days_ago"]),
                report_type=ReportType(e.get("report_type", "confirmed_test")),
                score=float(e["score"]),
            )
            for e in data.get("exposures", [])
        ]
        return cls(
            device_id=data["device_id"],
            exposures=exposures,
            today=data.get("today"),
        )

    @classmethod
    def from_file(cls, path: str) -> ScenarioConfig:
        with open(path, "r") as f:
            data = json.load(f)
        return cls.from_dict(data)


# ---------------------------------------------------------------------------
# Export builders
# ---------------------------------------------------------------------------


def _add_exposure(
    data: ExposureSummaryData, score: float
) -> ExposureSummaryData:
    return ExposureSummaryData(
        maximum_score=max(data.maximum_score, min(MAX_WINDOW_SCORE, score)),
        score_sum=data.score_sum + score,
        weighted_duration_sum=data.weighted_duration_sum + score,
    )


def build_export(config: ScenarioConfig) -> DailySummaryExport:
    """Aggregate scenario exposures into one daily summary per day."""
    today = config.today
    if today is None:
        today = days_since_epoch(datetime.now(timezone.utc))

    by_day: dict[int, DailySummary] = {}
    for exposure in config.exposures:
        day = today - exposure.days_ago
        summary = by_day.setdefault(day, DailySummary(days_since_epoch=day))
        summary.summary_data = _add_exposure(summary.summary_data, exposure.score)
        summary.report_summaries[exposure.report_type] = _add_exposure(
            summary.summary_data_for_report_type(exposure.report_type),
            exposure.score,
        )

    return DailySummaryExport(
        device_id=config.device_id,
        generated_at=datetime.now(timezone.utc),
        daily_summaries=[by_day[day] for day in sorted(by_day)],
    )


def build_random_config(
    device_id: str, window: int = 14, seed: int | None = None
) -> ScenarioConfig:
    """Random exposures inside the retention window."""
    rng = random.Random(seed)
    exposures = [
        ExposureSpec(
            days_ago=rng.randint(0, window),
            report_type=rng.choice(RANDOM_REPORT_TYPES),
            score=float(rng.randint(100, 4000)),
        )
        for _ in range(rng.randint(1, 5))
    ]
    return ScenarioConfig(device_id=device_id, exposures=exposures)


# ---------------------------------------------------------------------------
# Writers
# ---------------------------------------------------------------------------


def write_export(
    export: DailySummaryExport,
    destination: str,
    endpoint_url: str | None = None,
) -> str:
    """Write the export to ``s3://bucket`` or a local directory.

    Returns the full location that was written.
    """
    key = build_summaries_key(export.device_id)
    body = export.model_dump_json(indent=2)

    if destination.startswith("s3://"):
        import boto3

        bucket = destination.replace("s3://", "").split("/", 1)[0]
        kwargs: dict[str, Any] = {"region_name": os.environ.get("AWS_REGION", "us-east-1")}
        if endpoint_url:
            kwargs["endpoint_url"] = endpoint_url
            kwargs["aws_access_key_id"] = os.environ.get("AWS_ACCESS_KEY_ID", "minioadmin")
            kwargs["aws_secret_access_key"] = os.environ.get(
                "AWS_SECRET_ACCESS_KEY", "minioadmin"
            )
        s3 = boto3.client("s3", **kwargs)
        s3.put_object(
            Bucket=bucket,
            Key=key,
            Body=body.encode("utf-8"),
            ContentType="application/json",
        )
        return f"s3://{bucket}/{key}"

    path = Path(destination) / key
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body, encoding="utf-8")
    return str(path)


# ---------------------------------------------------------------------------
# CLI Entry Point
# ---------------------------------------------------------------------------


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Generate daily summary exports for local development and testing.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Scenario JSON format:
  {
    "device_id": "dev_local_1",
    "exposures": [
      {"days_ago": 1, "report_type": "confirmed_test", "score": 3000},
      {"days_ago": 3, "report_type": "confirmed_clinical_diagnosis", "score": 900}
    ]
  }
        """,
    )

    mode_group = parser.add_mutually_exclusive_group(required=True)
    mode_group.add_argument(
        "--scenario",
        type=str,
        metavar="CONFIG_JSON",
        help="Path to scenario JSON config file.",
    )
    mode_group.add_argument(
        "--random",
        action="store_true",
        help="Generate random exposures inside the retention window.",
    )
    parser.add_argument(
        "--device-id",
        type=str,
        default="dev_local_1",
        help="Device ID for random mode (default: dev_local_1).",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Random seed for reproducible output.",
    )
    parser.add_argument(
        "--output",
        type=str,
        required=True,
        help="Output location: s3://bucket or a local directory.",
    )
    parser.add_argument(
        "--endpoint-url",
        type=str,
        default=None,
        help="S3 endpoint URL (e.g. http://localhost:9000 for MinIO).",
    )

    args = parser.parse_args()

    if args.scenario:
        config = ScenarioConfig.from_file(args.scenario)
    else:
        config = build_random_config(args.device_id, seed=args.seed)

    errors = config.validate()
    if errors:
        print("Scenario validation failed:", file=sys.stderr)
        for err in errors:
            print(f"  - {err}", file=sys.stderr)
        sys.exit(1)

    export = build_export(config)
    location = write_export(export, args.output, endpoint_url=args.endpoint_url)

    print(f"Wrote {len(export.daily_summaries)} daily summaries to {location}")
    print()
    print("Trigger an evaluation with:")
    print(
        "  "
        + json.dumps({"device_id": config.device_id, "trace_id": "local-trace"})
    )


if __name__ == "__main__":
    main()
