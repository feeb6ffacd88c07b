"""
Configuration loader for the Exposure State Worker.

Uses Pydantic Settings for environment variable parsing, with SSM parameter
resolution in non-local environments. The health-authority classification
rules arrive as a JSON list in ``CLASSIFICATION_THRESHOLDS`` and are validated
once, when the settings are loaded.
"""

from __future__ import annotations

import os
from functools import lru_cache

import boto3
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from worker.exposure.models import ClassificationThreshold


class ConfigurationError(Exception):
    """Raised when the health-authority configuration is unusable."""

    pass


class Settings(BaseSettings):
    """Exposure State Worker configuration loaded from environment variables.

    In production (APP_ENV != 'local'), environment variables with an
    ``_SSM_PARAM`` suffix are resolved via AWS Systems Manager Parameter
    Store before constructing the settings object.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    database_url: SecretStr
    summaries_bucket: str
    queue_url: str
    aws_region: str = "us-east-1"

    # Health-authority configuration
    days_since_exposure_threshold: int = Field(default=14, ge=0)
    classification_thresholds: list[ClassificationThreshold] = Field(
        default_factory=list
    )


def validate_classification_thresholds(
    thresholds: list[ClassificationThreshold],
) -> None:
    """Reject rule sets the classifier cannot rank.

    Raises
    ------
    ConfigurationError
        If the rule set is empty, an index is below 1 or repeated, or a rule
        has no enabled cutoff.
    """
    if not thresholds:
        raise ConfigurationError("At least one classification threshold is required")

    seen: set[int] = set()
    for threshold in thresholds:
        index = threshold.classification_index
        if index < 1:
            raise ConfigurationError(
                f"Classification index must be >= 1, got {index} "
                f"for '{threshold.classification_name}'"
            )
        if index in seen:
            raise ConfigurationError(f"Duplicate classification index {index}")
        seen.add(index)

        if not threshold.criteria():
            raise ConfigurationError(
                f"Classification {index} ('{threshold.classification_name}') "
                "has no enabled cutoff"
            )


def _resolve_ssm_params() -> None:
    """Scan environment variables for ``*_SSM_PARAM`` suffixes and replace
    them with the actual secret values fetched from AWS SSM Parameter Store.

    For example, if ``DATABASE_URL_SSM_PARAM=/exposure/prod/db-url`` is
    set, this function fetches that parameter and injects
    ``DATABASE_URL=<resolved_value>`` into the environment.
    """
    ssm_suffix = "_SSM_PARAM"
    params_to_resolve: dict[str, str] = {}

    for key, value in os.environ.items():
        if key.endswith(ssm_suffix):
            target_key = key[: -len(ssm_suffix)]
            params_to_resolve[target_key] = value

    if not params_to_resolve:
        return

    ssm = boto3.client("ssm", region_name=os.environ.get("AWS_REGION", "us-east-1"))

    # Batch fetch in groups of 10 (SSM API limit)
    param_names = list(params_to_resolve.values())
    for i in range(0, len(param_names), 10):
        batch = param_names[i : i + 10]
        response = ssm.get_parameters(Names=batch, WithDecryption=True)
        resolved = {p["Name"]: p["Value"] for p in response["Parameters"]}

        for target_key, param_name in params_to_resolve.items():
            if param_name in resolved:
                os.environ[target_key] = resolved[param_name]


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    """Load, validate and cache application settings.

    1. Check ``APP_ENV`` environment variable.
    2. If not ``local``, resolve SSM parameters into the environment.
    3. Construct the ``Settings`` object and validate the rule set.
    """
    app_env = os.environ.get("APP_ENV", "local")
    if app_env != "local":
        _resolve_ssm_params()

    settings = Settings()  # type: ignore[call-arg]
    validate_classification_thresholds(settings.classification_thresholds)
    return settings
