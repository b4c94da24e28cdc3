"""
Settings for the demo CLI, read from the environment and a .env file.

Variables (all prefixed BLOBPIPELINE_):
    ACCOUNT_NAME, ACCOUNT_KEY, CONTAINER   required
    SERVICE_URL                            default https://{account}.blob.core.windows.net/
    RETRY_POLICY                           exponential | linear
    MAX_TRIES, TRY_TIMEOUT, RETRY_DELAY, MAX_RETRY_DELAY
    LOG_SLOW_THRESHOLD                     seconds
"""

from typing import Any

from pydantic import Field, SecretStr, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError
from .pipeline import RequestLogOptions, RetryOptions, RetryPolicyType

ENV_PREFIX = "BLOBPIPELINE_"

_RETRY_DEFAULTS = RetryOptions()


class StorageSettings(BaseSettings):
    """Account, container and retry settings. Process variables win over the .env file."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        str_strip_whitespace=True,
        case_sensitive=False,
        extra="ignore",
    )

    # Account
    account_name: str = Field(..., min_length=1, description="Storage account name")
    account_key: SecretStr = Field(..., description="Base64 shared key")
    container: str = Field(..., min_length=1, description="Container used by the CLI")
    service_url: str | None = Field(None, description="Blob service endpoint")

    # Retry
    retry_policy: RetryPolicyType = _RETRY_DEFAULTS.policy
    max_tries: int = Field(_RETRY_DEFAULTS.max_tries, ge=1)
    try_timeout: float = Field(_RETRY_DEFAULTS.try_timeout, gt=0, description="Seconds per try")
    retry_delay: float = Field(_RETRY_DEFAULTS.retry_delay, ge=0)
    max_retry_delay: float = Field(_RETRY_DEFAULTS.max_retry_delay, ge=0)

    # Logging
    log_slow_threshold: float = Field(
        RequestLogOptions().log_warning_if_try_over_threshold,
        description="Seconds before a successful try is logged as slow; 0 disables",
    )

    @field_validator("retry_policy", mode="before")
    @classmethod
    def _lowercase_policy(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _fill_defaults(self) -> "StorageSettings":
        if not self.service_url:
            self.service_url = f"https://{self.account_name}.blob.core.windows.net/"
        if self.retry_delay > self.max_retry_delay:
            raise ValueError("retry_delay must not exceed max_retry_delay")
        return self

    @property
    def account_key_str(self) -> str:
        return self.account_key.get_secret_value()

    @property
    def retry(self) -> RetryOptions:
        return RetryOptions(
            policy=self.retry_policy,
            max_tries=self.max_tries,
            try_timeout=self.try_timeout,
            retry_delay=self.retry_delay,
            max_retry_delay=self.max_retry_delay,
        )

    @property
    def request_log(self) -> RequestLogOptions:
        return RequestLogOptions(log_warning_if_try_over_threshold=self.log_slow_threshold)

    @classmethod
    def load(cls, env_file: str | None = None, **values: Any) -> "StorageSettings":
        """
        Build settings from keyword values, the environment and ``env_file``
        (default ``.env`` in the working directory; a missing file is ignored).

        Raises ConfigurationError naming every variable that is missing or invalid.
        """
        try:
            if env_file is not None:
                return cls(_env_file=env_file, **values)
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(_describe(e), error=e) from e


def _describe(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        loc = item.get("loc") or ()
        name = f"{ENV_PREFIX}{str(loc[0]).upper()}" if loc else "settings"
        problems.append(f"{name}: {item.get('msg')}")
    return "Invalid configuration: " + "; ".join(problems)
