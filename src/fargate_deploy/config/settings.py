# src/fargate_deploy/config/settings.py
import os
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MOTO_ENDPOINT_URL = "http://localhost:5000"
MOCK_ACCOUNT_ID = "123456789012"


class Settings(BaseSettings):
    """
    Runtime settings for the deployment tool.

    Configuration precedence:
    1. Environment variables (highest priority)
    2. .env / .env.aws files (if they exist)
    3. Default values in this class (lowest priority)

    What gets deployed lives in the deployment config file (see
    ``fargate_deploy.config.deployment``); this class only covers how the tool
    talks to AWS.

    Usage:
        from fargate_deploy.config.settings import get_settings
        settings = get_settings()
        region = settings.aws_region
    """

    # Deployment Mode
    deployment_mode: str = Field(
        default="aws-prod",
        description="Deployment mode: aws-prod (real AWS) or aws-mock (moto server)"
    )

    # AWS Core Settings
    aws_region: str = Field(
        default="us-east-1",
        alias="AWS_DEFAULT_REGION"
    )

    aws_access_key_id: Optional[str] = Field(
        default=None,
        alias="AWS_ACCESS_KEY_ID"
    )

    aws_secret_access_key: Optional[str] = Field(
        default=None,
        alias="AWS_SECRET_ACCESS_KEY"
    )

    aws_endpoint_url: Optional[str] = Field(
        default=None,
        alias="AWS_ENDPOINT_URL"
    )

    aws_account_id: Optional[str] = Field(
        default=None,
        alias="AWS_ACCOUNT_ID",
        description="AWS Account ID (auto-detected if not provided)"
    )

    # Files
    config_file: str = Field(
        default="deploy.yaml",
        description="Declarative deployment config (YAML or JSON)"
    )

    state_file: str = Field(
        default=".deployment_state.json",
        description="Progress journal written during apply/destroy"
    )

    credentials_file: str = Field(
        default="deployer_credentials.json",
        description="Where a newly created deployer access key is written (mode 0600)"
    )

    # Orchestration
    max_concurrency: int = Field(
        default=4,
        ge=1,
        description="Resources applied in parallel within one dependency level"
    )

    provider_max_attempts: int = Field(
        default=5,
        ge=1,
        description="Attempts per AWS call on transient errors"
    )

    provider_retry_delay: float = Field(
        default=1.0,
        ge=0,
        description="Initial backoff delay in seconds (doubles each retry)"
    )

    provider_call_timeout: int = Field(
        default=30,
        ge=1,
        description="Connect/read timeout per AWS call in seconds"
    )

    # Rollout
    rollout_timeout: float = Field(
        default=600.0,
        gt=0,
        description="Seconds to wait for a new deployment to become healthy"
    )

    rollout_poll_interval: float = Field(
        default=15.0,
        ge=0,
        description="Seconds between rollout status checks"
    )

    # Build
    tool_package: str = Field(
        default="fargate-deploy",
        description="pip requirement installed inside CodeBuild to run the build step"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @field_validator('deployment_mode', mode='before')
    @classmethod
    def normalize_deployment_mode(cls, v):
        """Normalize deployment mode values for backwards compatibility."""
        if v:
            mode_mapping = {
                "mock": "aws-mock",
                "local-dev": "aws-mock",
                "cloud": "aws-prod",
                "prod": "aws-prod",
            }
            return mode_mapping.get(v, v)
        return v

    @field_validator('deployment_mode')
    @classmethod
    def validate_deployment_mode(cls, v):
        """Validate deployment mode is one of the allowed values."""
        valid_modes = ["aws-prod", "aws-mock"]
        if v not in valid_modes:
            raise ValueError(f"Invalid deployment_mode: {v}. Must be one of {valid_modes}")
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log_level: {v}")
        return level

    @model_validator(mode='after')
    def apply_mock_defaults(self):
        """Point at the moto server with dummy credentials in aws-mock mode."""
        if self.deployment_mode == "aws-mock":
            if self.aws_endpoint_url is None:
                self.aws_endpoint_url = MOTO_ENDPOINT_URL
            if self.aws_access_key_id is None:
                self.aws_access_key_id = "mock"
            if self.aws_secret_access_key is None:
                self.aws_secret_access_key = "mock"
        return self

    @property
    def is_mock(self) -> bool:
        return self.deployment_mode == "aws-mock"

    def get_environment_dict(self) -> dict:
        """Settings as environment variables, for subprocesses such as docker."""
        env = {
            'DEPLOYMENT_MODE': self.deployment_mode,
            'AWS_DEFAULT_REGION': self.aws_region,
            'LOG_LEVEL': self.log_level,
        }
        if self.aws_endpoint_url:
            env['AWS_ENDPOINT_URL'] = self.aws_endpoint_url
        return env

    def export_environment_variables(self) -> None:
        for key, value in self.get_environment_dict().items():
            if value:
                os.environ[key] = str(value)

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=(".env", ".env.aws"),  # .env.aws takes precedence
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    This ensures we only create one Settings instance per process.
    """
    return Settings()
