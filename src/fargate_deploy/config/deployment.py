"""Declarative deployment config: what to deploy, loaded from YAML or JSON."""
import json
import logging
import re
from pathlib import Path
from typing import Dict, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from fargate_deploy.exceptions import ConfigError
from fargate_deploy.models import NetworkSpec, PipelineConfig, ServiceSpec

logger = logging.getLogger(__name__)

# Leaves room for the "-alb"/"-tg" suffixes under AWS's 32 character ELB limit.
APP_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9-]{0,22}[a-z0-9]$")


class DeploymentConfig(BaseModel):
    """The declarative config file.

    Example (YAML)::

        app_name: rise-app
        container_port: 3000
        cicd_provider: external
        source_repository: https://github.com/acme/rise-app
        branch: main
        region: us-east-1
    """
    app_name: str
    container_port: int = Field(default=3000, ge=1, le=65535)
    cicd_provider: Literal["pipeline", "external"] = "pipeline"
    source_repository: str
    branch: str = "main"
    region: str = "us-east-1"
    source_connection_arn: Optional[str] = None
    network: Optional[NetworkSpec] = None
    service: ServiceSpec = Field(default_factory=ServiceSpec)
    tags: Dict[str, str] = Field(default_factory=dict)

    @field_validator("app_name")
    @classmethod
    def validate_app_name(cls, v):
        if not APP_NAME_PATTERN.match(v):
            raise ValueError(
                "app_name must be 2-24 lowercase letters, digits or hyphens, "
                "starting with a letter"
            )
        return v

    @model_validator(mode="after")
    def fill_defaults(self):
        if self.network is None:
            self.network = NetworkSpec.default_for_region(self.region)
        # Top-level container_port is the documented knob; keep the service in sync.
        if "container_port" in self.model_fields_set or "container_port" not in self.service.model_fields_set:
            self.service.container_port = self.container_port
        else:
            self.container_port = self.service.container_port
        if self.cicd_provider == "pipeline":
            if not self.source_connection_arn:
                raise ValueError("source_connection_arn is required when cicd_provider is 'pipeline'")
            PipelineConfig.repository_id_from_url(self.source_repository)
        return self

    @property
    def repository_name(self) -> str:
        return self.app_name

    @property
    def cluster_name(self) -> str:
        return f"{self.app_name}-cluster"

    @property
    def service_name(self) -> str:
        return f"{self.app_name}-service"

    @property
    def task_family(self) -> str:
        return f"{self.app_name}-task"

    @property
    def container_name(self) -> str:
        return self.app_name

    @property
    def log_group_name(self) -> str:
        return f"/ecs/{self.app_name}"

    @property
    def execution_role_name(self) -> str:
        return f"{self.app_name}-ecs-execution-role"

    @property
    def deployer_user_name(self) -> str:
        return f"{self.app_name}-deployer"

    @property
    def build_project_name(self) -> str:
        return f"{self.app_name}-build"

    @property
    def pipeline_name(self) -> str:
        return f"{self.app_name}-pipeline"

    @property
    def build_role_name(self) -> str:
        return f"{self.app_name}-codebuild-role"

    @property
    def pipeline_role_name(self) -> str:
        return f"{self.app_name}-codepipeline-role"

    def resource_tags(self) -> Dict[str, str]:
        """Tags stamped on every created resource. ``Project`` drives lookups."""
        return {**self.tags, "Name": self.app_name, "Project": self.app_name, "ManagedBy": "fargate-deploy"}


def load_deployment_config(path: Union[str, Path]) -> DeploymentConfig:
    """Load and validate a deployment config file.

    ``.json`` files are parsed as JSON, everything else as YAML.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"deployment config not found: {path}")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            if path.suffix.lower() == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot parse {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")

    config = parse_deployment_config(data)
    logger.info(f"Loaded deployment config for {config.app_name} from {path}")
    return config


def parse_deployment_config(data: dict) -> DeploymentConfig:
    try:
        return DeploymentConfig(**data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigError(problems)
