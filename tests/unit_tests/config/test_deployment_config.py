import json

import pytest
from pydantic import ValidationError

from fargate_deploy.config.deployment import load_deployment_config, parse_deployment_config
from fargate_deploy.config.settings import MOTO_ENDPOINT_URL, Settings
from fargate_deploy.exceptions import ConfigError
from tests.consts import TEST_APP_NAME, TEST_CONNECTION_ARN
from tests.fixtures.aws_fixtures import external_config_data, pipeline_config_data


def test_load_yaml_config(config_file):
    config = load_deployment_config(config_file)

    assert config.app_name == TEST_APP_NAME
    assert config.cicd_provider == "external"
    assert config.container_port == 3000
    assert config.service.container_port == 3000
    assert len(config.network.subnets) == 2


def test_load_json_config(tmp_path):
    path = tmp_path / "deploy.json"
    path.write_text(json.dumps(pipeline_config_data()))

    config = load_deployment_config(path)

    assert config.cicd_provider == "pipeline"
    assert config.source_connection_arn == TEST_CONNECTION_ARN


def test_load_missing_config(tmp_path):
    with pytest.raises(ConfigError, match="not found") as exc_info:
        load_deployment_config(tmp_path / "missing.yaml")
    assert exc_info.value.step == "config"


def test_load_unparsable_config(tmp_path):
    path = tmp_path / "deploy.yaml"
    path.write_text("app_name: [unclosed\n")

    with pytest.raises(ConfigError, match="cannot parse"):
        load_deployment_config(path)


def test_load_config_requires_mapping(tmp_path):
    path = tmp_path / "deploy.yaml"
    path.write_text("- rise-app\n")

    with pytest.raises(ConfigError, match="mapping"):
        load_deployment_config(path)


def test_derived_resource_names(external_config):
    assert external_config.repository_name == "rise-app"
    assert external_config.cluster_name == "rise-app-cluster"
    assert external_config.service_name == "rise-app-service"
    assert external_config.task_family == "rise-app-task"
    assert external_config.container_name == "rise-app"
    assert external_config.log_group_name == "/ecs/rise-app"
    assert external_config.execution_role_name == "rise-app-ecs-execution-role"
    assert external_config.deployer_user_name == "rise-app-deployer"


@pytest.mark.parametrize("app_name", ["Rise", "1app", "a", "rise_app", "rise-app-", "x" * 30])
def test_invalid_app_name(app_name):
    with pytest.raises(ConfigError, match="app_name"):
        parse_deployment_config(external_config_data(app_name=app_name))


def test_pipeline_mode_requires_connection_arn():
    with pytest.raises(ConfigError, match="source_connection_arn is required"):
        parse_deployment_config(external_config_data(cicd_provider="pipeline"))


def test_pipeline_mode_requires_owner_and_repo():
    with pytest.raises(ConfigError, match="cannot derive owner/repo"):
        parse_deployment_config(pipeline_config_data(source_repository="rise-app"))


def test_unknown_cicd_provider():
    with pytest.raises(ConfigError, match="cicd_provider"):
        parse_deployment_config(external_config_data(cicd_provider="jenkins"))


def test_overlapping_subnets_rejected_before_anything_runs():
    data = external_config_data(network={
        "cidr_block": "10.0.0.0/16",
        "subnets": [
            {"zone": "us-east-1a", "cidr_block": "10.0.0.0/20"},
            {"zone": "us-east-1b", "cidr_block": "10.0.8.0/24"},
        ],
    })
    with pytest.raises(ConfigError, match="overlaps"):
        parse_deployment_config(data)


def test_subnet_outside_vpc_rejected():
    data = external_config_data(network={
        "cidr_block": "10.0.0.0/16",
        "subnets": [
            {"zone": "us-east-1a", "cidr_block": "10.0.1.0/24"},
            {"zone": "us-east-1b", "cidr_block": "192.168.1.0/24"},
        ],
    })
    with pytest.raises(ConfigError, match="outside VPC CIDR"):
        parse_deployment_config(data)


def test_service_container_port_is_used_when_top_level_is_not_set():
    data = external_config_data(service={"container_port": 8080})
    data.pop("container_port")

    config = parse_deployment_config(data)

    assert config.container_port == 8080
    assert config.service.container_port == 8080


def test_top_level_container_port_wins():
    config = parse_deployment_config(external_config_data(container_port=5000, service={"container_port": 8080}))

    assert config.service.container_port == 5000


def test_default_network_follows_region():
    config = parse_deployment_config(external_config_data(region="eu-west-1"))

    assert [s.zone for s in config.network.subnets] == ["eu-west-1a", "eu-west-1b"]


def test_resource_tags_cannot_override_ownership_tags():
    config = parse_deployment_config(external_config_data(tags={"Team": "web", "Project": "other"}))

    tags = config.resource_tags()

    assert tags["Team"] == "web"
    assert tags["Project"] == TEST_APP_NAME
    assert tags["ManagedBy"] == "fargate-deploy"


def test_settings_defaults(monkeypatch):
    for var in ("AWS_ENDPOINT_URL", "AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "DEPLOYMENT_MODE", "MAX_CONCURRENCY"):
        monkeypatch.delenv(var, raising=False)

    settings = Settings()

    assert settings.deployment_mode == "aws-prod"
    assert settings.max_concurrency == 4
    assert settings.aws_endpoint_url is None
    assert not settings.is_mock


def test_settings_mock_mode_points_at_moto_server(monkeypatch):
    for var in ("AWS_ENDPOINT_URL", "AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("DEPLOYMENT_MODE", "mock")

    settings = Settings()

    assert settings.deployment_mode == "aws-mock"
    assert settings.aws_endpoint_url == MOTO_ENDPOINT_URL
    assert settings.aws_access_key_id == "mock"
    assert settings.get_environment_dict()["AWS_ENDPOINT_URL"] == MOTO_ENDPOINT_URL


def test_settings_reject_unknown_mode():
    with pytest.raises(ValidationError, match="Invalid deployment_mode"):
        Settings(deployment_mode="staging")


def test_settings_reject_zero_concurrency():
    with pytest.raises(ValidationError):
        Settings(max_concurrency=0)
