import json
import os
import stat

import pytest
import yaml
from click.testing import CliRunner

from fargate_deploy.cli import cli, write_credentials
from fargate_deploy.orchestration.deployment_state import DeploymentStateManager


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def fast_settings(monkeypatch, chdir_tmp):
    """CLI commands build Settings from the environment."""
    monkeypatch.setenv("PROVIDER_RETRY_DELAY", "0")
    monkeypatch.setenv("ROLLOUT_POLL_INTERVAL", "0")
    monkeypatch.setenv("ROLLOUT_TIMEOUT", "5")
    monkeypatch.setenv("DEPLOYMENT_MODE", "aws-prod")
    return chdir_tmp


def test_buildspec_to_stdout(runner):
    result = runner.invoke(cli, ["buildspec", "-o", "-"])

    assert result.exit_code == 0
    spec = yaml.safe_load(result.output)
    assert spec["phases"]["build"]["commands"][0].startswith("fargate-deploy build")


def test_buildspec_to_file(runner, chdir_tmp):
    result = runner.invoke(cli, ["buildspec"])

    assert result.exit_code == 0
    assert (chdir_tmp / "buildspec.yml").exists()


def test_missing_config_is_reported_with_step(runner, tmp_path):
    result = runner.invoke(cli, ["--config", str(tmp_path / "nope.yaml"), "plan"])

    assert result.exit_code == 1
    assert "❌ config: deployment config not found" in result.output


def test_invalid_config_is_reported_before_any_call(runner, tmp_path):
    path = tmp_path / "deploy.yaml"
    path.write_text("app_name: Bad_Name\nsource_repository: https://github.com/acme/app\n")

    result = runner.invoke(cli, ["--config", str(path), "apply"])

    assert result.exit_code == 1
    assert "❌ config: app_name" in result.output


def test_build_requires_codebuild_environment(runner, monkeypatch, chdir_tmp):
    for var in ("ECR_REPOSITORY_URI", "IMAGE_REPO_NAME"):
        monkeypatch.delenv(var, raising=False)

    result = runner.invoke(cli, ["build"])

    assert result.exit_code == 1
    assert "❌ build: build environment incomplete" in result.output


def test_status_without_journal(runner, fast_settings):
    result = runner.invoke(cli, ["status"])

    assert result.exit_code == 0
    assert "No deployment state found" in result.output


def test_status_prints_journal_summary(runner, fast_settings):
    manager = DeploymentStateManager(str(fast_settings / ".deployment_state.json"))
    manager.start_deployment("apply-1", "apply", "rise-app", [("vpc", "ec2_vpc")])
    manager.complete_resource("vpc", "create", "vpc-123")
    manager.complete_deployment()

    result = runner.invoke(cli, ["status"])

    assert result.exit_code == 0
    summary = json.loads(result.output)
    assert summary["status"] == "completed"
    assert summary["resources"]["vpc"]["physical_id"] == "vpc-123"


def test_show_config(runner, config_file, fast_settings):
    result = runner.invoke(cli, ["--config", str(config_file), "show-config"])

    assert result.exit_code == 0
    assert "App: rise-app" in result.output
    assert "CI/CD Provider: external" in result.output


def test_write_credentials_is_owner_only(tmp_path):
    path = tmp_path / "creds.json"

    write_credentials(str(path), {"deployer": {"aws_secret_access_key": "secret"}})

    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    assert json.loads(path.read_text())["deployer"]["aws_secret_access_key"] == "secret"


def test_apply_plan_destroy_through_cli(runner, mocked_aws, config_file, fast_settings):
    result = runner.invoke(cli, ["--config", str(config_file), "apply"])
    assert result.exit_code == 0, result.output
    assert "✅ Apply complete" in result.output
    assert "🌐 http://" in result.output

    credentials_path = fast_settings / "deployer_credentials.json"
    assert stat.S_IMODE(os.stat(credentials_path).st_mode) == 0o600
    secret = json.loads(credentials_path.read_text())["deployer"]["aws_secret_access_key"]
    assert secret not in result.output

    result = runner.invoke(cli, ["--config", str(config_file), "plan"])
    assert result.exit_code == 0, result.output
    assert "0 to create, 0 to update" in result.output

    result = runner.invoke(cli, ["--config", str(config_file), "destroy", "--yes"])
    assert result.exit_code == 0, result.output
    assert "✅ Destroy complete" in result.output
