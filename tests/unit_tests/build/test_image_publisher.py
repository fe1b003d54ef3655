import base64
import subprocess
from unittest.mock import MagicMock

import pytest

from fargate_deploy.build.artifacts import read_manifest
from fargate_deploy.build.image import BuildEnvironment, ImagePublisher
from fargate_deploy.exceptions import ProviderError
from tests.consts import TEST_COMMIT, TEST_REPOSITORY_URI

REGISTRY_HOST = TEST_REPOSITORY_URI.split("/")[0]


class FakeRunner:
    """Records docker invocations; optionally fails the first command containing ``fail_on``."""

    def __init__(self, fail_on=None):
        self.commands = []
        self.inputs = []
        self.fail_on = fail_on

    def __call__(self, args, input=None):
        self.commands.append(list(args))
        self.inputs.append(input)
        if self.fail_on and self.fail_on in args:
            raise subprocess.CalledProcessError(1, list(args), stderr=b"denied: not authorized")
        return subprocess.CompletedProcess(list(args), 0)


def make_env(revision=TEST_COMMIT):
    return BuildEnvironment(
        ecr_repository_uri=TEST_REPOSITORY_URI,
        image_repo_name="rise-app",
        resolved_source_version=revision,
        aws_region="us-east-1",
    )


def make_clients():
    ecr = MagicMock()
    ecr.get_authorization_token.return_value = {
        "authorizationData": [{"authorizationToken": base64.b64encode(b"AWS:s3cr3t-token").decode()}]
    }
    clients = MagicMock()
    clients.get_client.return_value = ecr
    return clients


def test_publish_runs_login_build_tag_push_in_order(tmp_path):
    runner = FakeRunner()
    publisher = ImagePublisher(make_env(), clients=make_clients(), runner=runner)

    result = publisher.publish(manifest_path=str(tmp_path / "imagedefinitions.json"),
                               tag_path=str(tmp_path / "image_tag.txt"))

    assert runner.commands == [
        ["docker", "login", "--username", "AWS", "--password-stdin", REGISTRY_HOST],
        ["docker", "build", "-t", "rise-app:latest", "."],
        ["docker", "tag", "rise-app:latest", f"{TEST_REPOSITORY_URI}:latest"],
        ["docker", "tag", "rise-app:latest", f"{TEST_REPOSITORY_URI}:a1b2c3d"],
        ["docker", "push", f"{TEST_REPOSITORY_URI}:latest"],
        ["docker", "push", f"{TEST_REPOSITORY_URI}:a1b2c3d"],
    ]
    assert result.tag == "a1b2c3d"
    assert result.pushed_tags == ["latest", "a1b2c3d"]
    assert read_manifest(result.manifest_path).imageUri == f"{TEST_REPOSITORY_URI}:a1b2c3d"
    assert (tmp_path / "image_tag.txt").read_text() == "a1b2c3d\n"


def test_registry_password_is_passed_on_stdin_only(tmp_path):
    runner = FakeRunner()
    ImagePublisher(make_env(), clients=make_clients(), runner=runner).publish(
        manifest_path=str(tmp_path / "m.json"), tag_path=str(tmp_path / "t.txt"))

    assert runner.inputs[0] == b"s3cr3t-token"
    assert not any("s3cr3t-token" in arg for command in runner.commands for arg in command)


def test_unresolved_revision_pushes_latest_once(tmp_path):
    runner = FakeRunner()
    result = ImagePublisher(make_env(revision=None), clients=make_clients(), runner=runner).publish(
        manifest_path=str(tmp_path / "m.json"), tag_path=str(tmp_path / "t.txt"))

    assert result.tag == "latest"
    assert result.pushed_tags == ["latest"]
    assert [c for c in runner.commands if c[1] == "push"] == [["docker", "push", f"{TEST_REPOSITORY_URI}:latest"]]


def test_failed_push_raises_and_keeps_tag_file(tmp_path):
    runner = FakeRunner(fail_on="push")
    publisher = ImagePublisher(make_env(), clients=make_clients(), runner=runner)

    with pytest.raises(ProviderError, match="denied: not authorized") as exc_info:
        publisher.publish(manifest_path=str(tmp_path / "imagedefinitions.json"),
                          tag_path=str(tmp_path / "image_tag.txt"))

    assert exc_info.value.step == "docker-push"
    assert (tmp_path / "image_tag.txt").read_text() == "a1b2c3d\n"
    assert not (tmp_path / "imagedefinitions.json").exists()


def test_missing_docker_binary_is_reported(tmp_path):
    def runner(args, input=None):
        raise FileNotFoundError(2, "No such file or directory", "docker")

    publisher = ImagePublisher(make_env(), clients=make_clients(), runner=runner)

    with pytest.raises(ProviderError, match="cannot run docker") as exc_info:
        publisher.publish(manifest_path=str(tmp_path / "m.json"), tag_path=str(tmp_path / "t.txt"))
    assert exc_info.value.step == "ecr-login"


def test_build_environment_from_codebuild_variables(monkeypatch):
    monkeypatch.setenv("ECR_REPOSITORY_URI", TEST_REPOSITORY_URI)
    monkeypatch.setenv("IMAGE_REPO_NAME", "rise-app")
    monkeypatch.setenv("CODEBUILD_RESOLVED_SOURCE_VERSION", "a1b2c3d4e5")
    monkeypatch.delenv("APP_NAME", raising=False)

    env = BuildEnvironment()

    assert env.image_tag == "a1b2c3d"
    assert env.container_name == "rise-app"
    assert env.registry_host == REGISTRY_HOST
