import json

import pytest
import yaml

from fargate_deploy.build.artifacts import read_manifest, render_buildspec, write_buildspec, write_manifest, write_tag_file
from fargate_deploy.exceptions import ConfigError
from fargate_deploy.models import ImageDefinition, build_image_definitions
from tests.consts import TEST_REPOSITORY_URI


def test_manifest_is_compact_json_array(tmp_path):
    path = write_manifest(build_image_definitions("rise-app", TEST_REPOSITORY_URI, "a1b2c3d"),
                          tmp_path / "imagedefinitions.json")

    assert path.read_text() == f'[{{"name":"rise-app","imageUri":"{TEST_REPOSITORY_URI}:a1b2c3d"}}]'


def test_manifest_must_hold_exactly_one_image(tmp_path):
    definitions = [ImageDefinition(name="a", imageUri="repo:1"), ImageDefinition(name="b", imageUri="repo:2")]

    with pytest.raises(ConfigError, match="exactly one image") as exc_info:
        write_manifest(definitions, tmp_path / "imagedefinitions.json")
    assert exc_info.value.step == "manifest"


def test_read_manifest(tmp_path):
    path = tmp_path / "imagedefinitions.json"
    path.write_text(json.dumps([{"name": "rise-app", "imageUri": f"{TEST_REPOSITORY_URI}:latest"}]))

    definition = read_manifest(path)

    assert definition.name == "rise-app"
    assert definition.imageUri.endswith(":latest")


@pytest.mark.parametrize("content, message", [
    ("{not json", "cannot parse"),
    ("[]", "exactly one entry"),
    ('{"name": "rise-app"}', "exactly one entry"),
    ('[{"name": "rise-app"}]', "invalid entry"),
])
def test_read_manifest_rejects_bad_files(tmp_path, content, message):
    path = tmp_path / "imagedefinitions.json"
    path.write_text(content)

    with pytest.raises(ConfigError, match=message):
        read_manifest(path)


def test_read_manifest_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="manifest not found"):
        read_manifest(tmp_path / "imagedefinitions.json")


def test_tag_file_holds_tag_and_newline(tmp_path):
    path = write_tag_file("a1b2c3d", tmp_path / "image_tag.txt")

    assert path.read_text() == "a1b2c3d\n"


def test_buildspec_runs_build_command_and_exports_artifacts():
    spec = yaml.safe_load(render_buildspec("fargate-deploy==0.1.0"))

    assert spec["version"] == 0.2
    assert list(spec["phases"]) == ["install", "pre_build", "build", "post_build"]
    assert spec["phases"]["install"]["commands"] == ["pip install --quiet fargate-deploy==0.1.0"]
    assert spec["phases"]["build"]["commands"] == [
        "fargate-deploy build --manifest imagedefinitions.json --tag-file image_tag.txt"
    ]
    assert spec["artifacts"]["files"] == ["imagedefinitions.json", "image_tag.txt"]
    assert spec["artifacts"]["discard-paths"] == "yes"


def test_write_buildspec(tmp_path):
    path = write_buildspec(tmp_path / "buildspec.yml", tool_package="fargate-deploy")

    assert yaml.safe_load(path.read_text())["phases"]["install"]["commands"] == [
        "pip install --quiet fargate-deploy"
    ]
