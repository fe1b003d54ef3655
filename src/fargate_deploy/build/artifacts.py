"""Build artifacts consumed by the deployment step, and the CodeBuild buildspec that emits them."""
import json
import logging
from pathlib import Path
from typing import List, Union

import yaml
from pydantic import ValidationError

from fargate_deploy.exceptions import ConfigError
from fargate_deploy.models import ImageDefinition

logger = logging.getLogger(__name__)

MANIFEST_FILE = "imagedefinitions.json"
TAG_FILE = "image_tag.txt"
BUILDSPEC_VERSION = 0.2


def write_manifest(definitions: List[ImageDefinition], path: Union[str, Path] = MANIFEST_FILE) -> Path:
    """Write ``imagedefinitions.json`` as compact JSON, the way CodePipeline's ECS action reads it."""
    if len(definitions) != 1:
        raise ConfigError(f"manifest must contain exactly one image, got {len(definitions)}", step="manifest")
    path = Path(path)
    payload = [d.model_dump() for d in definitions]
    path.write_text(json.dumps(payload, separators=(',', ':')), encoding='utf-8')
    logger.info(f"Wrote image definitions to {path}")
    return path


def read_manifest(path: Union[str, Path] = MANIFEST_FILE) -> ImageDefinition:
    """Read the single image definition from a manifest file."""
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"manifest not found: {path}", step="manifest")
    try:
        data = json.loads(path.read_text(encoding='utf-8'))
    except json.JSONDecodeError as e:
        raise ConfigError(f"cannot parse {path}: {e}", step="manifest")

    if not isinstance(data, list) or len(data) != 1:
        raise ConfigError(f"{path} must be a JSON array with exactly one entry", step="manifest")
    try:
        return ImageDefinition(**data[0])
    except (TypeError, ValidationError) as e:
        raise ConfigError(f"invalid entry in {path}: {e}", step="manifest")


def write_tag_file(tag: str, path: Union[str, Path] = TAG_FILE) -> Path:
    path = Path(path)
    path.write_text(f"{tag}\n", encoding='utf-8')
    logger.info(f"Wrote image tag {tag} to {path}")
    return path


def render_buildspec(tool_package: str = "fargate-deploy", manifest_file: str = MANIFEST_FILE,
                     tag_file: str = TAG_FILE) -> str:
    """CodeBuild buildspec that installs this tool and runs ``fargate-deploy build``.

    The build command performs the registry login, build, tag and push
    sequence and writes both artifact files, which become the build output.
    """
    spec = {
        'version': BUILDSPEC_VERSION,
        'phases': {
            'install': {
                'commands': [
                    f"pip install --quiet {tool_package}",
                ],
            },
            'pre_build': {
                'commands': [
                    'echo Build started on `date`',
                ],
            },
            'build': {
                'commands': [
                    f"fargate-deploy build --manifest {manifest_file} --tag-file {tag_file}",
                ],
            },
            'post_build': {
                'commands': [
                    'echo Build completed on `date`',
                ],
            },
        },
        'artifacts': {
            'files': [manifest_file, tag_file],
            'discard-paths': 'yes',
        },
    }
    return yaml.safe_dump(spec, sort_keys=False, default_flow_style=False)


def write_buildspec(path: Union[str, Path] = "buildspec.yml", **kwargs) -> Path:
    path = Path(path)
    path.write_text(render_buildspec(**kwargs), encoding='utf-8')
    logger.info(f"Wrote buildspec to {path}")
    return path
