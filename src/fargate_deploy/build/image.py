"""
Image build & publish.

Runs the same sequence as a CodeBuild docker build: log in to ECR, build the
image, tag it as ``latest`` and as the short commit hash, push both tags and
write the artifacts the deployment step consumes.
"""
import base64
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from fargate_deploy.aws.utils import AWSClientManager, call_aws
from fargate_deploy.build.artifacts import MANIFEST_FILE, TAG_FILE, write_manifest, write_tag_file
from fargate_deploy.exceptions import ProviderError
from fargate_deploy.models import DEFAULT_IMAGE_TAG, build_image_definitions, resolve_image_tag
from fargate_deploy.utils.decorators import log_execution_time

logger = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]


class BuildEnvironment(BaseSettings):
    """Environment provided by CodeBuild (or an external CI job)."""

    ecr_repository_uri: str = Field(alias="ECR_REPOSITORY_URI")
    image_repo_name: str = Field(alias="IMAGE_REPO_NAME")
    resolved_source_version: Optional[str] = Field(
        default=None,
        alias="CODEBUILD_RESOLVED_SOURCE_VERSION"
    )
    aws_region: str = Field(default="us-east-1", alias="AWS_DEFAULT_REGION")
    app_name: Optional[str] = Field(
        default=None,
        alias="APP_NAME",
        description="Container name in the manifest; defaults to the repository name"
    )
    build_context: str = Field(default=".", alias="DOCKER_BUILD_CONTEXT")

    model_config = SettingsConfigDict(
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def container_name(self) -> str:
        return self.app_name or self.image_repo_name

    @property
    def image_tag(self) -> str:
        return resolve_image_tag(self.resolved_source_version)

    @property
    def registry_host(self) -> str:
        return self.ecr_repository_uri.split('/', 1)[0]


@dataclass
class BuildResult:
    """What a build published."""
    tag: str
    image_uri: str
    pushed_tags: List[str]
    manifest_path: Path
    tag_path: Path


def run_command(args: Sequence[str], input: Optional[bytes] = None) -> subprocess.CompletedProcess:
    return subprocess.run(list(args), input=input, check=True, capture_output=True)


class ImagePublisher:
    """Builds and pushes the application image.

    ``runner`` executes one command (``subprocess.run`` semantics with
    ``check=True``); tests swap it for a fake.
    """

    def __init__(self, env: BuildEnvironment, clients: Optional[AWSClientManager] = None,
                 runner: Runner = run_command):
        self.env = env
        self.clients = clients or AWSClientManager(region=env.aws_region)
        self.runner = runner

    def _run(self, step: str, args: Sequence[str], input: Optional[bytes] = None) -> None:
        logger.info(f"Running: {' '.join(args)}")
        try:
            self.runner(args, input=input)
        except subprocess.CalledProcessError as e:
            output = e.stderr.decode('utf-8', errors='replace').strip() if e.stderr else ''
            raise ProviderError(step, f"'{' '.join(args)}' exited with {e.returncode}: {output}") from e
        except OSError as e:
            raise ProviderError(step, f"cannot run {args[0]}: {e}") from e

    def login(self) -> None:
        """Log docker in to the registry with a token from ECR. The password never touches argv."""
        ecr = self.clients.get_client('ecr')
        response = call_aws('ecr-login', ecr.get_authorization_token)
        token_data = response['authorizationData'][0]
        token = base64.b64decode(token_data['authorizationToken']).decode('utf-8')
        username, password = token.split(':', 1)

        self._run('ecr-login', [
            "docker", "login", "--username", username, "--password-stdin", self.env.registry_host
        ], input=password.encode())
        logger.info(f"Logged in to {self.env.registry_host}")

    def build(self) -> str:
        local_image = f"{self.env.image_repo_name}:{DEFAULT_IMAGE_TAG}"
        self._run('docker-build', ["docker", "build", "-t", local_image, self.env.build_context])
        return local_image

    def tag_and_push(self, local_image: str, tag: str) -> List[str]:
        tags = [DEFAULT_IMAGE_TAG] if tag == DEFAULT_IMAGE_TAG else [DEFAULT_IMAGE_TAG, tag]
        for t in tags:
            self._run('docker-tag', ["docker", "tag", local_image, f"{self.env.ecr_repository_uri}:{t}"])

        pushed = []
        for t in tags:
            self._run('docker-push', ["docker", "push", f"{self.env.ecr_repository_uri}:{t}"])
            pushed.append(t)
            logger.info(f"Pushed {self.env.ecr_repository_uri}:{t}")
        return pushed

    @log_execution_time("image build & publish")
    def publish(self, manifest_path: str = MANIFEST_FILE, tag_path: str = TAG_FILE) -> BuildResult:
        """Login, build, tag, push, then write ``imagedefinitions.json``.

        ``image_tag.txt`` is written first so it exists even when the build fails.
        Tags pushed before a failure stay in the registry.
        """
        tag = self.env.image_tag
        logger.info(f"🏷️ Image tag: {tag}")
        tag_file = write_tag_file(tag, tag_path)

        self.login()
        local_image = self.build()
        pushed = self.tag_and_push(local_image, tag)

        definitions = build_image_definitions(self.env.container_name, self.env.ecr_repository_uri, tag)
        manifest = write_manifest(definitions, manifest_path)
        logger.info(f"✅ Published {definitions[0].imageUri}")
        return BuildResult(
            tag=tag,
            image_uri=definitions[0].imageUri,
            pushed_tags=pushed,
            manifest_path=manifest,
            tag_path=tag_file,
        )
