"""ECR repository for the application image, and the release history it holds."""
import json
import logging
import re
from typing import Any, Dict, List, Optional

from fargate_deploy.aws.base import Changes, Resource, ResourceContext
from fargate_deploy.aws.utils import paginate
from fargate_deploy.exceptions import ProviderError
from fargate_deploy.models import DEFAULT_IMAGE_TAG, SHORT_HASH_LENGTH, DeploymentRecord

logger = logging.getLogger(__name__)

KEEP_IMAGE_COUNT = 30
COMMIT_TAG_PATTERN = re.compile(rf"^[0-9a-f]{{{SHORT_HASH_LENGTH}}}$")


def lifecycle_policy(keep: int = KEEP_IMAGE_COUNT) -> str:
    return json.dumps({
        "rules": [{
            "rulePriority": 1,
            "description": f"Keep last {keep} images",
            "selection": {
                "tagStatus": "any",
                "countType": "imageCountMoreThan",
                "countNumber": keep,
            },
            "action": {"type": "expire"},
        }]
    })


class RepositoryResource(Resource):
    """Image repository. Tags must stay mutable so ``latest`` can move."""
    kind = "ecr_repository"

    def __init__(self, name: str = "repository"):
        super().__init__(name)

    def read(self, ctx: ResourceContext) -> Optional[Dict[str, Any]]:
        ecr = ctx.client('ecr')
        try:
            response = ctx.read(self.name, ecr.describe_repositories,
                                repositoryNames=[ctx.config.repository_name])
        except ProviderError as e:
            if e.code == 'RepositoryNotFoundException':
                return None
            raise
        repo = response['repositories'][0]
        return {
            'name': repo['repositoryName'],
            'arn': repo['repositoryArn'],
            'uri': repo['repositoryUri'],
            'tag_mutability': repo.get('imageTagMutability', 'MUTABLE'),
            'scan_on_push': repo.get('imageScanningConfiguration', {}).get('scanOnPush', False),
        }

    def diff(self, ctx: ResourceContext, live: Dict[str, Any]) -> Changes:
        changes: Changes = {}
        if live['tag_mutability'] != 'MUTABLE':
            changes['tag_mutability'] = (live['tag_mutability'], 'MUTABLE')
        if not live['scan_on_push']:
            changes['scan_on_push'] = (False, True)
        return changes

    def update(self, ctx: ResourceContext, live: Dict[str, Any], changes: Changes) -> Dict[str, Any]:
        ecr = ctx.client('ecr')
        if 'tag_mutability' in changes:
            ctx.mutate(self.name, ecr.put_image_tag_mutability,
                       repositoryName=live['name'], imageTagMutability='MUTABLE')
        if 'scan_on_push' in changes:
            ctx.mutate(self.name, ecr.put_image_scanning_configuration,
                       repositoryName=live['name'], imageScanningConfiguration={'scanOnPush': True})
        return {**live, 'tag_mutability': 'MUTABLE', 'scan_on_push': True}

    def create(self, ctx: ResourceContext) -> Dict[str, Any]:
        ecr = ctx.client('ecr')
        response = ctx.mutate(
            self.name, ecr.create_repository,
            repositoryName=ctx.config.repository_name,
            imageTagMutability='MUTABLE',
            imageScanningConfiguration={'scanOnPush': True},
            tags=[{'Key': k, 'Value': v} for k, v in ctx.tags(self.name).items()],
        )
        repo = response['repository']
        ctx.mutate(self.name, ecr.put_lifecycle_policy,
                   repositoryName=repo['repositoryName'], lifecyclePolicyText=lifecycle_policy())

        logger.info(f"Created ECR repository: {repo['repositoryUri']}")
        return {
            'name': repo['repositoryName'],
            'arn': repo['repositoryArn'],
            'uri': repo['repositoryUri'],
            'tag_mutability': 'MUTABLE',
            'scan_on_push': True,
        }

    def delete(self, ctx: ResourceContext, live: Dict[str, Any]) -> None:
        ecr = ctx.client('ecr')
        ctx.mutate(self.name, ecr.delete_repository, repositoryName=live['name'], force=True)
        logger.info(f"Deleted ECR repository: {live['name']}")


def list_deployment_records(ecr: Any, repository_name: str, repository_uri: str) -> List[DeploymentRecord]:
    """Published releases, newest first.

    Each commit-hash tag becomes one record; the image that also carries
    ``latest`` is flagged as the current pointer.
    """
    images = paginate(repository_name, ecr, 'describe_images', 'imageDetails',
                      repositoryName=repository_name)
    records: List[DeploymentRecord] = []
    for image in images:
        tags = image.get('imageTags', [])
        is_latest = DEFAULT_IMAGE_TAG in tags
        commit_tags = [t for t in tags if COMMIT_TAG_PATTERN.match(t)]
        if not commit_tags and is_latest:
            records.append(DeploymentRecord(
                commit=None, tag=DEFAULT_IMAGE_TAG, image_uri=f"{repository_uri}:{DEFAULT_IMAGE_TAG}",
                pushed_at=image.get('imagePushedAt'), is_latest=True,
            ))
        for tag in commit_tags:
            records.append(DeploymentRecord(
                commit=tag, tag=tag, image_uri=f"{repository_uri}:{tag}",
                pushed_at=image.get('imagePushedAt'), is_latest=is_latest,
            ))

    records.sort(key=lambda r: (r.pushed_at is not None, r.pushed_at), reverse=True)
    return records
