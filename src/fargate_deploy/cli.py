# cli.py
import functools
import json
import logging
import os
import sys

import click

from fargate_deploy.aws.base import Action
from fargate_deploy.aws.ecr_repository import list_deployment_records
from fargate_deploy.aws.utils import AWSClientManager, call_aws
from fargate_deploy.build.artifacts import MANIFEST_FILE, TAG_FILE, render_buildspec, write_buildspec
from fargate_deploy.config.deployment import load_deployment_config
from fargate_deploy.config.settings import get_settings
from fargate_deploy.exceptions import ConfigError, DeployError
from fargate_deploy.orchestration.deployment_state import DeploymentStateManager
from fargate_deploy.utils.logging import configure_logging

logger = logging.getLogger(__name__)


def handle_errors(func):
    """Print ``❌ <step>: <message>`` and exit 1 for any deployment failure."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DeployError as e:
            click.echo(f"❌ {e.step}: {e.message}", err=True)
            sys.exit(1)
        except KeyboardInterrupt:
            click.echo("⚠️ Cancelled; already applied changes were kept. Re-run to continue.", err=True)
            sys.exit(130)
    return wrapper


def write_credentials(path: str, credentials: dict) -> None:
    """Write secrets to a file only the current user can read."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w') as f:
        json.dump(credentials, f, indent=2)
    os.chmod(path, 0o600)


def _config(ctx):
    if 'config' not in ctx.obj:
        ctx.obj['config'] = load_deployment_config(ctx.obj['config_path'])
    return ctx.obj['config']


def _orchestrator(ctx):
    from fargate_deploy.orchestration.orchestrator import Orchestrator
    return Orchestrator(_config(ctx), get_settings())


def _print_changes(changes):
    for change in changes:
        print(f"  {change.describe()}")


@click.group()
@click.option("--config", "-c", "config_path", default=None,
              help="Deployment config file (YAML or JSON). Defaults to CONFIG_FILE or deploy.yaml")
@click.option("--log-level", default=None, help="Override LOG_LEVEL")
@click.pass_context
def cli(ctx, config_path, log_level):
    """Provision and operate an ECS Fargate deployment"""
    settings = get_settings()
    configure_logging(log_level or settings.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path or settings.config_file


@cli.command()
@click.pass_context
@handle_errors
def plan(ctx):
    """Show what apply would change, without changing anything"""
    result = _orchestrator(ctx).plan()
    print(f"Plan for {_config(ctx).app_name}:")
    _print_changes(result.changes)

    counts = {action: len(result.by_action(action))
              for action in (Action.CREATE, Action.UPDATE, Action.NOOP, Action.CONFLICT)}
    print(f"\n{counts[Action.CREATE]} to create, {counts[Action.UPDATE]} to update, "
          f"{counts[Action.NOOP]} unchanged, {counts[Action.CONFLICT]} conflicts")
    if result.conflicts:
        print("⚠️ Conflicting resources must be reconciled manually before apply")


@cli.command()
@click.pass_context
@handle_errors
def apply(ctx):
    """Create or update every resource to match the config"""
    settings = get_settings()
    result = _orchestrator(ctx).apply()
    _print_changes(result.changes)

    if result.credentials:
        write_credentials(settings.credentials_file, result.credentials)
        print(f"🔑 New deployer credentials written to {settings.credentials_file} (mode 0600). "
              f"They are shown only once.")

    if result.cancelled:
        print("⚠️ Apply cancelled; re-run to continue")
        sys.exit(130)

    dns_name = result.outputs.get('load-balancer', {}).get('dns_name')
    print(f"✅ Apply complete: {len(result.mutations)} changed, "
          f"{len(result.changes) - len(result.mutations)} unchanged")
    if dns_name:
        print(f"🌐 http://{dns_name}")


@cli.command()
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
@handle_errors
def destroy(ctx, yes):
    """Delete every resource of the deployment, dependents first"""
    config = _config(ctx)
    if not yes:
        click.confirm(f"Destroy every resource of {config.app_name} in {config.region}?", abort=True)
    result = _orchestrator(ctx).destroy()
    _print_changes(result.changes)
    if result.cancelled:
        print("⚠️ Destroy cancelled; re-run to continue")
        sys.exit(130)
    print(f"✅ Destroy complete: {len(result.deleted)} resources deleted")


@cli.command()
@click.option("--manifest", default=MANIFEST_FILE, show_default=True, help="Image definitions output file")
@click.option("--tag-file", default=TAG_FILE, show_default=True, help="Resolved tag output file")
@handle_errors
def build(manifest, tag_file):
    """Build and push the image from CodeBuild-style environment variables"""
    from pydantic import ValidationError

    from fargate_deploy.build.image import BuildEnvironment, ImagePublisher

    try:
        env = BuildEnvironment()
    except ValidationError as e:
        missing = ", ".join(str(err['loc'][0]) for err in e.errors())
        raise ConfigError(f"build environment incomplete: {missing}", step="build")

    result = ImagePublisher(env).publish(manifest_path=manifest, tag_path=tag_file)
    print(f"✅ Pushed {', '.join(result.pushed_tags)} to {env.ecr_repository_uri}")
    print(f"  Manifest: {result.manifest_path}")
    print(f"  Tag file: {result.tag_path}")


@cli.command()
@click.option("--manifest", default=MANIFEST_FILE, show_default=True, help="Image definitions file to deploy")
@click.pass_context
@handle_errors
def deploy(ctx, manifest):
    """Roll the service onto the image in MANIFEST and wait until it is healthy"""
    from fargate_deploy.orchestration.rollout import DeploymentTrigger

    result = DeploymentTrigger(_config(ctx), get_settings()).deploy(manifest)
    print(f"✅ {result.service_name} now runs {result.image_uri}")
    print(f"  Task definition: {result.task_definition_arn}")
    print(f"  Rollout took {result.duration_seconds:.1f}s")


@cli.command()
@click.option("--limit", default=20, show_default=True, help="Number of releases to show")
@click.pass_context
@handle_errors
def releases(ctx, limit):
    """List published images, newest first"""
    config = _config(ctx)
    ecr = AWSClientManager(get_settings(), region=config.region).get_client('ecr')
    response = call_aws('releases', ecr.describe_repositories, repositoryNames=[config.repository_name])
    repository_uri = response['repositories'][0]['repositoryUri']

    records = list_deployment_records(ecr, config.repository_name, repository_uri)
    if not records:
        print(f"No images in {repository_uri}")
        return
    for record in records[:limit]:
        pushed = record.pushed_at.isoformat() if record.pushed_at else "unknown"
        marker = " <- latest" if record.is_latest else ""
        print(f"  {record.tag:<8} {pushed}  {record.image_uri}{marker}")


@cli.command()
@click.option("--output", "-o", default="buildspec.yml", show_default=True, help="Output path, '-' for stdout")
@handle_errors
def buildspec(output):
    """Write the CodeBuild buildspec that runs the build step"""
    settings = get_settings()
    if output == "-":
        click.echo(render_buildspec(settings.tool_package), nl=False)
    else:
        path = write_buildspec(output, tool_package=settings.tool_package)
        print(f"✅ Wrote {path}")


@cli.command()
def status():
    """Show the journal of the last apply/destroy run"""
    manager = DeploymentStateManager(get_settings().state_file)
    if manager.load_state() is None:
        print("No deployment state found")
        return
    print(json.dumps(manager.get_status_summary(), indent=2, default=str))


@cli.command()
@click.pass_context
def show_config(ctx):
    """Show current configuration"""
    settings = get_settings()

    print("Current Configuration:")
    print(f"  Deployment Mode: {settings.deployment_mode}")
    print(f"  AWS Region: {settings.aws_region}")
    print(f"  AWS Endpoint: {settings.aws_endpoint_url}")
    print(f"  Max Concurrency: {settings.max_concurrency}")
    print(f"  Provider Retries: {settings.provider_max_attempts} (delay {settings.provider_retry_delay}s)")
    print(f"  Rollout Timeout: {settings.rollout_timeout}s")
    print(f"  State File: {settings.state_file}")

    try:
        config = _config(ctx)
    except ConfigError as e:
        print(f"\nDeployment config: {e.message}")
        return
    print(f"\nDeployment config ({ctx.obj['config_path']}):")
    print(f"  App: {config.app_name}")
    print(f"  Region: {config.region}")
    print(f"  CI/CD Provider: {config.cicd_provider}")
    print(f"  Source: {config.source_repository} ({config.branch})")
    print(f"  Container Port: {config.container_port}")
    print(f"  Service: {config.service.desired_count} x {config.service.cpu} CPU / {config.service.memory} MiB")
    print(f"  VPC: {config.network.cidr_block} ({len(config.network.subnets)} subnets)")


if __name__ == "__main__":
    cli()
