"""Command line interface."""

import json
from pathlib import Path
from typing import NoReturn, Optional, Tuple

import click
import structlog
import yaml
from pydantic import ValidationError

from auroralab import __version__
from auroralab.engine.executor import destroy_infra, plan_infra, submit, synth_infra
from auroralab.exceptions import InvalidGraph, ProvisioningFailure
from auroralab.graph.builder import ResourceGraph
from auroralab.graph.deployment import build_deployment_graph
from auroralab.logging import setup_logging
from auroralab.models.config import DeploymentConfig, InfraModel, from_deployment_config
from auroralab.settings import settings


logger = structlog.get_logger()

load_test_option = click.option(
    "--load-test/--no-load-test",
    default=None,
    help="Include the load-test fleet. Defaults to the config file's load_test.enabled.",
)
workdir_option = click.option(
    "--workdir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Working directory for CDKTF output. Defaults to <workdir_base>/<name>.",
)


def load_config(path: Path) -> DeploymentConfig:
    """Parse a YAML deployment config file."""
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise click.ClickException(f"Could not parse {path}: {e}")

    try:
        return DeploymentConfig.model_validate(raw)
    except ValidationError as e:
        raise click.ClickException(f"Invalid configuration in {path}:\n{e}")


def prepare(
    config_path: Path, load_test: Optional[bool]
) -> Tuple[DeploymentConfig, InfraModel, ResourceGraph]:
    config = load_config(config_path)
    infra = from_deployment_config(
        config,
        state_bucket=settings.state_bucket,
        include_load_test=load_test,
    )

    try:
        graph = build_deployment_graph(infra)
    except InvalidGraph as e:
        raise click.ClickException(f"Invalid resource graph: {e}")

    return config, infra, graph


def resolve_workdir(config: DeploymentConfig, workdir: Optional[Path]) -> Path:
    return workdir or Path(settings.workdir_base) / config.name


def confirm_plan(plan_output: str) -> bool:
    click.echo(plan_output)
    return click.confirm("Apply this plan?", default=False)


def fail(message: str, error: Exception) -> NoReturn:
    details = getattr(error, "details", None)
    logger.error(message, error=str(error), details=details)
    if details:
        click.echo(json.dumps(details, indent=2, default=str), err=True)
    raise click.ClickException(f"{message}: {error}")


@click.group()
@click.option("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ERROR).")
@click.version_option(__version__, prog_name="auroralab")
def cli(log_level: Optional[str]):
    """Declare and provision the Aurora Serverless v2 load-test lab."""
    setup_logging(log_level or settings.log_level)


@cli.command(name="graph")
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@load_test_option
@click.option("--json", "as_json", is_flag=True, help="Print the full graph as JSON.")
def show_graph(config_path: Path, load_test: Optional[bool], as_json: bool):
    """Print the resource graph in creation order."""
    _, _, graph = prepare(config_path, load_test)

    if as_json:
        click.echo(json.dumps(graph.to_dict(), indent=2, default=str))
        return

    for position, node in enumerate(graph.topological_order(), start=1):
        after = ", ".join(sorted(graph.dependencies_of(node))) or "-"
        click.echo(f"{position:>2}. {node.logical_id} ({node.kind.value}) after: {after}")


@cli.command()
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@load_test_option
@workdir_option
def synth(config_path: Path, load_test: Optional[bool], workdir: Optional[Path]):
    """Synthesize Terraform JSON without touching the cloud."""
    config, infra, graph = prepare(config_path, load_test)
    stack_dir = synth_infra(graph, infra, resolve_workdir(config, workdir))

    click.echo(str(stack_dir))


@cli.command()
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@load_test_option
@workdir_option
def plan(config_path: Path, load_test: Optional[bool], workdir: Optional[Path]):
    """Show the changes a deploy would make."""
    config, infra, graph = prepare(config_path, load_test)

    try:
        output = plan_infra(graph, infra, resolve_workdir(config, workdir))
    except ProvisioningFailure as e:
        fail("Plan failed", e)

    click.echo(output)


@cli.command()
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@load_test_option
@workdir_option
def deploy(config_path: Path, load_test: Optional[bool], workdir: Optional[Path]):
    """Submit the resource graph to the provisioning engine."""
    config, infra, graph = prepare(config_path, load_test)

    logger.info("Deploying", deployment=config.name, nodes=len(graph))

    try:
        result = submit(graph, infra, resolve_workdir(config, workdir), confirm=confirm_plan)
    except ProvisioningFailure as e:
        fail("Deployment failed", e)

    if not result.applied:
        click.echo("Nothing applied")
        return

    for key, value in sorted(result.outputs.items()):
        click.echo(f"{key} = {value}")


@cli.command()
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@load_test_option
@workdir_option
@click.confirmation_option(prompt="Destroy every resource of this deployment?")
def destroy(config_path: Path, load_test: Optional[bool], workdir: Optional[Path]):
    """Tear down every resource of the deployment."""
    config, infra, graph = prepare(config_path, load_test)

    try:
        destroyed = destroy_infra(
            graph, infra, resolve_workdir(config, workdir), confirm=confirm_plan
        )
    except ProvisioningFailure as e:
        fail("Destroy failed", e)

    if not destroyed:
        click.echo("Nothing destroyed")
        return

    click.echo(f"Destroyed {config.name}")


def main():
    cli(auto_envvar_prefix="AURORALAB")


if __name__ == "__main__":
    main()
