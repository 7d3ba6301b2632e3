"""CDKTF executor for synthesizing and submitting infrastructure."""

import json
import os
import subprocess
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Any, Optional

import structlog
from botocore.exceptions import BotoCoreError, ClientError

from auroralab.exceptions import ProvisioningFailure
from auroralab.graph.builder import ResourceGraph
from auroralab.models.config import InfraModel
from auroralab.settings import settings
from .state import ensure_state_backend


logger = structlog.get_logger()

STACK_NAME = "aurora-serverless-v2"
PLAN_FILE = "tfplan"

# Shown the plan output, returns whether to go ahead
ConfirmPlan = Callable[[str], bool]


@dataclass
class ApplyResult:
    """Handle on a completed provisioning run."""

    stack_name: str
    stack_dir: Path
    graph_fingerprint: str
    outputs: Dict[str, Any] = field(default_factory=dict)
    applied: bool = True


class CDKTFExecutor:
    """Executor for CDKTF operations."""

    def __init__(self, workdir: Path, terraform_bin: Optional[str] = None):
        """
        Initialize CDKTF executor.

        Args:
            workdir: Working directory for CDKTF operations
            terraform_bin: Terraform executable, defaults to the configured one
        """
        self.workdir = workdir
        self.workdir.mkdir(parents=True, exist_ok=True)
        self.terraform_bin = terraform_bin or settings.terraform_bin

    @property
    def stack_dir(self) -> Path:
        return self.workdir / "cdktf.out" / "stacks" / STACK_NAME

    def synth(self, graph: ResourceGraph, infra: InfraModel) -> Path:
        """
        Synthesize the graph to Terraform JSON.

        Args:
            graph: Deployment graph
            infra: Infrastructure model

        Returns:
            Directory holding the synthesized stack

        Raises:
            InvalidGraph: If the graph is malformed
        """
        from cdktf import App

        from .aws_stack import AuroraServerlessV2Stack

        graph.validate()

        app = App(outdir=str(self.workdir / "cdktf.out"))
        AuroraServerlessV2Stack(app, STACK_NAME, infra, graph)
        app.synth()

        logger.info("Synthesized infrastructure", stack=STACK_NAME, outdir=str(self.stack_dir))

        return self.stack_dir

    def plan(self, graph: ResourceGraph, infra: InfraModel) -> str:
        """
        Show the changes the engine would make.

        Returns:
            Terraform's plan output
        """
        self._prepare_backend(infra)
        stack_dir = self.synth(graph, infra)

        self._run_terraform(["init", "-input=false"], cwd=stack_dir)
        result = self._run_terraform(["plan", "-input=false", "-no-color"], cwd=stack_dir)

        return result.stdout.decode() if result.stdout else ""

    def apply(
        self,
        graph: ResourceGraph,
        infra: InfraModel,
        auto_approve: bool = True,
        confirm: Optional[ConfirmPlan] = None,
    ) -> ApplyResult:
        """
        Apply infrastructure changes.

        Without ``auto_approve`` the changes are planned into a plan file,
        ``confirm`` is shown the plan, and only a confirmed plan is applied.
        Nothing is applied when there is no ``confirm`` to ask.

        Args:
            graph: Deployment graph
            infra: Infrastructure model
            auto_approve: Whether to auto-approve changes
            confirm: Asked before applying a saved plan

        Returns:
            ApplyResult with outputs, ``applied=False`` if the plan was declined

        Raises:
            InvalidGraph: If the graph is malformed
            ProvisioningFailure: If the engine fails
        """
        fingerprint = graph.fingerprint()

        self._prepare_backend(infra)

        stack_dir = self.synth(graph, infra)

        self._run_terraform(["init", "-input=false"], cwd=stack_dir)

        if not self._apply(stack_dir, [], auto_approve, confirm):
            return ApplyResult(
                stack_name=stack_dir.name,
                stack_dir=stack_dir,
                graph_fingerprint=fingerprint,
                applied=False,
            )

        outputs = self._get_outputs(stack_dir)

        return ApplyResult(
            stack_name=stack_dir.name,
            stack_dir=stack_dir,
            graph_fingerprint=fingerprint,
            outputs=outputs,
        )

    def destroy(
        self,
        graph: ResourceGraph,
        infra: InfraModel,
        auto_approve: bool = True,
        confirm: Optional[ConfirmPlan] = None,
    ) -> bool:
        """
        Destroy infrastructure.

        Args:
            graph: Deployment graph
            infra: Infrastructure model
            auto_approve: Whether to auto-approve destruction
            confirm: Asked before applying a saved destroy plan

        Returns:
            Whether anything was destroyed

        Raises:
            ProvisioningFailure: If the engine fails
        """
        # Synthesize (needed to get current configuration)
        stack_dir = self.synth(graph, infra)

        self._run_terraform(["init", "-input=false"], cwd=stack_dir)

        return self._apply(stack_dir, ["-destroy"], auto_approve, confirm)

    def _apply(
        self,
        stack_dir: Path,
        plan_args: list[str],
        auto_approve: bool,
        confirm: Optional[ConfirmPlan],
    ) -> bool:
        """Run ``terraform apply`` directly, or through a confirmed plan file."""
        if auto_approve:
            self._run_terraform(
                ["apply", "-json", "-input=false", "-auto-approve", *plan_args], cwd=stack_dir
            )
            return True

        # terraform only accepts -json without -auto-approve for a saved plan
        result = self._run_terraform(
            ["plan", "-input=false", "-no-color", f"-out={PLAN_FILE}", *plan_args],
            cwd=stack_dir,
        )
        plan_output = result.stdout.decode() if result.stdout else ""

        if confirm is None or not confirm(plan_output):
            logger.info("Plan not confirmed, nothing applied", stack_dir=str(stack_dir))
            return False

        self._run_terraform(["apply", "-json", "-input=false", PLAN_FILE], cwd=stack_dir)
        return True

    def _prepare_backend(self, infra: InfraModel) -> None:
        """Create the state bucket and lock table, surfacing AWS errors as ProvisioningFailure."""
        try:
            ensure_state_backend(infra)
        except (BotoCoreError, ClientError) as e:
            raise ProvisioningFailure(
                f"Could not prepare state backend: {e}",
                {"bucket": infra.state_backend_bucket, "error": str(e)},
            ) from e

    def _run_terraform(self, args: list[str], cwd: Path) -> subprocess.CompletedProcess:
        """
        Run terraform command.

        Args:
            args: Terraform command arguments
            cwd: Working directory

        Returns:
            Completed process

        Raises:
            ProvisioningFailure: If terraform is missing or the command fails
        """
        if not shutil.which(self.terraform_bin):
            raise ProvisioningFailure(
                f"{self.terraform_bin} command not found. Please install Terraform.",
                {"terraform_bin": self.terraform_bin},
            )

        cmd = [self.terraform_bin] + args

        logger.info("Running terraform", command=" ".join(cmd), cwd=str(cwd))

        try:
            return subprocess.run(
                cmd,
                cwd=cwd,
                capture_output=True,
                check=True,
                env={**os.environ, "TF_IN_AUTOMATION": "1"},
            )
        except subprocess.CalledProcessError as e:
            raise ProvisioningFailure(
                f"Terraform command failed: {' '.join(cmd)}",
                {
                    "command": cmd,
                    "returncode": e.returncode,
                    "stdout": e.stdout.decode() if e.stdout else None,
                    "stderr": e.stderr.decode() if e.stderr else None,
                },
            ) from e

    def _get_outputs(self, stack_dir: Path) -> Dict[str, Any]:
        """
        Get Terraform outputs.

        Args:
            stack_dir: Stack directory

        Returns:
            Dictionary of outputs
        """
        result = self._run_terraform(["output", "-json"], cwd=stack_dir)
        outputs_raw = json.loads(result.stdout)

        # Extract values from Terraform output format
        return {key: value.get("value") for key, value in outputs_raw.items()}

    def cleanup(self) -> None:
        """Remove working directory."""
        if self.workdir.exists():
            shutil.rmtree(self.workdir)
            logger.info("Cleaned up working directory", workdir=str(self.workdir))


# Convenience functions
def submit(
    graph: ResourceGraph,
    infra: InfraModel,
    workdir: Path,
    confirm: Optional[ConfirmPlan] = None,
) -> ApplyResult:
    """
    Hand a deployment graph to the provisioning engine.

    The graph is validated first and is never modified. No retries are made:
    a failing run surfaces as ProvisioningFailure and must be re-invoked.

    Args:
        graph: Deployment graph
        infra: Infrastructure model
        workdir: Working directory
        confirm: Asked before applying when auto-approve is off

    Returns:
        ApplyResult
    """
    graph.validate()

    executor = CDKTFExecutor(workdir)
    result = executor.apply(graph, infra, auto_approve=settings.auto_approve, confirm=confirm)

    if not result.applied:
        return result

    logger.info(
        "Graph realized",
        graph=graph.name,
        fingerprint=result.graph_fingerprint,
        outputs=sorted(result.outputs),
    )

    return result


def synth_infra(graph: ResourceGraph, infra: InfraModel, workdir: Path) -> Path:
    """
    Synthesize infrastructure to Terraform JSON.

    Args:
        graph: Deployment graph
        infra: Infrastructure model
        workdir: Working directory

    Returns:
        Directory holding the synthesized stack
    """
    executor = CDKTFExecutor(workdir)
    return executor.synth(graph, infra)


def plan_infra(graph: ResourceGraph, infra: InfraModel, workdir: Path) -> str:
    """
    Plan infrastructure changes.

    Args:
        graph: Deployment graph
        infra: Infrastructure model
        workdir: Working directory

    Returns:
        Terraform's plan output
    """
    executor = CDKTFExecutor(workdir)
    return executor.plan(graph, infra)


def destroy_infra(
    graph: ResourceGraph,
    infra: InfraModel,
    workdir: Path,
    confirm: Optional[ConfirmPlan] = None,
) -> bool:
    """
    Destroy infrastructure.

    Args:
        graph: Deployment graph
        infra: Infrastructure model
        workdir: Working directory
        confirm: Asked before destroying when auto-approve is off

    Returns:
        Whether anything was destroyed
    """
    executor = CDKTFExecutor(workdir)
    if not executor.destroy(graph, infra, auto_approve=settings.auto_approve, confirm=confirm):
        return False

    # Cleanup workdir after successful destroy
    executor.cleanup()
    return True
