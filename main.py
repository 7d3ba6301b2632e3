"""CDKTF app entry point, used by ``cdktf synth``/``cdktf deploy``.

Reads the deployment config from ``AURORALAB_CONFIG`` (default ``deployment.yaml``).
"""

import os
from pathlib import Path

from cdktf import App

from auroralab.cli import load_config
from auroralab.engine.aws_stack import AuroraServerlessV2Stack
from auroralab.engine.executor import STACK_NAME
from auroralab.graph.deployment import build_deployment_graph
from auroralab.models.config import from_deployment_config
from auroralab.settings import settings


config = load_config(Path(os.getenv("AURORALAB_CONFIG", "deployment.yaml")))
infra = from_deployment_config(config, state_bucket=settings.state_bucket)
graph = build_deployment_graph(infra)
graph.validate()

app = App()
AuroraServerlessV2Stack(app, STACK_NAME, infra, graph)
app.synth()
