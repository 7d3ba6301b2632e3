"""CDKTF infrastructure engine."""

from .executor import (
    ApplyResult,
    CDKTFExecutor,
    submit,
    synth_infra,
    plan_infra,
    destroy_infra,
)
from .state import configure_backend, ensure_state_backend

__all__ = [
    "ApplyResult",
    "CDKTFExecutor",
    "submit",
    "synth_infra",
    "plan_infra",
    "destroy_infra",
    "configure_backend",
    "ensure_state_backend",
]
