"""Errors raised by auroralab."""

from typing import Any, Dict, Optional


class InvalidGraph(ValueError):
    """Raised when a resource graph is malformed (cycle, dangling edge, conflicting node)."""


class ProvisioningFailure(RuntimeError):
    """
    Raised when the provisioning engine fails to realize a submitted graph.

    The engine's own diagnostics (command, return code, output) are attached
    unmodified in ``details``.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}
