"""Aurora Serverless v2 load-test lab, declared as a resource dependency graph."""

from .exceptions import InvalidGraph, ProvisioningFailure

__version__ = "0.1.0"

__all__ = ["InvalidGraph", "ProvisioningFailure", "__version__"]
