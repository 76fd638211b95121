"""Multi-unit deployment orchestration."""

from stackplan.orchestration.deployment import DeploymentOrchestrator

__all__ = ["DeploymentOrchestrator"]
