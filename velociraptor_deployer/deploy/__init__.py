"""Deployment pipeline: profiles, preflight, locking, firewall, rollback, orchestration."""

from velociraptor_deployer.deploy.orchestrator import DeploymentContext, DeploymentOrchestrator
from velociraptor_deployer.deploy.profiles import EnvironmentProfile, load_profile
from velociraptor_deployer.deploy.rollback import RollbackManager

__all__ = [
    "DeploymentContext",
    "DeploymentOrchestrator",
    "EnvironmentProfile",
    "RollbackManager",
    "load_profile",
]
