"""pushdeploy - Push-triggered deployment orchestration over SSH."""

__version__ = "0.1.0"
__author__ = "pushdeploy maintainers"

from pushdeploy.core.config import Settings
from pushdeploy.deploy.models import Artifact, DeploymentRun, Target

__all__ = ["Settings", "Artifact", "DeploymentRun", "Target", "__version__"]
