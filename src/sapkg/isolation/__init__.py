"""
Isolated execution environments for sapkg.

This package provides:
- Local virtual environments (LocalEnvironmentProvider)
- Docker image environments (ContainerProvider)
- EnvironmentProvider, which routes an install to whichever kind a target names
"""

from pathlib import Path
from typing import Optional

from ..models import EnvironmentTarget
from .containers import ContainerProvider, ExecResult, temp_environment_name
from .local import LocalEnvironmentProvider


class EnvironmentProvider:
    """One handle over both environment kinds, as used by the acquisition pipeline."""

    def __init__(
        self,
        local: Optional[LocalEnvironmentProvider] = None,
        containers: Optional[ContainerProvider] = None,
    ):
        self.local = local or LocalEnvironmentProvider()
        self.containers = containers or ContainerProvider()

    def ensure(self, target: EnvironmentTarget, cancel_event=None):
        if target.is_container:
            return self.containers.ensure_container(
                target.location, target.base_image, cancel_event=cancel_event
            )
        return self.local.ensure_local(target.location)

    def install(
        self,
        target: EnvironmentTarget,
        artifact_path: Path,
        package_name: str,
        index_url: Optional[str] = None,
        cancel_event=None,
    ) -> None:
        """Installs a downloaded artifact into `target`."""
        if target.is_container:
            self.containers.install_into_container(
                target.location,
                artifact_path,
                base_image=target.base_image,
                package_name=package_name,
                cancel_event=cancel_event,
            )
        else:
            self.local.install_into_local(
                target.location,
                artifact_path,
                index_url=index_url,
                package_name=package_name,
                cancel_event=cancel_event,
            )


__all__ = [
    "ContainerProvider",
    "EnvironmentProvider",
    "ExecResult",
    "LocalEnvironmentProvider",
    "temp_environment_name",
]
