"""
Container environments driven through the `docker` CLI.

Images are the persistent environments; every command runs in a throwaway
container that is removed afterwards whether or not the command succeeded.
"""

import logging
import shutil
import subprocess
import tempfile
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..common_utils import safe_print, stream_subprocess
from ..errors import ContainerBuildError, ContainerError, OperationCancelled
from ..lockmanager import SingleFlight

logger = logging.getLogger(__name__)

DEFAULT_BASE_IMAGE = "python:3.11-slim"


def temp_environment_name(prefix: str = "sapkg-temp") -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


@dataclass
class ExecResult:
    container: str
    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def render_dockerfile(
    base_image: str,
    requirements: bool = False,
    artifact: Optional[str] = None,
    upgrade_pip: bool = True,
) -> str:
    lines = [f"FROM {base_image}", "WORKDIR /app"]
    if upgrade_pip:
        lines.append("RUN pip install --upgrade pip")
    if requirements:
        lines.append("COPY requirements.txt /app/requirements.txt")
        lines.append("RUN pip install -r requirements.txt")
    if artifact:
        lines.append(f"COPY {artifact} /tmp/{artifact}")
        lines.append(f"RUN pip install /tmp/{artifact} && rm -f /tmp/{artifact}")
    lines.append('CMD ["python"]')
    return "\n".join(lines) + "\n"


class ContainerProvider:
    """Builds, lists, runs and removes sapkg container environments."""

    def __init__(
        self,
        docker_bin: str = "docker",
        timeout: Optional[float] = 900.0,
        on_output: Optional[Callable[[str], None]] = safe_print,
    ):
        self.docker_bin = docker_bin
        self.timeout = timeout
        self.on_output = on_output
        self._creations = SingleFlight()
        self._image_locks: Dict[str, threading.Lock] = {}
        self._image_locks_guard = threading.Lock()

    def _image_lock(self, name: str) -> threading.Lock:
        with self._image_locks_guard:
            return self._image_locks.setdefault(name, threading.Lock())

    def available(self) -> bool:
        return shutil.which(self.docker_bin) is not None

    def _run(self, args: List[str]) -> subprocess.CompletedProcess:
        return subprocess.run(
            [self.docker_bin] + args, capture_output=True, text=True, timeout=self.timeout
        )

    def _build(self, name: str, context_dir: Path, cancel_event=None) -> None:
        returncode, output = stream_subprocess(
            [self.docker_bin, "build", "--rm", "-t", name, str(context_dir)],
            on_output=self.on_output,
            timeout=self.timeout,
            cancel_event=cancel_event,
        )
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled(f"build of image '{name}' cancelled")
        if returncode != 0:
            last_line = output.strip().splitlines()[-1] if output.strip() else f"exit code {returncode}"
            raise ContainerBuildError(name, f"docker build failed: {last_line}")

    def image_exists(self, name: str) -> bool:
        result = self._run(["image", "inspect", name])
        return result.returncode == 0

    def create_container(
        self,
        name: str,
        base_image: str = DEFAULT_BASE_IMAGE,
        requirements_file: Optional[str] = None,
        cancel_event=None,
    ) -> str:
        """
        Build an image tagged `name` from `base_image`, optionally installing a
        requirements file into it. Build output is streamed to `on_output`.
        The build context lives in a temporary directory removed afterwards.
        """
        if self.on_output:
            self.on_output(f"🐳 Creating Docker environment '{name}'...")
        with tempfile.TemporaryDirectory(prefix="sapkg-build-") as context:
            context_dir = Path(context)
            has_requirements = bool(requirements_file) and Path(requirements_file).is_file()
            if requirements_file and not has_requirements:
                logger.warning("Requirements file %s not found; building without it", requirements_file)
            if has_requirements:
                shutil.copyfile(requirements_file, context_dir / "requirements.txt")
            (context_dir / "Dockerfile").write_text(
                render_dockerfile(base_image, requirements=has_requirements), encoding="utf-8"
            )
            self._build(name, context_dir, cancel_event=cancel_event)
        return name

    def ensure_container(self, name: str, base_image: str = DEFAULT_BASE_IMAGE, cancel_event=None) -> str:
        """Builds `name` from `base_image` unless it already exists; concurrent calls share one build."""
        if self.image_exists(name):
            return name

        def _create():
            if self.image_exists(name):
                return name
            return self.create_container(name, base_image, cancel_event=cancel_event)

        return self._creations.do(name, _create)

    def install_into_container(
        self,
        name: str,
        artifact_path: Path,
        base_image: str = DEFAULT_BASE_IMAGE,
        package_name: Optional[str] = None,
        cancel_event=None,
    ) -> str:
        """
        Layers `pip install <artifact>` on top of image `name` (creating it from
        `base_image` first if needed) and re-tags the result as `name`.
        """
        artifact_path = Path(artifact_path)
        # Layers on one image are built one at a time
        with self._image_lock(name), tempfile.TemporaryDirectory(prefix="sapkg-build-") as context:
            self.ensure_container(name, base_image, cancel_event=cancel_event)
            context_dir = Path(context)
            shutil.copyfile(artifact_path, context_dir / artifact_path.name)
            (context_dir / "Dockerfile").write_text(
                render_dockerfile(name, artifact=artifact_path.name, upgrade_pip=False),
                encoding="utf-8",
            )
            try:
                self._build(name, context_dir, cancel_event=cancel_event)
            except ContainerBuildError as e:
                raise ContainerBuildError(name, f"installing {package_name or artifact_path.name} failed") from e
        return name

    def exec_in_container(self, name: str, command: List[str], cancel_event=None) -> ExecResult:
        """
        Run `command` in a fresh container from image `name`, streaming its
        combined stdout/stderr. The container is always removed afterwards.
        """
        container = temp_environment_name("sapkg-exec")
        created = self._run(["create", "--name", container, name] + list(command))
        if created.returncode != 0:
            raise ContainerError(name, f"cannot create container: {created.stderr.strip()}")
        try:
            exit_code, output = stream_subprocess(
                [self.docker_bin, "start", "--attach", container],
                on_output=self.on_output,
                timeout=self.timeout,
                cancel_event=cancel_event,
            )
        finally:
            removed = self._run(["rm", "--force", container])
            if removed.returncode != 0:
                logger.warning("Could not remove container %s: %s", container, removed.stderr.strip())
        return ExecResult(container=container, exit_code=exit_code, output=output)

    def list_containers(self) -> List[str]:
        """Locally known images, with the implicit ':latest' tag stripped."""
        result = self._run(["images", "--format", "{{.Repository}}:{{.Tag}}"])
        if result.returncode != 0:
            raise ContainerError("docker", f"cannot list images: {result.stderr.strip()}")
        environments = []
        for line in result.stdout.splitlines():
            tag = line.strip()
            if not tag or "<none>" in tag:
                continue
            if tag.endswith(":latest"):
                tag = tag[: -len(":latest")]
            if tag not in environments:
                environments.append(tag)
        return environments

    def remove_container(self, name: str) -> None:
        """Removes the image `name` (the environment itself)."""
        result = self._run(["rmi", "--force", name])
        if result.returncode != 0:
            raise ContainerError(name, f"cannot remove image: {result.stderr.strip()}")
