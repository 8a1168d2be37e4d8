"""
Local virtual environments: create on first use, then install into / run
inside them with the environment's own interpreter.
"""

import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Callable, List, Optional
from urllib.parse import quote, urlsplit, urlunsplit

from ..common_utils import safe_print, stream_subprocess
from ..errors import InstallError, OperationCancelled, SapkgError
from ..lockmanager import SingleFlight

logger = logging.getLogger(__name__)

TOKEN_ENV_VARS = ("SAPKG_INDEX_TOKEN", "PYPI_TOKEN")
LIST_FORMATS = ("columns", "freeze", "json")


def index_token() -> Optional[str]:
    for var in TOKEN_ENV_VARS:
        value = os.environ.get(var)
        if value:
            return value
    return None


def authenticated_index_url(url: str, token: Optional[str]) -> str:
    """Embeds `__token__:<token>` credentials into an index URL."""
    if not token:
        return url
    parts = urlsplit(url)
    if "@" in parts.netloc:
        return url
    netloc = f"__token__:{quote(token, safe='')}@{parts.netloc}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


class LocalEnvironmentProvider:
    """Manages virtual environments rooted at filesystem paths."""

    def __init__(
        self,
        python_executable: str = sys.executable,
        timeout: Optional[float] = 900.0,
        on_output: Optional[Callable[[str], None]] = None,
    ):
        self.python_executable = python_executable
        self.timeout = timeout
        self.on_output = on_output
        self._creations = SingleFlight()

    @staticmethod
    def env_python(root_path) -> Path:
        root = Path(root_path)
        if os.name == "nt":
            return root / "Scripts" / "python.exe"
        return root / "bin" / "python"

    def ensure_local(self, root_path) -> Path:
        """
        Create a virtualenv at `root_path` unless the directory already exists.
        An existing directory is trusted as-is. Concurrent callers for the same
        path share one creation.
        """
        root = Path(root_path).resolve()
        if root.exists():
            return root

        def _create():
            if root.exists():
                return root
            safe_print(f"🐍 Creating virtual environment at {root}...")
            self._create_venv(root)
            return root

        return self._creations.do(str(root), _create)

    def _create_venv(self, root: Path) -> None:
        result = subprocess.run(
            [self.python_executable, "-m", "venv", str(root)],
            capture_output=True,
            text=True,
            timeout=self.timeout,
        )
        if result.returncode != 0:
            raise SapkgError(
                f"Failed to create virtual environment at {root}: {result.stderr.strip()}"
            )

    def install_into_local(
        self,
        root_path,
        package_spec: str,
        index_url: Optional[str] = None,
        package_name: Optional[str] = None,
        cancel_event=None,
    ) -> str:
        """
        `pip install package_spec` with the environment's interpreter.
        `package_spec` may be a requirement string or a path to an artifact.
        Raises InstallError naming the package on a non-zero exit.
        """
        root = self.ensure_local(root_path)
        cmd = [str(self.env_python(root)), "-m", "pip", "install", "--disable-pip-version-check"]
        if index_url:
            cmd += ["--index-url", authenticated_index_url(index_url, index_token())]
        cmd.append(str(package_spec))

        logger.debug("Installing %s into %s", package_name or package_spec, root)
        returncode, output = stream_subprocess(
            cmd, on_output=self.on_output, timeout=self.timeout, cancel_event=cancel_event
        )
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled(f"install of {package_name or package_spec} cancelled")
        if returncode != 0:
            raise InstallError(package_name or str(package_spec), returncode, output)
        return output

    def uninstall_from_local(self, root_path, package_name: str) -> str:
        root = self.ensure_local(root_path)
        returncode, output = stream_subprocess(
            [str(self.env_python(root)), "-m", "pip", "uninstall", "-y", package_name],
            on_output=self.on_output,
            timeout=self.timeout,
        )
        if returncode != 0:
            raise InstallError(package_name, returncode, output)
        return output

    def list_installed(self, root_path, fmt: str = "columns") -> str:
        """`pip list --format <fmt>` output for the environment (columns, freeze or json)."""
        if fmt not in LIST_FORMATS:
            raise ValueError(f"Unknown list format: {fmt}")
        root = self.ensure_local(root_path)
        returncode, output = stream_subprocess(
            [str(self.env_python(root)), "-m", "pip", "list", "--format", fmt],
            timeout=self.timeout,
        )
        if returncode != 0:
            detail = output.strip().splitlines()[-1] if output.strip() else f"exit code {returncode}"
            raise SapkgError(f"pip list failed in {root}: {detail}")
        return output

    def run_in_local(self, root_path, args: List[str]) -> int:
        """Runs `python <args>` inside the environment with inherited stdio."""
        root = self.ensure_local(root_path)
        return subprocess.call([str(self.env_python(root))] + list(args))
