"""
sapkg index client - fetches release metadata from a mirror's JSON API and
downloads the matching artifact into the cache directory.
"""

import hashlib
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import requests

from ..common_utils import safe_unlink
from ..errors import IntegrityError, NetworkError, OperationCancelled, PackageNotFoundError
from ..models import Mirror, PackageMetadata

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


@dataclass
class ReleaseInfo:
    """What the index told us about one (name, version)."""

    name: str
    version: str
    metadata: PackageMetadata
    artifact_url: str
    filename: str
    sha256: str
    mirror: str


def _split_keywords(raw) -> list:
    if not raw:
        return []
    if isinstance(raw, list):
        return [str(k).strip() for k in raw if str(k).strip()]
    separator = "," if "," in raw else None
    return [k.strip() for k in raw.split(separator) if k.strip()]


def _requirement_name(requirement: str) -> str:
    """`urllib3 (<3,>=1.21.1) ; extra == "socks"` -> `urllib3`"""
    head = requirement.split(";")[0].strip()
    for stop in " ([<>=!~":
        head = head.split(stop)[0]
    return head.strip()


def parse_metadata(info: Dict[str, Any]) -> PackageMetadata:
    """Maps the `info` block of the JSON API onto PackageMetadata."""
    requires = info.get("requires_dist") or []
    dependencies = []
    for requirement in requires:
        # Optional extras are not part of the package's own dependency set
        if "extra ==" in requirement:
            continue
        name = _requirement_name(requirement)
        if name and name not in dependencies:
            dependencies.append(name)
    return PackageMetadata(
        description=info.get("summary") or "",
        author=info.get("author") or info.get("author_email") or "",
        license=info.get("license") or "",
        dependencies=dependencies,
        keywords=_split_keywords(info.get("keywords")),
        home_page=info.get("home_page") or (info.get("project_urls") or {}).get("Homepage") or "",
    )


def _pick_artifact(files: list) -> Optional[Dict[str, Any]]:
    """Prefer a universal wheel, then any wheel, then the sdist."""
    usable = [f for f in files if not f.get("yanked")]
    for predicate in (
        lambda f: f.get("packagetype") == "bdist_wheel" and f.get("filename", "").endswith("-none-any.whl"),
        lambda f: f.get("packagetype") == "bdist_wheel",
        lambda f: f.get("packagetype") == "sdist",
    ):
        for candidate in usable:
            if predicate(candidate):
                return candidate
    return None


class PackageIndexClient:
    """Client for the `/pypi/<name>/json` API exposed by PyPI and its mirrors."""

    def __init__(self, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch_release(self, mirror: Mirror, name: str, version: str = "latest") -> ReleaseInfo:
        """
        Resolve `name` (and `version`, or the newest release for "latest") on
        `mirror`. Raises PackageNotFoundError on 404 and NetworkError otherwise.
        """
        url = mirror.json_api_url(name, version)
        target = f"{name} @ {mirror.name}"
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.Timeout as e:
            raise NetworkError(target, f"timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise NetworkError(target, str(e)) from e

        if response.status_code == 404:
            raise PackageNotFoundError(target, "not found on index", status_code=404)
        if response.status_code != 200:
            raise NetworkError(target, f"HTTP {response.status_code}", status_code=response.status_code)

        try:
            payload = response.json()
            info = payload["info"]
        except (ValueError, KeyError, TypeError) as e:
            raise NetworkError(target, f"malformed index response: {e}") from e

        resolved = info.get("version") or version
        files = payload.get("urls") or (payload.get("releases") or {}).get(resolved) or []
        artifact = _pick_artifact(files)
        if artifact is None:
            raise PackageNotFoundError(target, f"no downloadable artifact for {resolved}")

        return ReleaseInfo(
            name=info.get("name") or name,
            version=resolved,
            metadata=parse_metadata(info),
            artifact_url=artifact["url"],
            filename=artifact.get("filename") or artifact["url"].rsplit("/", 1)[-1],
            sha256=(artifact.get("digests") or {}).get("sha256", ""),
            mirror=mirror.name,
        )

    def download(
        self,
        release: ReleaseInfo,
        dest: Path,
        cancel_event: Optional[threading.Event] = None,
    ) -> Path:
        """
        Stream the artifact to `dest`. Data goes to a temp file in the same
        directory and is only renamed into place once complete and verified,
        so a cancelled or failed download leaves nothing behind.
        """
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        target = f"{release.name}=={release.version}"
        digest = hashlib.sha256()

        fd, temp_name = tempfile.mkstemp(prefix=".partial_", dir=dest.parent)
        temp_path = Path(temp_name)
        try:
            try:
                with self.session.get(release.artifact_url, stream=True, timeout=self.timeout) as response:
                    if response.status_code != 200:
                        raise NetworkError(
                            target, f"download failed: HTTP {response.status_code}", response.status_code
                        )
                    with os.fdopen(fd, "wb") as f:
                        fd = None
                        for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                            if cancel_event is not None and cancel_event.is_set():
                                raise OperationCancelled(f"download of {target} cancelled")
                            if chunk:
                                f.write(chunk)
                                digest.update(chunk)
            except requests.Timeout as e:
                raise NetworkError(target, f"download timed out after {self.timeout}s") from e
            except requests.RequestException as e:
                raise NetworkError(target, f"download failed: {e}") from e

            actual = digest.hexdigest()
            if release.sha256 and actual != release.sha256:
                raise IntegrityError(target, release.sha256, actual)
            os.replace(temp_path, dest)
            logger.debug("Downloaded %s to %s", target, dest)
            return dest
        finally:
            if fd is not None:
                os.close(fd)
            safe_unlink(temp_path)
