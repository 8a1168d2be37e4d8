"""Shared fixtures: real stores in tmp_path, fake network and fake environments."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import requests

from sapkg.cache import PackageCache
from sapkg.errors import InstallError, NetworkError
from sapkg.installation.index_client import ReleaseInfo
from sapkg.installation.mirror_registry import MirrorRegistry
from sapkg.installation.security import VulnerabilityIndex
from sapkg.models import PackageMetadata


class FakeResponse:
    def __init__(self, status_code: int = 200, json_data=None, chunks: Optional[List[bytes]] = None):
        self.status_code = status_code
        self._json = json_data
        self._chunks = chunks or []

    def json(self):
        if isinstance(self._json, Exception):
            raise self._json
        return self._json

    def iter_content(self, chunk_size: int = 1):
        yield from self._chunks

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    """Maps URLs to FakeResponse objects or exceptions; records every call."""

    def __init__(self, routes: Optional[Dict[str, object]] = None):
        self.routes = dict(routes or {})
        self.calls: List[tuple] = []

    def _answer(self, method: str, url: str):
        self.calls.append((method, url))
        answer = self.routes.get(url)
        if answer is None:
            raise requests.ConnectionError(f"no route for {url}")
        if isinstance(answer, Exception):
            raise answer
        return answer

    def get(self, url, **kwargs):
        return self._answer("GET", url)

    def head(self, url, **kwargs):
        return self._answer("HEAD", url)


class FakeIndexClient:
    """
    Stand-in for PackageIndexClient. `releases` maps a package name to the
    version it resolves to; `failures` maps a name to the exception raised
    by fetch_release.
    """

    def __init__(self, releases: Dict[str, str], failures: Optional[Dict[str, Exception]] = None):
        self.releases = releases
        self.failures = failures or {}
        self.fetched: List[str] = []
        self.downloaded: List[str] = []
        self._lock = threading.Lock()

    def fetch_release(self, mirror, name, version="latest"):
        with self._lock:
            self.fetched.append(name)
        if name in self.failures:
            raise self.failures[name]
        if name not in self.releases:
            raise NetworkError(f"{name} @ {mirror.name}", "not found on index", status_code=404)
        resolved = self.releases[name] if version == "latest" else version
        return ReleaseInfo(
            name=name,
            version=resolved,
            metadata=PackageMetadata(description=f"{name} package"),
            artifact_url=f"https://files.example.org/{name}-{resolved}-py3-none-any.whl",
            filename=f"{name}-{resolved}-py3-none-any.whl",
            sha256="",
            mirror=mirror.name,
        )

    def download(self, release, dest, cancel_event=None):
        with self._lock:
            self.downloaded.append(release.name)
        dest = Path(dest)
        dest.write_bytes(f"{release.name}-{release.version}".encode())
        return dest


class FakeEnvironments:
    """Records installs instead of running pip or docker."""

    def __init__(self, failing: Optional[set] = None):
        self.failing = failing or set()
        self.installs: List[tuple] = []
        self._lock = threading.Lock()

    def install(self, target, artifact_path, package_name, index_url=None, cancel_event=None):
        with self._lock:
            self.installs.append((target, Path(artifact_path), package_name))
        if package_name in self.failing:
            raise InstallError(package_name, 1, "ERROR: No matching distribution")


@pytest.fixture
def cache(tmp_path: Path):
    store = PackageCache(tmp_path / "cache")
    yield store
    store.close()


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def registry(tmp_path: Path, fake_session):
    return MirrorRegistry(tmp_path / "config", session=fake_session)


@pytest.fixture
def vulnerability_index(tmp_path: Path, fake_session):
    return VulnerabilityIndex(tmp_path / "vulndb", feed_url="https://feed.example.org/db.json", session=fake_session)


@pytest.fixture
def environments():
    return FakeEnvironments()
