from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from packaging.utils import canonicalize_name

LATEST = "latest"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class PackageMetadata:
    description: str = ""
    author: str = ""
    license: str = ""
    dependencies: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    home_page: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PackageMetadata":
        data = data or {}
        return cls(
            description=data.get("description") or "",
            author=data.get("author") or "",
            license=data.get("license") or "",
            dependencies=list(data.get("dependencies") or []),
            keywords=list(data.get("keywords") or []),
            home_page=data.get("home_page") or "",
        )


@dataclass
class CachedPackage:
    """One row of the cache: (name, version) -> artifact on disk plus index metadata."""

    name: str
    version: str
    hash: str
    download_url: str
    file_path: Path
    cached_at: datetime = field(default_factory=utc_now)
    metadata: PackageMetadata = field(default_factory=PackageMetadata)

    def __post_init__(self):
        if not self.name:
            raise ValueError("CachedPackage.name must not be empty")
        self.file_path = Path(self.file_path)


@dataclass
class Mirror:
    name: str
    url: str
    is_default: bool = False
    is_active: bool = True
    last_tested: Optional[datetime] = None

    def json_api_url(self, package: str, version: Optional[str] = None) -> str:
        """
        URL of the JSON metadata endpoint for `package` on this mirror.
        Mirrors are configured with their simple-index URL; the JSON API lives
        next to it (`https://pypi.org/simple/` -> `https://pypi.org/pypi/<name>/json`).
        """
        base = self.url.rstrip("/")
        if base.endswith("/simple"):
            base = base[: -len("/simple")]
        if version and version != LATEST:
            return f"{base}/pypi/{package}/{version}/json"
        return f"{base}/pypi/{package}/json"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "url": self.url,
            "is_default": self.is_default,
            "is_active": self.is_active,
            "last_tested": self.last_tested.isoformat() if self.last_tested else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Mirror":
        return cls(
            name=data["name"],
            url=data["url"],
            is_default=bool(data.get("is_default", False)),
            is_active=bool(data.get("is_active", True)),
            last_tested=_parse_timestamp(data.get("last_tested")),
        )


class Severity(enum.IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @classmethod
    def parse(cls, value: Optional[str]) -> "Severity":
        """Maps the open severity string of an advisory onto the ordered scale."""
        if not value:
            return cls.MEDIUM
        try:
            return cls[value.strip().upper()]
        except KeyError:
            # Feeds that don't grade advisories are treated as medium.
            return cls.MEDIUM


@dataclass
class SecurityVulnerability:
    id: str
    package: str
    version_range: str
    severity: str
    description: str
    fixed_version: Optional[str] = None
    published_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        # Feeds key advisories by the name as published (`zope.interface`, `Django`)
        self.package = canonicalize_name(self.package)

    @property
    def level(self) -> Severity:
        return Severity.parse(self.severity)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["published_at"] = self.published_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SecurityVulnerability":
        return cls(
            id=str(data["id"]),
            package=data["package"],
            version_range=data.get("version_range") or "*",
            severity=data.get("severity") or "medium",
            description=data.get("description") or "",
            fixed_version=data.get("fixed_version"),
            published_at=_parse_timestamp(data.get("published_at")) or utc_now(),
        )


@dataclass(frozen=True)
class EnvironmentTarget:
    """Where a package ends up: a local virtualenv root or a named container image."""

    kind: str  # "local" | "container"
    location: str
    base_image: str = "python:3.11-slim"

    @classmethod
    def local(cls, root_path) -> "EnvironmentTarget":
        return cls(kind="local", location=str(root_path))

    @classmethod
    def container(cls, image_name: str, base_image: str = "python:3.11-slim") -> "EnvironmentTarget":
        return cls(kind="container", location=image_name, base_image=base_image)

    @property
    def is_container(self) -> bool:
        return self.kind == "container"


@dataclass
class PackageRequest:
    name: str
    target: EnvironmentTarget
    version: str = LATEST
    mirror: Optional[str] = None
    skip_security: bool = False
    refresh_cache: bool = False

    @classmethod
    def parse(cls, spec: str, target: EnvironmentTarget, **options) -> "PackageRequest":
        """Builds a request from `name` or `name==version`."""
        spec = spec.strip()
        if "==" in spec:
            name, version = spec.split("==", 1)
            return cls(name=name.strip(), version=version.strip() or LATEST, target=target, **options)
        return cls(name=spec, target=target, **options)

    @property
    def is_pinned(self) -> bool:
        return self.version != LATEST

    @property
    def spec(self) -> str:
        return f"{self.name}=={self.version}" if self.is_pinned else self.name


class AcquisitionOutcome(enum.Enum):
    SERVED_FROM_CACHE = "served-from-cache"
    INSTALLED = "installed"
    NO_MIRROR_AVAILABLE = "no-mirror-available"
    FETCH_FAILED = "fetch-failed"
    BLOCKED_BY_SECURITY = "blocked-by-security"
    INSTALL_FAILED = "install-failed"
    CANCELLED = "cancelled"

    @property
    def succeeded(self) -> bool:
        return self in (AcquisitionOutcome.SERVED_FROM_CACHE, AcquisitionOutcome.INSTALLED)


@dataclass
class AcquisitionResult:
    request: PackageRequest
    outcome: AcquisitionOutcome
    version: Optional[str] = None
    mirror: Optional[str] = None
    record: Optional[CachedPackage] = None
    vulnerabilities: List[SecurityVulnerability] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome.succeeded


@dataclass
class BatchResult:
    results: List[AcquisitionResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.results)

    @property
    def succeeded(self) -> List[AcquisitionResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> List[AcquisitionResult]:
        return [r for r in self.results if not r.ok]

    def summary(self) -> str:
        return f"{len(self.succeeded)} succeeded, {len(self.failed)} failed"
