"""
Vulnerability Index - a local copy of an advisory feed, replaced wholesale on
every refresh and queried per (package, version) before installation.
"""

import json
import logging
import threading
from contextlib import nullcontext
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import requests
from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion, Version

from ..common_utils import atomic_write_json
from ..errors import ConfigurationError, VulnerabilityFeedError
from ..lockmanager import SapkgLockManager
from ..models import SecurityVulnerability, Severity

logger = logging.getLogger(__name__)

DEFAULT_FEED_URL = (
    "https://raw.githubusercontent.com/pyupio/safety-db/master/data/insecure_full.json"
)

_OPERATORS = (">=", "<=", "<", ">")


def _compare(left: str, right: str) -> int:
    """
    -1/0/1 comparison of two version strings. PEP 440 ordering when both
    parse, plain string ordering otherwise (e.g. the "latest" sentinel).
    """
    try:
        a, b = Version(left), Version(right)
    except InvalidVersion:
        a, b = left, right
    return (a > b) - (a < b)


def _clause_matches(version: str, clause: str) -> bool:
    clause = clause.strip()
    if clause in ("", "*"):
        return True
    for op in _OPERATORS:
        if clause.startswith(op):
            bound = clause[len(op):].strip()
            cmp = _compare(version, bound)
            if op == ">=":
                return cmp >= 0
            if op == "<=":
                return cmp <= 0
            if op == "<":
                return cmp < 0
            return cmp > 0
    # Exact literal ("==1.2" is accepted as a spelling of "1.2")
    return version == clause.lstrip("=").strip()


def version_matches(version: str, version_range: str) -> bool:
    """
    True if `version` falls in `version_range`.

    Grammar: `*`, `>=X`, `<=X`, `<X`, `>X` or an exact version; a comma joins
    clauses that must all hold (`>=1.0,<2.0`).
    """
    return all(_clause_matches(version, clause) for clause in version_range.split(","))


def _score_to_severity(score: float) -> str:
    """CVSS base score bands: 9.0+ critical, 7.0+ high, 4.0+ medium, otherwise low."""
    if score >= 9.0:
        return "critical"
    if score >= 7.0:
        return "high"
    if score >= 4.0:
        return "medium"
    return "low"


def advisory_severity(advisory: Dict[str, Any]) -> str:
    """
    Severity of one feed entry. safety-db carries no severity field of its
    own, so it is taken from `cvssv3.base_severity`, then from the
    `cvssv3`/`cvssv2` base score, and defaults to medium.
    """
    if advisory.get("severity"):
        return str(advisory["severity"]).lower()
    cvssv3 = advisory.get("cvssv3") or {}
    if isinstance(cvssv3, dict) and cvssv3.get("base_severity"):
        return str(cvssv3["base_severity"]).lower()
    for key in ("cvssv3", "cvssv2"):
        block = advisory.get(key) or {}
        if not isinstance(block, dict):
            continue
        try:
            return _score_to_severity(float(block["base_score"]))
        except (KeyError, TypeError, ValueError):
            continue
    return "medium"


def parse_feed(payload: Any) -> List[SecurityVulnerability]:
    """
    Converts the safety-db `insecure_full.json` shape
    `{package: [{id, advisory, specs, ...}], "$meta": {...}}` into records.
    One record is produced per spec entry. Raises ValueError on a payload
    that is not shaped like a feed at all.
    """
    if not isinstance(payload, dict):
        raise ValueError(f"expected a JSON object, got {type(payload).__name__}")

    vulnerabilities = []
    for package_name, advisories in payload.items():
        if package_name.startswith("$"):
            continue
        if not isinstance(advisories, list):
            raise ValueError(f"advisories for {package_name!r} are not a list")
        for advisory in advisories:
            if not isinstance(advisory, dict):
                continue
            specs = advisory.get("specs") or [advisory.get("v") or "*"]
            for spec in specs:
                vulnerabilities.append(
                    SecurityVulnerability.from_dict(
                        {
                            "id": advisory.get("id") or advisory.get("cve") or "unknown",
                            "package": package_name,
                            "version_range": spec or "*",
                            "severity": advisory_severity(advisory),
                            "description": advisory.get("advisory") or "No description available",
                            "fixed_version": advisory.get("fixed_version"),
                            "published_at": advisory.get("published_at"),
                        }
                    )
                )
    return vulnerabilities


class VulnerabilityIndex:
    """
    Holds the advisory list. `refresh()` builds the complete new list before
    swapping it in, so concurrent `scan()` calls see either the old or the new
    index, never a mix.
    """

    def __init__(
        self,
        data_dir: Path,
        feed_url: str = DEFAULT_FEED_URL,
        timeout: float = 30.0,
        lock_manager: Optional[SapkgLockManager] = None,
        session: Optional[requests.Session] = None,
    ):
        self.db_path = Path(data_dir) / "vulnerabilities.json"
        self.feed_url = feed_url
        self.timeout = timeout
        self.lock_manager = lock_manager
        self.session = session or requests.Session()
        self._lock = threading.Lock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Cannot create vulnerability db dir {self.db_path.parent}: {e}") from e
        self._vulnerabilities: List[SecurityVulnerability] = self._load()

    def _load(self) -> List[SecurityVulnerability]:
        if not self.db_path.exists():
            return []
        try:
            with open(self.db_path, "r", encoding="utf-8") as f:
                return [SecurityVulnerability.from_dict(item) for item in json.load(f)]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring unreadable vulnerability db %s: %s", self.db_path, e)
            return []

    @property
    def vulnerabilities(self) -> List[SecurityVulnerability]:
        with self._lock:
            return list(self._vulnerabilities)

    def __len__(self):
        with self._lock:
            return len(self._vulnerabilities)

    def replace(self, vulnerabilities: Iterable[SecurityVulnerability]) -> None:
        """Persists and swaps in a complete new advisory list."""
        new_index = list(vulnerabilities)
        process_lock = (
            self.lock_manager.acquire_lock("vulnerabilities") if self.lock_manager else nullcontext()
        )
        with process_lock:
            atomic_write_json(self.db_path, [v.to_dict() for v in new_index])
        with self._lock:
            self._vulnerabilities = new_index

    def refresh(self) -> int:
        """
        Download the feed and replace the index. On any failure the current
        index is left untouched and VulnerabilityFeedError is raised.
        Returns the number of advisories now loaded.
        """
        try:
            response = self.session.get(self.feed_url, timeout=self.timeout)
            if response.status_code != 200:
                raise VulnerabilityFeedError(
                    f"{self.feed_url}: HTTP {response.status_code}"
                )
            new_index = parse_feed(response.json())
        except requests.RequestException as e:
            raise VulnerabilityFeedError(f"{self.feed_url}: {e}") from e
        except ValueError as e:
            raise VulnerabilityFeedError(f"{self.feed_url}: malformed feed: {e}") from e

        try:
            self.replace(new_index)
        except OSError as e:
            raise VulnerabilityFeedError(f"Cannot write {self.db_path}: {e}") from e
        logger.info("Vulnerability index refreshed: %d advisories", len(new_index))
        return len(new_index)

    def scan(self, package: str, version: str) -> List[SecurityVulnerability]:
        """Every advisory for exactly `package` whose range covers `version`."""
        package = canonicalize_name(package)
        with self._lock:
            snapshot = self._vulnerabilities

        found = []
        seen = set()
        for vuln in snapshot:
            if vuln.package != package or vuln.id in seen:
                continue
            if version_matches(version, vuln.version_range):
                found.append(vuln)
                seen.add(vuln.id)
        return found

    def scan_many(self, packages: Dict[str, str]) -> Dict[str, List[SecurityVulnerability]]:
        return {name: self.scan(name, version) for name, version in packages.items()}


class SecurityPolicy:
    """Decides which scan results block an installation."""

    def __init__(self, block_severity: str = "critical"):
        self.block_on_any = block_severity.lower() == "any"
        self.threshold = Severity.LOW if self.block_on_any else Severity.parse(block_severity)
        if not self.block_on_any and block_severity.strip().upper() not in Severity.__members__:
            raise ValueError(f"Unknown severity threshold: {block_severity}")

    def blocking(self, vulnerabilities: List[SecurityVulnerability]) -> List[SecurityVulnerability]:
        if self.block_on_any:
            return list(vulnerabilities)
        return [v for v in vulnerabilities if v.level >= self.threshold]

    def describe(self) -> List[str]:
        threshold = "any known vulnerability" if self.block_on_any else f"severity >= {self.threshold.name.lower()}"
        return [
            "Automatic vulnerability scanning enabled",
            f"Installation is blocked for {threshold}",
            "Database updated from the PyUp.io Safety DB feed",
            "Use --skip-security to bypass scanning",
        ]
