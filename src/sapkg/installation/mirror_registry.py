"""
Mirror Registry - named package index mirrors with a single active default.
The full list is persisted as JSON; a missing or corrupted file falls back to
the built-in PyPI mirror instead of failing startup.
"""

import json
import logging
import threading
from contextlib import nullcontext
from pathlib import Path
from typing import List, Optional

import requests

from ..common_utils import atomic_write_json
from ..errors import ConfigurationError
from ..lockmanager import SapkgLockManager
from ..models import Mirror, utc_now

logger = logging.getLogger(__name__)

DEFAULT_MIRROR_NAME = "pypi"
DEFAULT_MIRROR_URL = "https://pypi.org/simple/"


class MirrorRegistry:
    """
    Ordered list of mirrors. At most one mirror carries `is_default`; adding a
    new default clears the flag everywhere else before persisting.
    """

    def __init__(
        self,
        config_dir: Path,
        timeout: float = 10.0,
        lock_manager: Optional[SapkgLockManager] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the registry.

        Args:
            config_dir: Directory holding mirrors.json (usually ~/.config/sapkg)
            timeout: Seconds allowed for a reachability check
            lock_manager: Optional cross-process lock provider for writes
            session: Optional requests session (tests inject a fake)
        """
        self.config_dir = Path(config_dir)
        self.config_path = self.config_dir / "mirrors.json"
        self.timeout = timeout
        self.lock_manager = lock_manager
        self.session = session or requests.Session()
        self._lock = threading.RLock()
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Cannot create mirror config dir {self.config_dir}: {e}") from e
        self.mirrors: List[Mirror] = self._load_mirrors()

    @staticmethod
    def _get_default_mirrors() -> List[Mirror]:
        """Built-in fallback: the canonical index, active and default."""
        return [Mirror(name=DEFAULT_MIRROR_NAME, url=DEFAULT_MIRROR_URL, is_default=True, is_active=True)]

    def _load_mirrors(self) -> List[Mirror]:
        """Load the mirror list from disk or use defaults."""
        if self.config_path.exists():
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    mirrors = [Mirror.from_dict(item) for item in json.load(f)]
                if mirrors:
                    return mirrors
            except (OSError, ValueError, KeyError, TypeError) as e:
                # Fall back to defaults if the file is corrupted
                logger.warning("Ignoring unreadable mirror config %s: %s", self.config_path, e)
        return self._get_default_mirrors()

    def _save(self):
        process_lock = (
            self.lock_manager.acquire_lock("mirrors") if self.lock_manager else nullcontext()
        )
        with process_lock:
            atomic_write_json(self.config_path, [m.to_dict() for m in self.mirrors])

    # --- mutation ------------------------------------------------------------

    def add(self, name: str, url: str, set_default: bool = False) -> Mirror:
        mirror = Mirror(name=name, url=url, is_default=set_default, is_active=True)
        with self._lock:
            if set_default:
                for existing in self.mirrors:
                    existing.is_default = False
            self.mirrors.append(mirror)
            self._save()
        return mirror

    def remove(self, name: str) -> int:
        """Removes every mirror called `name`. Returns how many were dropped."""
        with self._lock:
            before = len(self.mirrors)
            self.mirrors = [m for m in self.mirrors if m.name != name]
            removed = before - len(self.mirrors)
            self._save()
        return removed

    def set_default(self, name: str) -> bool:
        """Makes the first mirror called `name` (the one `get` returns) the sole default."""
        with self._lock:
            chosen = self.get(name)
            if chosen is None:
                return False
            for mirror in self.mirrors:
                mirror.is_default = mirror is chosen
            self._save()
        return True

    def set_active(self, name: str, active: bool) -> bool:
        with self._lock:
            matched = [m for m in self.mirrors if m.name == name]
            for mirror in matched:
                mirror.is_active = active
            if matched:
                self._save()
        return bool(matched)

    # --- queries -------------------------------------------------------------

    def list_mirrors(self) -> List[Mirror]:
        with self._lock:
            return list(self.mirrors)

    def get(self, name: str) -> Optional[Mirror]:
        with self._lock:
            return next((m for m in self.mirrors if m.name == name), None)

    def default_mirror(self) -> Optional[Mirror]:
        with self._lock:
            return next((m for m in self.mirrors if m.is_default and m.is_active), None)

    def test(self, name: str) -> bool:
        """
        Lightweight HEAD request against the mirror's base URL.

        Any failure (DNS, TLS, timeout, non-2xx) is reported as False; the
        check is advisory and never raises.
        """
        mirror = self.get(name)
        if mirror is None:
            return False

        try:
            response = self.session.head(mirror.url, timeout=self.timeout, allow_redirects=True)
            reachable = 200 <= response.status_code < 300
        except requests.RequestException as e:
            logger.debug("Mirror %s unreachable: %s", name, e)
            reachable = False

        with self._lock:
            mirror.last_tested = utc_now()
            try:
                self._save()
            except OSError as e:
                logger.warning("Could not record test time for mirror %s: %s", name, e)
        return reachable

    def test_all(self) -> List[tuple]:
        return [(mirror.name, self.test(mirror.name)) for mirror in self.list_mirrors()]
