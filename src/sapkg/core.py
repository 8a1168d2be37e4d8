from __future__ import annotations  # Python 3.6+ compatibility

import json
import os
import sys
from pathlib import Path
from typing import Dict, Optional

from .cache import PackageCache
from .common_utils import atomic_write_json, safe_print
from .errors import ConfigurationError
from .i18n import _
from .installation.index_client import PackageIndexClient
from .installation.mirror_registry import MirrorRegistry
from .installation.pipeline import AcquisitionPipeline
from .installation.security import DEFAULT_FEED_URL, SecurityPolicy, VulnerabilityIndex
from .isolation import ContainerProvider, EnvironmentProvider, LocalEnvironmentProvider
from .lockmanager import SapkgLockManager


def _user_cache_root() -> Path:
    if os.name == "nt" and os.environ.get("LOCALAPPDATA"):
        return Path(os.environ["LOCALAPPDATA"])
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Caches"
    return Path(os.environ.get("XDG_CACHE_HOME") or Path.home() / ".cache")


class ConfigManager:
    """
    Manages loading and first-time creation of the sapkg config file.
    Unknown or missing keys fall back to sensible defaults; a corrupted file
    is reported and ignored rather than aborting the command.
    """

    def __init__(self, config_dir: Optional[Path] = None, suppress_init_messages: bool = False):
        self.config_dir = Path(
            config_dir or os.environ.get("SAPKG_CONFIG_DIR") or Path.home() / ".config" / "sapkg"
        )
        self.config_path = self.config_dir / "config.json"
        self.suppress_init_messages = suppress_init_messages
        self.config = self._load_or_create_config()

    def _get_sensible_defaults(self) -> Dict:
        cache_dir = os.environ.get("SAPKG_CACHE_DIR") or str(_user_cache_root() / "sapkg-cache")
        return {
            "cache_dir": cache_dir,
            "venv_path": ".sa_env",
            "security_enabled": True,
            "block_severity": "critical",
            "docker_enabled": True,
            "docker_image": "python:3.11-slim",
            "default_python_version": "3.11",
            "http_timeout": 10.0,
            "subprocess_timeout": 900.0,
            "max_workers": 4,
            "vulnerability_feed_url": DEFAULT_FEED_URL,
            "lock_timeout": 60.0,
            "language": "en",
        }

    def _load_or_create_config(self) -> Dict:
        """Loads the config file, layering it over the defaults."""
        config = self._get_sensible_defaults()
        if self.config_path.exists():
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    stored = json.load(f)
                if isinstance(stored, dict):
                    config.update(stored)
                else:
                    raise ValueError("top-level value is not an object")
            except (OSError, ValueError) as e:
                if not self.suppress_init_messages:
                    safe_print(
                        _("⚠️ Warning: Config file {} is corrupted ({}). Using defaults.").format(
                            self.config_path, e
                        )
                    )
        return config

    def get(self, key, default=None):
        """Get a configuration value, with an optional default."""
        return self.config.get(key, default)

    def set(self, key, value):
        """Set a configuration value and save."""
        self.config[key] = value
        try:
            atomic_write_json(self.config_path, self.config)
        except OSError as e:
            raise ConfigurationError(f"Cannot write {self.config_path}: {e}") from e


class SaCore:
    """
    Builds the explicit handles (cache, mirrors, vulnerability index,
    environments) once from the configuration and wires them into the
    acquisition pipeline. Any store that cannot be initialised raises
    ConfigurationError here, before a single package is processed.
    """

    def __init__(self, config_manager: Optional[ConfigManager] = None):
        self.config_manager = config_manager or ConfigManager()
        config = self.config_manager
        timeout = float(config.get("http_timeout", 10.0))
        subprocess_timeout = float(config.get("subprocess_timeout", 900.0))
        try:
            policy = SecurityPolicy(config.get("block_severity", "critical"))
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        self.cache_dir = Path(config.get("cache_dir")).expanduser()
        try:
            self.lock_manager = SapkgLockManager(
                self.cache_dir / ".locks", timeout=float(config.get("lock_timeout", 60.0))
            )
        except OSError as e:
            raise ConfigurationError(f"Cannot create lock directory under {self.cache_dir}: {e}") from e

        self.cache = PackageCache(self.cache_dir, lock_manager=self.lock_manager)
        self.mirrors = MirrorRegistry(
            config.config_dir, timeout=timeout, lock_manager=self.lock_manager
        )
        self.vulnerabilities = VulnerabilityIndex(
            self.cache_dir,
            feed_url=config.get("vulnerability_feed_url", DEFAULT_FEED_URL),
            timeout=max(timeout, 30.0),
            lock_manager=self.lock_manager,
        )
        self.environments = EnvironmentProvider(
            local=LocalEnvironmentProvider(timeout=subprocess_timeout),
            containers=ContainerProvider(timeout=subprocess_timeout),
        )
        self.pipeline = AcquisitionPipeline(
            cache=self.cache,
            mirrors=self.mirrors,
            vulnerabilities=self.vulnerabilities,
            environments=self.environments,
            index_client=PackageIndexClient(timeout=timeout),
            policy=policy,
            security_enabled=bool(config.get("security_enabled", True)),
            max_workers=int(config.get("max_workers", 4)),
        )

    @property
    def venv_path(self) -> Path:
        return Path(self.config_manager.get("venv_path", ".sa_env"))

    @property
    def docker_image(self) -> str:
        return self.config_manager.get("docker_image", "python:3.11-slim")

    def close(self):
        self.cache.close()
