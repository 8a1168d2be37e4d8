"""
Acquisition pipeline: cache -> mirror -> vulnerability gate -> environment -> cache.

Each request runs through a small state machine and ends in exactly one
AcquisitionOutcome. The pipeline owns no persistent state; it borrows the
cache, mirror registry, vulnerability index and environment provider that
are handed to it.
"""

import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Iterable, List, Optional

from packaging.utils import canonicalize_name

from ..cache import PackageCache, file_sha256
from ..common_utils import safe_unlink
from ..errors import NetworkError, OperationCancelled, SapkgError
from ..isolation import EnvironmentProvider
from ..models import (
    AcquisitionOutcome,
    AcquisitionResult,
    BatchResult,
    CachedPackage,
    PackageRequest,
)
from .index_client import PackageIndexClient
from .mirror_registry import MirrorRegistry
from .security import SecurityPolicy, VulnerabilityIndex

logger = logging.getLogger(__name__)


class AcquisitionPipeline:
    def __init__(
        self,
        cache: PackageCache,
        mirrors: MirrorRegistry,
        vulnerabilities: VulnerabilityIndex,
        environments: EnvironmentProvider,
        index_client: Optional[PackageIndexClient] = None,
        policy: Optional[SecurityPolicy] = None,
        security_enabled: bool = True,
        max_workers: int = 4,
    ):
        self.cache = cache
        self.mirrors = mirrors
        self.vulnerabilities = vulnerabilities
        self.environments = environments
        self.index_client = index_client or PackageIndexClient()
        self.policy = policy or SecurityPolicy()
        self.security_enabled = security_enabled
        self.max_workers = max(1, max_workers)

    def acquire(self, request: PackageRequest, cancel_event: Optional[threading.Event] = None) -> AcquisitionResult:
        """Runs one package through the pipeline. Never raises for per-package failures."""
        name = canonicalize_name(request.name)
        try:
            return self._acquire(name, request, cancel_event)
        except OperationCancelled as e:
            logger.info("%s: cancelled", request.spec)
            return AcquisitionResult(request, AcquisitionOutcome.CANCELLED, error=str(e))

    def _check_cancelled(self, request: PackageRequest, cancel_event: Optional[threading.Event]):
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled(f"{request.spec}: cancelled")

    def _acquire(self, name: str, request: PackageRequest, cancel_event) -> AcquisitionResult:
        self._check_cancelled(request, cancel_event)

        # 1. cache
        if not request.refresh_cache:
            record = self.cache.lookup(name, request.version)
            if record is not None:
                return self._serve_from_cache(request, record, cancel_event)

        # 2. mirror selection
        if request.mirror:
            mirror = self.mirrors.get(request.mirror)
            if mirror is None or not mirror.is_active:
                return AcquisitionResult(
                    request,
                    AcquisitionOutcome.NO_MIRROR_AVAILABLE,
                    error=f"Mirror '{request.mirror}' is not configured or inactive",
                )
        else:
            mirror = self.mirrors.default_mirror()
            if mirror is None:
                return AcquisitionResult(
                    request, AcquisitionOutcome.NO_MIRROR_AVAILABLE, error="No active default mirror"
                )

        # 3. metadata
        self._check_cancelled(request, cancel_event)
        try:
            release = self.index_client.fetch_release(mirror, name, request.version)
        except NetworkError as e:
            logger.info("%s: fetch failed: %s", request.spec, e)
            return AcquisitionResult(
                request, AcquisitionOutcome.FETCH_FAILED, mirror=mirror.name, error=str(e)
            )

        # 4. vulnerability gate
        findings = []
        if self.security_enabled and not request.skip_security:
            findings = self.vulnerabilities.scan(name, release.version)
            blocking = self.policy.blocking(findings)
            if blocking:
                logger.info("%s==%s blocked by %d advisories", name, release.version, len(blocking))
                return AcquisitionResult(
                    request,
                    AcquisitionOutcome.BLOCKED_BY_SECURITY,
                    version=release.version,
                    mirror=mirror.name,
                    vulnerabilities=findings,
                    error=f"{len(blocking)} blocking vulnerabilit{'y' if len(blocking) == 1 else 'ies'}",
                )

        # 5. download + install
        self._check_cancelled(request, cancel_event)
        artifact_path = self.cache.artifact_path(name, release.version, release.filename)
        try:
            self.index_client.download(release, artifact_path, cancel_event=cancel_event)
        except OperationCancelled:
            raise
        except SapkgError as e:
            # NetworkError or IntegrityError
            return AcquisitionResult(
                request,
                AcquisitionOutcome.FETCH_FAILED,
                version=release.version,
                mirror=mirror.name,
                vulnerabilities=findings,
                error=str(e),
            )

        try:
            self.environments.install(
                request.target,
                artifact_path,
                package_name=name,
                index_url=mirror.url,
                cancel_event=cancel_event,
            )
        except SapkgError as e:
            # Nothing gets cached for a failed install
            safe_unlink(artifact_path)
            if isinstance(e, OperationCancelled):
                raise
            logger.info("%s: install failed: %s", request.spec, e)
            return AcquisitionResult(
                request,
                AcquisitionOutcome.INSTALL_FAILED,
                version=release.version,
                mirror=mirror.name,
                vulnerabilities=findings,
                error=str(e),
            )

        # 6. cache write
        record = CachedPackage(
            name=name,
            version=release.version,
            hash=release.sha256 or file_sha256(artifact_path),
            download_url=release.artifact_url,
            file_path=artifact_path,
            metadata=release.metadata,
        )
        try:
            self.cache.store(record)
        except (OSError, sqlite3.Error) as e:
            # The package is installed; only the cache row is missing
            logger.warning("%s: installed but the cache write failed: %s", request.spec, e)
            record = None
        return AcquisitionResult(
            request,
            AcquisitionOutcome.INSTALLED,
            version=release.version,
            mirror=mirror.name,
            record=record,
            vulnerabilities=findings,
        )

    def _serve_from_cache(self, request: PackageRequest, record: CachedPackage, cancel_event) -> AcquisitionResult:
        default = self.mirrors.default_mirror()
        try:
            self.environments.install(
                request.target,
                Path(record.file_path),
                package_name=record.name,
                index_url=default.url if default else None,
                cancel_event=cancel_event,
            )
        except SapkgError as e:
            if isinstance(e, OperationCancelled):
                raise
            return AcquisitionResult(
                request, AcquisitionOutcome.INSTALL_FAILED, version=record.version, record=record, error=str(e)
            )
        return AcquisitionResult(
            request, AcquisitionOutcome.SERVED_FROM_CACHE, version=record.version, record=record
        )

    def acquire_many(
        self,
        requests: Iterable[PackageRequest],
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchResult:
        """
        Runs every request independently on a bounded worker pool. Results
        come back in request order; one failure never stops the others.
        """
        requests = list(requests)
        if not requests:
            return BatchResult()

        workers = min(self.max_workers, len(requests))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sapkg-acquire") as pool:
            futures = [pool.submit(self.acquire, request, cancel_event) for request in requests]
            results: List[AcquisitionResult] = []
            for request, future in zip(requests, futures):
                try:
                    results.append(future.result())
                except Exception as e:
                    logger.exception("Unexpected error while acquiring %s", request.spec)
                    results.append(
                        AcquisitionResult(request, AcquisitionOutcome.INSTALL_FAILED, error=f"unexpected error: {e}")
                    )
        return BatchResult(results)
