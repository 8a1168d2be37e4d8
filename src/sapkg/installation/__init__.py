"""
Package acquisition: mirror registry, index client, vulnerability index and
the pipeline that ties them to the cache and the environment provider.
"""

from .index_client import PackageIndexClient, ReleaseInfo
from .mirror_registry import MirrorRegistry
from .pipeline import AcquisitionPipeline
from .security import SecurityPolicy, VulnerabilityIndex, version_matches

__all__ = [
    "AcquisitionPipeline",
    "MirrorRegistry",
    "PackageIndexClient",
    "ReleaseInfo",
    "SecurityPolicy",
    "VulnerabilityIndex",
    "version_matches",
]
