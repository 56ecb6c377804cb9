"""aumai-imagescope: cached manifest, signature and vulnerability lookup for container images."""

from aumai_imagescope.cache import FetchThroughCache, RedisCacheBackend
from aumai_imagescope.config import Settings
from aumai_imagescope.core import (
    derive_signatures,
    extract_certificate,
    signatures_from_manifest,
    triangulate,
)
from aumai_imagescope.errors import (
    CacheFailure,
    ImageScopeError,
    NotFoundError,
    ParseFailure,
    SourceFailure,
)
from aumai_imagescope.models import (
    CachedEntry,
    Certificate,
    ContentDigest,
    CosignInformation,
    ImageReference,
    Layer,
    RegistryManifest,
    Severity,
    SeverityCount,
    Signature,
    TrivyInformation,
    VulnerabilityFinding,
)
from aumai_imagescope.orchestrator import ImageInspector, ImageReport, Outcome
from aumai_imagescope.registry import RegistryClient
from aumai_imagescope.scanner import TrivyScanner
from aumai_imagescope.verification import CosignVerifier

__version__ = "0.1.0"

__all__ = [
    "CacheFailure",
    "CachedEntry",
    "Certificate",
    "ContentDigest",
    "CosignInformation",
    "CosignVerifier",
    "FetchThroughCache",
    "ImageInspector",
    "ImageReference",
    "ImageReport",
    "ImageScopeError",
    "Layer",
    "NotFoundError",
    "Outcome",
    "ParseFailure",
    "RedisCacheBackend",
    "RegistryClient",
    "RegistryManifest",
    "Settings",
    "Severity",
    "SeverityCount",
    "Signature",
    "SourceFailure",
    "TrivyInformation",
    "TrivyScanner",
    "VulnerabilityFinding",
    "derive_signatures",
    "extract_certificate",
    "signatures_from_manifest",
    "triangulate",
]
