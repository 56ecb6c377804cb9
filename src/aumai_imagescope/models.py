"""Pydantic models for aumai-imagescope."""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from aumai_imagescope.errors import InvalidImageReference, ParseFailure

T = TypeVar("T")

DOCKER_HUB = "docker.io"
DOCKER_HUB_HOST = "registry-1.docker.io"

_COMPONENT_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG_RE = re.compile(r"^\w[\w.-]{0,127}$")
_DIGEST_RE = re.compile(r"^([a-z0-9]+(?:[+._-][a-z0-9]+)*):([a-fA-F0-9]{32,})$")
_HOST_RE = re.compile(r"^[a-zA-Z0-9.-]+(?::[0-9]+)?$")


def _wire(name: str, field_name: str) -> AliasChoices:
    """Accept both the upstream JSON key and our own field name."""
    return AliasChoices(name, field_name)


# ---------------------------------------------------------------------------
# Image addressing
# ---------------------------------------------------------------------------


def _is_registry_host(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


class ImageReference(BaseModel):
    """A parsed container image reference.

    Exactly one of ``tag`` and ``digest`` is set.  ``str(ref)`` yields the
    canonical form used in cache keys and triangulated locations.
    """

    model_config = ConfigDict(frozen=True)

    registry: str
    repository: str | None = None
    name: str
    tag: str | None = None
    digest: str | None = None

    @model_validator(mode="after")
    def _one_addressing_mode(self) -> ImageReference:
        if (self.tag is None) == (self.digest is None):
            raise ValueError("exactly one of tag or digest must be set")
        return self

    @classmethod
    def parse(cls, value: str) -> ImageReference:
        """Parse ``[registry/][path/]name[:tag][@digest]``.

        A digest takes precedence over a tag when both are given; a bare
        name defaults to the ``latest`` tag.

        Raises:
            InvalidImageReference: if *value* is not a valid reference.
        """
        text = value.strip()
        if not text:
            raise InvalidImageReference("image reference is empty")

        remainder, at, digest = text.partition("@")
        if at and not _DIGEST_RE.match(digest):
            raise InvalidImageReference(f"invalid digest in image reference {value!r}")

        components = remainder.split("/")
        registry = DOCKER_HUB
        if len(components) > 1 and _is_registry_host(components[0]):
            registry = components.pop(0)
            if not _HOST_RE.match(registry):
                raise InvalidImageReference(
                    f"invalid registry host in image reference {value!r}"
                )

        name, colon, tag = components[-1].partition(":")
        if colon and not _TAG_RE.match(tag):
            raise InvalidImageReference(f"invalid tag in image reference {value!r}")

        path = components[:-1] + [name]
        for component in path:
            if not _COMPONENT_RE.match(component):
                raise InvalidImageReference(
                    f"invalid path component {component!r} in image reference {value!r}"
                )

        repository = "/".join(path[:-1]) or None
        if registry == DOCKER_HUB and repository is None:
            repository = "library"

        if at:
            return cls(registry=registry, repository=repository, name=name, digest=digest)
        return cls(
            registry=registry,
            repository=repository,
            name=name,
            tag=tag if colon else "latest",
        )

    @property
    def path(self) -> str:
        """Repository path and image name, e.g. ``example/app``."""
        if self.repository:
            return f"{self.repository}/{self.name}"
        return self.name

    @property
    def reference(self) -> str:
        """The tag or digest this reference addresses."""
        return self.digest or self.tag or ""

    @property
    def registry_host(self) -> str:
        """Host name that serves the registry HTTP API."""
        return DOCKER_HUB_HOST if self.registry == DOCKER_HUB else self.registry

    def with_tag(self, tag: str) -> ImageReference:
        """Return a reference to *tag* in the same repository."""
        return ImageReference(
            registry=self.registry,
            repository=self.repository,
            name=self.name,
            tag=tag,
        )

    def __str__(self) -> str:
        base = f"{self.registry}/{self.path}"
        if self.digest is not None:
            return f"{base}@{self.digest}"
        return f"{base}:{self.tag}"


class ContentDigest(BaseModel):
    """An algorithm-prefixed content hash such as ``sha256:<hex>``."""

    model_config = ConfigDict(frozen=True)

    algorithm: str
    encoded: str

    @classmethod
    def parse(cls, value: str) -> ContentDigest:
        match = _DIGEST_RE.match(value.strip())
        if match is None:
            raise ParseFailure(f"invalid content digest {value!r}")
        return cls(algorithm=match.group(1), encoded=match.group(2).lower())

    def as_tag(self) -> str:
        """Digest rendered as a tag-safe string (``:`` replaced by ``-``)."""
        return f"{self.algorithm}-{self.encoded}"

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.encoded}"


# ---------------------------------------------------------------------------
# Registry manifests
# ---------------------------------------------------------------------------


class Platform(BaseModel):
    architecture: str
    os: str
    variant: str | None = None


class SubManifest(BaseModel):
    """One per-platform entry of a manifest index."""

    model_config = ConfigDict(populate_by_name=True)

    media_type: str = Field(alias="mediaType")
    size: int = Field(ge=0)
    digest: str
    platform: Platform | None = None


class Layer(BaseModel):
    """A manifest layer.  Signature layers carry certificates in ``annotations``."""

    model_config = ConfigDict(populate_by_name=True)

    media_type: str = Field(alias="mediaType")
    size: int = Field(default=0, ge=0)
    digest: str
    annotations: dict[str, str] = Field(default_factory=dict)


class RegistryManifest(BaseModel):
    """An image manifest or a manifest index, as served by the registry."""

    model_config = ConfigDict(populate_by_name=True)

    schema_version: int = Field(alias="schemaVersion")
    media_type: str | None = Field(default=None, alias="mediaType")
    manifests: list[SubManifest] = Field(default_factory=list)
    layers: list[Layer] = Field(default_factory=list)

    @property
    def is_index(self) -> bool:
        """True for a multi-platform index rather than a single image manifest."""
        return bool(self.manifests) and not self.layers


class ManifestResponse(BaseModel):
    """A manifest together with the digest of its exact content."""

    manifest: RegistryManifest
    digest: str

    @field_validator("digest")
    @classmethod
    def _valid_digest(cls, value: str) -> str:
        if not _DIGEST_RE.match(value):
            raise ValueError(f"invalid content digest {value!r}")
        return value

    @property
    def content_digest(self) -> ContentDigest:
        return ContentDigest.parse(self.digest)


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------


class Certificate(BaseModel):
    """The parts of an X.509 certificate that signature derivation needs."""

    model_config = ConfigDict(frozen=True)

    subject: str
    issuer: str
    common_names: list[str] = Field(default_factory=list)
    not_before: datetime
    not_after: datetime
    extensions: dict[str, str] = Field(default_factory=dict)


class Signature(BaseModel):
    """An (issuer, identity) claim taken from a signing certificate."""

    model_config = ConfigDict(frozen=True)

    issuer: str
    identity: str

    @property
    def sort_key(self) -> tuple[str, str]:
        return (self.issuer, self.identity)


class CosignInformation(BaseModel):
    """Where the detached signature manifest lives and what it attests.

    ``manifest_found`` is False when no signature manifest exists (the image is
    unsigned); an empty ``signatures`` list with ``manifest_found`` True means
    the manifest exists but carries no certificates (key-based signing).
    """

    manifest_location: str
    manifest_found: bool = True
    signatures: list[Signature] = Field(default_factory=list)


class VerifyIdentity(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    docker_reference: str = Field(alias="docker-reference")


class VerifyImage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    docker_manifest_digest: str = Field(alias="docker-manifest-digest")


class VerifyCritical(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    identity: VerifyIdentity
    image: VerifyImage
    signature_type: str = Field(alias="type")


class VerifySignature(BaseModel):
    """One entry of ``cosign verify --output=json``."""

    critical: VerifyCritical
    optional: dict[str, Any] | None = None


class CosignVerify(BaseModel):
    """Outcome of a key-based ``cosign verify`` run."""

    message: str
    signatures: list[VerifySignature] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Vulnerabilities
# ---------------------------------------------------------------------------


class Severity(str, Enum):
    """Vulnerability severity, most severe first."""

    critical = "CRITICAL"
    high = "HIGH"
    medium = "MEDIUM"
    low = "LOW"
    unknown = "UNKNOWN"

    @classmethod
    def from_string(cls, value: str) -> Severity:
        try:
            return cls(value.upper())
        except ValueError:
            return cls.unknown

    @property
    def rank(self) -> int:
        """0 for CRITICAL up to 4 for UNKNOWN."""
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = list(Severity)


class CvssScore(BaseModel):
    v2_vector: str | None = Field(default=None, validation_alias=_wire("V2Vector", "v2_vector"))
    v2_score: float | None = Field(default=None, validation_alias=_wire("V2Score", "v2_score"))
    v3_vector: str | None = Field(default=None, validation_alias=_wire("V3Vector", "v3_vector"))
    v3_score: float | None = Field(default=None, validation_alias=_wire("V3Score", "v3_score"))


class VulnerabilityFinding(BaseModel):
    """A single finding as reported by the scanner.

    Accepts the scanner's PascalCase JSON on input and serialises with the
    field names below, which it also accepts, so cached values round-trip.
    """

    severity: Severity = Field(validation_alias=_wire("Severity", "severity"))
    identifier: str = Field(validation_alias=_wire("VulnerabilityID", "identifier"))
    pkg_name: str = Field(validation_alias=_wire("PkgName", "pkg_name"))
    installed_version: str = Field(
        default="", validation_alias=_wire("InstalledVersion", "installed_version")
    )
    fixed_version: str | None = Field(
        default=None, validation_alias=_wire("FixedVersion", "fixed_version")
    )
    title: str | None = Field(default=None, validation_alias=_wire("Title", "title"))
    primary_url: str | None = Field(
        default=None, validation_alias=_wire("PrimaryURL", "primary_url")
    )
    references: list[str] = Field(
        default_factory=list, validation_alias=_wire("References", "references")
    )
    cvss: dict[str, CvssScore] = Field(
        default_factory=dict, validation_alias=_wire("CVSS", "cvss")
    )

    @field_validator("severity", mode="before")
    @classmethod
    def _coerce_severity(cls, value: Any) -> Any:
        if isinstance(value, str):
            return Severity.from_string(value)
        return value

    @field_validator("references", mode="before")
    @classmethod
    def _null_references(cls, value: Any) -> Any:
        return [] if value is None else value

    @property
    def identity_key(self) -> tuple[int, str, str]:
        """Findings with equal keys are duplicates."""
        return (self.severity.rank, self.identifier, self.pkg_name)

    @property
    def sort_key(self) -> tuple[int, str, str, str]:
        return (*self.identity_key, self.installed_version)


class ScanTarget(BaseModel):
    target: str = Field(default="", validation_alias=_wire("Target", "target"))
    vulnerabilities: list[VulnerabilityFinding] | None = Field(
        default=None, validation_alias=_wire("Vulnerabilities", "vulnerabilities")
    )


class VulnerabilityScanOutput(BaseModel):
    """The JSON document produced by ``trivy image --format json``."""

    artifact_name: str = Field(validation_alias=_wire("ArtifactName", "artifact_name"))
    results: list[ScanTarget] = Field(
        default_factory=list, validation_alias=_wire("Results", "results")
    )

    @field_validator("results", mode="before")
    @classmethod
    def _null_results(cls, value: Any) -> Any:
        return [] if value is None else value

    def findings(self) -> list[VulnerabilityFinding]:
        """All findings across targets, de-duplicated and sorted by severity."""
        unique: dict[tuple[int, str, str], VulnerabilityFinding] = {}
        for result in self.results:
            for finding in result.vulnerabilities or []:
                unique.setdefault(finding.identity_key, finding)
        return sorted(unique.values(), key=lambda finding: finding.sort_key)


class SeverityCount(BaseModel):
    """Number of findings per severity bucket."""

    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    unknown: int = 0

    @classmethod
    def from_findings(cls, findings: list[VulnerabilityFinding]) -> SeverityCount:
        counts = dict.fromkeys((severity.name for severity in Severity), 0)
        for finding in findings:
            counts[finding.severity.name] += 1
        return cls(**counts)

    @property
    def total(self) -> int:
        return self.critical + self.high + self.medium + self.low + self.unknown


class TrivyInformation(BaseModel):
    """Vulnerability scan result in the shape that is cached."""

    artifact_name: str
    vulnerabilities: list[VulnerabilityFinding] = Field(default_factory=list)
    severity_count: SeverityCount = Field(default_factory=SeverityCount)

    @classmethod
    def from_scan_output(cls, output: VulnerabilityScanOutput) -> TrivyInformation:
        findings = output.findings()
        return cls(
            artifact_name=output.artifact_name,
            vulnerabilities=findings,
            severity_count=SeverityCount.from_findings(findings),
        )


# ---------------------------------------------------------------------------
# Cache envelope
# ---------------------------------------------------------------------------


class CachedEntry(BaseModel, Generic[T]):
    """A fetched value stamped with the time it was fetched.

    The TTL belongs to the source, not to the entry, so it is passed in when
    computing expiry.
    """

    value: T
    fetch_time: datetime

    @classmethod
    def now(cls, value: T) -> CachedEntry[T]:
        return cls(value=value, fetch_time=datetime.now(tz=UTC))

    def age(self, now: datetime | None = None) -> timedelta:
        return (now or datetime.now(tz=UTC)) - self.fetch_time

    def expires_at(self, ttl_seconds: int) -> datetime:
        return self.fetch_time + timedelta(seconds=ttl_seconds)

    def expires_in(self, ttl_seconds: int, now: datetime | None = None) -> timedelta:
        """Time left until expiry; negative once expired."""
        return self.expires_at(ttl_seconds) - (now or datetime.now(tz=UTC))


__all__ = [
    "CachedEntry",
    "Certificate",
    "ContentDigest",
    "CosignInformation",
    "CosignVerify",
    "CvssScore",
    "ImageReference",
    "Layer",
    "ManifestResponse",
    "Platform",
    "RegistryManifest",
    "ScanTarget",
    "Severity",
    "SeverityCount",
    "Signature",
    "SubManifest",
    "TrivyInformation",
    "VerifyCritical",
    "VerifyIdentity",
    "VerifyImage",
    "VerifySignature",
    "VulnerabilityFinding",
    "VulnerabilityScanOutput",
]
