"""Shared test fixtures for aumai-imagescope."""

from __future__ import annotations

import base64
import json
import logging
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from aumai_imagescope.core import (
    CERTIFICATE_ANNOTATION,
    OID_OIDC_IDENTITY,
    OID_OIDC_ISSUER,
)
from aumai_imagescope.errors import CacheFailure, NotFoundError
from aumai_imagescope.models import (
    CosignVerify,
    ImageReference,
    Layer,
    ManifestResponse,
    RegistryManifest,
    VulnerabilityScanOutput,
)

GITHUB_ISSUER = "https://token.actions.githubusercontent.com"
RELEASE_IDENTITY = (
    "https://github.com/example/app/.github/workflows/release.yaml@refs/tags/v1.0.0"
)
IMAGE_DIGEST = "sha256:" + "aa" * 32
SIG_MEDIA_TYPE = "application/vnd.dev.cosign.simplesigning.v1+json"

# ---------------------------------------------------------------------------
# Certificate helpers
# ---------------------------------------------------------------------------


def der_utf8(text: str) -> bytes:
    """Encode *text* as a DER UTF8String, the way Fulcio stores v2 claims."""
    body = text.encode("utf-8")
    if len(body) < 0x80:
        return bytes([0x0C, len(body)]) + body
    length = len(body).to_bytes((len(body).bit_length() + 7) // 8, "big")
    return bytes([0x0C, 0x80 | len(length)]) + length + body


def issuer_extension(issuer: str) -> x509.UnrecognizedExtension:
    return x509.UnrecognizedExtension(
        x509.ObjectIdentifier(OID_OIDC_ISSUER), issuer.encode("utf-8")
    )


def identity_extension(identity: str) -> x509.UnrecognizedExtension:
    return x509.UnrecognizedExtension(
        x509.ObjectIdentifier(OID_OIDC_IDENTITY), der_utf8(identity)
    )


def san_extension(uri: str) -> x509.SubjectAlternativeName:
    return x509.SubjectAlternativeName([x509.UniformResourceIdentifier(uri)])


@pytest.fixture(scope="session")
def signing_key() -> ec.EllipticCurvePrivateKey:
    """A P-256 key shared by every generated certificate."""
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def make_certificate(
    signing_key: ec.EllipticCurvePrivateKey,
) -> Callable[..., str]:
    """Factory: build a self-signed PEM certificate carrying *extensions*."""

    def _make(
        extensions: list[x509.ExtensionType] | None = None,
        common_name: str = "sigstore",
        valid_for: timedelta = timedelta(minutes=10),
    ) -> str:
        name = x509.Name(
            [
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, "sigstore.dev"),
                x509.NameAttribute(NameOID.COMMON_NAME, common_name),
            ]
        )
        not_before = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
        builder = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(signing_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_before + valid_for)
        )
        for extension in extensions or []:
            builder = builder.add_extension(extension, critical=False)
        certificate = builder.sign(signing_key, hashes.SHA256())
        return certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")

    return _make


@pytest.fixture(scope="session")
def fulcio_pem(make_certificate: Callable[..., str]) -> str:
    """A keyless-signing certificate with issuer and identity claims."""
    return make_certificate(
        [
            issuer_extension(GITHUB_ISSUER),
            identity_extension(RELEASE_IDENTITY),
            san_extension(RELEASE_IDENTITY),
        ]
    )


@pytest.fixture(scope="session")
def duplicated_extension_pem(make_certificate: Callable[..., str]) -> str:
    """A certificate whose DER repeats an extension OID.

    ``CertificateBuilder`` refuses duplicates, so the second OID is patched in
    the encoded bytes.  The signature no longer matches, which parsing ignores.
    """
    pem = make_certificate(
        [
            x509.UnrecognizedExtension(x509.ObjectIdentifier("1.2.3.4.5"), b"first"),
            x509.UnrecognizedExtension(x509.ObjectIdentifier("1.2.3.4.6"), b"second"),
        ]
    )
    der = x509.load_pem_x509_certificate(pem.encode("ascii")).public_bytes(
        serialization.Encoding.DER
    )
    second_oid = b"\x06\x04\x2a\x03\x04\x06"
    assert der.count(second_oid) == 1
    patched = der.replace(second_oid, b"\x06\x04\x2a\x03\x04\x05")
    body = base64.encodebytes(patched).decode("ascii")
    return f"-----BEGIN CERTIFICATE-----\n{body}-----END CERTIFICATE-----\n"


def signature_layer(pem: str | None, index: int = 0) -> Layer:
    annotations = {CERTIFICATE_ANNOTATION: pem} if pem is not None else {}
    annotations["dev.cosignproject.cosign/signature"] = "MEUCIQ=="
    return Layer(
        media_type=SIG_MEDIA_TYPE,
        size=250,
        digest="sha256:" + f"{index:02x}" * 32,
        annotations=annotations,
    )


def signature_manifest(layers: list[Layer]) -> ManifestResponse:
    return ManifestResponse(
        manifest=RegistryManifest(
            schema_version=2,
            media_type="application/vnd.oci.image.manifest.v1+json",
            layers=layers,
        ),
        digest="sha256:" + "cc" * 32,
    )


# ---------------------------------------------------------------------------
# Images and manifests
# ---------------------------------------------------------------------------


@pytest.fixture()
def image() -> ImageReference:
    return ImageReference.parse("ghcr.io/example/app:1.0.0")


@pytest.fixture()
def signature_location(image: ImageReference) -> ImageReference:
    return image.with_tag("sha256-" + "aa" * 32 + ".sig")


@pytest.fixture()
def image_manifest() -> ManifestResponse:
    """A multi-platform index, as served for ``ghcr.io/example/app:1.0.0``."""
    return ManifestResponse.model_validate(
        {
            "manifest": {
                "schemaVersion": 2,
                "mediaType": "application/vnd.oci.image.index.v1+json",
                "manifests": [
                    {
                        "mediaType": "application/vnd.oci.image.manifest.v1+json",
                        "size": 1159,
                        "digest": "sha256:" + "11" * 32,
                        "platform": {"architecture": "amd64", "os": "linux"},
                    },
                    {
                        "mediaType": "application/vnd.oci.image.manifest.v1+json",
                        "size": 1159,
                        "digest": "sha256:" + "22" * 32,
                        "platform": {"architecture": "arm64", "os": "linux"},
                    },
                ],
            },
            "digest": IMAGE_DIGEST,
        }
    )


@pytest.fixture()
def trivy_report() -> dict[str, Any]:
    """A trivy JSON report: two CRITICAL and one MEDIUM finding, one duplicate."""
    critical_a = {
        "VulnerabilityID": "CVE-2024-0001",
        "PkgName": "openssl",
        "InstalledVersion": "3.0.1",
        "FixedVersion": "3.0.2",
        "Severity": "CRITICAL",
        "Title": "openssl: buffer overflow",
        "PrimaryURL": "https://avd.aquasec.com/nvd/cve-2024-0001",
        "References": ["https://example.com/cve-2024-0001"],
        "CVSS": {"nvd": {"V3Vector": "CVSS:3.1/AV:N", "V3Score": 9.8}},
    }
    critical_b = {
        "VulnerabilityID": "CVE-2024-0002",
        "PkgName": "zlib",
        "InstalledVersion": "1.2.11",
        "Severity": "CRITICAL",
    }
    medium = {
        "VulnerabilityID": "CVE-2023-1234",
        "PkgName": "busybox",
        "InstalledVersion": "1.36.0",
        "Severity": "MEDIUM",
        "References": None,
    }
    return {
        "SchemaVersion": 2,
        "ArtifactName": "ghcr.io/example/app:1.0.0",
        "ArtifactType": "container_image",
        "Results": [
            {"Target": "app (alpine 3.19)", "Vulnerabilities": [medium, critical_a]},
            {"Target": "usr/lib/libz.so", "Vulnerabilities": [critical_b, critical_a]},
            {"Target": "app/requirements.txt", "Vulnerabilities": None},
        ],
    }


@pytest.fixture()
def scan_output(trivy_report: dict[str, Any]) -> VulnerabilityScanOutput:
    return VulnerabilityScanOutput.model_validate_json(json.dumps(trivy_report))


# ---------------------------------------------------------------------------
# Fakes for the external capabilities
# ---------------------------------------------------------------------------


class FakeCacheBackend:
    """In-memory cache backend that records every operation."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.calls: list[tuple[str, str]] = []
        self.failing: set[str] = set()

    def _record(self, operation: str, key: str) -> None:
        self.calls.append((operation, key))
        if operation in self.failing:
            raise CacheFailure(f"{operation} {key} failed")

    async def exists(self, key: str) -> bool:
        self._record("exists", key)
        return key in self.data

    async def get(self, key: str) -> str | None:
        self._record("get", key)
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._record("set", key)
        self.data[key] = value

    async def expire(self, key: str, seconds: int) -> None:
        self._record("expire", key)
        self.ttls[key] = seconds

    async def delete(self, key: str) -> None:
        self._record("delete", key)
        self.data.pop(key, None)
        self.ttls.pop(key, None)


class FakeManifestSource:
    """Serves manifests keyed by canonical image reference.

    Unknown references raise :class:`NotFoundError`; a mapped exception is raised.
    """

    def __init__(self, responses: dict[str, ManifestResponse | Exception]) -> None:
        self.responses = responses
        self.requests: list[str] = []

    async def get_manifest(self, image: ImageReference) -> ManifestResponse:
        self.requests.append(str(image))
        response = self.responses.get(str(image))
        if response is None:
            raise NotFoundError(f"manifest {image} not found")
        if isinstance(response, Exception):
            raise response
        return response


class FakeScanSource:
    def __init__(self, result: VulnerabilityScanOutput | Exception) -> None:
        self.result = result
        self.calls: list[dict[str, Any]] = []

    async def scan(
        self,
        image: ImageReference,
        server: str | None = None,
        username: str | None = None,
        password: str | None = None,
    ) -> VulnerabilityScanOutput:
        self.calls.append(
            {"image": str(image), "server": server, "username": username, "password": password}
        )
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class FakeVerifySource:
    def __init__(self, result: CosignVerify | Exception) -> None:
        self.result = result
        self.calls: list[tuple[str, str]] = []

    async def verify(self, key: str, image: ImageReference) -> CosignVerify:
        self.calls.append((key, str(image)))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


@pytest.fixture()
def cache_backend() -> FakeCacheBackend:
    return FakeCacheBackend()


@pytest.fixture()
def scan_source_factory() -> Callable[..., FakeScanSource]:
    return FakeScanSource


@pytest.fixture()
def verified() -> CosignVerify:
    return CosignVerify.model_validate(
        {
            "message": "Verification for ghcr.io/example/app:1.0.0 --\n"
            "The following checks were performed on each of these signatures:",
            "signatures": [
                {
                    "critical": {
                        "identity": {"docker-reference": "ghcr.io/example/app"},
                        "image": {"docker-manifest-digest": IMAGE_DIGEST},
                        "type": "cosign container image signature",
                    },
                    "optional": None,
                }
            ],
        }
    )


@pytest.fixture(autouse=True)
def _reset_package_logger() -> Iterator[None]:
    """Drop handlers the CLI attaches to streams that CliRunner closes."""
    yield
    package_logger = logging.getLogger("aumai_imagescope")
    package_logger.handlers.clear()
    package_logger.setLevel(logging.NOTSET)
