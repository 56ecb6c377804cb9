"""aumai-imagescope quickstart: offline demonstrations of the main features.

Run this file directly to verify your installation:

    python examples/quickstart.py

Pass an image reference to also inspect it against its real registry (needs
network access, and ``trivy`` on PATH for the vulnerability branch):

    python examples/quickstart.py ghcr.io/sigstore/cosign/cosign:v2.2.4
"""

from __future__ import annotations

import asyncio
import sys
from datetime import UTC, datetime, timedelta

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from aumai_imagescope import (
    CosignVerifier,
    ImageInspector,
    ImageReference,
    Layer,
    RegistryClient,
    TrivyInformation,
    TrivyScanner,
    derive_signatures,
    extract_certificate,
    triangulate,
)
from aumai_imagescope.core import CERTIFICATE_ANNOTATION, OID_OIDC_IDENTITY, OID_OIDC_ISSUER
from aumai_imagescope.models import VulnerabilityScanOutput


def _keyless_certificate(issuer: str, identity: str) -> str:
    """Build a short-lived certificate shaped like the ones Fulcio issues."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.ORGANIZATION_NAME, "sigstore.dev")])
    body = identity.encode()
    now = datetime.now(tz=UTC)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(minutes=10))
        .add_extension(
            x509.UnrecognizedExtension(x509.ObjectIdentifier(OID_OIDC_ISSUER), issuer.encode()),
            critical=False,
        )
        .add_extension(
            x509.UnrecognizedExtension(
                x509.ObjectIdentifier(OID_OIDC_IDENTITY), bytes([0x0C, len(body)]) + body
            ),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM).decode()


# ---------------------------------------------------------------------------
# Demo 1: image references and triangulation
# ---------------------------------------------------------------------------


def demo_triangulation() -> None:
    print("\n=== Demo 1: Image references & triangulation ===")
    for text in ("nginx", "bitnami/redis:7.2", "ghcr.io/example/app:1.0.0"):
        print(f"  {text:<28} -> {ImageReference.parse(text)}")

    image = ImageReference.parse("ghcr.io/example/app:1.0.0")
    location = triangulate(image, "sha256:" + "ab" * 32)
    print(f"  Signature manifest: {location}")


# ---------------------------------------------------------------------------
# Demo 2: certificates and signature derivation
# ---------------------------------------------------------------------------


def demo_signatures() -> None:
    print("\n=== Demo 2: Certificates & signatures ===")
    issuer = "https://token.actions.githubusercontent.com"
    identity = "https://github.com/example/app/.github/workflows/release.yaml@refs/tags/v1.0.0"
    pem = _keyless_certificate(issuer, identity)

    certificate = extract_certificate(pem)
    print(f"  Subject      : {certificate.subject}")
    print(f"  Valid until  : {certificate.not_after.isoformat()}")

    layers = [
        Layer(
            media_type="application/vnd.dev.cosign.simplesigning.v1+json",
            digest="sha256:" + f"{index:02x}" * 32,
            annotations={CERTIFICATE_ANNOTATION: pem},
        )
        for index in range(2)
    ]
    for signature in derive_signatures(layers):
        print(f"  Signed by    : {signature.identity}")
        print(f"  via issuer   : {signature.issuer}")


# ---------------------------------------------------------------------------
# Demo 3: vulnerability summaries
# ---------------------------------------------------------------------------


def demo_vulnerabilities() -> None:
    print("\n=== Demo 3: Vulnerability summary ===")
    report = VulnerabilityScanOutput.model_validate(
        {
            "ArtifactName": "ghcr.io/example/app:1.0.0",
            "Results": [
                {
                    "Target": "app (alpine 3.19)",
                    "Vulnerabilities": [
                        {"VulnerabilityID": "CVE-2024-0001", "PkgName": "openssl",
                         "InstalledVersion": "3.0.1", "Severity": "CRITICAL"},
                        {"VulnerabilityID": "CVE-2023-1234", "PkgName": "busybox",
                         "InstalledVersion": "1.36.0", "Severity": "MEDIUM"},
                    ],
                }
            ],
        }
    )
    info = TrivyInformation.from_scan_output(report)
    count = info.severity_count
    print(f"  {count.total} finding(s): CRITICAL={count.critical} MEDIUM={count.medium}")


# ---------------------------------------------------------------------------
# Demo 4: live inspection
# ---------------------------------------------------------------------------


async def demo_inspect(reference: str) -> None:
    print(f"\n=== Demo 4: Inspect {reference} ===")
    image = ImageReference.parse(reference)
    async with httpx.AsyncClient(timeout=30, follow_redirects=True) as client:
        inspector = ImageInspector(RegistryClient(client), TrivyScanner(), CosignVerifier())
        report = await inspector.inspect(image)

    for branch, outcome in (("manifest", report.docker), ("signatures", report.cosign),
                            ("vulnerabilities", report.trivy)):
        status = "ok" if outcome.ok else f"failed: {outcome.error}"
        print(f"  {branch:<16}{status}")
    if report.cosign.ok:
        for signature in report.cosign.unwrap().value.signatures:
            print(f"  signed by {signature.identity}")


def main() -> None:
    print("aumai-imagescope quickstart demos")
    print("=" * 45)
    demo_triangulation()
    demo_signatures()
    demo_vulnerabilities()
    if len(sys.argv) > 1:
        asyncio.run(demo_inspect(sys.argv[1]))
    print("\n" + "=" * 45)
    print("All demos completed.")


if __name__ == "__main__":
    main()
