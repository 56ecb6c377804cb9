"""Certificate extraction, signature derivation and signature-manifest triangulation."""

from __future__ import annotations

import base64
import binascii
import logging
import re
import unicodedata
from collections.abc import Iterable
from datetime import datetime

from cryptography import x509
from cryptography.x509.oid import NameOID

from aumai_imagescope.errors import (
    CertificateTimeError,
    ParseFailure,
    PemError,
    X509Error,
)
from aumai_imagescope.models import (
    Certificate,
    ContentDigest,
    ImageReference,
    Layer,
    RegistryManifest,
    Signature,
)

logger = logging.getLogger(__name__)

CERTIFICATE_ANNOTATION = "dev.sigstore.cosign/certificate"

OID_OIDC_ISSUER = "1.3.6.1.4.1.57264.1.1"
OID_OIDC_IDENTITY = "1.3.6.1.4.1.57264.1.9"
OID_SUBJECT_ALT_NAME = "2.5.29.17"

SIGNATURE_TAG_SUFFIX = ".sig"

_PEM_RE = re.compile(
    rb"-----BEGIN CERTIFICATE-----\s*(?P<body>.*?)\s*-----END CERTIFICATE-----",
    re.DOTALL,
)

# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _strip_control(text: str) -> str:
    """Drop every Unicode control character (category ``Cc``)."""
    return "".join(char for char in text if unicodedata.category(char) != "Cc")


def _raw_extension_value(extension: x509.Extension[x509.ExtensionType]) -> bytes:
    """Return the DER bytes inside the extension's OCTET STRING."""
    value = extension.value
    if isinstance(value, x509.UnrecognizedExtension):
        return value.value
    return value.public_bytes()


def _decode_extension_value(raw: bytes) -> str:
    return _strip_control(raw.decode("utf-8", errors="replace"))


def _pem_to_der(pem: bytes) -> bytes:
    matches = list(_PEM_RE.finditer(pem))
    if not matches:
        raise PemError("no PEM certificate block found")
    if len(matches) > 1:
        raise PemError(f"expected exactly one PEM certificate block, found {len(matches)}")
    match = matches[0]
    body = b"".join(match.group("body").split())
    try:
        return base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise PemError("PEM certificate body is not valid base64", exc) from exc


def _validity_window(cert: x509.Certificate) -> tuple[datetime, datetime]:
    try:
        not_before = cert.not_valid_before_utc
    except (ValueError, OverflowError) as exc:
        raise CertificateTimeError("invalid not before", exc) from exc
    try:
        not_after = cert.not_valid_after_utc
    except (ValueError, OverflowError) as exc:
        raise CertificateTimeError("invalid not after", exc) from exc

    if not_before >= not_after:
        raise CertificateTimeError(
            f"validity window is empty or inverted: {not_before.isoformat()} "
            f">= {not_after.isoformat()}"
        )
    return not_before, not_after


# ---------------------------------------------------------------------------
# Certificate extraction
# ---------------------------------------------------------------------------


def extract_certificate(pem: bytes | str) -> Certificate:
    """Parse a single PEM-encoded X.509 certificate.

    Extension values are decoded as (lossy) UTF-8 with control characters
    removed, keyed by dotted OID string.

    Args:
        pem: PEM text, as bytes or str.

    Returns:
        The extracted :class:`Certificate`.

    Raises:
        PemError: if the PEM envelope is malformed or holds more than one
            certificate.
        X509Error: if the DER payload is not a parseable certificate, or its
            extensions are duplicated or unsupported.
        CertificateTimeError: if a validity bound is unrepresentable or the
            validity window is inverted.
    """
    if isinstance(pem, str):
        pem = pem.encode("utf-8")

    der = _pem_to_der(pem)
    try:
        cert = x509.load_der_x509_certificate(der)
    except ValueError as exc:
        raise X509Error("failed to parse X.509 certificate", exc) from exc

    try:
        subject = cert.subject.rfc4514_string()
        issuer = cert.issuer.rfc4514_string()
        common_names = [
            str(attribute.value)
            for attribute in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        ]
        extensions = {
            extension.oid.dotted_string: _decode_extension_value(
                _raw_extension_value(extension)
            )
            for extension in cert.extensions
        }
    except (ValueError, x509.DuplicateExtension, x509.UnsupportedGeneralNameType) as exc:
        raise X509Error("failed to read certificate fields", exc) from exc

    not_before, not_after = _validity_window(cert)

    return Certificate(
        subject=subject,
        issuer=issuer,
        common_names=common_names,
        not_before=not_before,
        not_after=not_after,
        extensions=extensions,
    )


# ---------------------------------------------------------------------------
# Signature derivation
# ---------------------------------------------------------------------------


def trim_identity(identity: str) -> str:
    """Drop anything before the first ``https://`` in *identity*."""
    index = identity.find("https://")
    return identity[index:] if index > 0 else identity


def signature_from_certificate(
    certificate: Certificate, trim: bool = True
) -> Signature:
    """Read the OIDC issuer and identity claims from *certificate*.

    The identity comes from the Fulcio identity extension, falling back to the
    Subject Alternative Name.  Missing claims become empty strings.
    """
    extensions = certificate.extensions
    issuer = extensions.get(OID_OIDC_ISSUER, "")
    identity = extensions.get(OID_OIDC_IDENTITY)
    if identity is None:
        identity = extensions.get(OID_SUBJECT_ALT_NAME, "")
    if trim:
        identity = trim_identity(identity)
    return Signature(issuer=issuer, identity=identity)


def derive_signatures(layers: Iterable[Layer], trim: bool = True) -> list[Signature]:
    """Build the sorted, de-duplicated signature claims of a signature manifest.

    Every layer carrying the cosign certificate annotation is parsed; the
    first malformed certificate fails the whole derivation.

    Raises:
        ParseFailure: (or a subclass) if any certificate cannot be extracted.
    """
    certificates: list[Certificate] = []
    for layer in layers:
        pem = layer.annotations.get(CERTIFICATE_ANNOTATION)
        if pem is None:
            continue
        try:
            certificates.append(extract_certificate(pem))
        except ParseFailure as exc:
            raise type(exc)(
                f"failed to parse certificate of layer {layer.digest}", exc
            ) from exc

    signatures = {signature_from_certificate(cert, trim) for cert in certificates}
    logger.debug(
        "Derived %d signature(s) from %d certificate(s)",
        len(signatures),
        len(certificates),
    )
    return sorted(signatures, key=lambda signature: signature.sort_key)


def signatures_from_manifest(
    manifest: RegistryManifest, trim: bool = True
) -> list[Signature]:
    """Derive signatures from a signature manifest.

    Raises:
        ParseFailure: if *manifest* is an index rather than an image manifest,
            or if a certificate is malformed.
    """
    if manifest.is_index:
        raise ParseFailure("signature manifest is an index, not a single manifest")
    return derive_signatures(manifest.layers, trim)


# ---------------------------------------------------------------------------
# Triangulation
# ---------------------------------------------------------------------------


def triangulate(image: ImageReference, digest: ContentDigest | str) -> ImageReference:
    """Locate the detached signature manifest of *image*.

    ``ghcr.io/example/app:1.0.0`` with digest ``sha256:<hex>`` maps to
    ``ghcr.io/example/app:sha256-<hex>.sig``.
    """
    if isinstance(digest, str):
        digest = ContentDigest.parse(digest)
    return image.with_tag(f"{digest.as_tag()}{SIGNATURE_TAG_SUFFIX}")


__all__ = [
    "CERTIFICATE_ANNOTATION",
    "OID_OIDC_IDENTITY",
    "OID_OIDC_ISSUER",
    "OID_SUBJECT_ALT_NAME",
    "derive_signatures",
    "extract_certificate",
    "signature_from_certificate",
    "signatures_from_manifest",
    "triangulate",
    "trim_identity",
]
