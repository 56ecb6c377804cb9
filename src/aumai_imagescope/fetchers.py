"""Cacheable fetchers for the registry manifest, cosign provenance and trivy scan."""

from __future__ import annotations

import logging
from typing import Protocol

from pydantic import SecretStr

from aumai_imagescope.core import signatures_from_manifest, triangulate
from aumai_imagescope.errors import NotFoundError, ParseFailure
from aumai_imagescope.models import (
    ContentDigest,
    CosignInformation,
    CosignVerify,
    ImageReference,
    ManifestResponse,
    TrivyInformation,
    VulnerabilityScanOutput,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Source capabilities
# ---------------------------------------------------------------------------


class ManifestSource(Protocol):
    async def get_manifest(self, image: ImageReference) -> ManifestResponse: ...


class ScanSource(Protocol):
    async def scan(
        self,
        image: ImageReference,
        server: str | None = None,
        username: str | None = None,
        password: str | None = None,
    ) -> VulnerabilityScanOutput: ...


class VerifySource(Protocol):
    async def verify(self, key: str, image: ImageReference) -> CosignVerify: ...


# ---------------------------------------------------------------------------
# Fetchers
# ---------------------------------------------------------------------------


class DockerManifestFetcher:
    """The registry manifest of an image."""

    output_type = ManifestResponse

    def __init__(self, source: ManifestSource, image: ImageReference) -> None:
        self.source = source
        self.image = image

    def key(self) -> str:
        return f"docker_manifest:{self.image}"

    async def fetch(self) -> ManifestResponse:
        return await self.source.get_manifest(self.image)


class CosignInformationFetcher:
    """Signature provenance of an image, derived from its ``.sig`` manifest.

    A missing signature manifest is a successful, unsigned result.  A
    signature manifest that cannot be parsed, or a registry failure other than
    "not found", is an error.
    """

    output_type = CosignInformation

    def __init__(
        self,
        source: ManifestSource,
        image: ImageReference,
        digest: ContentDigest | str,
        trim_identity: bool = True,
    ) -> None:
        self.source = source
        self.image = image
        self.digest = digest
        self.trim_identity = trim_identity

    def key(self) -> str:
        return f"cosign:{self.image}"

    async def fetch(self) -> CosignInformation:
        location = triangulate(self.image, self.digest)
        try:
            response = await self.source.get_manifest(location)
        except NotFoundError:
            logger.debug("No signature manifest at %s", location)
            return CosignInformation(manifest_location=str(location), manifest_found=False)

        try:
            signatures = signatures_from_manifest(response.manifest, self.trim_identity)
        except ParseFailure as exc:
            raise type(exc)(
                f"failed to derive signatures from {location}", exc
            ) from exc

        return CosignInformation(manifest_location=str(location), signatures=signatures)


class TrivyInformationFetcher:
    """Vulnerability findings for an image."""

    output_type = TrivyInformation

    def __init__(
        self,
        source: ScanSource,
        image: ImageReference,
        server: str | None = None,
        username: str | None = None,
        password: SecretStr | None = None,
    ) -> None:
        self.source = source
        self.image = image
        self.server = server
        self.username = username
        self.password = password

    def key(self) -> str:
        return f"trivy:{self.image}"

    async def fetch(self) -> TrivyInformation:
        output = await self.source.scan(
            self.image,
            server=self.server,
            username=self.username,
            password=self.password.get_secret_value() if self.password else None,
        )
        return TrivyInformation.from_scan_output(output)


__all__ = [
    "CosignInformationFetcher",
    "DockerManifestFetcher",
    "ManifestSource",
    "ScanSource",
    "TrivyInformationFetcher",
    "VerifySource",
]
