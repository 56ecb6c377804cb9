"""HTTP manifest source for OCI / Docker registries."""

from __future__ import annotations

import hashlib
import logging

import httpx
from pydantic import ValidationError

from aumai_imagescope.errors import NotFoundError, ParseFailure, SourceFailure
from aumai_imagescope.models import ImageReference, ManifestResponse, RegistryManifest

logger = logging.getLogger(__name__)

MANIFEST_MEDIA_TYPES = (
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.docker.distribution.manifest.v2+json",
)

DIGEST_HEADER = "Docker-Content-Digest"


def manifest_url(image: ImageReference) -> str:
    """Registry API URL of the manifest *image* points at."""
    return f"https://{image.registry_host}/v2/{image.path}/manifests/{image.reference}"


class RegistryClient:
    """Fetch manifests from a registry's ``/v2/`` API.

    Anonymous only: registries that demand a token answer with 401, which is
    reported as a :class:`SourceFailure`.
    """

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def get_manifest(self, image: ImageReference) -> ManifestResponse:
        """Fetch the manifest that *image* resolves to.

        Raises:
            NotFoundError: the registry answered 404.
            SourceFailure: any other HTTP or transport failure.
            ParseFailure: the body is not a manifest.
        """
        return await self.get_manifest_url(manifest_url(image))

    async def get_manifest_url(self, url: str) -> ManifestResponse:
        """Fetch the manifest at an explicit registry API *url*."""
        logger.debug("GET %s", url)
        try:
            response = await self._client.get(
                url, headers={"Accept": ", ".join(MANIFEST_MEDIA_TYPES)}
            )
        except httpx.HTTPError as exc:
            raise SourceFailure(f"request for manifest {url} failed", exc) from exc

        if response.status_code == httpx.codes.NOT_FOUND:
            raise NotFoundError(f"manifest {url} not found")
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise SourceFailure(f"registry refused manifest {url}", exc) from exc

        try:
            manifest = RegistryManifest.model_validate_json(response.content)
        except ValidationError as exc:
            raise ParseFailure(f"response for {url} is not a manifest", exc) from exc

        digest = response.headers.get(DIGEST_HEADER)
        if not digest:
            digest = "sha256:" + hashlib.sha256(response.content).hexdigest()
        try:
            return ManifestResponse(manifest=manifest, digest=digest)
        except ValidationError as exc:
            raise ParseFailure(f"registry sent an invalid digest for {url}", exc) from exc


__all__ = ["MANIFEST_MEDIA_TYPES", "RegistryClient", "manifest_url"]
