"""Concurrent aggregation of everything known about one image."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, SecretStr

from aumai_imagescope.cache import FetchThroughCache
from aumai_imagescope.errors import ImageScopeError, SourceFailure
from aumai_imagescope.fetchers import (
    CosignInformationFetcher,
    DockerManifestFetcher,
    ManifestSource,
    ScanSource,
    TrivyInformationFetcher,
    VerifySource,
)
from aumai_imagescope.models import (
    CachedEntry,
    CosignInformation,
    CosignVerify,
    ImageReference,
    ManifestResponse,
    TrivyInformation,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Outcome(BaseModel, Generic[T]):
    """Either the value a branch produced or the error it failed with."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    value: T | None = None
    error: ImageScopeError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value, re-raising the branch's error if it failed."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


class ImageReport(BaseModel):
    """The four independent outcomes for one image.

    ``verify`` is ``None`` when no verification key was supplied.
    """

    model_config = ConfigDict(frozen=True)

    image: ImageReference
    docker: Outcome[CachedEntry[ManifestResponse]]
    cosign: Outcome[CachedEntry[CosignInformation]]
    verify: Outcome[CosignVerify] | None
    trivy: Outcome[CachedEntry[TrivyInformation]]
    ttl_seconds: int


async def _capture(
    branch: str,
    image: ImageReference,
    work: Awaitable[T],
    outcome_type: type[Outcome[T]],
) -> Outcome[T]:
    """Await *work* and report its result or failure as an *outcome_type*.

    Sources are opaque, so anything else they raise is reported as a
    :class:`SourceFailure` instead of cancelling the sibling branches.
    """
    try:
        return outcome_type(value=await work)
    except ImageScopeError as exc:
        logger.error("%s failed for %s: %s", branch, image, exc)
        return outcome_type(error=exc)
    except Exception as exc:
        logger.exception("%s failed unexpectedly for %s", branch, image)
        return outcome_type(error=SourceFailure(f"{branch} failed unexpectedly", exc))


class ImageInspector:
    """Fetch manifest, provenance, verification and vulnerabilities for an image.

    Args:
        manifest_source: Registry manifest capability.
        scan_source: Vulnerability scan capability.
        verify_source: Key-based signature verification capability.
        cache: Fetch-through cache; defaults to no caching.
        trim_identity: Trim signature identities to their ``https://`` URL.
    """

    def __init__(
        self,
        manifest_source: ManifestSource,
        scan_source: ScanSource,
        verify_source: VerifySource,
        cache: FetchThroughCache | None = None,
        trim_identity: bool = True,
    ) -> None:
        self.manifest_source = manifest_source
        self.scan_source = scan_source
        self.verify_source = verify_source
        self.cache = cache or FetchThroughCache()
        self.trim_identity = trim_identity

    # ------------------------------------------------------------------
    # Single branches
    # ------------------------------------------------------------------

    async def docker_manifest(self, image: ImageReference) -> CachedEntry[ManifestResponse]:
        return await self.cache.get(DockerManifestFetcher(self.manifest_source, image))

    async def cosign_information(
        self, image: ImageReference, digest: str
    ) -> CachedEntry[CosignInformation]:
        fetcher = CosignInformationFetcher(
            self.manifest_source, image, digest, trim_identity=self.trim_identity
        )
        return await self.cache.get(fetcher)

    async def vulnerabilities(
        self,
        image: ImageReference,
        server: str | None = None,
        username: str | None = None,
        password: SecretStr | None = None,
    ) -> CachedEntry[TrivyInformation]:
        fetcher = TrivyInformationFetcher(
            self.scan_source, image, server=server, username=username, password=password
        )
        return await self.cache.get(fetcher)

    async def _cosign_after_docker(
        self,
        image: ImageReference,
        docker: asyncio.Task[Outcome[CachedEntry[ManifestResponse]]],
    ) -> CachedEntry[CosignInformation]:
        outcome = await docker
        if outcome.error is not None:
            raise SourceFailure(
                f"cannot locate signature manifest of {image} without its digest",
                outcome.error,
            ) from outcome.error
        return await self.cosign_information(image, outcome.unwrap().value.digest)

    # ------------------------------------------------------------------
    # Aggregate
    # ------------------------------------------------------------------

    async def inspect(
        self,
        image: ImageReference,
        cosign_key: str | None = None,
        trivy_server: str | None = None,
        trivy_username: str | None = None,
        trivy_password: SecretStr | None = None,
    ) -> ImageReport:
        """Run all four branches concurrently and wait for every one of them.

        A failing branch never aborts the others; its error is reported in
        its :class:`Outcome`.  Cancelling the caller cancels every branch.
        """
        async with asyncio.TaskGroup() as group:
            docker = group.create_task(
                _capture(
                    "docker manifest",
                    image,
                    self.docker_manifest(image),
                    Outcome[CachedEntry[ManifestResponse]],
                )
            )
            cosign = group.create_task(
                _capture(
                    "cosign manifest",
                    image,
                    self._cosign_after_docker(image, docker),
                    Outcome[CachedEntry[CosignInformation]],
                )
            )
            verify = (
                group.create_task(
                    _capture(
                        "cosign verify",
                        image,
                        self.verify_source.verify(cosign_key, image),
                        Outcome[CosignVerify],
                    )
                )
                if cosign_key
                else None
            )
            trivy = group.create_task(
                _capture(
                    "trivy scan",
                    image,
                    self.vulnerabilities(
                        image, trivy_server, trivy_username, trivy_password
                    ),
                    Outcome[CachedEntry[TrivyInformation]],
                )
            )

        return ImageReport(
            image=image,
            docker=docker.result(),
            cosign=cosign.result(),
            verify=verify.result() if verify is not None else None,
            trivy=trivy.result(),
            ttl_seconds=self.cache.ttl_seconds,
        )


__all__ = ["ImageInspector", "ImageReport", "Outcome"]
