"""Tests for aumai_imagescope.fetchers: the three cacheable fetchers."""

from __future__ import annotations

from collections.abc import Callable

import pytest
from pydantic import SecretStr

from aumai_imagescope.errors import NotFoundError, ParseFailure, PemError, SourceFailure
from aumai_imagescope.fetchers import (
    CosignInformationFetcher,
    DockerManifestFetcher,
    TrivyInformationFetcher,
)
from aumai_imagescope.models import (
    ImageReference,
    ManifestResponse,
    Signature,
    VulnerabilityScanOutput,
)

from conftest import (
    GITHUB_ISSUER,
    IMAGE_DIGEST,
    RELEASE_IDENTITY,
    FakeManifestSource,
    FakeScanSource,
    signature_layer,
    signature_manifest,
)

# ===========================================================================
# DockerManifestFetcher
# ===========================================================================


class TestDockerManifestFetcher:
    def test_key(self, image: ImageReference) -> None:
        fetcher = DockerManifestFetcher(FakeManifestSource({}), image)
        assert fetcher.key() == "docker_manifest:ghcr.io/example/app:1.0.0"

    @pytest.mark.asyncio
    async def test_fetch(self, image: ImageReference, image_manifest: ManifestResponse) -> None:
        source = FakeManifestSource({str(image): image_manifest})
        assert await DockerManifestFetcher(source, image).fetch() == image_manifest

    @pytest.mark.asyncio
    async def test_not_found_propagates(self, image: ImageReference) -> None:
        with pytest.raises(NotFoundError):
            await DockerManifestFetcher(FakeManifestSource({}), image).fetch()


# ===========================================================================
# CosignInformationFetcher
# ===========================================================================


class TestCosignInformationFetcher:
    def test_key(self, image: ImageReference) -> None:
        fetcher = CosignInformationFetcher(FakeManifestSource({}), image, IMAGE_DIGEST)
        assert fetcher.key() == "cosign:ghcr.io/example/app:1.0.0"

    @pytest.mark.asyncio
    async def test_signed_image(
        self,
        image: ImageReference,
        signature_location: ImageReference,
        fulcio_pem: str,
    ) -> None:
        source = FakeManifestSource(
            {str(signature_location): signature_manifest([signature_layer(fulcio_pem)])}
        )
        info = await CosignInformationFetcher(source, image, IMAGE_DIGEST).fetch()
        assert source.requests == [str(signature_location)]
        assert info.manifest_found
        assert info.manifest_location == str(signature_location)
        assert info.signatures == [Signature(issuer=GITHUB_ISSUER, identity=RELEASE_IDENTITY)]

    @pytest.mark.asyncio
    async def test_unsigned_image(
        self, image: ImageReference, signature_location: ImageReference
    ) -> None:
        info = await CosignInformationFetcher(FakeManifestSource({}), image, IMAGE_DIGEST).fetch()
        assert not info.manifest_found
        assert info.signatures == []
        assert info.manifest_location == str(signature_location)

    @pytest.mark.asyncio
    async def test_manifest_without_certificates(
        self, image: ImageReference, signature_location: ImageReference
    ) -> None:
        source = FakeManifestSource(
            {str(signature_location): signature_manifest([signature_layer(None)])}
        )
        info = await CosignInformationFetcher(source, image, IMAGE_DIGEST).fetch()
        assert info.manifest_found
        assert info.signatures == []

    @pytest.mark.asyncio
    async def test_malformed_certificate(
        self, image: ImageReference, signature_location: ImageReference
    ) -> None:
        source = FakeManifestSource(
            {str(signature_location): signature_manifest([signature_layer("garbage")])}
        )
        with pytest.raises(PemError) as excinfo:
            await CosignInformationFetcher(source, image, IMAGE_DIGEST).fetch()
        assert str(signature_location) in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_index_at_signature_location(
        self,
        image: ImageReference,
        signature_location: ImageReference,
        image_manifest: ManifestResponse,
    ) -> None:
        source = FakeManifestSource({str(signature_location): image_manifest})
        with pytest.raises(ParseFailure):
            await CosignInformationFetcher(source, image, IMAGE_DIGEST).fetch()

    @pytest.mark.asyncio
    async def test_registry_failure_propagates(
        self, image: ImageReference, signature_location: ImageReference
    ) -> None:
        source = FakeManifestSource({str(signature_location): SourceFailure("HTTP 500")})
        with pytest.raises(SourceFailure):
            await CosignInformationFetcher(source, image, IMAGE_DIGEST).fetch()

    @pytest.mark.asyncio
    async def test_identity_trimming_can_be_disabled(
        self,
        image: ImageReference,
        signature_location: ImageReference,
        fulcio_pem: str,
    ) -> None:
        source = FakeManifestSource(
            {str(signature_location): signature_manifest([signature_layer(fulcio_pem)])}
        )
        info = await CosignInformationFetcher(
            source, image, IMAGE_DIGEST, trim_identity=False
        ).fetch()
        assert info.signatures[0].identity != RELEASE_IDENTITY


# ===========================================================================
# TrivyInformationFetcher
# ===========================================================================


class TestTrivyInformationFetcher:
    def test_key(self, image: ImageReference, scan_output: VulnerabilityScanOutput) -> None:
        fetcher = TrivyInformationFetcher(FakeScanSource(scan_output), image)
        assert fetcher.key() == "trivy:ghcr.io/example/app:1.0.0"

    @pytest.mark.asyncio
    async def test_counts_and_credentials(
        self,
        image: ImageReference,
        scan_output: VulnerabilityScanOutput,
        scan_source_factory: Callable[..., FakeScanSource],
    ) -> None:
        source = scan_source_factory(scan_output)
        info = await TrivyInformationFetcher(
            source,
            image,
            server="http://trivy:4954",
            username="robot",
            password=SecretStr("s3cret"),
        ).fetch()
        assert info.severity_count.critical == 2
        assert info.severity_count.medium == 1
        assert source.calls == [
            {
                "image": "ghcr.io/example/app:1.0.0",
                "server": "http://trivy:4954",
                "username": "robot",
                "password": "s3cret",
            }
        ]

    @pytest.mark.asyncio
    async def test_scan_failure_propagates(self, image: ImageReference) -> None:
        fetcher = TrivyInformationFetcher(FakeScanSource(SourceFailure("exit 1")), image)
        with pytest.raises(SourceFailure):
            await fetcher.fetch()
