"""CLI entry point for aumai-imagescope."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta
from pathlib import Path
from typing import Any

import click
import httpx
from pydantic import SecretStr

from aumai_imagescope.cache import FetchThroughCache, RedisCacheBackend
from aumai_imagescope.config import Settings
from aumai_imagescope.core import extract_certificate, triangulate
from aumai_imagescope.errors import ImageScopeError
from aumai_imagescope.models import (
    CachedEntry,
    ContentDigest,
    ImageReference,
    SeverityCount,
    TrivyInformation,
)
from aumai_imagescope.orchestrator import ImageInspector, ImageReport, Outcome
from aumai_imagescope.registry import RegistryClient
from aumai_imagescope.scanner import TrivyScanner
from aumai_imagescope.verification import CosignVerifier

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(level: str) -> None:
    """Send package logs to stderr at *level*."""
    package_logger = logging.getLogger("aumai_imagescope")
    package_logger.setLevel(level.upper())
    package_logger.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    package_logger.addHandler(handler)


def _settings(**overrides: Any) -> Settings:
    settings = Settings()
    updates = {name: value for name, value in overrides.items() if value is not None}
    return settings.model_copy(update=updates)


def _parse_image(value: str) -> ImageReference:
    try:
        return ImageReference.parse(value)
    except ImageScopeError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


@asynccontextmanager
async def _open_inspector(settings: Settings) -> AsyncIterator[ImageInspector]:
    backend = RedisCacheBackend.from_url(settings.redis_url) if settings.redis_url else None
    cache = FetchThroughCache(
        backend,
        ttl_seconds=settings.cache_ttl_seconds,
        namespace=settings.cache_namespace,
    )
    async with httpx.AsyncClient(
        timeout=settings.registry_timeout_seconds, follow_redirects=True
    ) as client:
        try:
            yield ImageInspector(
                RegistryClient(client),
                TrivyScanner(timeout=settings.trivy_timeout_seconds),
                CosignVerifier(timeout=settings.cosign_timeout_seconds),
                cache=cache,
                trim_identity=settings.trim_identity,
            )
        finally:
            if backend is not None:
                await backend.aclose()


def _format_age(delta: timedelta) -> str:
    seconds = int(abs(delta.total_seconds()))
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h{minutes:02d}m{seconds:02d}s"


def _echo_freshness(entry: CachedEntry[Any], ttl_seconds: int) -> None:
    expires = entry.expires_at(ttl_seconds)
    click.echo(
        f"  Fetched      : {entry.fetch_time.isoformat()} "
        f"({_format_age(entry.age())} ago)"
    )
    click.echo(f"  Expires      : {expires.isoformat()}")


def _echo_severity_count(count: SeverityCount) -> None:
    click.echo(
        f"  Severities   : CRITICAL={count.critical} HIGH={count.high} "
        f"MEDIUM={count.medium} LOW={count.low} UNKNOWN={count.unknown}"
    )


def _echo_trivy(outcome: Outcome[CachedEntry[TrivyInformation]], ttl: int) -> None:
    click.echo("\nVulnerabilities")
    if not outcome.ok:
        click.echo(f"  Error        : {outcome.error}")
        return
    entry = outcome.unwrap()
    info = entry.value
    _echo_freshness(entry, ttl)
    click.echo(f"  Artifact     : {info.artifact_name}")
    _echo_severity_count(info.severity_count)
    for finding in info.vulnerabilities:
        fixed = f" (fixed in {finding.fixed_version})" if finding.fixed_version else ""
        click.echo(
            f"  [{finding.severity.value}] {finding.identifier} "
            f"{finding.pkg_name} {finding.installed_version}{fixed}"
        )


def _echo_report(report: ImageReport) -> None:
    ttl = report.ttl_seconds
    click.echo(f"Image        : {report.image}")

    click.echo("\nManifest")
    if report.docker.ok:
        entry = report.docker.unwrap()
        _echo_freshness(entry, ttl)
        click.echo(f"  Digest       : {entry.value.digest}")
        click.echo(f"  Media type   : {entry.value.manifest.media_type or '-'}")
        for sub in entry.value.manifest.manifests:
            platform = f"{sub.platform.os}/{sub.platform.architecture}" if sub.platform else "-"
            click.echo(f"  Platform     : {platform}  {sub.digest}")
    else:
        click.echo(f"  Error        : {report.docker.error}")

    click.echo("\nSignatures")
    if report.cosign.ok:
        entry = report.cosign.unwrap()
        info = entry.value
        _echo_freshness(entry, ttl)
        click.echo(f"  Location     : {info.manifest_location}")
        if not info.manifest_found:
            click.echo("  Status       : unsigned")
        elif not info.signatures:
            click.echo("  Status       : signature manifest without certificates")
        for signature in info.signatures:
            click.echo(f"  Issuer       : {signature.issuer}")
            click.echo(f"  Identity     : {signature.identity}")
    else:
        click.echo(f"  Error        : {report.cosign.error}")

    if report.verify is not None:
        click.echo("\nVerification")
        if report.verify.ok:
            verified = report.verify.unwrap()
            click.echo(f"  Verified     : {len(verified.signatures)} signature(s)")
            for line in verified.message.splitlines():
                click.echo(f"  {line}")
        else:
            click.echo(f"  Error        : {report.verify.error}")

    _echo_trivy(report.trivy, ttl)


def _outcome_json(outcome: Outcome[Any] | None) -> dict[str, Any] | None:
    if outcome is None:
        return None
    if not outcome.ok:
        return {"ok": False, "error": str(outcome.error)}
    return {"ok": True, "value": outcome.unwrap().model_dump(mode="json")}


def _report_json(report: ImageReport) -> dict[str, Any]:
    return {
        "image": str(report.image),
        "ttl_seconds": report.ttl_seconds,
        "docker": _outcome_json(report.docker),
        "cosign": _outcome_json(report.cosign),
        "verify": _outcome_json(report.verify),
        "trivy": _outcome_json(report.trivy),
    }


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@click.group()
@click.version_option()
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level (default: IMAGESCOPE_LOG_LEVEL or INFO).",
)
def main(log_level: str | None) -> None:
    """AumAI ImageScope: manifest, signatures and vulnerabilities of container images."""
    _setup_logging(log_level or Settings().log_level)


_trivy_options = [
    click.option("--trivy-server", default=None, metavar="URL", help="Scan through a trivy server."),
    click.option("--username", default=None, help="Registry username passed to trivy."),
    click.option("--password", default=None, help="Registry password passed to trivy."),
    click.option(
        "--redis-url",
        default=None,
        metavar="URL",
        help="Cache results in redis (default: IMAGESCOPE_REDIS_URL).",
    ),
    click.option("--ttl", type=click.IntRange(min=1), default=None, help="Cache TTL in seconds."),
    click.option("--json-output", is_flag=True, help="Emit raw JSON."),
]


def _with_trivy_options(command: Any) -> Any:
    for option in reversed(_trivy_options):
        command = option(command)
    return command


@main.command("inspect")
@click.argument("image")
@click.option(
    "--cosign-key",
    default=None,
    metavar="KEY",
    help="Also verify the signature against this public key.",
)
@_with_trivy_options
def inspect_command(
    image: str,
    cosign_key: str | None,
    trivy_server: str | None,
    username: str | None,
    password: str | None,
    redis_url: str | None,
    ttl: int | None,
    json_output: bool,
) -> None:
    """Show manifest, signatures, verification and vulnerabilities of IMAGE."""
    reference = _parse_image(image)
    settings = _settings(
        trivy_server=trivy_server,
        trivy_username=username,
        trivy_password=SecretStr(password) if password else None,
        redis_url=redis_url,
        cache_ttl_seconds=ttl,
    )

    async def run() -> ImageReport:
        async with _open_inspector(settings) as inspector:
            return await inspector.inspect(
                reference,
                cosign_key=cosign_key,
                trivy_server=settings.trivy_server,
                trivy_username=settings.trivy_username,
                trivy_password=settings.trivy_password,
            )

    report = asyncio.run(run())
    if json_output:
        click.echo(json.dumps(_report_json(report), indent=2))
    else:
        _echo_report(report)


@main.command("scan")
@click.argument("image")
@_with_trivy_options
def scan_command(
    image: str,
    trivy_server: str | None,
    username: str | None,
    password: str | None,
    redis_url: str | None,
    ttl: int | None,
    json_output: bool,
) -> None:
    """Scan IMAGE for vulnerabilities only."""
    reference = _parse_image(image)
    settings = _settings(
        trivy_server=trivy_server,
        trivy_username=username,
        trivy_password=SecretStr(password) if password else None,
        redis_url=redis_url,
        cache_ttl_seconds=ttl,
    )

    async def run() -> CachedEntry[TrivyInformation]:
        async with _open_inspector(settings) as inspector:
            return await inspector.vulnerabilities(
                reference,
                server=settings.trivy_server,
                username=settings.trivy_username,
                password=settings.trivy_password,
            )

    try:
        entry = asyncio.run(run())
    except ImageScopeError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    if json_output:
        click.echo(entry.model_dump_json(indent=2))
        return
    _echo_trivy(Outcome(value=entry), settings.cache_ttl_seconds)


@main.command("triangulate")
@click.argument("image")
@click.argument("digest")
def triangulate_command(image: str, digest: str) -> None:
    """Print where the signature manifest of IMAGE at DIGEST lives."""
    reference = _parse_image(image)
    try:
        location = triangulate(reference, ContentDigest.parse(digest))
    except ImageScopeError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    click.echo(str(location))


@main.command("certificate")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json-output", is_flag=True, help="Emit raw JSON.")
def certificate_command(path: Path, json_output: bool) -> None:
    """Display a PEM certificate the way signature derivation sees it."""
    try:
        certificate = extract_certificate(path.read_bytes())
    except ImageScopeError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    if json_output:
        click.echo(certificate.model_dump_json(indent=2))
        return

    click.echo(f"Subject      : {certificate.subject}")
    click.echo(f"Issuer       : {certificate.issuer}")
    click.echo(f"Common names : {', '.join(certificate.common_names) or '-'}")
    click.echo(f"Not before   : {certificate.not_before.isoformat()}")
    click.echo(f"Not after    : {certificate.not_after.isoformat()}")
    click.echo("Extensions   :")
    for oid, value in sorted(certificate.extensions.items()):
        click.echo(f"  {oid}  {value}")


if __name__ == "__main__":
    main()
