"""Trivy-backed vulnerability scan source."""

from __future__ import annotations

import logging

from pydantic import ValidationError

from aumai_imagescope.errors import ParseFailure, SourceFailure
from aumai_imagescope.models import ImageReference, VulnerabilityScanOutput
from aumai_imagescope.process import run_command

logger = logging.getLogger(__name__)


class TrivyScanner:
    """Run ``trivy image`` and parse its JSON report.

    Args:
        executable: Name or path of the trivy binary.
        timeout: Seconds before the scan is killed.  ``None`` waits forever.
    """

    def __init__(self, executable: str = "trivy", timeout: float | None = 600) -> None:
        self.executable = executable
        self.timeout = timeout

    def build_args(
        self,
        image: ImageReference,
        server: str | None = None,
        username: str | None = None,
        password: str | None = None,
    ) -> list[str]:
        args = [self.executable, "image", "--quiet", "--format", "json"]
        if server:
            args.extend(["--server", server])
        if username:
            args.extend(["--username", username])
        if password:
            args.extend(["--password", password])
        args.append(str(image))
        return args

    async def scan(
        self,
        image: ImageReference,
        server: str | None = None,
        username: str | None = None,
        password: str | None = None,
    ) -> VulnerabilityScanOutput:
        """Scan *image*, optionally through a trivy server.

        Raises:
            SourceFailure: trivy is missing or could not be started, timed out,
                or exited non-zero.
            ParseFailure: trivy's output is not a valid report.
        """
        args = self.build_args(image, server, username, password)
        try:
            result = await run_command(args, timeout=self.timeout, secrets=[password])
        except FileNotFoundError as exc:
            raise SourceFailure(f"{self.executable} is not installed", exc) from exc
        except TimeoutError as exc:
            raise SourceFailure(
                f"trivy scan of {image} timed out after {self.timeout}s", exc
            ) from exc
        except OSError as exc:
            raise SourceFailure(f"could not run {self.executable}", exc) from exc

        if not result.success:
            raise SourceFailure(
                f"trivy scan of {image} failed (exit {result.returncode}): "
                f"{result.stderr_text}"
            )

        try:
            output = VulnerabilityScanOutput.model_validate_json(result.stdout)
        except ValidationError as exc:
            raise ParseFailure(f"trivy output for {image} is not a valid report", exc) from exc

        logger.debug(
            "Trivy reported %d target(s) for %s", len(output.results), output.artifact_name
        )
        return output


__all__ = ["TrivyScanner"]
