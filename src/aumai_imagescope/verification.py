"""Key-based signature verification through the cosign CLI."""

from __future__ import annotations

import logging

from pydantic import TypeAdapter, ValidationError

from aumai_imagescope.errors import ParseFailure, SourceFailure
from aumai_imagescope.models import CosignVerify, ImageReference, VerifySignature
from aumai_imagescope.process import run_command

logger = logging.getLogger(__name__)

_SIGNATURES = TypeAdapter(list[VerifySignature])


class CosignVerifier:
    """Verify an image signature against a caller-supplied public key.

    Args:
        executable: Name or path of the cosign binary.
        timeout: Seconds before verification is killed.
    """

    def __init__(self, executable: str = "cosign", timeout: float | None = 120) -> None:
        self.executable = executable
        self.timeout = timeout

    def build_args(self, key: str, image: ImageReference) -> list[str]:
        return [
            self.executable,
            "verify",
            "--private-infrastructure=true",
            "--output=json",
            "--key",
            key,
            str(image),
        ]

    async def verify(self, key: str, image: ImageReference) -> CosignVerify:
        """Run ``cosign verify`` for *image* with *key*.

        *key* is anything cosign accepts for ``--key`` (path, URL or KMS URI).

        Raises:
            SourceFailure: cosign is missing or could not be started, timed out,
                or rejected the signature.
            ParseFailure: cosign's JSON output could not be decoded.
        """
        try:
            result = await run_command(self.build_args(key, image), timeout=self.timeout)
        except FileNotFoundError as exc:
            raise SourceFailure(f"{self.executable} is not installed", exc) from exc
        except TimeoutError as exc:
            raise SourceFailure(
                f"cosign verify of {image} timed out after {self.timeout}s", exc
            ) from exc
        except OSError as exc:
            raise SourceFailure(f"could not run {self.executable}", exc) from exc

        message = result.stderr_text
        if not result.success:
            raise SourceFailure(f"cosign verify of {image} failed: {message}")

        try:
            signatures = _SIGNATURES.validate_json(result.stdout)
        except ValidationError as exc:
            raise ParseFailure(f"cosign output for {image} is not valid JSON", exc) from exc

        logger.debug("cosign verified %d signature(s) for %s", len(signatures), image)
        return CosignVerify(message=message, signatures=signatures)


__all__ = ["CosignVerifier"]
