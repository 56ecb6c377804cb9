"""Async subprocess helper shared by the scan and verification sources."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass

logger = logging.getLogger(__name__)

REDACTED = "REDACTED"


@dataclass(frozen=True)
class CommandResult:
    """Result of a finished command."""

    returncode: int
    stdout: bytes
    stderr: bytes

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace").strip()


def redact(args: Sequence[str], secrets: Sequence[str | None]) -> list[str]:
    """Replace every occurrence of a secret value in *args* for logging."""
    hidden = [secret for secret in secrets if secret]
    redacted = []
    for arg in args:
        for secret in hidden:
            arg = arg.replace(secret, REDACTED)
        redacted.append(arg)
    return redacted


async def run_command(
    args: Sequence[str],
    timeout: float | None = None,
    secrets: Sequence[str | None] = (),
) -> CommandResult:
    """Run *args* and capture its output.

    The child is killed if the calling task is cancelled or *timeout* expires.

    Raises:
        FileNotFoundError: the executable is not on ``PATH``.
        TimeoutError: the command ran longer than *timeout* seconds.
    """
    logger.debug("Running command: %s", " ".join(redact(args, secrets)))
    process = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        async with asyncio.timeout(timeout):
            stdout, stderr = await process.communicate()
    except BaseException:
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise

    return CommandResult(
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout,
        stderr=stderr,
    )


__all__ = ["CommandResult", "redact", "run_command"]
