from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .config import Config
from .errors import ConversionCancelled, ConversionFailed, ConversionTimeout


logger = logging.getLogger(__name__)

PDF_ENGINE = "typst"
PDF_STANDARD = "a-2b"
FONT_PATHS_ENV = "TYPST_FONT_PATHS"

# Processes are started in their own session so that killing the group also
# reaches the PDF engine pandoc spawns.
_USE_PROCESS_GROUP = sys.platform != "win32"


@dataclass(frozen=True)
class ToolchainConfig:
    executable: str
    template_path: Path
    fonts_path: Path

    @classmethod
    def from_config(cls, config: Config) -> "ToolchainConfig":
        return cls(
            executable=config.pandoc_executable,
            template_path=config.template_path,
            fonts_path=config.fonts_path,
        )


@dataclass(frozen=True)
class ConversionJob:
    input_path: Path
    output_path: Path
    team_name: str
    timeout: float
    toolchain: ToolchainConfig


def build_command(job: ConversionJob) -> List[str]:
    return [
        job.toolchain.executable,
        str(job.input_path),
        "-f", "markdown",
        "-o", str(job.output_path),
        "-t", "pdf",
        "--template", str(job.toolchain.template_path),
        "-V", f"team={job.team_name}",
        "--pdf-engine", PDF_ENGINE,
        "--pdf-engine-opt", f"--pdf-standard={PDF_STANDARD}",
    ]


def build_environment(job: ConversionJob) -> Dict[str, str]:
    env = os.environ.copy()
    env[FONT_PATHS_ENV] = str(job.toolchain.fonts_path)
    return env


async def convert(job: ConversionJob, cancelled: Optional[asyncio.Event] = None) -> Path:
    """Run pandoc for *job* and return the path of the produced PDF.

    The process is killed and reaped before this returns or raises, whichever
    of normal exit, timeout, *cancelled* being set or the calling task being
    cancelled happens first.
    """
    command = build_command(job)
    logger.info("executing %s", command)

    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=build_environment(job),
            start_new_session=_USE_PROCESS_GROUP,
        )
    except OSError as exc:
        raise ConversionFailed(f"failed to execute {job.toolchain.executable}: {exc}") from exc

    communicate = asyncio.ensure_future(process.communicate())
    waiters = {communicate}
    cancel_waiter = None
    if cancelled is not None:
        cancel_waiter = asyncio.ensure_future(cancelled.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(waiters, timeout=job.timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        logger.warning("conversion task cancelled, terminating pid %s", process.pid)
        await _terminate(process, communicate)
        raise
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()

    if communicate not in done:
        await _terminate(process, communicate)
        if cancelled is not None and cancelled.is_set():
            raise ConversionCancelled("conversion cancelled before pandoc finished")
        raise ConversionTimeout(job.timeout)

    stdout, stderr = communicate.result()
    diagnostics = _diagnostics(stdout, stderr)
    if process.returncode != 0:
        raise ConversionFailed(
            f"{job.toolchain.executable} exited with status {process.returncode}",
            returncode=process.returncode,
            diagnostics=diagnostics,
        )
    if diagnostics:
        logger.debug("pandoc output: %s", diagnostics)

    try:
        size = job.output_path.stat().st_size
    except OSError as exc:
        raise ConversionFailed(f"pandoc output is missing: {exc}", returncode=0, diagnostics=diagnostics) from exc
    if size == 0:
        raise ConversionFailed("pandoc produced an empty document", returncode=0, diagnostics=diagnostics)
    return job.output_path


async def _terminate(process: asyncio.subprocess.Process, communicate: "asyncio.Future[Tuple[bytes, bytes]]") -> None:
    if process.returncode is None:
        try:
            if _USE_PROCESS_GROUP:
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except ProcessLookupError:
            pass
    # Draining the pipes also reaps the child.
    try:
        await communicate
    except OSError as exc:
        logger.warning("failed to collect output of pid %s: %s", process.pid, exc)
    logger.info("terminated pid %s", process.pid)


def _diagnostics(stdout: bytes, stderr: bytes) -> str:
    parts = [
        data.decode("utf-8", errors="replace").strip()
        for data in (stderr, stdout)
        if data and data.strip()
    ]
    return "\n".join(parts)
