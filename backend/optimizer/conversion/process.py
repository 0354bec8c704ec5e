"""Runs external codec binaries (ffmpeg, soffice) with cancellation and timeout."""
import asyncio
import logging
from typing import Optional

from optimizer import config
from optimizer.errors import Cancelled, CodecFailure
from optimizer.progress import CancellationToken

logger = logging.getLogger("optimizer.process")

# How often a running process checks the cancellation token
POLL_INTERVAL = 0.2


async def run_codec(
    cmd: list[str],
    token: CancellationToken,
    timeout: Optional[float] = None,
) -> str:
    """Run ``cmd`` to completion and return its stderr.

    The process is killed when ``token`` is cancelled, when the awaiting task
    is cancelled, or after ``timeout`` seconds.
    """
    timeout = timeout or config.CODEC_TIMEOUT
    logger.debug("Running: %s", " ".join(cmd))
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        logger.error("%s not found. Install it to convert this file type.", cmd[0])
        raise CodecFailure(f"{cmd[0]} is not installed", e) from e

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    stderr_task = asyncio.ensure_future(proc.stderr.read())
    wait_task = asyncio.ensure_future(proc.wait())
    try:
        while not wait_task.done():
            await asyncio.wait({wait_task}, timeout=POLL_INTERVAL)
            if wait_task.done():
                break
            token.raise_if_cancelled()
            if loop.time() > deadline:
                raise CodecFailure(f"{cmd[0]} timed out after {timeout:.0f}s")
        stderr = (await stderr_task).decode("utf-8", "replace")
    except BaseException:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
            logger.info("Killed %s (pid %s)", cmd[0], proc.pid)
        stderr_task.cancel()
        raise

    if proc.returncode != 0:
        tail = stderr.strip().splitlines()[-5:]
        raise CodecFailure(f"{cmd[0]} failed (exit {proc.returncode}): {' '.join(tail) or 'no output'}")
    if token.cancelled:
        raise Cancelled()
    return stderr
