"""Runtime CLI helpers that don't belong to a single run."""

from __future__ import annotations

import asyncio

from podwarden.config import get_settings
from podwarden.logger import logger
from podwarden.runtime import get_runtime


async def prewarm_container() -> bool:
    """Run a no-op container so image layers and the runtime are hot.

    Cuts the first real container start from several seconds to a couple.
    Never raises; returns True when the no-op container exited 0.
    """
    image = get_settings().container.image
    logger.info("Pre-warming container image", image=image)
    try:
        proc = await asyncio.create_subprocess_exec(
            get_runtime().cli,
            "run",
            "--rm",
            "--entrypoint",
            "true",
            image,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await proc.communicate()
    except OSError as exc:
        logger.warning("Container pre-warm failed", image=image, err=str(exc))
        return False

    if proc.returncode != 0:
        logger.warning(
            "Container pre-warm exited with non-zero code",
            code=proc.returncode,
            stderr=stderr.decode(errors="replace")[-200:],
        )
        return False
    logger.info("Container image pre-warmed successfully", image=image)
    return True
