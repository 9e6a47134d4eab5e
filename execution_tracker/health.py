"""Reachability check for the push backend."""

import asyncio
import logging

import aiohttp

log = logging.getLogger(__name__)

HEALTH_TIMEOUT = 8.0


async def check_backend_health(
    session: aiohttp.ClientSession,
    url: str,
    timeout: float = HEALTH_TIMEOUT,
) -> bool:
    """Return whether the push backend answers its health endpoint.

    Any failure to get a successful response counts as unreachable.
    """
    try:
        async with session.get(
            url, timeout=aiohttp.ClientTimeout(total=timeout)
        ) as response:
            if response.status != 200:
                log.warning("Backend health check failed: %s", response.status)
                return False
    except asyncio.TimeoutError:
        log.warning("Backend health check timed out after %.0fs", timeout)
        return False
    except aiohttp.ClientError as exc:
        log.warning("Backend unreachable: %s", exc)
        return False

    log.info("Backend health check passed")
    return True
