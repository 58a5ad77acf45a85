from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import aiohttp


@asynccontextmanager
async def session_scope(session: Optional[aiohttp.ClientSession] = None) -> AsyncIterator[aiohttp.ClientSession]:
    """Yield the injected session, or a fresh one closed on exit"""
    if session is not None:
        yield session
        return
    async with aiohttp.ClientSession() as owned:
        yield owned


def request_timeout(seconds: Optional[float], streaming: bool = False) -> Optional[aiohttp.ClientTimeout]:
    if not seconds:
        return None
    if streaming:
        # a long stream is fine as long as bytes keep arriving
        return aiohttp.ClientTimeout(total=None, sock_read=seconds)
    return aiohttp.ClientTimeout(total=seconds)
