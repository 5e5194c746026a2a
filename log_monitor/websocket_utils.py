import asyncio
import logging
from typing import Any, Dict, Iterable

import aiohttp


log = logging.getLogger("LogMonitor.WebsocketUtils")

# Raised by aiohttp when a viewer goes away between the closed check and the write.
_DISCONNECT_ERRORS = (
    ConnectionResetError,
    aiohttp.client_exceptions.ClientConnectionResetError,
    RuntimeError,
)


async def safe_send_json(ws, payload: Dict[str, Any]) -> bool:
    """
    Delivers one event to one viewer.

    A viewer that disconnected (or is disconnecting) is not an error: the
    event is dropped and False returned. Cancellation is not absorbed.
    """
    if ws.closed:
        return False
    try:
        await ws.send_json(payload)
    except _DISCONNECT_ERRORS as e:
        log.debug(f"Dropped '{payload.get('type')}' for a departing viewer: {type(e).__name__}")
        return False
    except Exception as e:
        log.warning(f"Unexpected error sending '{payload.get('type')}' to a viewer: {e}", exc_info=True)
        return False
    return True


async def robust_broadcast(recipients: Iterable, payload: Dict[str, Any]) -> int:
    """
    Sends one event to every given viewer concurrently; a failed send never
    stops the others.

    Returns:
        int: how many viewers received it
    """
    recipients = list(recipients)
    if not recipients:
        return 0

    results = await asyncio.gather(*(safe_send_json(ws, payload) for ws in recipients))

    delivered = sum(1 for ok in results if ok)
    if delivered < len(results):
        log.debug(f"Broadcast '{payload.get('type')}': {delivered}/{len(results)} viewers reached")
    return delivered
