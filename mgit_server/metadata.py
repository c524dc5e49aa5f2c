"""
mgit_server/metadata.py

Best-effort profile lookup (kind-0 metadata) on a Nostr relay.

Profile data is decoration for the login response, never a correctness
dependency: every failure mode (timeout, refused connection, bad frames)
resolves to None. The websocket is closed on every exit path by the
`async with` block.

Relay protocol (NIP-01):
    -> ["REQ", <sub_id>, {"kinds": [0], "authors": [<pubkey>], "limit": 1}]
    <- ["EVENT", <sub_id>, <event>]      (zero or more)
    <- ["EOSE", <sub_id>]                (end of stored events)
    -> ["CLOSE", <sub_id>]
"""

import asyncio
import json
import logging
import secrets
from typing import Any, Dict, Optional

from websockets.asyncio.client import connect
from websockets.exceptions import WebSocketException

from .errors import EnrichmentError, MetadataFetchTimeout, UpstreamUnavailable

logger = logging.getLogger(__name__)

PROFILE_KIND = 0


class MetadataEnricher:
    def __init__(self, relay_url: str, timeout: float = 5.0):
        self.relay_url = relay_url
        self.timeout = timeout

    async def fetch_profile(self, pubkey: str, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        limit = self.timeout if timeout is None else timeout
        try:
            try:
                return await asyncio.wait_for(self._query(pubkey), timeout=limit)
            except asyncio.TimeoutError as e:
                raise MetadataFetchTimeout(f"no profile from {self.relay_url} within {limit}s") from e
            except (OSError, WebSocketException) as e:
                raise UpstreamUnavailable(f"{self.relay_url}: {e}") from e
        except EnrichmentError as e:
            logger.warning("metadata.fetch_failed pubkey=%s err=%s", pubkey, e)
            return None

    async def _query(self, pubkey: str) -> Optional[Dict[str, Any]]:
        sub_id = "metadata-" + secrets.token_hex(4)
        req = ["REQ", sub_id, {"kinds": [PROFILE_KIND], "authors": [pubkey], "limit": 1}]

        async with connect(self.relay_url, open_timeout=None) as ws:
            await ws.send(json.dumps(req))
            async for raw in ws:
                msg = _parse_frame(raw)
                if msg is None:
                    continue

                if msg[0] == "EVENT" and len(msg) >= 3 and msg[1] == sub_id and _is_profile(msg[2], pubkey):
                    await _close_subscription(ws, sub_id)
                    return msg[2]

                if msg[0] == "EOSE" and len(msg) >= 2 and msg[1] == sub_id:
                    await _close_subscription(ws, sub_id)
                    return None

        # relay hung up without answering
        return None


def _parse_frame(raw) -> Optional[list]:
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError):
        logger.debug("metadata.bad_frame %r", raw[:200] if isinstance(raw, (str, bytes)) else raw)
        return None
    if not isinstance(msg, list) or not msg:
        return None
    return msg


def _is_profile(event: Any, pubkey: str) -> bool:
    return (
        isinstance(event, dict)
        and event.get("kind") == PROFILE_KIND
        and event.get("pubkey") == pubkey
    )


async def _close_subscription(ws, sub_id: str) -> None:
    try:
        await ws.send(json.dumps(["CLOSE", sub_id]))
    except WebSocketException as e:
        # relay already went away; the context manager still closes our side
        logger.debug("metadata.close_failed sub=%s err=%s", sub_id, e)
