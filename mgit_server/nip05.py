"""
NIP-05 lookup: resolve `name@domain` via https://<domain>/.well-known/nostr.json.

Used by the front end to show a verified handle next to a pubkey. TLS is
verified; the response body is passed through as-is.
"""

import logging
import re
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

_DOMAIN = re.compile(r"^(?=.{1,253}$)([a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$")
_NAME = re.compile(r"^[a-z0-9._-]+$")


class Nip05Error(Exception):
    pass


def validate_identifier(domain: str, name: str) -> tuple[str, str]:
    domain = (domain or "").strip().lower()
    name = (name or "").strip().lower()
    if not _DOMAIN.match(domain):
        raise ValueError("invalid domain")
    if not _NAME.match(name):
        raise ValueError("invalid name")
    return domain, name


async def fetch_nostr_json(
    domain: str,
    name: str,
    *,
    timeout: float = 5.0,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    domain, name = validate_identifier(domain, name)
    url = f"https://{domain}/.well-known/nostr.json"

    own_client = client is None
    if own_client:
        client = httpx.AsyncClient(timeout=timeout, follow_redirects=False)
    try:
        resp = await client.get(url, params={"name": name}, headers={"Accept": "application/json"})
        resp.raise_for_status()
        data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("nip05.lookup_failed domain=%s name=%s err=%s", domain, name, e)
        raise Nip05Error(str(e)) from e
    finally:
        if own_client:
            await client.aclose()

    if not isinstance(data, dict):
        raise Nip05Error("nostr.json is not an object")
    return data
