"""
Public address lookup.

Queries plain-text "what is my IP" services in order until one of them
returns a valid address of the requested family.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from typing import Final


IPV4_LOOKUP_SERVICES: Final[tuple[str, ...]] = (
    "https://api.ipify.org",
    "https://ipv4.icanhazip.com",
    "https://v4.ident.me",
)

IPV6_LOOKUP_SERVICES: Final[tuple[str, ...]] = (
    "https://api6.ipify.org",
    "https://ipv6.icanhazip.com",
    "https://v6.ident.me",
)


logger = logging.getLogger(__name__)


async def lookup_public_ip(
    client: httpx.AsyncClient,
    version: int,
    services: tuple[str, ...] | None = None,
) -> str | None:
    """
    Resolve the public address of the given IP version.

    Parameters
    ----------
    client : httpx.AsyncClient
        HTTP client.
    version : int
        4 or 6.
    services : tuple[str, ...] | None, optional
        Lookup URLs to try in order. Defaults to the built-in list.

    Returns
    -------
    str | None
        The address, or None if no service returned a valid one.
    """
    if services is None:
        services = IPV4_LOOKUP_SERVICES if version == 4 else IPV6_LOOKUP_SERVICES  # noqa: PLR2004

    for url in services:
        try:
            response = await client.get(url)
        except httpx.RequestError as e:
            logger.debug("[ip] GET %s failed: '%s'", url, e)
            continue

        if response.status_code != httpx.codes.OK:
            logger.debug("[ip] GET %s -> %d", url, response.status_code)
            continue

        text = response.text.strip()
        try:
            address = ipaddress.ip_address(text)
        except ValueError:
            logger.debug("[ip] GET %s returned an invalid address: '%s'", url, text)
            continue

        if address.version != version:
            logger.debug("[ip] GET %s returned an IPv%d address", url, address.version)
            continue

        logger.debug("[ip] Public IPv%d address: %s", version, address)
        return str(address)

    logger.error("[ip] Failed to resolve the public IPv%d address.", version)
    return None
