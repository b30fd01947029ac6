"""
DuckDNS provider implementation.

This module implements the DuckDNS HTTP update API. A single request
updates all configured subdomains; the response body is "OK" on success
and "KO" otherwise.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx

from barvaz_dns.providers.base import BaseDNSProvider, ProviderResult
from barvaz_dns.providers.public_ip import lookup_public_ip

if TYPE_CHECKING:
    from collections.abc import Iterable
    from typing import Final


# DuckDNS update endpoint
DUCKDNS_UPDATE_URL: Final[str] = "https://www.duckdns.org/update"

# HTTP timeout in seconds
HTTP_TIMEOUT: Final[float] = 30.0


logger = logging.getLogger(__name__)


class DuckDNSProvider(BaseDNSProvider):
    """
    DuckDNS provider.

    Resolves the public addresses itself and publishes them for every
    configured subdomain. Supports clearing the published addresses first,
    which is needed when IPv6 publishing gets disabled.
    """

    def __init__(
        self,
        *,
        timeout: float = HTTP_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the provider.

        Parameters
        ----------
        timeout : float, optional
            HTTP timeout in seconds.
        transport : httpx.AsyncBaseTransport | None, optional
            Custom transport (used by tests).
        """
        self._timeout = timeout
        self._transport = transport

    @property
    def name(self) -> str:
        """Get the provider name."""
        return "duckdns"

    async def apply(
        self,
        domains: Iterable[str],
        token: str,
        *,
        ipv6: bool,
        reset_addresses_first: bool,
    ) -> ProviderResult:
        """
        Update the DuckDNS subdomains with the current public addresses.

        Parameters
        ----------
        domains : Iterable[str]
            DuckDNS subdomains (without ".duckdns.org").
        token : str
            DuckDNS account token.
        ipv6 : bool
            Whether to publish the IPv6 address too.
        reset_addresses_first : bool
            Whether to send a "clear" request before the update.

        Returns
        -------
        ProviderResult
            The result of the update.
        """
        domain_list = ",".join(sorted(domains))
        if not domain_list:
            return ProviderResult(success=False, message="No domain to update")

        async with httpx.AsyncClient(
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            # Step 1: Resolve the public addresses
            ipv4_address = await lookup_public_ip(client, 4)
            if ipv4_address is None:
                return ProviderResult(
                    success=False,
                    message="Failed to get the public IPv4 address",
                )

            ipv6_address: str | None = None
            if ipv6:
                ipv6_address = await lookup_public_ip(client, 6)
                if ipv6_address is None:
                    return ProviderResult(
                        success=False,
                        message="Failed to get the public IPv6 address",
                    )

            # Step 2: Clear the published addresses (the IPv6 address may
            # have been disabled since the last update)
            if reset_addresses_first:
                cleared = await self._send(
                    client,
                    {"domains": domain_list, "token": token, "clear": "true"},
                )
                if not cleared.success:
                    return ProviderResult(
                        success=False,
                        message=f"Failed to clear the published addresses: {cleared.message}",
                    )
                logger.debug("[duckdns] Cleared the published addresses.")

            # Step 3: Publish the addresses
            params = {"domains": domain_list, "token": token, "ip": ipv4_address}
            if ipv6_address is not None:
                params["ipv6"] = ipv6_address

            result = await self._send(client, params)
            result.ipv4 = ipv4_address
            result.ipv6 = ipv6_address
            return result

    async def _send(
        self,
        client: httpx.AsyncClient,
        params: dict[str, str],
    ) -> ProviderResult:
        """
        Send a request to the DuckDNS update endpoint.

        Parameters
        ----------
        client : httpx.AsyncClient
            HTTP client.
        params : dict[str, str]
            Query parameters.

        Returns
        -------
        ProviderResult
            Success if DuckDNS answered "OK".
        """
        try:
            response = await client.get(DUCKDNS_UPDATE_URL, params=params)
        except httpx.RequestError as e:
            logger.error("[duckdns] Network request failed: '%s'", e)  # noqa: TRY400
            return ProviderResult(success=False, message=f"Network request failed: {e}")

        body = response.text.strip()
        logger.debug(
            "[duckdns] GET %s -> %d '%s'",
            response.url,
            response.status_code,
            body,
        )

        if response.status_code != httpx.codes.OK:
            return ProviderResult(
                success=False,
                message=f"Unexpected HTTP status {response.status_code}",
            )

        if body.startswith("OK"):
            return ProviderResult(success=True, message="Updated")

        return ProviderResult(
            success=False,
            message=f"DuckDNS rejected the request ('{body}'), check the token and domains",
        )
