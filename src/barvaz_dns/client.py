"""
Control client for Barvaz DNS.

This module sends control requests to a running service over its Unix
domain socket.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from barvaz_dns.listener import CONTROL_TIMEOUT
from barvaz_dns.protocol import (
    MAX_MESSAGE_SIZE,
    AddDomainRequest,
    ConfigResponse,
    ErrorResponse,
    ForceUpdateRequest,
    GetConfigRequest,
    GetStatusRequest,
    OkResponse,
    ProtocolError,
    RemoveDomainRequest,
    SetIntervalRequest,
    SetIpv6Request,
    SetLogLevelRequest,
    SetTokenRequest,
    StatusResponse,
    decode_response,
    encode_request,
)

if TYPE_CHECKING:
    from datetime import timedelta
    from pathlib import Path

    from barvaz_dns.config import ServiceConfig
    from barvaz_dns.protocol import Request, Response


logger = logging.getLogger(__name__)


class ControlClientError(Exception):
    """Exception raised when a request cannot be delivered or is answered badly."""


class RequestRejectedError(ControlClientError):
    """Exception raised when the service answers a request with an error."""


class ControlClient:
    """
    Client of the control channel.

    Each request uses its own connection, as the service handles exactly
    one request per connection.

    Attributes
    ----------
    endpoint : Path
        Path of the control socket.
    timeout : float
        Bound on connecting and on waiting for the response, in seconds.
    """

    def __init__(self, endpoint: Path, timeout: float = CONTROL_TIMEOUT) -> None:
        self.endpoint = endpoint
        self.timeout = timeout

    async def send(self, request: Request) -> Response:
        """
        Send a request and wait for the response.

        Parameters
        ----------
        request : Request
            The request to send.

        Returns
        -------
        Response
            The decoded response.

        Raises
        ------
        ControlClientError
            If the service is unreachable or the exchange fails.
        """
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_unix_connection(str(self.endpoint), limit=MAX_MESSAGE_SIZE),
                self.timeout,
            )
        except (OSError, TimeoutError) as e:
            msg = f'Failed to connect to the service at "{self.endpoint}" ({e}). Is the service running?'
            raise ControlClientError(msg) from e

        try:
            writer.write(encode_request(request))
            await writer.drain()
            data = await asyncio.wait_for(reader.readline(), self.timeout)
        except TimeoutError as e:
            msg = "Timed out waiting for the service response"
            raise ControlClientError(msg) from e
        except (OSError, ValueError) as e:
            msg = f"Failed to exchange with the service: {e}"
            raise ControlClientError(msg) from e
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as e:
                logger.debug("Error while closing the connection: %s", e)

        if not data:
            msg = "The service closed the connection without answering"
            raise ControlClientError(msg)

        try:
            return decode_response(data)
        except ProtocolError as e:
            raise ControlClientError(str(e)) from e

    async def _expect_ok(self, request: Request) -> None:
        response = await self.send(request)
        if isinstance(response, ErrorResponse):
            raise RequestRejectedError(response.message)
        if not isinstance(response, OkResponse):
            msg = f'Unexpected "{response.kind}" response'
            raise ControlClientError(msg)

    async def set_interval(self, interval: timedelta) -> None:
        """Set the minimum time between updates."""
        await self._expect_ok(SetIntervalRequest(interval=interval))

    async def set_token(self, token: str) -> None:
        """Set the DuckDNS token."""
        await self._expect_ok(SetTokenRequest(token=token))

    async def add_domain(self, domain: str) -> None:
        """Add a domain to update."""
        await self._expect_ok(AddDomainRequest(domain=domain))

    async def remove_domain(self, domain: str) -> None:
        """Remove a domain."""
        await self._expect_ok(RemoveDomainRequest(domain=domain))

    async def set_ipv6(self, *, enabled: bool) -> None:
        """Enable or disable IPv6 updates."""
        await self._expect_ok(SetIpv6Request(enabled=enabled))

    async def force_update(self) -> None:
        """Reload the configuration file and update right away."""
        await self._expect_ok(ForceUpdateRequest())

    async def set_log_level(self, level: str) -> None:
        """Change the service log level."""
        await self._expect_ok(SetLogLevelRequest(level=level))

    async def get_config(self) -> ServiceConfig:
        """
        Read the service configuration.

        Returns
        -------
        ServiceConfig
            The configuration of the running service.

        Raises
        ------
        ControlClientError
            If the request fails.
        """
        response = await self.send(GetConfigRequest())
        if isinstance(response, ErrorResponse):
            raise RequestRejectedError(response.message)
        if not isinstance(response, ConfigResponse):
            msg = f'Unexpected "{response.kind}" response'
            raise ControlClientError(msg)
        return response.config

    async def get_status(self) -> bool:
        """
        Read the outcome of the last update attempt.

        Returns
        -------
        bool
            True if the last attempt succeeded.

        Raises
        ------
        ControlClientError
            If the request fails.
        """
        response = await self.send(GetStatusRequest())
        if isinstance(response, ErrorResponse):
            raise RequestRejectedError(response.message)
        if not isinstance(response, StatusResponse):
            msg = f'Unexpected "{response.kind}" response'
            raise ControlClientError(msg)
        return response.succeeded
