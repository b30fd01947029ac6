"""
Control channel listener for Barvaz DNS.

This module serves the control protocol on a Unix domain socket. One
connection is handled at a time: read one request, apply it to the
configuration, write one response, close.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from contextlib import contextmanager
from typing import TYPE_CHECKING, assert_never

from barvaz_dns.config import (
    DOMAIN_LIMIT,
    MINIMAL_INTERVAL,
    ConfigValidationError,
    dump_config,
    format_duration,
)
from barvaz_dns.logging_config import set_log_level
from barvaz_dns.protocol import (
    MAX_MESSAGE_SIZE,
    PROTOCOL_VERSION,
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
    decode_envelope,
    encode_response,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from datetime import timedelta
    from pathlib import Path
    from typing import Final

    from barvaz_dns.config import ConfigStore, ServiceConfig
    from barvaz_dns.handoff import LatestSlot, StatusCell
    from barvaz_dns.protocol import Request, Response


# Bound on waiting for a client and for its request, in seconds
CONTROL_TIMEOUT: Final[float] = 5.0


logger = logging.getLogger(__name__)


def _remove_stale_socket(path: Path) -> None:
    """
    Remove a socket file left behind by a previous run.

    Raises
    ------
    OSError
        If the path is not a socket or another process is listening on it.
    """
    if not path.exists():
        return
    if not path.is_socket():
        msg = f'"{path}" exists and is not a socket'
        raise OSError(msg)

    probe = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        probe.connect(str(path))
    except (ConnectionRefusedError, FileNotFoundError):
        path.unlink(missing_ok=True)
        logger.debug('Removed stale control socket "%s".', path)
        return
    finally:
        probe.close()

    msg = f'Another service is already listening on "{path}"'
    raise OSError(msg)


@contextmanager
def listening_socket(path: Path) -> Iterator[socket.socket]:
    """
    Bind a non-blocking Unix socket, closed and unlinked on exit.

    Parameters
    ----------
    path : Path
        Socket path.

    Yields
    ------
    socket.socket
        The listening socket.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    _remove_stale_socket(path)

    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    bound = False
    try:
        sock.bind(str(path))
        bound = True
        path.chmod(0o600)
        sock.listen(1)
        sock.setblocking(False)
        yield sock
    finally:
        sock.close()
        if bound:
            path.unlink(missing_ok=True)


class ControlListener:
    """
    Serves control requests and owns the live configuration.

    Every successful mutation is persisted and a copy of the service
    configuration is published to the scheduler's hand-off slot.

    Attributes
    ----------
    endpoint : Path
        Path of the control socket.
    store : ConfigStore
        The configuration store (mutated only by this listener).
    updates : LatestSlot[ServiceConfig]
        Hand-off slot read by the scheduler.
    status : StatusCell
        Outcome of the last update, written by the scheduler.
    """

    def __init__(
        self,
        endpoint: Path,
        store: ConfigStore,
        updates: LatestSlot[ServiceConfig],
        status: StatusCell,
        *,
        accept_timeout: float = CONTROL_TIMEOUT,
        read_timeout: float = CONTROL_TIMEOUT,
        log_level_setter: Callable[[str], str] = set_log_level,
    ) -> None:
        self.endpoint = endpoint
        self.store = store
        self.updates = updates
        self.status = status
        self.accept_timeout = accept_timeout
        self.read_timeout = read_timeout
        self._set_log_level = log_level_setter

    async def serve_forever(self) -> None:
        """
        Accept and serve connections one at a time until cancelled.

        Raises
        ------
        OSError
            If the control socket cannot be bound.
        """
        with listening_socket(self.endpoint) as server_sock:
            logger.info('Listening for control requests on "%s".', self.endpoint)
            while True:
                conn = await self._accept(server_sock)
                if conn is None:
                    continue
                await self._serve_connection(conn)

    async def _accept(self, server_sock: socket.socket) -> socket.socket | None:
        """Wait for a client, or return None once the accept timeout expires."""
        loop = asyncio.get_running_loop()
        try:
            conn, _ = await asyncio.wait_for(
                loop.sock_accept(server_sock),
                self.accept_timeout,
            )
        except TimeoutError:
            return None
        logger.debug("Client connected.")
        return conn

    async def _serve_connection(self, conn: socket.socket) -> None:
        try:
            reader, writer = await asyncio.open_unix_connection(
                sock=conn,
                limit=MAX_MESSAGE_SIZE,
            )
        except OSError as e:
            logger.error("Failed to open the client connection: %s", e)  # noqa: TRY400
            conn.close()
            return

        try:
            response = await self._read_and_handle(reader)
            if response is not None:
                await self._send_response(writer, response)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as e:
                logger.debug("Error while closing the client connection: %s", e)

    async def _read_and_handle(self, reader: asyncio.StreamReader) -> Response | None:
        """
        Read one envelope and produce the response to send back.

        Returns
        -------
        Response | None
            The response, or None if the connection must be dropped
            without answering.
        """
        try:
            data = await asyncio.wait_for(reader.readline(), self.read_timeout)
        except TimeoutError:
            logger.error("Timed out waiting for the client request.")
            return None
        except (ValueError, OSError) as e:
            # ValueError: the request exceeds MAX_MESSAGE_SIZE
            logger.error("Read error: %s", e)  # noqa: TRY400
            return None

        if not data:
            logger.debug("Client disconnected.")
            return None

        try:
            envelope = decode_envelope(data)
        except ProtocolError as e:
            logger.error("Failed to deserialize message, error: %s", e)  # noqa: TRY400
            return None

        if not envelope.is_compatible():
            logger.error(
                "Client version incompatible. Client version: %s, service version: %s",
                envelope.version,
                PROTOCOL_VERSION,
            )
            return ErrorResponse(
                message=(
                    f"Incompatible version: client {envelope.version}, "
                    f"service {PROTOCOL_VERSION}"
                ),
            )

        try:
            request = envelope.request()
        except ProtocolError as e:
            logger.error("%s", e)  # noqa: TRY400
            return ErrorResponse(message=str(e))

        return await self.handle_request(request)

    async def _send_response(
        self,
        writer: asyncio.StreamWriter,
        response: Response,
    ) -> None:
        logger.debug("Response is %r", response)
        try:
            writer.write(encode_response(response))
            await writer.drain()
        except OSError as e:
            logger.error("Failed to send response: %s", e)  # noqa: TRY400

    async def handle_request(self, request: Request) -> Response:
        """
        Apply a request to the live configuration.

        Parameters
        ----------
        request : Request
            The decoded request.

        Returns
        -------
        Response
            The response to send to the client.
        """
        logger.debug("Received: %r", request)

        match request:
            case SetIntervalRequest(interval=interval):
                response = self._set_interval(interval)
            case SetTokenRequest(token=token):
                self.store.service.token = token
                response = OkResponse()
            case AddDomainRequest(domain=domain):
                response = self._add_domain(domain)
            case RemoveDomainRequest(domain=domain):
                response = self._remove_domain(domain)
            case SetIpv6Request(enabled=enabled):
                response = self._set_ipv6(enabled=enabled)
            case ForceUpdateRequest():
                response = self._reload()
            case SetLogLevelRequest(level=level):
                return self._change_log_level(level)
            case GetConfigRequest():
                return ConfigResponse(config=self.store.snapshot())
            case GetStatusRequest():
                return StatusResponse(succeeded=await self.status.get())
            case _:
                assert_never(request)

        if isinstance(response, ErrorResponse):
            logger.info("Request rejected: %s", response.message)
            return response
        return self._commit()

    def _set_interval(self, interval: timedelta) -> Response:
        if interval < MINIMAL_INTERVAL:
            return ErrorResponse(
                message=(
                    f"Interval {format_duration(interval)} is below the minimum "
                    f"of {format_duration(MINIMAL_INTERVAL)}"
                ),
            )
        self.store.service.interval = interval
        return OkResponse()

    def _add_domain(self, domain: str) -> Response:
        domains = self.store.service.domains
        if len(domains) >= DOMAIN_LIMIT:
            return ErrorResponse(
                message=f"Domain limit reached: at most {DOMAIN_LIMIT} domains can be updated",
            )
        if domain in domains:
            return ErrorResponse(message=f'Domain "{domain}" already exists')
        domains.add(domain)
        return OkResponse()

    def _remove_domain(self, domain: str) -> Response:
        domains = self.store.service.domains
        if domain not in domains:
            return ErrorResponse(message=f'Domain "{domain}" does not exist')
        domains.remove(domain)
        return OkResponse()

    def _set_ipv6(self, *, enabled: bool) -> Response:
        service = self.store.service
        if service.ipv6 != enabled:
            service.ipv6 = enabled
            service.reset_addresses_pending = True
        return OkResponse()

    def _reload(self) -> Response:
        try:
            self.store.reload()
        except (OSError, ConfigValidationError) as e:
            logger.error("Failed to reload the configuration: %s", e)  # noqa: TRY400
            return ErrorResponse(message=f"Failed to reload configuration: {e}")
        logger.info("Configuration reloaded, forcing an update.")
        return OkResponse()

    def _change_log_level(self, level: str) -> Response:
        try:
            applied = self._set_log_level(level)
        except ValueError as e:
            return ErrorResponse(message=str(e))
        logger.info("Log level changed to %s.", applied)
        return OkResponse()

    def _commit(self) -> Response:
        """
        Persist the live configuration and publish a copy to the scheduler.

        A save failure is reported to the client but the in-memory change
        is kept and still published.

        Returns
        -------
        Response
            OkResponse, or ErrorResponse if the configuration was not saved.
        """
        response: Response = OkResponse()
        try:
            self.store.save()
        except OSError as e:
            logger.error("Failed to save the configuration: %s", e)  # noqa: TRY400
            response = ErrorResponse(message=f"Failed to save configuration: {e}")

        self.publish()
        logger.debug("New configuration:\n%s", dump_config(self.store.config))
        return response

    def publish(self) -> None:
        """
        Hand a copy of the service configuration over to the scheduler.

        A pending address reset survives being overwritten by a newer
        configuration. Once published, the reset is owned by the scheduler.
        """
        snapshot = self.store.snapshot()
        replaced = self.updates.take()
        if replaced is not None and replaced.reset_addresses_pending:
            snapshot.reset_addresses_pending = True
        self.updates.put(snapshot)
        self.store.service.reset_addresses_pending = False
