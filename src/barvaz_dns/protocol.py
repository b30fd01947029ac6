"""
Control protocol for Barvaz DNS.

This module defines the messages exchanged over the control channel: a
closed set of request variants wrapped in a versioned envelope, a closed
set of response variants, and their byte encoding (one JSON document per
line).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from barvaz_dns import __version__
from barvaz_dns.config import Duration, ServiceConfig

if TYPE_CHECKING:
    from typing import Final


PROTOCOL_VERSION: Final[str] = __version__

# Upper bound for a single encoded message
MAX_MESSAGE_SIZE: Final[int] = 64 * 1024


class ProtocolError(Exception):
    """Exception raised when bytes received cannot be decoded into a message."""


class SetIntervalRequest(BaseModel):
    """Set the minimum time between updates."""

    kind: Literal["set_interval"] = "set_interval"
    interval: Duration


class SetTokenRequest(BaseModel):
    """Set the DuckDNS token."""

    kind: Literal["set_token"] = "set_token"
    token: str


class AddDomainRequest(BaseModel):
    """Add a domain to the set of updated domains."""

    kind: Literal["add_domain"] = "add_domain"
    domain: str = Field(..., min_length=1)


class RemoveDomainRequest(BaseModel):
    """Remove a domain from the set of updated domains."""

    kind: Literal["remove_domain"] = "remove_domain"
    domain: str = Field(..., min_length=1)


class SetIpv6Request(BaseModel):
    """Enable or disable publishing the IPv6 address."""

    kind: Literal["set_ipv6"] = "set_ipv6"
    enabled: bool


class ForceUpdateRequest(BaseModel):
    """Reload the configuration from disk and update right away."""

    kind: Literal["force_update"] = "force_update"


class SetLogLevelRequest(BaseModel):
    """Change the service log level."""

    kind: Literal["set_log_level"] = "set_log_level"
    level: str


class GetConfigRequest(BaseModel):
    """Read the service configuration."""

    kind: Literal["get_config"] = "get_config"


class GetStatusRequest(BaseModel):
    """Read the outcome of the most recent update attempt."""

    kind: Literal["get_status"] = "get_status"


Request = Annotated[
    SetIntervalRequest
    | SetTokenRequest
    | AddDomainRequest
    | RemoveDomainRequest
    | SetIpv6Request
    | ForceUpdateRequest
    | SetLogLevelRequest
    | GetConfigRequest
    | GetStatusRequest,
    Field(discriminator="kind"),
]


class OkResponse(BaseModel):
    """The request was applied."""

    kind: Literal["ok"] = "ok"


class ErrorResponse(BaseModel):
    """
    The request was rejected.

    Attributes
    ----------
    message : str
        Human-readable reason.
    """

    kind: Literal["error"] = "error"
    message: str


class ConfigResponse(BaseModel):
    """
    Snapshot of the service configuration.

    Attributes
    ----------
    config : ServiceConfig
        The configuration at the time of the request.
    """

    kind: Literal["config"] = "config"
    config: ServiceConfig


class StatusResponse(BaseModel):
    """
    Outcome of the most recent update attempt.

    Attributes
    ----------
    succeeded : bool
        False until the first attempt completes.
    """

    kind: Literal["status"] = "status"
    succeeded: bool


Response = Annotated[
    OkResponse | ErrorResponse | ConfigResponse | StatusResponse,
    Field(discriminator="kind"),
]

_request_adapter: TypeAdapter[Request] = TypeAdapter(Request)
_response_adapter: TypeAdapter[Response] = TypeAdapter(Response)


class Envelope(BaseModel):
    """
    Versioned wrapper around a request.

    The payload is kept undecoded so that a request from an incompatible
    client is never interpreted.

    Attributes
    ----------
    version : str
        Protocol version of the sender.
    payload : Any
        The encoded request, checked only by `request`.
    """

    version: str
    payload: Any

    @classmethod
    def wrap(cls, request: Request) -> Envelope:
        """
        Wrap a request in an envelope carrying this package's version.

        Parameters
        ----------
        request : Request
            The request to wrap.

        Returns
        -------
        Envelope
            The envelope.
        """
        return cls(version=PROTOCOL_VERSION, payload=request.model_dump(mode="json"))

    def is_compatible(self) -> bool:
        """Check whether the sender speaks this package's protocol version."""
        return self.version == PROTOCOL_VERSION

    def request(self) -> Request:
        """
        Decode the request carried by the envelope.

        Returns
        -------
        Request
            The decoded request.

        Raises
        ------
        ProtocolError
            If the payload is not a known request.
        """
        try:
            return _request_adapter.validate_python(self.payload)
        except ValidationError as e:
            msg = f"Invalid request payload: {e.error_count()} error(s): {_first_error(e)}"
            raise ProtocolError(msg) from e


def _first_error(error: ValidationError) -> str:
    """Summarize the first validation error (e.g. "kind: Input tag ...")."""
    err = error.errors()[0]
    field_path = ".".join(str(loc) for loc in err["loc"])
    return f"{field_path}: {err['msg']}" if field_path else err["msg"]


def _check_size(data: bytes) -> None:
    if len(data) > MAX_MESSAGE_SIZE:
        msg = f"Message of {len(data)} bytes exceeds the limit of {MAX_MESSAGE_SIZE} bytes"
        raise ProtocolError(msg)


def encode_request(request: Request) -> bytes:
    """
    Encode a request, wrapped in an envelope, as one line of JSON.

    Parameters
    ----------
    request : Request
        The request to encode.

    Returns
    -------
    bytes
        The encoded envelope terminated by a newline.
    """
    return Envelope.wrap(request).model_dump_json().encode() + b"\n"


def decode_envelope(data: bytes) -> Envelope:
    """
    Decode an envelope without interpreting its payload.

    Parameters
    ----------
    data : bytes
        Bytes received from the peer.

    Returns
    -------
    Envelope
        The decoded envelope.

    Raises
    ------
    ProtocolError
        If the bytes are not a valid envelope.
    """
    _check_size(data)
    try:
        return Envelope.model_validate_json(data.strip())
    except ValidationError as e:
        msg = f"Malformed envelope: {_first_error(e)}"
        raise ProtocolError(msg) from e


def encode_response(response: Response) -> bytes:
    """
    Encode a response as one line of JSON.

    Parameters
    ----------
    response : Response
        The response to encode.

    Returns
    -------
    bytes
        The encoded response terminated by a newline.
    """
    return response.model_dump_json().encode() + b"\n"


def decode_response(data: bytes) -> Response:
    """
    Decode a response.

    Parameters
    ----------
    data : bytes
        Bytes received from the service.

    Returns
    -------
    Response
        The decoded response.

    Raises
    ------
    ProtocolError
        If the bytes are not a valid response.
    """
    _check_size(data)
    try:
        return _response_adapter.validate_json(data.strip())
    except ValidationError as e:
        msg = f"Malformed response: {_first_error(e)}"
        raise ProtocolError(msg) from e
