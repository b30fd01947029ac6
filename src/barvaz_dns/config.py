"""
Configuration management for Barvaz DNS.

This module holds the live service configuration, its TOML persistence and
the runtime settings of the process. Runtime settings priority (high to low):
1. Command-line arguments
2. Environment variables
3. Default values
"""

from __future__ import annotations

import logging
import os
import re
import sys
import tempfile
import tomllib
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import tomli_w
from pydantic import (
    BaseModel,
    BeforeValidator,
    Field,
    PlainSerializer,
    ValidationError,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic_core import PydanticCustomError

from barvaz_dns.logging_config import normalize_level

if TYPE_CHECKING:
    import argparse
    from collections.abc import Mapping
    from typing import Any, Final, Self


logger = logging.getLogger(__name__)

# Service limits
DOMAIN_LIMIT: Final[int] = 5
MINIMAL_INTERVAL: Final[timedelta] = timedelta(seconds=5)
DEFAULT_INTERVAL: Final[timedelta] = timedelta(days=1)

# Storage
CONFIG_DIR_NAME: Final[str] = "BarvazDNS"
CONFIG_FILE_NAME: Final[str] = "config.toml"
CONTROL_SOCKET_NAME: Final[str] = "control.sock"
DEFAULT_CONFIG_CONTENT: Final[str] = """\
[service]
interval = "1 day"

[client]
"""

# Environment variables
ENV_LOG_LEVEL: Final[str] = "BARVAZ_LOG_LEVEL"
ENV_CONFIG_DIR: Final[str] = "BARVAZ_CONFIG_DIR"
ENV_CONTROL_SOCKET: Final[str] = "BARVAZ_CONTROL_SOCKET"


class ConfigValidationError(Exception):
    """
    Exception raised when configuration validation fails.

    This exception is raised when the TOML configuration cannot be parsed
    or contains invalid types or values.

    Attributes
    ----------
    message : str
        Human-readable error message describing the validation failures.
    config_path : Path | None
        Path to the configuration file that failed validation.
    """

    def __init__(self, message: str, config_path: Path | None = None) -> None:
        """
        Initialize ConfigValidationError.

        Parameters
        ----------
        message : str
            Human-readable error message.
        config_path : Path | None, optional
            Path to the configuration file.
        """
        self.config_path = config_path
        super().__init__(message)


# Human-readable durations ("10s", "5m", "1 day", "1h 30m")

_DURATION_UNITS: Final[dict[str, timedelta]] = {
    "ms": timedelta(milliseconds=1),
    "msec": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "sec": timedelta(seconds=1),
    "secs": timedelta(seconds=1),
    "second": timedelta(seconds=1),
    "seconds": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "min": timedelta(minutes=1),
    "mins": timedelta(minutes=1),
    "minute": timedelta(minutes=1),
    "minutes": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "hr": timedelta(hours=1),
    "hrs": timedelta(hours=1),
    "hour": timedelta(hours=1),
    "hours": timedelta(hours=1),
    "d": timedelta(days=1),
    "day": timedelta(days=1),
    "days": timedelta(days=1),
    "w": timedelta(weeks=1),
    "week": timedelta(weeks=1),
    "weeks": timedelta(weeks=1),
}

_DURATION_PATTERN: Final[re.Pattern[str]] = re.compile(r"^\s*(?:\d+\s*[a-z]+\s*)+$")
_DURATION_PART: Final[re.Pattern[str]] = re.compile(r"(\d+)\s*([a-z]+)")


def parse_duration(value: str) -> timedelta:
    """
    Parse a human-readable duration.

    Parameters
    ----------
    value : str
        Duration such as "10s", "5 minutes" or "1d 12h". A bare number
        is interpreted as seconds.

    Returns
    -------
    timedelta
        The parsed duration.

    Raises
    ------
    ValueError
        If the value is not a valid duration.
    """
    text = value.strip().lower()
    if text.isdigit():
        return timedelta(seconds=int(text))

    if not _DURATION_PATTERN.match(text):
        msg = f'Invalid duration: "{value}".'
        raise ValueError(msg)

    total = timedelta()
    for amount, unit in _DURATION_PART.findall(text):
        if unit not in _DURATION_UNITS:
            msg = f'Unknown time unit "{unit}" in duration "{value}".'
            raise ValueError(msg)
        total += int(amount) * _DURATION_UNITS[unit]
    return total


def format_duration(value: timedelta) -> str:
    """
    Format a duration the way `parse_duration` reads it (e.g. "1d 2h 30s").

    Parameters
    ----------
    value : timedelta
        The duration to format.

    Returns
    -------
    str
        Human-readable duration.
    """
    milliseconds = value // timedelta(milliseconds=1)
    if milliseconds <= 0:
        return "0s"

    seconds, ms = divmod(milliseconds, 1000)
    minutes, secs = divmod(seconds, 60)
    hours, mins = divmod(minutes, 60)
    days, hrs = divmod(hours, 24)

    parts = [
        f"{amount}{unit}"
        for amount, unit in ((days, "d"), (hrs, "h"), (mins, "m"), (secs, "s"), (ms, "ms"))
        if amount
    ]
    return " ".join(parts)


def _coerce_duration(value: Any) -> Any:
    """Parse human-readable strings; leave everything else to pydantic."""
    if isinstance(value, str):
        try:
            return parse_duration(value)
        except ValueError:
            # May still be an ISO 8601 duration, which pydantic understands
            return value
    return value


Duration = Annotated[
    timedelta,
    BeforeValidator(_coerce_duration),
    PlainSerializer(format_duration, return_type=str),
]


# Configuration models (Pydantic with type validation and coercion)


class ServiceConfig(BaseModel):
    """
    Service configuration, the record governing update behavior.

    Attributes
    ----------
    token : str | None
        DuckDNS token. Required before any update is attempted.
    domains : set[str]
        DuckDNS subdomains to keep updated.
    interval : timedelta
        Minimum time between two updates.
    ipv6 : bool | None
        Whether the public IPv6 address is published too.
    reset_addresses_pending : bool
        Clear the published addresses before the next update. Never persisted.
    """

    token: str | None = None
    domains: set[str] = Field(default_factory=set)
    interval: Duration = DEFAULT_INTERVAL
    ipv6: bool | None = None
    reset_addresses_pending: bool = Field(default=False, exclude=True)

    @field_validator("interval", mode="after")
    @classmethod
    def raise_to_minimal_interval(cls, value: timedelta) -> timedelta:
        """
        Raise intervals below the minimum to the minimum.

        Returns
        -------
        timedelta
            The effective interval.
        """
        if value < MINIMAL_INTERVAL:
            logger.warning(
                'Interval "%s" is below the minimum, using "%s".',
                format_duration(value),
                format_duration(MINIMAL_INTERVAL),
            )
            return MINIMAL_INTERVAL
        return value

    @model_validator(mode="after")
    def check_domain_limit(self) -> Self:
        """
        Validate that no more than `DOMAIN_LIMIT` domains are configured.

        Returns
        -------
        Self
            The validated model.

        Raises
        ------
        PydanticCustomError
            If too many domains are configured.
        """
        if len(self.domains) > DOMAIN_LIMIT:
            raise PydanticCustomError(
                "domain_limit",
                "At most {limit} domains can be configured",
                {"limit": DOMAIN_LIMIT},
            )
        return self

    @field_serializer("domains")
    def serialize_domains(self, domains: set[str]) -> list[str]:
        """Serialize domains in a stable order."""
        return sorted(domains)


class ClientConfig(BaseModel):
    """Client-side settings. Reserved, currently empty."""


class Config(BaseModel):
    """
    Persisted configuration document.

    Attributes
    ----------
    service : ServiceConfig
        Service configuration.
    client : ClientConfig
        Client configuration.
    """

    service: ServiceConfig = Field(default_factory=ServiceConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)


def _format_validation_errors(
    error: ValidationError,
    config_path: Path | None,
) -> str:
    """
    Format Pydantic validation errors into human-readable messages.

    Parameters
    ----------
    error : ValidationError
        Pydantic validation error.
    config_path : Path | None
        Path to the configuration file.

    Returns
    -------
    str
        Human-readable error message.
    """
    lines: list[str] = []

    if config_path:
        lines.append(f'Configuration error in "{config_path}":')
    else:
        lines.append("Configuration error:")

    for err in error.errors():
        # Build field path (e.g., "service.interval")
        field_path = ".".join(str(loc) for loc in err["loc"])
        error_type = err["type"]

        if error_type == "domain_limit":
            lines.append(f"  [{field_path}]: {err['msg']}.")
            continue

        error_input = err["input"]
        input_type = type(error_input).__name__
        value_repr = (
            f'"{error_input}"' if isinstance(error_input, str) else repr(error_input)
        )
        expected_type = _get_expected_type(error_type)
        lines.append(
            f"  [{field_path}]: Expected {expected_type}, got {input_type} (value: {value_repr}). {err['msg']}.",
        )

    return "\n".join(lines)


def _get_expected_type(error_type: str) -> str:
    """
    Get human-readable expected type from Pydantic error type.

    Parameters
    ----------
    error_type : str
        Pydantic error type string.

    Returns
    -------
    str
        Human-readable type name.
    """
    type_mapping = {
        "int_type": "int",
        "int_parsing": "int",
        "bool_type": "bool",
        "bool_parsing": "bool",
        "string_type": "str",
        "list_type": "list",
        "set_type": "list",
        "time_delta_type": "duration",
        "time_delta_parsing": "duration",
        "model_type": "table",
    }
    return type_mapping.get(error_type, error_type)


def parse_config(text: str, config_path: Path | None = None) -> Config:
    """
    Parse and validate a TOML configuration document.

    Parameters
    ----------
    text : str
        TOML document.
    config_path : Path | None, optional
        Path of the document (for error messages).

    Returns
    -------
    Config
        The validated configuration.

    Raises
    ------
    ConfigValidationError
        If the document is not valid TOML or fails validation.
    """
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        location = f' "{config_path}"' if config_path else ""
        msg = f"Failed to parse configuration file{location}: {e}"
        raise ConfigValidationError(msg, config_path) from e

    try:
        return Config.model_validate(data)
    except ValidationError as e:
        msg = _format_validation_errors(e, config_path)
        raise ConfigValidationError(msg, config_path) from e


def dump_config(config: Config) -> str:
    """
    Serialize a configuration to TOML.

    The transient `reset_addresses_pending` flag is never written.

    Parameters
    ----------
    config : Config
        Configuration to serialize.

    Returns
    -------
    str
        TOML document.
    """
    return tomli_w.dumps(config.model_dump(mode="json", exclude_none=True))


def write_atomic(path: Path, content: str) -> None:
    """
    Replace the content of a file atomically.

    The content is written to a temporary file in the same directory which
    is then renamed over the target.

    Parameters
    ----------
    path : Path
        Target file.
    content : str
        New file content.

    Raises
    ------
    OSError
        If the file cannot be written.
    """
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        tmp_path.replace(path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


class ConfigStore:
    """
    In-memory configuration backed by a TOML file.

    The store is owned by the control listener: it is the only component
    that mutates `config`. Other components receive copies via `snapshot`.

    Attributes
    ----------
    path : Path
        Path to the configuration file.
    config : Config
        The live configuration.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.config = Config()

    @property
    def service(self) -> ServiceConfig:
        """Get the live service configuration."""
        return self.config.service

    def snapshot(self) -> ServiceConfig:
        """Get a deep copy of the service configuration."""
        return self.config.service.model_copy(deep=True)

    def ensure_directory(self) -> None:
        """
        Create the configuration directory if it does not exist.

        Raises
        ------
        OSError
            If the directory cannot be created.
        """
        if not self.path.parent.is_dir():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            logger.info('Created the configuration directory "%s".', self.path.parent)

    def load(self) -> Config:
        """
        Read and validate the configuration file.

        The loaded service configuration always has `reset_addresses_pending`
        set, since the published addresses may not match the file.

        Returns
        -------
        Config
            The loaded configuration (the live one is not replaced).

        Raises
        ------
        OSError
            If the file cannot be read.
        ConfigValidationError
            If the file content is invalid.
        """
        text = self.path.read_text(encoding="utf-8")
        config = parse_config(text, self.path)
        config.service.reset_addresses_pending = True
        return config

    def reload(self) -> Config:
        """
        Replace the live configuration with the content of the file.

        Returns
        -------
        Config
            The new live configuration.

        Raises
        ------
        OSError
            If the file cannot be read.
        ConfigValidationError
            If the file content is invalid. The live configuration is kept.
        """
        self.config = self.load()
        return self.config

    def load_or_create(self) -> Config:
        """
        Load the configuration, creating the default file on first run.

        Invalid file content is reported and replaced in memory by the
        defaults; the file itself is left untouched.

        Returns
        -------
        Config
            The live configuration.

        Raises
        ------
        OSError
            If the directory or file cannot be created or read.
        """
        self.ensure_directory()

        if not self.path.is_file():
            write_atomic(self.path, DEFAULT_CONFIG_CONTENT)
            logger.info('Created the default configuration file "%s".', self.path)

        try:
            return self.reload()
        except ConfigValidationError as e:
            logger.error("%s", e)  # noqa: TRY400
            logger.warning("Falling back to the default configuration.")
            self.config = parse_config(DEFAULT_CONFIG_CONTENT)
            self.config.service.reset_addresses_pending = True
            return self.config

    def save(self) -> None:
        """
        Persist the live configuration.

        Raises
        ------
        OSError
            If the file cannot be written.
        """
        write_atomic(self.path, dump_config(self.config))


# Runtime settings


def default_config_dir() -> Path:
    """
    Get the default configuration directory for the platform.

    Returns
    -------
    Path
        "%ProgramData%\\BarvazDNS" on Windows, "~/.config/barvaz-dns" elsewhere.
    """
    if sys.platform == "win32" and "ProgramData" in os.environ:
        return Path(os.environ["ProgramData"]) / CONFIG_DIR_NAME
    return Path("~/.config/barvaz-dns").expanduser()


class RuntimeSettings(BaseModel):
    """
    Process-level settings of the service and the client.

    Attributes
    ----------
    config_dir : Path
        Directory holding the configuration and log files.
    control_socket : Path | None
        Control channel endpoint. Defaults to a socket in `config_dir`.
    log_level : str
        Initial log level.
    log_file_enabled : bool
        Whether to log to a file in `config_dir`.
    """

    config_dir: Path = Field(default_factory=default_config_dir)
    control_socket: Path | None = None
    log_level: str = "INFO"
    log_file_enabled: bool = True

    @field_validator("config_dir", "control_socket", mode="after")
    @classmethod
    def expand_user(cls, value: Path | None) -> Path | None:
        """Expand "~" in paths."""
        return value.expanduser() if value is not None else None

    @field_validator("log_level", mode="after")
    @classmethod
    def check_log_level(cls, value: str) -> str:
        """
        Normalize and validate the log level.

        Raises
        ------
        PydanticCustomError
            If the level name is unknown.
        """
        try:
            return normalize_level(value)
        except ValueError as e:
            raise PydanticCustomError("log_level", str(e)) from e

    @property
    def config_path(self) -> Path:
        """Get the configuration file path."""
        return self.config_dir / CONFIG_FILE_NAME

    @property
    def socket_path(self) -> Path:
        """Get the control socket path."""
        if self.control_socket is not None:
            return self.control_socket
        return self.config_dir / CONTROL_SOCKET_NAME


def load_settings(
    args: argparse.Namespace | None = None,
    environ: Mapping[str, str] | None = None,
) -> RuntimeSettings:
    """
    Load runtime settings from environment variables and arguments.

    Priority (high to low):
    1. Command-line arguments
    2. Environment variables
    3. Default values

    Parameters
    ----------
    args : argparse.Namespace | None, optional
        Parsed command-line arguments. Missing attributes are ignored.
    environ : Mapping[str, str] | None, optional
        Environment variables. If None, uses os.environ.

    Returns
    -------
    RuntimeSettings
        The resolved settings.

    Raises
    ------
    ConfigValidationError
        If a setting is invalid.
    """
    if environ is None:
        environ = os.environ

    settings_dict: dict[str, Any] = {}

    # Environment overrides
    if level := environ.get(ENV_LOG_LEVEL):
        settings_dict["log_level"] = level
    if config_dir := environ.get(ENV_CONFIG_DIR):
        settings_dict["config_dir"] = config_dir
    if control_socket := environ.get(ENV_CONTROL_SOCKET):
        settings_dict["control_socket"] = control_socket

    # Command-line overrides
    if args is not None:
        for name in ("config_dir", "control_socket", "log_level", "log_file_enabled"):
            value = getattr(args, name, None)
            if value is not None:
                settings_dict[name] = value

    try:
        return RuntimeSettings.model_validate(settings_dict)
    except ValidationError as e:
        raise ConfigValidationError(_format_validation_errors(e, None)) from e
