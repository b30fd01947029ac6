"""Shared fixtures for the Barvaz DNS tests."""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from barvaz_dns.logging_config import PACKAGE_LOGGER
from barvaz_dns.providers.base import BaseDNSProvider, ProviderResult

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator


@pytest.fixture(autouse=True)
def reset_package_logger() -> Iterator[None]:
    """Undo `setup_logging` so that every test starts from a clean logger."""
    yield
    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def short_dir() -> Iterator[Path]:
    """Directory with a short path, as Unix socket paths are length-limited."""
    path = Path(tempfile.mkdtemp(prefix="bz"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def socket_path(short_dir: Path) -> Path:
    return short_dir / "control.sock"


class FakeProvider(BaseDNSProvider):
    """Provider recording its calls and returning a preset outcome."""

    def __init__(self, *, success: bool = True, error: Exception | None = None) -> None:
        self.success = success
        self.error = error
        self.calls: list[dict] = []

    @property
    def name(self) -> str:
        return "fake"

    async def apply(
        self,
        domains: Iterable[str],
        token: str,
        *,
        ipv6: bool,
        reset_addresses_first: bool,
    ) -> ProviderResult:
        self.calls.append(
            {
                "domains": sorted(domains),
                "token": token,
                "ipv6": ipv6,
                "reset_addresses_first": reset_addresses_first,
            },
        )
        if self.error is not None:
            raise self.error
        return ProviderResult(
            success=self.success,
            message="Updated" if self.success else "Rejected",
        )


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


async def wait_until_exists(path: Path, timeout: float = 5.0) -> None:
    """Wait for a file (typically the control socket) to appear."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not path.exists():
        if loop.time() > deadline:
            msg = f"{path} was not created"
            raise TimeoutError(msg)
        await asyncio.sleep(0.01)
