"""
Base class for DNS update clients.

This module defines the abstract base class that all dynamic DNS provider
implementations must inherit from.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable


class ProviderResult:
    """
    Result of a provider update.

    Attributes
    ----------
    success : bool
        Whether the update was successful.
    message : str
        Human-readable message.
    ipv4 : str | None
        The IPv4 address that was published.
    ipv6 : str | None
        The IPv6 address that was published.
    """

    def __init__(
        self,
        *,
        success: bool,
        message: str,
        ipv4: str | None = None,
        ipv6: str | None = None,
    ) -> None:
        """
        Initialize a ProviderResult.

        Parameters
        ----------
        success : bool
            Whether the update was successful.
        message : str
            Human-readable message.
        ipv4 : str | None, optional
            The published IPv4 address.
        ipv6 : str | None, optional
            The published IPv6 address.
        """
        self.success = success
        self.message = message
        self.ipv4 = ipv4
        self.ipv6 = ipv6

    def __repr__(self) -> str:
        return f"ProviderResult(success={self.success!r}, message={self.message!r})"


class BaseDNSProvider(ABC):
    """
    Abstract base class for dynamic DNS providers.

    All provider implementations must inherit from this class
    and implement the `apply` method.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """
        Get the provider name.

        Returns
        -------
        str
            Provider name identifier.
        """
        ...

    @abstractmethod
    async def apply(
        self,
        domains: Iterable[str],
        token: str,
        *,
        ipv6: bool,
        reset_addresses_first: bool,
    ) -> ProviderResult:
        """
        Point the domains at the host's current public address.

        This method should:
        1. Resolve the public IPv4 address (and IPv6 address if enabled)
        2. If requested, clear the addresses currently published
        3. Publish the resolved addresses

        Parameters
        ----------
        domains : Iterable[str]
            Domains to update.
        token : str
            Provider credential.
        ipv6 : bool
            Whether to publish the IPv6 address too.
        reset_addresses_first : bool
            Whether to clear the published addresses before updating.

        Returns
        -------
        ProviderResult
            The result of the update.
        """
        ...
