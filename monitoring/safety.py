"""
============================================================================
UPTIME SENTINEL - OUTBOUND SAFETY GUARD
============================================================================
Hard gate in front of every outbound request. A destination is allowed
only if its scheme and port are permitted, its hostname is not on the
block list, and EVERY address it resolves to is publicly routable.

Blocked
-------
• private, loopback, link-local, multicast, reserved, unspecified and
  shared (100.64/10) IPv4 ranges
• cloud instance metadata endpoints
• IPv6 destinations, unless they match SAFETY_IPV6_ALLOWLIST and are
  globally routable
• hostnames with zero address records (fail closed)
• DNS timeouts (fail closed)

Without an IPv6 allow-list a host is judged by its A records and AAAA
records are consulted only when it has none. The executor then dials
IPv4 only, so an AAAA address is never connected to.

License: MIT
============================================================================
"""

import asyncio
import ipaddress
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Union
from urllib.parse import urlsplit

import dns.asyncresolver
import dns.exception
import dns.resolver

from config.constants import BlockReason, NetworkPolicy
from config.settings import SafetySettings
from exceptions import NoRecordsError, UnsafeTargetError
from utils.logger import get_logger


logger = get_logger("SafetyGuard")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
ResolveFunc = Callable[[str], Awaitable[List[str]]]


@dataclass(frozen=True)
class SafetyVerdict:
    """A destination that passed the guard."""

    url: str
    scheme: str
    hostname: str
    port: int
    addresses: List[str] = field(default_factory=list)


class OutboundSafetyGuard:
    """
    Validates outbound destinations before any connection is made.

    Parameters
    ----------
    settings : SafetySettings
        Port policy, DNS timeout, IPv6 allow-list and extra blocked domains.
    resolve_func : callable, optional
        ``async (hostname) -> list[str]`` used instead of the dnspython
        resolver. Must raise ``NoRecordsError`` / ``UnsafeTargetError``
        itself for failures it wants reported distinctly.
    """

    def __init__(
        self,
        settings: SafetySettings,
        resolve_func: Optional[ResolveFunc] = None,
    ):
        self.settings = settings
        self._resolve_func = resolve_func
        self._ipv6_allowlist = [
            ipaddress.ip_network(net, strict=False) for net in settings.ipv6_allowlist
        ]
        self._blocked_domains = {d.lower().strip(".") for d in settings.blocked_domains}

    # ------------------------------------------------------------------
    # PUBLIC API
    # ------------------------------------------------------------------

    async def validate_url(self, url: str) -> SafetyVerdict:
        """
        Validate a full URL: scheme, port, hostname and resolved addresses.

        Parameters
        ----------
        url : str
            Absolute http(s) URL.

        Returns
        -------
        SafetyVerdict
            Parsed destination and the addresses it resolved to.

        Raises
        ------
        UnsafeTargetError
            When any rule rejects the destination.
        """
        try:
            parsed = urlsplit(url)
            explicit_port = parsed.port
        except ValueError as e:
            raise UnsafeTargetError(
                f"Malformed URL: {e}",
                reason=BlockReason.INVALID_URL,
                url=url,
            )

        scheme = parsed.scheme.lower()
        if scheme not in NetworkPolicy.ALLOWED_SCHEMES:
            raise UnsafeTargetError(
                f"Scheme '{scheme or '(none)'}' is not allowed",
                reason=BlockReason.INVALID_SCHEME,
                url=url,
            )

        hostname = (parsed.hostname or "").lower().rstrip(".")
        if not hostname:
            raise UnsafeTargetError(
                "URL has no host",
                reason=BlockReason.INVALID_URL,
                url=url,
            )

        port = explicit_port or NetworkPolicy.DEFAULT_PORTS[scheme]
        if port not in self.settings.allowed_ports:
            raise UnsafeTargetError(
                f"Port {port} is not allowed",
                reason=BlockReason.PORT_NOT_ALLOWED,
                hostname=hostname,
                url=url,
            )

        addresses = await self.check_host(hostname)
        return SafetyVerdict(
            url=url,
            scheme=scheme,
            hostname=hostname,
            port=port,
            addresses=addresses,
        )

    async def check_host(self, hostname: str) -> List[str]:
        """
        Resolve ``hostname`` and reject it unless every address is public.

        IP literals are checked directly without DNS.

        Returns
        -------
        list[str]
            The resolved (or literal) addresses.
        """
        hostname = hostname.lower().strip("[]").rstrip(".")

        if self._is_blocked_hostname(hostname):
            logger.warning(f"[Safety] ✗ {hostname} blocked by hostname policy")
            raise UnsafeTargetError(
                f"Hostname {hostname} is not allowed",
                reason=BlockReason.BLOCKED_HOSTNAME,
                hostname=hostname,
            )

        literal = self._parse_ip(hostname)
        if literal is not None:
            addresses = [str(literal)]
        else:
            addresses = self._dialable(await self.resolve(hostname))

        if not addresses:
            raise NoRecordsError(
                f"{hostname} resolved to no addresses",
                hostname=hostname,
            )

        for address in addresses:
            reason = self.classify_address(address)
            if reason is not None:
                logger.warning(f"[Safety] ✗ {hostname} → {address} rejected ({reason.value})")
                raise UnsafeTargetError(
                    f"{hostname} resolves to a disallowed address ({reason.value})",
                    reason=reason,
                    hostname=hostname,
                    addresses=addresses,
                )

        return addresses

    @property
    def ipv4_only(self) -> bool:
        """True when no IPv6 range is allow-listed."""
        return not self._ipv6_allowlist

    async def is_safe(self, url: str) -> bool:
        """Boolean convenience wrapper around ``validate_url``."""
        try:
            await self.validate_url(url)
            return True
        except UnsafeTargetError:
            return False

    def classify_address(self, address: str) -> Optional[BlockReason]:
        """
        Return why ``address`` is disallowed, or None if it is public.
        """
        ip = self._parse_ip(address)
        if ip is None:
            return BlockReason.INVALID_URL

        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
            ip = ip.ipv4_mapped

        if str(ip) in NetworkPolicy.METADATA_ADDRESSES:
            return BlockReason.METADATA_SERVICE

        if isinstance(ip, ipaddress.IPv6Address):
            if not any(ip in net for net in self._ipv6_allowlist):
                return BlockReason.IPV6_RESTRICTED
            if not ip.is_global or ip.is_multicast:
                return BlockReason.PRIVATE_ADDRESS
            return None

        if (
            ip.is_private
            or ip.is_loopback
            or ip.is_link_local
            or ip.is_multicast
            or ip.is_reserved
            or ip.is_unspecified
            or not ip.is_global
        ):
            return BlockReason.PRIVATE_ADDRESS

        return None

    # ------------------------------------------------------------------
    # RESOLUTION
    # ------------------------------------------------------------------

    async def resolve(self, hostname: str) -> List[str]:
        """
        Resolve A records (and AAAA when needed) within ``dns_timeout``.

        Raises
        ------
        UnsafeTargetError
            reason ``dns_timeout`` when resolution does not finish in time.
        NoRecordsError
            When the name does not exist or has no address records.
        """
        try:
            if self._resolve_func is not None:
                addresses = await asyncio.wait_for(
                    self._resolve_func(hostname), timeout=self.settings.dns_timeout
                )
            else:
                addresses = await asyncio.wait_for(
                    self._resolve_with_dnspython(hostname),
                    timeout=self.settings.dns_timeout,
                )
        except (asyncio.TimeoutError, dns.exception.Timeout):
            logger.warning(f"[Safety] ✗ DNS resolution for {hostname} timed out")
            raise UnsafeTargetError(
                f"DNS resolution for {hostname} timed out",
                reason=BlockReason.DNS_TIMEOUT,
                hostname=hostname,
            )

        # Preserve order, drop duplicates
        return list(dict.fromkeys(addresses))

    async def _resolve_with_dnspython(self, hostname: str) -> List[str]:
        resolver = dns.asyncresolver.Resolver()
        resolver.lifetime = self.settings.dns_timeout
        resolver.timeout = self.settings.dns_timeout

        addresses = await self._query(resolver, hostname, "A")
        if addresses and self.ipv4_only:
            return addresses
        return addresses + await self._query(resolver, hostname, "AAAA")

    @staticmethod
    async def _query(resolver: dns.asyncresolver.Resolver, hostname: str, rdtype: str) -> List[str]:
        try:
            answer = await resolver.resolve(hostname, rdtype)
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return []
        except dns.resolver.NoNameservers:
            raise NoRecordsError(
                f"DNS resolution for {hostname} failed: no nameserver answered",
                hostname=hostname,
            )
        except dns.exception.Timeout:
            raise
        except dns.exception.DNSException as e:
            raise NoRecordsError(
                f"DNS resolution for {hostname} failed: {e}",
                hostname=hostname,
                cause=e,
            )
        return [rdata.to_text() for rdata in answer]

    def _dialable(self, addresses: List[str]) -> List[str]:
        """Addresses the executor may connect to; IPv4 wins unless IPv6 is allow-listed."""
        if not self.ipv4_only:
            return addresses
        ipv4 = [a for a in addresses if isinstance(self._parse_ip(a), ipaddress.IPv4Address)]
        return ipv4 or addresses

    # ------------------------------------------------------------------
    # HELPERS
    # ------------------------------------------------------------------

    def _is_blocked_hostname(self, hostname: str) -> bool:
        if hostname in NetworkPolicy.BLOCKED_HOSTNAMES:
            return True
        if hostname.endswith(NetworkPolicy.BLOCKED_SUFFIXES):
            return True
        return any(
            hostname == domain or hostname.endswith("." + domain)
            for domain in self._blocked_domains
        )

    @staticmethod
    def _parse_ip(value: str) -> Optional[IPAddress]:
        try:
            return ipaddress.ip_address(value.strip("[]"))
        except ValueError:
            return None
