"""
SSRF guard for server-side fetches of sender-chosen URLs.

assert_safe_remote_url() must run before every request, including every
redirect hop, and the connection must go to one of the addresses it returns:
DNS answers can change between two lookups.

Rejection reasons are short, stable strings; they end up verbatim in the
``error`` column of SKIPPED asset records.
"""

import ipaddress
import logging
import socket
from typing import Iterable, List, Optional, Union
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

DEFAULT_ALLOWED_PORTS = (80, 443)
_DEFAULT_PORTS = {"http": 80, "https": 443}

_SHARED_ADDRESS_SPACE = ipaddress.ip_network("100.64.0.0/10")
_IPV6_UNIQUE_LOCAL = ipaddress.ip_network("fc00::/7")


class BlockedUrlError(ValueError):
    """The URL must not be fetched; str(exc) is the human-readable reason."""


def _address_block_reason(address: IPAddress) -> Optional[str]:
    if isinstance(address, ipaddress.IPv6Address):
        # IPv4-mapped and 6to4 addresses reach the embedded IPv4 host
        embedded = address.ipv4_mapped
        if embedded is None:
            embedded = address.sixtofour
        if embedded is not None:
            address = embedded

    if (
        address.is_unspecified
        or address.is_loopback
        or address.is_link_local
        or address.is_private
        or address.is_multicast
        or address.is_reserved
    ):
        return "private/local address is blocked"

    if isinstance(address, ipaddress.IPv6Address):
        if address.is_site_local:
            return "private/local address is blocked"
        if address in _IPV6_UNIQUE_LOCAL:
            return "ipv6 unique local address is blocked"
    else:
        if address.packed[0] == 0:
            return "invalid ipv4 range"
        if address in _SHARED_ADDRESS_SPACE:
            return "shared address space is blocked"
    return None


def resolve_host(host: str, port: int) -> List[IPAddress]:
    """All A/AAAA answers for host, de-duplicated, in resolver order."""
    try:
        answers = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError) as exc:
        raise BlockedUrlError("unresolvable host") from exc

    addresses: List[IPAddress] = []
    for _family, _type, _proto, _canonname, sockaddr in answers:
        literal = str(sockaddr[0]).split("%", 1)[0]
        try:
            address = ipaddress.ip_address(literal)
        except ValueError as exc:
            raise BlockedUrlError("unresolvable host") from exc
        if address not in addresses:
            addresses.append(address)
    return addresses


def assert_safe_remote_url(url: str, allowed_ports: Optional[Iterable[int]] = None) -> List[str]:
    """
    Reject URLs that could reach loopback, private or otherwise internal hosts.

    Args:
        url: Candidate http(s) URL
        allowed_ports: Effective ports that may be contacted (default 80, 443)

    Returns:
        The validated addresses the host resolved to.

    Raises:
        BlockedUrlError: On the first failed check
    """
    try:
        parts = urlsplit((url or "").strip())
    except ValueError as exc:
        raise BlockedUrlError("invalid url") from exc

    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        raise BlockedUrlError("invalid url scheme")

    if "@" in parts.netloc:
        raise BlockedUrlError("url userinfo is blocked")

    try:
        port = parts.port if parts.port is not None else _DEFAULT_PORTS[scheme]
    except ValueError as exc:
        raise BlockedUrlError("invalid url port") from exc
    ports = set(allowed_ports) if allowed_ports is not None else set(DEFAULT_ALLOWED_PORTS)
    if port not in ports:
        raise BlockedUrlError("url port is blocked")

    host = (parts.hostname or "").strip().rstrip(".").lower()
    if not host:
        raise BlockedUrlError("missing host")
    if host == "localhost" or host.endswith(".localhost"):
        raise BlockedUrlError("localhost is blocked")

    addresses = resolve_host(host, port)
    if not addresses:
        raise BlockedUrlError("unresolvable host")

    for address in addresses:
        reason = _address_block_reason(address)
        if reason:
            logger.info("SSRF guard blocked host=%s address=%s reason=%s", host, address, reason)
            raise BlockedUrlError(reason)

    return [str(address) for address in addresses]
