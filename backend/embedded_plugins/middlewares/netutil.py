from __future__ import annotations

import ipaddress
from typing import Iterable, List, Sequence

from starlette.datastructures import Headers
from starlette.types import Scope

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network
IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


def parse_networks(values: Iterable[str], *, option: str) -> List[IPNetwork]:
    """Parse IPs and CIDRs; a bare address becomes a single-host network.

    Raises ``ValueError`` naming ``option`` for the first invalid entry.
    """
    networks: List[IPNetwork] = []
    for raw in values:
        text = raw.strip()
        if not text:
            continue
        try:
            networks.append(ipaddress.ip_network(text, strict=False))
        except ValueError as exc:
            raise ValueError(f"{option}: invalid IP or CIDR {text!r}") from exc
    return networks


def parse_ip(value: str | None) -> IPAddress | None:
    if not value:
        return None
    text = value.strip()
    # "[::1]:443" and "10.0.0.1:8080" both show up in forwarded headers.
    if text.startswith("[") and "]" in text:
        text = text[1:text.index("]")]
    elif text.count(":") == 1:
        text = text.split(":", 1)[0]
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def contains(networks: Sequence[IPNetwork], ip: IPAddress | None) -> bool:
    if ip is None:
        return False
    return any(ip.version == net.version and ip in net for net in networks)


def peer_ip(scope: Scope) -> IPAddress | None:
    client = scope.get("client")
    if not client:
        return None
    return parse_ip(str(client[0]))


def forwarded_chain(headers: Headers, header_name: str = "x-forwarded-for") -> List[str]:
    """All comma separated hops of every ``header_name`` occurrence, left to right."""
    hops: List[str] = []
    for value in headers.getlist(header_name):
        hops.extend(part.strip() for part in value.split(",") if part.strip())
    return hops


def resolve_client_ip(scope: Scope, trusted: Sequence[IPNetwork], *, header_name: str = "x-forwarded-for") -> IPAddress | None:
    """Walk the forwarded chain from the right, skipping trusted proxies.

    Forwarded headers are only honoured when the direct peer is trusted.
    """
    peer = peer_ip(scope)
    if not contains(trusted, peer):
        return peer
    headers = Headers(scope=scope)
    candidate = peer
    for hop in reversed(forwarded_chain(headers, header_name)):
        ip = parse_ip(hop)
        if ip is None:
            break
        candidate = ip
        if not contains(trusted, ip):
            break
    return candidate
