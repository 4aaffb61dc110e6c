"""Destination checks for webhook URLs (SSRF guard)."""

from __future__ import annotations

import ipaddress
from urllib.parse import urlparse

_BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback", "metadata.google.internal"}


def _is_internal_address(hostname: str) -> bool:
  """Return True when the host is an IP literal in a loopback/private/link-local/reserved range."""
  try:
    address = ipaddress.ip_address(hostname)
  except ValueError:
    return False

  # Unwrap IPv4-mapped IPv6 (::ffff:10.0.0.1) so it is judged by its IPv4 range.
  if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
    address = address.ipv4_mapped

  return address.is_loopback or address.is_private or address.is_link_local or address.is_reserved or address.is_unspecified or address.is_multicast


def is_valid_destination(url: str, *, production: bool) -> bool:
  """Accept http(s) URLs; in production also reject loopback and private-network hosts."""
  try:
    parsed = urlparse(url)
  except ValueError:
    return False

  if parsed.scheme not in {"http", "https"}:
    return False

  hostname = (parsed.hostname or "").strip().lower().rstrip(".")
  if not hostname:
    return False

  if not production:
    return True

  if hostname in _BLOCKED_HOSTNAMES or hostname.endswith(".localhost"):
    return False

  return not _is_internal_address(hostname)
