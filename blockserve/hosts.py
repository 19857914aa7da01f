"""Network host addresses as used by servers and clients."""

from __future__ import annotations

import enum
import re
import socket
from dataclasses import dataclass

from .config import PORT

_ATOI = re.compile(r"[ \t\n\v\f\r]*([+-]?[0-9]+)")


class HostType(enum.IntEnum):
    NONE = 0
    IP4 = 4
    IP6 = 6

    @property
    def address_length(self) -> int:
        return 4 if self is HostType.IP4 else 16


@dataclass(frozen=True)
class Host:
    """An IPv4 or IPv6 address with a port in host byte order."""

    type: HostType = HostType.NONE
    addr: bytes = b""
    port: int = 0

    def _addr_prefix(self) -> bytes:
        return self.addr.ljust(16, b"\0")[: self.type.address_length]

    def same_address(self, other: Host) -> bool:
        """True if both hosts have the same address, ignoring the port."""
        return self.type == other.type and self._addr_prefix() == other._addr_prefix()

    def same_address_port(self, other: Host) -> bool:
        """True if both hosts have the same address and port."""
        return self.port == other.port and self.same_address(other)

    def to_string(self) -> str:
        """Printable form, e.g. ``1.2.3.4:5003`` or ``[::1]:5003``.

        Raises :class:`ValueError` if the host has no address type.
        """
        if self.type is HostType.IP6:
            text = "[" + socket.inet_ntop(socket.AF_INET6, self._addr_prefix()) + "]"
        elif self.type is HostType.IP4:
            text = socket.inet_ntop(socket.AF_INET, self._addr_prefix())
        else:
            raise ValueError(f"<?addrtype={int(self.type)}>")
        if self.port != 0:
            text += f":{self.port}"
        return text

    def __str__(self) -> str:
        try:
            return self.to_string()
        except ValueError as exc:
            return str(exc)


def _pton(text: str) -> tuple[HostType, bytes] | None:
    for family, kind in ((socket.AF_INET, HostType.IP4), (socket.AF_INET6, HostType.IP6)):
        try:
            return kind, socket.inet_pton(family, text)
        except (OSError, ValueError):
            continue
    return None


def _atoi(text: str) -> int:
    match = _ATOI.match(text)
    return int(match.group(1)) if match else 0


def parse_address(text: str) -> Host:
    """Parse ``1.2.3.4``, ``2a01::10:5``, ``1.2.3.4:6666`` or ``[2a01::10:5]:6666``.

    The port defaults to the standard server port. Raises :class:`ValueError`
    if the text is not a valid address or the port is out of range.
    """
    parsed = _pton(text)
    if parsed is not None:
        return Host(parsed[0], parsed[1], PORT)
    colon = text.rfind(":")
    if colon < 0:
        raise ValueError(f"no valid address and no port in '{text}'")
    address = text[:colon]
    if text.startswith("[") and colon > 0 and text[colon - 1] == "]":
        address = text[1 : colon - 1]
    port = _atoi(text[colon + 1 :])
    if not 1 <= port <= 65535:
        raise ValueError(f"invalid port in '{text}'")
    parsed = _pton(address)
    if parsed is None:
        raise ValueError(f"invalid address '{text}'")
    return Host(parsed[0], parsed[1], port)


def remove_trailing_slash(text: str) -> str:
    """Strip every trailing ``/``."""
    return text.rstrip("/")


def trim_right(text: str) -> str:
    """Strip trailing spaces, tabs and line breaks."""
    return text.rstrip("\r\n \t")