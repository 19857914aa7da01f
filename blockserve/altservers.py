"""The list of alternative servers known to this server."""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass, field

from .config import ServerConfig
from .fileutil import is_readable, iter_line_fields
from .hosts import Host, HostType, parse_address
from .ini import parse_ini

logger = logging.getLogger(__name__)

ALT_SERVERS_FILENAME = "alt-servers"
SERVER_MAX_ALTS = 50
SERVER_RTT_PROBES = 5
COMMENT_LENGTH = 120
SERVER_GLOBAL_DUP_TIME = 6
SERVER_BAD_UPLINK_MIN = 10
SERVER_BAD_UPLINK_MAX = 20


class AltServerListFull(Exception):
    """Raised when no more alt servers can be added."""


@dataclass
class AltServer:
    """An alternative server and its global health state."""

    host: Host
    comment: str = ""
    is_private: bool = False
    is_client_only: bool = False
    namespaces: list[str] = field(default_factory=list)
    fails: int = 0
    rtt: list[int] = field(default_factory=lambda: [0] * SERVER_RTT_PROBES)
    rtt_index: int = 0
    blocked: bool = False
    last_fail: float = float("-inf")

    def is_image_allowed(self, image_name: str) -> bool:
        """True if the server has no namespaces or one prefixes ``image_name``."""
        if not self.namespaces:
            return True
        return any(image_name.startswith(ns) for ns in self.namespaces)


def net_closeness(host1: Host | None, host2: Host | None) -> int:
    """Number of matching leading nibbles of two addresses, -1 if incomparable."""
    if host1 is None or host2 is None or host1.type != host2.type:
        return -1
    length = 4 if host1.type is HostType.IP4 else 16
    a = host1.addr.ljust(16, b"\0")
    b = host2.addr.ljust(16, b"\0")
    result = 0
    for x, y in zip(a[:length], b[:length]):
        if (x & 0xF0) != (y & 0xF0):
            return result
        result += 1
        if (x & 0x0F) != (y & 0x0F):
            return result
        result += 1
    return result


class AltServerList:
    """Thread safe list of alternative servers."""

    def __init__(self, config: ServerConfig) -> None:
        self.config = config
        self.lock = threading.RLock()
        self._servers: list[AltServer] = []

    def __len__(self) -> int:
        return len(self._servers)

    def __getitem__(self, index: int) -> AltServer:
        return self._servers[index]

    def __iter__(self) -> Iterator[AltServer]:
        with self.lock:
            return iter(list(self._servers))

    def add(
        self, host: Host, comment: str = "", is_private: bool = False, is_client_only: bool = False
    ) -> tuple[int, bool]:
        """Add a server; returns its index and whether it was newly added.

        Raises :class:`AltServerListFull` if the maximum is reached.
        """
        with self.lock:
            free_slot = None
            for index, server in enumerate(self._servers):
                if server.host.same_address_port(host):
                    return index, False
                if free_slot is None and server.host.type is HostType.NONE:
                    free_slot = index
            entry = AltServer(
                host=host,
                comment=(comment or "")[: COMMENT_LENGTH - 1],
                is_private=bool(is_private),
                is_client_only=bool(is_client_only),
            )
            if free_slot is not None:
                self._servers[free_slot] = entry
                return free_slot, True
            if len(self._servers) >= SERVER_MAX_ALTS:
                logger.warning(
                    "Cannot add another alt server, maximum of %d already reached.",
                    SERVER_MAX_ALTS,
                )
                raise AltServerListFull(SERVER_MAX_ALTS)
            self._servers.append(entry)
            return len(self._servers) - 1, True

    def _add_from_ini(self, counter: list[int], section: str, key: str, value: str) -> bool:
        try:
            host = parse_address(section)
        except ValueError:
            logger.warning("Invalid host section in alt-servers file ignored: '%s'", section)
            return True
        try:
            index, added = self.add(host)
        except AltServerListFull:
            return True
        if added:
            counter[0] += 1
        server = self._servers[index]
        if key == "for":
            if value.startswith("client"):
                server.is_client_only, server.is_private = True, False
            elif value == "replication":
                server.is_client_only, server.is_private = False, True
            else:
                logger.warning(
                    "Invalid value in alt-servers section %s for key %s: '%s'",
                    section,
                    key,
                    value,
                )
        elif key == "comment":
            server.comment = value[: COMMENT_LENGTH - 1]
        elif key == "namespace":
            server.namespaces.insert(0, value)
        else:
            logger.debug("Unknown key in alt-servers section: '%s'", key)
        return True

    def _add_from_legacy(self, fields: list[str]) -> bool:
        entry = fields[0]
        if entry.startswith("#"):
            return False
        is_private = is_client_only = False
        pos = 0
        while pos < len(entry):
            char = entry[pos]
            if char == "-":
                is_private = True
            elif char == "+":
                is_client_only = True
            elif char not in " \t":
                break
            pos += 1
        try:
            host = parse_address(entry[pos:])
        except ValueError:
            logger.warning("Invalid entry in alt-servers file ignored: '%s'", entry[pos:])
            return False
        comment = fields[1] if len(fields) > 1 else ""
        try:
            return self.add(host, comment, is_private, is_client_only)[1]
        except AltServerListFull:
            return False

    def load(self, config_dir: str) -> int:
        """Load the ``alt-servers`` file from ``config_dir``; returns the number added."""
        name = os.path.join(config_dir, ALT_SERVERS_FILENAME)
        if not is_readable(name):
            return 0
        counter = [0]
        try:
            parse_ini(name, lambda s, k, v: self._add_from_ini(counter, s, k, v))
        except OSError as exc:
            logger.warning("Could not read %s: %s", name, exc)
            return 0
        if len(self._servers) == 0:
            logger.info(
                "Could not parse %s as .ini file, trying to load as legacy format.", name
            )
            for fields in iter_line_fields(name, 1, 2):
                if self._add_from_legacy(fields):
                    counter[0] += 1
        logger.debug("Added %d alt servers", counter[0])
        return counter[0]

    def list_for_client(self, host: Host, image_name: str, size: int) -> list[Host]:
        """Up to ``size`` public servers for ``image_name``, closest to ``host`` first."""
        if host.type is HostType.NONE or not self._servers or size <= 0:
            return []
        with self.lock:
            scored = [
                (10 + net_closeness(host, server.host), index, server.host)
                for index, server in enumerate(self._servers)
                if server.host.type is not HostType.NONE
                and not server.is_private
                and server.is_image_allowed(image_name)
            ]
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [entry[2] for entry in scored[: min(size, len(self._servers))]]

    def image_has_alt_servers(self, image_name: str) -> bool:
        """True if ``image_name`` may be cloned from at least one server."""
        with self.lock:
            return any(
                not server.is_client_only
                and (server.is_private or not self.config.proxy_private_only)
                and server.is_image_allowed(image_name)
                for server in self._servers
            )

    def server_failed(self, index: int) -> None:
        """Count a connection failure, ignoring repeats within a short time."""
        now = time.monotonic()
        with self.lock:
            server = self._servers[index]
            if now - server.last_fail > SERVER_GLOBAL_DUP_TIME:
                server.last_fail = now
                if server.fails >= SERVER_BAD_UPLINK_MAX:
                    server.blocked = True
                server.fails += 1

    def host_to_index(self, host: Host) -> int | None:
        """Index of the server with this address and port, or None."""
        for index, server in enumerate(self._servers):
            if host.same_address_port(server.host):
                return index
        return None

    def index_to_host(self, index: int) -> Host:
        return self._servers[index].host

    def to_json(self) -> list[dict]:
        """Status of all servers as JSON-ready dictionaries."""
        with self.lock:
            snapshot = [
                (s.comment, s.host, list(s.rtt), s.rtt_index, s.is_private, s.is_client_only, s.fails)
                for s in self._servers
            ]
        result = []
        for comment, host, rtt, rtt_index, private, client_only, fails in snapshot:
            ordered = [rtt[(j + rtt_index + 1) % SERVER_RTT_PROBES] for j in range(SERVER_RTT_PROBES)]
            result.append(
                {
                    "comment": comment,
                    "host": str(host),
                    "rtt": ordered,
                    "isPrivate": private,
                    "isClientOnly": client_only,
                    "numFails": fails,
                }
            )
        return result