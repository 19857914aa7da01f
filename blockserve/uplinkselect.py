"""Choosing alt servers to use as uplink, with per-uplink health state."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field

from .altservers import (
    SERVER_BAD_UPLINK_MAX,
    SERVER_BAD_UPLINK_MIN,
    SERVER_GLOBAL_DUP_TIME,
    SERVER_MAX_ALTS,
    SERVER_RTT_PROBES,
    AltServerList,
)
from .hosts import Host

logger = logging.getLogger(__name__)


@dataclass
class AltLocal:
    """Health and RTT history of one alt server as seen by one uplink."""

    fails: int = 0
    rtt: list[int] = field(default_factory=lambda: [0] * SERVER_RTT_PROBES)
    rtt_index: int = 0
    blocked: bool = False
    init_done: bool = False


def _is_usable(alt_servers: AltServerList, local: AltLocal | None, index: int, now: float) -> bool:
    server = alt_servers[index]
    if server.is_client_only or (
        not server.is_private and alt_servers.config.proxy_private_only
    ):
        return False
    # Blocked locally, e.g. the image was not found on that server
    if local is not None and local.blocked:
        local.fails -= 1
        if local.fails > 0:
            return False
        local.blocked = False
    if server.blocked:
        if now - server.last_fail < SERVER_GLOBAL_DUP_TIME:
            return False
        server.last_fail = now
        server.fails -= 1
        if server.fails > 0:
            return False
        server.blocked = False
    fails = (local.fails if local is not None else 0) + server.fails
    return fails < SERVER_BAD_UPLINK_MIN or random.randrange(fails) < SERVER_BAD_UPLINK_MIN


def _list_for_uplink(
    alt_servers: AltServerList,
    locals_: list[AltLocal] | None,
    image_name: str,
    size: int,
    current: int | None,
) -> list[int]:
    """Indexes of up to ``size`` servers; ``current`` None means panic mode."""
    if size <= 0:
        return []
    now = time.monotonic()

    def usable(index: int) -> bool:
        local = None if locals_ is None else locals_[index]
        return _is_usable(alt_servers, local, index, now)

    with alt_servers.lock:
        count = len(alt_servers)
        if count <= size:
            return [
                index
                for index in range(count)
                if (current is None or index == current or usable(index))
                and alt_servers[index].is_image_allowed(image_name)
            ]
        # Plenty of servers: pick randomly. 0 = untouched, 1 = potential, 2 = used
        state = [0] * count
        result: list[int] = []
        if current is not None:
            result.append(current)
            state[current] = 2
        for _ in range(size * 10):
            if len(result) >= size:
                break
            index = random.randrange(count)
            if state[index] != 0:
                continue
            if not alt_servers[index].is_image_allowed(image_name):
                state[index] = 2
            elif usable(index):
                result.append(index)
                state[index] = 2
            else:
                state[index] = 1
        if current is None:
            for _ in range(size * 10):
                if len(result) >= size:
                    break
                index = random.randrange(count)
                if state[index] == 2:
                    continue
                result.append(index)
                state[index] = 2
        return result


def host_list_for_replication(alt_servers: AltServerList, image_name: str, size: int) -> list[Host]:
    """Hosts of up to ``size`` servers an image could be replicated from."""
    indexes = _list_for_uplink(alt_servers, None, image_name, size, None)
    return [alt_servers.index_to_host(index) for index in indexes]


class UplinkAltState:
    """Per-uplink view of the alt server list."""

    def __init__(self, alt_servers: AltServerList) -> None:
        self.alt_servers = alt_servers
        self.locals = [AltLocal() for _ in range(SERVER_MAX_ALTS)]

    def is_usable(self, index: int, now: float | None = None) -> bool:
        """True if the server may be tried as uplink right now."""
        if now is None:
            now = time.monotonic()
        with self.alt_servers.lock:
            return _is_usable(self.alt_servers, self.locals[index], index, now)

    def list_for_uplink(self, image_name: str, size: int, current: int | None = None) -> list[int]:
        """Indexes of up to ``size`` candidate servers.

        ``current`` is the index of the connected server; None means the
        connection was lost, in which case unusable servers are taken too.
        """
        return _list_for_uplink(self.alt_servers, self.locals, image_name, size, current)

    def update_rtt(self, index: int, rtt: int) -> int:
        """Record an RTT measurement and return the new average."""
        local = self.locals[index]
        with self.alt_servers.lock:
            if local.init_done:
                local.rtt_index += 1
                local.rtt[local.rtt_index % SERVER_RTT_PROBES] = rtt
                avg = sum(local.rtt) // SERVER_RTT_PROBES
            else:
                local.rtt = [rtt] * SERVER_RTT_PROBES
                avg = rtt
                local.init_done = True
            server = self.alt_servers[index]
            server.rtt_index += 1
            server.rtt[server.rtt_index % SERVER_RTT_PROBES] = avg
        return avg

    def image_failed(self, index: int) -> None:
        """Count a failure to select the image on a reachable server."""
        local = self.locals[index]
        with self.alt_servers.lock:
            if local.fails >= SERVER_BAD_UPLINK_MAX:
                local.blocked = True
            local.fails += 1