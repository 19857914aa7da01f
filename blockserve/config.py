"""Server configuration: defaults, parsing of ``server.conf`` and dumping."""

from __future__ import annotations

import enum
import logging
import os
import re
import threading
from dataclasses import dataclass, field

from .ini import parse_ini

try:
    import resource
except ImportError:  # pragma: no cover - not available on every platform
    resource = None

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "server.conf"
PORT = 5003
SOCKET_TIMEOUT_UPLINK = 5
SOCKET_TIMEOUT_CLIENT = 15
SERVER_MAX_CLIENTS = 4000
SERVER_MAX_IMAGES = 5000
UPLINK_MAX_QUEUE = 500

INT_MIN = -(2**31)
INT_MAX = 2**31 - 1
_LLONG_MIN = -(2**63)
_LLONG_MAX = 2**63 - 1
_UINT64_MAX = 2**64 - 1

_UNITS = "KMGTPEZY"
_LEADING_INT = re.compile(r"[ \t\n\v\f\r]*([+-]?[0-9]+)")


class ConfigError(Exception):
    """Raised for configuration values the server cannot run with."""


class BackgroundReplication(enum.IntEnum):
    DISABLED = 0
    FULL = 1
    HASHBLOCK = 2


class LogMask(enum.IntFlag):
    ERROR = 1
    WARNING = 2
    MINOR = 4
    INFO = 8
    DEBUG1 = 16
    DEBUG2 = 32


def _leading_int(text: str) -> tuple[int, int] | None:
    match = _LEADING_INT.match(text)
    if match is None:
        return None
    return int(match.group(1)), match.end()


def is_true(value: str) -> bool:
    """True if ``value`` starts with a non-zero integer or spells true."""
    parsed = _leading_int(value)
    if parsed is not None and parsed[0] != 0:
        return True
    return value in ("true", "True", "TRUE")


def parse_number(text: str, option: str) -> int:
    """Parse an integer with an optional unit suffix.

    ``m``, ``h`` and ``d`` are minutes, hours and days (result in seconds);
    ``K`` through ``Y`` are binary multiples, or decimal ones when followed
    by ``B``. Raises :class:`ValueError` for empty or malformed input.
    """
    if not text:
        raise ValueError(f"empty numeric setting '{option}'")
    parsed = _leading_int(text)
    if parsed is None:
        raise ValueError(f"value '{text}' for '{option}' is not a number")
    number, pos = parsed
    number = max(_LLONG_MIN, min(_LLONG_MAX, number))
    rest = text[pos:].lstrip(" ")
    base = 1024
    if not rest:
        exponent = 0
    elif rest[0] == "m":
        exponent, base = 1, 60
    elif rest[0] == "h":
        exponent, base = 1, 3600
    elif rest[0] == "d":
        exponent, base = 1, 24 * 3600
    else:
        unit = rest[0]
        if unit > "Z":
            unit = chr(ord(unit) - 32)
        index = _UNITS.find(unit)
        if index < 0:
            raise ValueError(f"invalid unit '{rest}' for '{option}'")
        exponent = index + 1
        if rest[1:2] in ("B", "b"):
            base = 1000
    return number * base**exponent


def _parse_bounded(text: str, option: str, low: int, high: int) -> int:
    value = parse_number(text, option)
    if not low <= value <= high:
        raise ValueError(f"'{option}' must be between {low} and {high}, but is '{text}'")
    return value


def parse_log_mask(value: str) -> LogMask:
    """Build a log mask from every level name contained in ``value``."""
    mask = LogMask(0)
    for level in LogMask:
        if level.name in value:
            mask |= level
    return mask


_SETTINGS: dict[tuple[str, str], tuple[str, str]] = {
    ("dnbd3", "basePath"): ("base_path", "str"),
    ("dnbd3", "vmdkLegacyMode"): ("vmdk_legacy_mode", "bool"),
    ("dnbd3", "listenPort"): ("listen_port", "int"),
    ("limits", "maxClients"): ("max_clients", "int"),
    ("limits", "maxImages"): ("max_images", "int"),
    ("dnbd3", "isProxy"): ("is_proxy", "bool"),
    ("dnbd3", "proxyPrivateOnly"): ("proxy_private_only", "bool"),
    ("dnbd3", "bgrMinClients"): ("bgr_min_clients", "int"),
    ("dnbd3", "bgrWindowSize"): ("bgr_window_size", "int"),
    ("dnbd3", "lookupMissingForProxy"): ("lookup_missing_for_proxy", "bool"),
    ("dnbd3", "sparseFiles"): ("sparse_files", "bool"),
    ("dnbd3", "ignoreAllocErrors"): ("ignore_alloc_errors", "bool"),
    ("dnbd3", "removeMissingImages"): ("remove_missing_images", "bool"),
    ("dnbd3", "closeUnusedFd"): ("close_unused_fd", "bool"),
    ("dnbd3", "serverPenalty"): ("server_penalty", "int"),
    ("dnbd3", "clientPenalty"): ("client_penalty", "int"),
    ("dnbd3", "uplinkTimeout"): ("uplink_timeout", "uint"),
    ("dnbd3", "clientTimeout"): ("client_timeout", "uint"),
    ("limits", "maxPayload"): ("max_payload", "uint"),
    ("limits", "maxReplicationSize"): ("max_replication_size", "uint64"),
    ("limits", "maxPrefetch"): ("max_prefetch", "uint"),
    ("limits", "minRequestSize"): ("min_request_size", "uint"),
    ("dnbd3", "pretendClient"): ("pretend_client", "bool"),
    ("dnbd3", "autoFreeDiskSpaceDelay"): ("auto_free_disk_space_delay", "int"),
}

_INITIAL_ONLY = {
    ("dnbd3", "basePath"),
    ("dnbd3", "vmdkLegacyMode"),
    ("dnbd3", "listenPort"),
    ("limits", "maxClients"),
    ("limits", "maxImages"),
}


def _convert(kind: str, value: str, option: str) -> object:
    if kind == "str":
        return value
    if kind == "bool":
        return is_true(value)
    if kind == "int":
        return _parse_bounded(value, option, INT_MIN, INT_MAX)
    if kind == "uint":
        return _parse_bounded(value, option, 0, INT_MAX)
    return _parse_bounded(value, option, 0, _UINT64_MAX)


@dataclass
class ServerConfig:
    """All tunables of the server, with their defaults."""

    config_dir: str | None = None
    listen_port: int = PORT
    base_path: str | None = None
    server_penalty: int = 0
    client_penalty: int = 0
    is_proxy: bool = False
    background_replication: BackgroundReplication = BackgroundReplication.FULL
    bgr_min_clients: int = 0
    bgr_window_size: int = 1
    lookup_missing_for_proxy: bool = True
    sparse_files: bool = False
    ignore_alloc_errors: bool = False
    remove_missing_images: bool = True
    uplink_timeout: int = SOCKET_TIMEOUT_UPLINK
    client_timeout: int = SOCKET_TIMEOUT_CLIENT
    close_unused_fd: bool = False
    vmdk_legacy_mode: bool = False
    proxy_private_only: bool = False
    pretend_client: bool = False
    auto_free_disk_space_delay: int = 3600 * 10
    max_clients: int = SERVER_MAX_CLIENTS
    max_images: int = SERVER_MAX_IMAGES
    max_payload: int = 9000000
    max_replication_size: int = 100000000000
    max_prefetch: int = 262144
    min_request_size: int = 0
    file_mask: LogMask | None = None
    console_mask: LogMask | None = None
    console_timestamps: bool | None = None
    log_file: str | None = None
    _initial_load: bool = field(default=True, init=False, repr=False, compare=False)
    _load_lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def apply_ini(self, section: str, key: str, value: str) -> bool:
        """Apply one setting from the configuration file."""
        spec = _SETTINGS.get((section, key))
        if spec is not None:
            attr, kind = spec
            if (section, key) in _INITIAL_ONLY and not self._initial_load:
                return True
            if attr == "base_path" and self.base_path is not None:
                return True
            try:
                converted = _convert(kind, value, key)
            except ValueError as exc:
                logger.warning("Ignoring setting %s.%s: %s", section, key, exc)
                return True
            setattr(self, attr, converted)
        elif section == "dnbd3" and key == "backgroundReplication":
            if value == "hashblock":
                self.background_replication = BackgroundReplication.HASHBLOCK
            elif is_true(value):
                self.background_replication = BackgroundReplication.FULL
            else:
                self.background_replication = BackgroundReplication.DISABLED
        elif section == "logging":
            if key == "fileMask":
                self.file_mask = parse_log_mask(value)
            elif key == "consoleMask":
                self.console_mask = parse_log_mask(value)
            elif key == "consoleTimestamps":
                self.console_timestamps = is_true(value)
            elif key == "file":
                try:
                    with open(value, "a", encoding="utf-8"):
                        pass
                except OSError as exc:
                    raise ConfigError(f"Could not open log file {value}") from exc
                self.log_file = value
                logger.info("Opened log file %s", value)
        return True

    def load(self, config_dir: str) -> bool:
        """Load ``server.conf`` from ``config_dir``.

        Returns False if another load is already running.
        """
        self.config_dir = config_dir
        if not self._load_lock.acquire(blocking=False):
            logger.info("Ignoring config reload request due to already running reload")
            return False
        try:
            name = os.path.join(config_dir, CONFIG_FILENAME)
            try:
                error = parse_ini(name, self.apply_ini)
            except OSError as exc:
                logger.warning("Could not read %s: %s", name, exc)
            else:
                if error:
                    logger.warning("Malformed line %d in %s", error, name)
            if self._initial_load:
                self._sanitize_fixed()
            if self.is_proxy:
                self._sanitize_proxy()
            logger.debug("Effective configuration:\n%s", self.dump())
            self._initial_load = False
        finally:
            self._load_lock.release()
        return True

    def _sanitize_proxy(self) -> None:
        if (
            self.background_replication == BackgroundReplication.FULL
            and self.sparse_files
            and self.bgr_min_clients < 5
        ):
            logger.warning(
                "Ignoring 'sparseFiles=true' since backgroundReplication is set to true"
                " and bgrMinClients is too low"
            )
            self.sparse_files = False
        if self.bgr_window_size < 1:
            self.bgr_window_size = 1
        elif self.bgr_window_size > UPLINK_MAX_QUEUE - 10:
            self.bgr_window_size = UPLINK_MAX_QUEUE - 10
            logger.info(
                "Limiting bgrWindowSize to %d, because of UPLINK_MAX_QUEUE",
                self.bgr_window_size,
            )
        if self.max_payload < 256 * 1024:
            logger.warning("maxPayload was increased to 256k")
            self.max_payload = 256 * 1024
        if self.max_prefetch > self.max_payload:
            logger.warning("Reducing maxPrefetch to maxPayload")
            self.max_prefetch = self.max_payload
        if self.min_request_size > self.max_payload:
            logger.warning("Reducing minRequestSize to maxPayload")
            self.min_request_size = self.max_payload

    def _sanitize_fixed(self) -> None:
        if not self.base_path:
            logger.warning("No/empty basePath in %s", CONFIG_FILENAME)
            self.base_path = None
        elif not self.base_path.startswith("/"):
            logger.warning("basePath must be absolute!")
            self.base_path = None
        else:
            self.base_path = self.base_path.rstrip("/")
        if not 1 <= self.listen_port <= 65535:
            raise ConfigError(f"listenPort must be 1-65535, but is {self.listen_port}")
        self.max_clients = min(self.max_clients, SERVER_MAX_CLIENTS)
        self.max_images = min(self.max_images, SERVER_MAX_IMAGES)
        self._fit_file_limit()

    def _required_fds(self) -> int:
        return self.max_clients + self.max_images * (2 if self.is_proxy else 1) + 50

    def _fit_file_limit(self) -> None:
        if resource is None:
            return
        try:
            soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
        except (OSError, ValueError) as exc:
            logger.debug("getrlimit failed: %s", exc)
            return
        infinity = resource.RLIM_INFINITY
        required = self._required_fds()
        if soft == infinity or soft >= required:
            return
        current = soft
        target = required if (hard == infinity or required <= hard) else hard
        if target != current:
            try:
                resource.setrlimit(resource.RLIMIT_NOFILE, (target, hard))
            except (OSError, ValueError):
                pass
            else:
                current = target
                logger.info("LIMIT_NOFILE (ulimit -n) soft limit increased to %d", current)
        if current >= required:
            return
        logger.warning(
            "This process can only have %d open file handles, which is not enough for"
            " the selected maxClients and maxImages counts. Consider increasing the"
            " limit to at least %d (RLIMIT_NOFILE, ulimit -n) to support the current"
            " configuration. maxClients and maxImages have been lowered for this session.",
            current,
            required,
        )
        while True:
            if self.max_clients > 500 and self.max_images > 150:
                self.max_images -= self.max_images // 20 + 1
                self.max_clients -= self.max_clients // 20 + 1
            elif self.max_images > 100:
                self.max_images -= self.max_images // 20 + 1
                if self.max_clients > 200:
                    self.max_clients -= self.max_clients // 25 + 1
            else:
                break
            if self._required_fds() <= current:
                break

    def dump(self) -> str:
        """Render the effective configuration in the file's own format."""

        def flag(value: bool) -> str:
            return "true" if value else "false"

        if self.background_replication == BackgroundReplication.HASHBLOCK:
            bgr = "hashblock"
        else:
            bgr = flag(bool(self.background_replication))
        base_path = self.base_path if self.base_path is not None else "(null)"
        lines = [
            "[dnbd3]",
            f"listenPort={self.listen_port}",
            f"basePath={base_path}",
            f"serverPenalty={self.server_penalty}",
            f"clientPenalty={self.client_penalty}",
            f"isProxy={flag(self.is_proxy)}",
            f"backgroundReplication={bgr}",
            f"bgrMinClients={self.bgr_min_clients}",
            f"bgrWindowSize={self.bgr_window_size}",
            f"lookupMissingForProxy={flag(self.lookup_missing_for_proxy)}",
            f"sparseFiles={flag(self.sparse_files)}",
            f"ignoreAllocErrors={flag(self.ignore_alloc_errors)}",
            f"removeMissingImages={flag(self.remove_missing_images)}",
            f"uplinkTimeout={self.uplink_timeout}",
            f"clientTimeout={self.client_timeout}",
            f"closeUnusedFd={flag(self.close_unused_fd)}",
            f"vmdkLegacyMode={flag(self.vmdk_legacy_mode)}",
            f"proxyPrivateOnly={flag(self.proxy_private_only)}",
            f"pretendClient={flag(self.pretend_client)}",
            f"autoFreeDiskSpaceDelay={self.auto_free_disk_space_delay}",
            "[limits]",
            f"maxClients={self.max_clients}",
            f"maxImages={self.max_images}",
            f"maxPayload={self.max_payload}",
            f"maxReplicationSize={self.max_replication_size}",
            f"maxPrefetch={self.max_prefetch}",
            f"minRequestSize={self.min_request_size}",
        ]
        return "\n".join(lines) + "\n"