# blockserve

Building blocks for a server that hands out read-only block-device images
and can replicate them from other such servers. The package is a library
with no dependencies outside the standard library and no command-line entry
point.

## Modules

### `blockserve.ini`

A small INI parser. `parse_ini_lines(lines, handler)` calls
`handler(section, name, value)` for every `name=value` or `name:value`
setting. Lines starting with `;` or `#` are comments, a `;` after
whitespace starts a trailing comment, and indented lines continue the
previous setting. Parsing goes on past malformed lines; the return value is
the number of the first malformed line (a handler returning `False` marks
its line malformed), or 0. `parse_ini(path, handler)` does the same for a
file and raises `OSError` if it cannot be opened.

### `blockserve.config`

`ServerConfig` is a dataclass holding every server setting with its default.

- `load(config_dir)` reads `server.conf` from the directory, applies the
  settings, validates them and returns `False` if another load is already
  running. Some settings (`basePath`, `vmdkLegacyMode`, `listenPort`,
  `maxClients`, `maxImages`) are only taken on the first load. In proxy mode
  a few limits are adjusted (window size, `maxPayload` at least 256 KiB,
  `maxPrefetch` and `minRequestSize` at most `maxPayload`). On the first
  load the open-file limit is raised if needed, and `maxClients` and
  `maxImages` are lowered if it cannot be. `ConfigError` is raised for a
  listen port outside 1-65535 or a log file that cannot be opened.
- `apply_ini(section, key, value)` applies a single setting; invalid
  numbers are logged and ignored.
- `dump()` returns the effective configuration in the file's own format.

Helpers: `parse_number(text, option)` accepts `K` ... `Y` (binary
multiples; followed by `B` they are decimal) and `m`, `h`, `d` (seconds);
`is_true(value)`; `parse_log_mask(value)` returning a `LogMask`.
`BackgroundReplication` is `DISABLED`, `FULL` or `HASHBLOCK`.

### `blockserve.hosts`

`parse_address(text)` turns `1.2.3.4`, `1.2.3.4:6666`, `2001:db8::1` or
`[2001:db8::1]:6666` into a frozen `Host` (port defaults to 5003) and raises
`ValueError` otherwise. `Host.to_string()`, `Host.same_address(other)` and
`Host.same_address_port(other)` do what their names say. Also
`remove_trailing_slash` and `trim_right`.

### `blockserve.fileutil`

`is_readable`, `is_writable`, `mkdir_p`, `alloc_file`, `set_size`,
`free_disk_space` (a `DiskSpace` of `total` and `available` bytes),
`last_modification`, and `iter_line_fields(path, min_fields, max_fields)`,
which yields the whitespace-separated fields of each line, the last field
taking the rest of the line.

### `blockserve.altservers`

`AltServerList(config)` is a thread-safe list of up to 50 alternative
servers (`AltServer`).

- `load(config_dir)` reads the `alt-servers` file. In INI form each section
  is a host address, with the keys `for` (`client` or `replication`),
  `comment` and `namespace` (an image-name prefix; may be repeated). If that
  yields no servers, the file is read line by line: an address, optionally
  prefixed by `-` (private, replication only) or `+` (client only), then a
  comment.
- `add(host, comment, is_private, is_client_only)` returns the index and
  whether it was new; `AltServerListFull` is raised when the list is full.
- `list_for_client(host, image_name, size)` returns public servers allowed
  for the image, closest to the client first, using
  `net_closeness(host1, host2)`.
- `image_has_alt_servers`, `server_failed`, `host_to_index`,
  `index_to_host` and `to_json()` (a list of dictionaries).

### `blockserve.uplinkselect`

`UplinkAltState(alt_servers)` keeps per-uplink health (`AltLocal`) for
every alt server: `is_usable(index)`, `list_for_uplink(image_name, size,
current)` (random choice when there are more servers than wanted; with
`current=None` unusable servers are taken too), `update_rtt(index, rtt)`
returning the new average, and `image_failed(index)`.
`host_list_for_replication(alt_servers, image_name, size)` returns hosts an
image could be copied from.

### `blockserve.crclist`

CRC-32 lists over 16 MiB hash blocks, with data padded to 4 KiB:
`hash_blocks`, `block_crc32(file, block, real_size)`, `master_crc`,
`load_crc_list(image_path, virtual_size)` reading `<image>.crc`,
`generate_crc_file(image_path)` writing it, and `check_blocks_crc32`.

### `blockserve.cachemap`

`CacheMap(virtual_size, complete=False)` keeps one bit per 4 KiB block.
`CacheMap.from_file`, `update(start, end, set_cached)` (returns whether new
blocks became cached), `is_range_cached`, `is_complete`,
`is_hash_block_complete`, `completeness()` (a rough percentage),
`intersect(other)` and `save(path)`. `map_bytes(size)` gives the map length.

### `blockserve.imagefiles`

Image files named `<base>/<name>.r<revision>`: `is_forbidden_extension`
(`.crc`, `.map`, `.meta`), `parse_image_path(base, path, vmdk_legacy)`,
`create_image(base, name, revision, size, sparse, ignore_alloc_errors)`
which creates the image and its cache map file, `load_image_meta` and
`save_image_meta` for `<image>.meta`, and `find_latest_revision(base, name)`.

## Example

```python
from blockserve.config import ServerConfig
from blockserve.hosts import parse_address
from blockserve.altservers import AltServerList

config = ServerConfig()
config.load("/etc/blockserve")
print(config.dump())

alts = AltServerList(config)
alts.load("/etc/blockserve")
client = parse_address("10.0.0.17")
for host in alts.list_for_client(client, "pool/image.qcow", 4):
    print(host)
```

## What it does not do

This package does not listen for clients, speak the network block-device
protocol or connect to other servers; RTT values and failures are recorded
only when the caller reports them. It keeps no in-memory registry of loaded
images and does not scan an image directory, clone images, free disk space
or run periodic cache-map saving on its own. There is no command to start a
server.

## Tests

```
pip install -e .[test]
pytest
```