"""Configuration, alt server lists, CRC-32 lists, cache maps and image files for a block-device image server."""

__version__ = "0.1.0"