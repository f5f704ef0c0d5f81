"""Collectors of CPU, memory, disk, network, host and OS feature statistics recorded as labelled in-memory metrics."""

__version__ = "0.1.0"