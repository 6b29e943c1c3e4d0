#!/usr/bin/env python3
"""
addr2line_runner.py

Persistent addr2line reader used by the Resolver.

This module provides:

  - Addr2LineProcess: a long-lived "addr2line -f -i -a" child process that
    answers one address at a time through its stdin/stdout pipes.
  - parse_location(): split a "file:line (discriminator N)" string.
  - build_addr2line_bin(): pick the addr2line binary for a cross toolchain.

Loading the DWARF of a kernel image takes seconds, so the process is started
once per run and kept open. The pipe pair is shared cursor state: a query is
a write followed by a read of a variable number of lines, and two interleaved
queries would read each other's answers. Callers must serialize lookup().
"""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path
from typing import List, Optional, Tuple

LOG = logging.getLogger("addr2line_runner")


# With "-a" addr2line echoes every input address before its frames. A query
# sends the real address followed by this one; the echo of the sentinel marks
# the end of the real address' frame group.
_SENTINEL_ADDR = 0

_ADDR_RE = re.compile(r"^0x[0-9a-fA-F]+$")

# "path/to/file.c:123", "file.c:?", "file.c:41 (discriminator 6)"
_LOCATION_RE = re.compile(r"^(?P<file>.*):(?P<line>\d+|\?)(?:\s+\(discriminator \d+\))?$")

UNKNOWN = "??"


def _normalize_addr(addr: str) -> str:
    """
    Normalize an address string so that "0x00001000" and "1000" can be matched.

    The format is "0x" + lowercase hex without leading zeros (except "0").
    """
    s = addr.strip()
    if not s:
        return ""
    if not s.startswith("0x") and not s.startswith("0X"):
        s = "0x" + s
    else:
        s = "0x" + s[2:]
    body = s[2:].lstrip("0")
    if not body:
        body = "0"
    return "0x" + body.lower()


def parse_location(loc: str) -> Tuple[str, int]:
    """
    Split an addr2line location line into (file, line).

    Unknown line numbers ("?") become 0. Lines that do not look like a
    location at all are returned as (UNKNOWN, 0).
    """
    m = _LOCATION_RE.match(loc.strip())
    if not m:
        return (UNKNOWN, 0)
    line = m.group("line")
    return (m.group("file"), 0 if line == "?" else int(line))


def build_addr2line_bin(base_bin: str, cross_prefix: Optional[str]) -> str:
    """
    Return the addr2line binary name, e.g. "aarch64-linux-gnu-addr2line".

    An explicit path in base_bin always wins over the cross prefix.
    """
    if cross_prefix and base_bin == "addr2line":
        return cross_prefix + base_bin
    return base_bin


class Addr2LineProcess:
    """
    A single addr2line child process bound to one binary.

    lookup() returns a list of (function, file, line) tuples for an address,
    innermost inline frame first and the outermost (containing) function
    last, which is the order addr2line prints with "-i".
    """

    def __init__(self, binary: Path, addr2line_bin: str = "addr2line"):
        self.binary = binary
        self.addr2line_bin = addr2line_bin
        cmd = [self.addr2line_bin, "-f", "-i", "-a", "-e", str(binary)]
        LOG.debug("Starting %s", " ".join(cmd))
        self.proc = subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            bufsize=1,
        )

    def _readline(self) -> str:
        line = self.proc.stdout.readline()
        if not line:
            raise EOFError(f"{self.addr2line_bin} exited while reading {self.binary}")
        return line.rstrip("\n")

    def lookup(self, address: int) -> List[Tuple[str, str, int]]:
        self.proc.stdin.write(f"{address:#x}\n{_SENTINEL_ADDR:#x}\n")
        self.proc.stdin.flush()

        # Echo of the queried address.
        self._readline()

        frames: List[Tuple[str, str, int]] = []
        sentinel = _normalize_addr(hex(_SENTINEL_ADDR))
        while True:
            line = self._readline().strip()
            if _ADDR_RE.match(line) and _normalize_addr(line) == sentinel:
                # The sentinel's own "??" / "??:0" pair.
                self._readline()
                self._readline()
                break

            func = line if line else UNKNOWN
            file_name, lineno = parse_location(self._readline())
            if file_name == UNKNOWN:
                continue
            frames.append((func, file_name, lineno))

        return frames

    def close(self) -> None:
        if self.proc.poll() is not None:
            return
        try:
            self.proc.stdin.close()
        except OSError:
            pass
        try:
            self.proc.wait(timeout=2)
        except subprocess.TimeoutExpired:
            self.proc.kill()
            self.proc.wait()


__all__ = [
    "Addr2LineProcess",
    "build_addr2line_bin",
    "parse_location",
]
