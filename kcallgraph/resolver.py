#!/usr/bin/env python3
"""
resolver.py

Maps a virtual address in the debug-info-bearing kernel image to the source
locations DWARF has for it.

The goal is to return, for one address:
  [ResolutionRecord(file_path, line_number, function_name), ...]

An address outside any compilation unit yields an empty list. An inlined
call site yields several records: innermost frame first, the outermost
(containing) function last.

The underlying reader keeps cursor state across a lookup, so every lookup
runs under one lock for its whole duration. The reader itself is never
handed out.
"""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import List, Optional, Protocol, Sequence, Tuple

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile

from kcallgraph.addr2line_runner import Addr2LineProcess


LOG = logging.getLogger("resolver")

_LINE_SECTIONS = (".debug_line", ".zdebug_line")


class DebugInfoUnavailable(Exception):
    """The debug binary is missing, unreadable, or has no DWARF line table."""


class LineReader(Protocol):
    def lookup(self, address: int) -> Sequence[Tuple[str, str, int]]:
        ...


@dataclass(frozen=True)
class ResolutionRecord:
    file_path: str
    line_number: int
    function_name: str

    @property
    def location(self) -> str:
        return f"{self.file_path}:{self.line_number}"


def canonical_path(path: str) -> str:
    """
    Collapse "." and ".." segments and duplicate separators.

    No symlink resolution happens. posixpath keeps a leading "//" as is,
    so that case is folded explicitly.

    Example:
        "/src/linux/./arch/x86/kernel/../include/asm/irq.h"
          -> "/src/linux/arch/x86/include/asm/irq.h"
    """
    if not path:
        return path
    p = posixpath.normpath(path)
    if p.startswith("//"):
        p = "/" + p.lstrip("/")
    return p


def check_debug_binary(path: Path) -> None:
    """
    Make sure path is an ELF file carrying a DWARF line table.

    Raises DebugInfoUnavailable otherwise.
    """
    if not path.is_file():
        raise DebugInfoUnavailable(f"debug binary not found: {path}")

    try:
        with path.open("rb") as f:
            elf = ELFFile(f)
            has_lines = any(elf.get_section_by_name(name) is not None for name in _LINE_SECTIONS)
    except OSError as e:
        raise DebugInfoUnavailable(f"cannot read {path}: {e}") from e
    except ELFError as e:
        raise DebugInfoUnavailable(f"{path} is not a valid ELF file: {e}") from e

    if not has_lines:
        raise DebugInfoUnavailable(f"{path} carries no .debug_line section")


class Resolver:
    def __init__(self, reader: LineReader):
        self._reader = reader
        self._lock = Lock()
        # Set once the reader stops answering; later lookups skip it.
        self.broken: Optional[DebugInfoUnavailable] = None

    @classmethod
    def open(cls, path: Path, addr2line_bin: str = "addr2line") -> "Resolver":
        """
        Validate the debug binary and start the reader for it.
        """
        path = Path(path)
        check_debug_binary(path)
        try:
            reader = Addr2LineProcess(path, addr2line_bin=addr2line_bin)
        except OSError as e:
            raise DebugInfoUnavailable(f"cannot start {addr2line_bin} for {path}: {e}") from e
        LOG.info("Resolver ready for %s (%s)", path, addr2line_bin)
        return cls(reader)

    def lookup(self, address: int) -> List[ResolutionRecord]:
        """
        Resolve one address. Never raises; absence is an empty list.
        """
        with self._lock:
            if self.broken is not None:
                return []
            try:
                raw = list(self._reader.lookup(address))
            except (EOFError, OSError) as e:
                LOG.error("DWARF reader died while looking up %#x: %s", address, e)
                self.broken = DebugInfoUnavailable(f"DWARF reader stopped at {address:#x}: {e}")
                return []
            except Exception as e:
                LOG.error("Lookup of %#x failed: %s", address, e)
                return []

        return [
            ResolutionRecord(
                file_path=canonical_path(file_name),
                line_number=lineno,
                function_name=func,
            )
            for func, file_name, lineno in raw
        ]

    def check(self) -> None:
        """
        Raise DebugInfoUnavailable if the reader died during the run.
        """
        if self.broken is not None:
            raise self.broken

    def close(self) -> None:
        close = getattr(self._reader, "close", None)
        if close is None:
            return
        with self._lock:
            close()

    def __enter__(self) -> "Resolver":
        return self

    def __exit__(self, *exc_info) -> Optional[bool]:
        self.close()
        return None


__all__ = [
    "DebugInfoUnavailable",
    "ResolutionRecord",
    "Resolver",
    "canonical_path",
    "check_debug_binary",
]
