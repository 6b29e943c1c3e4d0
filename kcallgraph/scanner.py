#!/usr/bin/env python3
"""
scanner.py

Walks the (stripped) kernel image and feeds the resolution pipeline.

  - Function symbols come from the ELF symbol tables (pyelftools).
  - Call sites come from "objdump -d": every direct call instruction inside
    a function gives (caller, calling offset, callee).

Each function becomes one symbols_files row. Each call site becomes one
xrefs row whose source_line is filled in by the Worker. Resolution is
keyed on the calling offset, with the caller as the expected symbol, so an
inlined call resolves to the line inside the caller.
"""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional

from elftools.elf.elffile import ELFFile
from elftools.elf.sections import SymbolTableSection

from kcallgraph.dispatcher import Dispatcher
from kcallgraph.queries import (
    SymbolsFilesArgs,
    XrefArgs,
    insert_files_index,
    insert_symbols_files,
    insert_symbols_index,
    insert_tags_index,
    xref_template,
)


LOG = logging.getLogger("scanner")

# x86 "call"/"callq", arm64 "bl", riscv "jal".
CALL_MNEMONICS = frozenset({"call", "callq", "bl", "jal"})

# "ffffffff81000000 <startup_64>:"
_FUNC_HEADER_RE = re.compile(r"^(?P<addr>[0-9a-f]+) <(?P<name>[^>]+)>:$")

# "ffffffff81000010:\tcall   ffffffff81001234 <foo>"
# "ffff800008010004:\tbl\tffff800008011000 <bar+0x10>"
# "ffffffff80001000:\tjal\tra,ffffffff80002000 <baz>"
_CALL_LINE_RE = re.compile(
    r"""
    ^\s*
    (?P<addr>[0-9a-f]+):\s+
    (?P<mnemonic>[a-z.]+)\s+
    (?:\w+,)?                      # riscv link register
    (?P<target>[0-9a-f]+)\s+
    <(?P<callee>[^>+]+)(?:\+0x[0-9a-f]+)?>
    """,
    re.VERBOSE,
)


@dataclass
class FunctionSymbol:
    name: str
    offset: int
    size: int
    type: str


@dataclass
class CallSite:
    caller: str
    caller_offset: int
    calling_offset: int
    callee: str
    callee_offset: int


@dataclass
class ScanStats:
    symbols: int = 0
    call_sites: int = 0


def _nm_type(bind: str) -> str:
    """nm-style letter for a function symbol binding."""
    if bind == "STB_WEAK":
        return "W"
    if bind == "STB_LOCAL":
        return "t"
    return "T"


def iter_function_symbols(elf_path: Path) -> Iterator[FunctionSymbol]:
    """
    Yield every defined function symbol from all symbol tables.
    """
    with open(elf_path, "rb") as f:
        elf = ELFFile(f)
        for section in elf.iter_sections():
            if not isinstance(section, SymbolTableSection):
                continue
            for symbol in section.iter_symbols():
                if not symbol.name:
                    continue
                if symbol["st_info"]["type"] != "STT_FUNC":
                    continue
                if symbol["st_value"] == 0 or symbol["st_shndx"] == "SHN_UNDEF":
                    continue
                yield FunctionSymbol(
                    name=symbol.name,
                    offset=symbol["st_value"],
                    size=symbol["st_size"],
                    type=_nm_type(symbol["st_info"]["bind"]),
                )


def parse_call_sites(lines: Iterator[str]) -> Iterator[CallSite]:
    """
    Extract direct call sites from objdump -d output lines.
    """
    caller: Optional[str] = None
    caller_offset = 0

    for raw in lines:
        line = raw.rstrip("\n")
        m = _FUNC_HEADER_RE.match(line)
        if m:
            caller = m.group("name")
            caller_offset = int(m.group("addr"), 16)
            continue

        if caller is None:
            continue

        m = _CALL_LINE_RE.match(line)
        if not m or m.group("mnemonic") not in CALL_MNEMONICS:
            continue

        yield CallSite(
            caller=caller,
            caller_offset=caller_offset,
            calling_offset=int(m.group("addr"), 16),
            callee=m.group("callee"),
            callee_offset=int(m.group("target"), 16),
        )


def iter_call_sites(elf_path: Path, objdump_bin: str = "objdump") -> Iterator[CallSite]:
    """
    Disassemble elf_path and yield its direct call sites as they stream in.
    """
    cmd: List[str] = [objdump_bin, "-d", "--no-show-raw-insn", str(elf_path)]
    LOG.info("Disassembling %s", elf_path)
    proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, text=True)
    try:
        yield from parse_call_sites(proc.stdout)
    finally:
        proc.stdout.close()
        returncode = proc.wait()
    if returncode != 0:
        raise subprocess.CalledProcessError(returncode, cmd)


def scan_into(
    dispatcher: Dispatcher,
    sink,
    instance_id: int,
    symbols_path: Path,
    calls_path: Path,
    objdump_bin: str = "objdump",
) -> ScanStats:
    """
    Emit the index rows, one symbols_files row per function and one xrefs
    row per call site for a single instance.

    Every call site is its own job: calling offsets are unique within an
    image, so there is nothing to reuse between them.
    """
    stats = ScanStats()

    dispatcher.execute(sink, insert_files_index(instance_id))
    dispatcher.execute(sink, insert_symbols_index(instance_id))
    dispatcher.execute(sink, insert_tags_index(instance_id))

    for sym in iter_function_symbols(symbols_path):
        dispatcher.execute(
            sink,
            insert_symbols_files(
                SymbolsFilesArgs(
                    id=instance_id,
                    symbol_name=sym.name,
                    symbol_offset=hex(sym.offset),
                    symbol_type=sym.type,
                )
            ),
        )
        stats.symbols += 1
    LOG.info("Queued %d function symbols", stats.symbols)

    for cs in iter_call_sites(calls_path, objdump_bin=objdump_bin):
        template = xref_template(
            XrefArgs(
                id=instance_id,
                caller_offset=cs.caller_offset,
                calling_offset=cs.calling_offset,
                callee_offset=cs.callee_offset,
            )
        )
        dispatcher.enqueue(sink, cs.calling_offset, cs.caller, template)
        stats.call_sites += 1
        if stats.call_sites % 10000 == 0:
            LOG.info("Queued %d call sites (%d pending)", stats.call_sites, dispatcher.pending)

    LOG.info("Queued %d call sites", stats.call_sites)
    return stats


__all__ = [
    "CallSite",
    "FunctionSymbol",
    "ScanStats",
    "iter_call_sites",
    "iter_function_symbols",
    "parse_call_sites",
    "scan_into",
]
