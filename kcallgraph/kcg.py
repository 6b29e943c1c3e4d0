#!/usr/bin/env python3
"""
kcg.py

Main entry point for the kernel call-graph extractor.

Responsibilities:
  - Open the debug-info-bearing image (Resolver) and the output store (Sink)
  - Insert the instance row for this kernel build
  - Start the resolution pipeline (Dispatcher + Worker)
  - Scan the stripped image for symbols and call sites
  - Wait for the pipeline to drain
  - Provide CLI interface

Any database error or unusable debug binary ends the run with exit code 1.
The output store is meant to be rebuilt from scratch on every run.
"""

from __future__ import annotations

import argparse
import logging
import re
import subprocess
from pathlib import Path
from typing import Tuple

from kcallgraph.addr2line_runner import build_addr2line_bin
from kcallgraph.dispatcher import QUEUE_SIZE, Dispatcher
from kcallgraph.queries import InstanceArgs, insert_instance, insert_tags_prefix
from kcallgraph.resolver import DebugInfoUnavailable, Resolver
from kcallgraph.scanner import scan_into
from kcallgraph.sink import SinkExecutionFailure, open_sqlite


LOG = logging.getLogger("kcg")

_KERNEL_VERSION_RE = re.compile(r"^(?P<version>\d+)\.(?P<patchlevel>\d+)(?:\.(?P<sublevel>\d+))?(?P<extra>.*)$")


# ---------------------------------------------------------------------------
# CLI helpers
# ---------------------------------------------------------------------------

def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Kernel call-graph extractor - symbols and call sites resolved through DWARF.",
    )
    p.add_argument(
        "--vmlinux",
        default="vmlinux",
        help="Kernel image with DWARF debug info, used for address resolution (default: vmlinux).",
    )
    p.add_argument(
        "--stripped",
        default="vmlinux.work",
        help=(
            "Stripped companion image to scan for symbols and call sites "
            "(default: vmlinux.work; falls back to --vmlinux when missing)."
        ),
    )
    p.add_argument(
        "--db",
        default="kernel_bin.sqlite",
        help="SQLite file receiving the call graph (default: kernel_bin.sqlite).",
    )
    p.add_argument(
        "--kernel-version",
        default="0.0.0",
        help="Kernel version of the image, e.g. 6.1.12-rc3 (default: 0.0.0).",
    )
    p.add_argument(
        "--note",
        default="upstream",
        help="Free-form note stored with the instance (default: upstream).",
    )
    p.add_argument(
        "--addr2line-prefix",
        help="Build directory prefix of source paths, stored as a provenance tag.",
    )
    p.add_argument(
        "--addr2line",
        default="addr2line",
        help="addr2line binary (default: addr2line).",
    )
    p.add_argument(
        "--objdump",
        default="objdump",
        help="objdump binary (default: objdump).",
    )
    p.add_argument(
        "--cross-prefix",
        help="Toolchain prefix, e.g. aarch64-linux-gnu-, applied to addr2line and objdump.",
    )
    p.add_argument(
        "--queue-size",
        type=int,
        default=QUEUE_SIZE,
        help=f"Maximum number of pending resolution jobs (default: {QUEUE_SIZE}).",
    )
    p.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging.",
    )
    return p


def parse_kernel_version(text: str) -> Tuple[int, int, int, str]:
    """
    "6.1.12-rc3" -> (6, 1, 12, "-rc3"); "5.18" -> (5, 18, 0, "").
    """
    m = _KERNEL_VERSION_RE.match(text.strip())
    if not m:
        raise ValueError(f"not a kernel version: {text!r}")
    sublevel = m.group("sublevel")
    return (
        int(m.group("version")),
        int(m.group("patchlevel")),
        int(sublevel) if sublevel else 0,
        m.group("extra"),
    )


def _pick_scan_target(stripped: Path, vmlinux: Path) -> Path:
    if stripped.is_file():
        return stripped
    LOG.warning("Stripped image %s not found; scanning %s instead.", stripped, vmlinux)
    return vmlinux


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------

def run_extraction(args: argparse.Namespace) -> int:
    vmlinux = Path(args.vmlinux)
    scan_target = _pick_scan_target(Path(args.stripped), vmlinux)

    version, patchlevel, sublevel, extraversion = parse_kernel_version(args.kernel_version)

    addr2line_bin = build_addr2line_bin(args.addr2line, args.cross_prefix)
    objdump_bin = args.objdump
    if args.cross_prefix and objdump_bin == "objdump":
        objdump_bin = args.cross_prefix + objdump_bin

    resolver = Resolver.open(vmlinux, addr2line_bin=addr2line_bin)
    sink = None
    try:
        sink = open_sqlite(args.db)
        instance_id = sink.execute_returning_id(
            insert_instance(
                InstanceArgs(
                    version=version,
                    patchlevel=patchlevel,
                    sublevel=sublevel,
                    extraversion=extraversion,
                    note=args.note,
                )
            )
        )
        LOG.info("Instance %d: %s (%s)", instance_id, args.kernel_version, args.note)

        dispatcher = Dispatcher(resolver, queue_size=args.queue_size)
        if args.addr2line_prefix:
            dispatcher.execute(sink, insert_tags_prefix(args.addr2line_prefix))

        stats = scan_into(
            dispatcher,
            sink,
            instance_id,
            symbols_path=scan_target,
            calls_path=scan_target,
            objdump_bin=objdump_bin,
        )
        dispatcher.drain()
    finally:
        resolver.close()
        if sink is not None:
            sink.close()

    LOG.info(
        "Done: %d symbols, %d call sites written to %s",
        stats.symbols,
        stats.call_sites,
        args.db,
    )
    return instance_id


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> None:
    args = build_argparser().parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(message)s",
    )

    if args.queue_size < 1:
        LOG.error("--queue-size must be at least 1")
        raise SystemExit(1)

    try:
        run_extraction(args)
    except DebugInfoUnavailable as e:
        LOG.error("Debug info unavailable: %s", e)
        raise SystemExit(1)
    except SinkExecutionFailure as e:
        LOG.error("Database error, aborting run: %s", e.cause)
        raise SystemExit(1)
    except (ValueError, OSError, subprocess.CalledProcessError) as e:
        LOG.error("%s", e)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
