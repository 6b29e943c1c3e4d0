#!/usr/bin/env python3
"""
dispatcher.py

Producer side of the resolution pipeline.

The symbol scanner hands every INSERT that still needs a source line to
enqueue(). Jobs go onto a bounded FIFO queue read by the single Worker; a
full queue blocks the producer. The Dispatcher never touches the DWARF
reader itself.
"""

from __future__ import annotations

import logging
from queue import Queue
from typing import Any, Optional, Tuple

from kcallgraph.resolver import Resolver
from kcallgraph.worker import Job, PASSTHROUGH_SYMBOL, ResolutionCache, Worker


LOG = logging.getLogger("dispatcher")

QUEUE_SIZE = 16

# Prefix the upstream disassembler puts in front of symbol names.
_SYM_PREFIX = "sym."


def normalize_symbol_name(name: str) -> str:
    """
    Strip the disassembler's "sym." prefix, once.

    "sym.do_sys_open" -> "do_sys_open"
    """
    if name.startswith(_SYM_PREFIX):
        return name[len(_SYM_PREFIX):]
    return name


class Dispatcher:
    """
    Owns the job queue and the Worker draining it.

    The Worker starts when the Dispatcher is created and lives until the
    process exits.
    """

    def __init__(
        self,
        resolver: Resolver,
        queue_size: int = QUEUE_SIZE,
        cache: Optional[ResolutionCache] = None,
    ):
        self.resolver = resolver
        self.jobs: "Queue[Job]" = Queue(maxsize=queue_size)
        # Opt-in: without a cache nothing is remembered between jobs.
        self.cache = cache
        self.worker = Worker(resolver, self.jobs, cache=self.cache)
        self.worker.start()
        LOG.debug("Dispatcher started with queue size %d", queue_size)

    def _check_worker(self) -> None:
        if self.worker.failure is not None:
            raise self.worker.failure

    def enqueue(self, sink: Any, address: int, expected_symbol: str, sql_template: str) -> None:
        """
        Queue one INSERT for resolution, blocking while the queue is full.

        Raises the Worker's fatal error if the run has already failed.
        """
        self._check_worker()
        if expected_symbol != PASSTHROUGH_SYMBOL:
            expected_symbol = normalize_symbol_name(expected_symbol)
        self.jobs.put(Job(address, expected_symbol, sql_template, sink))

    def execute(self, sink: Any, statement: str) -> None:
        """
        Queue a complete statement; it is executed verbatim, in order with
        the resolution jobs.
        """
        self.enqueue(sink, 0, PASSTHROUGH_SYMBOL, statement)

    def has_seen(self, address: int) -> Tuple[bool, str]:
        """
        Read-only view of the resolution cache, if one was given.
        """
        if self.cache is None:
            return (False, "")
        return self.cache.get(address)

    @property
    def pending(self) -> int:
        return self.jobs.qsize()

    def drain(self) -> None:
        """
        Wait until every queued job has been handled, then raise the
        Worker's fatal error if there was one, or DebugInfoUnavailable if
        the DWARF reader died during the batch.
        """
        self.jobs.join()
        self._check_worker()
        self.resolver.check()
        LOG.info("Pipeline drained: %d statements executed", self.worker.executed)


__all__ = [
    "Dispatcher",
    "QUEUE_SIZE",
    "normalize_symbol_name",
]
