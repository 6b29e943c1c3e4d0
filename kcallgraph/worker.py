#!/usr/bin/env python3
"""
worker.py

Consumer side of the resolution pipeline.

Responsibilities:
  - Take Jobs off the bounded queue in FIFO order.
  - Resolve the job's address through the shared Resolver.
  - Pick the record matching the expected symbol (or the outermost one).
  - Splice "file:line" into the job's SQL template and execute it.

A single Worker thread runs for the lifetime of the process. It is a daemon
thread: pending jobs are dropped when the process exits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from queue import Queue
from threading import Lock, Thread
from typing import Any, Dict, Iterable, Optional, Tuple

from kcallgraph.resolver import ResolutionRecord, Resolver


LOG = logging.getLogger("worker")

# Substituted when the resolver knows nothing about an address.
NONE_LOCATION = "NONE"

# expected_symbol value that means "execute the template as is".
PASSTHROUGH_SYMBOL = "None"


@dataclass(frozen=True)
class Job:
    """
    One pending INSERT.

    sql_template:
        INSERT with exactly one "%s" for the resolved "file:line", or a
        complete statement when expected_symbol is PASSTHROUGH_SYMBOL.
    sink:
        Object with an execute(statement) method.
    """
    address: int
    expected_symbol: str
    sql_template: str
    sink: Any


def select_location(records: Iterable[ResolutionRecord], expected_symbol: str) -> str:
    """
    Choose the "file:line" to substitute for one address.

    The first record whose function is expected_symbol wins. Without a match
    the last record wins, which for inlined code is the outermost frame.
    No records at all gives NONE_LOCATION.
    """
    resolved = NONE_LOCATION
    for rec in records:
        resolved = rec.location
        if rec.function_name == expected_symbol:
            break
    return resolved


def format_statement(sql_template: str, resolved: str) -> str:
    return sql_template % (resolved,)


class ResolutionCache:
    """
    Advisory address -> "file:line" map filled by the Worker.

    Lookups may see a slightly stale view; nothing depends on the cache
    being complete.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: Dict[int, str] = {}

    def record(self, address: int, location: str) -> None:
        with self._lock:
            self._entries[address] = location

    def get(self, address: int) -> Tuple[bool, str]:
        with self._lock:
            location = self._entries.get(address)
        if location is None:
            return (False, "")
        return (True, location)

    def __contains__(self, address: int) -> bool:
        with self._lock:
            return address in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class Worker(Thread):
    """
    Drains a Job queue into the jobs' sinks.

    The first error (a SinkExecutionFailure or anything else raised while
    handling a job) is fatal: it is kept in self.failure and no further
    statements are executed. Jobs are still taken off the queue and dropped
    so that producers blocked on a full queue wake up and see the failure.
    """

    def __init__(
        self,
        resolver: Resolver,
        jobs: "Queue[Job]",
        cache: Optional[ResolutionCache] = None,
        name: str = "resolution-worker",
    ):
        super().__init__(name=name, daemon=True)
        self.resolver = resolver
        self.jobs = jobs
        self.cache = cache
        self.failure: Optional[BaseException] = None
        self.executed = 0
        self.discarded = 0

    def handle(self, job: Job) -> None:
        if job.expected_symbol == PASSTHROUGH_SYMBOL:
            job.sink.execute(job.sql_template)
            return

        records = self.resolver.lookup(job.address)
        resolved = select_location(records, job.expected_symbol)
        if records and self.cache is not None:
            self.cache.record(job.address, resolved)

        LOG.debug("%#x (%s) -> %s", job.address, job.expected_symbol, resolved)
        job.sink.execute(format_statement(job.sql_template, resolved))

    def run(self) -> None:
        while True:
            job = self.jobs.get()
            try:
                if self.failure is not None:
                    self.discarded += 1
                    continue
                self.handle(job)
                self.executed += 1
            except Exception as e:
                LOG.error("Fatal error while handling job for %#x: %s", job.address, e)
                self.failure = e
            finally:
                self.jobs.task_done()


__all__ = [
    "Job",
    "NONE_LOCATION",
    "PASSTHROUGH_SYMBOL",
    "ResolutionCache",
    "Worker",
    "format_statement",
    "select_location",
]
