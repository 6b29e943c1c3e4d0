#!/usr/bin/env python3
"""
queries.py

Builders for the INSERT statements the pipeline sends to the Sink.

Two kinds of output:
  - complete statements, executed verbatim (passthrough jobs);
  - xref templates, which keep exactly one "%s" for the source line the
    Worker fills in. Every other "%" in a template is escaped.

Table and column names are the wire format with the database.
"""

from __future__ import annotations

from dataclasses import dataclass


def sql_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _escape_percent(statement: str) -> str:
    return statement.replace("%", "%%")


@dataclass
class InstanceArgs:
    version: int
    patchlevel: int
    sublevel: int
    extraversion: str
    note: str


@dataclass
class ConfigArgs:
    config_key: str
    config_val: str
    instance_id: int


@dataclass
class SymbolsFilesArgs:
    id: int
    symbol_name: str
    symbol_offset: str
    symbol_type: str


@dataclass
class XrefArgs:
    id: int
    caller_offset: int
    calling_offset: int
    callee_offset: int


def insert_instance(args: InstanceArgs) -> str:
    """Statement for Sink.execute_returning_id(); yields the instance id."""
    return (
        "INSERT INTO instances (version, patchlevel, sublevel, extraversion, note) "
        f"VALUES ({args.version}, {args.patchlevel}, {args.sublevel}, "
        f"{sql_quote(args.extraversion)}, {sql_quote(args.note)});"
    )


def insert_config(args: ConfigArgs) -> str:
    """
    One configs row. Reading a .config is out of scope for kcg; this only
    fixes the row format for whatever tool loads Kconfig values.
    """
    return (
        "INSERT INTO configs (config_key, config_val, instance_id) "
        f"VALUES ({sql_quote(args.config_key)}, {sql_quote(args.config_val)}, {args.instance_id});"
    )


def insert_files_index(instance_id: int) -> str:
    return f"INSERT INTO files (id) VALUES ({instance_id});"


def insert_symbols_index(instance_id: int) -> str:
    return f"INSERT INTO symbols (id) VALUES ({instance_id});"


def insert_tags_index(instance_id: int) -> str:
    return f"INSERT INTO tags (id) VALUES ({instance_id});"


def insert_tags_prefix(addr2line_prefix: str) -> str:
    return f"INSERT INTO tags (addr2line_prefix) VALUES ({sql_quote(addr2line_prefix)});"


def insert_symbols_files(args: SymbolsFilesArgs) -> str:
    return (
        "INSERT INTO symbols_files (id, symbol_name, symbol_offset, symbol_type) "
        f"VALUES ({args.id}, {sql_quote(args.symbol_name)}, "
        f"{sql_quote(args.symbol_offset)}, {sql_quote(args.symbol_type)});"
    )


def xref_template(args: XrefArgs) -> str:
    """
    Xref INSERT with the source line left as the single "%s" placeholder.

    Offsets are written as hex text: kernel addresses do not fit a signed
    64-bit column.
    """
    head = _escape_percent(
        "INSERT INTO xrefs (id, caller_offset, calling_offset, callee_offset, source_line) "
        f"VALUES ({args.id}, {sql_quote(hex(args.caller_offset))}, "
        f"{sql_quote(hex(args.calling_offset))}, {sql_quote(hex(args.callee_offset))}, "
    )
    return head + "'%s');"


__all__ = [
    "ConfigArgs",
    "InstanceArgs",
    "SymbolsFilesArgs",
    "XrefArgs",
    "insert_config",
    "insert_files_index",
    "insert_instance",
    "insert_symbols_files",
    "insert_symbols_index",
    "insert_tags_index",
    "insert_tags_prefix",
    "sql_quote",
    "xref_template",
]
