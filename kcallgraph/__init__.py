"""
kcallgraph - call graph extraction for kernel images.

Symbols and direct call sites of a kernel image are written to a relational
store, with the source line of every call site resolved through DWARF.
"""

__version__ = "0.1.0"
