"""Segment/trigger filter compilation.

Filters are compiled once into a predicate AST, which can then be evaluated in
memory or rendered as a SQL WHERE fragment.
"""

from .compiler import AudienceContext, SegmentCompiler, check_filter_operations, compile_filter
from .evaluation import evaluate
from .predicate import Predicate
from .sql import build_where

__all__ = [
    "AudienceContext",
    "Predicate",
    "SegmentCompiler",
    "build_where",
    "check_filter_operations",
    "compile_filter",
    "evaluate",
]
