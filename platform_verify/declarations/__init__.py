"""Check declarations: YAML schema and loader."""

from __future__ import annotations

from platform_verify.declarations.loader import (
    Declarations,
    load_declarations,
    parse_declarations,
    to_checks,
)
from platform_verify.declarations.schema import DeclarationsDocument

__all__ = [
    "Declarations",
    "DeclarationsDocument",
    "load_declarations",
    "parse_declarations",
    "to_checks",
]
