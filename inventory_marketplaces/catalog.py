"""
Catalog lookups used to enrich marketplace payloads.

Lookups are read-only and best-effort: a miss degrades the payload (the
part number or colour id is passed through unchanged) but never blocks a
sync.
"""

from collections.abc import Mapping
from typing import Protocol, runtime_checkable


@runtime_checkable
class CatalogLookup(Protocol):
    def brickowl_id(self, part_number: str, color_id: str) -> str | None: ...

    def brickowl_color(self, color_id: str) -> int | None: ...


class NullCatalog:
    """No catalog available; every lookup misses."""

    def brickowl_id(self, part_number: str, color_id: str) -> str | None:
        return None

    def brickowl_color(self, color_id: str) -> int | None:
        return None


class StaticCatalog:
    """In-memory catalog, e.g. loaded from a reference export."""

    def __init__(
        self,
        brickowl_ids: Mapping[tuple[str, str], str] | None = None,
        brickowl_colors: Mapping[str, int] | None = None,
    ):
        self._ids = dict(brickowl_ids or {})
        self._colors = dict(brickowl_colors or {})

    def brickowl_id(self, part_number: str, color_id: str) -> str | None:
        return self._ids.get((part_number, color_id)) or self._ids.get((part_number, ""))

    def brickowl_color(self, color_id: str) -> int | None:
        return self._colors.get(color_id)
