from __future__ import annotations

from typing import Dict, Iterable, Protocol

from .models import ItemKind
from .repository import Repository, _in_list, _placeholder


class PriceLookup(Protocol):
    def find_prices_by_ids(self, kind: ItemKind, ids: Iterable[str]) -> Dict[str, float]: ...


class CatalogRepository(Repository):
    """Read-only access to the food and drink catalogs."""

    def find_prices_by_ids(self, kind: ItemKind, ids: Iterable[str]) -> Dict[str, float]:
        unique_ids = sorted(set(ids))
        if not unique_ids:
            return {}
        with self._connection() as conn:
            placeholder = _placeholder(conn)
            rows = conn.execute(
                f"""
                SELECT id, price
                FROM {kind.catalog_table}
                WHERE id IN ({_in_list(placeholder, unique_ids)});
                """,
                unique_ids,
            ).fetchall()
        return {row["id"]: row["price"] for row in rows}
