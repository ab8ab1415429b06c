"""Job-scoped translation table from source to duplicated identifiers."""

from __future__ import annotations

from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from hierarchy_service.logic.errors import IntegrityError


class IdentifierMap:
    """Maps ``(kind, source_id) -> new_id`` for one duplication run.

    Recording the same source node twice means the source graph revisits a
    node (a cycle), which is reported as an IntegrityError.
    """

    def __init__(self) -> None:
        self._map: Dict[Tuple[str, int], int] = {}

    def __len__(self) -> int:
        return len(self._map)

    def __contains__(self, key: Tuple[str, int]) -> bool:
        return (key[0], int(key[1])) in self._map

    def __iter__(self) -> Iterator[Tuple[str, int]]:
        return iter(self._map)

    def record(self, kind: str, source_id: int, new_id: int) -> None:
        key = (kind, int(source_id))
        if key in self._map:
            raise IntegrityError(
                f"{kind} {source_id} reached twice while copying",
                code="cyclic_hierarchy",
                kind=kind,
                source_id=source_id,
            )
        self._map[key] = int(new_id)

    def record_batch(self, kind: str, source_ids: Sequence[int], new_ids: Sequence[int]) -> None:
        if len(source_ids) != len(new_ids):
            raise IntegrityError(
                f"inserted {len(new_ids)} {kind} rows for {len(source_ids)} sources",
                code="identifier_count_mismatch",
                kind=kind,
            )
        for src, new in zip(source_ids, new_ids):
            self.record(kind, src, new)

    def get(self, kind: str, source_id: int) -> Optional[int]:
        return self._map.get((kind, int(source_id)))

    def require(self, kind: str, source_id: int) -> int:
        new_id = self.get(kind, source_id)
        if new_id is None:
            raise IntegrityError(
                f"{kind} {source_id} has no copy",
                code="identifier_unmapped",
                kind=kind,
                source_id=source_id,
            )
        return new_id

    def count(self, kind: Optional[str] = None) -> int:
        if kind is None:
            return len(self._map)
        return sum(1 for k, _ in self._map if k == kind)

    def pairs(self, kind: str) -> List[Tuple[int, int]]:
        return [(src, new) for (k, src), new in self._map.items() if k == kind]


__all__ = ["IdentifierMap"]
