# Overview: Service-layer unit conversion; resolves multipliers between units
# over the directed graph of declared conversion edges.

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from decimal import Decimal

from ..extensions import db
from ..models import UnitConversion


@dataclass(frozen=True)
class MissingConversion:
    """No conversion path between two units (or a unit is unknown)."""
    from_unit_id: int | None
    to_unit_id: int | None

    def __bool__(self) -> bool:
        return False


class UnitConversionResolver:
    """
    Immutable snapshot of the conversion graph.

    Build one per batch with load(); edge edits made after that are picked
    up by the next batch, never in the middle of one.

    Edges are directed (1 from == multiplier to). When only the opposite
    direction of a pair is declared, the reciprocal is used for the missing
    direction. Declared edges always win over derived ones.
    """

    def __init__(self, edges):
        graph: dict[int, dict[int, Decimal]] = {}
        declared = set()
        for from_id, to_id, multiplier in edges:
            if from_id is None or to_id is None or multiplier is None:
                continue
            multiplier = Decimal(str(multiplier))
            if multiplier == 0:
                continue
            graph.setdefault(from_id, {})[to_id] = multiplier
            declared.add((from_id, to_id))

        for from_id, to_id in list(declared):
            if (to_id, from_id) in declared:
                continue
            graph.setdefault(to_id, {})[from_id] = Decimal(1) / graph[from_id][to_id]

        self._graph = graph
        self._cache: dict[tuple[int, int], Decimal | None] = {}

    @classmethod
    def load(cls) -> "UnitConversionResolver":
        rows = db.session.query(
            UnitConversion.from_unit_id,
            UnitConversion.to_unit_id,
            UnitConversion.multiplier,
        ).all()
        return cls(rows)

    def resolve(self, from_unit_id: int | None, to_unit_id: int | None) -> Decimal | MissingConversion:
        """
        Multiplier turning a quantity in from_unit into to_unit.

        Breadth-first search, so the path with the fewest hops wins. Never
        raises: an unknown unit or a missing path returns MissingConversion.
        """
        if from_unit_id is None or to_unit_id is None:
            return MissingConversion(from_unit_id, to_unit_id)
        if from_unit_id == to_unit_id:
            return Decimal(1)

        key = (from_unit_id, to_unit_id)
        if key not in self._cache:
            self._cache[key] = self._search(from_unit_id, to_unit_id)
        found = self._cache[key]
        if found is None:
            return MissingConversion(from_unit_id, to_unit_id)
        return found

    def _search(self, start: int, goal: int) -> Decimal | None:
        visited = {start}
        queue = deque([(start, Decimal(1))])
        while queue:
            node, factor = queue.popleft()
            for nxt, multiplier in self._graph.get(node, {}).items():
                if nxt in visited:
                    continue
                product = factor * multiplier
                if nxt == goal:
                    return product
                visited.add(nxt)
                queue.append((nxt, product))
        return None

    def convert(self, quantity, from_unit_id: int | None, to_unit_id: int | None) -> Decimal | None:
        multiplier = self.resolve(from_unit_id, to_unit_id)
        if isinstance(multiplier, MissingConversion):
            return None
        return Decimal(str(quantity)) * multiplier


def resolve(from_unit_id: int | None, to_unit_id: int | None) -> Decimal | MissingConversion:
    """One-off lookup against the current edge set."""
    return UnitConversionResolver.load().resolve(from_unit_id, to_unit_id)
