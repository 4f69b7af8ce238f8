"""Temporary storage for units before they are declared legit."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from dagorder.signed import Signed, UncheckedSigned
from dagorder.units import FullUnit, UnitCoord

logger = logging.getLogger(__name__)


class UnitStore:
    """Holds signed units by coordinate and by hash, tracks forkers and legit units."""

    def __init__(self, n_nodes: int, max_round: int) -> None:
        self._by_coord: Dict[UnitCoord, Signed] = {}
        self._by_hash: Dict[bytes, Signed] = {}
        self._parents: Dict[bytes, List[bytes]] = {}
        self._is_forker = [False] * n_nodes
        self._legit_buffer: List[Signed] = []
        self._max_round = max_round

    def unit_by_coord(self, coord: UnitCoord) -> Optional[Signed]:
        return self._by_coord.get(coord)

    def unit_by_hash(self, unit_hash: bytes) -> Optional[Signed]:
        return self._by_hash.get(unit_hash)

    def contains_hash(self, unit_hash: bytes) -> bool:
        return unit_hash in self._by_hash

    def contains_coord(self, coord: UnitCoord) -> bool:
        return coord in self._by_coord

    def newest_unit(self, index: int) -> Optional[UncheckedSigned]:
        """The highest-round unit created by ``index``, if any."""
        candidates = [su for su in self._by_coord.values() if su.signable.creator == index]
        if not candidates:
            return None
        return max(candidates, key=lambda su: su.signable.round).into_unchecked()

    def yield_buffer_units(self) -> List[Signed]:
        """Return the new legit units and empty the buffer."""
        units, self._legit_buffer = self._legit_buffer, []
        return units

    def is_new_fork(self, full_unit: FullUnit) -> Optional[Signed]:
        """Return the stored unit forming a new fork with ``full_unit``, if any."""
        if self.contains_hash(full_unit.hash()):
            return None
        return self.unit_by_coord(full_unit.coord)

    def is_forker(self, node_id: int) -> bool:
        return self._is_forker[node_id]

    def mark_forker(self, forker: int) -> List[Signed]:
        """Mark ``forker`` and return its stored units ordered by increasing round."""
        if self._is_forker[forker]:
            logger.warning(
                "Trying to mark the node %s as forker for the second time.", forker
            )
        self._is_forker[forker] = True
        units = [
            su
            for coord, su in self._by_coord.items()
            if coord.creator == forker and coord.round <= self._max_round
        ]
        return sorted(units, key=lambda su: su.signable.round)

    def add_unit(self, signed_unit: Signed, alert: bool = False) -> None:
        """Store a unit; units from alerts require their creator to be a marked forker."""
        full_unit = signed_unit.signable
        unit_hash = full_unit.hash()
        creator = full_unit.creator
        if alert and not self._is_forker[creator]:
            raise ValueError("The forker must be marked before adding alerted units.")
        if self.contains_hash(unit_hash):
            logger.debug("A unit ignored as a duplicate %r.", full_unit)
            return
        self._by_hash[unit_hash] = signed_unit
        self._by_coord[full_unit.coord] = signed_unit
        if alert or not self._is_forker[creator]:
            self._legit_buffer.append(signed_unit)

    def add_parents(self, unit_hash: bytes, parents: List[bytes]) -> None:
        self._parents[unit_hash] = list(parents)

    def get_parents(self, unit_hash: bytes) -> Optional[List[bytes]]:
        return self._parents.get(unit_hash)

    def limit_per_node(self) -> int:
        return self._max_round