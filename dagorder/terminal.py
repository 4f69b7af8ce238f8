"""Placing received units into the local DAG once all their parents are there."""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Tuple

from dagorder.notifications import (
    AddedToDag,
    MissingUnits,
    NewUnits,
    NotificationIn,
    NotificationOut,
    UnitParents,
    WrongControlHash,
)
from dagorder.units import ControlHash, Hasher, Unit, UnitCoord, hash64

logger = logging.getLogger(__name__)


class UnitStatus(enum.Enum):
    """Stage of a unit in the terminal pipeline."""

    RECONSTRUCTING_PARENTS = "reconstructing_parents"
    WRONG_CONTROL_HASH = "wrong_control_hash"
    WAITING_PARENTS_IN_DAG = "waiting_parents_in_dag"
    IN_DAG = "in_dag"


@dataclass
class TerminalUnit:
    """A unit with what is known so far about its parents and its progress."""

    unit: Unit
    parents: List[Optional[bytes]]
    n_miss_par_decoded: int
    n_miss_par_dag: int
    status: UnitStatus = UnitStatus.RECONSTRUCTING_PARENTS

    @classmethod
    def blank_from_unit(cls, unit: Unit) -> "TerminalUnit":
        """A unit with no parents reconstructed yet."""
        control_hash = unit.control_hash
        n_parents = control_hash.n_parents()
        return cls(
            unit=unit,
            parents=[None] * control_hash.n_members(),
            n_miss_par_decoded=n_parents,
            n_miss_par_dag=n_parents,
        )

    def verify_control_hash(self, hasher: Hasher = hash64) -> bool:
        """Check the reconstructed parents against the unit's control hash."""
        combined = ControlHash.combine_hashes(self.parents, hasher)
        return self.unit.control_hash.combined_hash == combined

    def parent_hashes(self) -> Tuple[bytes, ...]:
        return tuple(p for p in self.parents if p is not None)

    def copy(self) -> "TerminalUnit":
        return dataclasses.replace(self, parents=list(self.parents))


class _EventKind(enum.Enum):
    PARENTS_RECONSTRUCTED = enum.auto()
    PARENTS_IN_DAG = enum.auto()


PostInsertHook = Callable[[TerminalUnit], None]


class Terminal:
    """Receives units and adds them to the local DAG once their parents are in it.

    A unit's parents are first reconstructed from the coordinates named by its
    control hash; missing coordinates are requested. When all parents are known
    they are checked against the control hash; on mismatch the correct parent
    hashes are requested. Once every parent is in the DAG, the unit is added.
    Events are handled breadth-first from a queue.
    """

    def __init__(
        self,
        node_id: int,
        emit: Callable[[NotificationOut], object],
        hasher: Hasher = hash64,
    ) -> None:
        self.node_id = node_id
        self._emit = emit
        self._hasher = hasher
        self._event_queue: Deque[Tuple[_EventKind, bytes]] = deque()
        self._post_insert: List[PostInsertHook] = []
        self._unit_store: Dict[bytes, TerminalUnit] = {}
        self._unit_by_coord: Dict[Tuple[int, int], bytes] = {}
        self._children_coord: Dict[Tuple[int, int], List[bytes]] = {}
        self._children_hash: Dict[bytes, List[bytes]] = {}
        self._exiting = False

    @property
    def exiting(self) -> bool:
        return self._exiting

    def register_post_insert_hook(self, hook: PostInsertHook) -> None:
        """Call ``hook`` with a copy of every unit added to the DAG."""
        self._post_insert.append(hook)

    def handle(self, notification: NotificationIn) -> None:
        """Process one incoming notification and all events it triggers."""
        if isinstance(notification, NewUnits):
            for unit in notification.units:
                self._add_to_store(unit)
                self._handle_events()
        elif isinstance(notification, UnitParents):
            self._update_on_wrong_hash_response(
                notification.unit_hash, notification.parent_hashes
            )
            self._handle_events()
        else:
            raise TypeError(f"unexpected notification {notification!r}")

    async def run(self, inbox: "asyncio.Queue[NotificationIn]", exit_event: asyncio.Event) -> None:
        """Handle notifications from ``inbox`` until exit is signalled or sending fails."""
        exit_task = asyncio.ensure_future(exit_event.wait())
        try:
            while True:
                get_task = asyncio.ensure_future(inbox.get())
                done, _ = await asyncio.wait(
                    {get_task, exit_task}, return_when=asyncio.FIRST_COMPLETED
                )
                if get_task in done:
                    self.handle(get_task.result())
                else:
                    get_task.cancel()
                if exit_task in done:
                    logger.info("%s received exit signal", self.node_id)
                    self._exiting = True
                if self._exiting:
                    logger.info("%s Terminal decided to exit.", self.node_id)
                    break
        finally:
            exit_task.cancel()

    def _send(self, notification: NotificationOut) -> None:
        try:
            self._emit(notification)
        except RuntimeError:
            logger.warning("%s Notification channel should be open", self.node_id)
            self._exiting = True

    def _reconstruct_parent(self, u_hash: bytes, pid: int, p_hash: bytes) -> None:
        unit = self._unit_store[u_hash]
        unit.parents[pid] = p_hash
        unit.n_miss_par_decoded -= 1
        if unit.n_miss_par_decoded == 0:
            self._event_queue.append((_EventKind.PARENTS_RECONSTRUCTED, u_hash))

    def _new_parent_in_dag(self, u_hash: bytes) -> None:
        unit = self._unit_store[u_hash]
        unit.n_miss_par_dag -= 1
        if unit.n_miss_par_dag == 0:
            self._event_queue.append((_EventKind.PARENTS_IN_DAG, u_hash))

    def _update_on_store_add(self, unit: Unit) -> None:
        u_hash = unit.hash
        u_round, pid = unit.round, unit.creator
        if (u_round, pid) in self._unit_by_coord:
            logger.debug("Received a fork at round %s creator %s", u_round, pid)
        else:
            self._unit_by_coord[(u_round, pid)] = u_hash

        for v_hash in self._children_coord.pop((u_round, pid), []):
            self._reconstruct_parent(v_hash, pid, u_hash)

        if u_round == 0:
            self._event_queue.append((_EventKind.PARENTS_RECONSTRUCTED, u_hash))
            return
        missing = []
        for i in unit.control_hash.parents():
            coord = (u_round - 1, i)
            parent_hash = self._unit_by_coord.get(coord)
            if parent_hash is not None:
                self._reconstruct_parent(u_hash, i, parent_hash)
            else:
                self._children_coord.setdefault(coord, []).append(u_hash)
                missing.append(UnitCoord(u_round - 1, i))
        if missing:
            logger.debug("%s Missing coords %s", self.node_id, missing)
            self._send(MissingUnits(tuple(missing)))

    def _update_on_dag_add(self, u_hash: bytes) -> None:
        unit = self._unit_store[u_hash]
        for hook in self._post_insert:
            hook(unit.copy())
        for v_hash in self._children_hash.pop(u_hash, []):
            self._new_parent_in_dag(v_hash)
        self._send(AddedToDag(u_hash, unit.parent_hashes()))

    def _update_on_wrong_hash_response(
        self, u_hash: bytes, p_hashes: Tuple[bytes, ...]
    ) -> None:
        try:
            unit = self._unit_store[u_hash]
        except KeyError:
            raise KeyError(f"unit with wrong control hash must be in store: {u_hash!r}") from None
        if unit.status is not UnitStatus.WRONG_CONTROL_HASH:
            logger.debug(
                "%s Received parents response without it being expected for %r. Ignoring.",
                self.node_id,
                u_hash,
            )
            return
        parent_ids = list(unit.unit.control_hash.parents())
        if len(p_hashes) < len(parent_ids):
            raise ValueError(
                f"expected {len(parent_ids)} parent hashes, got {len(p_hashes)}"
            )
        for i, p_hash in zip(parent_ids, p_hashes):
            unit.parents[i] = p_hash
        unit.n_miss_par_decoded = 0
        self._inspect_parents_in_dag(u_hash)

    def _add_to_store(self, unit: Unit) -> None:
        logger.debug(
            "%s Adding to store %r round %s index %s",
            self.node_id,
            unit.hash,
            unit.round,
            unit.creator,
        )
        if unit.hash not in self._unit_store:
            self._unit_store[unit.hash] = TerminalUnit.blank_from_unit(unit)
            self._update_on_store_add(unit)

    def _inspect_parents_in_dag(self, u_hash: bytes) -> None:
        unit = self._unit_store[u_hash]
        in_dag = 0
        for p_hash in unit.parent_hashes():
            parent = self._unit_store.get(p_hash)
            # The parent may be absent when the control hash was wrong.
            if parent is not None and parent.status is UnitStatus.IN_DAG:
                in_dag += 1
            else:
                self._children_hash.setdefault(p_hash, []).append(u_hash)
        unit.n_miss_par_dag -= in_dag
        if unit.n_miss_par_dag == 0:
            self._event_queue.append((_EventKind.PARENTS_IN_DAG, u_hash))
        else:
            unit.status = UnitStatus.WAITING_PARENTS_IN_DAG

    def _handle_events(self) -> None:
        while self._event_queue:
            kind, u_hash = self._event_queue.popleft()
            unit = self._unit_store[u_hash]
            if kind is _EventKind.PARENTS_RECONSTRUCTED:
                if unit.verify_control_hash(self._hasher):
                    self._inspect_parents_in_dag(u_hash)
                else:
                    unit.status = UnitStatus.WRONG_CONTROL_HASH
                    logger.warning("%s wrong control hash", self.node_id)
                    self._send(WrongControlHash(u_hash))
            else:
                unit.status = UnitStatus.IN_DAG
                self._update_on_dag_add(u_hash)