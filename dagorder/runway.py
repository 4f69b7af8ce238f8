"""Validation and exchange of units between the network, the alerter and the consensus."""

from __future__ import annotations

import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Set, Tuple, Union

from dagorder.notifications import (
    AddedToDag,
    CoordRequest,
    CoordResponse,
    CreatedPreUnit,
    IncomingNewUnit,
    IncomingRequest,
    IncomingResponse,
    MissingUnits,
    NewestUnitReport,
    NewestUnitRequest,
    NewestUnitResponse,
    NewUnits,
    NotificationIn,
    NotificationOut,
    OutgoingNewUnit,
    OutgoingRequest,
    OutgoingResponse,
    ParentsRequest,
    ParentsResponse,
    Recipient,
    Request,
    RunwayNotificationIn,
    RunwayNotificationOut,
    UnitParents,
    WrongControlHash,
)
from dagorder.signed import MultiKeychain, SignatureError, Signed, UncheckedSigned
from dagorder.store import UnitStore
from dagorder.units import ControlHash, FullUnit, Hasher, PreUnit, UnitCoord, hash64

logger = logging.getLogger(__name__)


class ChannelClosed(RuntimeError):
    """Raised by an output sink whose receiving side is gone."""


class DataIO(ABC):
    """Source of data for new units and sink for ordered batches of data."""

    @abstractmethod
    def get_data(self) -> bytes:
        """Data to place in the next unit this node creates."""

    @abstractmethod
    def send_ordered_batch(self, batch: List[bytes]) -> None:
        """Receive the data of a batch of units in their final order."""


ForkProof = Tuple[UncheckedSigned, UncheckedSigned]


@dataclass(frozen=True)
class ForkAlert:
    """An alert about a forker: the proof and the forker's units known to the sender."""

    sender: int
    proof: ForkProof
    legit_units: Tuple[UncheckedSigned, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "proof", tuple(self.proof))
        object.__setattr__(self, "legit_units", tuple(self.legit_units))


@dataclass(frozen=True)
class ForkerDetected:
    """The alerter learned of a forker through the given proof."""

    proof: ForkProof

    def __post_init__(self) -> None:
        object.__setattr__(self, "proof", tuple(self.proof))


@dataclass(frozen=True)
class AlertedUnits:
    """Units of a forker that were agreed upon through an alert."""

    units: Tuple[UncheckedSigned, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "units", tuple(self.units))


ForkingNotification = Union[ForkerDetected, AlertedUnits]

Sink = Callable[[Any], object]


class Runway:
    """Checks units arriving from the network, keeps them in a store and feeds the consensus.

    Every output goes through a sink callable; a sink that raises
    :class:`ChannelClosed` makes the runway decide to exit.
    """

    def __init__(
        self,
        node_ix: int,
        session_id: int,
        n_members: int,
        max_round: int,
        keychain: MultiKeychain,
        data_io: DataIO,
        *,
        network: Sink,
        consensus: Sink,
        alerter: Sink,
        resolved_requests: Sink,
        starting_round: Callable[[int], object],
        salt: Optional[int] = None,
        hasher: Hasher = hash64,
    ) -> None:
        self.node_ix = node_ix
        self.session_id = session_id
        self.n_members = n_members
        self.threshold = n_members * 2 // 3 + 1
        self.store = UnitStore(n_members, max_round)
        self.salt = secrets.randbits(64) if salt is None else salt
        self._keychain = keychain
        self._data_io = data_io
        self._network = network
        self._consensus = consensus
        self._alerter = alerter
        self._resolved_requests = resolved_requests
        self._starting_round_sender: Optional[Callable[[int], object]] = starting_round
        self._hasher = hasher
        self._missing_coords: Set[UnitCoord] = set()
        self._missing_parents: Set[bytes] = set()
        self._newest_unit_responders: Set[int] = set()
        self._after_catch_up_delay = False
        self.starting_round_value = 0
        self._exiting = False

    @property
    def exiting(self) -> bool:
        return self._exiting

    # Outputs.

    def _send_to_network(self, message: RunwayNotificationOut) -> None:
        try:
            self._network(message)
        except ChannelClosed:
            logger.warning("%s unit_messages_for_network channel should be open", self.node_ix)
            self._exiting = True

    def _send_resolved(self, request: Request) -> None:
        try:
            self._resolved_requests(request)
        except ChannelClosed:
            logger.warning("%s resolved_requests channel should be open", self.node_ix)
            self._exiting = True

    def _send_to_consensus(self, notification: NotificationIn) -> None:
        try:
            self._consensus(notification)
        except ChannelClosed:
            logger.warning("%s Channel to consensus should be open", self.node_ix)
            self._exiting = True

    # Startup.

    def start(self) -> None:
        """Ask everyone for the newest unit of ours they hold."""
        request = OutgoingRequest(NewestUnitRequest(self.salt), Recipient.everyone())
        try:
            self._network(request)
        except ChannelClosed as exc:
            logger.error("%s Unable to send the newest unit request: %s", self.node_ix, exc)
            self._exiting = True

    def on_catch_up_delay(self) -> None:
        """Note that the catch-up delay has passed and resolve the starting round if possible."""
        self._after_catch_up_delay = True
        if self._is_starting_round_ready():
            self._resolve_starting_round()

    # Unit validation and storage.

    def _validate_unit(self, unchecked: UncheckedSigned) -> Optional[Signed]:
        try:
            signed = unchecked.check(self._keychain)
        except SignatureError:
            logger.warning("%s Wrong signature received %r.", self.node_ix, unchecked)
            return None
        full_unit = signed.signable
        if full_unit.session_id != self.session_id:
            logger.warning("%s A unit with incorrect session_id! %r", self.node_ix, full_unit)
            return None
        if full_unit.round > self.store.limit_per_node():
            logger.warning("%s A unit with too high round %s!", self.node_ix, full_unit.round)
            return None
        if full_unit.creator >= self.n_members:
            logger.warning(
                "%s A unit with too high creator index %s!", self.node_ix, full_unit.creator
            )
            return None
        if not self._validate_unit_parents(full_unit):
            logger.warning("%s A unit did not pass parents validation.", self.node_ix)
            return None
        return signed

    def _validate_unit_parents(self, full_unit: FullUnit) -> bool:
        pre_unit = full_unit.pre_unit
        if pre_unit.n_members() != self.n_members:
            logger.warning("%s Unit with wrong length of parents map.", self.node_ix)
            return False
        n_parents = pre_unit.n_parents()
        if pre_unit.round == 0 and n_parents > 0:
            logger.warning(
                "%s Unit of round zero with non-zero number of parents.", self.node_ix
            )
            return False
        if pre_unit.round > 0 and n_parents < self.threshold:
            logger.warning(
                "%s Unit of non-zero round with only %s parents while at least %s are required.",
                self.node_ix,
                n_parents,
                self.threshold,
            )
            return False
        if pre_unit.round > 0 and not pre_unit.control_hash.parents_mask[pre_unit.creator]:
            logger.warning(
                "%s Unit does not have its creator's previous unit as parent.", self.node_ix
            )
            return False
        return True

    def _on_unit_received(self, unchecked: UncheckedSigned, alert: bool) -> None:
        signed = self._validate_unit(unchecked)
        if signed is None:
            return
        if alert:
            # Units from alerts come from forkers and are wanted anyway.
            self.store.add_unit(signed, True)
        else:
            self._add_unit_to_store_unless_fork(signed)

    def _add_unit_to_store_unless_fork(self, signed: Signed) -> None:
        full_unit = signed.signable
        creator = full_unit.creator
        if self.store.is_forker(creator):
            logger.debug("%s Ignoring forker's unit %r", self.node_ix, full_unit)
            return
        other = self.store.is_new_fork(full_unit)
        if other is not None:
            if not self.store.is_forker(creator):
                proof = (signed.into_unchecked(), other.into_unchecked())
                self._on_new_forker_detected(creator, proof)
            # A legit variant will arrive in an alert.
            return
        self.store.add_unit(signed, False)

    def _on_new_forker_detected(self, forker: int, proof: ForkProof) -> None:
        alerted_units = self.store.mark_forker(forker)
        alert = ForkAlert(
            self.node_ix, proof, tuple(su.into_unchecked() for su in alerted_units)
        )
        try:
            self._alerter(alert)
        except ChannelClosed:
            logger.warning("%s Channel to alerter should be open", self.node_ix)
            self._exiting = True

    # Messages from the network.

    async def handle_unit_message(self, message: RunwayNotificationIn) -> None:
        """Process one unit message coming from the network."""
        if isinstance(message, IncomingNewUnit):
            self._on_unit_received(message.unit, False)
        elif isinstance(message, IncomingRequest):
            request, sender = message.request, message.sender
            if isinstance(request, CoordRequest):
                self._on_request_coord(sender, request.coord)
            elif isinstance(request, ParentsRequest):
                self._on_request_parents(sender, request.unit_hash)
            elif isinstance(request, NewestUnitRequest):
                await self._on_request_newest(sender, request.salt)
            else:
                raise TypeError(f"unexpected request {request!r}")
        elif isinstance(message, IncomingResponse):
            response = message.response
            if isinstance(response, CoordResponse):
                self._on_unit_received(response.unit, False)
            elif isinstance(response, ParentsResponse):
                self._on_parents_response(response.unit_hash, response.parents)
            elif isinstance(response, NewestUnitResponse):
                self._on_newest_response(response.response)
            else:
                raise TypeError(f"unexpected response {response!r}")
        else:
            raise TypeError(f"unexpected unit message {message!r}")

    def _on_request_coord(self, node_id: int, coord: UnitCoord) -> None:
        signed = self.store.unit_by_coord(coord)
        if signed is None:
            logger.debug("%s Not answering fetch request for coord %s.", self.node_ix, coord)
            return
        self._send_to_network(OutgoingResponse(CoordResponse(signed.into_unchecked()), node_id))

    def _on_request_parents(self, node_id: int, u_hash: bytes) -> None:
        p_hashes = self.store.get_parents(u_hash)
        if p_hashes is None:
            logger.debug("%s Not answering parents request, unit not in DAG yet.", self.node_ix)
            return
        units = []
        for p_hash in p_hashes:
            signed = self.store.unit_by_hash(p_hash)
            if signed is None:
                # A parent may have been dropped as a fork; it will come with an alert.
                logger.debug(
                    "%s Not answering parents request, one of the parents missing from store.",
                    self.node_ix,
                )
                return
            units.append(signed.into_unchecked())
        self._send_to_network(OutgoingResponse(ParentsResponse(u_hash, tuple(units)), node_id))

    async def _on_request_newest(self, requester: int, salt: int) -> None:
        report = NewestUnitReport(
            requester=requester,
            responder=self.node_ix,
            unit=self.store.newest_unit(requester),
            salt=salt,
        )
        signed = await Signed.sign(report, self._keychain)
        try:
            self._network(
                OutgoingResponse(NewestUnitResponse(signed.into_unchecked()), requester)
            )
        except ChannelClosed as exc:
            logger.error("Unable to send response to network: %s", exc)

    def _on_parents_response(self, u_hash: bytes, parents: Sequence[UncheckedSigned]) -> None:
        if self.store.get_parents(u_hash) is not None:
            logger.debug("%s We got parents response but already know the parents.", self.node_ix)
            return
        stored = self.store.unit_by_hash(u_hash)
        if stored is None:
            logger.debug("%s We got parents but don't even know the unit.", self.node_ix)
            return
        full_unit = stored.signable
        u_round = full_unit.round
        u_control_hash = full_unit.control_hash.combined_hash
        parent_ids = list(full_unit.control_hash.parents())
        if len(parent_ids) != len(parents):
            logger.warning(
                "%s In received parent response expected %s parents got %s.",
                self.node_ix,
                len(parent_ids),
                len(parents),
            )
            return

        parent_map: List[Optional[bytes]] = [None] * self.n_members
        for unchecked, expected_creator in zip(parents, parent_ids):
            signed = self._validate_unit(unchecked)
            if signed is None:
                logger.warning("%s Parent response holds an invalid unit.", self.node_ix)
                return
            parent = signed.signable
            if parent.round + 1 != u_round:
                logger.warning("%s Parent response holds a unit with wrong round.", self.node_ix)
                return
            if parent.creator != expected_creator:
                logger.warning(
                    "%s Parent response holds a unit with wrong creator.", self.node_ix
                )
                return
            parent_map[parent.creator] = parent.hash()
            self._add_unit_to_store_unless_fork(signed)

        if ControlHash.combine_hashes(parent_map, self._hasher) != u_control_hash:
            logger.warning("%s In received parent response the control hash is incorrect.", self.node_ix)
            return
        p_hashes = [h for h in parent_map if h is not None]
        self.store.add_parents(u_hash, p_hashes)
        self._send_to_consensus(UnitParents(u_hash, tuple(p_hashes)))

    def _on_newest_response(self, unchecked: UncheckedSigned) -> None:
        if self._starting_round_sender is None:
            logger.debug("Starting round already sent, ignoring newest unit response")
            return
        try:
            response = unchecked.check(self._keychain).signable
        except SignatureError:
            logger.debug("incorrectly signed response")
            return
        if response.salt != self.salt:
            logger.debug("Ignoring newest unit response with an unknown salt: %r", response)
            return
        if response.unit is not None:
            signed = self._validate_unit(response.unit)
            if signed is None:
                logger.debug("invalid unit in response")
                return
            if signed.signable.creator != self.node_ix:
                logger.debug("Not our unit in a response: %r", signed.signable)
                return
            if self.store.unit_by_hash(signed.signable.hash()) is None:
                candidate = signed.signable.round + 1
                self._on_unit_received(signed.into_unchecked(), False)
                self.starting_round_value = max(self.starting_round_value, candidate)
        self._newest_unit_responders.add(response.responder)
        if self._is_starting_round_ready():
            self._resolve_starting_round()

    def _is_starting_round_ready(self) -> bool:
        return (
            self._after_catch_up_delay
            and len(self._newest_unit_responders) + 1 >= self.threshold
        )

    def _resolve_starting_round(self) -> None:
        sender, self._starting_round_sender = self._starting_round_sender, None
        if sender is None:
            logger.warning("Trying to resolve starting round after resolving it earlier")
            return
        try:
            sender(self.starting_round_value)
        except ChannelClosed:
            logger.error("unable to send starting round to creator")
            self._exiting = True
            return
        try:
            self._resolved_requests(NewestUnitRequest(self.salt))
        except ChannelClosed as exc:
            logger.error("unable to send resolved request: %s", exc)

    # Notifications from the alerter.

    def handle_alert_notification(self, notification: ForkingNotification) -> None:
        """Process a forker detection or units agreed upon through an alert."""
        if isinstance(notification, ForkerDetected):
            forker = notification.proof[0].index()
            if not self.store.is_forker(forker):
                self._on_new_forker_detected(forker, notification.proof)
        elif isinstance(notification, AlertedUnits):
            for unchecked in notification.units:
                self._on_unit_received(unchecked, True)
        else:
            raise TypeError(f"unexpected alert notification {notification!r}")

    # Notifications from the consensus.

    async def handle_consensus_notification(self, notification: NotificationOut) -> None:
        """Process one notification coming from the consensus."""
        if isinstance(notification, CreatedPreUnit):
            await self._on_create(notification.pre_unit)
        elif isinstance(notification, MissingUnits):
            self._on_missing_coords(notification.coords)
        elif isinstance(notification, WrongControlHash):
            self._on_wrong_control_hash(notification.unit_hash)
        elif isinstance(notification, AddedToDag):
            u_hash = notification.unit_hash
            self.store.add_parents(u_hash, list(notification.parent_hashes))
            if u_hash in self._missing_parents:
                self._missing_parents.discard(u_hash)
                self._send_resolved(ParentsRequest(u_hash))
            signed = self.store.unit_by_hash(u_hash)
            if signed is None:
                logger.error(
                    "%s A unit already added to DAG is not in our store: %r.",
                    self.node_ix,
                    u_hash,
                )
                return
            coord = signed.signable.coord
            if coord in self._missing_coords:
                self._missing_coords.discard(coord)
                self._send_resolved(CoordRequest(coord))
        else:
            raise TypeError(f"unexpected consensus notification {notification!r}")

    async def _on_create(self, pre_unit: PreUnit) -> None:
        full_unit = FullUnit(pre_unit, self._data_io.get_data(), self.session_id, self._hasher)
        signed = await Signed.sign(full_unit, self._keychain)
        self.store.add_unit(signed, False)
        self._send_to_network(OutgoingNewUnit(signed.into_unchecked()))

    def _on_missing_coords(self, coords: Sequence[UnitCoord]) -> None:
        for coord in coords:
            if self.store.contains_coord(coord) or coord in self._missing_coords:
                continue
            self._missing_coords.add(coord)
            self._send_to_network(
                OutgoingRequest(CoordRequest(coord), Recipient.node(coord.creator))
            )

    def _on_wrong_control_hash(self, u_hash: bytes) -> None:
        p_hashes = self.store.get_parents(u_hash)
        if p_hashes is not None:
            # Parents arrived without having been requested.
            self._send_to_consensus(UnitParents(u_hash, tuple(p_hashes)))
            return
        signed = self.store.unit_by_hash(u_hash)
        recipient = (
            Recipient.node(signed.signable.creator) if signed is not None else Recipient.everyone()
        )
        if u_hash not in self._missing_parents:
            self._missing_parents.add(u_hash)
            self._send_to_network(OutgoingRequest(ParentsRequest(u_hash), recipient))

    def handle_ordered_batch(self, batch: Sequence[bytes]) -> None:
        """Pass the data of an ordered batch of unit hashes to the data sink."""
        data = []
        for u_hash in batch:
            signed = self.store.unit_by_hash(u_hash)
            if signed is None:
                raise KeyError(f"Ordered units must be in store: {u_hash!r}")
            data.append(signed.signable.data)
        try:
            self._data_io.send_ordered_batch(data)
        except ChannelClosed as exc:
            logger.error("%s Error when sending batch: %s", self.node_ix, exc)

    def move_units_to_consensus(self) -> None:
        """Send the units that became legit to the consensus."""
        units = tuple(su.signable.unit() for su in self.store.yield_buffer_units())
        self._send_to_consensus(NewUnits(units))

    # Main loop.

    async def _dispatch(self, item: Any) -> None:
        if isinstance(item, (IncomingNewUnit, IncomingRequest, IncomingResponse)):
            await self.handle_unit_message(item)
        elif isinstance(item, (ForkerDetected, AlertedUnits)):
            self.handle_alert_notification(item)
        elif isinstance(item, (CreatedPreUnit, MissingUnits, WrongControlHash, AddedToDag)):
            await self.handle_consensus_notification(item)
        elif isinstance(item, (list, tuple)):
            self.handle_ordered_batch(item)
        else:
            raise TypeError(f"unexpected input {item!r}")

    async def run(
        self,
        inputs: "asyncio.Queue[Any]",
        exit_event: asyncio.Event,
        catch_up_delay: float = 5.0,
    ) -> None:
        """Process inputs until exit is signalled, a sink closes, or ``None`` is received.

        ``inputs`` carries unit messages, alert notifications, consensus
        notifications and ordered batches (sequences of unit hashes).
        """
        logger.info("%s Runway starting.", self.node_ix)
        self.start()
        delay_task: Optional[asyncio.Future] = asyncio.ensure_future(
            asyncio.sleep(catch_up_delay)
        )
        exit_task = asyncio.ensure_future(exit_event.wait())
        get_task: Optional[asyncio.Future] = None
        try:
            while True:
                get_task = asyncio.ensure_future(inputs.get())
                waiting = {get_task, exit_task}
                if delay_task is not None:
                    waiting.add(delay_task)
                done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                if get_task in done:
                    item = get_task.result()
                    if item is None:
                        logger.error("%s Input stream closed.", self.node_ix)
                        break
                    await self._dispatch(item)
                else:
                    get_task.cancel()
                if delay_task is not None and delay_task in done:
                    delay_task = None
                    self.on_catch_up_delay()
                if exit_task in done:
                    logger.info("%s received exit signal", self.node_ix)
                    self._exiting = True
                self.move_units_to_consensus()
                if self._exiting:
                    logger.info("%s Runway decided to exit.", self.node_ix)
                    break
        finally:
            for task in (get_task, delay_task, exit_task):
                if task is not None and not task.done():
                    task.cancel()
        logger.info("%s Run ended.", self.node_ix)