# dagorder

`dagorder` keeps track of the units that the nodes of an asynchronous
Byzantine fault tolerant protocol create. Each unit names its creator, its
round and the units of the previous round that it builds on. The package
checks signatures, notices nodes that fork, keeps units in a store, and
finds out when a unit and all of its parents belong to the local DAG. It
depends only on the standard library.

## Install

```
pip install .
pip install ".[test]"   # to run the tests with pytest
```

## Modules

### `dagorder.signed`

- `KeyBox` and `MultiKeychain` are abstract interfaces you implement:
  `index()`, `node_count()`, `async sign(msg)`, `verify(msg, signature, index)`,
  and for multikeychains `from_signature(signature, index)` and
  `is_complete(msg, partial)`.
- `signable_hash(obj)` gives the bytes that are signed: byte-like values are
  their own hash, any other object must provide `hash()`.
- `UncheckedSigned(signable, signature)`: `check(key_box)` returns a `Signed`
  or raises `SignatureError`; `check_multi(keychain)` returns a `Multisigned`
  or raises `SignatureError`; `strip_index()` drops an `Indexed` wrapper.
- `Signed.sign(signable, key_box)` (async) signs data whose `index()` equals
  the key box's index, and raises `ValueError` otherwise.
  `Signed.sign_with_index(data, key_box)` wraps the data in `Indexed` first.
- `PartiallyMultisigned` collects signatures with `add_signature(signed,
  keychain)` and reports `is_complete()`; its `multisigned` property is a
  `Multisigned` once complete. A signature over different data is ignored.
- `SignatureSet` is a tuple of per-node signatures used as a multisignature.
  `DefaultMultiKeychain(key_box)` treats it as complete once it holds at least
  `2 * n // 3 + 1` signatures and all of them verify.

### `dagorder.units`

`UnitCoord(round, creator)`, `ControlHash`, `PreUnit`, `FullUnit` and `Unit`.
`ControlHash.from_parents(parent_map)` builds the parents mask and combined
hash from a list of optional parent hashes. `UnitCoord`, `ControlHash`,
`PreUnit` and `FullUnit` have a little-endian byte encoding (`encode()`, and
`decode()` for the last three); a `FullUnit`'s hash is the hash of its
encoding, computed once. `hash64` (8-byte BLAKE2b) is the default hasher; any
`Callable[[bytes], bytes]` can be passed instead.

### `dagorder.store`

`UnitStore(n_nodes, max_round)` holds signed units by coordinate and by hash,
stores decoded parents, marks forkers (`mark_forker` returns the forker's
units in round order), detects new forks (`is_new_fork`), and buffers units
that are ready for the DAG (`yield_buffer_units`). Adding an alerted unit
whose creator is not a marked forker raises `ValueError`.

### `dagorder.notifications`

Frozen dataclasses for the messages between components: `NewUnits` and
`UnitParents` into the DAG; `CreatedPreUnit`, `MissingUnits`,
`WrongControlHash` and `AddedToDag` out of it; the requests `CoordRequest`,
`ParentsRequest`, `NewestUnitRequest`; the responses `CoordResponse`,
`ParentsResponse`, `NewestUnitResponse` (carrying a signed
`NewestUnitReport`); network envelopes `OutgoingNewUnit`, `OutgoingRequest`,
`OutgoingResponse`, `IncomingNewUnit`, `IncomingRequest`, `IncomingResponse`;
and `Recipient.everyone()` / `Recipient.node(i)`.

### `dagorder.terminal`

`Terminal(node_id, emit)` takes units in with `handle(notification)`,
rebuilds each unit's parents from the coordinates in its control hash, emits
`MissingUnits` for coordinates it lacks, emits `WrongControlHash` when the
rebuilt parents do not match, and emits `AddedToDag` once a unit and all its
parents are in the DAG. `emit` is any callable; if it raises `RuntimeError`
the terminal sets `exiting`. `register_post_insert_hook(hook)` calls `hook`
with a copy of each `TerminalUnit` added. `async run(inbox, exit_event)`
handles notifications from an `asyncio.Queue` until the event is set.

### `dagorder.runway`

`Runway(node_ix, session_id, n_members, max_round, keychain, data_io, *,
network, consensus, alerter, resolved_requests, starting_round, salt=None,
hasher=hash64)` checks incoming units (signature, session, round limit,
creator, parents), stores them, answers coordinate, parents and newest-unit
requests, detects forks and sends a `ForkAlert` to the `alerter` sink, signs
units for pre-units the consensus creates (with data from a `DataIO`), and
passes the data of ordered batches to `DataIO.send_ordered_batch`.
`move_units_to_consensus()` sends newly stored units as `NewUnits` to the
`consensus` sink. The starting round is passed to `starting_round` once the
catch-up delay has passed and enough nodes have answered the newest-unit
request. A sink that raises `ChannelClosed` makes the runway exit.

`async run(inputs, exit_event, catch_up_delay=5.0)` reads an
`asyncio.Queue` carrying unit messages, `ForkerDetected` / `AlertedUnits`,
consensus notifications and ordered batches (lists or tuples of unit
hashes); `None` on the queue ends the loop.

## Example

```python
from dagorder.notifications import AddedToDag, NewUnits
from dagorder.terminal import Terminal
from dagorder.units import ControlHash, FullUnit, PreUnit, UnitCoord

n_members = 4
pre_unit = PreUnit(UnitCoord(0, 0), ControlHash.from_parents([None] * n_members))
unit = FullUnit(pre_unit, b"data", session_id=0).unit()

outbox = []
terminal = Terminal(0, outbox.append)
terminal.handle(NewUnits([unit]))
assert outbox == [AddedToDag(unit.hash, ())]
```

## What the package does not do

- It has no alerter: `Runway` hands `ForkAlert` values to the `alerter` sink
  and expects `ForkerDetected` and `AlertedUnits` back, but nothing here
  spreads alerts or agrees on them.
- It does not create units or order them into batches: `Terminal` only
  builds the DAG, and `Runway` expects `CreatedPreUnit` notifications and
  ordered batches to come from elsewhere.
- It has no network transport and no command-line program; messages go to
  and come from the callables and queues you supply.