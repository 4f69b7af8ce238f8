import asyncio

import pytest

from dagorder.notifications import (
    AddedToDag,
    MissingUnits,
    NewUnits,
    UnitParents,
    WrongControlHash,
)
from dagorder.terminal import Terminal, TerminalUnit, UnitStatus
from dagorder.units import ControlHash, PreUnit, Unit, UnitCoord

N = 4


def unit_hash(round_, creator, variant=0):
    return bytes([round_, creator, variant, 0, 0, 0, 0, 0])


def make_unit(round_, creator, parents, variant=0):
    control_hash = ControlHash.from_parents(parents)
    pre_unit = PreUnit(UnitCoord(round_, creator), control_hash)
    return Unit(pre_unit, unit_hash(round_, creator, variant))


def round_zero(creator, variant=0):
    return make_unit(0, creator, [None] * N, variant)


def bad_unit():
    control_hash = ControlHash.from_parents([None] * N)
    bad_control_hash = bytes([0, 1, 0, 1, 0, 1, 0, 1])
    assert bad_control_hash != control_hash.combined_hash
    pre_unit = PreUnit(UnitCoord(0, 1), ControlHash(control_hash.parents_mask, bad_control_hash))
    return Unit(pre_unit, bytes([0, 1, 0, 1, 0, 1, 0, 1]))


@pytest.fixture
def outputs():
    return []


@pytest.fixture
def terminal(outputs):
    return Terminal(0, outputs.append)


def test_blank_from_unit():
    parents = [unit_hash(0, 0), unit_hash(0, 1), unit_hash(0, 2), None]
    unit = make_unit(1, 0, parents)
    tu = TerminalUnit.blank_from_unit(unit)
    assert tu.parents == [None] * N
    assert tu.n_miss_par_decoded == 3
    assert tu.n_miss_par_dag == 3
    assert tu.status is UnitStatus.RECONSTRUCTING_PARENTS


def test_verify_control_hash():
    assert TerminalUnit.blank_from_unit(round_zero(0)).verify_control_hash() is True
    assert TerminalUnit.blank_from_unit(bad_unit()).verify_control_hash() is False


def test_catches_wrong_control_hash(terminal, outputs):
    unit = bad_unit()
    terminal.handle(NewUnits([unit]))
    assert outputs == [WrongControlHash(unit.hash)]


def test_round_zero_units_added_to_dag(terminal, outputs):
    units = [round_zero(i) for i in range(N)]
    terminal.handle(NewUnits(units))
    assert outputs == [AddedToDag(u.hash, ()) for u in units]


def test_duplicate_unit_is_ignored(terminal, outputs):
    unit = round_zero(2)
    terminal.handle(NewUnits([unit]))
    terminal.handle(NewUnits([unit]))
    assert outputs == [AddedToDag(unit.hash, ())]


def test_child_waits_for_missing_parents(terminal, outputs):
    parents = [unit_hash(0, 0), unit_hash(0, 1), unit_hash(0, 2), None]
    child = make_unit(1, 0, parents)
    terminal.handle(NewUnits([child]))
    assert outputs == [
        MissingUnits([UnitCoord(0, 0), UnitCoord(0, 1), UnitCoord(0, 2)])
    ]
    terminal.handle(NewUnits([round_zero(0), round_zero(1), round_zero(2)]))
    assert outputs[1:] == [
        AddedToDag(unit_hash(0, 0), ()),
        AddedToDag(unit_hash(0, 1), ()),
        AddedToDag(unit_hash(0, 2), ()),
        AddedToDag(child.hash, tuple(parents[:3])),
    ]


def test_child_after_parents_needs_no_request(terminal, outputs):
    terminal.handle(NewUnits([round_zero(i) for i in range(N)]))
    outputs.clear()
    parents = [unit_hash(0, 0), None, unit_hash(0, 2), unit_hash(0, 3)]
    child = make_unit(1, 0, parents)
    terminal.handle(NewUnits([child]))
    assert outputs == [
        AddedToDag(child.hash, (unit_hash(0, 0), unit_hash(0, 2), unit_hash(0, 3)))
    ]


def test_wrong_control_hash_resolved_by_parents(terminal, outputs):
    fork_hash = unit_hash(0, 0, 1)
    true_parents = [fork_hash, unit_hash(0, 1), unit_hash(0, 2), None]
    child = make_unit(1, 0, true_parents)
    terminal.handle(NewUnits([round_zero(0), round_zero(1), round_zero(2), child]))
    assert outputs[-1] == WrongControlHash(child.hash)
    outputs.clear()

    terminal.handle(UnitParents(child.hash, (fork_hash, unit_hash(0, 1), unit_hash(0, 2))))
    assert outputs == []

    terminal.handle(NewUnits([round_zero(0, variant=1)]))
    assert outputs == [
        AddedToDag(fork_hash, ()),
        AddedToDag(child.hash, (fork_hash, unit_hash(0, 1), unit_hash(0, 2))),
    ]


def test_unexpected_parents_response_is_ignored(terminal, outputs):
    unit = round_zero(0)
    terminal.handle(NewUnits([unit]))
    outputs.clear()
    terminal.handle(UnitParents(unit.hash, ()))
    assert len(outputs) == 0
    child = make_unit(1, 0, [unit.hash, None, None, None])
    terminal.handle(NewUnits([child]))
    assert outputs == [AddedToDag(child.hash, (unit.hash,))]


def test_parents_response_for_unknown_unit_raises(terminal):
    with pytest.raises(KeyError):
        terminal.handle(UnitParents(unit_hash(3, 3), ()))


def test_post_insert_hook_sees_units_in_dag(terminal):
    seen = []
    terminal.register_post_insert_hook(seen.append)
    units = [round_zero(0), round_zero(1)]
    terminal.handle(NewUnits(units))
    assert [tu.unit for tu in seen] == units
    assert all(tu.status is UnitStatus.IN_DAG for tu in seen)


def test_failing_emit_sets_exiting():
    def closed(_notification):
        raise RuntimeError("closed")

    terminal = Terminal(0, closed)
    terminal.handle(NewUnits([round_zero(0)]))
    assert terminal.exiting is True


@pytest.mark.asyncio
async def test_run_processes_inbox_until_exit(outputs):
    terminal = Terminal(0, outputs.append)
    inbox = asyncio.Queue()
    exit_event = asyncio.Event()
    task = asyncio.ensure_future(terminal.run(inbox, exit_event))
    unit = bad_unit()
    await inbox.put(NewUnits([unit]))
    for _ in range(100):
        if outputs:
            break
        await asyncio.sleep(0)
    exit_event.set()
    await asyncio.wait_for(task, 1)
    assert outputs == [WrongControlHash(unit.hash)]
    assert terminal.exiting is True


@pytest.mark.asyncio
async def test_run_stops_on_exit_with_empty_inbox(outputs):
    terminal = Terminal(0, outputs.append)
    exit_event = asyncio.Event()
    exit_event.set()
    await asyncio.wait_for(terminal.run(asyncio.Queue(), exit_event), 1)
    assert terminal.exiting is True
    assert outputs == []