import threading
import uuid

import pytest
from pony.orm import db_session

from display_names import (is_display_name_available, normalize_display_name, release_display_name,
                           reservation_owner, reserve_display_name)
from errors import DisplayNameTakenError, InvalidDisplayNameError
from models import DisplayName, init_db


def setup_module(module):
    init_db()


def _name(base='Ocean Explorer'):
    return f'{base} {uuid.uuid4().hex[:8]}'


def test_normalize_trims_lowercases_and_collapses_whitespace():
    assert normalize_display_name('  Ocean   Explorer  ') == 'ocean explorer'
    assert normalize_display_name('Ocean\tExplorer') == 'ocean explorer'
    assert normalize_display_name('   ') == ''
    assert normalize_display_name(None) == ''


def test_reserve_then_conflict_for_other_user(new_uid):
    alice, bob = new_uid('alice'), new_uid('bob')
    name = _name()
    assert reserve_display_name(alice, name) is True
    with pytest.raises(DisplayNameTakenError):
        reserve_display_name(bob, '  ' + name.upper() + '  ')
    assert reservation_owner(name) == alice
    assert not is_display_name_available(name.lower())


def test_reserving_own_name_again_is_idempotent(new_uid):
    uid = new_uid()
    name = _name()
    reserve_display_name(uid, name)
    reserve_display_name(uid, name.upper())
    with db_session:
        rec = DisplayName[normalize_display_name(name)]
        assert rec.uid == uid
        assert rec.display_name == name.upper()


def test_empty_name_is_invalid(new_uid):
    with pytest.raises(InvalidDisplayNameError) as exc:
        reserve_display_name(new_uid(), '   ')
    assert exc.value.code == 'invalid_display_name'
    assert exc.value.status_code == 400
    assert is_display_name_available('') is False


def test_validate_only_writes_nothing(new_uid):
    uid, other = new_uid(), new_uid()
    name = _name()
    assert reserve_display_name(uid, name, validate_only=True) is True
    assert is_display_name_available(name)
    reserve_display_name(other, name)
    with pytest.raises(DisplayNameTakenError):
        reserve_display_name(uid, name, validate_only=True)


def test_rename_releases_previous_name(new_uid):
    uid = new_uid()
    old, new = _name('Reef'), _name('Wreck')
    reserve_display_name(uid, old)
    reserve_display_name(uid, new, previous_display_name=old)
    assert reservation_owner(new) == uid
    assert is_display_name_available(old)


def test_rename_keeps_previous_name_held_by_someone_else(new_uid):
    uid, other = new_uid(), new_uid()
    theirs, mine = _name('Manta'), _name('Turtle')
    reserve_display_name(other, theirs)
    reserve_display_name(uid, mine, previous_display_name=theirs)
    assert reservation_owner(theirs) == other


def test_failed_rename_keeps_old_reservation(new_uid):
    uid, other = new_uid(), new_uid()
    old, taken = _name('Nudi'), _name('Shark')
    reserve_display_name(uid, old)
    reserve_display_name(other, taken)
    with pytest.raises(DisplayNameTakenError):
        reserve_display_name(uid, taken, previous_display_name=old)
    assert reservation_owner(old) == uid
    assert reservation_owner(taken) == other


def test_concurrent_reservations_have_one_winner(new_uid):
    name = _name('Blue Hole')
    uids = [new_uid('racer') for _ in range(4)]
    barrier = threading.Barrier(len(uids))
    results = {}

    def attempt(uid):
        barrier.wait()
        try:
            results[uid] = reserve_display_name(uid, name)
        except DisplayNameTakenError:
            results[uid] = False

    threads = [threading.Thread(target=attempt, args=(uid,)) for uid in uids]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    winners = [uid for uid, ok in results.items() if ok]
    assert len(results) == len(uids)
    assert len(winners) == 1
    assert reservation_owner(name) == winners[0]


def test_reservation_stores_epoch_milliseconds(new_uid):
    name = _name()
    reserve_display_name(new_uid(), name)
    with db_session:
        stamp = DisplayName[normalize_display_name(name)].updated_at
    # milliseconds since 1970 no longer fit a 32-bit column
    assert stamp > 2 ** 31


def test_release_only_drops_own_reservation(new_uid):
    owner, other = new_uid(), new_uid()
    name = _name()
    reserve_display_name(owner, name)
    assert release_display_name(other, name) is False
    assert reservation_owner(name) == owner
    assert release_display_name(owner, name.upper()) is True
    assert reservation_owner(name) is None
    assert release_display_name(owner, name) is False
