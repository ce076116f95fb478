import threading
from datetime import datetime, timedelta

import pytest

from orchestration_core import KeyedLocks, TimeIntervalIndex, ValidationError


def t(hhmm, day=7):
    hour, minute = (int(part) for part in hhmm.split(':'))
    return datetime(2030, 1, day, hour, minute)


def test_is_free_uses_half_open_intervals():
    index = TimeIntervalIndex()
    index.occupy('C', t('10:00'), t('11:20'))

    assert not index.is_free('C', t('11:10'), t('11:30'))
    assert not index.is_free('C', t('09:00'), t('10:01'))
    assert index.is_free('C', t('11:20'), t('12:00'))
    assert index.is_free('C', t('09:00'), t('10:00'))
    assert index.is_free('D', t('10:00'), t('11:00'))


def test_touching_and_overlapping_intervals_are_merged():
    index = TimeIntervalIndex()
    index.occupy('C', t('10:00'), t('11:00'))
    index.occupy('C', t('11:00'), t('12:00'))
    index.occupy('C', t('13:00'), t('14:00'))
    index.occupy('C', t('13:30'), t('15:00'))

    assert [(i.start, i.end) for i in index.intervals('C')] == [
        (t('10:00'), t('12:00')),
        (t('13:00'), t('15:00')),
    ]


def test_release_splits_a_merged_interval():
    index = TimeIntervalIndex()
    index.occupy('C', t('10:00'), t('11:00'))
    index.occupy('C', t('11:00'), t('12:00'))

    index.release('C', t('10:00'), t('11:00'))

    assert [(i.start, i.end) for i in index.intervals('C')] == [(t('11:00'), t('12:00'))]
    assert index.is_free('C', t('10:00'), t('11:00'))


def test_keyed_locks_are_dropped_once_released():
    locks = KeyedLocks()

    with locks('charger-1'):
        with locks('charger-1'):
            assert len(locks) == 1
        assert len(locks) == 1

    assert len(locks) == 0


def test_keyed_lock_survives_while_another_thread_waits():
    locks = KeyedLocks()
    entered = threading.Event()
    release = threading.Event()
    order = []

    def holder():
        with locks('session-1'):
            entered.set()
            release.wait(timeout=5)
            order.append('holder')

    def waiter():
        entered.wait(timeout=5)
        with locks('session-1'):
            order.append('waiter')

    threads = [threading.Thread(target=holder), threading.Thread(target=waiter)]
    for thread in threads:
        thread.start()
    entered.wait(timeout=5)
    release.set()
    for thread in threads:
        thread.join()

    assert order == ['holder', 'waiter']
    assert len(locks) == 0


def test_next_available_after_morning_booking():
    index = TimeIntervalIndex()
    index.occupy('C', t('09:00'), t('10:00'))

    window = index.next_available('C', timedelta(minutes=30), 7, now=t('08:45'))
    assert window.start == t('10:00')
    assert window.end == t('10:30')

    later = index.next_available('C', timedelta(minutes=30), 7, now=t('12:00'))
    assert later.start == t('12:00')


def test_next_available_uses_gap_before_first_booking():
    index = TimeIntervalIndex()
    index.occupy('C', t('10:00'), t('11:00'))

    window = index.next_available('C', timedelta(minutes=30), 7, now=t('09:00'))

    assert window.start == t('09:00')


def test_next_available_skips_gaps_that_are_too_short():
    index = TimeIntervalIndex()
    index.occupy('C', t('09:00'), t('10:00'))
    index.occupy('C', t('10:20'), t('12:00'))

    window = index.next_available('C', timedelta(minutes=30), 7, now=t('09:30'))

    assert window.start == t('12:00')


def test_next_available_respects_horizon():
    index = TimeIntervalIndex()
    now = t('00:00')
    index.occupy('C', now, now + timedelta(days=2))

    assert index.next_available('C', timedelta(minutes=30), 1, now) is None
    assert index.next_available('C', timedelta(minutes=30), 3, now).start == now + timedelta(days=2)


def test_invalid_intervals_are_rejected():
    index = TimeIntervalIndex()

    with pytest.raises(ValidationError):
        index.occupy('C', t('11:00'), t('10:00'))
    with pytest.raises(ValidationError):
        index.is_free('C', t('10:00'), t('10:00'))
    with pytest.raises(ValidationError):
        index.next_available('C', timedelta(0), 7, t('10:00'))


def test_load_rebuilds_from_records():
    index = TimeIntervalIndex()
    index.occupy('C', t('06:00'), t('07:00'))

    index.load('C', [(t('10:00'), t('11:20')), (t('08:00'), t('09:00'))])

    assert [(i.start, i.end) for i in index.intervals('C')] == [
        (t('08:00'), t('09:00')),
        (t('10:00'), t('11:20')),
    ]


def test_concurrent_overlapping_claims_admit_exactly_one():
    index = TimeIntervalIndex()
    barrier = threading.Barrier(16)
    results = []
    results_lock = threading.Lock()

    def claim(offset):
        start = t('10:00') + timedelta(minutes=offset)
        barrier.wait()
        ok = index.try_occupy('C', start, start + timedelta(minutes=80))
        with results_lock:
            results.append(ok)

    threads = [threading.Thread(target=claim, args=(i % 4,)) for i in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 1
    assert len(index.intervals('C')) == 1


def test_concurrent_claims_on_different_chargers_all_succeed():
    index = TimeIntervalIndex()
    results = []
    results_lock = threading.Lock()

    def claim(charger_id):
        ok = index.try_occupy(charger_id, t('10:00'), t('11:00'))
        with results_lock:
            results.append(ok)

    threads = [threading.Thread(target=claim, args=(f'charger-{i}',)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results == [True] * 8
