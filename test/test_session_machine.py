from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from orchestration_core import InvalidStateTransition, Party, TimeoutPolicy, ValidationError
from orchestration_core import session_machine as sm

CREATED = datetime(2030, 1, 7, 10, 0)


def new_session(status='waiting_confirmations'):
    return SimpleNamespace(status=status, created_at=CREATED, admin_confirmed_at=None,
                           user_confirmed_at=None, timeout_warnings=[])


def minutes(n):
    return CREATED + timedelta(minutes=n)


def test_both_confirmations_reach_ready_to_start():
    session = new_session()

    assert sm.confirm(session, Party.ADMIN, minutes(1))
    assert session.status == 'admin_confirmed'
    assert sm.confirm(session, Party.USER, minutes(2))
    assert session.status == 'ready_to_start'


def test_user_first_confirmation():
    session = new_session()

    sm.confirm(session, Party.USER, minutes(1))

    assert session.status == 'user_confirmed'


def test_repeated_confirmation_keeps_first_timestamp():
    session = new_session()
    sm.confirm(session, Party.ADMIN, minutes(1))

    assert sm.confirm(session, Party.ADMIN, minutes(4)) is False
    assert session.admin_confirmed_at == minutes(1)
    assert session.status == 'admin_confirmed'


def test_confirm_after_ready_is_a_no_op():
    session = new_session()
    sm.confirm(session, Party.ADMIN, minutes(1))
    sm.confirm(session, Party.USER, minutes(2))

    assert sm.confirm(session, Party.USER, minutes(3)) is False
    assert session.status == 'ready_to_start'


@pytest.mark.parametrize('status,action', [
    ('waiting_confirmations', 'start'),
    ('admin_confirmed', 'stop'),
    ('ready_to_start', 'stop'),
    ('charging', 'start'),
    ('completed', 'cancel'),
    ('cancelled', 'confirm'),
])
def test_disallowed_transitions(status, action):
    with pytest.raises(InvalidStateTransition):
        sm.ensure_allowed(new_session(status), action)


def test_parse_party():
    assert sm.parse_party(' Admin ') == Party.ADMIN
    assert sm.parse_party('system', allow_system=True) == Party.SYSTEM
    with pytest.raises(ValidationError):
        sm.parse_party('system')
    with pytest.raises(ValidationError):
        sm.parse_party('operator')


def test_confirmed_party_must_wait_before_cancelling():
    policy = TimeoutPolicy()
    session = new_session()
    sm.confirm(session, Party.ADMIN, minutes(2))

    assert not sm.can_cancel(session, Party.ADMIN, policy, minutes(3))
    assert sm.can_cancel(session, Party.USER, policy, minutes(3))
    assert sm.can_cancel(session, Party.SYSTEM, policy, minutes(3))


def test_cancel_available_to_both_after_five_minutes():
    policy = TimeoutPolicy()
    session = new_session()
    sm.confirm(session, Party.ADMIN, minutes(7))

    now = minutes(8)
    assert 'cancel' in sm.available_actions(session, Party.ADMIN, policy, now)
    assert sm.available_actions(session, Party.USER, policy, now) == ['confirm', 'cancel']
    state = sm.timeout_state(session, policy, now)
    assert state['cancel_available'] and not state['warning'] and not state['auto_cancel_due']


def test_timeout_thresholds():
    policy = TimeoutPolicy()
    session = new_session()

    assert sm.due_warnings(session, policy, minutes(4)) == []
    assert sm.due_warnings(session, policy, minutes(10)) == [
        sm.WARNING_CANCEL_AVAILABLE, sm.WARNING_IMMINENT
    ]
    assert sm.timeout_state(session, policy, minutes(15))['auto_cancel_due']


def test_recorded_warnings_are_not_repeated():
    policy = TimeoutPolicy()
    session = new_session()
    session.timeout_warnings = [{'warning_type': sm.WARNING_CANCEL_AVAILABLE}]

    assert sm.due_warnings(session, policy, minutes(6)) == []


def test_no_timeouts_once_ready():
    policy = TimeoutPolicy()
    session = new_session('ready_to_start')

    assert sm.due_warnings(session, policy, minutes(30)) == []
    assert not sm.timeout_state(session, policy, minutes(30))['auto_cancel_due']


def test_policy_from_config():
    policy = TimeoutPolicy.from_config({
        'cancel_available_minutes': 2,
        'timeout_warning_minutes': 4,
        'auto_cancel_minutes': 6,
    })

    assert (policy.cancel_available_minutes, policy.warning_minutes, policy.auto_cancel_minutes) == (2, 4, 6)
