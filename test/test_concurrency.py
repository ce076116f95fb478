import random
import threading

import pytest

from app import create_app
from conftest import at
from models.user import db
from models.reservation import Reservation
from models.charging import ChargingSession
from orchestration_core import OrchestrationError, TERMINAL_SESSION_STATUSES


@pytest.fixture
def app(clock, tmp_path):
    """多个线程各自持有连接，需要文件数据库"""
    app, _ = create_app(
        'testing', clock=clock, rng=random.Random(7),
        SQLALCHEMY_DATABASE_URI=f"sqlite:///{tmp_path / 'engine.db'}",
        SQLALCHEMY_ENGINE_OPTIONS={'connect_args': {'timeout': 30}},
    )
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


def race(app, *calls):
    """每个调用一个线程、一个应用上下文，同时放行；返回 'ok' 或错误类型"""
    barrier = threading.Barrier(len(calls))
    outcomes = [None] * len(calls)

    def run(position, call):
        with app.app_context():
            barrier.wait()
            try:
                call()
                outcomes[position] = 'ok'
            except OrchestrationError as exc:
                outcomes[position] = exc.error_type
            except Exception as exc:
                outcomes[position] = repr(exc)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=run, args=(i, call)) for i, call in enumerate(calls)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    db.session.expire_all()
    return outcomes


@pytest.fixture
def ready_session(services, world, book, clock):
    """双方都已确认、等待开始的会话 ID"""
    reservation = book('10:00', '11:00')
    clock.set(at('10:00'))
    session, _ = services.charging.initiate_session(
        reservation.id, world.fast.id, world.vehicle.id, world.driver.id, world.admin.id
    )
    services.charging.confirm(session.id, 'admin')
    services.charging.confirm(session.id, 'user')
    return session.id


def test_overlapping_reservations_admit_exactly_one(app, services, world):
    vehicle_id, user_id = world.other_vehicle.id, world.other_driver.id
    charger_id = world.fast.id

    def book_at(minute):
        start = at('10:00').replace(minute=minute)
        return lambda: services.reservations.create_reservation(
            vehicle_id, charger_id, user_id, start, at('11:00')
        )

    outcomes = race(app, *(book_at(minute) for minute in (0, 5, 10, 15, 20, 25, 30, 35)))

    assert outcomes.count('ok') == 1
    assert sorted(set(outcomes) - {'ok'}) == ['CONFLICT']
    assert Reservation.query.filter_by(charger_id=charger_id).count() == 1


def test_reservations_on_different_chargers_do_not_block(app, services, world):
    vehicle_id, user_id = world.other_vehicle.id, world.other_driver.id
    charger_ids = [world.fast.id, world.slow.id]

    outcomes = race(app, *(
        (lambda cid=cid: services.reservations.create_reservation(
            vehicle_id, cid, user_id, at('10:00'), at('11:00')))
        for cid in charger_ids
    ))

    assert outcomes == ['ok', 'ok']


def test_booking_sees_reservation_committed_elsewhere(app, services, world):
    vehicle_id, user_id, charger_id = world.other_vehicle.id, world.other_driver.id, world.fast.id
    # 本线程先打开读事务
    assert Reservation.query.count() == 0

    assert race(app, lambda: services.reservations.create_reservation(
        vehicle_id, charger_id, user_id, at('10:00'), at('11:00'))) == ['ok']

    with pytest.raises(OrchestrationError) as exc:
        services.reservations.create_reservation(vehicle_id, charger_id, user_id, at('10:30'), at('11:30'))
    assert exc.value.error_type == 'CONFLICT'


def test_concurrent_start_admits_exactly_one(app, services, ready_session):
    outcomes = race(app, *([lambda: services.charging.start_charging(ready_session)] * 4))

    assert outcomes.count('ok') == 1
    assert sorted(set(outcomes) - {'ok'}) == ['INVALID_STATE_TRANSITION']
    assert services.charging.get_session(ready_session).status == 'charging'
    assert services.charging.telemetry.active_sessions() == [ready_session]
    types = [e['type'] for e in services.events.peek_events()]
    assert types.count('session.started') == 1


def test_concurrent_stop_bills_once(app, services, ready_session, clock):
    services.charging.start_charging(ready_session)
    clock.advance(minutes=20)

    outcomes = race(app,
                    lambda: services.charging.stop_charging(ready_session, 'user'),
                    lambda: services.charging.stop_charging(ready_session, 'admin'),
                    lambda: services.charging.stop_charging(ready_session, 'user'))

    assert outcomes.count('ok') == 1
    assert services.charging.get_session(ready_session).status == 'completed'
    types = [e['type'] for e in services.events.peek_events()]
    assert types.count('session.completed') == 1


def test_cancel_and_initiate_never_both_succeed(app, services, world, book, clock):
    ids = (world.fast.id, world.vehicle.id, world.driver.id, world.admin.id)
    for hour in range(10, 15):
        reservation_id = book(f'{hour}:00', f'{hour}:40').id
        clock.set(at(f'{hour}:00'))

        outcomes = race(
            app,
            lambda: services.reservations.cancel_reservation(reservation_id, 'changed plans'),
            lambda: services.charging.initiate_session(reservation_id, *ids),
        )

        assert outcomes.count('ok') == 1, outcomes
        reservation = services.reservations.get_reservation(reservation_id)
        live = ChargingSession.query.filter(
            ChargingSession.reservation_id == reservation_id,
            ChargingSession.status.notin_(TERMINAL_SESSION_STATUSES)
        ).all()
        if reservation.status == 'cancelled':
            assert live == []
        else:
            assert len(live) == 1
            # 结束本轮会话，充电桩留给下一轮
            services.charging.cancel_session(live[0].id, 'user', 'round over')
