import random
from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from app import create_app
from models.user import db, User, Vehicle
from models.charger import Charger

BASE_LAT = 40.4168
BASE_LON = -3.7038


class FakeClock:
    """可手动推进的时钟"""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, value):
        self.now = value
        return self.now


def at(hhmm, day=7):
    hour, minute = (int(part) for part in hhmm.split(':'))
    return datetime(2030, 1, day, hour, minute)


@pytest.fixture
def clock():
    return FakeClock(at('09:30'))


@pytest.fixture
def app(clock):
    app, _ = create_app('testing', clock=clock, rng=random.Random(7))
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app):
    return SimpleNamespace(
        reservations=app.extensions['reservation_service'],
        recommendations=app.extensions['recommendation_service'],
        charging=app.extensions['charging_service'],
        events=app.extensions['event_bus'],
    )


def _charger(name, owner, lat_offset=0.0, power=50.0, energy_cost='340', parking_cost='28',
             connector='CCS', status='available'):
    return Charger(
        name=name,
        owner_id=owner.id,
        latitude=BASE_LAT + lat_offset,
        longitude=BASE_LON,
        connector_type=connector,
        power_output=power,
        energy_cost=Decimal(energy_cost),
        parking_cost=Decimal(parking_cost),
        status=status
    )


@pytest.fixture
def world(app):
    """一个运营方、两个司机、五个充电桩"""
    admin = User(name='station-operator', user_type='admin')
    driver = User(name='driver-one')
    other_driver = User(name='driver-two')
    db.session.add_all([admin, driver, other_driver])
    db.session.flush()

    vehicle = Vehicle(user_id=driver.id, model='Model A', connector_type='CCS',
                      battery_capacity=60.0, current_charge_level=20.0)
    other_vehicle = Vehicle(user_id=other_driver.id, model='Model B', connector_type='CCS',
                            battery_capacity=40.0, current_charge_level=50.0)

    fast = _charger('C', admin)
    slow = _charger('D', admin, lat_offset=0.05, power=22.0, energy_cost='200', parking_cost='10')
    broken = _charger('E', admin, lat_offset=0.01, status='maintenance')
    far = _charger('F', admin, lat_offset=1.0)
    type2 = _charger('G', admin, lat_offset=0.02, connector='Type2')

    db.session.add_all([vehicle, other_vehicle, fast, slow, broken, far, type2])
    db.session.commit()

    return SimpleNamespace(
        admin=admin, driver=driver, other_driver=other_driver,
        vehicle=vehicle, other_vehicle=other_vehicle,
        fast=fast, slow=slow, broken=broken, far=far, type2=type2,
    )


@pytest.fixture
def book(services, world):
    """book('10:00', '11:00') -> 司机一在快充桩 C 上的预约"""
    def _book(start, end, vehicle=None, charger=None):
        vehicle = vehicle or world.vehicle
        charger = charger or world.fast
        return services.reservations.create_reservation(
            vehicle.id, charger.id, vehicle.user_id, at(start), at(end)
        )
    return _book
