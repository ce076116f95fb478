import json

import pytest
import requests

from conftest import BASE_LAT, BASE_LON, at
from orchestration_core import GeoPoint, NotFoundError, ValidationError, Weights
from services.recommendation_service import NO_CANDIDATE_MESSAGE, RoutingClient


def query(world, **extra):
    params = {'lat': BASE_LAT, 'lon': BASE_LON, 'vehicleId': world.vehicle.id, 'targetChargePercent': 100}
    params.update(extra)
    return params


def test_free_fast_charger_full_charge(client, world):
    resp = client.get('/api/recommendations', query_string=query(world))

    assert resp.status_code == 200
    data = resp.get_json()['data']
    assert data['charger']['id'] == world.fast.id
    assert data['energy_kwh'] == pytest.approx(48.0)
    assert data['tCarga'] == pytest.approx(57.6)
    assert data['tDemora'] == 0
    assert data['proposal'] == {'start_time': '2030-01-07T09:30:00', 'end_time': '2030-01-07T10:27:36'}


def test_candidates_are_filtered(services, world):
    result = services.recommendations.recommend(BASE_LAT, BASE_LON, world.vehicle.id, 100)

    ranked_ids = [c['charger_id'] for c in result['ranking']]
    assert sorted(ranked_ids) == sorted([world.fast.id, world.slow.id])
    assert world.broken.id not in ranked_ids
    assert world.far.id not in ranked_ids
    assert world.type2.id not in ranked_ids


def test_default_weights_and_cost_only_weights(services, world):
    default = services.recommendations.recommend(BASE_LAT, BASE_LON, world.vehicle.id, 100)
    assert default['charger']['id'] == world.fast.id
    assert default['ranking'][0]['score'] == pytest.approx(0.25)
    assert default['ranking'][1]['score'] == pytest.approx(0.5)

    cost_only = Weights(distance=0, cost=1, charge_duration=0, delay=0)
    cheap = services.recommendations.recommend(BASE_LAT, BASE_LON, world.vehicle.id, 100, cost_only)
    assert cheap['charger']['id'] == world.slow.id
    assert cheap['estimated_cost'] == pytest.approx(48 * 200)


def test_weights_as_json_parameter(client, world):
    weights = json.dumps({'distance': 0, 'cost': 1, 'chargeDuration': 0, 'delay': 0})

    resp = client.get('/api/recommendations', query_string=query(world, weights=weights))

    assert resp.get_json()['data']['charger']['id'] == world.slow.id


def test_busy_charger_reports_wait(services, world, book):
    book('09:30', '10:00', vehicle=world.other_vehicle)

    result = services.recommendations.recommend(BASE_LAT, BASE_LON, world.vehicle.id, 100)

    fast = next(c for c in result['ranking'] if c['charger_id'] == world.fast.id)
    assert fast['tDemora'] == pytest.approx(50.0)


def test_no_wait_when_charge_fits_before_next_booking(services, world, book):
    book('10:40', '11:00', vehicle=world.other_vehicle)

    result = services.recommendations.recommend(BASE_LAT, BASE_LON, world.vehicle.id, 100)

    fast = next(c for c in result['ranking'] if c['charger_id'] == world.fast.id)
    assert fast['tDemora'] == 0
    assert result['charger']['id'] == world.fast.id
    # 建议时段要留出缓冲，只能排在已有预约之后
    assert result['proposal'] == {'start_time': '2030-01-07T11:20:00', 'end_time': '2030-01-07T12:17:36'}


def test_own_reservations_block_the_proposal(services, world, book):
    book('09:30', '10:30', charger=world.slow)

    result = services.recommendations.recommend(BASE_LAT, BASE_LON, world.vehicle.id, 100)

    fast = next(c for c in result['ranking'] if c['charger_id'] == world.fast.id)
    assert fast['tDemora'] == pytest.approx(80.0)


def test_fully_booked_chargers_are_dropped(services, world):
    for day in (7, 8, 9):
        for charger, vehicle in ((world.fast, world.other_vehicle), (world.slow, world.other_vehicle)):
            start = at('00:00', day) if day > 7 else at('09:30')
            services.reservations.create_reservation(
                vehicle.id, charger.id, vehicle.user_id, start, at('23:40', day)
            )

    with pytest.raises(NotFoundError) as exc:
        services.recommendations.recommend(BASE_LAT, BASE_LON, world.vehicle.id, 100)

    assert exc.value.message == NO_CANDIDATE_MESSAGE


def test_target_must_exceed_current_level(client, world):
    resp = client.get('/api/recommendations', query_string=query(world, targetChargePercent=20))

    assert resp.status_code == 404
    assert resp.get_json()['error_type'] == 'NOT_FOUND'


def test_current_level_override(services, world):
    result = services.recommendations.recommend(BASE_LAT, BASE_LON, world.vehicle.id, 100,
                                                current_charge_level=60)

    assert result['energy_kwh'] == pytest.approx(24.0)


@pytest.mark.parametrize('extra,field', [
    ({'lat': 123}, 'lat'),
    ({'targetChargePercent': 140}, 'targetChargePercent'),
    ({'distance': 2}, 'distance'),
    ({'distance': 0, 'cost': 0, 'chargeDuration': 0, 'delay': 0}, 'weights'),
    ({'mode': 'time'}, 'availableMinutes'),
    ({'mode': 'fastest'}, 'mode'),
])
def test_invalid_requests_are_rejected(client, world, extra, field):
    resp = client.get('/api/recommendations', query_string=query(world, **extra))

    assert resp.status_code == 400
    assert field in resp.get_json()['errors']


def test_no_compatible_charger(services, world):
    world.vehicle.connector_type = 'CHAdeMO'

    with pytest.raises(NotFoundError):
        services.recommendations.recommend(BASE_LAT, BASE_LON, world.vehicle.id, 100)


def test_recommendation_is_deterministic(services, world):
    winners = {
        services.recommendations.recommend(BASE_LAT, BASE_LON, world.vehicle.id, 100)['charger']['id']
        for _ in range(5)
    }

    assert winners == {world.fast.id}


def test_time_budget_mode_maximizes_energy(client, world):
    resp = client.get('/api/recommendations', query_string=query(world, mode='time', availableMinutes=30))

    data = resp.get_json()['data']
    assert data['mode'] == 'time'
    assert data['charger']['id'] == world.fast.id
    by_id = {c['charger_id']: c for c in data['ranking']}
    assert by_id[world.fast.id]['energy_kwh'] == pytest.approx(25.0)
    assert by_id[world.fast.id]['window_minutes'] == pytest.approx(30.0)
    assert by_id[world.slow.id]['energy_kwh'] == pytest.approx(11.0)


def test_time_budget_uses_longest_gap_when_nothing_fits(services, world, book):
    book('10:30', '23:40', vehicle=world.other_vehicle)
    for day in (8, 9):
        services.reservations.create_reservation(
            world.other_vehicle.id, world.fast.id, world.other_driver.id, at('00:00', day), at('23:40', day)
        )

    result = services.recommendations.recommend(
        BASE_LAT, BASE_LON, world.vehicle.id, 100, mode='time', available_minutes=90,
        weights=Weights(distance=0.2, cost=0.2, charge_duration=0.2, delay=0.2, energy=0.2)
    )

    fast = next(c for c in result['ranking'] if c['charger_id'] == world.fast.id)
    assert fast['window_minutes'] == pytest.approx(40.0)
    assert fast['energy_kwh'] == pytest.approx(50 * 40 / 60, abs=1e-3)
    assert fast['tDemora'] == 0


def test_routing_falls_back_to_straight_line(monkeypatch):
    def boom(*args, **kwargs):
        raise requests.Timeout('slow routing')

    monkeypatch.setattr(requests, 'get', boom)
    client = RoutingClient('http://routing.invalid/distance', timeout_seconds=0.1)

    distance = client.distance_km(GeoPoint(BASE_LAT, BASE_LON), GeoPoint(BASE_LAT + 0.05, BASE_LON))

    assert distance == pytest.approx(5.56, abs=0.05)


def test_routing_service_distance_is_used(monkeypatch):
    class Response:
        def raise_for_status(self):
            pass

        def json(self):
            return {'distance_km': 7.5}

    calls = []

    def fake_get(url, params=None, timeout=None):
        calls.append(timeout)
        return Response()

    monkeypatch.setattr(requests, 'get', fake_get)
    client = RoutingClient('http://routing.invalid/distance', timeout_seconds=0.1)

    assert client.distance_km(GeoPoint(0, 0), GeoPoint(0, 0.01)) == 7.5
    assert calls == [0.1]


def test_validation_before_lookup(services):
    with pytest.raises(ValidationError):
        services.recommendations.recommend(BASE_LAT, BASE_LON, 'missing', 100,
                                           Weights(distance=0, cost=0, charge_duration=0, delay=0))
