import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import requests

from models.user import db, Vehicle
from models.charger import Charger
from models.reservation import Reservation
from orchestration_core import (
    Candidate,
    ChargerStatus,
    GeoPoint,
    NotFoundError,
    TimeIntervalIndex,
    ValidationError,
    Weights,
    BLOCKING_RESERVATION_STATUSES,
    charge_minutes,
    energy_needed_kwh,
    haversine_km,
    rank_by_charge,
    rank_by_time,
    utcnow,
)
from orchestration_core.scoring import validate_weights
from services.billing_service import BillingService

logger = logging.getLogger(__name__)

NO_CANDIDATE_MESSAGE = "no charger can satisfy this in time"

CHARGE_WEIGHT_FIELDS = ("distance", "cost", "charge_duration", "delay")
TIME_WEIGHT_FIELDS = ("distance", "cost", "charge_duration", "delay", "energy")


class RoutingClient:
    """外部路程距离服务；未配置、超时或返回异常时回退到直线距离"""

    def __init__(self, url: Optional[str] = None, timeout_seconds: float = 2.0):
        self.url = url
        self.timeout_seconds = timeout_seconds

    def distance_km(self, origin: GeoPoint, destination: GeoPoint) -> float:
        straight = haversine_km(origin, destination)
        if not self.url:
            return straight
        try:
            response = requests.get(self.url, params={
                'origin': f'{origin.latitude},{origin.longitude}',
                'destination': f'{destination.latitude},{destination.longitude}'
            }, timeout=self.timeout_seconds)
            response.raise_for_status()
            return float(response.json()['distance_km'])
        except (requests.RequestException, ValueError, KeyError, TypeError) as e:
            logger.warning("routing lookup failed, using straight-line distance: %s", e)
            return straight


class RecommendationService:
    """充电桩推荐：按偏好权重对候选充电桩打分排序（只读，不修改预约）"""

    def __init__(self, config: Optional[Dict] = None, routing: Optional[RoutingClient] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.config = config or {}
        self.routing = routing or RoutingClient()
        self.clock = clock

    def recommend(self, latitude: float, longitude: float, vehicle_id: str,
                  target_charge_percent: float = 100.0, weights: Optional[Weights] = None,
                  mode: str = 'charge', available_minutes: Optional[float] = None,
                  current_charge_level: Optional[float] = None) -> Dict:
        errors = {}
        if not -90 <= latitude <= 90:
            errors['lat'] = 'must be within [-90, 90]'
        if not -180 <= longitude <= 180:
            errors['lon'] = 'must be within [-180, 180]'
        if not 0 <= target_charge_percent <= 100:
            errors['targetChargePercent'] = 'must be within [0, 100]'
        if current_charge_level is not None and not 0 <= current_charge_level <= 100:
            errors['currentChargeLevel'] = 'must be within [0, 100]'
        if mode not in ('charge', 'time'):
            errors['mode'] = "must be 'charge' or 'time'"
        elif mode == 'time' and (available_minutes is None or available_minutes <= 0):
            errors['availableMinutes'] = 'must be a positive number of minutes'
        if errors:
            raise ValidationError("invalid recommendation request", errors)

        weights = weights or Weights()
        validate_weights(weights, TIME_WEIGHT_FIELDS if mode == 'time' else CHARGE_WEIGHT_FIELDS)

        vehicle = db.session.get(Vehicle, vehicle_id)
        if vehicle is None:
            raise NotFoundError(f"vehicle {vehicle_id} not found")
        current = vehicle.current_charge_level if current_charge_level is None else current_charge_level
        if target_charge_percent <= current:
            raise NotFoundError("vehicle is already at or above the target charge level")

        now = self.clock()
        origin = GeoPoint(latitude, longitude)
        energy_needed = energy_needed_kwh(vehicle.battery_capacity, current, target_charge_percent)

        candidates = []
        own_intervals = self._vehicle_intervals(vehicle.id)
        for charger in self._nearby_chargers(vehicle, origin):
            if mode == 'time':
                candidate = self._time_candidate(charger, energy_needed, available_minutes,
                                                 own_intervals, now)
            else:
                candidate = self._charge_candidate(charger, energy_needed, own_intervals, now)
            if candidate is None:
                continue
            candidate.distance_km = self.routing.distance_km(
                origin, GeoPoint(charger.latitude, charger.longitude)
            )
            candidates.append(candidate)

        if not candidates:
            raise NotFoundError(NO_CANDIDATE_MESSAGE)

        ranked = rank_by_time(candidates, weights) if mode == 'time' else rank_by_charge(candidates, weights)
        best = ranked[0]
        logger.debug("recommendation for vehicle %s: %s (score %.4f of %d candidates)",
                     vehicle.id, best.charger_id, best.score, len(ranked))
        return {
            'mode': mode,
            'charger': best.charger.to_dict(),
            'tCarga': round(best.t_carga, 2),
            'tDemora': round(best.t_demora, 2),
            'energy_kwh': round(best.energy_kwh, 3),
            'estimated_cost': round(best.cost, 2),
            'score': round(best.score, 6),
            'proposal': best.proposal(now),
            'ranking': [c.to_dict() for c in ranked]
        }

    # ------------- 候选 --------------------------------------------------
    def _nearby_chargers(self, vehicle: Vehicle, origin: GeoPoint) -> List[Charger]:
        radius = self.config.get('search_radius_km', 30)
        chargers = Charger.query.filter(
            Charger.connector_type == vehicle.connector_type,
            Charger.status != ChargerStatus.MAINTENANCE.value
        ).order_by(Charger.id).all()
        return [
            c for c in chargers
            if haversine_km(origin, GeoPoint(c.latitude, c.longitude)) <= radius
        ]

    def _vehicle_intervals(self, vehicle_id: str) -> List[tuple]:
        """司机自己的其它预约同样不能与推荐时段重叠"""
        return [
            (r.start_time, r.calculated_end_time)
            for r in Reservation.query.filter(
                Reservation.vehicle_id == vehicle_id,
                Reservation.status.in_(BLOCKING_RESERVATION_STATUSES)
            ).all()
        ]

    def _scratch_index(self, charger_id: str, own_intervals: List[tuple]) -> TimeIntervalIndex:
        """推荐只读：在临时索引上合并充电桩的预约和司机自己的预约"""
        occupied = [
            (r.start_time, r.calculated_end_time)
            for r in Reservation.query.filter(
                Reservation.charger_id == charger_id,
                Reservation.status.in_(BLOCKING_RESERVATION_STATUSES)
            ).all()
        ]
        index = TimeIntervalIndex()
        index.load(charger_id, occupied + own_intervals)
        return index

    def _buffer(self) -> timedelta:
        return timedelta(minutes=self.config.get('buffer_minutes', 20))

    def _charge_candidate(self, charger: Charger, energy_needed: float,
                          own_intervals: List[tuple], now: datetime) -> Optional[Candidate]:
        power = BillingService.resolve_power_kw(charger, self.config.get('default_power_kw', 7.0))
        t_carga = charge_minutes(energy_needed, power)
        charge_span = timedelta(minutes=t_carga)
        horizon_days = self.config.get('recommendation_horizon_days', 2)

        index = self._scratch_index(charger.id, own_intervals)
        if index.is_free(charger.id, now, now + charge_span):
            t_demora = 0.0
        else:
            window = index.next_available(charger.id, charge_span, horizon_days, now)
            if window is None:
                return None
            t_demora = (window.start - now).total_seconds() / 60

        # 建议的预约时段要留出缓冲时间，保证可以直接预约
        bookable = index.next_available(charger.id, charge_span + self._buffer(), horizon_days, now)
        return Candidate(
            charger_id=charger.id,
            distance_km=0.0,
            cost=energy_needed * float(charger.energy_cost or 0),
            t_carga=t_carga,
            t_demora=t_demora,
            energy_kwh=energy_needed,
            proposal_start=bookable.start if bookable else None,
            charger=charger
        )

    def _time_candidate(self, charger: Charger, energy_needed: float, available_minutes: float,
                        own_intervals: List[tuple], now: datetime) -> Optional[Candidate]:
        """时间预算模式：第一个放得下的空闲段，否则取范围内最长的空闲段"""
        power = BillingService.resolve_power_kw(charger, self.config.get('default_power_kw', 7.0))
        wanted = timedelta(minutes=min(charge_minutes(energy_needed, power), available_minutes))
        buffer = self._buffer()
        horizon = now + timedelta(days=self.config.get('recommendation_horizon_days', 2))

        index = self._scratch_index(charger.id, own_intervals)
        chosen = None
        longest = None
        for gap_start, gap_end in index.gaps(charger.id, now, horizon):
            usable = gap_end - gap_start - buffer
            if usable >= wanted:
                chosen = (gap_start, wanted)
                break
            if usable > timedelta(0) and (longest is None or usable > longest[1]):
                longest = (gap_start, usable)
        chosen = chosen or longest
        if chosen is None:
            return None

        start, length = chosen
        window_minutes = length.total_seconds() / 60
        energy_given = min(energy_needed, power * window_minutes / 60)
        return Candidate(
            charger_id=charger.id,
            distance_km=0.0,
            cost=energy_given * float(charger.energy_cost or 0),
            t_carga=charge_minutes(energy_given, power),
            t_demora=(start - now).total_seconds() / 60,
            energy_kwh=energy_given,
            window_minutes=window_minutes,
            charger=charger
        )
