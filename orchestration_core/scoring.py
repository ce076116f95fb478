"""
多目标推荐打分：纯函数，不依赖数据库。

每项指标在当前候选集合内做 min-max 归一化（0 = 最好，1 = 最差），
权重先归一化为和为 1，再加权求和；分数越低越好，同分按充电桩 ID 排序。
"""
from __future__ import annotations
import math
from dataclasses import fields as dataclass_fields
from typing import Dict, List, Sequence

from .errors import ValidationError
from .models import Candidate, GeoPoint, Weights

EARTH_RADIUS_KM = 6371.0


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    dlat = math.radians(b.latitude - a.latitude)
    dlon = math.radians(b.longitude - a.longitude)
    h = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(a.latitude)) * math.cos(math.radians(b.latitude)) *
         math.sin(dlon / 2) ** 2)
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def energy_needed_kwh(battery_capacity: float, current_pct: float, target_pct: float) -> float:
    return battery_capacity * (target_pct - current_pct) / 100


def charge_minutes(energy_kwh: float, power_kw: float) -> float:
    return energy_kwh / power_kw * 60


def validate_weights(weights: Weights, fields: Sequence[str]) -> Weights:
    errors = {}
    for name in fields:
        value = getattr(weights, name)
        if value is None or math.isnan(value) or value < 0 or value > 1:
            errors[name] = "weight must be within [0, 1]"
    if errors:
        raise ValidationError("invalid preference weights", errors)
    total = sum(getattr(weights, name) for name in fields)
    if total <= 0:
        raise ValidationError("invalid preference weights",
                              {"weights": "at least one weight must be positive"})
    return Weights(**{
        f.name: (getattr(weights, f.name) / total if f.name in fields else 0.0)
        for f in dataclass_fields(Weights)
    })


def min_max(values: Sequence[float], higher_is_better: bool = False) -> List[float]:
    if not values:
        return []
    lo, hi = min(values), max(values)
    if hi == lo:
        return [0.0] * len(values)
    span = hi - lo
    if higher_is_better:
        return [(hi - v) / span for v in values]
    return [(v - lo) / span for v in values]


def _rank(candidates: List[Candidate], metrics: Dict[str, tuple]) -> List[Candidate]:
    """metrics: {名称: (取值函数, 权重, 越大越好)}"""
    columns = {
        name: min_max([getter(c) for c in candidates], higher_is_better)
        for name, (getter, _, higher_is_better) in metrics.items()
    }
    for i, c in enumerate(candidates):
        c.normalized = {name: columns[name][i] for name in metrics}
        c.score = sum(metrics[name][1] * columns[name][i] for name in metrics)
    # 浮点误差不应影响同分时的确定性
    return sorted(candidates, key=lambda c: (round(c.score, 9), c.charger_id))


def rank_by_charge(candidates: List[Candidate], weights: Weights) -> List[Candidate]:
    w = validate_weights(weights, ("distance", "cost", "charge_duration", "delay"))
    return _rank(candidates, {
        "distance": (lambda c: c.distance_km, w.distance, False),
        "cost": (lambda c: c.cost, w.cost, False),
        "charge_duration": (lambda c: c.t_carga, w.charge_duration, False),
        "delay": (lambda c: c.t_demora, w.delay, False),
    })


def rank_by_time(candidates: List[Candidate], weights: Weights) -> List[Candidate]:
    """时间预算模式：充入电量越多越好"""
    w = validate_weights(weights, ("distance", "cost", "charge_duration", "delay", "energy"))
    return _rank(candidates, {
        "distance": (lambda c: c.distance_km, w.distance, False),
        "cost": (lambda c: c.cost, w.cost, False),
        "window": (lambda c: c.window_minutes or 0.0, w.charge_duration, False),
        "delay": (lambda c: c.t_demora, w.delay, False),
        "energy": (lambda c: c.energy_kwh, w.energy, True),
    })
