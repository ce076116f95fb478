from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional


class ChargerStatus(str, Enum):
    AVAILABLE   = "available"
    OCCUPIED    = "occupied"
    MAINTENANCE = "maintenance"


class ReservationStatus(str, Enum):
    UPCOMING  = "upcoming"
    ACTIVE    = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SessionStatus(str, Enum):
    WAITING_CONFIRMATIONS = "waiting_confirmations"
    ADMIN_CONFIRMED       = "admin_confirmed"
    USER_CONFIRMED        = "user_confirmed"
    READY_TO_START        = "ready_to_start"
    CHARGING              = "charging"
    COMPLETED             = "completed"
    CANCELLED             = "cancelled"


class Party(str, Enum):
    ADMIN  = "admin"
    USER   = "user"
    SYSTEM = "system"


# 占用区间的两种状态
BLOCKING_RESERVATION_STATUSES = (ReservationStatus.UPCOMING.value, ReservationStatus.ACTIVE.value)
TERMINAL_SESSION_STATUSES = (SessionStatus.COMPLETED.value, SessionStatus.CANCELLED.value)


@dataclass(frozen=True)
class Interval:
    """半开区间 [start, end)"""
    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and start < self.end

    @property
    def minutes(self) -> float:
        return (self.end - self.start).total_seconds() / 60

    def to_dict(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass
class Window:
    start: datetime
    end: datetime

    def to_dict(self) -> dict:
        return {"found": True, "start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass
class GeoPoint:
    latitude: float
    longitude: float


@dataclass
class Weights:
    distance: float = 0.25
    cost: float = 0.25
    charge_duration: float = 0.25
    delay: float = 0.25
    energy: float = 0.0


@dataclass
class Candidate:
    """推荐候选：一个充电桩及其各项指标"""
    charger_id: str
    distance_km: float
    cost: float
    t_carga: float
    t_demora: float
    energy_kwh: float
    window_minutes: Optional[float] = None
    proposal_start: Optional[datetime] = None   # 含缓冲时间、可直接预约的开始时间
    score: float = 0.0
    normalized: dict = field(default_factory=dict)
    charger: Optional[object] = None

    def proposal(self, now: datetime) -> dict:
        start = self.proposal_start or now + timedelta(minutes=self.t_demora)
        duration = self.window_minutes if self.window_minutes is not None else self.t_carga
        return {
            "start_time": start.isoformat(),
            "end_time": (start + timedelta(minutes=duration)).isoformat(),
        }

    def to_dict(self) -> dict:
        data = {
            "charger_id": self.charger_id,
            "distance_km": round(self.distance_km, 3),
            "cost": round(self.cost, 2),
            "tCarga": round(self.t_carga, 2),
            "tDemora": round(self.t_demora, 2),
            "energy_kwh": round(self.energy_kwh, 3),
            "score": round(self.score, 6),
            "normalized": {k: round(v, 6) for k, v in self.normalized.items()},
        }
        if self.window_minutes is not None:
            data["window_minutes"] = round(self.window_minutes, 2)
        return data


@dataclass
class TelemetrySample:
    timestamp: datetime
    power: float
    energy: float

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "power": round(self.power, 3),
            "energy": round(self.energy, 4),
        }
