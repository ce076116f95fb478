"""
orchestration_core/__init__.py

充电编排引擎的纯业务逻辑，对外统一导出
"""

from .errors import (
    OrchestrationError,
    ValidationError,
    NotFoundError,
    ConflictError,
    InvalidStateTransition,
)
from .interval_index import TimeIntervalIndex
from .models import (
    ChargerStatus,
    ReservationStatus,
    SessionStatus,
    Party,
    Interval,
    Window,
    GeoPoint,
    Weights,
    Candidate,
    TelemetrySample,
    BLOCKING_RESERVATION_STATUSES,
    TERMINAL_SESSION_STATUSES,
)
from .scoring import (
    haversine_km,
    energy_needed_kwh,
    charge_minutes,
    rank_by_charge,
    rank_by_time,
)
from .session_machine import TimeoutPolicy, TIMEOUT_REASON
from .store import EventBus, KeyedLocks, utcnow
from .telemetry import MeteringFeed, TelemetrySimulator, TelemetryRegistry

__all__ = [
    # 错误
    "OrchestrationError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "InvalidStateTransition",
    # 区间索引
    "TimeIntervalIndex",
    # 数据模型
    "ChargerStatus",
    "ReservationStatus",
    "SessionStatus",
    "Party",
    "Interval",
    "Window",
    "GeoPoint",
    "Weights",
    "Candidate",
    "TelemetrySample",
    "BLOCKING_RESERVATION_STATUSES",
    "TERMINAL_SESSION_STATUSES",
    # 推荐打分
    "haversine_km",
    "energy_needed_kwh",
    "charge_minutes",
    "rank_by_charge",
    "rank_by_time",
    # 会话
    "TimeoutPolicy",
    "TIMEOUT_REASON",
    # 基础设施
    "EventBus",
    "KeyedLocks",
    "utcnow",
    # 计量
    "MeteringFeed",
    "TelemetrySimulator",
    "TelemetryRegistry",
]
