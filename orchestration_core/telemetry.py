"""
计量数据源。TelemetrySimulator 是真实电表的替身：
按固定节拍（tick）累计电量，调用方轮询时才推进时间，不依赖后台线程。
"""
from __future__ import annotations
import random
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .models import TelemetrySample


class MeteringFeed(ABC):
    """编排器只依赖这个接口，可以换成真实的计量数据"""

    @abstractmethod
    def start(self, now: datetime, initial_energy: float = 0.0,
              completed_at: Optional[datetime] = None) -> None: ...

    @abstractmethod
    def status(self, now: datetime) -> dict: ...

    @abstractmethod
    def stop(self, now: datetime) -> dict: ...

    @property
    @abstractmethod
    def energy_delivered(self) -> float: ...

    @property
    @abstractmethod
    def current_power(self) -> float: ...

    @property
    @abstractmethod
    def completed_at(self) -> Optional[datetime]: ...

    @abstractmethod
    def samples(self) -> List[TelemetrySample]: ...

    @abstractmethod
    def idle_minutes(self, now: datetime) -> float: ...


class TelemetrySimulator(MeteringFeed):

    def __init__(self, session_id: str, power_kw: float, target_energy_kwh: float,
                 tick_seconds: float = 60, variation: float = 0.1, recent_samples: int = 5,
                 rng: Optional[random.Random] = None):
        self.session_id = session_id
        self.power_kw = power_kw
        self.target_energy = max(target_energy_kwh, 0.0)
        self.tick = timedelta(seconds=tick_seconds)
        self.variation = variation
        self.recent_samples = recent_samples
        self._rng = rng or random.Random()
        self._lock = threading.Lock()

        self.is_charging = False
        self.started_at: Optional[datetime] = None
        self.stopped_at: Optional[datetime] = None
        self._last_tick: Optional[datetime] = None
        self._energy = 0.0
        self._power = 0.0
        self._completed_at: Optional[datetime] = None
        self._samples: List[TelemetrySample] = []

    # ------------- MeteringFeed -----------------------------------------
    @property
    def energy_delivered(self) -> float:
        return self._energy

    @property
    def current_power(self) -> float:
        return self._power

    @property
    def completed_at(self) -> Optional[datetime]:
        return self._completed_at

    def samples(self) -> List[TelemetrySample]:
        with self._lock:
            return list(self._samples)

    def start(self, now: datetime, initial_energy: float = 0.0,
              completed_at: Optional[datetime] = None) -> None:
        """initial_energy / completed_at 用于重新装载时接上已持久化的计量"""
        with self._lock:
            if self.is_charging:
                return
            self.is_charging = True
            self.started_at = now
            self._last_tick = now
            self._energy = min(initial_energy, self.target_energy)
            self._power = 0.0
            if completed_at is not None:
                self._completed_at = completed_at
            elif self._energy >= self.target_energy:
                self._completed_at = now
            self._samples.append(TelemetrySample(now, 0.0, self._energy))

    def status(self, now: datetime) -> dict:
        with self._lock:
            self._advance(now)
            return self._snapshot(now)

    def stop(self, now: datetime) -> dict:
        with self._lock:
            if self.is_charging:
                self._advance(now)
                self._partial_tick(now)
                self.is_charging = False
                self.stopped_at = now
                self._power = 0.0
            data = self._snapshot(now)
            data["realTimeData"] = [s.to_dict() for s in self._samples]
            return data

    def idle_minutes(self, now: datetime) -> float:
        """充满之后继续占用充电桩的分钟数"""
        if self._completed_at is None:
            return 0.0
        end = self.stopped_at or now
        return max((end - self._completed_at).total_seconds() / 60, 0.0)

    # ------------- 模拟 --------------------------------------------------
    def _draw_power(self) -> float:
        if self.variation <= 0:
            return self.power_kw
        return self.power_kw * self._rng.uniform(1 - self.variation, 1 + self.variation)

    def _accrue(self, at: datetime, span: timedelta) -> None:
        if self._completed_at is not None:
            self._power = 0.0
            return
        power = self._draw_power()
        hours = span.total_seconds() / 3600
        remaining = self.target_energy - self._energy
        added = power * hours
        if added >= remaining:
            # 在本节拍内充满，记录精确的充满时刻
            reached_after = timedelta(hours=remaining / power) if power > 0 else span
            self._completed_at = at - span + reached_after
            added = remaining
        self._energy += added
        self._power = power if self._completed_at is None else 0.0
        self._samples.append(TelemetrySample(at, power, self._energy))

    def _advance(self, now: datetime) -> None:
        if not self.is_charging or self._last_tick is None:
            return
        while self._last_tick + self.tick <= now:
            self._last_tick += self.tick
            self._accrue(self._last_tick, self.tick)

    def _partial_tick(self, now: datetime) -> None:
        if self._last_tick is not None and now > self._last_tick:
            span = now - self._last_tick
            self._last_tick = now
            self._accrue(now, span)

    def _snapshot(self, now: datetime) -> dict:
        end = self.stopped_at or now
        duration = (end - self.started_at).total_seconds() / 60 if self.started_at else 0.0
        return {
            "isCharging": self.is_charging,
            "currentEnergy": round(self._energy, 4),
            "currentPower": round(self._power, 3),
            "targetEnergy": round(self.target_energy, 4),
            "startTime": self.started_at.isoformat() if self.started_at else None,
            "duration": round(duration, 2),
            "completedAt": self._completed_at.isoformat() if self._completed_at else None,
            "recentSamples": [s.to_dict() for s in self._samples[-self.recent_samples:]],
        }


FeedFactory = Callable[[str, float, float], MeteringFeed]


class TelemetryRegistry:
    """session_id -> 计量数据源，每个会话最多一个"""

    def __init__(self, factory: FeedFactory):
        self._factory = factory
        self._lock = threading.Lock()
        self._feeds: Dict[str, MeteringFeed] = {}

    def arm(self, session_id: str, power_kw: float, target_energy_kwh: float,
            now: datetime, initial_energy: float = 0.0,
            completed_at: Optional[datetime] = None) -> MeteringFeed:
        with self._lock:
            feed = self._feeds.get(session_id)
            if feed is None:
                feed = self._factory(session_id, power_kw, target_energy_kwh)
                self._feeds[session_id] = feed
        feed.start(now, initial_energy, completed_at)
        return feed

    def get(self, session_id: str) -> Optional[MeteringFeed]:
        with self._lock:
            return self._feeds.get(session_id)

    def disarm(self, session_id: str) -> Optional[MeteringFeed]:
        with self._lock:
            return self._feeds.pop(session_id, None)

    def active_sessions(self) -> List[str]:
        with self._lock:
            return list(self._feeds)
