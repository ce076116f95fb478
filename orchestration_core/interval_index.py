"""
按充电桩维护的有序占用区间集合。

区间为半开区间 [start, end)，同一充电桩内的区间两两不相交，
相邻或重叠的区间在 occupy 时合并，因此 starts / ends 两个列表都保持有序，
所有查询都可以用二分完成。
"""
from __future__ import annotations
from bisect import bisect_left, bisect_right
from datetime import datetime, timedelta
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .errors import ValidationError
from .models import Interval, Window
from .store import KeyedLocks


class TimeIntervalIndex:

    def __init__(self, locks: Optional[KeyedLocks] = None):
        self._locks = locks or KeyedLocks()
        self._starts: Dict[str, List[datetime]] = {}
        self._ends: Dict[str, List[datetime]] = {}

    # ------------- 锁 --------------------------------------------------
    def lock(self, charger_id: str):
        """同一充电桩的 检查 + 占用 必须在这把锁内完成"""
        return self._locks(charger_id)

    # ------------- 装载 / 快照 ------------------------------------------
    def load(self, charger_id: str, intervals: Iterable[Tuple[datetime, datetime]]) -> None:
        """用给定区间重建某个充电桩的索引（从预约记录推导）"""
        with self.lock(charger_id):
            self._starts[charger_id] = []
            self._ends[charger_id] = []
            for start, end in sorted(intervals):
                if start < end:
                    self._occupy(charger_id, start, end)

    def intervals(self, charger_id: str) -> List[Interval]:
        with self.lock(charger_id):
            starts, ends = self._lists(charger_id)
            return [Interval(s, e) for s, e in zip(starts, ends)]

    def _lists(self, charger_id: str):
        return self._starts.setdefault(charger_id, []), self._ends.setdefault(charger_id, [])

    @staticmethod
    def _check(start: datetime, end: datetime) -> None:
        if start >= end:
            raise ValidationError("interval start must be before end",
                                  {"interval": f"{start.isoformat()} >= {end.isoformat()}"})

    # ------------- 查询 --------------------------------------------------
    def is_free(self, charger_id: str, start: datetime, end: datetime) -> bool:
        self._check(start, end)
        with self.lock(charger_id):
            starts, ends = self._lists(charger_id)
            i = bisect_right(ends, start)          # 第一个 end > start 的区间
            return i == len(starts) or starts[i] >= end

    def gaps(self, charger_id: str, now: datetime, limit: datetime) -> Iterator[Tuple[datetime, datetime]]:
        """从 now 到 limit 之间的空闲区间，按时间顺序"""
        with self.lock(charger_id):
            starts, ends = self._lists(charger_id)
            starts, ends = list(starts), list(ends)
        cursor = now
        for i in range(bisect_right(ends, now), len(starts)):
            if cursor >= limit:
                return
            gap_end = min(starts[i], limit)
            if gap_end > cursor:
                yield cursor, gap_end
            cursor = max(cursor, ends[i])
        if cursor < limit:
            yield cursor, limit

    def next_available(self, charger_id: str, duration: timedelta, horizon_days: float,
                       now: datetime) -> Optional[Window]:
        """返回 horizon 内第一个长度 >= duration 的空闲窗口，找不到返回 None"""
        if duration <= timedelta(0):
            raise ValidationError("duration must be positive", {"duration": str(duration)})
        limit = now + timedelta(days=horizon_days)
        for gap_start, gap_end in self.gaps(charger_id, now, limit):
            if gap_end - gap_start >= duration:
                return Window(gap_start, gap_start + duration)
        return None

    # ------------- 修改 --------------------------------------------------
    def occupy(self, charger_id: str, start: datetime, end: datetime) -> None:
        self._check(start, end)
        with self.lock(charger_id):
            self._occupy(charger_id, start, end)

    def try_occupy(self, charger_id: str, start: datetime, end: datetime) -> bool:
        """原子的 检查 + 占用；区间已被占用时返回 False"""
        with self.lock(charger_id):
            if not self.is_free(charger_id, start, end):
                return False
            self._occupy(charger_id, start, end)
            return True

    def _occupy(self, charger_id: str, start: datetime, end: datetime) -> None:
        starts, ends = self._lists(charger_id)
        lo = bisect_left(ends, start)     # 第一个 end >= start（相接也合并）
        hi = bisect_right(starts, end)    # 所有 start <= end
        if lo < hi:
            start = min(start, starts[lo])
            end = max(end, ends[hi - 1])
        starts[lo:hi] = [start]
        ends[lo:hi] = [end]

    def release(self, charger_id: str, start: datetime, end: datetime) -> None:
        """从占用集合中减去 [start, end)，被合并过的相邻区间会被拆开"""
        self._check(start, end)
        with self.lock(charger_id):
            starts, ends = self._lists(charger_id)
            lo = bisect_right(ends, start)
            hi = bisect_left(starts, end)
            new_starts, new_ends = [], []
            for i in range(lo, hi):
                if starts[i] < start:
                    new_starts.append(starts[i])
                    new_ends.append(start)
                if ends[i] > end:
                    new_starts.append(end)
                    new_ends.append(ends[i])
            starts[lo:hi] = new_starts
            ends[lo:hi] = new_ends
