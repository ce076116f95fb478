from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime
from typing import Dict, List, Optional

from models.user import db
from models.charging import ChargingSession
from models.charger import Charger
from orchestration_core import NotFoundError, ValidationError

CENT = Decimal('0.01')


def _money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENT, rounding=ROUND_HALF_UP)


class BillingService:
    """计费与充电桩使用统计"""

    @staticmethod
    def calculate_session_cost(energy_kwh: float, energy_price, idle_minutes: float,
                               parking_price) -> Dict[str, Decimal]:
        """
        电费 = 电量 × 电价
        占位费 = 充满后仍占用的分钟数 × 每分钟占位费（停止时刚好充满则为 0）
        """
        energy_cost = _money(Decimal(str(energy_kwh)) * Decimal(str(energy_price or 0)))
        parking_cost = _money(Decimal(str(max(idle_minutes, 0.0))) * Decimal(str(parking_price or 0)))
        return {
            'energy_cost': energy_cost,
            'parking_cost': parking_cost,
            'total_cost': energy_cost + parking_cost
        }

    @staticmethod
    def historical_power_kw(charger_id: str) -> Optional[float]:
        """已完成会话的平均充电功率（电量 / 充电小时数），没有历史时返回 None"""
        sessions = ChargingSession.query.filter(
            ChargingSession.charger_id == charger_id,
            ChargingSession.status == 'completed',
            ChargingSession.started_at.isnot(None),
            ChargingSession.ended_at.isnot(None)
        ).all()

        rates = []
        for session in sessions:
            end = session.charge_completed_at or session.ended_at
            hours = (end - session.started_at).total_seconds() / 3600
            if hours > 0 and (session.energy_delivered or 0) > 0:
                rates.append(session.energy_delivered / hours)
        if not rates:
            return None
        return sum(rates) / len(rates)

    @staticmethod
    def resolve_power_kw(charger: Charger, default_kw: float) -> float:
        """额定功率 -> 历史平均功率 -> 默认功率"""
        if charger.power_output and charger.power_output > 0:
            return float(charger.power_output)
        historical = BillingService.historical_power_kw(charger.id)
        if historical:
            return historical
        return float(default_kw)

    @staticmethod
    def get_charger_usage_stats(charger_id: str, group_by: Optional[str] = None,
                                start_date: Optional[datetime] = None,
                                end_date: Optional[datetime] = None) -> Dict:
        """充电桩使用统计：次数、电量、时长、收入，可按天 / 月分组"""
        if group_by not in (None, 'day', 'month'):
            raise ValidationError("invalid grouping", {'group_by': "must be 'day' or 'month'"})

        charger = db.session.get(Charger, charger_id)
        if charger is None:
            raise NotFoundError(f"charger {charger_id} not found")

        query = ChargingSession.query.filter(
            ChargingSession.charger_id == charger_id,
            ChargingSession.status == 'completed'
        )
        if start_date:
            query = query.filter(ChargingSession.ended_at >= start_date)
        if end_date:
            query = query.filter(ChargingSession.ended_at < end_date)
        sessions = query.order_by(ChargingSession.ended_at).all()

        def _summary(items: List[ChargingSession]) -> Dict:
            minutes = sum(
                (s.ended_at - s.started_at).total_seconds() / 60
                for s in items if s.started_at and s.ended_at
            )
            revenue = sum((_money(s.total_cost) for s in items), Decimal('0'))
            return {
                'session_count': len(items),
                'energy_kwh': round(sum(s.energy_delivered or 0.0 for s in items), 3),
                'charging_minutes': round(minutes, 2),
                'revenue': float(revenue)
            }

        result = {
            'charger_id': charger_id,
            'summary': _summary(sessions)
        }

        if group_by:
            key_format = '%Y-%m-%d' if group_by == 'day' else '%Y-%m'
            groups: Dict[str, List[ChargingSession]] = {}
            for session in sessions:
                groups.setdefault(session.ended_at.strftime(key_format), []).append(session)
            result['group_by'] = group_by
            result['periods'] = [
                dict(period=period, **_summary(items))
                for period, items in sorted(groups.items())
            ]
        return result
