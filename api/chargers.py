from flask import Blueprint, request, current_app

from services.billing_service import BillingService
from utils.response import success_response, handle_engine_errors
from utils.validators import parse_datetime, parse_float, pick, require

# 创建蓝图
chargers_bp = Blueprint('chargers', __name__)


@chargers_bp.route('/<charger_id>/next-available', methods=['GET'])
@handle_engine_errors
def next_available(charger_id):
    """查找充电桩下一个空闲窗口"""
    fields = require(request.args, min_duration=('minDuration', 'min_duration'))
    look_ahead = pick(request.args, 'lookAheadDays', 'look_ahead_days')

    window = current_app.extensions['reservation_service'].next_available(
        charger_id,
        parse_float(fields['min_duration'], 'minDuration'),
        parse_float(look_ahead, 'lookAheadDays') if look_ahead is not None else None
    )
    if window is None:
        return success_response(data={'found': False}, message="范围内没有足够长的空闲窗口")
    return success_response(data=window)


@chargers_bp.route('/<charger_id>/availability', methods=['GET'])
@handle_engine_errors
def availability(charger_id):
    """检查时间段是否空闲"""
    fields = require(request.args, start=('start', 'startTime'), end=('end', 'endTime'))
    result = current_app.extensions['reservation_service'].check_availability(
        charger_id,
        parse_datetime(fields['start'], 'start'),
        parse_datetime(fields['end'], 'end')
    )
    return success_response(data=result)


@chargers_bp.route('/<charger_id>/active-session', methods=['GET'])
@handle_engine_errors
def active_session(charger_id):
    """充电桩当前未结束的会话"""
    session = current_app.extensions['charging_service'].active_session_for_charger(charger_id)
    return success_response(data={'session': session.to_dict() if session else None})


@chargers_bp.route('/<charger_id>/usage-stats', methods=['GET'])
@handle_engine_errors
def usage_stats(charger_id):
    """充电桩使用统计"""
    start_date = pick(request.args, 'startDate', 'start_date')
    end_date = pick(request.args, 'endDate', 'end_date')
    stats = BillingService.get_charger_usage_stats(
        charger_id,
        group_by=pick(request.args, 'groupBy', 'group_by'),
        start_date=parse_datetime(start_date, 'startDate') if start_date else None,
        end_date=parse_datetime(end_date, 'endDate') if end_date else None
    )
    return success_response(data=stats)
