from flask import Blueprint, request, current_app

from utils.response import success_response, handle_engine_errors
from utils.validators import parse_datetime, parse_float, pick, require

# 创建蓝图
reservations_bp = Blueprint('reservations', __name__)


def _service():
    return current_app.extensions['reservation_service']


@reservations_bp.route('', methods=['POST'])
@handle_engine_errors
def create_reservation():
    """创建预约；与已有预约重叠时返回 409 和冲突窗口"""
    data = request.get_json(silent=True) or {}
    fields = require(data,
                     vehicle_id=('vehicleId', 'vehicle_id'),
                     charger_id=('chargerId', 'charger_id'),
                     user_id=('userId', 'user_id'),
                     start_time=('startTime', 'start_time'),
                     end_time=('endTime', 'end_time'))
    estimated = pick(data, 'estimatedChargeTime', 'estimated_charge_time')

    reservation = _service().create_reservation(
        vehicle_id=fields['vehicle_id'],
        charger_id=fields['charger_id'],
        user_id=fields['user_id'],
        start_time=parse_datetime(fields['start_time'], 'startTime'),
        end_time=parse_datetime(fields['end_time'], 'endTime'),
        estimated_charge_time=parse_float(estimated, 'estimatedChargeTime', 0) if estimated is not None else None
    )
    return success_response(data=reservation.to_dict(), message="预约成功", code=201)


@reservations_bp.route('/<reservation_id>', methods=['GET'])
@handle_engine_errors
def get_reservation(reservation_id):
    """预约详情（读取时按时间推进状态）"""
    reservation = _service().get_current_reservation(reservation_id)
    return success_response(data=reservation.to_dict())


@reservations_bp.route('/<reservation_id>/cancel', methods=['POST'])
@handle_engine_errors
def cancel_reservation(reservation_id):
    """取消预约"""
    data = request.get_json(silent=True) or {}
    reservation = _service().cancel_reservation(
        reservation_id,
        reason=pick(data, 'reason'),
        cancelled_by=pick(data, 'cancelledBy', 'cancelled_by') or 'user'
    )
    return success_response(data=reservation.to_dict(), message="预约已取消")


@reservations_bp.route('/vehicle/<vehicle_id>', methods=['GET'])
@handle_engine_errors
def vehicle_reservations(vehicle_id):
    """车辆尚未结束的预约"""
    reservations = _service().get_vehicle_reservations(vehicle_id)
    return success_response(data={
        'vehicle_id': vehicle_id,
        'reservations': [r.to_dict() for r in reservations],
        'total': len(reservations)
    })
