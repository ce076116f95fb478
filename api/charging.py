from flask import Blueprint, request, current_app

from utils.response import success_response, handle_engine_errors
from utils.validators import pick, require

# 创建蓝图
charging_bp = Blueprint('charging', __name__)


def _service():
    return current_app.extensions['charging_service']


@charging_bp.route('/initiate', methods=['POST'])
@handle_engine_errors
def initiate_session():
    """发起充电会话（等待双方确认）"""
    data = request.get_json(silent=True) or {}
    fields = require(data,
                     reservation_id=('reservationId', 'reservation_id'),
                     charger_id=('chargerId', 'charger_id'),
                     vehicle_id=('vehicleId', 'vehicle_id'),
                     user_id=('userId', 'user_id'),
                     admin_id=('adminId', 'admin_id'))

    session, created = _service().initiate_session(**fields)
    if created:
        return success_response(data=session.to_dict(), message="充电会话已创建，等待双方确认", code=201)
    return success_response(data=session.to_dict(), message="该预约已有进行中的充电会话")


@charging_bp.route('/<session_id>', methods=['GET'])
@handle_engine_errors
def get_session(session_id):
    """会话详情"""
    return success_response(data=_service().get_session(session_id).to_detail_dict())


@charging_bp.route('/<session_id>/confirm', methods=['POST'])
@handle_engine_errors
def confirm_session(session_id):
    """运营方 / 司机确认"""
    data = request.get_json(silent=True) or {}
    fields = require(data, user_type=('userType', 'user_type'))
    session, changed = _service().confirm(session_id, fields['user_type'])
    message = "确认成功" if changed else "已确认，无需重复确认"
    return success_response(data=session.to_dict(), message=message)


@charging_bp.route('/<session_id>/start', methods=['POST'])
@handle_engine_errors
def start_charging(session_id):
    """开始充电"""
    session = _service().start_charging(session_id)
    return success_response(data=session.to_dict(), message="开始充电")


@charging_bp.route('/<session_id>/stop', methods=['POST'])
@handle_engine_errors
def stop_charging(session_id):
    """结束充电并计费"""
    data = request.get_json(silent=True) or {}
    session = _service().stop_charging(session_id, pick(data, 'stoppedBy', 'stopped_by') or 'user')
    return success_response(data=session.to_detail_dict(), message="充电已结束")


@charging_bp.route('/<session_id>/cancel', methods=['POST'])
@handle_engine_errors
def cancel_session(session_id):
    """取消会话"""
    data = request.get_json(silent=True) or {}
    fields = require(data, cancelled_by=('cancelledBy', 'cancelled_by'))
    session = _service().cancel_session(session_id, fields['cancelled_by'], pick(data, 'reason'))
    return success_response(data=session.to_dict(), message="充电会话已取消")


@charging_bp.route('/<session_id>/status', methods=['GET'])
@handle_engine_errors
def session_status(session_id):
    """轮询会话状态和实时计量"""
    return success_response(data=_service().get_status(session_id))


@charging_bp.route('/reservation/<reservation_id>/active', methods=['GET'])
@handle_engine_errors
def active_session_for_reservation(reservation_id):
    """预约当前未结束的会话"""
    session = _service().active_session_for_reservation(reservation_id)
    return success_response(data={'session': session.to_dict() if session else None})


@charging_bp.route('/events', methods=['GET'])
@handle_engine_errors
def recent_events():
    """最近的领域事件（推送通道之外的轮询方式），可按用户过滤"""
    user_id = pick(request.args, 'userId', 'user_id')
    events = current_app.extensions['event_bus'].peek_events()
    if user_id:
        events = [
            e for e in events
            if user_id in (e['data'].get('user_id'), e['data'].get('admin_id'))
        ]
    return success_response(data={'events': events, 'total': len(events)})
