import logging

from flask import request, current_app
from flask_socketio import join_room, leave_room, emit

from orchestration_core import OrchestrationError, utcnow

logger = logging.getLogger(__name__)


def register_socketio_events(socketio):
    """注册WebSocket事件处理器"""

    @socketio.on('connect')
    def handle_connect():
        """处理客户端连接"""
        logger.debug("client connected: %s", request.sid)
        emit('connected', {'message': '连接成功', 'sid': request.sid})

    @socketio.on('disconnect')
    def handle_disconnect():
        """处理客户端断开连接"""
        logger.debug("client disconnected: %s", request.sid)

    @socketio.on('join_user_room')
    def handle_join_user_room(data):
        """司机 / 运营方加入个人房间以接收会话和预约事件"""
        user_id = (data or {}).get('user_id')
        if user_id:
            room = f'user_{user_id}'
            join_room(room)
            emit('room_joined', {
                'message': f'已加入用户房间: {room}',
                'room': room,
                'user_id': user_id
            })
        else:
            emit('error', {'message': '用户ID不能为空'})

    @socketio.on('leave_user_room')
    def handle_leave_user_room(data):
        """用户离开个人房间"""
        user_id = (data or {}).get('user_id')
        if user_id:
            room = f'user_{user_id}'
            leave_room(room)
            emit('room_left', {
                'message': f'已离开用户房间: {room}',
                'room': room,
                'user_id': user_id
            })

    @socketio.on('request_session_status')
    def handle_request_session_status(data):
        """客户端请求会话状态（与轮询接口返回相同内容）"""
        session_id = (data or {}).get('session_id')
        if not session_id:
            emit('error', {'message': '会话ID不能为空'})
            return
        charging_service = current_app.extensions.get('charging_service')
        if charging_service is None:
            emit('error', {'message': '充电服务不可用'})
            return
        try:
            emit('session_status', charging_service.get_status(session_id))
        except OrchestrationError as e:
            emit('error', {'message': e.message, 'error_type': e.error_type})

    @socketio.on('ping')
    def handle_ping():
        """处理心跳检测"""
        emit('pong', {'timestamp': utcnow().isoformat()})

    return socketio


def dispatch_events(socketio, event_bus):
    """把待投递的领域事件转发到相关双方的个人房间"""
    events = event_bus.pop_events()
    for event in events:
        data = event.get('data') or {}
        rooms = {f'user_{data[key]}' for key in ('user_id', 'admin_id') if data.get(key)}
        for room in sorted(rooms):
            socketio.emit('orchestration_event', event, room=room)
    return len(events)
