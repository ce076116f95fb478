import json

from flask import Blueprint, request, current_app

from orchestration_core import ValidationError
from utils.response import success_response, handle_engine_errors
from utils.validators import parse_float, parse_weights, pick, require

# 创建蓝图
recommendations_bp = Blueprint('recommendations', __name__)


def _weights_source(args):
    """weights 可以是 JSON 字符串，也可以是单独的查询参数"""
    raw = args.get('weights')
    if not raw:
        return args
    try:
        weights = json.loads(raw)
    except ValueError:
        raise ValidationError("invalid preference weights", {'weights': 'must be a JSON object'})
    if not isinstance(weights, dict):
        raise ValidationError("invalid preference weights", {'weights': 'must be a JSON object'})
    return weights


@recommendations_bp.route('', methods=['GET'])
@handle_engine_errors
def recommend():
    """推荐充电桩"""
    args = request.args
    fields = require(args, lat=('lat', 'latitude'), lon=('lon', 'longitude'),
                     vehicle_id=('vehicleId', 'vehicle_id'))

    mode = (args.get('mode') or 'charge').strip().lower()
    target = pick(args, 'targetChargePercent', 'target_charge_percent')
    available = pick(args, 'availableMinutes', 'available_minutes')
    current = pick(args, 'currentChargeLevel', 'current_charge_level')

    service = current_app.extensions['recommendation_service']
    result = service.recommend(
        latitude=parse_float(fields['lat'], 'lat'),
        longitude=parse_float(fields['lon'], 'lon'),
        vehicle_id=fields['vehicle_id'],
        target_charge_percent=parse_float(target, 'targetChargePercent') if target is not None else 100.0,
        weights=parse_weights(_weights_source(args), mode),
        mode=mode,
        available_minutes=parse_float(available, 'availableMinutes') if available is not None else None,
        current_charge_level=parse_float(current, 'currentChargeLevel') if current is not None else None
    )
    return success_response(data=result, message="推荐成功")
