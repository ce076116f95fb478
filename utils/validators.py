import math
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from orchestration_core import Weights, ValidationError


def parse_datetime(value: Any, field: str) -> datetime:
    """ISO 时间 -> naive UTC；不带时区的按 UTC 处理"""
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).strip().replace('Z', '+00:00'))
        except ValueError:
            raise ValidationError("invalid datetime", {field: "时间格式错误，请使用ISO格式"})
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_float(value: Any, field: str, minimum: Optional[float] = None,
                maximum: Optional[float] = None) -> float:
    """数字参数，拒绝 NaN / 无穷大和越界值，不做隐式修正"""
    try:
        number = float(value)
    except (ValueError, TypeError):
        raise ValidationError("invalid number", {field: f"{field}必须是有效数字"})
    if math.isnan(number) or math.isinf(number):
        raise ValidationError("invalid number", {field: f"{field}必须是有效数字"})
    if minimum is not None and number < minimum:
        raise ValidationError("value out of range", {field: f"{field}不能小于{minimum}"})
    if maximum is not None and number > maximum:
        raise ValidationError("value out of range", {field: f"{field}不能大于{maximum}"})
    return number


def parse_weights(source: Dict[str, Any], mode: str = 'charge') -> Weights:
    """
    偏好权重：distance / cost / chargeDuration / delay / energy，取值 [0, 1]。
    未给出的权重使用默认值：充电模式各 0.25（不含 energy），时间预算模式各 0.2。
    """
    default = 0.2 if mode == 'time' else 0.25
    names = {
        'distance': 'distance',
        'cost': 'cost',
        'chargeDuration': 'charge_duration',
        'delay': 'delay',
        'energy': 'energy',
    }
    values = {}
    errors = {}
    for key, attr in names.items():
        raw = source.get(key, source.get(attr))
        if raw is None or raw == '':
            values[attr] = 0.0 if attr == 'energy' and mode != 'time' else default
            continue
        try:
            values[attr] = parse_float(raw, key, 0.0, 1.0)
        except ValidationError as e:
            errors.update(e.errors)
    if errors:
        raise ValidationError("invalid preference weights", errors)
    return Weights(**values)


def pick(data: Dict[str, Any], *names: str) -> Any:
    """同一参数兼容 camelCase / snake_case 两种写法"""
    for name in names:
        value = data.get(name)
        if value is not None and value != '':
            return value
    return None


def require(data: Dict[str, Any], **fields: tuple) -> Dict[str, Any]:
    """require(data, vehicle_id=('vehicleId', 'vehicle_id')) -> {'vehicle_id': ...}，缺失时抛出 ValidationError"""
    values = {}
    errors = {}
    for target, names in fields.items():
        value = pick(data, *names)
        if value is None or (isinstance(value, str) and not value.strip()):
            errors[names[0]] = f"{names[0]}字段不能为空"
        else:
            values[target] = value.strip() if isinstance(value, str) else value
    if errors:
        raise ValidationError("missing required fields", errors)
    return values
