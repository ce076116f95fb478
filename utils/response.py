import logging
from functools import wraps

from flask import jsonify

from models.user import db
from orchestration_core import OrchestrationError, ValidationError

logger = logging.getLogger(__name__)


def success_response(data=None, message="操作成功", code=200):
    """成功响应"""
    response = {
        'code': code,
        'message': message,
        'success': True
    }
    if data is not None:
        response['data'] = data
    return jsonify(response), code


def error_response(message="操作失败", code=400, error_type="OPERATION_FAILED", data=None):
    """错误响应"""
    response = {
        'code': code,
        'message': message,
        'success': False,
        'error_type': error_type
    }
    if data is not None:
        response['data'] = data
    return jsonify(response), code


def validation_error_response(errors, message="数据验证失败"):
    """数据验证错误响应"""
    return jsonify({
        'code': 400,
        'message': message,
        'success': False,
        'error_type': 'VALIDATION_ERROR',
        'errors': errors
    }), 400


def handle_engine_errors(f):
    """把引擎错误转换为统一的错误响应，其它异常回滚后返回 500"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except ValidationError as e:
            return validation_error_response(e.errors, message=e.message)
        except OrchestrationError as e:
            return error_response(e.message, code=e.code, error_type=e.error_type, data=e.data)
        except Exception:
            db.session.rollback()
            logger.exception("unhandled error in %s", f.__name__)
            return error_response("系统错误，请稍后重试", code=500, error_type="INTERNAL_ERROR")
    return decorated_function
