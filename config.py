import os


def _env_float(name, default):
    value = os.environ.get(name)
    return float(value) if value else default


class Config:
    """基础配置类"""
    # 基本配置
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'your-secret-key-here-change-in-production'

    # 数据库配置
    DB_HOST = os.environ.get('DB_HOST') or 'localhost'
    DB_PORT = os.environ.get('DB_PORT') or 3306
    DB_USER = os.environ.get('DB_USER') or 'root'
    DB_PASSWORD = os.environ.get('DB_PASSWORD') or 'password'
    DB_NAME = os.environ.get('DB_NAME') or 'ev_charging'

    SQLALCHEMY_DATABASE_URI = f'mysql+pymysql://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_pre_ping': True,
        'pool_recycle': 300,
        'pool_timeout': 20,
        'max_overflow': 0
    }

    # 充电编排配置（策略常量，不是协议要求）
    ORCHESTRATION_CONFIG = {
        'buffer_minutes': int(os.environ.get('RESERVATION_BUFFER_MINUTES') or 20),  # 预约缓冲时间
        'clock_skew_seconds': 120,                # 允许的时钟偏差
        'cancel_available_minutes': _env_float('CONFIRM_CANCEL_MINUTES', 5),
        'timeout_warning_minutes': _env_float('CONFIRM_WARNING_MINUTES', 10),
        'auto_cancel_minutes': _env_float('CONFIRM_TIMEOUT_MINUTES', 15),
        'recommendation_horizon_days': 2,         # 推荐时查找空闲窗口的范围
        'next_available_horizon_days': 7,
        'search_radius_km': 30,
        'default_power_kw': 7.0,                  # 无额定功率且无历史数据时
        'telemetry_tick_seconds': 60,
        'telemetry_power_variation': 0.1,         # ±10%
        'recent_samples': 5,
        'sweep_interval_seconds': 30,
        'event_dispatch_interval_seconds': 2,
        'reminder_lead_minutes': 10
    }

    # 外部路程距离服务（可选），失败或超时回退到直线距离
    ROUTING_CONFIG = {
        'url': os.environ.get('ROUTING_URL'),
        'timeout_seconds': _env_float('ROUTING_TIMEOUT_SECONDS', 2.0)
    }

    # 后台任务
    SCHEDULER_ENABLED = True

    # 日志配置
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'INFO'
    LOG_FILE = os.environ.get('LOG_FILE') or None

    # 其他配置
    JSON_AS_ASCII = False
    JSONIFY_PRETTYPRINT_REGULAR = True

    # API配置
    API_VERSION = 'v1'
    API_TITLE = 'EV Charging Orchestration API'


class DevelopmentConfig(Config):
    """开发环境配置"""
    DEBUG = True
    TESTING = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """测试环境配置"""
    DEBUG = True
    TESTING = True

    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # 测试中由用例手动推进时间和触发清扫
    SCHEDULER_ENABLED = False
    ROUTING_CONFIG = {'url': None, 'timeout_seconds': 0.5}
    # 固定功率，计量结果可复现
    ORCHESTRATION_CONFIG = dict(Config.ORCHESTRATION_CONFIG, telemetry_power_variation=0.0)
    LOG_LEVEL = 'DEBUG'


class ProductionConfig(Config):
    """生产环境配置"""
    DEBUG = False
    TESTING = False

    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_pre_ping': True,
        'pool_recycle': 3600,
        'pool_timeout': 30,
        'max_overflow': 10,
        'pool_size': 20
    }

    LOG_LEVEL = 'WARNING'


# 根据环境变量选择配置
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}


def get_config(config_name=None):
    """获取当前配置"""
    config_name = config_name or os.environ.get('FLASK_ENV', 'development')
    return config.get(config_name, config['default'])
