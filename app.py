from flask import Flask
from flask_socketio import SocketIO
from flask_cors import CORS
from dotenv import load_dotenv
from apscheduler.schedulers.background import BackgroundScheduler
import logging
import sys
import os

# 加载环境变量
load_dotenv()

from config import get_config
from models.user import db
from orchestration_core import EventBus, utcnow

logger = logging.getLogger(__name__)


def configure_logging(app):
    """根据配置初始化日志"""
    handlers = [logging.StreamHandler(sys.stdout)]
    if app.config.get('LOG_FILE'):
        handlers.append(logging.FileHandler(app.config['LOG_FILE']))
    logging.basicConfig(
        level=getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO),
        format='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        handlers=handlers
    )


def init_database(app):
    """初始化数据库"""
    # 导入模型，确保 create_all 能看到所有表
    from models.user import User, Vehicle  # noqa: F401
    from models.charger import Charger  # noqa: F401
    from models.reservation import Reservation  # noqa: F401
    from models.charging import ChargingSession  # noqa: F401

    with app.app_context():
        try:
            # 检查数据库连接
            with db.engine.connect() as connection:
                connection.execute(db.text('SELECT 1'))
            db.create_all()
            logger.info("database ready: %s", db.engine.url.render_as_string(hide_password=True))
        except Exception:
            logger.exception("database initialisation failed")
            raise


def create_app(config_name=None, clock=None, rng=None, **overrides):
    """创建Flask应用；clock / rng 可注入，便于测试控制时间和功率波动；overrides 覆盖配置项"""
    app = Flask(__name__)

    # 加载配置
    config_class = get_config(config_name)
    app.config.from_object(config_class)
    app.config.update(overrides)
    configure_logging(app)

    # 初始化扩展
    db.init_app(app)
    CORS(app, supports_credentials=True)

    # 初始化SocketIO
    socketio = SocketIO(
        app,
        cors_allowed_origins="*",
        async_mode='threading',
        logger=False,
        engineio_logger=False
    )

    # 注册WebSocket事件
    from websocket.events import register_socketio_events
    register_socketio_events(socketio)

    # 注册API蓝图
    register_blueprints(app)

    # 初始化数据库
    init_database(app)

    # 初始化编排服务
    init_orchestration_services(app, socketio, clock or utcnow, rng)

    # 健康检查路由
    @app.route('/health')
    def health_check():
        return {'status': 'healthy', 'message': 'EV charging orchestration service is running'}

    @app.route('/')
    def home():
        return {
            'message': app.config.get('API_TITLE'),
            'status': 'running',
            'version': '1.0.0',
            'modules': ['recommendations', 'reservations', 'chargers', 'charging-sessions']
        }

    return app, socketio


def register_blueprints(app):
    """注册所有API蓝图"""
    from api.recommendations import recommendations_bp
    from api.reservations import reservations_bp
    from api.chargers import chargers_bp
    from api.charging import charging_bp

    app.register_blueprint(recommendations_bp, url_prefix='/api/recommendations')
    app.register_blueprint(reservations_bp, url_prefix='/api/reservations')
    app.register_blueprint(chargers_bp, url_prefix='/api/chargers')
    app.register_blueprint(charging_bp, url_prefix='/api/charging-sessions')


def init_orchestration_services(app, socketio, clock, rng=None):
    """创建服务实例并注册到app扩展中"""
    from services.reservation_service import ReservationService
    from services.recommendation_service import RecommendationService, RoutingClient
    from services.charging_service import ChargingService

    settings = app.config['ORCHESTRATION_CONFIG']
    routing = app.config.get('ROUTING_CONFIG') or {}

    event_bus = EventBus()
    event_logger = logging.getLogger('orchestration.events')
    event_bus.subscribe(lambda event: event_logger.debug("%s %s", event['type'], event['data']))

    reservation_service = ReservationService(event_bus, config=settings, clock=clock)
    recommendation_service = RecommendationService(
        config=settings,
        routing=RoutingClient(routing.get('url'), routing.get('timeout_seconds', 2.0)),
        clock=clock
    )
    charging_service = ChargingService(event_bus, reservation_service, config=settings,
                                       clock=clock, rng=rng)

    app.extensions['event_bus'] = event_bus
    app.extensions['reservation_service'] = reservation_service
    app.extensions['recommendation_service'] = recommendation_service
    app.extensions['charging_service'] = charging_service
    app.extensions['socketio'] = socketio

    if app.config.get('SCHEDULER_ENABLED'):
        app.extensions['scheduler'] = start_background_jobs(app, socketio, settings)


def start_background_jobs(app, socketio, settings):
    """后台任务：预约状态清扫、确认超时清扫、事件转发"""
    from websocket.events import dispatch_events

    def _with_app_context(func):
        def wrapper(*args, **kwargs):
            with app.app_context():
                try:
                    return func(*args, **kwargs)
                except Exception:
                    db.session.rollback()
                    logger.exception("background job %s failed", getattr(func, '__name__', func))
        return wrapper

    reservation_service = app.extensions['reservation_service']
    charging_service = app.extensions['charging_service']
    event_bus = app.extensions['event_bus']
    sweep_seconds = settings.get('sweep_interval_seconds', 30)

    jobs = [
        {
            "id": "reservation_sweep",
            "func": _with_app_context(reservation_service.sweep),
            "trigger": "interval",
            "seconds": sweep_seconds,
            "misfire_grace_time": 10
        },
        {
            "id": "session_timeout_sweep",
            "func": _with_app_context(charging_service.sweep_timeouts),
            "trigger": "interval",
            "seconds": sweep_seconds,
            "misfire_grace_time": 10
        },
        {
            "id": "event_dispatcher",
            "func": _with_app_context(lambda: dispatch_events(socketio, event_bus)),
            "trigger": "interval",
            "seconds": settings.get('event_dispatch_interval_seconds', 2)
        }
    ]

    scheduler = BackgroundScheduler()
    for job in jobs:
        if scheduler.get_job(job["id"]):
            scheduler.remove_job(job["id"])
        scheduler.add_job(**job)
    scheduler.start()
    logger.info("background jobs started: %s", ", ".join(job["id"] for job in jobs))
    return scheduler


if __name__ == '__main__':
    app, socketio = create_app()

    # 开发环境运行配置
    debug_mode = os.environ.get('FLASK_DEBUG', 'True').lower() == 'true'
    port = int(os.environ.get('FLASK_PORT', 5001))

    print("=" * 60)
    print("EV charging orchestration service")
    print(f"调试模式: {debug_mode}")
    print(f"端口: {port}")
    print("=" * 60)

    socketio.run(
        app,
        debug=debug_mode,
        port=port,
        host='0.0.0.0',
        use_reloader=False,
        allow_unsafe_werkzeug=True
    )
