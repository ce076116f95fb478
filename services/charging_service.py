import logging
import random
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from models.user import db, User
from models.charging import ChargingSession
from orchestration_core import (
    ChargerStatus,
    EventBus,
    InvalidStateTransition,
    KeyedLocks,
    NotFoundError,
    Party,
    SessionStatus,
    TelemetryRegistry,
    TelemetrySimulator,
    TimeoutPolicy,
    TIMEOUT_REASON,
    ValidationError,
    BLOCKING_RESERVATION_STATUSES,
    TERMINAL_SESSION_STATUSES,
    utcnow,
)
from orchestration_core import session_machine as sm
from services.billing_service import BillingService
from services.reservation_service import ReservationService

logger = logging.getLogger(__name__)

# 超时提示 -> 事件类型
WARNING_EVENTS = {
    sm.WARNING_CANCEL_AVAILABLE: 'session.cancel_available',
    sm.WARNING_IMMINENT: 'session.timeout_warning',
    sm.WARNING_AUTO_CANCEL: 'session.auto_cancel',
}


class ChargingService:
    """充电会话编排：双方确认 -> 开始充电 -> 计量 -> 结束计费，以及确认超时自动取消"""

    def __init__(self, event_bus: EventBus, reservation_service: ReservationService,
                 config: Optional[Dict] = None, clock: Callable[[], datetime] = utcnow,
                 telemetry: Optional[TelemetryRegistry] = None,
                 rng: Optional[random.Random] = None):
        self.event_bus = event_bus
        self.reservations = reservation_service
        self.config = config or {}
        self.clock = clock
        self.policy = TimeoutPolicy.from_config(self.config)
        self.locks = KeyedLocks()
        self.rng = rng or random.Random()
        self.telemetry = telemetry or TelemetryRegistry(self._make_feed)

    def _make_feed(self, session_id: str, power_kw: float, target_energy_kwh: float):
        return TelemetrySimulator(
            session_id, power_kw, target_energy_kwh,
            tick_seconds=self.config.get('telemetry_tick_seconds', 60),
            variation=self.config.get('telemetry_power_variation', 0.1),
            recent_samples=self.config.get('recent_samples', 5),
            rng=self.rng
        )

    # ------------- 查询 --------------------------------------------------
    def get_session(self, session_id: str) -> ChargingSession:
        session = db.session.get(ChargingSession, session_id)
        if session is None:
            raise NotFoundError(f"charging session {session_id} not found")
        return session

    def _load(self, session_id: str) -> ChargingSession:
        """在会话锁内读取最新状态：先结束之前的读事务再查询"""
        db.session.commit()
        session = self.get_session(session_id)
        db.session.refresh(session)
        return session

    def active_session_for_reservation(self, reservation_id: str) -> Optional[ChargingSession]:
        self.reservations.get_reservation(reservation_id)
        session = self.reservations.open_session(reservation_id)
        if session is not None:
            with self.locks(session.id):
                self._apply_timeouts(session, self.clock())
            if session.is_terminal:
                return None
        return session

    def active_session_for_charger(self, charger_id: str) -> Optional[ChargingSession]:
        sessions = ChargingSession.query.filter(
            ChargingSession.charger_id == charger_id,
            ChargingSession.status.notin_(TERMINAL_SESSION_STATUSES)
        ).order_by(ChargingSession.created_at.desc()).all()
        now = self.clock()
        for session in sessions:
            with self.locks(session.id):
                self._apply_timeouts(session, now)
            if not session.is_terminal:
                return session
        return None

    # ------------- 发起 --------------------------------------------------
    def initiate_session(self, reservation_id: str, charger_id: str, vehicle_id: str,
                         user_id: str, admin_id: str) -> Tuple[ChargingSession, bool]:
        """返回 (会话, 是否新建)；预约已有未结束的会话时直接返回该会话"""
        with self.locks(f'reservation:{reservation_id}'):
            # 结束进锁前的读事务，后面的查询看到最新提交
            db.session.commit()
            reservation = self.reservations.get_reservation(reservation_id)
            now = self.clock()

            errors = {}
            if reservation.charger_id != charger_id:
                errors['charger_id'] = 'does not match the reservation'
            if reservation.vehicle_id != vehicle_id:
                errors['vehicle_id'] = 'does not match the reservation'
            if reservation.user_id != user_id:
                errors['user_id'] = 'does not match the reservation'
            if errors:
                raise ValidationError("session does not match reservation", errors)

            admin = db.session.get(User, admin_id)
            if admin is None:
                raise NotFoundError(f"admin {admin_id} not found")
            owner_id = reservation.charger.owner_id
            if owner_id and owner_id != admin_id:
                raise ValidationError("admin does not operate this charger", {'admin_id': 'not the charger owner'})

            existing = self.reservations.open_session(reservation_id)
            if existing is not None:
                with self.locks(existing.id):
                    self._apply_timeouts(existing, now)
                if not existing.is_terminal:
                    return existing, False

            try:
                if self.reservations.refresh_status(reservation, now):
                    db.session.commit()
            except Exception:
                db.session.rollback()
                raise

            # 与取消预约共用充电桩临界区：进入后预约重新读取，状态检查和会话插入之间不会被取消
            with self.reservations.charger_guard(charger_id):
                if reservation.status not in BLOCKING_RESERVATION_STATUSES:
                    raise InvalidStateTransition(
                        f"cannot start a session for a reservation in status '{reservation.status}'",
                        reservation.status
                    )
                skew = timedelta(seconds=self.config.get('clock_skew_seconds', 120))
                if now < reservation.start_time - skew:
                    raise InvalidStateTransition("reservation has not started yet", reservation.status)

                session = ChargingSession(
                    reservation_id=reservation.id,
                    charger_id=charger_id,
                    vehicle_id=vehicle_id,
                    user_id=user_id,
                    admin_id=admin_id,
                    status=SessionStatus.WAITING_CONFIRMATIONS.value,
                    created_at=now,
                    timeout_warnings=[]
                )
                reservation.status = 'active'
                db.session.add(session)
                db.session.commit()

        logger.info("session %s initiated for reservation %s", session.id, reservation_id)
        self._emit('session.initiated', session, extra={
            'auto_cancel_at': (now + timedelta(minutes=self.policy.auto_cancel_minutes)).isoformat()
        })
        return session, True

    # ------------- 确认 --------------------------------------------------
    def confirm(self, session_id: str, user_type: str) -> Tuple[ChargingSession, bool]:
        """返回 (会话, 本次是否改变了状态)；同一方重复确认不报错"""
        party = sm.parse_party(user_type)
        with self.locks(session_id):
            session = self._load(session_id)
            now = self.clock()
            self._apply_timeouts(session, now)
            if session.is_terminal:
                raise InvalidStateTransition(
                    f"cannot confirm a session in status '{session.status}'", session.status
                )
            try:
                changed = sm.confirm(session, party, now)
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise

        if changed:
            logger.info("session %s confirmed by %s -> %s", session.id, party.value, session.status)
            self._emit(f'session.{party.value}_confirmed', session)
            if session.status == SessionStatus.READY_TO_START.value:
                self._emit('session.ready', session)
        return session, changed

    # ------------- 开始 / 结束 -------------------------------------------
    def start_charging(self, session_id: str) -> ChargingSession:
        with self.locks(session_id):
            session = self._load(session_id)
            now = self.clock()
            self._apply_timeouts(session, now)
            sm.ensure_allowed(session, 'start')

            reservation = session.reservation
            charger = session.charger
            vehicle = session.vehicle
            power = BillingService.resolve_power_kw(charger, self.config.get('default_power_kw', 7.0))
            energy_to_full = max(vehicle.battery_capacity * (100 - (vehicle.current_charge_level or 0)) / 100, 0.0)
            if reservation.estimated_charge_time is None:
                target = energy_to_full
            else:
                target = min(power * reservation.estimated_charge_time / 60, energy_to_full)

            try:
                session.status = SessionStatus.CHARGING.value
                session.started_at = now
                session.target_energy = round(target, 4)
                session.energy_delivered = 0.0
                session.current_power = 0.0
                charger.status = ChargerStatus.OCCUPIED.value
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise
            self.telemetry.arm(session.id, power, target, now)

        logger.info("session %s started on charger %s (%.1f kW, target %.3f kWh)",
                    session.id, charger.id, power, target)
        self._emit('session.started', session, extra={'target_energy': session.target_energy})
        return session

    def stop_charging(self, session_id: str, stopped_by: str = 'user') -> ChargingSession:
        party = sm.parse_party(stopped_by, allow_system=True)
        with self.locks(session_id):
            session = self._load(session_id)
            sm.ensure_allowed(session, 'stop')
            self._finish(session, self.clock(), party)
        self._emit('session.completed', session, extra={'stopped_by': party.value})
        return session

    def _finish(self, session: ChargingSession, now: datetime, party: Party,
                reason: Optional[str] = None) -> None:
        """结束计量并计费（只在离开 charging 时执行一次）；reason 不为空表示充电中取消"""
        feed = self._feed(session, now)
        snapshot = feed.stop(now)
        self.telemetry.disarm(session.id)

        energy = max(session.energy_delivered or 0.0, feed.energy_delivered)
        # 已持久化的充满时间优先，计量数据源重新装载后也不会改变
        completed_at = session.charge_completed_at or feed.completed_at
        idle_minutes = feed.idle_minutes(now)

        charger = session.charger
        vehicle = session.vehicle
        try:
            if session.total_cost is None:
                costs = BillingService.calculate_session_cost(
                    energy, charger.energy_cost, idle_minutes, charger.parking_cost
                )
                session.energy_cost = costs['energy_cost']
                session.parking_cost = costs['parking_cost']
                session.total_cost = costs['total_cost']

            session.energy_delivered = energy
            session.current_power = 0.0
            session.charge_completed_at = completed_at
            session.ended_at = now
            session.real_time_data = snapshot.get('realTimeData', [])
            if reason is None:
                session.status = SessionStatus.COMPLETED.value
            else:
                session.status = SessionStatus.CANCELLED.value
                session.cancelled_by = party.value
                session.cancellation_reason = reason

            if charger.status == ChargerStatus.OCCUPIED.value:
                charger.status = ChargerStatus.AVAILABLE.value
            if vehicle.battery_capacity:
                gained = energy / vehicle.battery_capacity * 100
                vehicle.current_charge_level = min(100.0, round((vehicle.current_charge_level or 0) + gained, 2))
            self.reservations.complete_after_session(session.reservation)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info("session %s %s: %.3f kWh, total %s", session.id, session.status,
                    energy, session.total_cost)

    # ------------- 取消 --------------------------------------------------
    def cancel_session(self, session_id: str, cancelled_by: str,
                       reason: Optional[str] = None) -> ChargingSession:
        party = sm.parse_party(cancelled_by, allow_system=True)
        with self.locks(session_id):
            session = self._load(session_id)
            now = self.clock()
            self._apply_timeouts(session, now)
            sm.ensure_allowed(session, 'cancel')
            if not sm.can_cancel(session, party, self.policy, now):
                raise InvalidStateTransition(
                    f"cancel is not available to {party.value} yet", session.status
                )
            if session.status == SessionStatus.CHARGING.value:
                # 充电中取消按已充电量计费
                self._finish(session, now, party, reason or 'cancelled during charging')
            else:
                self._cancel(session, party, reason, now)
        self._emit('session.cancelled', session, extra={
            'cancelled_by': party.value,
            'reason': session.cancellation_reason
        })
        return session

    def _cancel(self, session: ChargingSession, party: Party, reason: Optional[str],
                now: datetime) -> None:
        try:
            session.status = SessionStatus.CANCELLED.value
            session.cancelled_by = party.value
            session.cancellation_reason = reason
            session.ended_at = now
            self.reservations.restore_after_session(session.reservation, now)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info("session %s cancelled by %s: %s", session.id, party.value, reason)

    # ------------- 超时 --------------------------------------------------
    def _apply_timeouts(self, session: ChargingSession, now: datetime) -> bool:
        """记录到期的超时提示，超过自动取消时限则由系统取消；调用方持有会话锁"""
        if not sm.awaiting_confirmations(session):
            return False
        due = sm.due_warnings(session, self.policy, now)
        state = sm.timeout_state(session, self.policy, now)
        if not due and not state['auto_cancel_due']:
            return False

        try:
            warnings = list(session.timeout_warnings or [])
            for warning_type in due:
                warnings.append({'warning_type': warning_type, 'recorded_at': now.isoformat()})
            session.timeout_warnings = warnings
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        for warning_type in due:
            if warning_type != sm.WARNING_AUTO_CANCEL:
                self._emit(WARNING_EVENTS[warning_type], session, extra={'timeout': state})

        if state['auto_cancel_due']:
            self._cancel(session, Party.SYSTEM, TIMEOUT_REASON, now)
            logger.warning("session %s auto-cancelled by system: %s (%.1f min without both confirmations)",
                           session.id, TIMEOUT_REASON, state['elapsed_minutes'])
            self._emit('session.cancelled', session, extra={
                'cancelled_by': Party.SYSTEM.value,
                'reason': TIMEOUT_REASON
            })
        return True

    def sweep_timeouts(self) -> Dict[str, int]:
        """后台清扫：确认超时，以及把充电中会话的计量数据写回数据库"""
        now = self.clock()
        cancelled = synced = 0
        open_ids = [
            s.id for s in ChargingSession.query.filter(
                ChargingSession.status.notin_(TERMINAL_SESSION_STATUSES)
            ).all()
        ]
        for session_id in open_ids:
            with self.locks(session_id):
                session = self._load(session_id)
                if sm.awaiting_confirmations(session):
                    self._apply_timeouts(session, now)
                    if session.status == SessionStatus.CANCELLED.value:
                        cancelled += 1
                elif session.status == SessionStatus.CHARGING.value:
                    self._sync_telemetry(session, now)
                    synced += 1

        # 已结束但计量数据源仍在的会话（例如结束时出错），释放数据源
        released = 0
        for session_id in set(self.telemetry.active_sessions()) - set(open_ids):
            with self.locks(session_id):
                session = db.session.get(ChargingSession, session_id)
                if session is None or session.status != SessionStatus.CHARGING.value:
                    self.telemetry.disarm(session_id)
                    released += 1
                    logger.warning("released orphaned telemetry feed for session %s", session_id)
        return {'auto_cancelled': cancelled, 'telemetry_synced': synced, 'telemetry_released': released}

    # ------------- 状态 --------------------------------------------------
    def get_status(self, session_id: str) -> Dict:
        with self.locks(session_id):
            session = self._load(session_id)
            now = self.clock()
            self._apply_timeouts(session, now)
            simulator_status = None
            if session.status == SessionStatus.CHARGING.value:
                simulator_status = self._sync_telemetry(session, now)

            return {
                'session': session.to_detail_dict(),
                'simulatorStatus': simulator_status,
                'timeout': sm.timeout_state(session, self.policy, now),
                'available_actions': {
                    party.value: sm.available_actions(session, party, self.policy, now)
                    for party in (Party.ADMIN, Party.USER)
                }
            }

    def _feed(self, session: ChargingSession, now: datetime):
        feed = self.telemetry.get(session.id)
        if feed is None:
            # 进程重启后从已持久化的电量继续计量
            power = BillingService.resolve_power_kw(session.charger, self.config.get('default_power_kw', 7.0))
            feed = self.telemetry.arm(session.id, power, session.target_energy or 0.0, now,
                                      initial_energy=session.energy_delivered or 0.0,
                                      completed_at=session.charge_completed_at)
            logger.info("telemetry re-armed for session %s at %.3f kWh", session.id, feed.energy_delivered)
        return feed

    def _sync_telemetry(self, session: ChargingSession, now: datetime) -> Dict:
        feed = self._feed(session, now)
        status = feed.status(now)
        try:
            # 电量只增不减
            session.energy_delivered = max(session.energy_delivered or 0.0, feed.energy_delivered)
            session.current_power = feed.current_power
            if feed.completed_at and session.charge_completed_at is None:
                session.charge_completed_at = feed.completed_at
                self._emit('session.charge_full', session)
            session.real_time_data = [s.to_dict() for s in feed.samples()]
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return status

    # ------------- 事件 --------------------------------------------------
    def _emit(self, event_type: str, session: ChargingSession, extra: Optional[Dict] = None) -> None:
        data = {
            'session_id': session.id,
            'reservation_id': session.reservation_id,
            'charger_id': session.charger_id,
            'vehicle_id': session.vehicle_id,
            'user_id': session.user_id,
            'admin_id': session.admin_id,
            'status': session.status
        }
        if extra:
            data.update(extra)
        self.event_bus.push_event(event_type, data)

