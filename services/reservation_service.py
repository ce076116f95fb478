import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterator, List, Optional

from models.user import db, User, Vehicle
from models.charger import Charger
from models.reservation import Reservation
from models.charging import ChargingSession
from orchestration_core import (
    ChargerStatus,
    EventBus,
    TimeIntervalIndex,
    ConflictError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
    BLOCKING_RESERVATION_STATUSES,
    TERMINAL_SESSION_STATUSES,
    utcnow,
    energy_needed_kwh,
    charge_minutes,
)
from services.billing_service import BillingService

logger = logging.getLogger(__name__)

# 取消方：司机 / 充电桩所有者 / 平台管理员 / 系统
CANCELLING_PARTIES = ('user', 'owner', 'admin', 'system')


class ReservationService:
    """预约服务：基于充电桩占用区间索引的预约创建、取消与状态推进"""

    def __init__(self, event_bus: EventBus, config: Optional[Dict] = None,
                 index: Optional[TimeIntervalIndex] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.event_bus = event_bus
        self.config = config or {}
        self.index = index or TimeIntervalIndex()
        self.clock = clock

    @property
    def buffer_minutes(self) -> int:
        return int(self.config.get('buffer_minutes', 20))

    # ------------- 索引 --------------------------------------------------
    @contextmanager
    def charger_guard(self, charger_id: str, for_update: bool = True) -> Iterator[None]:
        """
        同一充电桩预约记录的临界区：进程内的充电桩锁 + 数据库行锁。

        进锁后先结束当前的读事务，之后的查询使用新的快照，能看到其它请求刚提交的预约；
        for_update 时再锁住充电桩行（SELECT ... FOR UPDATE），多进程部署下同样互斥。
        行锁随本次提交或回滚释放；临界区内抛出异常时回滚。
        """
        with self.index.lock(charger_id):
            db.session.commit()
            try:
                if for_update:
                    db.session.query(Charger.id).filter(Charger.id == charger_id).with_for_update().first()
                yield
            except Exception:
                db.session.rollback()
                raise

    def blocking_reservations(self, charger_id: str) -> List[Reservation]:
        return Reservation.query.filter(
            Reservation.charger_id == charger_id,
            Reservation.status.in_(BLOCKING_RESERVATION_STATUSES)
        ).order_by(Reservation.start_time).all()

    def _reload_index(self, charger_id: str) -> List[Reservation]:
        """占用区间以数据库为准，每次在充电桩锁内重新装载"""
        reservations = self.blocking_reservations(charger_id)
        self.index.load(charger_id, [(r.start_time, r.calculated_end_time) for r in reservations])
        return reservations

    # ------------- 查询 --------------------------------------------------
    def get_reservation(self, reservation_id: str) -> Reservation:
        reservation = db.session.get(Reservation, reservation_id)
        if reservation is None:
            raise NotFoundError(f"reservation {reservation_id} not found")
        return reservation

    def get_current_reservation(self, reservation_id: str) -> Reservation:
        """读取时按时间推进状态"""
        reservation = self.get_reservation(reservation_id)
        try:
            if self.refresh_status(reservation):
                db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return reservation

    def get_vehicle_reservations(self, vehicle_id: str) -> List[Reservation]:
        """车辆尚未结束的预约"""
        if db.session.get(Vehicle, vehicle_id) is None:
            raise NotFoundError(f"vehicle {vehicle_id} not found")
        now = self.clock()
        reservations = Reservation.query.filter(
            Reservation.vehicle_id == vehicle_id,
            Reservation.status.in_(BLOCKING_RESERVATION_STATUSES),
            Reservation.calculated_end_time > now
        ).order_by(Reservation.start_time).all()
        return reservations

    def next_available(self, charger_id: str, duration_minutes: float,
                       horizon_days: Optional[float] = None) -> Optional[Dict]:
        if duration_minutes is None or duration_minutes <= 0:
            raise ValidationError("invalid duration", {'minDuration': 'must be a positive number of minutes'})
        horizon_days = horizon_days or self.config.get('next_available_horizon_days', 7)
        if horizon_days <= 0:
            raise ValidationError("invalid horizon", {'lookAheadDays': 'must be positive'})
        self._get_charger(charger_id)

        with self.charger_guard(charger_id, for_update=False):
            self._reload_index(charger_id)
            window = self.index.next_available(
                charger_id, timedelta(minutes=duration_minutes), horizon_days, self.clock()
            )
        return window.to_dict() if window else None

    def check_availability(self, charger_id: str, start: datetime, end: datetime) -> Dict:
        """区间 [start, end) 是否空闲，占用时附带冲突的预约"""
        if start >= end:
            raise ValidationError("invalid time range", {'end_time': 'must be after start_time'})
        self._get_charger(charger_id)
        with self.charger_guard(charger_id, for_update=False):
            reservations = self._reload_index(charger_id)
            available = self.index.is_free(charger_id, start, end)
        conflicts = [
            r.window() for r in reservations
            if r.start_time < end and start < r.calculated_end_time
        ]
        return {'available': available, 'conflicts': conflicts}

    # ------------- 创建 --------------------------------------------------
    def create_reservation(self, vehicle_id: str, charger_id: str, user_id: str,
                           start_time: datetime, end_time: datetime,
                           estimated_charge_time: Optional[float] = None) -> Reservation:
        now = self.clock()
        errors = {}
        if start_time >= end_time:
            errors['end_time'] = 'must be after start_time'
        skew = timedelta(seconds=self.config.get('clock_skew_seconds', 120))
        if start_time < now - skew:
            errors['start_time'] = 'must not be in the past'
        if estimated_charge_time is not None and estimated_charge_time < 0:
            errors['estimated_charge_time'] = 'must not be negative'
        if errors:
            raise ValidationError("invalid reservation request", errors)

        if db.session.get(User, user_id) is None:
            raise NotFoundError(f"user {user_id} not found")
        vehicle = db.session.get(Vehicle, vehicle_id)
        if vehicle is None:
            raise NotFoundError(f"vehicle {vehicle_id} not found")
        charger = self._get_charger(charger_id)

        if vehicle.user_id and vehicle.user_id != user_id:
            raise ValidationError("vehicle does not belong to user", {'vehicle_id': 'not owned by user'})
        if vehicle.connector_type != charger.connector_type:
            raise ValidationError("connector type mismatch", {
                'connector_type': f"vehicle uses {vehicle.connector_type}, charger provides {charger.connector_type}"
            })
        if charger.status == ChargerStatus.MAINTENANCE.value:
            raise ValidationError("charger is under maintenance", {'charger_id': 'under maintenance'})

        buffer_minutes = self.buffer_minutes
        calculated_end = end_time + timedelta(minutes=buffer_minutes)
        if estimated_charge_time is None:
            estimated_charge_time = self._estimate_charge_minutes(vehicle, charger, start_time, end_time)

        with self.charger_guard(charger_id):
            reservations = self._reload_index(charger_id)
            if not self.index.try_occupy(charger_id, start_time, calculated_end):
                conflicts = [
                    r.window() for r in reservations
                    if r.start_time < calculated_end and start_time < r.calculated_end_time
                ]
                logger.info("reservation conflict on charger %s for [%s, %s): %s",
                            charger_id, start_time.isoformat(), calculated_end.isoformat(), conflicts)
                raise ConflictError("charger is already reserved for this time", conflicts)

            reservation = Reservation(
                vehicle_id=vehicle_id,
                charger_id=charger_id,
                user_id=user_id,
                start_time=start_time,
                end_time=end_time,
                calculated_end_time=calculated_end,
                estimated_charge_time=round(estimated_charge_time, 2),
                buffer_time=buffer_minutes,
                status='upcoming'
            )
            db.session.add(reservation)
            db.session.commit()

        logger.info("reservation %s created on charger %s [%s, %s)", reservation.id, charger_id,
                    start_time.isoformat(), calculated_end.isoformat())
        self._emit('reservation.created', reservation, charger)
        return reservation

    def _estimate_charge_minutes(self, vehicle: Vehicle, charger: Charger,
                                 start_time: datetime, end_time: datetime) -> float:
        """预约窗口与充满所需时间取较小值"""
        window = (end_time - start_time).total_seconds() / 60
        power = BillingService.resolve_power_kw(charger, self.config.get('default_power_kw', 7.0))
        energy = energy_needed_kwh(vehicle.battery_capacity, vehicle.current_charge_level or 0.0, 100)
        if energy <= 0:
            return 0.0
        return min(window, charge_minutes(energy, power))

    # ------------- 取消 --------------------------------------------------
    def cancel_reservation(self, reservation_id: str, reason: Optional[str] = None,
                           cancelled_by: str = 'user') -> Reservation:
        if cancelled_by not in CANCELLING_PARTIES:
            raise ValidationError("unknown cancelling party",
                                  {'cancelled_by': 'must be one of ' + ', '.join(CANCELLING_PARTIES)})
        reservation = self.get_reservation(reservation_id)
        with self.charger_guard(reservation.charger_id):
            # 进入临界区时对象已过期，这里读到的是最新提交的状态
            if reservation.status not in BLOCKING_RESERVATION_STATUSES:
                raise InvalidStateTransition(
                    f"cannot cancel a reservation in status '{reservation.status}'", reservation.status
                )
            if self.open_session(reservation.id) is not None:
                raise InvalidStateTransition(
                    "reservation has a charging session in progress", reservation.status
                )

            self._reload_index(reservation.charger_id)
            self.index.release(reservation.charger_id, reservation.start_time,
                               reservation.calculated_end_time)
            reservation.status = 'cancelled'
            reservation.cancelled_by = cancelled_by
            reservation.cancellation_reason = reason
            db.session.commit()

        logger.info("reservation %s cancelled by %s: %s", reservation.id, cancelled_by, reason)
        self._emit('reservation.cancelled', reservation, extra={
            'cancelled_by': cancelled_by,
            'reason': reason
        })
        return reservation

    # ------------- 状态推进 ----------------------------------------------
    def open_session(self, reservation_id: str) -> Optional[ChargingSession]:
        return ChargingSession.query.filter(
            ChargingSession.reservation_id == reservation_id,
            ChargingSession.status.notin_(TERMINAL_SESSION_STATUSES)
        ).first()

    def refresh_status(self, reservation: Reservation, now: Optional[datetime] = None) -> bool:
        """
        按时间推进预约状态：upcoming -> active -> completed。
        只修改对象，不提交；返回状态是否变化。
        """
        now = now or self.clock()
        previous = reservation.status
        if reservation.status == 'upcoming' and now >= reservation.start_time:
            reservation.status = 'active'
        if (reservation.status == 'active' and now >= reservation.calculated_end_time
                and self.open_session(reservation.id) is None):
            reservation.status = 'completed'
        if reservation.status == previous:
            return False

        logger.info("reservation %s: %s -> %s", reservation.id, previous, reservation.status)
        event_type = 'reservation.activated' if reservation.status == 'active' else 'reservation.completed'
        self._emit(event_type, reservation, extra={'previous_status': previous})
        return True

    def restore_after_session(self, reservation: Reservation, now: Optional[datetime] = None) -> None:
        """会话在充电前被取消后，预约按时间重新回到 upcoming / active / completed"""
        now = now or self.clock()
        if reservation.status not in BLOCKING_RESERVATION_STATUSES:
            return
        reservation.status = 'upcoming' if now < reservation.start_time else 'active'
        self.refresh_status(reservation, now)

    def complete_after_session(self, reservation: Reservation) -> None:
        if reservation.status in BLOCKING_RESERVATION_STATUSES:
            previous = reservation.status
            reservation.status = 'completed'
            logger.info("reservation %s: %s -> completed", reservation.id, previous)
            self._emit('reservation.completed', reservation, extra={'previous_status': previous})

    def sweep(self) -> Dict[str, int]:
        """后台清扫：推进状态并发送预约提醒"""
        now = self.clock()
        lead = timedelta(minutes=self.config.get('reminder_lead_minutes', 10))
        changed = reminders = 0
        try:
            reservations = Reservation.query.filter(
                Reservation.status.in_(BLOCKING_RESERVATION_STATUSES)
            ).all()
            for reservation in reservations:
                if reservation.status == 'upcoming':
                    if not reservation.pre_notified and reservation.start_time - lead <= now < reservation.start_time:
                        reservation.pre_notified = True
                        reminders += 1
                        self._emit('reservation.reminder', reservation, extra={
                            'minutes_until_start': round((reservation.start_time - now).total_seconds() / 60, 1)
                        })
                    if not reservation.start_notified and now >= reservation.start_time:
                        reservation.start_notified = True
                        reminders += 1
                        self._emit('reservation.starting', reservation)
                if self.refresh_status(reservation, now):
                    changed += 1
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        if changed or reminders:
            logger.debug("reservation sweep: %d status changes, %d reminders", changed, reminders)
        return {'status_changes': changed, 'reminders': reminders}

    # ------------- 辅助 --------------------------------------------------
    def _get_charger(self, charger_id: str) -> Charger:
        charger = db.session.get(Charger, charger_id)
        if charger is None:
            raise NotFoundError(f"charger {charger_id} not found")
        return charger

    def _emit(self, event_type: str, reservation: Reservation, charger: Optional[Charger] = None,
              extra: Optional[Dict] = None) -> None:
        charger = charger or reservation.charger
        data = {
            'reservation_id': reservation.id,
            'charger_id': reservation.charger_id,
            'vehicle_id': reservation.vehicle_id,
            'user_id': reservation.user_id,
            'admin_id': charger.owner_id if charger else None,
            'status': reservation.status,
            'start_time': reservation.start_time.isoformat(),
            'end_time': reservation.end_time.isoformat(),
            'calculated_end_time': reservation.calculated_end_time.isoformat()
        }
        if extra:
            data.update(extra)
        self.event_bus.push_event(event_type, data)
