from orchestration_core.store import utcnow
from models.user import db, new_id


def _money(value):
    return float(value) if value is not None else None


def _ts(value):
    return value.isoformat() if value else None


class ChargingSession(db.Model):
    """充电会话模型：双方确认 -> 充电 -> 计费，结束后只标记终态，不删除"""
    __tablename__ = 'charging_sessions'
    __table_args__ = (
        db.Index('ix_sessions_reservation_status', 'reservation_id', 'status'),
        db.Index('ix_sessions_charger_status', 'charger_id', 'status'),
    )

    # 基本信息
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    reservation_id = db.Column(db.String(36), db.ForeignKey('reservations.id'), nullable=False, comment='预约ID')
    charger_id = db.Column(db.String(36), db.ForeignKey('chargers.id'), nullable=False, comment='充电桩ID')
    vehicle_id = db.Column(db.String(36), db.ForeignKey('vehicles.id'), nullable=False, comment='车辆ID')
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False, comment='司机ID')
    admin_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False, comment='运营方ID')

    status = db.Column(db.String(30), nullable=False, default='waiting_confirmations', comment='会话状态')

    # 双方确认
    admin_confirmed_at = db.Column(db.DateTime, comment='运营方确认时间')
    user_confirmed_at = db.Column(db.DateTime, comment='司机确认时间')

    # 充电过程
    started_at = db.Column(db.DateTime, comment='开始充电时间')
    ended_at = db.Column(db.DateTime, comment='结束时间')
    charge_completed_at = db.Column(db.DateTime, comment='充满时间')
    energy_delivered = db.Column(db.Float, nullable=False, default=0.0, comment='已充电量(kWh)')
    current_power = db.Column(db.Float, nullable=False, default=0.0, comment='当前功率(kW)')
    target_energy = db.Column(db.Float, comment='目标电量(kWh)')
    real_time_data = db.Column(db.JSON, comment='实时采样')

    # 费用（只在完成时计算一次）
    energy_cost = db.Column(db.Numeric(10, 2), comment='电费')
    parking_cost = db.Column(db.Numeric(10, 2), comment='占位费')
    total_cost = db.Column(db.Numeric(10, 2), comment='总费用')

    # 取消 / 超时
    cancelled_by = db.Column(db.String(10), comment='取消方')
    cancellation_reason = db.Column(db.String(255), comment='取消原因')
    timeout_warnings = db.Column(db.JSON, comment='超时提示记录')

    created_at = db.Column(db.DateTime, default=utcnow, comment='创建时间')
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, comment='更新时间')

    reservation = db.relationship('Reservation', backref=db.backref('charging_sessions', lazy=True))
    charger = db.relationship('Charger', backref=db.backref('charging_sessions', lazy=True))
    vehicle = db.relationship('Vehicle', backref=db.backref('charging_sessions', lazy=True))

    @property
    def is_terminal(self):
        return self.status in ('completed', 'cancelled')

    def to_dict(self):
        return {
            'id': self.id,
            'reservation_id': self.reservation_id,
            'charger_id': self.charger_id,
            'vehicle_id': self.vehicle_id,
            'user_id': self.user_id,
            'admin_id': self.admin_id,
            'status': self.status,
            'admin_confirmed_at': _ts(self.admin_confirmed_at),
            'user_confirmed_at': _ts(self.user_confirmed_at),
            'started_at': _ts(self.started_at),
            'ended_at': _ts(self.ended_at),
            'charge_completed_at': _ts(self.charge_completed_at),
            'energy_delivered': round(self.energy_delivered or 0.0, 4),
            'current_power': round(self.current_power or 0.0, 3),
            'target_energy': self.target_energy,
            'energy_cost': _money(self.energy_cost),
            'parking_cost': _money(self.parking_cost),
            'total_cost': _money(self.total_cost),
            'cancelled_by': self.cancelled_by,
            'cancellation_reason': self.cancellation_reason,
            'timeout_warnings': self.timeout_warnings or [],
            'created_at': _ts(self.created_at),
            'updated_at': _ts(self.updated_at)
        }

    def to_detail_dict(self):
        """包含实时采样和充电桩信息"""
        data = self.to_dict()
        data['real_time_data'] = self.real_time_data or []
        if self.charger:
            data['charger_info'] = {
                'name': self.charger.name,
                'power_output': self.charger.power_output,
                'energy_cost': float(self.charger.energy_cost),
                'parking_cost': float(self.charger.parking_cost)
            }
        return data

    def __repr__(self):
        return f'<ChargingSession {self.id}>'
