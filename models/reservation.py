from orchestration_core.store import utcnow
from models.user import db, new_id


class Reservation(db.Model):
    """预约模型：[start_time, calculated_end_time) 为充电桩上实际被占用的区间"""
    __tablename__ = 'reservations'
    __table_args__ = (
        db.Index('ix_reservations_charger_status', 'charger_id', 'status'),
        db.Index('ix_reservations_vehicle_status', 'vehicle_id', 'status'),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    vehicle_id = db.Column(db.String(36), db.ForeignKey('vehicles.id'), nullable=False, comment='车辆ID')
    charger_id = db.Column(db.String(36), db.ForeignKey('chargers.id'), nullable=False, comment='充电桩ID')
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False, comment='司机ID')

    # 时间窗口
    start_time = db.Column(db.DateTime, nullable=False, comment='开始时间')
    end_time = db.Column(db.DateTime, nullable=False, comment='结束时间')
    calculated_end_time = db.Column(db.DateTime, nullable=False, comment='结束时间 + 缓冲时间')

    estimated_charge_time = db.Column(db.Float, comment='预计充电时长(分钟)')
    buffer_time = db.Column(db.Integer, nullable=False, default=20, comment='缓冲时间(分钟)')

    # upcoming / active / completed / cancelled
    status = db.Column(db.String(20), nullable=False, default='upcoming', comment='预约状态')

    # 取消信息
    cancelled_by = db.Column(db.String(10), comment='取消方')
    cancellation_reason = db.Column(db.String(255), comment='取消原因')

    # 提醒是否已发送
    pre_notified = db.Column(db.Boolean, default=False, nullable=False)
    start_notified = db.Column(db.Boolean, default=False, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow, comment='创建时间')
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, comment='更新时间')

    vehicle = db.relationship('Vehicle', backref=db.backref('reservations', lazy=True))
    charger = db.relationship('Charger', backref=db.backref('reservations', lazy=True))

    def window(self):
        return {
            'reservation_id': self.id,
            'start': self.start_time.isoformat(),
            'end': self.calculated_end_time.isoformat()
        }

    def to_dict(self):
        return {
            'id': self.id,
            'vehicle_id': self.vehicle_id,
            'charger_id': self.charger_id,
            'user_id': self.user_id,
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'calculated_end_time': self.calculated_end_time.isoformat() if self.calculated_end_time else None,
            'estimated_charge_time': self.estimated_charge_time,
            'buffer_time': self.buffer_time,
            'status': self.status,
            'cancelled_by': self.cancelled_by,
            'cancellation_reason': self.cancellation_reason,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None
        }

    def __repr__(self):
        return f'<Reservation {self.id}>'
