from orchestration_core.store import utcnow
from models.user import db, new_id


class Charger(db.Model):
    """充电桩模型"""
    __tablename__ = 'chargers'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    owner_id = db.Column(db.String(36), db.ForeignKey('users.id'), comment='运营方ID')
    name = db.Column(db.String(100), nullable=False, comment='充电桩名称')

    # 位置
    latitude = db.Column(db.Float, nullable=False, comment='纬度')
    longitude = db.Column(db.Float, nullable=False, comment='经度')

    connector_type = db.Column(db.String(10), nullable=False, comment='接口类型')
    power_output = db.Column(db.Float, nullable=True, comment='额定功率(kW)，未知时按历史推算')

    # 价格
    energy_cost = db.Column(db.Numeric(10, 2), nullable=False, default=0, comment='电价(每kWh)')
    parking_cost = db.Column(db.Numeric(10, 2), nullable=False, default=0, comment='占位费(每分钟)')

    status = db.Column(db.String(20), default='available', nullable=False, comment='状态')

    created_at = db.Column(db.DateTime, default=utcnow, comment='创建时间')
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, comment='更新时间')

    owner = db.relationship('User', backref=db.backref('chargers', lazy=True))

    def to_dict(self):
        return {
            'id': self.id,
            'owner_id': self.owner_id,
            'name': self.name,
            'location': {'latitude': self.latitude, 'longitude': self.longitude},
            'connector_type': self.connector_type,
            'power_output': self.power_output,
            'energy_cost': float(self.energy_cost) if self.energy_cost is not None else 0.0,
            'parking_cost': float(self.parking_cost) if self.parking_cost is not None else 0.0,
            'status': self.status,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None
        }

    def __repr__(self):
        return f'<Charger {self.id}>'
