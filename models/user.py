from flask_sqlalchemy import SQLAlchemy
from orchestration_core.store import utcnow
import uuid

db = SQLAlchemy()


def new_id():
    return str(uuid.uuid4())


class User(db.Model):
    """用户模型（司机 / 充电站运营方）"""
    __tablename__ = 'users'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(100), nullable=False, comment='用户名')
    email = db.Column(db.String(120), comment='邮箱')

    # 用户类型：user(司机) or admin(充电站运营方)
    user_type = db.Column(db.String(10), default='user', nullable=False, comment='用户类型')

    created_at = db.Column(db.DateTime, default=utcnow, comment='创建时间')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'user_type': self.user_type,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }

    def __repr__(self):
        return f'<User {self.name}>'


class Vehicle(db.Model):
    """电动车模型"""
    __tablename__ = 'vehicles'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), comment='车主ID')
    model = db.Column(db.String(100), comment='车型')
    connector_type = db.Column(db.String(10), nullable=False, comment='接口类型')
    battery_capacity = db.Column(db.Float, nullable=False, comment='电池容量(kWh)')
    current_charge_level = db.Column(db.Float, default=0.0, nullable=False, comment='当前电量(%)')

    user = db.relationship('User', backref=db.backref('vehicles', lazy=True))

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'model': self.model,
            'connector_type': self.connector_type,
            'battery_capacity': self.battery_capacity,
            'current_charge_level': self.current_charge_level
        }

    def __repr__(self):
        return f'<Vehicle {self.id}>'
