import logging
from contextlib import contextmanager
from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from datetime import datetime
from sqlalchemy.exc import OperationalError, InterfaceError

from constants import STATUS_PENDING, DEFAULT_TEAM
from errors import Unavailable

logger = logging.getLogger(__name__)

db = SQLAlchemy()


@contextmanager
def db_transaction(action):
    """
    Run a unit of work on db.session. Any exception rolls the session back;
    lost connections and lock timeouts surface as Unavailable so callers can
    tell them apart from domain errors.
    """
    try:
        yield db.session
    except (OperationalError, InterfaceError) as e:
        db.session.rollback()
        logger.error(f"Database unavailable during {action}: {e}", exc_info=True)
        raise Unavailable() from e
    except Exception:
        db.session.rollback()
        raise

class User(UserMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=True)
    full_name = db.Column(db.String(100), nullable=True)
    date_joined = db.Column(db.DateTime, default=datetime.utcnow)


class Administrator(db.Model):
    """Administrators list. A user is an admin iff their email is listed here."""
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class Item(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, nullable=True)
    price = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    # Only ever decremented inside reservations.create_reservation's conditional update
    stock = db.Column(db.Integer, nullable=False, default=0)
    active = db.Column(db.Boolean, nullable=False, default=True)
    image_url = db.Column(db.String(500), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    reservations = db.relationship('Reservation', backref='item', lazy=True,
                                   cascade='all, delete-orphan')

    __table_args__ = (
        db.CheckConstraint('stock >= 0', name='ck_item_stock_non_negative'),
        db.CheckConstraint('price >= 0', name='ck_item_price_non_negative'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description or '',
            'price': str(self.price) if self.price is not None else '0.00',
            'stock': self.stock,
            'active': self.active,
            'image_url': self.image_url,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class Reservation(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(db.Integer, db.ForeignKey('item.id', ondelete='CASCADE'), nullable=False, index=True)
    full_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(120), nullable=False)
    team = db.Column(db.String(100), nullable=False, default=DEFAULT_TEAM)
    quantity = db.Column(db.Integer, nullable=False)
    # 'pending', 'collected' or 'cancelled'; the only field mutated after creation
    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        db.CheckConstraint('quantity > 0', name='ck_reservation_quantity_positive'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'item_id': self.item_id,
            'item_name': self.item.name if self.item else None,
            'full_name': self.full_name,
            'email': self.email,
            'team': self.team,
            'quantity': self.quantity,
            'status': self.status,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
