"""
Reservation ledger and the atomic reservation procedure.

create_reservation() is the only place Item.stock is decremented. The
decrement is a single conditional UPDATE (stock >= quantity) executed in the
same transaction as the reservation insert, so contending requests for the
same item are linearized by the database row lock: two requests for the last
unit give exactly one reservation and one InsufficientStock, and stock can
never go negative.
"""
import logging
from sqlalchemy import update, func
from sqlalchemy.orm import joinedload

from constants import (
    STATUS_PENDING, STATUS_COLLECTED, STATUS_CANCELLED, RESERVATION_STATUSES,
)
from errors import NotFound, InsufficientStock, ValidationError, Conflict
from models import db, db_transaction, Item, Reservation
from notifications import mark_items_changed
from validation import validate_reservation_request, validate_status

logger = logging.getLogger(__name__)


def _take_stock(item_id, quantity, require_active=True):
    """Decrement stock iff there is enough (and the item is active). Returns True when a row was updated."""
    conditions = [Item.id == item_id, Item.stock >= quantity]
    if require_active:
        conditions.append(Item.active.is_(True))
    result = db.session.execute(
        update(Item)
        .where(*conditions)
        .values(stock=Item.stock - quantity)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _return_stock(item_id, quantity):
    db.session.execute(
        update(Item)
        .where(Item.id == item_id)
        .values(stock=Item.stock + quantity)
        .execution_options(synchronize_session=False)
    )


def create_reservation(item_id, full_name, email, team, quantity):
    """
    Reserve `quantity` units of an item for a customer.

    Input is validated first (ValidationError, no transaction started). Then,
    in one transaction, stock is decremented and a pending Reservation is
    inserted. Raises NotFound if the item does not exist or is inactive,
    InsufficientStock if the current stock is lower than `quantity`, and
    Unavailable if the database cannot be reached. Returns the new Reservation.
    """
    request = validate_reservation_request(full_name, email, team, quantity)
    qty = request['quantity']

    with db_transaction('create_reservation'):
        if not _take_stock(item_id, qty):
            db.session.rollback()
            item = db.session.get(Item, item_id)
            if item is None or not item.active:
                logger.info(f"Reservation rejected: item {item_id} not found or inactive")
                raise NotFound(f"Item {item_id} is not available for reservation.")
            logger.info(f"Reservation rejected: item {item_id} has {item.stock} in stock, {qty} requested")
            raise InsufficientStock(
                f"Only {item.stock} left in stock."
                if item.stock else "This item is out of stock."
            )

        mark_items_changed(db.session)
        reservation = Reservation(item_id=item_id, status=STATUS_PENDING, **request)
        db.session.add(reservation)
        db.session.commit()

    logger.info(f"Reservation {reservation.id} created: item {item_id} x{qty} for {reservation.email}")
    return reservation


def get_reservation(reservation_id):
    with db_transaction('get_reservation'):
        reservation = db.session.get(Reservation, reservation_id)
    if reservation is None:
        raise NotFound(f"Reservation {reservation_id} not found.")
    return reservation


def list_reservations(status=None):
    """Reservations newest first, optionally filtered by status ('all' or None for everything)."""
    if status in (None, '', 'all'):
        status = None
    else:
        ok, error = validate_status(status)
        if not ok:
            raise ValidationError(error)

    with db_transaction('list_reservations'):
        query = Reservation.query.options(joinedload(Reservation.item))
        if status:
            query = query.filter_by(status=status)
        return query.order_by(Reservation.created_at.desc(), Reservation.id.desc()).all()


def reservation_stats():
    """Counts per status plus the total, e.g. {'total': 3, 'pending': 2, ...}."""
    with db_transaction('reservation_stats'):
        rows = db.session.query(Reservation.status, func.count(Reservation.id)).group_by(Reservation.status).all()
    stats = {status: 0 for status in RESERVATION_STATUSES}
    for status, count in rows:
        stats[status] = count
    stats['total'] = sum(stats[s] for s in RESERVATION_STATUSES)
    return stats


def update_reservation_status(reservation_id, new_status, restock=False):
    """
    Set a reservation's status (admin). By default stock is left untouched,
    so a cancelled reservation keeps its units out of stock. With restock=True,
    moving into 'cancelled' returns the units, and moving out of 'cancelled'
    takes them again (InsufficientStock if they are gone).

    The status only moves if it is still the one read here; a concurrent
    change by another admin raises Conflict, so units are never returned twice.
    """
    ok, error = validate_status(new_status)
    if not ok:
        raise ValidationError(error)

    reservation = get_reservation(reservation_id)
    old_status = reservation.status
    if old_status == new_status:
        return reservation
    item_id, quantity = reservation.item_id, reservation.quantity

    with db_transaction('update_reservation_status'):
        result = db.session.execute(
            update(Reservation)
            .where(Reservation.id == reservation_id, Reservation.status == old_status)
            .values(status=new_status)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            logger.info(f"Reservation {reservation_id} status changed concurrently; {old_status} -> {new_status} rejected")
            raise Conflict("This reservation was changed by someone else. Please reload and try again.")

        if restock and new_status == STATUS_CANCELLED:
            _return_stock(item_id, quantity)
            mark_items_changed(db.session)
        elif restock and old_status == STATUS_CANCELLED:
            # Re-activating ignores the active flag; the reservation already exists
            if not _take_stock(item_id, quantity, require_active=False):
                db.session.rollback()
                raise InsufficientStock("Not enough stock left to reinstate this reservation.")
            mark_items_changed(db.session)
        db.session.commit()

    logger.info(f"Reservation {reservation_id} status {old_status} -> {new_status}"
                + (" (restocked)" if restock and STATUS_CANCELLED in (old_status, new_status) else ""))
    return reservation


def delete_reservation(reservation_id):
    """Delete a reservation (admin). Stock is not returned."""
    reservation = get_reservation(reservation_id)
    with db_transaction('delete_reservation'):
        db.session.delete(reservation)
        db.session.commit()
    logger.info(f"Reservation {reservation_id} deleted")


def reserved_quantity(item_id):
    """Units held by non-cancelled reservations of an item."""
    with db_transaction('reserved_quantity'):
        total = db.session.query(func.coalesce(func.sum(Reservation.quantity), 0)).filter(
            Reservation.item_id == item_id,
            Reservation.status.in_((STATUS_PENDING, STATUS_COLLECTED)),
        ).scalar()
    return int(total)


def reserved_quantities():
    """Units held by non-cancelled reservations, per item id, in one query."""
    with db_transaction('reserved_quantities'):
        rows = db.session.query(Reservation.item_id, func.sum(Reservation.quantity)).filter(
            Reservation.status.in_((STATUS_PENDING, STATUS_COLLECTED)),
        ).group_by(Reservation.item_id).all()
    return {item_id: int(total) for item_id, total in rows}
