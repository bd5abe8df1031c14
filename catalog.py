"""
Catalog store: item reads for the storefront and item CRUD for admins.
"""
import logging

from sqlalchemy import update

from constants import STATUS_PENDING
from errors import NotFound, Conflict, ValidationError
from models import db, db_transaction, Item, Reservation
from notifications import mark_items_changed
from validation import validate_item_fields, validate_stock

logger = logging.getLogger(__name__)


def _newest_first(query):
    return query.order_by(Item.created_at.desc(), Item.id.desc())


def list_active_items():
    """Items visible on the storefront, newest first."""
    with db_transaction('list_active_items'):
        return _newest_first(Item.query.filter_by(active=True)).all()


def list_all_items():
    """Every item including inactive ones (admin), newest first."""
    with db_transaction('list_all_items'):
        return _newest_first(Item.query).all()


def get_item(item_id):
    with db_transaction('get_item'):
        item = db.session.get(Item, item_id)
    if item is None:
        raise NotFound(f"Item {item_id} not found.")
    return item


def get_active_item(item_id):
    item = get_item(item_id)
    if not item.active:
        raise NotFound(f"Item {item_id} is not available.")
    return item


def create_item(**fields):
    cleaned = validate_item_fields(fields)
    with db_transaction('create_item'):
        item = Item(**cleaned)
        db.session.add(item)
        db.session.commit()
    logger.info(f"Item {item.id} created: {item.name} (stock {item.stock})")
    return item


def update_item(item_id, expected_stock=None, **fields):
    """
    Update item fields. Changing `stock` requires `expected_stock` (the value
    the admin's form was loaded with): the write only applies if stock has not
    moved in the meantime, otherwise Conflict is raised so a concurrent
    reservation is never silently overwritten.
    """
    cleaned = validate_item_fields(fields, partial=True)
    if 'stock' in cleaned and expected_stock is None:
        raise ValidationError("expected_stock is required when changing stock.")
    item = get_item(item_id)

    with db_transaction('update_item'):
        if 'stock' in cleaned:
            ok, expected = validate_stock(expected_stock)
            if not ok:
                raise ValidationError(expected)
            result = db.session.execute(
                update(Item)
                .where(Item.id == item_id, Item.stock == expected)
                .values(stock=cleaned.pop('stock'))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.session.rollback()
                raise Conflict("Stock changed since this form was loaded. Please reload and try again.")
            mark_items_changed(db.session)

        for key, value in cleaned.items():
            setattr(item, key, value)
        db.session.commit()
        db.session.refresh(item)

    logger.info(f"Item {item.id} updated: {', '.join(sorted(fields))}")
    return item


def _pending_count(item_id):
    return Reservation.query.filter_by(item_id=item_id, status=STATUS_PENDING).count()


def delete_item(item_id):
    """
    Delete an item and its closed (collected/cancelled) reservation history.
    Refuses with Conflict while pending reservations reference it.
    Returns the deleted item's image_url so the caller can clean up storage.
    """
    item = get_item(item_id)
    with db_transaction('delete_item'):
        # Write the item row first: reservations for it now wait for this
        # transaction, so none can land between the check and the delete
        db.session.execute(
            update(Item)
            .where(Item.id == item_id)
            .values(active=False)
            .execution_options(synchronize_session=False)
        )
        pending = _pending_count(item_id)
        if pending:
            db.session.rollback()
            raise Conflict(
                f"Cannot delete '{item.name}' - it has {pending} pending reservation(s). "
                "Mark them collected or cancelled first."
            )
        image_url = item.image_url
        name = item.name
        db.session.delete(item)
        db.session.commit()
    logger.info(f"Item {item_id} deleted: {name}")
    return image_url
