"""
Input validation shared by the HTML forms, the JSON API and the API client.

The small validate_* helpers return (ok, value_or_error) tuples. The
validate_*_request / validate_item_fields functions build on them and raise
ValidationError with the first problem found.
"""
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from constants import (
    DEFAULT_TEAM, RESERVATION_STATUSES,
    MIN_PRICE, MAX_PRICE, MAX_STOCK, MAX_QUANTITY,
    MAX_ITEM_NAME_LENGTH, MAX_ITEM_DESCRIPTION_LENGTH,
    MAX_EMAIL_LENGTH, MAX_NAME_LENGTH, MAX_TEAM_LENGTH,
)
from errors import ValidationError

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')
CENTS = Decimal('0.01')


def validate_email(email):
    """Validate email format"""
    if not email or len(email) > MAX_EMAIL_LENGTH:
        return False
    return bool(EMAIL_PATTERN.match(email))


def _parse_int(value):
    # bool is an int subclass; "True" is never a quantity
    if isinstance(value, bool):
        raise ValueError(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(value)
        return int(value)
    return int(str(value).strip())


def validate_quantity(quantity):
    """Validate a reservation quantity: a positive whole number."""
    try:
        qty = _parse_int(quantity)
    except (ValueError, TypeError):
        return False, "Quantity must be a whole number."
    if qty < 1:
        return False, "Quantity must be at least 1."
    if qty > MAX_QUANTITY:
        return False, f"Quantity cannot exceed {MAX_QUANTITY}."
    return True, qty


def validate_stock(stock):
    """Validate a stock count: a non-negative whole number."""
    try:
        value = _parse_int(stock)
    except (ValueError, TypeError):
        return False, "Invalid stock value"
    if value < 0 or value > MAX_STOCK:
        return False, f"Stock must be between 0 and {MAX_STOCK}"
    return True, value


def validate_price(price):
    """Validate price is within acceptable range. Returns a Decimal rounded to cents."""
    if isinstance(price, bool):
        return False, "Invalid price format"
    try:
        value = Decimal(str(price).strip())
    except (InvalidOperation, ValueError, TypeError):
        return False, "Invalid price format"
    if not value.is_finite():
        return False, "Invalid price format"
    if value < MIN_PRICE or value > MAX_PRICE:
        return False, f"Price must be between {MIN_PRICE} and {MAX_PRICE}"
    return True, value.quantize(CENTS, rounding=ROUND_HALF_UP)


def validate_status(status):
    if status not in RESERVATION_STATUSES:
        return False, f"Status must be one of: {', '.join(RESERVATION_STATUSES)}"
    return True, status


def validate_reservation_request(full_name, email, team, quantity):
    """
    Pre-flight checks for a reservation. This is a fast-fail for bad input,
    not the stock safety boundary (see reservations.create_reservation).

    Returns a dict of cleaned values: name trimmed, email trimmed and
    lower-cased, blank team replaced by DEFAULT_TEAM.
    """
    full_name = (full_name or '').strip()
    email = (email or '').strip().lower()
    team = (team or '').strip() or DEFAULT_TEAM

    if not full_name:
        raise ValidationError("Please provide your full name.")
    if len(full_name) > MAX_NAME_LENGTH:
        raise ValidationError(f"Name is too long (max {MAX_NAME_LENGTH} characters).")
    if not email:
        raise ValidationError("Please provide your email address.")
    if not validate_email(email):
        raise ValidationError("Please provide a valid email address.")
    if len(team) > MAX_TEAM_LENGTH:
        raise ValidationError(f"Team is too long (max {MAX_TEAM_LENGTH} characters).")

    ok, qty = validate_quantity(quantity)
    if not ok:
        raise ValidationError(qty)

    return {'full_name': full_name, 'email': email, 'team': team, 'quantity': qty}


def validate_item_fields(fields, partial=False):
    """
    Validate item create/update fields. With partial=True only the keys present
    are checked (used by update_item). Unknown keys are rejected.
    """
    allowed = {'name', 'description', 'price', 'stock', 'active', 'image_url'}
    unknown = set(fields) - allowed
    if unknown:
        raise ValidationError(f"Unknown item field(s): {', '.join(sorted(unknown))}")

    cleaned = {}
    if 'name' in fields or not partial:
        name = (fields.get('name') or '').strip()
        if not name:
            raise ValidationError("Item name is required.")
        if len(name) > MAX_ITEM_NAME_LENGTH:
            raise ValidationError(f"Item name is too long (max {MAX_ITEM_NAME_LENGTH} characters).")
        cleaned['name'] = name

    if 'description' in fields:
        description = (fields.get('description') or '').strip()
        if len(description) > MAX_ITEM_DESCRIPTION_LENGTH:
            raise ValidationError(f"Description is too long (max {MAX_ITEM_DESCRIPTION_LENGTH} characters).")
        cleaned['description'] = description

    if 'price' in fields or not partial:
        ok, price = validate_price(fields.get('price'))
        if not ok:
            raise ValidationError(price)
        cleaned['price'] = price

    if 'stock' in fields or not partial:
        ok, stock = validate_stock(fields.get('stock'))
        if not ok:
            raise ValidationError(stock)
        cleaned['stock'] = stock

    if 'active' in fields:
        cleaned['active'] = bool(fields['active'])

    if 'image_url' in fields:
        cleaned['image_url'] = fields['image_url'] or None

    return cleaned
