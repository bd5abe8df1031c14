import os
import csv
import re
import logging
import html as html_module
from datetime import datetime
from functools import wraps
from io import StringIO

from dotenv import load_dotenv
load_dotenv()  # Load .env for local dev (hosted deploys use env vars directly)

import resend
from flask import Flask, render_template, request, redirect, url_for, flash, session, send_from_directory, jsonify, Response, g
from flask_login import LoginManager, login_required, current_user
from flask_migrate import Migrate
from flask_wtf.csrf import CSRFProtect
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# Import Models
from models import db

# Import Constants
from constants import (
    ADMIN_CHECK_TIMEOUT, CHANGE_POLL_MAX_WAIT, MAX_IMAGE_SIZE,
    RATE_LIMIT_LOGIN, RATE_LIMIT_RESERVE, RESERVATION_STATUSES,
)
from errors import ShopError, ValidationError, NotFound, InsufficientStock, Conflict, Unavailable, Unauthorized
from validation import validate_reservation_request
from auth import IdentityProvider, check_admin
from notifications import item_changes
from storage import init_storage, get_storage_instance, upload_image, delete_image_url
import catalog
import reservations

# Configure Logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# --- APP CONFIGURATION ---
app = Flask(__name__)

# SECURITY: This secret key enables sessions. Set SECRET_KEY in the environment.
app.secret_key = os.environ.get('SECRET_KEY', 'dev_key_for_local_use')

# 1. DATABASE CONFIGURATION
db_url = os.environ.get('DATABASE_URL')
if db_url:
    # Fix for SQLAlchemy: some hosts give 'postgres://', but SQLAlchemy needs 'postgresql://'
    if db_url.startswith("postgres://"):
        db_url = db_url.replace("postgres://", "postgresql://", 1)
    app.config['SQLALCHEMY_DATABASE_URI'] = db_url
else:
    # Local fallback
    app.config['SQLALCHEMY_DATABASE_URI'] = 'sqlite:///shop.db'

app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

# 2. STORAGE CONFIGURATION
upload_folder = os.environ.get('UPLOAD_FOLDER')
if upload_folder:
    app.config['UPLOAD_FOLDER'] = upload_folder
elif os.path.exists('/var/data'):
    app.config['UPLOAD_FOLDER'] = '/var/data'
else:
    # Local fallback
    app.config['UPLOAD_FOLDER'] = 'static/uploads'

# Hard cap on request bodies; the image check itself enforces MAX_IMAGE_SIZE
app.config['MAX_CONTENT_LENGTH'] = MAX_IMAGE_SIZE + 1024 * 1024

# 3. SHOP POLICY
app.config['SHOP_NAME'] = os.environ.get('SHOP_NAME', 'Merch Shop')
app.config['CURRENCY_LABEL'] = os.environ.get('CURRENCY_LABEL', 'TND')
app.config['ADMIN_CHECK_TIMEOUT'] = float(os.environ.get('ADMIN_CHECK_TIMEOUT', ADMIN_CHECK_TIMEOUT))
# Cancelled reservations keep their units out of stock unless this is enabled
app.config['RESTOCK_ON_CANCEL'] = os.environ.get('RESTOCK_ON_CANCEL', 'false').lower() == 'true'
app.config['RATELIMIT_ENABLED'] = os.environ.get('RATELIMIT_ENABLED', 'true').lower() == 'true'
app.config['RESEND_FROM_EMAIL'] = os.environ.get('RESEND_FROM_EMAIL', 'Merch Shop <shop@example.org>')

# Initialize DB & Migrations
db.init_app(app)
migrate = Migrate(app, db)

# CSRF Protection (JSON API endpoints are exempted individually)
csrf = CSRFProtect(app)

# Rate Limiting
limiter = Limiter(
    key_func=get_remote_address,
    app=app,
    default_limits=[],
    storage_uri="memory://"
)

# Image storage (S3 when AWS_S3_BUCKET is set, local disk otherwise)
init_storage(app)

# --- EXTERNAL SERVICES CONFIGURATION ---

# RESEND (EMAIL)
resend.api_key = os.environ.get('RESEND_API_KEY')

# LOGIN MANAGER + IDENTITY PROVIDER
login_manager = LoginManager()
login_manager.init_app(app)
login_manager.login_view = 'login'
identity = IdentityProvider(login_manager)


def _refresh_admin_flag(user):
    """Re-check admin status on every sign-in/sign-out. Only used for navigation; admin routes re-check."""
    if user is None:
        session.pop('is_admin', None)
        return
    session['is_admin'] = check_admin(user.id).granted


identity.on_auth_state_change(_refresh_admin_flag)


@app.context_processor
def inject_shop_settings():
    """Make shop settings available to all templates"""
    return dict(
        shop_name=app.config['SHOP_NAME'],
        currency=app.config['CURRENCY_LABEL'],
        show_admin_link=session.get('is_admin', False),
    )


def admin_required(view):
    """Allow the view only when the admin check returns AUTHORIZED (fail closed)."""
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not current_user.is_authenticated:
            flash("Please sign in to continue.", "error")
            return redirect(url_for('login', next=request.path))
        result = check_admin(current_user.id)
        if not result.granted:
            logger.warning(f"Admin access denied for user {current_user.id}: {result.value}")
            flash("Access denied.", "error")
            return redirect(url_for('index'))
        g.admin_check = result
        return view(*args, **kwargs)
    return wrapped


# --- EMAIL HELPERS ---

def html_to_text(html_content):
    """Convert HTML email content to plain text version"""
    text = re.sub(r'<[^>]+>', '', html_content)
    text = html_module.unescape(text)
    text = re.sub(r'\n\s*\n', '\n\n', text)
    return text.strip()


def send_email(to_email, subject, html_content, from_email=None):
    """
    Sends an email using Resend.

    Returns:
        bool: True if email sent successfully, False otherwise
    """
    if not resend.api_key:
        logger.warning(f"Skipping email to {to_email}: RESEND_API_KEY not set.")
        return False

    email_data = {
        "from": from_email or app.config['RESEND_FROM_EMAIL'],
        "to": to_email,
        "subject": subject,
        "html": html_content,
        "text": html_to_text(html_content)
    }

    try:
        resend.Emails.send(email_data)
        logger.info(f"Email sent to {to_email}: {subject}")
        return True
    except Exception as e:
        # Log error but never fail the request; the reservation is already committed
        logger.error(f"Failed to send email to {to_email}: {e}", exc_info=True)
        return False


def _reservation_email_html(reservation, item):
    """Build HTML for the reservation confirmation email."""
    total = item.price * reservation.quantity
    currency = app.config['CURRENCY_LABEL']
    name = html_module.escape(reservation.full_name)
    item_name = html_module.escape(item.name)
    return f"""
    <div style="font-family: sans-serif; padding: 20px; max-width: 500px;">
        <h2 style="color: #037ef3;">Reservation confirmed</h2>
        <p>Hi {name},</p>
        <p>We have reserved <strong>{reservation.quantity} x {item_name}</strong> for you.</p>
        <div style="background: #f0f9ff; border: 1px solid #bae6fd; border-radius: 8px; padding: 16px; margin: 20px 0;">
            <p style="margin: 0 0 8px;"><strong>Reservation #:</strong> {reservation.id}</p>
            <p style="margin: 0;"><strong>Total:</strong> {total:.2f} {currency}</p>
        </div>
        <p>You will be contacted when your item is ready for collection.</p>
        <p>Thanks,<br>{html_module.escape(app.config['SHOP_NAME'])}</p>
    </div>
    """


def _send_reservation_confirmation(reservation):
    item = reservation.item
    if item is None:
        return False
    return send_email(
        reservation.email,
        f"Reservation confirmed - {app.config['SHOP_NAME']}",
        _reservation_email_html(reservation, item)
    )


# --- ERROR HANDLERS ---

def _wants_json():
    return request.path.startswith('/api/')


@app.errorhandler(ShopError)
def shop_error(error):
    if _wants_json():
        return jsonify(error.to_dict()), error.status_code
    if error.status_code == 404:
        return render_template('error.html', error_code=404, error_message=error.message), 404
    flash(error.message, "error")
    return redirect(request.referrer or url_for('index'))


@app.errorhandler(404)
def not_found_error(error):
    logger.warning(f"404 error: {request.url}")
    if _wants_json():
        return jsonify(NotFound("Not found.").to_dict()), 404
    return render_template('error.html',
                         error_code=404,
                         error_message="Page not found"), 404


@app.errorhandler(500)
def internal_error(error):
    logger.error(f"500 error: {error}", exc_info=True)
    db.session.rollback()
    if _wants_json():
        return jsonify(ShopError().to_dict()), 500
    return render_template('error.html',
                         error_code=500,
                         error_message="An internal error occurred. Please try again later."), 500


@app.errorhandler(413)
def request_entity_too_large(error):
    logger.warning("413 error: Upload too large")
    message = f"File is too large. Maximum size is {MAX_IMAGE_SIZE // (1024 * 1024)}MB."
    if _wants_json():
        return jsonify(ValidationError(message).to_dict()), 413
    flash(message, "error")
    return redirect(request.referrer or url_for('index')), 303


# =========================================================
# SECTION 1: STOREFRONT
# =========================================================

@app.route('/')
def index():
    token = item_changes.current_token()
    try:
        items = catalog.list_active_items()
    except Unavailable as e:
        flash(e.message, "error")
        items = []
    return render_template('shop.html', items=items, change_token=token)


@app.route('/item/<int:item_id>/reserve', methods=['GET', 'POST'])
@limiter.limit(RATE_LIMIT_RESERVE, methods=['POST'])
def reserve_item(item_id):
    item = catalog.get_active_item(item_id)
    form = {'full_name': '', 'email': '', 'team': '', 'quantity': 1}

    if request.method == 'POST':
        form = {
            'full_name': request.form.get('full_name', ''),
            'email': request.form.get('email', ''),
            'team': request.form.get('team', ''),
            'quantity': request.form.get('quantity', ''),
        }
        try:
            cleaned = validate_reservation_request(**form)
            # Fast-fail on the stock the customer was shown; the procedure re-checks atomically
            if cleaned['quantity'] > item.stock:
                plural = '' if item.stock == 1 else 's'
                raise ValidationError(f"Only {item.stock} item{plural} available.")
            reservation = reservations.create_reservation(item_id, **cleaned)
        except InsufficientStock:
            flash("Sorry, this item is no longer available in the requested quantity. "
                  "Please refresh and try again.", "error")
            return render_template('reserve.html', item=item, form=form), 409
        except ValidationError as e:
            flash(e.message, "error")
            return render_template('reserve.html', item=item, form=form), 400
        except Unavailable as e:
            flash(e.message, "error")
            return render_template('reserve.html', item=item, form=form), 503
        except NotFound:
            flash("Sorry! This item is no longer available.", "error")
            return redirect(url_for('index'))

        # Only the browser that made the reservation may view its confirmation page
        session['reservations'] = (session.get('reservations', []) + [reservation.id])[-20:]
        _send_reservation_confirmation(reservation)
        flash("Reservation confirmed! You will be contacted when your item is ready for collection.", "success")
        return redirect(url_for('reservation_confirmed', reservation_id=reservation.id))

    return render_template('reserve.html', item=item, form=form)


@app.route('/reservation/<int:reservation_id>/confirmed')
def reservation_confirmed(reservation_id):
    if reservation_id not in session.get('reservations', []):
        raise NotFound("Reservation not found.")
    reservation = reservations.get_reservation(reservation_id)
    return render_template('reservation_confirmed.html', reservation=reservation, item=reservation.item)


# --- IMAGE SERVING ROUTE (local storage only) ---
@app.route('/uploads/<filename>')
def uploaded_file(filename):
    return send_from_directory(app.config['UPLOAD_FOLDER'], filename)


# =========================================================
# SECTION 2: JSON API
# =========================================================

@app.route('/api/items')
def api_items():
    # Token first: a change landing during the fetch is then seen by the next poll
    token = item_changes.current_token()
    items = catalog.list_active_items()
    return jsonify({'items': [item.to_dict() for item in items], 'token': token})


@app.route('/api/items/<int:item_id>')
def api_item(item_id):
    item = catalog.get_active_item(item_id)
    return jsonify({'item': item.to_dict()})


@app.route('/api/items/changes')
def api_item_changes():
    """
    Long-poll for catalog changes. Without `since` it returns the current token
    immediately. With `since` it waits up to `wait` seconds for a newer one.
    """
    since = request.args.get('since', type=int)
    wait = request.args.get('wait', 0, type=float)
    wait = max(0.0, min(wait, CHANGE_POLL_MAX_WAIT))

    if since is None:
        return jsonify({'token': item_changes.current_token(), 'changed': False})
    token = item_changes.wait_for_change(since, timeout=wait)
    return jsonify({'token': token, 'changed': token != since})


@app.route('/api/reservations', methods=['POST'])
@csrf.exempt
@limiter.limit(RATE_LIMIT_RESERVE)
def api_create_reservation():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")
    item_id = payload.get('item_id')
    if isinstance(item_id, bool) or not isinstance(item_id, (int, str)):
        raise ValidationError("item_id is required.")
    try:
        item_id = int(item_id)
    except ValueError:
        raise ValidationError("item_id must be an integer.")

    reservation = reservations.create_reservation(
        item_id,
        payload.get('full_name'),
        payload.get('email'),
        payload.get('team'),
        payload.get('quantity'),
    )
    _send_reservation_confirmation(reservation)
    return jsonify({'reservation': reservation.to_dict()}), 201


# =========================================================
# SECTION 3: AUTH
# =========================================================

@app.route('/login', methods=['GET', 'POST'])
@limiter.limit(RATE_LIMIT_LOGIN, methods=['POST'])
def login():
    if current_user.is_authenticated:
        return redirect(url_for('admin_panel'))

    if request.method == 'POST':
        email = request.form.get('email', '').strip()
        try:
            user = identity.sign_in(email, request.form.get('password', ''))
        except (ValidationError, Unauthorized) as e:
            flash(e.message, "error")
            return render_template('login.html', prefill_email=email), 401
        if not session.get('is_admin'):
            flash("Signed in, but this account has no admin access.", "info")
            return redirect(url_for('index'))
        next_url = request.args.get('next')
        if next_url and next_url.startswith('/') and not next_url.startswith('//'):
            return redirect(next_url)
        return redirect(url_for('admin_panel'))

    return render_template('login.html', prefill_email=request.args.get('email', ''))


@app.route('/logout')
@login_required
def logout():
    identity.sign_out()
    return redirect(url_for('index'))


# =========================================================
# SECTION 4: ADMIN ROUTES
# =========================================================

@app.route('/admin')
@admin_required
def admin_panel():
    tab = request.args.get('tab', 'items')
    status_filter = request.args.get('status', 'all')
    if status_filter not in ('all',) + RESERVATION_STATUSES:
        status_filter = 'all'

    items = catalog.list_all_items()
    reserved = reservations.reserved_quantities()
    return render_template(
        'admin.html',
        tab=tab,
        items=items,
        reserved=reserved,
        reservations=reservations.list_reservations(status_filter),
        stats=reservations.reservation_stats(),
        status_filter=status_filter,
        statuses=RESERVATION_STATUSES,
    )


def _item_form_fields():
    return {
        'name': request.form.get('name', ''),
        'description': request.form.get('description', ''),
        'price': request.form.get('price', ''),
        'stock': request.form.get('stock', ''),
        'active': request.form.get('active') in ('on', 'true', '1'),
    }


def _uploaded_image_url():
    """Store the uploaded image (if any) and return its URL, or None when no file was chosen."""
    file = request.files.get('image')
    if not file or not file.filename:
        return None
    return upload_image(get_storage_instance(), file.stream, file.mimetype)


@app.route('/admin/item/add', methods=['POST'])
@admin_required
def admin_add_item():
    """Create a new item"""
    fields = _item_form_fields()
    try:
        image_url = _uploaded_image_url()
        if image_url:
            fields['image_url'] = image_url
        item = catalog.create_item(**fields)
    except ShopError as e:
        flash(f"Error saving item: {e.message}", "error")
        return redirect(url_for('admin_panel', tab='items'))

    flash(f"Item '{item.name}' added successfully!", "success")
    return redirect(url_for('admin_panel', tab='items'))


@app.route('/admin/item/edit/<int:item_id>', methods=['GET', 'POST'])
@admin_required
def admin_edit_item(item_id):
    item = catalog.get_item(item_id)

    if request.method == 'POST':
        fields = _item_form_fields()
        old_image_url = item.image_url
        expected_stock = request.form.get('expected_stock', '').strip()
        if fields['stock'].strip() == expected_stock:
            # Stock untouched in the form; leave it to concurrent reservations
            fields.pop('stock')
        try:
            image_url = _uploaded_image_url()
            if image_url:
                fields['image_url'] = image_url
            elif request.form.get('remove_image'):
                fields['image_url'] = None
            item = catalog.update_item(item_id, expected_stock=expected_stock or None, **fields)
        except ShopError as e:
            flash(f"Error saving item: {e.message}", "error")
            return redirect(url_for('admin_edit_item', item_id=item_id))

        if old_image_url and old_image_url != item.image_url:
            delete_image_url(get_storage_instance(), old_image_url)
        flash("Item updated successfully!", "success")
        return redirect(url_for('admin_panel', tab='items'))

    return render_template('edit_item.html', item=item)


@app.route('/admin/item/delete/<int:item_id>', methods=['POST'])
@admin_required
def admin_delete_item(item_id):
    """Delete an item (only if no pending reservations reference it)"""
    try:
        image_url = catalog.delete_item(item_id)
    except (Conflict, NotFound, Unavailable) as e:
        flash(e.message, "error")
        return redirect(url_for('admin_panel', tab='items'))

    if image_url:
        delete_image_url(get_storage_instance(), image_url)
    flash("Item deleted successfully!", "success")
    return redirect(url_for('admin_panel', tab='items'))


@app.route('/admin/reservation/<int:reservation_id>/status', methods=['POST'])
@admin_required
def admin_update_reservation_status(reservation_id):
    new_status = request.form.get('status', '')
    status_filter = request.form.get('filter', 'all')
    try:
        reservations.update_reservation_status(
            reservation_id, new_status, restock=app.config['RESTOCK_ON_CANCEL'])
    except ShopError as e:
        flash(f"Error updating status: {e.message}", "error")
    else:
        flash(f"Reservation #{reservation_id} marked {new_status}.", "success")
    return redirect(url_for('admin_panel', tab='reservations', status=status_filter))


@app.route('/admin/reservation/<int:reservation_id>/delete', methods=['POST'])
@admin_required
def admin_delete_reservation(reservation_id):
    status_filter = request.form.get('filter', 'all')
    try:
        reservations.delete_reservation(reservation_id)
    except ShopError as e:
        flash(f"Error deleting reservation: {e.message}", "error")
    else:
        flash(f"Reservation #{reservation_id} deleted.", "success")
    return redirect(url_for('admin_panel', tab='reservations', status=status_filter))


@app.route('/admin/export/reservations')
@admin_required
def admin_export_reservations():
    """Export reservations as CSV (respects ?status=)"""
    status_filter = request.args.get('status', 'all')
    rows = reservations.list_reservations(status_filter)

    si = StringIO()
    cw = csv.writer(si)
    cw.writerow(['ID', 'Created', 'Item', 'Unit Price', 'Quantity', 'Full Name', 'Email', 'Team', 'Status'])
    for r in rows:
        cw.writerow([
            r.id,
            r.created_at.strftime('%Y-%m-%d %H:%M') if r.created_at else '',
            r.item.name if r.item else '',
            f"{r.item.price:.2f}" if r.item else '',
            r.quantity,
            r.full_name,
            r.email,
            r.team,
            r.status,
        ])

    filename = f"reservations_{status_filter}_{datetime.utcnow().strftime('%Y%m%d')}.csv"
    return Response(
        si.getvalue(),
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename={filename}'}
    )


# =========================================================
# SECTION 5: OPERATIONS
# =========================================================

@app.route('/health')
def health_check():
    """Health check endpoint for monitoring and load balancers"""
    try:
        db.session.execute(db.text('SELECT 1'))
        storage = get_storage_instance()
        health_status = {
            'status': 'healthy',
            'database': 'connected',
            'storage': 's3' if storage and storage.is_s3() else 'local',
            'change_token': item_changes.current_token(),
            'timestamp': datetime.utcnow().isoformat()
        }
        if resend.api_key:
            health_status['resend'] = 'configured'
        return jsonify(health_status), 200
    except Exception as e:
        logger.error(f"Health check failed: {e}", exc_info=True)
        db.session.rollback()
        return jsonify({
            'status': 'unhealthy',
            'error': str(e),
            'timestamp': datetime.utcnow().isoformat()
        }), 503


if __name__ == '__main__':
    with app.app_context():
        # Only create DB if it doesn't exist (Local SQLite check)
        # In production, use migrations.
        if 'DATABASE_URL' not in os.environ:
            db.create_all()
    app.run(debug=os.environ.get('FLASK_DEBUG', 'false').lower() == 'true')
