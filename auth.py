"""
Identity provider and admin authorization.

IdentityProvider is constructed once at app start and passed around
explicitly. It wraps Flask-Login sessions and tells listeners about every
sign-in and sign-out.

check_admin() looks the user up in the administrators list in a worker thread
with an explicit deadline. Anything other than AdminCheck.AUTHORIZED, whether
a timeout, a lookup error or a missing entry, means no admin access.
"""
import enum
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError

from flask import current_app
from flask_login import login_user, logout_user, current_user
from sqlalchemy import func
from werkzeug.security import check_password_hash

from constants import ADMIN_CHECK_TIMEOUT
from errors import Unauthorized, ValidationError
from models import db, User, Administrator
from validation import validate_email

logger = logging.getLogger(__name__)


class AdminCheck(enum.Enum):
    AUTHORIZED = 'authorized'
    UNAUTHORIZED = 'unauthorized'
    ERROR = 'error'

    @property
    def granted(self):
        return self is AdminCheck.AUTHORIZED


def is_admin(user_id):
    """True if the user exists and their email is on the administrators list."""
    if not user_id:
        return False
    user = db.session.get(User, int(user_id))
    if user is None:
        return False
    listed = Administrator.query.filter(func.lower(Administrator.email) == user.email.lower()).first()
    return listed is not None


_admin_check_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix='admin-check')


def _run_in_app_context(app, lookup, user_id):
    with app.app_context():
        return lookup(user_id)


def check_admin(user_id, deadline=None, lookup=is_admin):
    """
    Ask whether `user_id` is an admin, giving up after `deadline` seconds
    (ADMIN_CHECK_TIMEOUT by default). Returns an AdminCheck; never raises.
    """
    if not user_id:
        return AdminCheck.UNAUTHORIZED
    if deadline is None:
        deadline = current_app.config.get('ADMIN_CHECK_TIMEOUT', ADMIN_CHECK_TIMEOUT)

    app = current_app._get_current_object()
    future = _admin_check_pool.submit(_run_in_app_context, app, lookup, user_id)
    try:
        authorized = future.result(timeout=deadline)
    except FutureTimeoutError:
        future.cancel()
        logger.warning(f"Admin check for user {user_id} exceeded {deadline}s deadline; denying")
        return AdminCheck.UNAUTHORIZED
    except Exception as e:
        logger.error(f"Admin check for user {user_id} failed: {e}", exc_info=True)
        return AdminCheck.ERROR
    return AdminCheck.AUTHORIZED if authorized else AdminCheck.UNAUTHORIZED


class AuthListener:
    """Handle returned by on_auth_state_change(); close() stops notifications."""

    def __init__(self, provider, callback):
        self._provider = provider
        self.callback = callback

    def close(self):
        self._provider._remove_listener(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class IdentityProvider:
    """Session-based email/password sign-in on top of Flask-Login."""

    def __init__(self, login_manager=None):
        self._listeners = []
        self._lock = threading.Lock()
        if login_manager is not None:
            login_manager.user_loader(self.load_user)

    @staticmethod
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    def sign_in(self, email, password, remember=False):
        """Verify credentials and start a session. Raises Unauthorized on bad credentials."""
        email = (email or '').strip().lower()
        if not email or not validate_email(email):
            raise ValidationError("Please provide a valid email address.")
        if not password:
            raise ValidationError("Please enter your password.")

        user = User.query.filter(func.lower(User.email) == email).first()
        if user is None or not user.password_hash or not check_password_hash(user.password_hash, password):
            logger.info(f"Failed sign-in for {email}")
            raise Unauthorized("Invalid email or password.")

        login_user(user, remember=remember)
        logger.info(f"User {user.id} signed in")
        self._notify(user)
        return user

    def sign_out(self):
        if current_user.is_authenticated:
            logger.info(f"User {current_user.id} signed out")
        logout_user()
        self._notify(None)

    def get_current_session(self):
        """The signed-in user, or None."""
        if current_user and current_user.is_authenticated:
            return current_user._get_current_object()
        return None

    def on_auth_state_change(self, callback):
        """Call `callback(user_or_None)` after every sign-in and sign-out."""
        listener = AuthListener(self, callback)
        with self._lock:
            self._listeners.append(listener)
        return listener

    def _remove_listener(self, listener):
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, user):
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener.callback(user)
