"""
Pytest configuration and fixtures for the merch shop tests.

The app builds its database engine at import time, so the test database,
upload folder and rate-limit switch are set in the environment before
`app` is imported. Each test gets fresh tables.
"""
import os
import tempfile
from decimal import Decimal

_db_fd, _db_path = tempfile.mkstemp(suffix='.db')
_upload_dir = tempfile.mkdtemp()
os.environ['DATABASE_URL'] = f'sqlite:///{_db_path}'
os.environ['UPLOAD_FOLDER'] = _upload_dir
os.environ['RATELIMIT_ENABLED'] = 'false'
os.environ.pop('AWS_S3_BUCKET', None)
os.environ.pop('RESEND_API_KEY', None)

import pytest
from werkzeug.security import generate_password_hash

from app import app, db
from models import User, Administrator, Item


def pytest_sessionfinish(session, exitstatus):
    os.close(_db_fd)
    if os.path.exists(_db_path):
        os.unlink(_db_path)


@pytest.fixture(scope='function')
def client():
    """
    Test client with fresh tables.

    Yields inside an app context so tests can use db.session directly;
    tables are dropped afterwards.
    """
    app.config['TESTING'] = True
    app.config['WTF_CSRF_ENABLED'] = False  # Disable CSRF for easier testing
    app.config['SECRET_KEY'] = 'test-secret-key'
    app.config['RESTOCK_ON_CANCEL'] = False

    with app.test_client() as client:
        with app.app_context():
            db.create_all()
            yield client
            db.session.remove()
            db.drop_all()


@pytest.fixture
def make_item(client):
    """Factory for items. Defaults to an active hoodie with 3 in stock."""
    def _make(name='Team Hoodie', price='35.00', stock=3, active=True, **extra):
        item = Item(name=name, price=Decimal(price), stock=stock, active=active, **extra)
        db.session.add(item)
        db.session.commit()
        _ = item.id, item.name, item.stock
        return item
    return _make


@pytest.fixture
def test_item(make_item):
    """An active item with 3 in stock."""
    return make_item()


@pytest.fixture
def inactive_item(make_item):
    return make_item(name='Old Cap', price='12.50', stock=5, active=False)


@pytest.fixture
def test_user(client):
    """
    A regular signed-up user with no admin access.
    Email: customer@example.com
    Password: testpass123
    """
    user = User(
        email='customer@example.com',
        password_hash=generate_password_hash('testpass123'),
        full_name='Test Customer',
    )
    db.session.add(user)
    db.session.commit()
    _ = user.id, user.email
    return user


@pytest.fixture
def test_admin_user(client):
    """
    A user whose email is on the administrators list.
    Email: admin@example.com
    Password: adminpass123
    """
    admin = User(
        email='admin@example.com',
        password_hash=generate_password_hash('adminpass123'),
        full_name='Admin User',
    )
    db.session.add(admin)
    db.session.add(Administrator(email='admin@example.com'))
    db.session.commit()
    _ = admin.id, admin.email
    return admin


def _sign_in_session(client, user):
    # Flask-Login reads the user id from the session cookie
    with client.session_transaction() as sess:
        sess['_user_id'] = str(user.id)
        sess['_fresh'] = True
    return client


@pytest.fixture
def authenticated_client(client, test_user):
    """A client signed in as a regular (non-admin) user."""
    return _sign_in_session(client, test_user)


@pytest.fixture
def admin_client(client, test_admin_user):
    """A client signed in as an admin."""
    return _sign_in_session(client, test_admin_user)
