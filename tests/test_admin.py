"""
Integration tests for admin routes.

These test the admin dashboard, item management and reservation management.
Run: pytest tests/test_admin.py -v
"""
import csv
from io import BytesIO, StringIO

import pytest
from PIL import Image

from models import db, Item, Reservation
from reservations import create_reservation


def _reload(model, pk):
    """Fetch a row as the app committed it, bypassing objects cached in this session."""
    db.session.expire_all()
    return db.session.get(model, pk)


def _png_bytes(size=(40, 30)):
    buf = BytesIO()
    Image.new('RGB', size, (200, 30, 30)).save(buf, 'PNG')
    return buf.getvalue()


@pytest.mark.integration
class TestAdminAccess:
    """Test admin access control"""

    def test_admin_requires_login(self, client):
        response = client.get('/admin')
        assert response.status_code == 302
        assert '/login' in response.location

    def test_admin_requires_admin_role(self, authenticated_client):
        response = authenticated_client.get('/admin', follow_redirects=True)
        assert response.status_code == 200
        assert b'access denied' in response.data.lower()

    def test_admin_access_granted(self, admin_client):
        response = admin_client.get('/admin')
        assert response.status_code == 200
        assert b'Admin Dashboard' in response.data

    def test_admin_write_routes_protected(self, authenticated_client, test_item):
        authenticated_client.post(f'/admin/item/delete/{test_item.id}')
        assert _reload(Item, test_item.id) is not None

    def test_failed_admin_check_denies(self, admin_client, monkeypatch):
        from auth import AdminCheck
        monkeypatch.setattr('app.check_admin', lambda user_id: AdminCheck.ERROR)
        response = admin_client.get('/admin', follow_redirects=True)
        assert b'access denied' in response.data.lower()


@pytest.mark.integration
class TestAdminItemManagement:

    def test_items_tab_lists_all_items(self, admin_client, test_item, inactive_item):
        response = admin_client.get('/admin?tab=items')
        assert response.status_code == 200
        assert b'Team Hoodie' in response.data
        assert b'Old Cap' in response.data

    def test_add_item(self, admin_client):
        response = admin_client.post('/admin/item/add', data={
            'name': 'Water Bottle',
            'description': 'Steel, 500ml',
            'price': '15.50',
            'stock': '20',
            'active': 'on',
        }, follow_redirects=True)
        assert response.status_code == 200
        assert b'added successfully' in response.data

        item = Item.query.filter_by(name='Water Bottle').first()
        assert item is not None
        assert item.stock == 20
        assert item.active is True
        assert item.image_url is None

    def test_add_item_with_image(self, admin_client):
        response = admin_client.post('/admin/item/add', data={
            'name': 'Poster',
            'price': '5',
            'stock': '2',
            'image': (BytesIO(_png_bytes()), 'poster.png', 'image/png'),
        }, content_type='multipart/form-data', follow_redirects=True)
        assert response.status_code == 200

        item = Item.query.filter_by(name='Poster').first()
        assert item.active is False
        assert item.image_url.startswith('/uploads/item_')
        assert admin_client.get(item.image_url).status_code == 200

    def test_add_item_rejects_non_image(self, admin_client):
        response = admin_client.post('/admin/item/add', data={
            'name': 'Poster',
            'price': '5',
            'stock': '2',
            'image': (BytesIO(b'%PDF-1.4'), 'poster.pdf', 'application/pdf'),
        }, content_type='multipart/form-data', follow_redirects=True)
        assert b'Please select an image file' in response.data
        assert Item.query.count() == 0

    def test_add_item_rejects_bad_price(self, admin_client):
        response = admin_client.post('/admin/item/add', data={
            'name': 'Mug', 'price': '-3', 'stock': '1',
        }, follow_redirects=True)
        assert b'Error saving item' in response.data
        assert Item.query.count() == 0

    def test_edit_page_loads(self, admin_client, test_item):
        response = admin_client.get(f'/admin/item/edit/{test_item.id}')
        assert response.status_code == 200
        assert b'name="expected_stock" value="3"' in response.data

    def test_edit_item(self, admin_client, test_item):
        response = admin_client.post(f'/admin/item/edit/{test_item.id}', data={
            'name': 'Zip Hoodie',
            'description': 'Navy',
            'price': '42',
            'stock': '8',
            'expected_stock': '3',
            'active': 'on',
        }, follow_redirects=True)
        assert b'Item updated successfully!' in response.data

        item = _reload(Item, test_item.id)
        assert item.name == 'Zip Hoodie'
        assert item.stock == 8

    def test_edit_with_stale_stock_conflicts(self, admin_client, test_item):
        create_reservation(test_item.id, 'Jane Doe', 'jane@example.com', '', 1)
        response = admin_client.post(f'/admin/item/edit/{test_item.id}', data={
            'name': 'Team Hoodie', 'price': '35', 'stock': '10',
            'expected_stock': '3', 'active': 'on',
        }, follow_redirects=True)
        assert b'Stock changed since this form was loaded' in response.data
        assert _reload(Item, test_item.id).stock == 2

    def test_edit_without_touching_stock_keeps_reservations(self, admin_client, test_item):
        # Form loaded at 3; a reservation lands; admin only renames
        create_reservation(test_item.id, 'Jane Doe', 'jane@example.com', '', 1)
        admin_client.post(f'/admin/item/edit/{test_item.id}', data={
            'name': 'Renamed Hoodie', 'price': '35', 'stock': '3',
            'expected_stock': '3', 'active': 'on',
        })
        item = _reload(Item, test_item.id)
        assert item.name == 'Renamed Hoodie'
        assert item.stock == 2

    def test_deactivate_item(self, admin_client, test_item):
        admin_client.post(f'/admin/item/edit/{test_item.id}', data={
            'name': 'Team Hoodie', 'price': '35', 'stock': '3', 'expected_stock': '3',
        })
        assert _reload(Item, test_item.id).active is False
        assert b'Team Hoodie' not in admin_client.get('/').data

    def test_delete_item(self, admin_client, test_item):
        response = admin_client.post(f'/admin/item/delete/{test_item.id}', follow_redirects=True)
        assert b'Item deleted successfully!' in response.data
        assert _reload(Item, test_item.id) is None

    def test_delete_item_with_pending_reservation(self, admin_client, test_item):
        create_reservation(test_item.id, 'Jane Doe', 'jane@example.com', '', 1)
        response = admin_client.post(f'/admin/item/delete/{test_item.id}', follow_redirects=True)
        assert b'pending reservation' in response.data
        assert _reload(Item, test_item.id) is not None


@pytest.mark.integration
class TestAdminReservationManagement:

    def test_status_filter_scenario(self, admin_client, test_item):
        first = create_reservation(test_item.id, 'Alice Pending', 'alice@example.com', '', 1)
        second = create_reservation(test_item.id, 'Bob Collected', 'bob@example.com', '', 1)

        response = admin_client.post(f'/admin/reservation/{second.id}/status', data={
            'status': 'collected', 'filter': 'pending',
        })
        assert response.status_code == 302
        assert 'status=pending' in response.location

        pending = admin_client.get('/admin?tab=reservations&status=pending')
        assert b'Alice Pending' in pending.data
        assert b'Bob Collected' not in pending.data

        collected = admin_client.get('/admin?tab=reservations&status=collected')
        assert b'Bob Collected' in collected.data
        assert b'Alice Pending' not in collected.data

        everything = admin_client.get('/admin?tab=reservations&status=all')
        assert b'Alice Pending' in everything.data
        assert b'Bob Collected' in everything.data
        assert _reload(Reservation, first.id).status == 'pending'

    def test_invalid_status_rejected(self, admin_client, test_item):
        reservation = create_reservation(test_item.id, 'Jane Doe', 'jane@example.com', '', 1)
        response = admin_client.post(f'/admin/reservation/{reservation.id}/status', data={
            'status': 'shipped',
        }, follow_redirects=True)
        assert b'Error updating status' in response.data
        assert _reload(Reservation, reservation.id).status == 'pending'

    def test_cancel_keeps_stock_by_default(self, admin_client, test_item):
        reservation = create_reservation(test_item.id, 'Jane Doe', 'jane@example.com', '', 2)
        admin_client.post(f'/admin/reservation/{reservation.id}/status', data={'status': 'cancelled'})
        assert _reload(Item, test_item.id).stock == 1

    def test_cancel_restocks_when_enabled(self, admin_client, test_item):
        admin_client.application.config['RESTOCK_ON_CANCEL'] = True
        reservation = create_reservation(test_item.id, 'Jane Doe', 'jane@example.com', '', 2)
        admin_client.post(f'/admin/reservation/{reservation.id}/status', data={'status': 'cancelled'})
        assert _reload(Item, test_item.id).stock == 3

    def test_delete_reservation(self, admin_client, test_item):
        reservation = create_reservation(test_item.id, 'Jane Doe', 'jane@example.com', '', 1)
        response = admin_client.post(f'/admin/reservation/{reservation.id}/delete', follow_redirects=True)
        assert f'Reservation #{reservation.id} deleted.'.encode() in response.data
        assert Reservation.query.count() == 0

    def test_stats_shown(self, admin_client, test_item):
        create_reservation(test_item.id, 'Jane Doe', 'jane@example.com', '', 1)
        response = admin_client.get('/admin?tab=reservations')
        assert b'Total Reservations' in response.data


@pytest.mark.integration
class TestAdminExport:

    def test_export_reservations_csv(self, admin_client, test_item):
        create_reservation(test_item.id, 'Jane Doe', 'jane@example.com', 'Robotics', 2)
        response = admin_client.get('/admin/export/reservations')
        assert response.status_code == 200
        assert response.mimetype == 'text/csv'
        assert 'attachment' in response.headers['Content-Disposition']

        rows = list(csv.reader(StringIO(response.data.decode())))
        assert rows[0][0] == 'ID'
        assert rows[1][2:] == ['Team Hoodie', '35.00', '2', 'Jane Doe', 'jane@example.com', 'Robotics', 'pending']

    def test_export_respects_filter(self, admin_client, test_item):
        create_reservation(test_item.id, 'Jane Doe', 'jane@example.com', '', 1)
        response = admin_client.get('/admin/export/reservations?status=collected')
        rows = list(csv.reader(StringIO(response.data.decode())))
        assert len(rows) == 1
