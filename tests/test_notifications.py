"""
Tests for the item change notification channel.

Run: pytest tests/test_notifications.py -v
"""
import threading

import pytest

import catalog
from errors import InsufficientStock
from models import db, Item, Reservation
from notifications import ChangeChannel, item_changes
from reservations import create_reservation, update_reservation_status


@pytest.mark.unit
class TestChangeChannel:

    def test_publish_bumps_token(self):
        channel = ChangeChannel('test')
        assert channel.current_token() == 0
        assert channel.publish() == 1
        assert channel.publish() == 2
        assert channel.current_token() == 2

    def test_subscription_is_released(self):
        channel = ChangeChannel('test')
        with channel.subscribe() as sub:
            assert channel.subscriber_count == 1
        assert sub.closed
        assert channel.subscriber_count == 0

    def test_callback_receives_token(self):
        channel = ChangeChannel('test')
        seen = []
        with channel.subscribe(seen.append):
            channel.publish()
            channel.publish()
        channel.publish()
        assert seen == [1, 2]

    def test_failing_callback_does_not_stop_others(self):
        channel = ChangeChannel('test')
        seen = []

        def broken(token):
            raise RuntimeError('boom')

        with channel.subscribe(broken), channel.subscribe(seen.append):
            channel.publish()
        assert seen == [1]

    def test_wait_times_out_without_change(self):
        channel = ChangeChannel('test')
        with channel.subscribe() as sub:
            assert sub.wait(timeout=0.05) is None

    def test_wait_skips_to_latest_token(self):
        channel = ChangeChannel('test')
        with channel.subscribe() as sub:
            channel.publish()
            channel.publish()
            channel.publish()
            assert sub.wait(timeout=1) == 3
            assert sub.wait(timeout=0.05) is None

    def test_wait_wakes_on_publish_from_another_thread(self):
        channel = ChangeChannel('test')
        with channel.subscribe() as sub:
            timer = threading.Timer(0.05, channel.publish)
            timer.start()
            assert sub.wait(timeout=5) == 1
            timer.join()

    def test_close_wakes_waiter(self):
        channel = ChangeChannel('test')
        sub = channel.subscribe()
        timer = threading.Timer(0.05, sub.close)
        timer.start()
        assert sub.wait(timeout=5) is None
        timer.join()

    def test_wait_for_change_returns_current_when_behind(self):
        channel = ChangeChannel('test')
        channel.publish()
        assert channel.wait_for_change(0, timeout=0) == 1


@pytest.mark.integration
class TestItemChangeEvents:

    def test_item_create_publishes(self, client):
        before = item_changes.current_token()
        catalog.create_item(name='Mug', price='5', stock='4')
        assert item_changes.current_token() > before

    def test_reservation_publishes(self, test_item):
        with item_changes.subscribe() as sub:
            create_reservation(test_item.id, 'Jane Doe', 'jane@example.com', '', 1)
            assert sub.wait(timeout=1) is not None

    def test_failed_reservation_does_not_publish(self, test_item):
        before = item_changes.current_token()
        with pytest.raises(InsufficientStock):
            create_reservation(test_item.id, 'Jane Doe', 'jane@example.com', '', 10)
        assert item_changes.current_token() == before

    def test_status_change_without_restock_does_not_publish(self, test_item):
        reservation = create_reservation(test_item.id, 'Jane Doe', 'jane@example.com', '', 1)
        before = item_changes.current_token()
        update_reservation_status(reservation.id, 'collected')
        assert item_changes.current_token() == before

    def test_restock_publishes(self, test_item):
        reservation = create_reservation(test_item.id, 'Jane Doe', 'jane@example.com', '', 1)
        before = item_changes.current_token()
        update_reservation_status(reservation.id, 'cancelled', restock=True)
        assert item_changes.current_token() > before

    def test_rollback_discards_pending_change(self, test_item):
        before = item_changes.current_token()
        db.session.get(Item, test_item.id).name = 'Unsaved'
        db.session.flush()
        db.session.rollback()
        db.session.add(Reservation(item_id=test_item.id, full_name='Jane Doe',
                                   email='jane@example.com', quantity=1))
        db.session.commit()
        assert item_changes.current_token() == before

    def test_item_delete_publishes(self, test_item):
        before = item_changes.current_token()
        catalog.delete_item(test_item.id)
        assert item_changes.current_token() > before
