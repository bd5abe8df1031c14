"""
Change notification channel for the item catalog.

The store is the single producer: every committed transaction that touched an
Item bumps a version token. Storefront sessions subscribe and re-fetch the
active item list when the token moves. The token carries no diff, and a slow
subscriber simply skips intermediate versions and converges on the latest one.
"""
import logging
import threading
from itertools import chain

from sqlalchemy import event
from sqlalchemy.orm import Session

from models import Item

logger = logging.getLogger(__name__)

ITEMS_CHANGED_KEY = 'items_changed'


class Subscription:
    """
    Handle returned by ChangeChannel.subscribe(). Use it as a context manager
    (or call close()) so the subscriber is always released.
    """

    def __init__(self, channel, callback=None):
        self._channel = channel
        self._callback = callback
        self.last_token = channel.current_token()
        self.closed = False

    def wait(self, timeout=None):
        """
        Block until the channel token differs from the last one seen here.
        Returns the new token, or None on timeout or after close().
        """
        if self.closed:
            return None
        token = self._channel.wait_for_change(self.last_token, timeout, cancelled=lambda: self.closed)
        if token == self.last_token or self.closed:
            return None
        self.last_token = token
        return token

    def _deliver(self, token):
        if self._callback is None:
            return
        try:
            self._callback(token)
        except Exception as e:
            logger.error(f"Change subscriber callback failed on {self._channel.name} token {token}: {e}", exc_info=True)

    def close(self):
        if not self.closed:
            self.closed = True
            self._channel._remove(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class ChangeChannel:
    """Single-producer, multi-consumer stream of 'table changed' tokens."""

    def __init__(self, name):
        self.name = name
        self._cond = threading.Condition()
        self._token = 0
        self._subscribers = []

    def current_token(self):
        with self._cond:
            return self._token

    def publish(self):
        with self._cond:
            self._token += 1
            token = self._token
            subscribers = list(self._subscribers)
            self._cond.notify_all()
        logger.debug(f"{self.name} changed, token {token} ({len(subscribers)} subscribers)")
        for sub in subscribers:
            sub._deliver(token)
        return token

    def subscribe(self, callback=None):
        sub = Subscription(self, callback)
        with self._cond:
            self._subscribers.append(sub)
        return sub

    def _remove(self, sub):
        with self._cond:
            if sub in self._subscribers:
                self._subscribers.remove(sub)
            # Wake a waiter blocked on the closed subscription
            self._cond.notify_all()

    @property
    def subscriber_count(self):
        with self._cond:
            return len(self._subscribers)

    def wait_for_change(self, since, timeout=None, cancelled=None):
        """Block until the token differs from `since` (or timeout). Returns the current token."""
        with self._cond:
            self._cond.wait_for(
                lambda: self._token != since or (cancelled is not None and cancelled()),
                timeout,
            )
            return self._token


# Module-level channel for the items table (initialized when app loads)
item_changes = ChangeChannel('items')


def mark_items_changed(session):
    """Flag a session whose pending transaction mutates items outside the ORM unit of work."""
    session.info[ITEMS_CHANGED_KEY] = True


@event.listens_for(Session, 'after_flush')
def _track_item_changes(session, flush_context):
    # new/dirty/deleted still hold the pre-flush state here
    if any(isinstance(obj, Item) for obj in chain(session.new, session.dirty, session.deleted)):
        mark_items_changed(session)


@event.listens_for(Session, 'after_commit')
def _publish_item_changes(session):
    if session.info.pop(ITEMS_CHANGED_KEY, False):
        item_changes.publish()


@event.listens_for(Session, 'after_rollback')
def _discard_item_changes(session):
    session.info.pop(ITEMS_CHANGED_KEY, None)
