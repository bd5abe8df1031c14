"""
Async client for the shop's JSON API.

    async with ShopClient("https://shop.example.org") as shop:
        items = await shop.list_active_items()
        reservation = await shop.create_reservation(items[0], "Jane Doe", "jane@x.tn", "", 2)

The client is constructed explicitly and owns one httpx.AsyncClient for its
lifetime. Every request has a client-side timeout; timeouts and transport
failures raise Unavailable, never InsufficientStock. Reads are retried on
Unavailable with exponential backoff. create_reservation is not retried:
a timed-out request may still have committed, so the caller must refresh
before trying again.
"""
import asyncio
import logging

import httpx

from errors import ShopError, Unavailable, ValidationError, error_from_payload
from validation import validate_reservation_request

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_RETRIES = 3
DEFAULT_BACKOFF = 0.5


class ShopClient:

    def __init__(self, base_url, timeout=DEFAULT_TIMEOUT, retries=DEFAULT_RETRIES,
                 backoff=DEFAULT_BACKOFF, transport=None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self._transport = transport
        self._http = None

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
        return False

    async def open(self):
        if self._http is None:
            self._http = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout,
                                           transport=self._transport)

    async def close(self):
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def _request(self, method, path, timeout=None, **kwargs):
        if self._http is None:
            raise RuntimeError("ShopClient is not open; use 'async with ShopClient(...)'")
        try:
            response = await self._http.request(method, path, timeout=timeout or self.timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise Unavailable(f"Request to {path} timed out.") from e
        except httpx.TransportError as e:
            raise Unavailable(f"Could not reach the shop: {e}") from e

        if response.is_success:
            return response.json()
        try:
            payload = response.json()
        except ValueError:
            payload = None
        raise error_from_payload(payload, response.status_code)

    async def _read(self, method, path, **kwargs):
        """GET-style request retried on Unavailable with exponential backoff."""
        attempt = 0
        while True:
            try:
                return await self._request(method, path, **kwargs)
            except Unavailable:
                attempt += 1
                if attempt > self.retries:
                    raise
                delay = self.backoff * (2 ** (attempt - 1))
                logger.warning(f"{path} unavailable, retry {attempt}/{self.retries} in {delay:.1f}s")
                await asyncio.sleep(delay)

    async def list_active_items(self):
        data = await self._read('GET', '/api/items')
        return data['items']

    async def create_reservation(self, item, full_name, email, team, quantity):
        """
        Reserve `quantity` of `item` (an item dict as returned by
        list_active_items). Input and the last-known stock are checked locally
        first; the server re-checks stock atomically. Returns the reservation dict.
        """
        request = validate_reservation_request(full_name, email, team, quantity)
        stock = item.get('stock')
        if stock is not None and request['quantity'] > stock:
            raise ValidationError(f"Only {stock} item{'' if stock == 1 else 's'} available.")

        data = await self._request('POST', '/api/reservations', json={'item_id': item['id'], **request})
        return data['reservation']

    async def poll_changes(self, since=None, wait=0):
        """Long-poll the item change token. Returns (token, changed)."""
        params = {'wait': wait}
        if since is not None:
            params['since'] = since
        data = await self._read('GET', '/api/items/changes', params=params,
                                timeout=self.timeout + wait)
        return data['token'], data['changed']

    async def watch_items(self, wait=20):
        """
        Async generator yielding the active item list: once immediately, then
        after every change. On reconnect after an outage it re-fetches before
        waiting again, so a subscriber that missed notifications still converges.
        Stop by breaking out of the loop or cancelling the task.
        """
        token, _ = await self.poll_changes()
        yield await self.list_active_items()
        while True:
            try:
                new_token, changed = await self.poll_changes(since=token, wait=wait)
            except Unavailable:
                logger.warning("Change stream unavailable; resyncing")
                token, _ = await self.poll_changes()
                yield await self.list_active_items()
                continue
            if changed:
                token = new_token
                yield await self.list_active_items()


def describe_error(error):
    """User-facing message for a failed reservation."""
    if isinstance(error, ShopError) and error.code == 'insufficient_stock':
        return "Sorry, this item is no longer available in the requested quantity. Please refresh and try again."
    if isinstance(error, Unavailable):
        return "The shop could not be reached. Please try again in a moment."
    if isinstance(error, ShopError):
        return error.message
    return "Failed to create reservation. Please try again."
