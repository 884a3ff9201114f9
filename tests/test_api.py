from __future__ import annotations

import json
import unittest
from contextlib import aclosing
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from fastapi.testclient import TestClient

from order_board.main import app
from order_board.models import AuditLog, StaffRole, Store
from order_board.services.change_feed_service import ChangeFeedSubscriber
from tests.db_support import create_staff_session, make_session_factory

TENANT = 'tenant-1'
DATE = '22/06/2025'

ORDER_PAYLOAD = {
    'id': 1001,
    'name': '#WF1001',
    'tags': ['22/06/2025'],
    'customer': {'first_name': 'Jane', 'last_name': 'Doe'},
    'line_items': [
        {'id': 1, 'product_id': 10, 'variant_id': 100, 'title': 'Rose Bouquet', 'quantity': 2, 'price': '55.00'},
        {'id': 2, 'product_id': 20, 'title': 'Express Delivery', 'variant_title': '10:00AM - 12:00PM'},
        {'id': 3, 'product_id': 30, 'title': 'Corsage', 'price': '10.00'},
    ],
}


class _TwoEventFeed(ChangeFeedSubscriber):
    async def events(self):
        async with aclosing(super().events()) as events:
            delivered = 0
            async for event in events:
                yield event
                delivered += 1
                if delivered == 2:
                    return


def _parse_frames(body: str) -> list[tuple[str, dict]]:
    frames = []
    for block in body.strip().split('\n\n'):
        lines = dict(line.split(': ', 1) for line in block.splitlines())
        frames.append((lines['event'], json.loads(lines['data'])))
    return frames


class OrderBoardApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        self._previous_factory = app.state.session_factory
        app.state.session_factory = self.session_factory

        with self.session_factory() as db:
            store = Store(tenant_id=TENANT, name='Wild Flowers', order_name_prefix='WF')
            db.add(store)
            db.commit()
            self.store_id = store.id
            create_staff_session(db, tenant_id=TENANT, username='owner', role=StaffRole.OWNER, token='owner-token')
            create_staff_session(db, tenant_id=TENANT, username='mia', role=StaffRole.FLORIST, token='florist-token')
            create_staff_session(db, tenant_id=TENANT, username='guest', role=StaffRole.VIEWER, token='viewer-token')
            create_staff_session(db, tenant_id='tenant-2', username='other', role=StaffRole.OWNER, token='other-token')

        self.client = TestClient(app)

    def tearDown(self) -> None:
        self.client.close()
        app.state.session_factory = self._previous_factory

    def _headers(self, token: str = 'owner-token') -> dict:
        return {'Authorization': f'Bearer {token}'}

    def _ingest(self, payload: dict | None = None):
        return self.client.post(f'/api/webhooks/orders/{TENANT}/{self.store_id}', json=payload or ORDER_PAYLOAD)

    def _board(self, token: str = 'owner-token'):
        response = self.client.get(f'/api/tenants/{TENANT}/cards', params={'date': DATE}, headers=self._headers(token))
        self.assertEqual(response.status_code, 200)
        return response.json()

    def test_health(self) -> None:
        response = self.client.get('/api/health')
        self.assertEqual(response.json(), {'status': 'healthy'})

    def test_webhook_is_idempotent(self) -> None:
        first = self._ingest()
        second = self._ingest()

        self.assertEqual(first.status_code, 200)
        self.assertTrue(first.json()['created'])
        self.assertFalse(second.json()['created'])
        self.assertEqual(first.json()['orderId'], second.json()['orderId'])
        self.assertEqual(first.json()['deliveryDate'], DATE)

    def test_webhook_rejects_bad_input(self) -> None:
        self.assertEqual(self._ingest({'id': 1, 'line_items': 'nope'}).status_code, 400)
        self.assertEqual(self.client.post(f'/api/webhooks/orders/{TENANT}/999', json=ORDER_PAYLOAD).status_code, 404)
        response = self.client.post(
            f'/api/webhooks/orders/{TENANT}/{self.store_id}',
            content=b'not json',
            headers={'content-type': 'application/json'},
        )
        self.assertEqual(response.status_code, 400)

    def test_board_lists_derived_cards(self) -> None:
        self._ingest()

        board = self._board()

        self.assertEqual(board['count'], 2)
        self.assertEqual([card['cardId'] for card in board['mainCards']], ['1001-1-0', '1001-1-1'])
        card = board['mainCards'][0]
        self.assertTrue(card['isExpressOrder'])
        self.assertEqual(card['expressTimeSlot'], '10:00AM - 12:00PM')
        self.assertEqual([item['title'] for item in card['topUpItems']], ['Corsage'])
        self.assertEqual(card['status'], 'unassigned')
        self.assertEqual(card['storeName'], 'Wild Flowers')
        container = board['containers'][0]
        self.assertEqual(container['storeName'], 'Wild Flowers')
        self.assertEqual([window['label'] for window in container['timeWindows']], ['Morning'])

    def test_board_requires_valid_date_and_auth(self) -> None:
        self.assertEqual(self.client.get(f'/api/tenants/{TENANT}/cards', params={'date': DATE}).status_code, 401)
        response = self.client.get(
            f'/api/tenants/{TENANT}/cards', params={'date': DATE}, headers=self._headers('other-token')
        )
        self.assertEqual(response.status_code, 403)
        response = self.client.get(
            f'/api/tenants/{TENANT}/cards', params={'date': '2025-06-22'}, headers=self._headers()
        )
        self.assertEqual(response.status_code, 400)
        response = self.client.get(
            f'/api/tenants/{TENANT}/cards', params={'date': 'unscheduled'}, headers=self._headers()
        )
        self.assertEqual(response.status_code, 200)

    def test_card_state_update_merges_fields(self) -> None:
        self._ingest()
        url = f'/api/tenants/{TENANT}/card-state/1001-1-0'

        assigned = self.client.put(
            url, json={'deliveryDate': DATE, 'status': 'assigned', 'assignedTo': 'Mia'}, headers=self._headers()
        )
        noted = self.client.put(url, json={'deliveryDate': DATE, 'notes': 'Card reads "Happy Birthday"'}, headers=self._headers())

        self.assertEqual(assigned.status_code, 200)
        self.assertEqual(assigned.json()['assignedBy'], 'owner')
        body = noted.json()
        self.assertEqual(body['status'], 'assigned')
        self.assertEqual(body['assignedTo'], 'Mia')
        self.assertEqual(body['notes'], 'Card reads "Happy Birthday"')
        with self.session_factory() as db:
            actions = [row.action for row in db.query(AuditLog).order_by(AuditLog.id).all()]
        self.assertEqual(actions.count('CARD_STATE_UPDATED'), 2)

    def test_card_state_update_rejects_bad_requests(self) -> None:
        url = f'/api/tenants/{TENANT}/card-state/1001-1-0'
        self.assertEqual(self.client.put(url, json={'deliveryDate': DATE}, headers=self._headers()).status_code, 400)
        response = self.client.put(url, json={'deliveryDate': DATE, 'status': 'done'}, headers=self._headers())
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['detail'], 'Invalid status: done')
        response = self.client.put(
            url, json={'deliveryDate': DATE, 'status': 'assigned'}, headers=self._headers('viewer-token')
        )
        self.assertEqual(response.status_code, 403)

    def test_reorder_changes_board_order_only(self) -> None:
        self._ingest()
        self.client.put(
            f'/api/tenants/{TENANT}/card-state/1001-1-0',
            json={'deliveryDate': DATE, 'status': 'assigned', 'assignedTo': 'Mia', 'notes': 'Ribbon'},
            headers=self._headers(),
        )

        response = self.client.post(
            f'/api/tenants/{TENANT}/orders/reorder',
            json={'deliveryDate': DATE, 'orderedCardIds': ['1001-1-1', '1001-1-0']},
            headers=self._headers('florist-token'),
        )

        self.assertEqual(response.json(), {'success': True, 'count': 2})
        cards = self._board()['mainCards']
        self.assertEqual([card['cardId'] for card in cards], ['1001-1-1', '1001-1-0'])
        moved = cards[1]
        self.assertEqual(moved['sortOrder'], 20)
        self.assertEqual(moved['status'], 'assigned')
        self.assertEqual(moved['assignedTo'], 'Mia')
        self.assertEqual(moved['assignedBy'], 'owner')
        self.assertEqual(moved['notes'], 'Ribbon')

    def test_bulk_update_reports_per_item(self) -> None:
        response = self.client.post(
            f'/api/tenants/{TENANT}/card-state/bulk',
            json={
                'deliveryDate': DATE,
                'updates': [
                    {'cardId': '1001-1-0', 'status': 'completed'},
                    {'cardId': '1001-1-1', 'status': 'finished'},
                ],
            },
            headers=self._headers('florist-token'),
        )

        body = response.json()
        self.assertEqual(response.status_code, 200)
        self.assertEqual((body['successCount'], body['failureCount']), (1, 1))
        self.assertEqual(body['results'][0]['state']['status'], 'completed')
        self.assertEqual(body['results'][1]['error'], 'Invalid status: finished')

    def test_changes_endpoint_returns_recent_writes(self) -> None:
        self.client.put(
            f'/api/tenants/{TENANT}/card-state/1001-1-0',
            json={'deliveryDate': DATE, 'status': 'completed'},
            headers=self._headers(),
        )

        response = self.client.get(f'/api/tenants/{TENANT}/card-state/changes', headers=self._headers())
        bad = self.client.get(
            f'/api/tenants/{TENANT}/card-state/changes', params={'since': 'yesterday'}, headers=self._headers()
        )

        body = response.json()
        self.assertEqual(body['count'], 1)
        self.assertEqual(body['changes'][0]['cardId'], '1001-1-0')
        self.assertEqual(body['changes'][0]['status'], 'completed')
        self.assertEqual(bad.status_code, 400)

    def test_changes_endpoint_accepts_unencoded_offset(self) -> None:
        self.client.put(
            f'/api/tenants/{TENANT}/card-state/1001-1-0',
            json={'deliveryDate': DATE, 'status': 'assigned'},
            headers=self._headers(),
        )
        since = (datetime.now(tz=timezone.utc) - timedelta(minutes=1)).isoformat()
        self.assertIn('+00:00', since)

        response = self.client.get(f'/api/tenants/{TENANT}/card-state/changes?since={since}', headers=self._headers())

        self.assertEqual(response.status_code, 200)
        self.assertEqual([change['cardId'] for change in response.json()['changes']], ['1001-1-0'])

    def test_event_stream_sends_connected_then_updates(self) -> None:
        self.client.put(
            f'/api/tenants/{TENANT}/card-state/1001-1-0',
            json={'deliveryDate': DATE, 'status': 'assigned', 'assignedTo': 'Mia'},
            headers=self._headers(),
        )

        with patch('order_board.routers.events.ChangeFeedSubscriber', _TwoEventFeed):
            with self.client.stream('GET', f'/api/tenants/{TENANT}/events', headers=self._headers()) as response:
                self.assertEqual(response.status_code, 200)
                self.assertTrue(response.headers['content-type'].startswith('text/event-stream'))
                body = ''.join(response.iter_text())

        frames = _parse_frames(body)
        self.assertEqual([event for event, _ in frames], ['connected', 'order_update'])
        update = frames[1][1]
        self.assertEqual(update['cardId'], '1001-1-0')
        self.assertEqual(update['assignedTo'], 'Mia')
        self.assertEqual(update['status'], 'assigned')

    def test_event_stream_requires_tenant_session(self) -> None:
        url = f'/api/tenants/{TENANT}/events'
        self.assertEqual(self.client.get(url).status_code, 401)
        self.assertEqual(self.client.get(url, headers=self._headers('other-token')).status_code, 403)

    def test_clear_by_date_is_admin_only(self) -> None:
        self.client.put(
            f'/api/tenants/{TENANT}/card-state/1001-1-0',
            json={'deliveryDate': DATE, 'status': 'completed'},
            headers=self._headers(),
        )
        url = f'/api/tenants/{TENANT}/card-state/clear-by-date'

        forbidden = self.client.post(url, json={'deliveryDate': DATE}, headers=self._headers('florist-token'))
        cleared = self.client.post(url, json={'deliveryDate': DATE}, headers=self._headers())

        self.assertEqual(forbidden.status_code, 403)
        self.assertEqual(cleared.json(), {'success': True, 'deletedCount': 1})


if __name__ == '__main__':
    unittest.main()
