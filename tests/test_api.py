from __future__ import annotations

import unittest
from zoneinfo import ZoneInfo

from fastapi.testclient import TestClient
from sqlalchemy import select

from carrier_ledger.config import settings
from carrier_ledger.db import get_db
from carrier_ledger.main import app
from carrier_ledger.models import PrincipalRole, WebSession
from carrier_ledger.schemas import MAX_AMOUNT
from carrier_ledger.security.passwords import hash_password
from carrier_ledger.security.sessions import token_digest
from carrier_ledger.services.store_time import local_today
from tests.support import STORE_TIMEZONE, make_carrier, make_engine, make_principal, make_session_factory, make_shipped_order, make_store, random_id


class ApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.session_factory = make_session_factory(self.engine)

        with self.session_factory() as db:
            store = make_store(db)
            other = make_store(db, name='Other Store')
            carrier = make_carrier(db, store, name='Rapido')
            order = make_shipped_order(db, store, carrier, 'W-1', '100000')
            make_principal(db, username='manager', role=PrincipalRole.MANAGER, store=store)
            make_principal(db, username='operator', role=PrincipalRole.OPERATOR, store=store)
            make_principal(db, username='admin', role=PrincipalRole.ADMIN)
            make_principal(db, username='retired', store=store, active=False)
            self.store_id, self.other_store_id = store.id, other.id
            self.carrier_id, self.order_id = carrier.id, order.id
            db.commit()

        def _override_db():
            db = self.session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = _override_db
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.engine.dispose()

    def login(self, username: str, password: str = 'secret-pass') -> dict:
        response = self.client.post('/auth/login', json={'username': username, 'password': password})
        self.assertEqual(response.status_code, 200, response.text)
        return {'Authorization': f"Bearer {response.json()['access_token']}"}

    def test_login_rejects_bad_credentials(self) -> None:
        for username, password in (('manager', 'wrong'), ('nobody', 'secret-pass'), ('retired', 'secret-pass')):
            with self.subTest(username=username):
                response = self.client.post('/auth/login', json={'username': username, 'password': password})
                self.assertEqual(response.status_code, 401)

    def test_requests_need_a_token(self) -> None:
        response = self.client.get(f'/stores/{self.store_id}/carrier-accounts/balances')
        self.assertEqual(response.status_code, 401)
        response = self.client.get(
            f'/stores/{self.store_id}/carrier-accounts/balances', headers={'Authorization': 'Bearer not-a-token'}
        )
        self.assertEqual(response.status_code, 401)

    def test_logout_revokes_token(self) -> None:
        headers = self.login('manager')
        self.assertEqual(self.client.post('/auth/logout', headers=headers).status_code, 204)
        response = self.client.get(f'/stores/{self.store_id}/carrier-accounts/balances', headers=headers)
        self.assertEqual(response.status_code, 401)

    def test_store_scope_and_roles(self) -> None:
        operator = self.login('operator')
        response = self.client.get(f'/stores/{self.other_store_id}/carrier-accounts/balances', headers=operator)
        self.assertEqual(response.status_code, 403)
        response = self.client.get(f'/stores/{self.store_id}/carrier-accounts/movement-health', headers=operator)
        self.assertEqual(response.status_code, 403)

        admin = self.login('admin')
        response = self.client.get(f'/stores/{self.other_store_id}/carrier-accounts/balances', headers=admin)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {'carriers': []})

    def test_reconcile_then_pay_over_http(self) -> None:
        headers = self.login('manager')
        response = self.client.post(
            f'/stores/{self.store_id}/settlements/delivery-reconciliation',
            headers=headers,
            json={
                'carrier_id': str(self.carrier_id),
                'delivery_date': local_today(ZoneInfo(STORE_TIMEZONE)).isoformat(),
                'orders': [{'order_id': str(self.order_id), 'delivered': True}],
                'total_amount_collected': '100000',
            },
        )
        self.assertEqual(response.status_code, 201, response.text)
        settlement = response.json()
        self.assertEqual(settlement['status'], 'COMPLETED')
        self.assertEqual(settlement['net_receivable'], '100000.00')

        response = self.client.post(
            f'/stores/{self.store_id}/carrier-accounts/payments',
            headers=headers,
            json={
                'carrier_id': str(self.carrier_id),
                'amount': '60000',
                'direction': 'from_carrier',
                'method': 'cash',
                'idempotency_key': 'http-1',
            },
        )
        self.assertEqual(response.status_code, 201, response.text)
        self.assertEqual(response.json()['applied_to'][0]['remaining'], '40000.00')

        response = self.client.get(f'/stores/{self.store_id}/carrier-accounts/balances', headers=headers)
        carrier = response.json()['carriers'][0]
        self.assertEqual(carrier['carrier_name'], 'Rapido')
        self.assertEqual(carrier['net_balance'], '40000.00')

        response = self.client.post(
            f'/stores/{self.store_id}/carrier-accounts/payments',
            headers=headers,
            json={'carrier_id': str(self.carrier_id), 'amount': '50000', 'direction': 'from_carrier', 'method': 'cash'},
        )
        self.assertEqual(response.status_code, 409)
        body = response.json()
        self.assertEqual(body['error'], 'OVER_APPLICATION')
        self.assertEqual(body['details']['outstanding'], '40000.00')
        self.assertIn('message', body)

        response = self.client.get(f'/stores/{self.store_id}/settlements/summary', headers=headers)
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()['total_balance_due'], '40000.00')
        response = self.client.get(f'/stores/{self.store_id}/settlements/pending-by-carrier', headers=headers)
        self.assertEqual(response.status_code, 200, response.text)
        pending = response.json()['carriers']
        self.assertEqual([(c['carrier_name'], c['pending_settlements']) for c in pending], [('Rapido', 1)])

    def test_ledger_errors_use_error_shape(self) -> None:
        headers = self.login('manager')
        response = self.client.get(f'/stores/{self.store_id}/carrier-accounts/{random_id()}/balance', headers=headers)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()['error'], 'CARRIER_NOT_FOUND')

    def test_request_validation_returns_400(self) -> None:
        headers = self.login('manager')
        response = self.client.post(
            f'/stores/{self.store_id}/carrier-accounts/{self.carrier_id}/adjustments',
            headers=headers,
            json={'amount': '-5', 'type': 'sideways', 'description': 'x'},
        )
        self.assertEqual(response.status_code, 400)
        body = response.json()
        self.assertEqual(body['error'], 'VALIDATION_ERROR')
        fields = {item['field'] for item in body['details']['fields']}
        self.assertEqual(fields, {'amount', 'type'})

    def test_request_amount_ceiling_follows_settings(self) -> None:
        self.assertEqual(MAX_AMOUNT, settings.max_amount)
        headers = self.login('manager')
        response = self.client.post(
            f'/stores/{self.store_id}/carrier-accounts/payments',
            headers=headers,
            json={
                'carrier_id': str(self.carrier_id),
                'amount': str(settings.max_amount + 1),
                'direction': 'from_carrier',
                'method': 'cash',
            },
        )
        self.assertEqual(response.status_code, 400)
        fields = {item['field'] for item in response.json()['details']['fields']}
        self.assertEqual(fields, {'amount'})

    def test_tokens_are_stored_as_digests(self) -> None:
        headers = self.login('manager')
        token = headers['Authorization'].split(' ', 1)[1]
        with self.session_factory() as db:
            stored = db.execute(select(WebSession.token_hash)).scalars().all()
        self.assertEqual(stored, [token_digest(token)])
        self.assertNotIn(token, stored)
        with self.assertRaises(ValueError):
            hash_password('short')

    def test_security_headers(self) -> None:
        response = self.client.get('/health')
        self.assertEqual(response.json(), {'status': 'ok'})
        self.assertEqual(response.headers['X-Content-Type-Options'], 'nosniff')
        self.assertEqual(response.headers['Cache-Control'], 'no-store')
        self.assertIn('noindex', self.client.get('/robots.txt').headers['X-Robots-Tag'])


if __name__ == '__main__':
    unittest.main()
