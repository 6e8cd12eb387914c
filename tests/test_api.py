from __future__ import annotations

import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient

from palletflow.db import get_db
from palletflow.dependencies import get_email_dispatcher
from palletflow.main import app
from palletflow.services.inventory_service import seed_locations
from palletflow.services.log_email_dispatcher import LogEmailDispatcher
from sqlite_support import build_session_factory, build_sqlite_engine


def as_role(role: str, principal_id: str | None = None) -> dict[str, str]:
    principal_id = principal_id or f'{role.lower()}-1'
    return {'x-principal-id': principal_id, 'x-principal-name': principal_id.title(), 'x-principal-role': role}


CSE = as_role('CSE')
WAREHOUSE = as_role('WAREHOUSE')
ADMIN = as_role('ADMIN')


class ApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = build_sqlite_engine()
        self.session_factory = build_session_factory(self.engine)
        with self.session_factory() as db:
            seed_locations(db)
            db.commit()

        def _get_test_db():
            db = self.session_factory()
            try:
                yield db
            finally:
                db.close()

        self.dispatcher = LogEmailDispatcher()
        app.dependency_overrides[get_db] = _get_test_db
        app.dependency_overrides[get_email_dispatcher] = lambda: self.dispatcher
        session_patch = patch('palletflow.services.notification_service.SessionLocal', self.session_factory)
        session_patch.start()
        self.addCleanup(session_patch.stop)
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.engine.dispose()

    def _load_catalog(self) -> None:
        response = self.client.post(
            '/catalog/products',
            headers=CSE,
            json={'products': [{'item_id': 'SKU1', 'units_per_pallet': 50, 'description': 'Widget A'}]},
        )
        self.assertEqual(response.status_code, 200, response.text)

    def _stored_pallets(self, *quantities: int) -> list[int]:
        order = self.client.post(
            '/receiving/orders',
            headers=CSE,
            json={'container_num': 'MSCU1234567', 'seal_num': 'SEAL-1', 'lines': [{'item_id': 'SKU1', 'qty': 100}]},
        ).json()
        self.client.post(f'/receiving/orders/{order["id"]}/unload', headers=WAREHOUSE)
        (tally,) = self.client.get(f'/receiving/orders/{order["id"]}/tally', headers=WAREHOUSE).json()

        pallet_ids = []
        for qty in quantities:
            response = self.client.post(f'/receiving/lines/{tally["line_id"]}/pallets', headers=WAREHOUSE, json={'actual_qty': qty})
            self.assertEqual(response.status_code, 201, response.text)
            pallet_ids.append(response.json()['id'])
        finished = self.client.post(f'/receiving/orders/{order["id"]}/finish-tally', headers=WAREHOUSE)
        self.assertEqual(finished.json()['status'], 'Staged')

        for index, pallet_id in enumerate(pallet_ids):
            response = self.client.post(
                f'/inventory/pallets/{pallet_id}/put-away',
                headers=WAREHOUSE,
                json={'location_id': f'W1-1-1-{"ABCDEFGH"[index]}'},
            )
            self.assertEqual(response.json()['pallet']['status'], 'Stored')
        return pallet_ids

    def test_health_is_public_and_carries_security_headers(self) -> None:
        response = self.client.get('/health')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {'status': 'ok'})
        self.assertEqual(response.headers['x-content-type-options'], 'nosniff')
        self.assertEqual(response.headers['cache-control'], 'no-store')

    def test_requests_without_principal_are_unauthorized(self) -> None:
        response = self.client.get('/receiving/orders/1')
        self.assertEqual(response.status_code, 401)

        bad_role = self.client.get('/receiving/orders/1', headers=as_role('VISITOR'))
        self.assertEqual(bad_role.status_code, 401)

    def test_roles_are_enforced(self) -> None:
        payload = {'container_num': 'C1', 'seal_num': 'S1', 'lines': []}
        self.assertEqual(self.client.post('/receiving/orders', headers=WAREHOUSE, json=payload).status_code, 403)
        self.assertEqual(self.client.post('/catalog/reset', headers=CSE, json={'products': []}).status_code, 403)

    def test_cse_can_read_the_receiving_order_it_created(self) -> None:
        self._load_catalog()
        created = self.client.post(
            '/receiving/orders',
            headers=CSE,
            json={'container_num': 'MSCU1234567', 'seal_num': 'SEAL-1', 'lines': [{'item_id': 'SKU1', 'qty': 100}]},
        )
        self.assertEqual(created.status_code, 201, created.text)

        response = self.client.get(f'/receiving/orders/{created.json()["id"]}', headers=CSE)
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()['container_num'], 'MSCU1234567')

        tally = self.client.get(f'/receiving/orders/{created.json()["id"]}/tally', headers=CSE)
        self.assertEqual(tally.status_code, 403)

    def test_domain_errors_use_error_body(self) -> None:
        missing = self.client.get('/receiving/orders/999', headers=ADMIN)
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()['error'], 'not_found')

        self._load_catalog()
        invalid = self.client.post(
            '/receiving/orders',
            headers=CSE,
            json={'container_num': 'C1', 'seal_num': 'S1', 'lines': [{'item_id': 'NOPE', 'qty': 5}]},
        )
        self.assertEqual(invalid.status_code, 400)
        body = invalid.json()
        self.assertEqual(body['error'], 'validation_error')
        self.assertEqual(body['problems'][0]['row'], 2)

    def test_container_shipment_end_to_end(self) -> None:
        self._load_catalog()
        pallet_ids = self._stored_pallets(50, 50)

        order = self.client.post(
            '/shipping/orders',
            headers=CSE,
            json={'order_ref': 'SO-42', 'shipment_type': 'Container_Loading', 'lines': [{'item_id': 'SKU1', 'qty': 100}]},
        ).json()
        order_url = f'/shipping/orders/{order["id"]}'

        picked = self.client.post(f'{order_url}/pick', headers=WAREHOUSE, json={'pallet_ids': pallet_ids})
        self.assertEqual(picked.json()['status'], 'Picking')
        self.client.post(f'{order_url}/finish-picking', headers=WAREHOUSE)

        no_manifest = self.client.post(f'{order_url}/load-target', headers=WAREHOUSE, json={})
        self.assertEqual(no_manifest.status_code, 409)
        self.assertEqual(no_manifest.json()['error'], 'no_open_manifest')

        manifest = self.client.post(
            '/shipping/manifests', headers=WAREHOUSE, json={'container_num': 'MSCU7654321', 'seal_num': 'SEAL-9'}
        ).json()
        target = self.client.post(f'{order_url}/load-target', headers=WAREHOUSE, json={'manifest_id': manifest['id']})
        self.assertEqual(target.status_code, 200, target.text)

        for pallet_id in pallet_ids:
            loaded = self.client.post(f'{order_url}/load', headers=WAREHOUSE, json={'pallet_id': pallet_id})
            self.assertEqual(loaded.json()['status'], 'Loaded')
        detail = self.client.get(order_url, headers=WAREHOUSE).json()
        self.assertEqual(detail['remaining_by_item'], {'SKU1': 0})
        self.assertEqual(detail['loaded_items'], [{'item_id': 'SKU1', 'description': 'Widget A', 'qty': 100}])

        self.client.post(f'{order_url}/finish-loading', headers=WAREHOUSE)
        unsigned = self.client.post(f'{order_url}/close', headers=WAREHOUSE, json={})
        self.assertEqual(unsigned.status_code, 422)
        self.assertEqual(unsigned.json()['error'], 'missing_document')
        self.assertEqual(list(self.dispatcher.sent), [])

        closed = self.client.post(
            f'{order_url}/close',
            headers=WAREHOUSE,
            json={'signed_form_ref': 'forms/so-42.pdf', 'photo_refs': ['photos/1.jpg']},
        )
        self.assertEqual(closed.status_code, 200, closed.text)
        self.assertEqual(closed.json()['status'], 'Shipped')

        (email,) = self.dispatcher.sent
        self.assertEqual(email.subject, 'Shipping Confirmation - SO-42')
        self.assertIn('- SKU1: Widget A (100 units)', email.body)
        self.assertEqual(email.attachments, ['forms/so-42.pdf', 'photos/1.jpg'])

    def test_billing_export_streams_csv(self) -> None:
        response = self.client.post(
            '/billing/export',
            headers=CSE,
            json={'from_date': '2024-03-01', 'to_date': '2024-03-05', 'notes': {}},
        )

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.headers['content-type'].startswith('text/csv'))
        self.assertIn('billing_2024-03-01_2024-03-05.csv', response.headers['content-disposition'])
        self.assertTrue(response.text.startswith('Storage_Pallet_Positions,'))

    def test_inverted_billing_range_is_rejected(self) -> None:
        response = self.client.get(
            '/billing/summary', headers=CSE, params={'from_date': '2024-03-05', 'to_date': '2024-03-01'}
        )
        self.assertEqual(response.status_code, 400)

    def test_admin_can_reset_catalog(self) -> None:
        self._load_catalog()
        response = self.client.post(
            '/catalog/reset',
            headers=ADMIN,
            json={'products': [{'item_id': 'NEW1', 'units_per_pallet': 24}]},
        )

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()['loaded'], 1)
        self.assertEqual(response.json()['cleared']['products'], 1)


if __name__ == '__main__':
    unittest.main()
