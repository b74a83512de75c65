import unittest
from datetime import datetime, timedelta, timezone

from connectivity import Connectivity
from fake_remote import FakeRemote, transient
from kv_storage import MemoryKVStorage
from local_cache import LocalCache
from pos_errors import NotFoundError, ValidationError
from pos_store import PosStore
from sync_queue import OperationKind, PendingQueue


def make_store(online=True, owner_id='owner-1'):
    storage = MemoryKVStorage()
    remote = FakeRemote()
    queue = PendingQueue(storage)
    cache = LocalCache(storage)
    store = PosStore(remote, queue, cache, Connectivity(online=online), owner_id=owner_id)
    return store, remote, queue, cache


def seed_product(store, product_id='p1', price=100, quantity=10, **extra):
    product = {
        'id': product_id, 'name': extra.pop('name', f'Product {product_id}'),
        'barcode': extra.pop('barcode', f'200{product_id}'), 'category': '', 'price': price,
        'cost': extra.pop('cost', 60), 'quantity': quantity, 'min_stock': extra.pop('min_stock', 2),
        'unit': 'piece', 'created_at': '2024-01-01T00:00:00Z', 'updated_at': '2024-01-01T00:00:00Z',
    }
    product.update(extra)
    store.products.append(product)
    return product


class RecordSaleTest(unittest.TestCase):
    def test_scenario_a_exact_cash_payment(self):
        store, remote, queue, _ = make_store()
        seed_product(store, price=100, quantity=10)
        store.add_to_cart('p1', 2)

        sale = store.record_sale('cash', discount=0, amount_given=200)

        self.assertEqual(sale['total_final'], 200)
        self.assertEqual(sale['change'], 0)
        self.assertEqual(store.get_product('p1')['quantity'], 8)
        self.assertEqual(store.cart, [])
        self.assertEqual(remote.methods(), ['record_transaction_atomic'])
        self.assertEqual(queue.length(), 0)
        self.assertTrue(sale['id'].startswith('sale-srv-'))
        self.assertEqual(store.sales[0]['id'], sale['id'])

    def test_scenario_b_discount_and_change(self):
        store, _, _, _ = make_store()
        seed_product(store, price=100, quantity=10)
        store.add_to_cart('p1', 2)
        sale = store.record_sale('cash', discount=50, amount_given=200)
        self.assertEqual(sale['total_final'], 150)
        self.assertEqual(sale['change'], 50)

    def test_scenario_c_transient_failure_queues_single_transaction(self):
        store, remote, queue, cache = make_store()
        seed_product(store, 'p1', price=100, quantity=10)
        seed_product(store, 'p2', price=5, quantity=4)
        store.add_to_cart('p1', 2)
        store.add_to_cart('p2', 1)
        remote.fail('record_transaction_atomic', transient())

        sale = store.record_sale('card')

        self.assertEqual(queue.length(), 1)
        op = queue.peek_front()
        self.assertEqual(op.kind, OperationKind.RECORD_TRANSACTION)
        self.assertEqual(len(op.payload['lines']), 2)
        self.assertEqual(op.payload['local_id'], sale['id'])
        self.assertEqual(store.get_product('p1')['quantity'], 8)
        self.assertEqual(store.get_product('p2')['quantity'], 3)
        self.assertEqual(len(store.sales), 1)
        self.assertEqual([m['type'] for m in store.movements], ['sale', 'sale'])
        self.assertNotIn('insert_entity', remote.methods())
        self.assertEqual(cache.load_collection('sales')[0]['id'], sale['id'])

    def test_offline_sale_never_calls_remote(self):
        store, remote, queue, _ = make_store(online=False)
        seed_product(store)
        store.add_to_cart('p1', 1)
        store.record_sale('cash', amount_given=100)
        self.assertEqual(remote.calls, [])
        self.assertEqual([op.kind for op in queue.operations()], [OperationKind.RECORD_TRANSACTION])

    def test_tax_is_added_before_discount(self):
        store, _, _, _ = make_store(online=False)
        store.settings['vat_rate'] = 10
        seed_product(store, price=100)
        store.add_to_cart('p1', 1)
        sale = store.record_sale('cash', discount=5, amount_given=200)
        self.assertAlmostEqual(sale['vat_total'], 10)
        self.assertAlmostEqual(sale['total_final'], 105)
        self.assertAlmostEqual(sale['change'], 95)

    def test_discount_larger_than_total_clamps_to_zero(self):
        store, _, _, _ = make_store(online=False)
        seed_product(store, price=10)
        store.add_to_cart('p1', 1)
        sale = store.record_sale('cash', discount=50, amount_given=5)
        self.assertEqual(sale['total_final'], 0)
        self.assertEqual(sale['change'], 5)

    def test_stock_never_goes_negative(self):
        store, _, _, _ = make_store(online=False)
        seed_product(store, quantity=1)
        store.add_to_cart('p1', 3)
        store.record_sale('card')
        self.assertEqual(store.get_product('p1')['quantity'], 0)

    def test_empty_cart_is_rejected(self):
        store, _, queue, _ = make_store()
        with self.assertRaises(ValidationError):
            store.record_sale('cash')
        self.assertEqual(queue.length(), 0)

    def test_insufficient_tender_leaves_state_untouched(self):
        store, remote, queue, _ = make_store()
        seed_product(store, price=100, quantity=10)
        store.add_to_cart('p1', 2)
        with self.assertRaises(ValidationError):
            store.record_sale('cash', amount_given=150)
        self.assertEqual(store.get_product('p1')['quantity'], 10)
        self.assertEqual(len(store.cart), 1)
        self.assertEqual(store.sales, [])
        self.assertEqual(remote.calls, [])

    def test_unnamed_product_sells_under_placeholder_name(self):
        store, _, queue, _ = make_store(online=False)
        seed_product(store, name='', price=10, quantity=5)
        store.add_to_cart('p1', 2)

        sale = store.record_sale('cash', amount_given=20)

        self.assertEqual(sale['items'][0]['name'], 'Unknown product')
        op = queue.peek_front()
        self.assertEqual(op.kind, OperationKind.RECORD_TRANSACTION)
        self.assertEqual(op.payload['lines'][0]['name'], 'Unknown product')
        self.assertEqual(store.get_product('p1')['quantity'], 3)

    def test_unqueueable_sale_is_rejected_before_any_change(self):
        store, _, queue, cache = make_store(online=False)
        seed_product(store, product_id='', price=10, quantity=5)
        store.add_to_cart('', 1)

        with self.assertRaises(ValidationError):
            store.record_sale('cash', amount_given=10)

        self.assertEqual(store.get_product('')['quantity'], 5)
        self.assertEqual(len(store.cart), 1)
        self.assertEqual(store.sales, [])
        self.assertEqual(store.movements, [])
        self.assertEqual(queue.length(), 0)
        self.assertEqual(cache.load_collection('sales'), [])

    def test_payment_method_is_normalized(self):
        store, remote, _, _ = make_store()
        seed_product(store)
        store.add_to_cart('p1', 1)
        sale = store.record_sale(' Mobile ')
        self.assertEqual(sale['payment_method'], 'd-money')
        self.assertEqual(remote.calls[0][1]['payment_method'], 'd-money')

    def test_direct_call_skipped_while_queue_has_work(self):
        store, remote, queue, _ = make_store()
        seed_product(store)
        queue.enqueue(OperationKind.DELETE_ENTITY, {'collection': 'products', 'id': 'old'})
        store.add_to_cart('p1', 1)
        store.record_sale('card')
        self.assertEqual(remote.calls, [])
        self.assertEqual(queue.length(), 2)


class ProductTest(unittest.TestCase):
    def test_create_offline_queues_with_local_id_and_barcode(self):
        store, remote, queue, cache = make_store(online=False)
        product = store.create_product({'name': 'Sugar', 'price': 3.5, 'quantity': 12})
        self.assertEqual(len(product['barcode']), 12)
        self.assertTrue(product['barcode'].startswith('200'))
        op = queue.peek_front()
        self.assertEqual(op.kind, OperationKind.CREATE_ENTITY)
        self.assertEqual(op.payload['local_id'], product['id'])
        self.assertEqual(op.payload['fields']['barcode'], product['barcode'])
        self.assertEqual(cache.load_collection('products')[0]['id'], product['id'])
        self.assertEqual(remote.calls, [])

    def test_create_online_reconciles_identifier(self):
        store, remote, queue, _ = make_store()
        product = store.create_product({'name': 'Sugar', 'price': 3.5})
        self.assertEqual(product['id'], 'srv-1')
        self.assertEqual(store.products[0]['id'], 'srv-1')
        self.assertEqual(queue.length(), 0)

    def test_create_rejects_duplicate_barcode(self):
        store, _, _, _ = make_store()
        seed_product(store, barcode='200123456789')
        with self.assertRaises(ValidationError):
            store.create_product({'name': 'Copy', 'price': 1, 'barcode': '200123456789'})

    def test_create_requires_name(self):
        store, _, _, _ = make_store()
        with self.assertRaises(ValidationError):
            store.create_product({'price': 1})

    def test_update_online_calls_remote(self):
        store, remote, queue, _ = make_store()
        seed_product(store)
        updated = store.update_product('p1', {'price': 120, 'bogus': 1})
        self.assertEqual(updated['price'], 120)
        self.assertEqual(remote.calls, [('update_entity', 'products', 'p1', {'price': 120})])
        self.assertEqual(queue.length(), 0)

    def test_update_failure_is_queued(self):
        store, remote, queue, _ = make_store()
        seed_product(store)
        remote.fail('update_entity', transient())
        store.update_product('p1', {'name': 'Renamed'})
        self.assertEqual(store.get_product('p1')['name'], 'Renamed')
        self.assertEqual(queue.peek_front().payload, {'collection': 'products', 'id': 'p1', 'fields': {'name': 'Renamed'}})

    def test_update_rejects_blank_name(self):
        store, remote, queue, _ = make_store()
        seed_product(store, name='Rice')
        for name in ('', '   ', None):
            with self.assertRaises(ValidationError):
                store.update_product('p1', {'name': name})
        self.assertEqual(store.get_product('p1')['name'], 'Rice')
        self.assertEqual(remote.calls, [])
        self.assertEqual(queue.length(), 0)

    def test_update_unknown_product(self):
        store, _, _, _ = make_store()
        with self.assertRaises(NotFoundError):
            store.update_product('nope', {'price': 1})

    def test_delete_offline_queues_and_drops_from_cart(self):
        store, _, queue, _ = make_store(online=False)
        seed_product(store)
        store.add_to_cart('p1')
        store.delete_product('p1')
        self.assertIsNone(store.get_product('p1'))
        self.assertEqual(store.cart, [])
        self.assertEqual(queue.peek_front().kind, OperationKind.DELETE_ENTITY)

    def test_lookup_by_barcode(self):
        store, _, _, _ = make_store()
        seed_product(store, barcode='200999')
        self.assertEqual(store.product_by_barcode('200999')['id'], 'p1')
        self.assertIsNone(store.product_by_barcode('000'))


class StockMovementTest(unittest.TestCase):
    def test_inbound_adds_quantity(self):
        store, remote, _, _ = make_store()
        seed_product(store, quantity=4)
        store.record_stock_movement('p1', 'in', 6, note='delivery')
        self.assertEqual(store.get_product('p1')['quantity'], 10)
        self.assertEqual(remote.methods(), ['insert_entity', 'update_entity'])
        self.assertEqual(remote.calls[1], ('update_entity', 'products', 'p1', {'quantity': 10}))
        self.assertEqual(store.movements[0]['id'], 'srv-1')
        self.assertEqual(store.movements[0]['unit_cost'], 60)

    def test_outbound_offline_floors_and_queues_two_operations(self):
        store, _, queue, _ = make_store(online=False)
        seed_product(store, quantity=3)
        movement = store.record_stock_movement('p1', 'out', 5)
        self.assertEqual(store.get_product('p1')['quantity'], 0)
        ops = queue.operations()
        self.assertEqual([op.kind for op in ops], [OperationKind.CREATE_ENTITY, OperationKind.UPDATE_ENTITY])
        self.assertEqual(ops[0].payload['local_id'], movement['id'])
        self.assertEqual(ops[1].payload['fields'], {'quantity': 0})

    def test_failed_insert_queues_both_in_order(self):
        store, remote, queue, _ = make_store()
        seed_product(store, quantity=3)
        remote.fail('insert_entity', transient())
        store.record_stock_movement('p1', 'in', 1)
        self.assertEqual([op.kind for op in queue.operations()],
                         [OperationKind.CREATE_ENTITY, OperationKind.UPDATE_ENTITY])
        self.assertNotIn('update_entity', remote.methods())

    def test_invalid_type_rejected(self):
        store, _, _, _ = make_store()
        seed_product(store)
        with self.assertRaises(ValidationError):
            store.record_stock_movement('p1', 'lost', 1)


class SettingsTest(unittest.TestCase):
    def test_partial_update_keeps_existing_values(self):
        store, remote, queue, cache = make_store(online=False)
        store.settings.update({'store_name': 'Corner', 'categories': ['Food'], 'units': ['kg']})
        settings = store.update_settings({'vat_rate': 5})
        self.assertEqual(settings['store_name'], 'Corner')
        self.assertEqual(settings['categories'], ['Food'])
        self.assertEqual(settings['vat_rate'], 5)
        self.assertEqual(queue.peek_front().payload['fields']['store_name'], 'Corner')
        self.assertEqual(cache.load_settings()['vat_rate'], 5)

    def test_online_upsert(self):
        store, remote, queue, _ = make_store()
        store.update_settings({'store_name': 'Main St', 'vat_rate': 18})
        self.assertEqual(remote.methods(), ['upsert_settings'])
        self.assertEqual(queue.length(), 0)

    def test_negative_rate_rejected(self):
        store, _, _, _ = make_store()
        with self.assertRaises(ValidationError):
            store.update_settings({'vat_rate': -1})


class ReconcileAndLoadTest(unittest.TestCase):
    def test_product_reconcile_relinks_movements_and_cart_but_not_sale_lines(self):
        store, _, _, cache = make_store(online=False)
        seed_product(store, 'tmp-1')
        store.record_stock_movement('tmp-1', 'in', 2)
        store.add_to_cart('tmp-1', 1)
        store.record_sale('cash', amount_given=100)
        store.add_to_cart('tmp-1', 1)

        store.reconcile_identifier('products', 'tmp-1', {'id': 'srv-42'})

        self.assertEqual(store.products[0]['id'], 'srv-42')
        self.assertTrue(all(m['product_id'] == 'srv-42' for m in store.movements))
        self.assertEqual(store.cart[0]['product']['id'], 'srv-42')
        self.assertEqual(store.sales[0]['items'][0]['product_id'], 'tmp-1')
        self.assertEqual(store.sales[0]['items'][0]['name'], 'Product tmp-1')
        self.assertEqual(cache.load_collection('products')[0]['id'], 'srv-42')

    def test_load_offline_uses_cache(self):
        store, remote, _, cache = make_store(online=False)
        cache.save_collection('products', [{'id': 'cached', 'name': 'x', 'quantity': 1}])
        cache.save_settings({'store_name': 'Cached'})
        self.assertEqual(store.load_data(), 'cache')
        self.assertEqual(store.products[0]['id'], 'cached')
        self.assertEqual(store.settings['store_name'], 'Cached')
        self.assertEqual(store.settings['units'], [])
        self.assertEqual(remote.calls, [])

    def test_load_online_refreshes_and_writes_cache(self):
        store, remote, _, cache = make_store()
        remote.products = [{'id': 'r1', 'name': 'Remote', 'quantity': 2}]
        remote.settings = {'store_name': 'Remote Shop', 'vat_rate': 7}
        self.assertEqual(store.load_data(), 'remote')
        self.assertEqual(store.products[0]['id'], 'r1')
        self.assertEqual(store.settings['vat_rate'], 7)
        self.assertEqual(cache.load_collection('products')[0]['id'], 'r1')

    def test_load_with_pending_operations_keeps_optimistic_cache(self):
        store, remote, queue, cache = make_store()
        cache.save_collection('products', [{'id': 'local', 'name': 'x', 'quantity': 1}])
        queue.enqueue(OperationKind.DELETE_ENTITY, {'collection': 'products', 'id': 'gone'})
        self.assertEqual(store.load_data(), 'cache')
        self.assertEqual(remote.calls, [])

    def test_load_falls_back_when_remote_fails(self):
        store, remote, _, cache = make_store()
        cache.save_collection('sales', [{'id': 's-cached'}])
        remote.fail('fetch_collection', transient())
        self.assertEqual(store.load_data(), 'cache')
        self.assertEqual(store.sales[0]['id'], 's-cached')


class ReportsTest(unittest.TestCase):
    def test_inventory_reports(self):
        store, _, _, _ = make_store()
        seed_product(store, 'p1', price=10, quantity=3, min_stock=5)
        seed_product(store, 'p2', price=2, quantity=50, min_stock=5)
        self.assertEqual([p['id'] for p in store.low_stock_products()], ['p1'])
        self.assertEqual(store.total_inventory_value(), 130)

    def test_sales_reports(self):
        store, _, _, _ = make_store()
        store.sales = [
            {'id': 'a', 'date': '2024-03-15T10:00:00Z', 'total_final': 40},
            {'id': 'b', 'date': '2024-03-02T10:00:00Z', 'total_final': 10},
            {'id': 'c', 'date': '2024-01-20T10:00:00Z', 'total_final': 5},
            {'id': 'd', 'date': '2023-06-20T10:00:00Z', 'total_final': 99},
        ]
        now = datetime(2024, 3, 15, 12, tzinfo=timezone.utc)
        months = store.monthly_sales(3, now=now)
        self.assertEqual(months, [
            {'month': '2024-01', 'value': 5},
            {'month': '2024-02', 'value': 0},
            {'month': '2024-03', 'value': 50},
        ])
        self.assertEqual(store.today_sales_total('2024-03-15'), 40)

    def test_today_uses_local_calendar_day(self):
        store, _, _, _ = make_store()
        now = datetime.now(timezone.utc)
        local_midnight = datetime.now().astimezone().replace(hour=0, minute=0, second=0, microsecond=0)
        before_midnight = local_midnight.astimezone(timezone.utc) - timedelta(seconds=1)
        store.sales = [
            {'id': 'now', 'date': now.isoformat().replace('+00:00', 'Z'), 'total_final': 12},
            {'id': 'yesterday', 'date': before_midnight.isoformat().replace('+00:00', 'Z'), 'total_final': 99},
        ]
        self.assertEqual(store.today_sales_total(), 12)

    def test_recent_movements_limit(self):
        store, _, _, _ = make_store(online=False)
        seed_product(store)
        for _ in range(4):
            store.record_stock_movement('p1', 'in', 1)
        self.assertEqual(len(store.recent_movements(3)), 3)


if __name__ == "__main__":
    unittest.main()
