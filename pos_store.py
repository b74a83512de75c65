"""
Optimistic application state for the till.

Every action mutates local state first (and writes it through to the offline
cache), then either confirms against the remote store right away or leaves a
pending operation for the sync engine. Callers only ever see validation
errors; connectivity problems are absorbed by the queue.
"""
import copy
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from kv_storage import iso_now
from pos_errors import NotFoundError, RemoteError, ValidationError
from pos_models import (DEFAULT_SETTINGS, MOVEMENT_TYPES, as_number, clamp_quantity, compute_totals,
                        generate_barcode, is_number, new_id, normalize_payment_method)
from sync_queue import OperationKind, validate_payload

logger = logging.getLogger(__name__)

PRODUCT_FIELDS = ('name', 'barcode', 'category', 'price', 'cost', 'quantity', 'min_stock', 'unit')


def _local_day(stamp: Any) -> str:
    """Local calendar day (YYYY-MM-DD) of a stored UTC timestamp."""
    text = str(stamp or '')
    try:
        parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
    except ValueError:
        return text[:10]
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone().date().isoformat()


class PosStore:
    def __init__(self, remote, queue, cache, connectivity, owner_id: Optional[str] = None):
        self.remote = remote
        self.queue = queue
        self.cache = cache
        self.connectivity = connectivity
        self.owner_id = owner_id
        self._lock = threading.RLock()
        self.products: List[Dict[str, Any]] = []
        self.movements: List[Dict[str, Any]] = []
        self.sales: List[Dict[str, Any]] = []
        self.settings: Dict[str, Any] = copy.deepcopy(DEFAULT_SETTINGS)
        self.cart: List[Dict[str, Any]] = []
        self.last_refresh_at: Optional[str] = None
        self._revision = 0

    # ---------- helpers ----------
    def _can_call_remote(self, needs_owner: bool = True) -> bool:
        """Direct remote writes only when nothing older is still queued."""
        if self.remote is None or not self.connectivity.is_online():
            return False
        if needs_owner and not self.owner_id:
            return False
        return self.queue.length() == 0

    def _persist(self, *names: str) -> None:
        self._revision += 1
        for name in names:
            if name == 'settings':
                self.cache.save_settings(self.settings)
            else:
                self.cache.save_collection(name, getattr(self, name))

    def _find_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        for p in self.products:
            if p['id'] == product_id:
                return p
        return None

    def _enqueue(self, kind: OperationKind, payload: Dict[str, Any]) -> None:
        self.queue.enqueue(kind, payload)

    def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            p = self._find_product(product_id)
            return copy.deepcopy(p) if p else None

    def product_by_barcode(self, barcode: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            for p in self.products:
                if p.get('barcode') == barcode:
                    return copy.deepcopy(p)
        return None

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy({
                'products': self.products,
                'movements': self.movements,
                'sales': self.sales,
                'settings': self.settings,
                'cart': self.cart,
            })

    # ---------- loading ----------
    def load_data(self) -> str:
        """Load from the remote store when possible, else from the offline cache.

        Returns 'remote' or 'cache'. With operations still pending the cache is
        used, since it already reflects those optimistic mutations.
        """
        if self.remote is not None and self.connectivity.is_online() and self.queue.length() == 0:
            try:
                if self.refresh_from_remote():
                    return 'remote'
            except RemoteError as exc:
                logger.warning("remote load failed, using offline cache: %s", exc)
        self.restore_from_cache()
        return 'cache'

    def restore_from_cache(self) -> None:
        with self._lock:
            self.products = self.cache.load_collection('products')
            self.movements = self.cache.load_collection('movements')
            self.sales = self.cache.load_collection('sales')
            settings = copy.deepcopy(DEFAULT_SETTINGS)
            settings.update(self.cache.load_settings())
            self.settings = settings

    def refresh_from_remote(self) -> bool:
        """Overwrite every collection with the remote copy; raises RemoteError.

        Returns False without touching local state when a local mutation
        landed while fetching, or operations are queued again.
        """
        with self._lock:
            revision = self._revision
        products = self.remote.fetch_collection('products')
        movements = self.remote.fetch_collection('movements')
        sales = self.remote.fetch_collection('sales')
        settings = None
        if self.owner_id:
            try:
                settings = self.remote.fetch_settings(self.owner_id)
            except RemoteError as exc:
                logger.warning("failed to fetch settings: %s", exc)
        with self._lock:
            if self._revision != revision or self.queue.length() > 0:
                logger.info("remote refresh discarded: local changes since fetch (pending=%d)",
                            self.queue.length())
                return False
            self.products = products
            self.movements = movements
            self.sales = sales
            if settings is not None:
                merged = copy.deepcopy(DEFAULT_SETTINGS)
                merged.update(settings)
                self.settings = merged
            by_id = {p['id']: p for p in products}
            self.cart = [dict(item, product=copy.deepcopy(by_id[item['product']['id']]))
                         for item in self.cart if item['product']['id'] in by_id]
            self.last_refresh_at = iso_now()
            self.cache.save_snapshot(self.products, self.movements, self.sales, self.settings)
            return True

    # ---------- cart ----------
    def add_to_cart(self, product_id: str, quantity: float = 1) -> List[Dict[str, Any]]:
        if not is_number(quantity) or quantity <= 0:
            raise ValidationError("quantity must be a positive number")
        with self._lock:
            product = self._find_product(product_id)
            if product is None:
                raise NotFoundError(f"product {product_id} not found")
            for item in self.cart:
                if item['product']['id'] == product_id:
                    item['quantity'] += quantity
                    break
            else:
                self.cart.append({
                    'product': copy.deepcopy(product),
                    'quantity': quantity,
                    'unit_cost': as_number(product.get('cost')),
                })
            return copy.deepcopy(self.cart)

    def remove_from_cart(self, product_id: str) -> None:
        with self._lock:
            self.cart = [i for i in self.cart if i['product']['id'] != product_id]

    def update_cart_quantity(self, product_id: str, quantity: float) -> None:
        if not is_number(quantity) or quantity <= 0:
            self.remove_from_cart(product_id)
            return
        with self._lock:
            for item in self.cart:
                if item['product']['id'] == product_id:
                    item['quantity'] = quantity

    def clear_cart(self) -> None:
        with self._lock:
            self.cart = []

    def cart_total(self) -> float:
        with self._lock:
            return sum(as_number(i['product'].get('price')) * i['quantity'] for i in self.cart)

    # ---------- sales ----------
    def record_sale(self, payment_method: str, discount: float = 0,
                    amount_given: Optional[float] = None) -> Dict[str, Any]:
        """Apply a sale from the current cart and return the sale record.

        amount_given=None means exact tender (card and mobile payments).
        """
        if not is_number(discount) or discount < 0:
            raise ValidationError("discount must be a non-negative number")
        if amount_given is not None and (not is_number(amount_given) or amount_given < 0):
            raise ValidationError("amount given must be a non-negative number")
        method = normalize_payment_method(payment_method)
        with self._lock:
            if not self.cart:
                raise ValidationError("cart is empty")
            lines = [{
                'product_id': item['product']['id'],
                'name': item['product'].get('name') or 'Unknown product',
                'price': as_number(item['product'].get('price')),
                'quantity': item['quantity'],
                'unit_cost': as_number(item.get('unit_cost', item['product'].get('cost'))),
            } for item in self.cart]
            vat_rate = as_number(self.settings.get('vat_rate'))
            totals = compute_totals(lines, vat_rate, discount, 0)
            if amount_given is None:
                amount_given = totals['total_final']
            elif amount_given < totals['total_final']:
                raise ValidationError(
                    f"amount given {amount_given:.2f} is below the amount due {totals['total_final']:.2f}")
            change = max(0, amount_given - totals['total_final'])

            local_id = new_id()
            now = iso_now()
            sale = {
                'id': local_id,
                'items': lines,
                'total': totals['total_final'],
                'total_brut': totals['total_brut'],
                'vat_rate': vat_rate,
                'vat_total': totals['vat_total'],
                'discount': discount,
                'total_final': totals['total_final'],
                'amount_given': amount_given,
                'change': change,
                'date': now,
                'payment_method': method,
                'user_id': self.owner_id,
                'store_name': self.settings.get('store_name') or '',
            }
            payload = {
                'local_id': local_id,
                'lines': copy.deepcopy(lines),
                'total_brut': sale['total_brut'],
                'vat_rate': vat_rate,
                'vat_total': sale['vat_total'],
                'discount': discount,
                'total_final': sale['total_final'],
                'amount_given': amount_given,
                'change': change,
                'payment_method': method,
                'store_name': sale['store_name'],
            }
            # nothing below may fail once stock and the cart are touched
            validate_payload(OperationKind.RECORD_TRANSACTION, payload)

            sale_movements = [{
                'id': new_id(),
                'product_id': line['product_id'],
                'product_name': line['name'],
                'type': 'sale',
                'quantity': line['quantity'],
                'date': now,
                'note': f"Sale #{local_id[-6:]}",
                'payment_method': method,
                'unit_cost': line['unit_cost'],
            } for line in lines]
            sold = {line['product_id']: line['quantity'] for line in lines}
            for p in self.products:
                if p['id'] in sold:
                    p['quantity'] = clamp_quantity(as_number(p.get('quantity')), -sold[p['id']])
                    p['updated_at'] = now
            self.sales.insert(0, sale)
            self.movements[0:0] = sale_movements
            self.cart = []
            self._persist('sales', 'movements', 'products')

        # The remote procedure creates the sale's stock movements itself, so
        # only the transaction is ever sent or queued.
        if self._can_call_remote():
            try:
                result = self.remote.record_transaction_atomic(payload, self.owner_id)
                self.reconcile_identifier('sales', local_id, result['id'])
                sale['id'] = result['id']
                return copy.deepcopy(sale)
            except RemoteError as exc:
                logger.warning("record_transaction failed, queuing sale %s: %s", local_id, exc)
        self._enqueue(OperationKind.RECORD_TRANSACTION, payload)
        return copy.deepcopy(sale)

    # ---------- products ----------
    def create_product(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        name = (fields.get('name') or '').strip() if isinstance(fields.get('name'), str) else ''
        if not name:
            raise ValidationError("product name is required")
        for key in ('price', 'cost', 'quantity', 'min_stock'):
            if key in fields and fields[key] is not None and not is_number(fields[key]):
                raise ValidationError(f"field '{key}' must be a number")
        with self._lock:
            barcode = (fields.get('barcode') or '').strip()
            if barcode and any(p.get('barcode') == barcode for p in self.products):
                raise ValidationError(f"barcode {barcode} already exists")
            if not barcode:
                barcode = generate_barcode()
            now = iso_now()
            product = {
                'id': new_id(),
                'name': name,
                'barcode': barcode,
                'category': fields.get('category') or '',
                'price': as_number(fields.get('price')),
                'cost': as_number(fields.get('cost')),
                'quantity': max(0, as_number(fields.get('quantity'))),
                'min_stock': as_number(fields.get('min_stock')),
                'unit': fields.get('unit') or '',
                'created_at': now,
                'updated_at': now,
            }
            self.products.insert(0, product)
            self._persist('products')
            local_id = product['id']
            remote_fields = {k: product[k] for k in PRODUCT_FIELDS}

        if self._can_call_remote():
            try:
                entity = self.remote.insert_entity('products', remote_fields, self.owner_id)
                self.reconcile_identifier('products', local_id, entity)
                return self.get_product(entity['id']) or copy.deepcopy(product)
            except RemoteError as exc:
                logger.warning("insert product failed, queuing %s: %s", local_id, exc)
        self._enqueue(OperationKind.CREATE_ENTITY,
                      {'collection': 'products', 'local_id': local_id, 'fields': remote_fields})
        return self.get_product(local_id) or copy.deepcopy(product)

    def update_product(self, product_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        updates = {k: v for k, v in fields.items() if k in PRODUCT_FIELDS}
        if not updates:
            raise ValidationError("no updatable product fields given")
        if 'name' in updates:
            if not isinstance(updates['name'], str) or not updates['name'].strip():
                raise ValidationError("product name is required")
            updates['name'] = updates['name'].strip()
        for key in ('price', 'cost', 'quantity', 'min_stock'):
            if key in updates and not is_number(updates[key]):
                raise ValidationError(f"field '{key}' must be a number")
        if 'quantity' in updates:
            updates['quantity'] = max(0, updates['quantity'])
        with self._lock:
            product = self._find_product(product_id)
            if product is None:
                raise NotFoundError(f"product {product_id} not found")
            barcode = updates.get('barcode')
            if barcode and any(p.get('barcode') == barcode and p['id'] != product_id for p in self.products):
                raise ValidationError(f"barcode {barcode} already exists")
            product.update(updates)
            product['updated_at'] = iso_now()
            self._persist('products')
            result = copy.deepcopy(product)

        self._push_update('products', product_id, updates)
        return result

    def delete_product(self, product_id: str) -> None:
        with self._lock:
            if self._find_product(product_id) is None:
                raise NotFoundError(f"product {product_id} not found")
            self.products = [p for p in self.products if p['id'] != product_id]
            self.cart = [i for i in self.cart if i['product']['id'] != product_id]
            self._persist('products')

        if self._can_call_remote(needs_owner=False):
            try:
                self.remote.delete_entity('products', product_id)
                return
            except RemoteError as exc:
                logger.warning("delete product failed, queuing %s: %s", product_id, exc)
        self._enqueue(OperationKind.DELETE_ENTITY, {'collection': 'products', 'id': product_id})

    def _push_update(self, collection: str, entity_id: str, fields: Dict[str, Any]) -> None:
        if self._can_call_remote(needs_owner=False):
            try:
                self.remote.update_entity(collection, entity_id, fields)
                return
            except RemoteError as exc:
                logger.warning("update %s %s failed, queuing: %s", collection, entity_id, exc)
        self._enqueue(OperationKind.UPDATE_ENTITY, {'collection': collection, 'id': entity_id, 'fields': fields})

    # ---------- stock movements ----------
    def record_stock_movement(self, product_id: str, movement_type: str, quantity: float,
                              note: Optional[str] = None, payment_method: Optional[str] = None) -> Dict[str, Any]:
        """Manual stock entry/exit. Sales go through record_sale instead."""
        if movement_type not in MOVEMENT_TYPES:
            raise ValidationError(f"invalid movement type {movement_type!r}")
        if not is_number(quantity) or quantity < 0:
            raise ValidationError("quantity must be a non-negative number")
        with self._lock:
            product = self._find_product(product_id)
            if product is None:
                raise NotFoundError(f"product {product_id} not found")
            delta = quantity if movement_type == 'in' else -quantity
            product['quantity'] = clamp_quantity(as_number(product.get('quantity')), delta)
            product['updated_at'] = iso_now()
            movement = {
                'id': new_id(),
                'product_id': product_id,
                'product_name': product.get('name') or '',
                'type': movement_type,
                'quantity': quantity,
                'date': product['updated_at'],
                'note': note,
                'payment_method': normalize_payment_method(payment_method) if payment_method else None,
                'unit_cost': as_number(product.get('cost')),
            }
            self.movements.insert(0, movement)
            self._persist('movements', 'products')
            new_quantity = product['quantity']
            local_id = movement['id']
            fields = {k: movement[k] for k in ('product_id', 'product_name', 'type', 'quantity',
                                               'note', 'payment_method', 'unit_cost')}
            result = copy.deepcopy(movement)

        if self._can_call_remote():
            try:
                entity = self.remote.insert_entity('movements', fields, self.owner_id)
                self.reconcile_identifier('movements', local_id, entity)
                result['id'] = entity['id']
            except RemoteError as exc:
                logger.warning("insert movement failed, queuing %s: %s", local_id, exc)
                self._enqueue(OperationKind.CREATE_ENTITY,
                              {'collection': 'movements', 'local_id': local_id, 'fields': fields})
            # a failed insert leaves the queue non-empty, so this queues too
            self._push_update('products', product_id, {'quantity': new_quantity})
            return result
        self._enqueue(OperationKind.CREATE_ENTITY,
                      {'collection': 'movements', 'local_id': local_id, 'fields': fields})
        self._enqueue(OperationKind.UPDATE_ENTITY,
                      {'collection': 'products', 'id': product_id, 'fields': {'quantity': new_quantity}})
        return result

    # ---------- settings ----------
    def update_settings(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        if 'vat_rate' in fields and (not is_number(fields['vat_rate']) or fields['vat_rate'] < 0):
            raise ValidationError("vat_rate must be a non-negative number")
        if 'store_name' in fields and not isinstance(fields['store_name'], str):
            raise ValidationError("store_name must be a string")
        for key in ('categories', 'units'):
            if key in fields and not isinstance(fields[key], list):
                raise ValidationError(f"{key} must be a list")
        with self._lock:
            merged = copy.deepcopy(self.settings)
            for key in DEFAULT_SETTINGS:
                if key in fields and fields[key] is not None:
                    merged[key] = copy.deepcopy(fields[key])
            self.settings = merged
            self._persist('settings')
            payload_fields = copy.deepcopy(merged)

        if self._can_call_remote():
            try:
                self.remote.upsert_settings(self.owner_id, payload_fields)
                return copy.deepcopy(payload_fields)
            except RemoteError as exc:
                logger.warning("settings upsert failed, queuing: %s", exc)
        self._enqueue(OperationKind.UPDATE_SETTINGS, {'fields': payload_fields})
        return copy.deepcopy(payload_fields)

    # ---------- reconciliation ----------
    def reconcile_identifier(self, collection: str, local_id: str, remote: Any) -> None:
        """Swap a locally generated id for the authoritative one.

        Products also relink movements and cart lines. Recorded sale lines
        keep the id they were sold under; they carry name/price snapshots.
        """
        remote_id = remote.get('id') if isinstance(remote, dict) else remote
        if remote_id is None or remote_id == local_id:
            return
        with self._lock:
            if collection == 'products':
                for p in self.products:
                    if p['id'] == local_id:
                        p['id'] = remote_id
                        if isinstance(remote, dict) and remote.get('created_at'):
                            p['created_at'] = remote['created_at']
                for m in self.movements:
                    if m.get('product_id') == local_id:
                        m['product_id'] = remote_id
                for item in self.cart:
                    if item['product']['id'] == local_id:
                        item['product']['id'] = remote_id
                self._persist('products', 'movements')
            elif collection == 'movements':
                for m in self.movements:
                    if m['id'] == local_id:
                        m['id'] = remote_id
                self._persist('movements')
            elif collection == 'sales':
                for s in self.sales:
                    if s['id'] == local_id:
                        s['id'] = remote_id
                self._persist('sales')
        logger.debug("reconciled %s %s -> %s", collection, local_id, remote_id)

    # ---------- reports ----------
    def low_stock_products(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(p) for p in self.products
                    if as_number(p.get('quantity')) <= as_number(p.get('min_stock'))]

    def total_inventory_value(self) -> float:
        with self._lock:
            return sum(as_number(p.get('price')) * as_number(p.get('quantity')) for p in self.products)

    def today_sales_total(self, today: Optional[str] = None) -> float:
        """Sum of sales whose timestamp falls on `today` (YYYY-MM-DD) in local time."""
        day = today or datetime.now().date().isoformat()
        with self._lock:
            return sum(as_number(s.get('total_final') or s.get('total'))
                       for s in self.sales if _local_day(s.get('date')) == day)

    def recent_movements(self, limit: int = 10) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self.movements[:max(0, limit)])

    def monthly_sales(self, months: int = 6, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Sales totals for the last `months` calendar months, oldest first."""
        now = now or datetime.now(timezone.utc)
        labels = []
        year, month = now.year, now.month
        for _ in range(max(1, months)):
            labels.append(f"{year:04d}-{month:02d}")
            month -= 1
            if month == 0:
                year, month = year - 1, 12
        labels.reverse()
        totals = {label: 0.0 for label in labels}
        with self._lock:
            for s in self.sales:
                key = str(s.get('date') or '')[:7]
                if key in totals:
                    totals[key] += as_number(s.get('total_final') or s.get('total'))
        return [{'month': label, 'value': totals[label]} for label in labels]
