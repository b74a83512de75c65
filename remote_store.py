"""
Client for the hosted system of record (a PostgREST-style REST backend).

Every failure is raised as RemoteError with a category the sync engine uses
to decide between retrying, evicting and aborting a drain pass.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from pos_errors import (AUTH, CONSTRAINT, OFFLINE, SCHEMA, TRANSIENT, VALIDATION,
                        RemoteError)
from pos_models import as_number

logger = logging.getLogger(__name__)

TABLES = {
    'products': 'products',
    'movements': 'stock_movements',
    'sales': 'sales',
}
PRODUCT_COLUMNS = ('name', 'barcode', 'category', 'price', 'cost', 'quantity', 'min_stock', 'unit')
MOVEMENT_COLUMNS = ('product_id', 'product_name', 'type', 'quantity', 'note', 'payment_method', 'unit_cost')
# Columns added by later migrations; older databases reject them.
OPTIONAL_MOVEMENT_COLUMNS = ('payment_method', 'unit_cost')

AUTH_CODES = {'PGRST301', 'PGRST302', '42501'}
SCHEMA_CODES = {'42703', '42P01', '42883', 'PGRST200', 'PGRST202', 'PGRST204'}
NO_ROWS_CODE = 'PGRST116'


def classify_error(status: Optional[int], code: Optional[str]) -> str:
    """Map an HTTP status and backend error code onto a RemoteError category."""
    code = (code or '').strip().upper()
    if status in (401, 403) or code in AUTH_CODES:
        return AUTH
    if code in SCHEMA_CODES:
        return SCHEMA
    if code.startswith('23'):
        return CONSTRAINT
    if code.startswith('22') or code == 'PGRST100':
        return VALIDATION
    return TRANSIENT


def _utcnow_z() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace('+00:00', 'Z')


# ---------- row mappers ----------
def map_db_product(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'id': row.get('id'),
        'name': row.get('name') or '',
        'barcode': row.get('barcode') or '',
        'category': row.get('category') or '',
        'price': as_number(row.get('price')),
        'cost': as_number(row.get('cost')),
        'quantity': as_number(row.get('quantity')),
        'min_stock': as_number(row.get('min_stock')),
        'unit': row.get('unit') or '',
        'created_at': row.get('created_at'),
        'updated_at': row.get('updated_at'),
    }


def map_db_movement(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'id': row.get('id'),
        'product_id': row.get('product_id'),
        'product_name': row.get('product_name') or '',
        'type': row.get('type'),
        'quantity': as_number(row.get('quantity')),
        'date': row.get('created_at'),
        'note': row.get('note'),
        'payment_method': row.get('payment_method'),
        'unit_cost': row.get('unit_cost'),
    }


def map_db_sale(row: Dict[str, Any], items: List[Dict[str, Any]]) -> Dict[str, Any]:
    total_final = as_number(row.get('total_final') or row.get('total'))
    return {
        'id': row.get('id'),
        'items': [{
            'product_id': it.get('product_id'),
            'name': it.get('product_name_snapshot') or it.get('product_name') or 'Unknown product',
            'price': as_number(it.get('price_snapshot') or it.get('product_price')),
            'quantity': as_number(it.get('quantity')),
            'unit_cost': as_number(it.get('unit_cost_snapshot') or it.get('product_cost')),
        } for it in items],
        'total': total_final,
        'total_brut': as_number(row.get('total_brut') or row.get('total')),
        'vat_rate': as_number(row.get('vat_rate_snapshot')),
        'vat_total': as_number(row.get('tva_total')),
        'discount': as_number(row.get('remise')),
        'total_final': total_final,
        'amount_given': as_number(row.get('montant_donne')),
        'change': as_number(row.get('reste')),
        'date': row.get('created_at'),
        'payment_method': row.get('payment_method'),
        'user_id': row.get('user_id'),
        'store_name': row.get('store_name') or '',
    }


def map_db_settings(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'store_name': row.get('store_name') or '',
        'address': row.get('address') or '',
        'phone': row.get('phone') or '',
        'vat_rate': as_number(row.get('vat_rate')),
        'categories': row.get('categories') if isinstance(row.get('categories'), list) else [],
        'units': row.get('units') if isinstance(row.get('units'), list) else [],
    }


def _columns_for(collection: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    allowed = PRODUCT_COLUMNS if collection == 'products' else MOVEMENT_COLUMNS
    return {k: fields[k] for k in allowed if k in fields}


class RemoteStore:
    def __init__(self, base_url: str, api_key: str, access_token: Optional[str] = None,
                 timeout: float = 15, session: Optional[requests.Session] = None):
        self.base_url = (base_url or '').rstrip('/')
        self.api_key = api_key
        self.access_token = access_token or api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            'apikey': self.api_key or '',
            'Authorization': f'Bearer {self.access_token}' if self.access_token else '',
            'Accept': 'application/json',
            'Content-Type': 'application/json',
        }
        if prefer:
            headers['Prefer'] = prefer
        return headers

    def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                 payload: Any = None, prefer: Optional[str] = None) -> Any:
        url = f"{self.base_url}/rest/v1/{path.lstrip('/')}"
        try:
            resp = self.session.request(method, url, params=params, json=payload,
                                        headers=self._headers(prefer), timeout=self.timeout)
        except requests.Timeout as exc:
            raise RemoteError(f"{method} {path} timed out", TRANSIENT) from exc
        except requests.ConnectionError as exc:
            raise RemoteError(f"{method} {path} unreachable: {exc}", OFFLINE) from exc
        except requests.RequestException as exc:
            raise RemoteError(f"{method} {path} failed: {exc}", TRANSIENT) from exc
        if resp.status_code >= 400:
            raise self._error_from_response(method, path, resp)
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteError(f"{method} {path} returned invalid JSON", TRANSIENT,
                              status=resp.status_code) from exc

    @staticmethod
    def _error_from_response(method: str, path: str, resp: requests.Response) -> RemoteError:
        code = None
        message = resp.text[:200]
        try:
            body = resp.json()
            if isinstance(body, dict):
                code = body.get('code')
                message = body.get('message') or body.get('msg') or body.get('error') or message
        except ValueError:
            pass
        code = str(code) if code is not None else None
        category = classify_error(resp.status_code, code)
        return RemoteError(f"{method} {path}: {message}", category, code=code, status=resp.status_code)

    # ---------- reads ----------
    def fetch_collection(self, name: str) -> List[Dict[str, Any]]:
        if name == 'products':
            rows = self._request('GET', 'products', params={'select': '*', 'order': 'created_at.desc'}) or []
            return [map_db_product(r) for r in rows]
        if name == 'movements':
            rows = self._request('GET', 'stock_movements', params={'select': '*', 'order': 'created_at.desc'}) or []
            return [map_db_movement(r) for r in rows]
        if name == 'sales':
            return self._fetch_sales()
        raise ValueError(f"unknown collection {name!r}")

    def _fetch_sales(self) -> List[Dict[str, Any]]:
        sales = self._request('GET', 'sales', params={'select': '*', 'order': 'created_at.desc'}) or []
        if not sales:
            return []
        ids = ','.join(str(s['id']) for s in sales)
        items = self._request('GET', 'sale_items', params={'select': '*', 'sale_id': f'in.({ids})'}) or []
        by_sale: Dict[Any, List[Dict[str, Any]]] = {}
        for it in items:
            by_sale.setdefault(it.get('sale_id'), []).append(it)
        return [map_db_sale(s, by_sale.get(s['id'], [])) for s in sales]

    def fetch_settings(self, owner_id: str) -> Optional[Dict[str, Any]]:
        try:
            rows = self._request('GET', 'settings', params={'select': '*', 'user_id': f'eq.{owner_id}'})
        except RemoteError as exc:
            if exc.code == NO_ROWS_CODE:
                return None
            raise
        if isinstance(rows, list):
            rows = rows[0] if rows else None
        return map_db_settings(rows) if rows else None

    # ---------- writes ----------
    def insert_entity(self, collection: str, fields: Dict[str, Any], owner_id: str) -> Dict[str, Any]:
        table = TABLES[collection]
        row = _columns_for(collection, fields)
        row['user_id'] = owner_id
        try:
            data = self._request('POST', table, payload=row, prefer='return=representation')
        except RemoteError as exc:
            dropped = [c for c in OPTIONAL_MOVEMENT_COLUMNS if c in row and c in (exc.message or '')]
            if collection != 'movements' or exc.category != SCHEMA or not dropped:
                raise
            logger.warning("remote %s lacks %s; retrying insert without them", table, ', '.join(dropped))
            for col in dropped:
                row.pop(col, None)
            data = self._request('POST', table, payload=row, prefer='return=representation')
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict) or data.get('id') is None:
            raise RemoteError(f"insert into {table} returned no row", TRANSIENT)
        return map_db_product(data) if collection == 'products' else map_db_movement(data)

    def update_entity(self, collection: str, entity_id: str, fields: Dict[str, Any]) -> None:
        row = _columns_for(collection, fields)
        if collection == 'products':
            row['updated_at'] = _utcnow_z()
        self._request('PATCH', TABLES[collection], params={'id': f'eq.{entity_id}'}, payload=row)

    def delete_entity(self, collection: str, entity_id: str) -> None:
        self._request('DELETE', TABLES[collection], params={'id': f'eq.{entity_id}'})

    def record_transaction_atomic(self, payload: Dict[str, Any], owner_id: str) -> Dict[str, Any]:
        """
        Call the `create_sale` procedure. It inserts the sale, its line items
        and one stock movement per line (decrementing stock) in a single
        remote transaction, so callers must not insert movements themselves.
        """
        params = {
            'p_items': [{
                'product_id': line['product_id'],
                'quantity': line['quantity'],
                'price': line['price'],
                'name': line['name'],
                'unit_cost': line.get('unit_cost') or 0,
            } for line in payload['lines']],
            'p_total_brut': payload['total_brut'],
            'p_vat_rate': payload['vat_rate'],
            'p_tva_total': payload['vat_total'],
            'p_remise': payload['discount'],
            'p_total_final': payload['total_final'],
            'p_montant_donne': payload['amount_given'],
            'p_reste': payload['change'],
            'p_payment_method': payload['payment_method'],
            'p_store_name': payload.get('store_name') or '',
            'p_user_id': owner_id,
        }
        data = self._request('POST', 'rpc/create_sale', payload=params)
        if isinstance(data, list):
            data = data[0] if data else None
        if isinstance(data, dict) and data.get('id') is not None:
            return {'id': data['id']}
        if isinstance(data, (str, int)):
            return {'id': data}
        raise RemoteError("create_sale returned no id", TRANSIENT)

    def upsert_settings(self, owner_id: str, fields: Dict[str, Any]) -> None:
        row = {
            'user_id': owner_id,
            'store_name': fields.get('store_name'),
            'address': fields.get('address'),
            'phone': fields.get('phone'),
            'vat_rate': fields.get('vat_rate'),
            'categories': fields.get('categories'),
            'units': fields.get('units'),
            'updated_at': _utcnow_z(),
        }
        self._request('POST', 'settings', params={'on_conflict': 'user_id'}, payload=row,
                      prefer='resolution=merge-duplicates')

    def ping(self) -> bool:
        """True when the backend answers at all (any status below 500)."""
        try:
            resp = self.session.get(f"{self.base_url}/rest/v1/", headers=self._headers(),
                                    timeout=min(self.timeout, 5))
        except requests.RequestException:
            return False
        return resp.status_code < 500
