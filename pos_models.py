# Entity helpers: payment methods, barcodes, sale totals.
import random
import uuid
from typing import Any, Dict, Iterable, Optional

PAYMENT_METHODS = ('cash', 'd-money', 'waafi', 'cac-pay', 'saba-pay', 'card')
MOVEMENT_TYPES = ('in', 'out', 'sale')
ENTITY_COLLECTIONS = ('products', 'movements')

DEFAULT_SETTINGS: Dict[str, Any] = {
    'store_name': '',
    'vat_rate': 0.0,
    'address': '',
    'phone': '',
    'categories': [],
    'units': [],
}


def new_id() -> str:
    return str(uuid.uuid4())


def normalize_payment_method(method: Optional[str]) -> str:
    normalized = (method or '').strip().lower()
    if normalized in PAYMENT_METHODS:
        return normalized
    if normalized in ('mobile_money', 'mobile'):
        return 'd-money'
    return 'cash'


def generate_barcode() -> str:
    """12-digit in-store code: '200' + 9 random digits."""
    return '200' + str(random.randint(0, 999_999_999)).zfill(9)


def as_number(value: Any, default: float = 0.0) -> float:
    if value in (None, '', False):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def clamp_quantity(previous: float, delta: float) -> float:
    """Apply delta to a stock quantity without going below zero."""
    return max(0, previous + delta)


def compute_totals(lines: Iterable[Dict[str, Any]], vat_rate: float, discount: float,
                   amount_given: float) -> Dict[str, float]:
    """
    lines: [{'price': 100, 'quantity': 2}, ...]

    gross = sum(price * quantity); tax = gross * rate / 100;
    payable = max(0, gross + tax - discount); change = max(0, given - payable)
    """
    gross = sum(as_number(l.get('price')) * as_number(l.get('quantity')) for l in lines)
    vat_total = gross * (as_number(vat_rate) / 100)
    total_final = max(0, gross + vat_total - as_number(discount))
    change = max(0, as_number(amount_given) - total_final)
    return {
        'total_brut': gross,
        'vat_total': vat_total,
        'total_final': total_final,
        'change': change,
    }
