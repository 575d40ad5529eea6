"""
Per-product aggregation and minimum-quantity checks.

Pure functions over plain data so they can run as the last step of any
mutating transaction (and be tested without a database).
"""
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Sequence

Aggregates = Dict[str, Dict[str, Any]]


def aggregate_items(item_lists: Iterable[Sequence[Mapping[str, Any]]]) -> Aggregates:
    """
    Sum quantities per product across participants.

    Args:
        item_lists: One list of item dicts per active participant, in
            join order. Each item has product_id, name, quantity,
            unit_price and min_quantity.

    Returns:
        product_id -> {quantity, min_quantity, name, unit_price}

    The first participant to order a product fixes its name, price and
    minimum for the whole cycle.
    """
    aggregates: Aggregates = {}
    for items in item_lists:
        for item in items:
            product_id = str(item['product_id'])
            entry = aggregates.get(product_id)
            if entry is None:
                aggregates[product_id] = {
                    'quantity': int(item['quantity']),
                    'min_quantity': int(item.get('min_quantity') or 1),
                    'name': item.get('name') or product_id,
                    'unit_price': str(item['unit_price']),
                }
            else:
                entry['quantity'] += int(item['quantity'])
    return aggregates


def evaluate(aggregates: Mapping[str, Mapping[str, Any]]) -> bool:
    """
    True when every product has reached its minimum.
    A cycle with nothing ordered has not met anything.
    """
    if not aggregates:
        return False
    return all(
        entry['quantity'] >= entry['min_quantity']
        for entry in aggregates.values()
    )


def unmet_products(aggregates: Mapping[str, Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """List the products still short of their minimum, with the shortfall."""
    shortfalls = []
    for product_id, entry in aggregates.items():
        if entry['quantity'] < entry['min_quantity']:
            shortfalls.append({
                'product_id': product_id,
                'name': entry['name'],
                'quantity': entry['quantity'],
                'min_quantity': entry['min_quantity'],
                'shortfall': entry['min_quantity'] - entry['quantity'],
            })
    return shortfalls


def met_products(aggregates: Mapping[str, Mapping[str, Any]]) -> List[str]:
    return [
        product_id for product_id, entry in aggregates.items()
        if entry['quantity'] >= entry['min_quantity']
    ]


def order_total(items: Iterable[Mapping[str, Any]]) -> Decimal:
    """Server-side participant total: sum of quantity x group unit price."""
    total = sum(
        (Decimal(str(item['unit_price'])) * int(item['quantity']) for item in items),
        Decimal('0.00')
    )
    return total.quantize(Decimal('0.01'))
