"""
Cart fingerprinting.

The fingerprint pins a cart between "begin payment" and "commit payment". It is
recomputed from the persisted cart on every call, so it survives restarts and needs
no revision counter. Unit prices are not part of it: the order engine re-prices
from the catalog anyway.
"""
import hashlib

from evmarket.models import Cart, CartItem, ItemKind

FIELD_SEPARATOR = ":"
ITEM_SEPARATOR = "|"
NO_REFERENCE = "none"


def _item_signature(item: CartItem) -> str:
    vehicle_ref = item.referenced_id if item.kind == ItemKind.VEHICLE else NO_REFERENCE
    accessory_ref = item.referenced_id if item.kind == ItemKind.ACCESSORY else NO_REFERENCE
    return FIELD_SEPARATOR.join(
        [item.id, item.kind.value, vehicle_ref, accessory_ref, str(item.quantity)]
    )


def fingerprint(cart: Cart) -> str:
    """Return a 64-char lowercase hex sha256 digest of the cart lines"""
    ordered = sorted(cart.items, key=lambda item: item.id)
    payload = ITEM_SEPARATOR.join(_item_signature(item) for item in ordered)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
