"""
Cart service for managing per-user shopping carts in Redis.
"""
import hashlib
import logging
from typing import Any, Callable, Optional

from evmarket.catalog import CatalogClient
from evmarket.config import Config
from evmarket.exceptions import (
    InvalidRequestError,
    InvalidStateError,
    LimitExceededError,
    NotFoundError
)
from evmarket.models import Cart, CartItem, ItemKind, VehicleStatus, parse_kind
from evmarket.redis_client import RedisClient, get_redis_client

logger = logging.getLogger(__name__)


class CartService:
    """Service for cart operations"""

    def __init__(self, redis_client: Optional[RedisClient] = None, catalog: Optional[CatalogClient] = None):
        self.redis = redis_client or get_redis_client()
        self.catalog = catalog or CatalogClient(self.redis)

    @staticmethod
    def cart_key(user_id: str) -> str:
        """Generate Redis key for a user's cart"""
        return f"cart:{user_id}"

    def _hash_user_id(self, user_id: str) -> str:
        """Hash user ID for logging (no PII)"""
        return hashlib.sha256(user_id.encode()).hexdigest()[:8]

    def _require_user(self, user_id: str) -> None:
        if not user_id or not user_id.strip():
            raise InvalidRequestError("User ID is required")

    def load(self, user_id: str, conn: Any = None) -> Optional[Cart]:
        """Read the persisted cart, or None if the user has none yet"""
        raw = (conn or self.redis).get(self.cart_key(user_id))
        if raw is None:
            return None
        return Cart.model_validate_json(raw)

    def save(self, cart: Cart, conn: Any = None) -> None:
        (conn or self.redis).set(self.cart_key(cart.user_id), cart.model_dump_json())

    def _mutate(self, user_id: str, change: Callable[[Cart], Cart]) -> Cart:
        """Apply ``change`` to the current cart under WATCH and persist the result"""
        def _apply(pipe):
            existing = self.load(user_id, conn=pipe)
            cart = existing or Cart(user_id=user_id)
            updated = change(cart)
            if existing is not None and updated == cart:
                return cart
            pipe.multi()
            self.save(updated, conn=pipe)
            return updated

        return self.redis.transaction(_apply, self.cart_key(user_id))

    def get_cart(self, user_id: str) -> Cart:
        """Return the user's cart, creating an empty one on first access"""
        self._require_user(user_id)
        cart = self.load(user_id)
        if cart is not None:
            return cart

        cart = Cart(user_id=user_id)
        # NX so concurrent first reads settle on a single cart id
        if not self.redis.set(self.cart_key(user_id), cart.model_dump_json(), nx=True):
            return self.load(user_id)
        logger.info(f"Created cart for user {self._hash_user_id(user_id)}")
        return cart

    def add_item(self, user_id: str, kind: Any, referenced_id: str, quantity: int = 1) -> Cart:
        """
        Add a vehicle or accessory, merging into an existing line when present.

        The unit price always comes from the live catalog. Vehicles are single units,
        so their quantity is pinned to 1 whatever was requested.
        """
        self._require_user(user_id)
        kind = parse_kind(kind)

        if kind == ItemKind.VEHICLE:
            vehicle = self.catalog.get_vehicle(referenced_id)
            if vehicle.status != VehicleStatus.AVAILABLE:
                raise InvalidStateError(f"Vehicle {referenced_id} is not available")
            unit_price = vehicle.price
            quantity = 1
        else:
            if quantity <= 0:
                raise InvalidRequestError("Quantity must be greater than 0")
            unit_price = self.catalog.get_accessory(referenced_id).price

        if quantity > Config.MAX_QUANTITY_PER_ITEM:
            raise LimitExceededError(
                f"Quantity {quantity} exceeds maximum {Config.MAX_QUANTITY_PER_ITEM}"
            )

        line_id = CartItem.line_id(kind, referenced_id)

        def _merge(cart: Cart) -> Cart:
            existing = cart.find_item(line_id)
            if existing is None:
                if len(cart.items) >= Config.MAX_ITEMS_PER_CART:
                    raise LimitExceededError(
                        f"Cart exceeds maximum items {Config.MAX_ITEMS_PER_CART}"
                    )
                new_quantity = quantity
            elif kind == ItemKind.VEHICLE:
                new_quantity = 1
            else:
                new_quantity = existing.quantity + quantity
                if new_quantity > Config.MAX_QUANTITY_PER_ITEM:
                    raise LimitExceededError(
                        f"Quantity exceeds maximum {Config.MAX_QUANTITY_PER_ITEM}"
                    )

            return cart.with_item(CartItem(
                id=line_id,
                kind=kind,
                referenced_id=referenced_id,
                unit_price=unit_price,
                quantity=new_quantity
            ))

        cart = self._mutate(user_id, _merge)
        logger.info(
            f"Added {kind.value} {referenced_id} to cart of user {self._hash_user_id(user_id)}"
        )
        return cart

    def update_quantity(self, user_id: str, item_id: str, quantity: int) -> Cart:
        """Set a line's quantity; 0 removes the line"""
        self._require_user(user_id)
        if quantity < 0:
            raise InvalidRequestError("Quantity cannot be negative")

        if quantity > Config.MAX_QUANTITY_PER_ITEM:
            raise LimitExceededError(
                f"Quantity {quantity} exceeds maximum {Config.MAX_QUANTITY_PER_ITEM}"
            )

        def _update(cart: Cart) -> Cart:
            item = cart.find_item(item_id)
            if item is None:
                raise NotFoundError("Cart item", item_id)
            if quantity == 0:
                return cart.without_item(item_id)
            if item.kind == ItemKind.VEHICLE and quantity != 1:
                raise InvalidRequestError("Vehicle quantity is always 1")
            return cart.with_item(item.model_copy(update={"quantity": quantity}))

        return self._mutate(user_id, _update)

    def remove_item(self, user_id: str, item_id: str) -> Cart:
        """Remove a line from the cart; no-op if absent"""
        self._require_user(user_id)
        return self._mutate(user_id, lambda cart: cart.without_item(item_id))

    def clear_cart(self, user_id: str) -> Cart:
        """Remove all lines, keeping the cart itself"""
        self._require_user(user_id)
        return self._mutate(user_id, lambda cart: cart.cleared())
