"""
Order service: turns a cart or an explicit item list into an immutable order.
"""
import logging
from decimal import Decimal
from typing import Any, Iterable, List, Optional, Tuple

from evmarket.cart_service import CartService
from evmarket.catalog import CatalogClient
from evmarket.exceptions import InvalidRequestError, InvalidStateError, NotFoundError
from evmarket.models import (
    Cart,
    ItemKind,
    Order,
    OrderItem,
    OrderItemRequest,
    OrderStatus,
    VehicleStatus,
    parse_kind
)
from evmarket.redis_client import RedisClient, get_redis_client

logger = logging.getLogger(__name__)

# (kind, referenced_id, quantity)
Line = Tuple[Any, str, int]


class OrderService:
    """Service for order creation and lookup"""

    def __init__(
        self,
        redis_client: Optional[RedisClient] = None,
        catalog: Optional[CatalogClient] = None,
        cart_service: Optional[CartService] = None
    ):
        self.redis = redis_client or get_redis_client()
        self.catalog = catalog or CatalogClient(self.redis)
        self.cart_service = cart_service or CartService(self.redis, self.catalog)

    @staticmethod
    def order_key(order_id: str) -> str:
        return f"order:{order_id}"

    @staticmethod
    def user_orders_key(user_id: str) -> str:
        return f"orders:user:{user_id}"

    def load(self, order_id: str, conn: Any = None) -> Optional[Order]:
        raw = (conn or self.redis).get(self.order_key(order_id))
        if raw is None:
            return None
        return Order.model_validate_json(raw)

    def save(self, order: Order, pipe: Any, is_new: bool = False) -> None:
        """Queue the order write on a pipeline in MULTI mode"""
        pipe.set(self.order_key(order.id), order.model_dump_json())
        if is_new:
            pipe.rpush(self.user_orders_key(order.user_id), order.id)

    def price_lines(self, lines: Iterable[Line], conn: Any = None) -> List[OrderItem]:
        """Re-validate each line against the catalog and snapshot its live price"""
        items: List[OrderItem] = []
        seen_vehicles = set()

        for kind, referenced_id, quantity in lines:
            kind = parse_kind(kind)
            if kind == ItemKind.VEHICLE:
                if referenced_id in seen_vehicles:
                    raise InvalidRequestError(f"Vehicle {referenced_id} listed more than once")
                seen_vehicles.add(referenced_id)

                vehicle = self.catalog.get_vehicle(referenced_id, conn=conn)
                if vehicle.status != VehicleStatus.AVAILABLE:
                    raise InvalidStateError(f"Vehicle {referenced_id} is not available")
                unit_price = vehicle.price
                quantity = 1
            else:
                if quantity is None or quantity <= 0:
                    raise InvalidRequestError("Quantity must be greater than 0")
                unit_price = self.catalog.get_accessory(referenced_id, conn=conn).price

            items.append(OrderItem(
                kind=kind,
                referenced_id=referenced_id,
                unit_price=unit_price,
                quantity=quantity,
                line_total=unit_price * quantity
            ))

        return items

    def build_order(self, user_id: str, lines: Iterable[Line], conn: Any = None) -> Order:
        """Build (but do not persist) a PLACED order from the given lines"""
        lines = list(lines)
        if not lines:
            raise InvalidRequestError("Order must have at least one item")

        items = self.price_lines(lines, conn=conn)
        total = sum((item.line_total for item in items), Decimal("0"))
        return Order(user_id=user_id, total_price=total, items=tuple(items))

    def build_order_from_cart(self, cart: Cart, conn: Any = None) -> Order:
        if cart.is_empty:
            raise InvalidStateError("Cart is empty")
        lines = [(item.kind, item.referenced_id, item.quantity) for item in cart.items]
        return self.build_order(cart.user_id, lines, conn=conn)

    def _persist_new(self, order: Order) -> Order:
        def _write(pipe):
            pipe.multi()
            self.save(order, pipe, is_new=True)
            return order

        self.redis.transaction(_write)
        logger.info(f"Order {order.id} placed, total {order.total_price}")
        return order

    def create_order(self, user_id: str, items: Iterable[OrderItemRequest]) -> Order:
        """Create a PLACED order from an explicit item list"""
        lines = [(item.kind, item.referenced_id, item.quantity) for item in items]
        return self._persist_new(self.build_order(user_id, lines))

    def create_order_from_cart(self, user_id: str) -> Order:
        """
        Create a PLACED order from the user's current cart.
        The cart is left untouched; clearing it is up to the payment engine.
        """
        cart = self.cart_service.load(user_id)
        if cart is None or cart.is_empty:
            raise InvalidStateError("Cart is empty")
        return self._persist_new(self.build_order_from_cart(cart))

    def get_order(self, order_id: str) -> Order:
        order = self.load(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    def list_orders(self, user_id: str) -> List[Order]:
        order_ids = self.redis.lrange(self.user_orders_key(user_id))
        raw_orders = self.redis.mget([self.order_key(order_id) for order_id in order_ids])
        return [Order.model_validate_json(raw) for raw in raw_orders if raw is not None]

    def cancel_order(self, order_id: str) -> Order:
        """Cancel an unpaid order. Paid orders go through a payment refund instead."""
        def _cancel(pipe):
            order = self.load(order_id, conn=pipe)
            if order is None:
                raise NotFoundError("Order", order_id)
            if order.status == OrderStatus.PAID:
                raise InvalidStateError(
                    f"Order {order_id} is paid; cancel it by refunding its payment"
                )
            canceled = order.transition(OrderStatus.CANCELED)
            pipe.multi()
            self.save(canceled, pipe)
            return canceled

        order = self.redis.transaction(_cancel, self.order_key(order_id))
        logger.info(f"Order {order_id} canceled")
        return order
