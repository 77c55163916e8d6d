"""
Inventory ledger

Reservations are implicit: validation reads the current stock and the commit
is a conditional decrement per product

    UPDATE products SET quantity = quantity - :q WHERE id = :id AND quantity >= :q

so two checkouts racing on the same product both validate but only one
decrement matches. The loser gets InsufficientQuantity and the decrements
already applied in its batch are put back.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field

from sqlalchemy import update
from sqlmodel import Session, col, select

from app.core.errors import InactiveProduct, InsufficientQuantity, UnknownProduct
from app.core.logging import get_logger
from app.core.metrics import inventory_conflicts_total
from app.models import Product, get_datetime_utc

logger = get_logger(__name__)


@dataclass
class Reservation:
    """Aggregated quantities to decrement, for stock-tracked products only"""

    quantities: dict[str, int] = field(default_factory=dict)
    products: dict[str, Product] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return bool(self.quantities)


class InventoryLedger:
    def __init__(self, session: Session):
        self.session = session

    def load_products(self, product_ids: Iterable[str]) -> dict[str, Product]:
        ids = list(dict.fromkeys(product_ids))
        if not ids:
            return {}
        products = self.session.exec(
            select(Product).where(col(Product.id).in_(ids))
        ).all()
        return {product.id: product for product in products}

    def validate_and_reserve(
        self,
        lines: Iterable[tuple[str, int]],
        products: dict[str, Product] | None = None,
    ) -> Reservation:
        """
        Check every (product_id, quantity) line against the current stock.

        Quantities for the same product are summed across lines before the
        availability check.
        """
        requested: dict[str, int] = {}
        for product_id, quantity in lines:
            requested[product_id] = requested.get(product_id, 0) + quantity

        if products is None:
            products = self.load_products(requested)

        reservation = Reservation()
        for product_id, quantity in requested.items():
            product = products.get(product_id)
            if product is None:
                raise UnknownProduct(
                    f"Product {product_id} not found", details={"productId": product_id}
                )
            if not product.is_active:
                raise InactiveProduct(
                    f"Product {product.name} is not available",
                    details={"productId": product_id},
                )
            reservation.products[product_id] = product
            if not product.track_quantity:
                continue
            if product.quantity < quantity:
                raise InsufficientQuantity(
                    f"Insufficient stock for {product.name}",
                    details={
                        "productId": product_id,
                        "available": product.quantity,
                        "requested": quantity,
                    },
                )
            reservation.quantities[product_id] = quantity

        return reservation

    def commit(self, reservation: Reservation) -> None:
        """Apply the conditional decrements; all or nothing."""
        applied: dict[str, int] = {}
        for product_id, quantity in reservation.quantities.items():
            result = self.session.exec(
                update(Product)
                .where(col(Product.id) == product_id, col(Product.quantity) >= quantity)
                .values(
                    quantity=Product.quantity - quantity,
                    updated_at=get_datetime_utc(),
                )
            )
            if result.rowcount == 0:
                self._increment(applied)
                inventory_conflicts_total.inc()
                logger.warning(
                    "inventory_decrement_conflict",
                    product_id=product_id,
                    requested=quantity,
                    compensated=len(applied),
                )
                product = reservation.products.get(product_id)
                raise InsufficientQuantity(
                    f"Insufficient stock for {product.name if product else product_id}",
                    details={"productId": product_id, "requested": quantity},
                )
            applied[product_id] = quantity

        logger.debug("inventory_committed", products=len(applied))

    def restore(self, items: Iterable[tuple[str, int]]) -> None:
        """Put stock back for cancelled or refunded lines."""
        quantities: dict[str, int] = {}
        for product_id, quantity in items:
            quantities[product_id] = quantities.get(product_id, 0) + quantity
        self._increment(quantities)
        logger.info("inventory_restored", products=len(quantities))

    def _increment(self, quantities: dict[str, int]) -> None:
        for product_id, quantity in quantities.items():
            self.session.exec(
                update(Product)
                .where(col(Product.id) == product_id, col(Product.track_quantity).is_(True))
                .values(
                    quantity=Product.quantity + quantity,
                    updated_at=get_datetime_utc(),
                )
            )
