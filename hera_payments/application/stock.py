from typing import Iterable, Optional
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload
from hera_payments.domain.errors import InsufficientStock, InvalidProduct, VariantNotFound
from hera_payments.domain.models import Product, ProductVariant
from hera_payments.domain.payload import CartItem


def resolve_variant(product: Product, variant_id: Optional[int]) -> Optional[ProductVariant]:
    """The requested variant, or the product's first variant when none was chosen."""
    if variant_id is None:
        return product.variants[0] if product.variants else None
    return next((v for v in product.variants if v.id == variant_id), None)


class StockValidator:
    """Read-only availability check run before a push is sent to the buyer's phone."""

    def __init__(self, db: Session):
        self.db = db

    def validate(self, items: Iterable[CartItem]) -> None:
        items = list(items)
        product_ids = {item.product_id for item in items}
        products = {
            p.id: p for p in self.db.scalars(
                select(Product)
                .where(Product.id.in_(product_ids), Product.is_published.is_(True))
                .options(selectinload(Product.variants))
            )
        }

        # Two lines for the same variant draw on the same shelf
        requested = {}
        for item in items:
            product = products.get(item.product_id)
            if product is None:
                raise InvalidProduct(f"Product {item.product_id} not found or unavailable")

            variant = resolve_variant(product, item.variant_id)
            if variant is None:
                raise VariantNotFound(f'Product variant not found for "{product.title}"')

            requested[variant.id] = requested.get(variant.id, 0) + item.quantity
            if variant.stock < requested[variant.id]:
                raise InsufficientStock(
                    f'Insufficient stock for "{product.title}". '
                    f"Available: {variant.stock}, Requested: {requested[variant.id]}"
                )
