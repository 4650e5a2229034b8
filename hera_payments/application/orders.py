from datetime import datetime
from decimal import Decimal
from typing import Optional
import secrets
from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload
from hera_core import get_logger
from hera_payments.application.stock import resolve_variant
from hera_payments.domain.errors import InvalidProduct, StockConflict, VariantNotFound
from hera_payments.domain.models import Order, OrderItem, Product, ProductVariant, StockMovement
from hera_payments.domain.payload import CartPayload

logger = get_logger(__name__)


class OrderMaterializer:
    def __init__(self, db: Session):
        self.db = db

    def _generate_order_number(self) -> str:
        """Human-readable order number in format HERA-YYMMDD-XXXXXX"""
        return f"HERA-{datetime.utcnow():%y%m%d}-{secrets.token_hex(3).upper()}"

    def _decrement_stock(self, variant: ProductVariant, quantity: int) -> int:
        """Take `quantity` off the shelf; the WHERE clause re-checks stock inside the transaction."""
        result = self.db.execute(
            update(ProductVariant)
            .where(ProductVariant.id == variant.id, ProductVariant.stock >= quantity)
            .values(stock=ProductVariant.stock - quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.refresh(variant)
            raise StockConflict(
                f'Not enough stock for "{variant.product.title}" ({variant.sku}). '
                f"Available: {variant.stock}, Requested: {quantity}"
            )
        self.db.refresh(variant)
        return variant.stock

    def create_order(self, buyer_id: int, payload: CartPayload,
                     payment_intent_id: Optional[int] = None) -> Order:
        """
        Build the order for a paid cart.

        Stock is decremented, movements recorded and the order with its items
        inserted in the caller's transaction; nothing is committed here, so a
        rollback undoes all of it. Totals come from the prices locked into the
        payload, never from the live catalogue.
        """
        product_ids = {item.product_id for item in payload.items}
        products = {
            p.id: p for p in self.db.scalars(
                select(Product)
                .where(Product.id.in_(product_ids), Product.is_published.is_(True))
                .options(selectinload(Product.variants))
            )
        }

        subtotal = sum((item.line_total for item in payload.items), Decimal("0"))
        order = Order(
            order_number=self._generate_order_number(),
            buyer_id=buyer_id,
            status="PENDING",
            payment_method=payload.payment.method,
            customer_first_name=payload.customer.first_name or None,
            customer_last_name=payload.customer.last_name or None,
            customer_email=payload.customer.email or None,
            customer_phone=payload.payment.phone or payload.customer.phone,
            shipping_address=payload.shipping.address or None,
            shipping_city=payload.shipping.city or None,
            shipping_country=payload.shipping.country or None,
            notes=payload.shipping.notes or None,
            subtotal_amount=subtotal,
            shipping_amount=payload.amounts.shipping_fee,
            discount_amount=payload.amounts.discount,
            total_amount=payload.order_total(),
            payment_intent_id=payment_intent_id,
        )
        self.db.add(order)
        self.db.flush()  # assign id for the movement references

        for item in payload.items:
            product = products.get(item.product_id)
            if product is None:
                raise InvalidProduct(f"Product {item.product_id} not found or unavailable")
            variant = resolve_variant(product, item.variant_id)
            if variant is None:
                raise VariantNotFound(f'Product variant not found for "{product.title}"')

            logger.info(f"Reserving {item.quantity} x {variant.sku} for order {order.order_number}")
            new_stock = self._decrement_stock(variant, item.quantity)

            self.db.add(StockMovement(
                variant_id=variant.id,
                movement_type="SALE",
                quantity=-item.quantity,
                previous_stock=new_stock + item.quantity,
                new_stock=new_stock,
                reference_type="ORDER",
                reference_id=order.id,
                created_by=buyer_id,
            ))
            self.db.add(OrderItem(
                order_id=order.id,
                product_id=item.product_id,
                variant_id=variant.id,
                quantity=item.quantity,
                price=item.price,
                total=item.line_total,
                variant_name=item.variant_name or variant.name,
                variant_value=item.variant_value or variant.value,
            ))

        self.db.flush()
        self.db.refresh(order)
        logger.info(f"Order {order.order_number} materialized", extra={'extra_fields': {
            'order_id': order.id, 'buyer_id': buyer_id, 'payment_intent_id': payment_intent_id,
            'total_amount': order.total_amount}})
        return order
