from decimal import Decimal
import pytest
from hera_payments.application.stock import StockValidator
from hera_payments.domain.errors import InsufficientStock, InvalidProduct, VariantNotFound
from hera_payments.domain.models import Product, ProductVariant
from hera_payments.domain.payload import CartItem


def item(product, quantity, variant_id=None):
    return CartItem(product_id=product.id, variant_id=variant_id, quantity=quantity, price=Decimal("500.00"))


def test_enough_stock_passes(db_session, product):
    StockValidator(db_session).validate([item(product, 5, product.variants[0].id)])


def test_missing_variant_falls_back_to_first_variant(db_session, product):
    with pytest.raises(InsufficientStock) as exc:
        StockValidator(db_session).validate([item(product, 6)])
    assert exc.value.message == 'Insufficient stock for "Ankara Wrap Dress". Available: 5, Requested: 6'


def test_lines_for_same_variant_are_summed(db_session, product):
    variant_id = product.variants[0].id
    with pytest.raises(InsufficientStock):
        StockValidator(db_session).validate([item(product, 3, variant_id), item(product, 3, variant_id)])


def test_unpublished_product_is_rejected(db_session):
    hidden = Product(title="Draft Kaftan", is_published=False)
    db_session.add(hidden)
    db_session.commit()
    with pytest.raises(InvalidProduct) as exc:
        StockValidator(db_session).validate([item(hidden, 1)])
    assert exc.value.message == f"Product {hidden.id} not found or unavailable"


def test_unknown_variant_is_rejected(db_session, product):
    with pytest.raises(VariantNotFound):
        StockValidator(db_session).validate([item(product, 1, variant_id=9999)])


def test_product_without_variants_is_rejected(db_session):
    bare = Product(title="Beaded Clutch", is_published=True)
    db_session.add(bare)
    db_session.commit()
    with pytest.raises(VariantNotFound):
        StockValidator(db_session).validate([item(bare, 1)])


def test_validation_reads_without_writing(db_session, product):
    StockValidator(db_session).validate([item(product, 2)])
    db_session.expire_all()
    assert db_session.get(ProductVariant, product.variants[0].id).stock == 5
