"""Unit tests for the immutable domain records."""

from __future__ import annotations

from decimal import Decimal

import pytest

from retail_erp.constants import MovementType, PaymentMethod, PaymentStatus
from retail_erp.models import Client, Product, Sale, SaleItem, StockMovement, to_money


def _item(quantity: int = 3, price: str = "8.99", discount: str = "0") -> SaleItem:
    return SaleItem("P1", "Soda", quantity, Decimal(price), Decimal(discount))


# ---------------------------------------------------------------------------
# Money handling
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "raw, expected",
    [
        (Decimal("8.994"), Decimal("8.99")),
        (Decimal("8.995"), Decimal("9.00")),
        (8.99, Decimal("8.99")),
        ("12", Decimal("12.00")),
        (3, Decimal("3.00")),
    ],
)
def test_to_money_quantizes_half_up(raw, expected):
    """to_money should round to cents using ROUND_HALF_UP."""

    assert to_money(raw) == expected
    assert to_money(raw).as_tuple().exponent == -2


# ---------------------------------------------------------------------------
# Product and client
# ---------------------------------------------------------------------------


def test_product_normalizes_prices():
    product = Product("P1", "Soda", Decimal("8.9"), cost_price=5)
    assert product.sale_price == Decimal("8.90")
    assert product.cost_price == Decimal("5.00")


def test_product_rejects_negative_quantity():
    """A product can never hold negative stock."""

    with pytest.raises(ValueError):
        Product("P1", "Soda", Decimal("1.00"), quantity=-1)


def test_product_low_stock_is_inclusive():
    """Products at exactly their minimum count as low stock."""

    assert Product("P1", "Soda", Decimal("1.00"), quantity=2, min_quantity=2).is_low_stock
    assert not Product("P1", "Soda", Decimal("1.00"), quantity=3, min_quantity=2).is_low_stock


def test_client_available_credit_never_negative():
    client = Client("C1", "Ana", credit_limit=Decimal("500"), current_debt=Decimal("450"))
    assert client.available_credit == Decimal("50.00")


def test_client_rejects_negative_debt():
    with pytest.raises(ValueError):
        Client("C1", "Ana", current_debt=Decimal("-1"))


# ---------------------------------------------------------------------------
# Sale items and sales
# ---------------------------------------------------------------------------


def test_sale_item_total_subtracts_discount():
    """item.total == quantity * unit_price - discount."""

    item = _item(quantity=3, price="8.99", discount="1.97")
    assert item.gross_total == Decimal("26.97")
    assert item.total == Decimal("25.00")


def test_sale_item_rejects_discount_above_subtotal():
    with pytest.raises(ValueError):
        _item(quantity=1, price="2.00", discount="2.01")


def test_sale_item_requires_positive_quantity():
    with pytest.raises(ValueError):
        _item(quantity=0)


def test_sale_totals_and_helpers():
    """Sale totals should be derived from the items and the sale discount."""

    sale = Sale(
        user_id="U1",
        items=[_item(quantity=2, price="10.00"), SaleItem("P2", "Chips", 1, Decimal("5.00"))],
        payment_method=PaymentMethod.CASH,
        payment_status=PaymentStatus.PAID,
        discount=Decimal("5.00"),
    )

    assert isinstance(sale.items, tuple)
    assert sale.subtotal == Decimal("25.00")
    assert sale.total == Decimal("20.00")
    assert sale.total_units == 3
    assert sale.discount_percentage == Decimal("20.00")
    assert not sale.is_store_credit


def test_sale_requires_items():
    with pytest.raises(ValueError):
        Sale(user_id="U1", items=[], payment_method=PaymentMethod.CASH, payment_status=PaymentStatus.PAID)


def test_store_credit_sale_requires_client():
    with pytest.raises(ValueError):
        Sale(
            user_id="U1",
            items=[_item()],
            payment_method=PaymentMethod.STORE_CREDIT,
            payment_status=PaymentStatus.PENDING,
        )


def test_with_status_returns_new_record():
    sale = Sale(user_id="U1", items=[_item()], payment_method=PaymentMethod.PIX, payment_status=PaymentStatus.PAID)
    cancelled = sale.with_status(PaymentStatus.CANCELLED)

    assert cancelled.is_cancelled
    assert sale.payment_status is PaymentStatus.PAID


# ---------------------------------------------------------------------------
# Stock movements
# ---------------------------------------------------------------------------


def test_movement_total_price_defaults_to_unit_price_times_quantity():
    movement = StockMovement("P1", MovementType.ENTRY, 4, unit_price=Decimal("2.50"))
    assert movement.total_price == Decimal("10.00")


def test_movement_keeps_explicit_total_price():
    movement = StockMovement(
        "P1", MovementType.EXIT, 3, unit_price=Decimal("8.99"), total_price=Decimal("25.00")
    )
    assert movement.total_price == Decimal("25.00")


@pytest.mark.parametrize(
    "movement_type, impact",
    [
        (MovementType.ENTRY, 3),
        (MovementType.RETURN, 3),
        (MovementType.EXIT, -3),
        (MovementType.LOSS, -3),
        (MovementType.ADJUSTMENT, 0),
    ],
)
def test_movement_stock_impact(movement_type, impact):
    assert StockMovement("P1", movement_type, 3).stock_impact == impact


def test_movement_requires_positive_quantity():
    with pytest.raises(ValueError):
        StockMovement("P1", MovementType.ENTRY, 0)
