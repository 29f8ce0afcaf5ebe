"""
Price and discount arithmetic shared by the catalog, promotions and checkout.
All results are rounded to cents.
"""

from typing import Optional


def _clamp_percentage(pct: float) -> float:
    return min(max(pct, 0), 100)


def calculate_discounted_price(base_price: Optional[float], discount_percentage: Optional[float]) -> float:
    if not base_price or base_price <= 0:
        return 0
    if not discount_percentage or discount_percentage <= 0:
        return base_price

    pct = _clamp_percentage(discount_percentage)
    return round(base_price * (1 - pct / 100), 2)


def calculate_discount_amount(base_price: Optional[float], discount_percentage: Optional[float]) -> float:
    if not base_price or base_price <= 0 or not discount_percentage or discount_percentage <= 0:
        return 0

    pct = _clamp_percentage(discount_percentage)
    return round(base_price * pct / 100, 2)


def calculate_total_discounted_price(
    base_price: Optional[float],
    product_discount: float = 0,
    promotion_discount: float = 0,
) -> float:
    """Apply the product discount, then the promotion discount on what is left."""
    after_product = calculate_discounted_price(base_price, product_discount)
    return calculate_discounted_price(after_product, promotion_discount)


def calculate_margin_percentage(higher_price: Optional[float], lower_price: Optional[float]) -> float:
    if not higher_price or not lower_price or higher_price <= 0 or lower_price <= 0 or higher_price <= lower_price:
        return 0
    return round((higher_price - lower_price) / higher_price * 100, 1)


def derive_sale_prices(product: dict) -> dict:
    """Recompute sale_price and wholesale_sale_price from the percentage discounts."""
    return {
        "sale_price": calculate_discounted_price(product.get("retail_price"), product.get("discount")),
        "wholesale_sale_price": calculate_discounted_price(
            product.get("wholesale_price"), product.get("retailer_discount")
        ),
    }
