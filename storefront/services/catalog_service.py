from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import bleach
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from storefront.config import Config
from storefront.models import (
    Category,
    Coupon,
    DiscountType,
    Product,
    ProductVariant,
)
from storefront.observability import increment_counter

SORT_OPTIONS = ("newest", "price_asc", "price_desc", "rating", "name")

_PRODUCT_TEXT_FIELDS = ("name", "description", "brand", "gender", "image_url", "inspired_by")
_PRODUCT_LIST_FIELDS = ("scent_notes", "seasons", "occasions")


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    return bleach.clean(str(value), tags=[], strip=True).strip()


def _money(value: Any) -> Optional[float]:
    return None if value is None else float(value)


def serialize_variant(variant: ProductVariant) -> Dict[str, Any]:
    return {
        "id": variant.variantID,
        "product_id": variant.productID,
        "name": variant.name,
        "size": variant.size,
        "sku": variant.sku,
        "price": float(variant.price),
        "original_price": _money(variant.original_price),
        "stock": variant.stock,
        "in_stock": bool(variant.in_stock),
    }


def serialize_product(product: Product, include_variants: bool = True) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": product.productID,
        "name": product.name,
        "description": product.description,
        "brand": product.brand,
        "gender": product.gender,
        "category": product.category.slug if product.category else None,
        "base_price": float(product.base_price),
        "original_price": _money(product.original_price),
        "image_url": product.image_url,
        "inspired_by": product.inspired_by,
        "scent_notes": product.scent_notes or [],
        "seasons": product.seasons or [],
        "occasions": product.occasions or [],
        "rating": _money(product.rating),
        "review_count": product.review_count or 0,
        "is_active": bool(product.is_active),
        "in_stock": product.in_stock,
    }
    if include_variants:
        payload["variants"] = [serialize_variant(variant) for variant in product.variants]
    return payload


def serialize_coupon(coupon: Coupon) -> Dict[str, Any]:
    return {
        "id": coupon.couponID,
        "code": coupon.code,
        "discount_type": DiscountType(coupon.discount_type).value,
        "discount_value": float(coupon.discount_value),
        "min_order_amount": _money(coupon.min_order_amount),
        "max_uses": coupon.max_uses,
        "current_uses": coupon.current_uses or 0,
        "expires_at": coupon.expires_at.isoformat() if coupon.expires_at else None,
        "is_active": bool(coupon.is_active),
    }


class CatalogService:
    """Storefront catalog queries plus product, variant and coupon administration."""

    def __init__(self, db_session: Session, config: type[Config] = Config) -> None:
        self.db = db_session
        self.config = config
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Storefront
    # ------------------------------------------------------------------
    def list_products(
        self,
        category_slug: Optional[str] = None,
        gender: Optional[str] = None,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        search: Optional[str] = None,
        in_stock_only: bool = False,
        sort: str = "newest",
        include_inactive: bool = False,
    ) -> List[Product]:
        query = self.db.query(Product)
        if not include_inactive:
            query = query.filter(Product.is_active.is_(True))
        if category_slug:
            query = query.join(Category).filter(Category.slug == category_slug)
        if gender:
            query = query.filter(func.lower(Product.gender) == gender.lower())
        if min_price is not None:
            query = query.filter(Product.base_price >= min_price)
        if max_price is not None:
            query = query.filter(Product.base_price <= max_price)
        if search:
            pattern = f"%{search.strip().lower()}%"
            query = query.filter(
                or_(
                    func.lower(Product.name).like(pattern),
                    func.lower(Product.brand).like(pattern),
                    func.lower(Product.inspired_by).like(pattern),
                )
            )

        ordering = {
            "newest": (Product.created_at.desc(), Product.productID.desc()),
            "price_asc": (Product.base_price.asc(),),
            "price_desc": (Product.base_price.desc(),),
            "rating": (Product.rating.desc(), Product.review_count.desc()),
            "name": (Product.name.asc(),),
        }.get(sort if sort in SORT_OPTIONS else "newest")
        products = query.order_by(*ordering).all()

        if in_stock_only:
            products = [product for product in products if product.in_stock]
        return products

    def get_product(self, product_id: Any, include_inactive: bool = False) -> Optional[Product]:
        try:
            product = self.db.get(Product, int(product_id))
        except (TypeError, ValueError):
            return None
        if product and not product.is_active and not include_inactive:
            return None
        return product

    def list_categories(self) -> List[Category]:
        return self.db.query(Category).order_by(Category.name.asc()).all()

    def create_category(self, name: str, slug: str) -> Tuple[bool, str, Optional[Category]]:
        name, slug = _clean(name), _clean(slug)
        if not name or not slug:
            return False, "Name and slug are required", None
        if self.db.query(Category).filter(Category.slug == slug.lower()).first():
            return False, "Category slug already exists", None
        category = Category(name=name, slug=slug.lower())
        self.db.add(category)
        self.db.commit()
        return True, "Category created", category

    # ------------------------------------------------------------------
    # Admin products
    # ------------------------------------------------------------------
    def _apply_product_fields(self, product: Product, data: Dict[str, Any]) -> Optional[str]:
        for field_name in _PRODUCT_TEXT_FIELDS:
            if field_name in data:
                setattr(product, field_name, _clean(data[field_name]))
        for field_name in _PRODUCT_LIST_FIELDS:
            if field_name in data:
                values = data[field_name] or []
                if not isinstance(values, list):
                    return f"{field_name} must be a list"
                setattr(product, field_name, [_clean(value) for value in values if _clean(value)])
        for field_name in ("base_price", "original_price"):
            if field_name in data and data[field_name] is not None:
                try:
                    price = float(data[field_name])
                except (TypeError, ValueError):
                    return f"{field_name} must be a number"
                if price < 0:
                    return "Price must not be negative"
                setattr(product, field_name, price)
        if "category_id" in data:
            category_id = data["category_id"]
            if category_id is not None and not self.db.get(Category, category_id):
                return "Category not found"
            product.categoryID = category_id
        if "is_active" in data:
            product.is_active = bool(data["is_active"])

        if not product.name:
            return "Product name is required"
        if product.base_price is None:
            return "Base price is required"
        return None

    def create_product(self, data: Dict[str, Any]) -> Tuple[bool, str, Optional[Product]]:
        product = Product(is_active=True)
        error = self._apply_product_fields(product, data)
        if error:
            return False, error, None
        self.db.add(product)
        self.db.commit()
        increment_counter("products_created_total")
        self.logger.info("Product %s created", product.productID)
        return True, "Product created", product

    def update_product(self, product_id: Any, data: Dict[str, Any]) -> Tuple[bool, str, Optional[Product]]:
        product = self.get_product(product_id, include_inactive=True)
        if not product:
            return False, "Product not found", None
        error = self._apply_product_fields(product, data)
        if error:
            self.db.rollback()
            return False, error, None
        self.db.commit()
        return True, "Product updated", product

    def set_active(self, product_id: Any, is_active: bool) -> Tuple[bool, str, Optional[Product]]:
        product = self.get_product(product_id, include_inactive=True)
        if not product:
            return False, "Product not found", None
        product.is_active = bool(is_active)
        self.db.commit()
        return True, "Product activated" if is_active else "Product deactivated", product

    def upsert_variant(
        self,
        product_id: Any,
        data: Dict[str, Any],
        variant_id: Optional[int] = None,
    ) -> Tuple[bool, str, Optional[ProductVariant]]:
        product = self.get_product(product_id, include_inactive=True)
        if not product:
            return False, "Product not found", None

        if variant_id is not None:
            variant = self.db.get(ProductVariant, variant_id)
            if not variant or variant.productID != product.productID:
                return False, "Variant not found", None
        else:
            variant = ProductVariant(productID=product.productID, stock=0)

        size = _clean(data.get("size", variant.size))
        if not size:
            return False, "Variant size is required", None
        try:
            price = float(data.get("price", variant.price))
            stock = int(data.get("stock", variant.stock or 0))
        except (TypeError, ValueError):
            return False, "Price and stock must be numeric", None
        if price < 0:
            return False, "Price must not be negative", None
        if stock < 0:
            return False, "Stock must not be negative", None

        sku = _clean(data.get("sku", variant.sku)) or None
        if sku:
            clash = self.db.query(ProductVariant).filter(ProductVariant.sku == sku).first()
            if clash and clash.variantID != variant.variantID:
                return False, "SKU already in use", None

        variant.size = size
        variant.name = _clean(data.get("name", variant.name)) or None
        variant.sku = sku
        variant.price = price
        if data.get("original_price") is not None:
            variant.original_price = float(data["original_price"])
        variant.stock = stock
        variant.in_stock = stock > 0
        if variant_id is None:
            self.db.add(variant)
        self.db.commit()
        return True, "Variant saved", variant

    # ------------------------------------------------------------------
    # Coupons
    # ------------------------------------------------------------------
    def create_coupon(self, data: Dict[str, Any]) -> Tuple[bool, str, Optional[Coupon]]:
        code = (_clean(data.get("code")) or "").upper()
        if not code:
            return False, "Coupon code is required", None
        if self.find_coupon(code):
            return False, "Coupon code already exists", None
        try:
            discount_type = DiscountType(data.get("discount_type", "percentage"))
            discount_value = float(data.get("discount_value"))
        except (TypeError, ValueError):
            return False, "Invalid discount", None
        if discount_value <= 0:
            return False, "Discount value must be positive", None
        if discount_type == DiscountType.PERCENTAGE and discount_value > 100:
            return False, "Percentage discount cannot exceed 100", None

        try:
            max_uses = int(data["max_uses"]) if data.get("max_uses") not in (None, "") else None
            min_order_amount = (
                float(data["min_order_amount"]) if data.get("min_order_amount") not in (None, "") else None
            )
        except (TypeError, ValueError):
            return False, "Invalid coupon limits", None
        if max_uses is not None and max_uses < 1:
            return False, "Max uses must be at least 1", None
        if min_order_amount is not None and min_order_amount < 0:
            return False, "Minimum order amount cannot be negative", None

        expires_at = data.get("expires_at")
        if isinstance(expires_at, str):
            try:
                expires_at = datetime.fromisoformat(expires_at)
            except ValueError:
                return False, "Invalid expiry date", None

        coupon = Coupon(
            code=code,
            discount_type=discount_type,
            discount_value=discount_value,
            min_order_amount=min_order_amount,
            max_uses=max_uses,
            current_uses=0,
            expires_at=expires_at,
            is_active=bool(data.get("is_active", True)),
        )
        self.db.add(coupon)
        self.db.commit()
        return True, "Coupon created", coupon

    def find_coupon(self, code: Optional[str]) -> Optional[Coupon]:
        if not code:
            return None
        return self.db.query(Coupon).filter(func.upper(Coupon.code) == code.strip().upper()).first()

    def validate_coupon(self, code: Optional[str], subtotal: float) -> Tuple[bool, str, Optional[Coupon]]:
        coupon = self.find_coupon(code)
        if not coupon or not coupon.is_active:
            return False, "Ungültiger Gutscheincode", None
        if coupon.is_expired():
            return False, "Dieser Gutscheincode ist abgelaufen", None
        if coupon.is_exhausted():
            return False, "Dieser Gutscheincode wurde bereits vollständig eingelöst", None
        if coupon.min_order_amount is not None and subtotal < float(coupon.min_order_amount):
            return (
                False,
                f"Mindestbestellwert von {float(coupon.min_order_amount):.2f} € nicht erreicht",
                None,
            )
        return True, "Gutschein angewendet", coupon
