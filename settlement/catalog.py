"""Catalog and cart access used by the order engine; stock changes join the caller's transaction."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update

from settlement.models import Cart, Product, Seller


@dataclass(frozen=True)
class ProductSnapshot:
    product_id: int
    name: str
    status: str
    price: int
    sale_price: Optional[int]
    stock: int
    stock_management: str
    ownership_type: str
    seller_id: Optional[int]
    shipping_free: bool
    shipping_fee: int
    commission_rate_override: Optional[Decimal]

    @property
    def unit_price(self) -> int:
        return self.sale_price if self.sale_price else self.price

    @property
    def tracks_stock(self) -> bool:
        return self.stock_management == "track"


class CatalogProvider(ABC):
    @abstractmethod
    def get_product_snapshot(self, product_id: int) -> Optional[ProductSnapshot]:
        """Current price, stock, ownership and commission override, or None."""

    @abstractmethod
    def decrement_stock(self, product_id: int, quantity: int) -> Optional[int]:
        """Atomically take quantity if available. Returns remaining stock, None if short."""

    @abstractmethod
    def restore_stock(self, product_id: int, quantity: int) -> Optional[int]:
        """Give quantity back. Returns the new stock, None for unknown products."""

    @abstractmethod
    def set_product_status(self, product_id: int, status: str) -> None:
        pass

    @abstractmethod
    def get_seller_commission_rate(self, seller_id: int) -> Optional[Decimal]:
        pass


class SqlCatalog(CatalogProvider):
    def __init__(self, db):
        self.db = db

    def get_product_snapshot(self, product_id):
        product = self.db.get(Product, product_id)
        if product is None:
            return None
        return ProductSnapshot(
            product_id=product.id,
            name=product.name,
            status=product.status,
            price=product.base_price,
            sale_price=product.sale_price,
            stock=product.total_stock or 0,
            stock_management=product.stock_management,
            ownership_type=product.ownership_type,
            seller_id=product.seller_id,
            shipping_free=bool(product.shipping_free),
            shipping_fee=product.shipping_fee or 0,
            commission_rate_override=product.category.commission_rate if product.category else None,
        )

    def decrement_stock(self, product_id, quantity):
        result = self.db.execute(
            update(Product)
            .where(Product.id == product_id, Product.total_stock >= quantity)
            .values(total_stock=Product.total_stock - quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return self._stock_of(product_id)

    def restore_stock(self, product_id, quantity):
        result = self.db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(total_stock=Product.total_stock + quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return self._stock_of(product_id)

    def set_product_status(self, product_id, status):
        self.db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(status=status)
            .execution_options(synchronize_session=False)
        )

    def get_seller_commission_rate(self, seller_id):
        seller = self.db.get(Seller, seller_id)
        return seller.commission_rate if seller else None

    def _stock_of(self, product_id):
        return self.db.execute(select(Product.total_stock).where(Product.id == product_id)).scalar_one()


class SqlCartStore:
    def __init__(self, db):
        self.db = db

    def get_cart(self, user_id: str, cart_id: int) -> Optional[Cart]:
        return self.db.execute(
            select(Cart).where(Cart.id == cart_id, Cart.user_id == user_id)
        ).scalar_one_or_none()

    def clear(self, cart: Cart) -> None:
        cart.items.clear()
