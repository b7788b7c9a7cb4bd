"""SQLAlchemy table definitions for the stockledger store.

Only column shapes and relational constraints live here. Signs, totals and
status transitions are decided by :mod:`stockledger.core_logic`; the DAL in
:mod:`stockledger.data_manager` is the only module that queries these
classes directly.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .constants import InstallmentStatus, MovementType, PaymentMethod, SaleStatus


def _enum_values(enum_cls: type[PyEnum]) -> list[str]:
    return [member.value for member in enum_cls]


def _enum_column(enum_cls: type[PyEnum], name: str) -> Enum:
    """Store enums by their lowercase value so the tables stay readable."""

    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        values_callable=_enum_values,
        validate_strings=True,
    )


class Base(DeclarativeBase):
    """Declarative base shared by every stockledger table."""


class Product(Base):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    barcode: Mapped[Optional[str]] = mapped_column(String(64))
    reference: Mapped[Optional[str]] = mapped_column(String(64))
    description: Mapped[Optional[str]] = mapped_column(Text)
    cost_price: Mapped[Optional[int]] = mapped_column(Integer)
    sale_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    minimum_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("sale_price >= 0", name="ck_products_sale_price"),
        CheckConstraint("minimum_stock >= 0", name="ck_products_minimum_stock"),
    )

    def __repr__(self) -> str:
        return f"<Product(id={self.id}, name={self.name!r})>"


class Customer(Base):
    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    document: Mapped[Optional[str]] = mapped_column(String(32))
    email: Mapped[Optional[str]] = mapped_column(String(200), unique=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<Customer(id={self.id}, name={self.name!r})>"


class StockMovement(Base):
    __tablename__ = "stock_movements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sale_id: Mapped[Optional[int]] = mapped_column(ForeignKey("sales.id"), index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), nullable=False, index=True)
    type: Mapped[MovementType] = mapped_column(_enum_column(MovementType, "movement_type"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, server_default=func.now())

    def __repr__(self) -> str:
        return (
            f"<StockMovement(id={self.id}, product_id={self.product_id}, "
            f"type={self.type.value}, quantity={self.quantity})>"
        )


class Sale(Base):
    __tablename__ = "sales"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[Optional[int]] = mapped_column(ForeignKey("customers.id"))
    subtotal: Mapped[int] = mapped_column(Integer, nullable=False)
    discount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(
        _enum_column(PaymentMethod, "payment_method"), nullable=False
    )
    installments: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[SaleStatus] = mapped_column(
        _enum_column(SaleStatus, "sale_status"), nullable=False, default=SaleStatus.PENDING
    )
    sale_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    items: Mapped[List["SaleItem"]] = relationship(back_populates="sale", order_by="SaleItem.id")
    installment_rows: Mapped[List["Installment"]] = relationship(
        back_populates="sale", order_by="Installment.number"
    )

    __table_args__ = (
        CheckConstraint("subtotal >= 0", name="ck_sales_subtotal"),
        CheckConstraint("discount >= 0", name="ck_sales_discount"),
        CheckConstraint("total >= 0", name="ck_sales_total"),
        CheckConstraint("installments >= 1", name="ck_sales_installments"),
    )

    def __repr__(self) -> str:
        return f"<Sale(id={self.id}, total={self.total}, status={self.status.value})>"


class SaleItem(Base):
    __tablename__ = "sale_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sale_id: Mapped[int] = mapped_column(ForeignKey("sales.id"), nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)
    subtotal: Mapped[int] = mapped_column(Integer, nullable=False)

    sale: Mapped[Sale] = relationship(back_populates="items")

    __table_args__ = (CheckConstraint("quantity > 0", name="ck_sale_items_quantity"),)

    def __repr__(self) -> str:
        return f"<SaleItem(id={self.id}, product_id={self.product_id}, quantity={self.quantity})>"


class Installment(Base):
    __tablename__ = "installments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sale_id: Mapped[int] = mapped_column(ForeignKey("sales.id"), nullable=False, index=True)
    number: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_date: Mapped[Optional[date]] = mapped_column(Date)
    paid_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2))
    status: Mapped[InstallmentStatus] = mapped_column(
        _enum_column(InstallmentStatus, "installment_status"),
        nullable=False,
        default=InstallmentStatus.PENDING,
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)

    sale: Mapped[Sale] = relationship(back_populates="installment_rows")

    __table_args__ = (
        UniqueConstraint("sale_id", "number", name="uq_installments_sale_number"),
        CheckConstraint("number >= 1", name="ck_installments_number"),
    )

    def __repr__(self) -> str:
        return f"<Installment(id={self.id}, sale_id={self.sale_id}, number={self.number})>"


__all__ = [
    "Base",
    "Product",
    "Customer",
    "StockMovement",
    "Sale",
    "SaleItem",
    "Installment",
]
