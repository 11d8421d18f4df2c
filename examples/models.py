"""Minimal schema for sqla-autocrud examples."""

from __future__ import annotations

import decimal

import sqlalchemy as sa
from sqlalchemy import orm


class Base(orm.DeclarativeBase):
    pass


class Customer(Base):
    __tablename__ = "customers"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(100))
    tier: orm.Mapped[str] = orm.mapped_column(sa.String(20), default="basic")


class Order(Base):
    __tablename__ = "orders"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    customer_id: orm.Mapped[int] = orm.mapped_column(sa.ForeignKey("customers.id"))
    status: orm.Mapped[str] = orm.mapped_column(sa.String(20))
    total: orm.Mapped[decimal.Decimal] = orm.mapped_column(sa.Numeric(10, 2))


class OrderItem(Base):
    __tablename__ = "order_items"

    order_id: orm.Mapped[int] = orm.mapped_column(sa.ForeignKey("orders.id"), primary_key=True)
    line_no: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    sku: orm.Mapped[str] = orm.mapped_column(sa.String(40))

