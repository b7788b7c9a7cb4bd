"""Data access layer for stockledger.

This module provides low-level helpers that read from and write to the local
SQLite store through SQLAlchemy. Business logic belongs elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Store lifecycle: opening the database, enabling foreign keys, and handing
   out transactional sessions.
3. Table operations: inserting, updating, deleting, and aggregating rows of
   the ORM models defined in :mod:`stockledger.models`.
4. Row conversion: turning ORM objects into immutable dataclasses and those
   dataclasses into worksheet rows for workbook exports.
"""


from __future__ import annotations

import configparser
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook
from sqlalchemy import create_engine, delete, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from . import log
from .constants import InstallmentStatus, MovementType, PaymentMethod, SaleStatus
from .models import Base, Customer, Installment, Product, Sale, SaleItem, StockMovement


CONFIG_FILE_NAME = "config.ini"

EXPORT_SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    "Products": [
        "ProductID",
        "Name",
        "SalePrice",
        "MinimumStock",
        "CurrentStock",
        "IsActive",
    ],
    "Sales": [
        "SaleID",
        "CustomerID",
        "SaleDate",
        "Subtotal",
        "Discount",
        "Total",
        "PaymentMethod",
        "Installments",
        "Status",
        "Notes",
    ],
    "Installments": [
        "InstallmentID",
        "SaleID",
        "Number",
        "Amount",
        "DueDate",
        "PaymentDate",
        "PaidAmount",
        "Status",
    ],
    "StockMovements": [
        "MovementID",
        "SaleID",
        "ProductID",
        "Type",
        "Quantity",
        "UnitValue",
        "TotalValue",
        "Notes",
    ],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    default_payment_method: PaymentMethod
    echo: bool = False


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``products`` table."""

    product_id: int
    name: str
    sale_price: int
    minimum_stock: int
    is_active: bool
    barcode: Optional[str] = None
    reference: Optional[str] = None
    description: Optional[str] = None
    cost_price: Optional[int] = None
    deleted_at: Optional[datetime] = None


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of a row from the ``customers`` table."""

    customer_id: int
    name: str
    document: Optional[str]
    email: Optional[str]
    phone: Optional[str]
    notes: Optional[str]
    is_active: bool


@dataclass(frozen=True)
class StockMovementRow:
    """In-memory view of a row from the ``stock_movements`` table."""

    movement_id: int
    sale_id: Optional[int]
    product_id: int
    movement_type: MovementType
    quantity: int
    unit_value: int
    total_value: int
    notes: Optional[str]
    deleted_at: Optional[datetime] = None


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``sales`` table."""

    sale_id: int
    customer_id: Optional[int]
    subtotal: int
    discount: int
    total: int
    payment_method: PaymentMethod
    installments: int
    status: SaleStatus
    sale_date: datetime
    notes: Optional[str]
    deleted_at: Optional[datetime] = None


@dataclass(frozen=True)
class SaleItemRow:
    """In-memory view of a row from the ``sale_items`` table."""

    item_id: int
    sale_id: int
    product_id: int
    quantity: int
    unit_price: int
    subtotal: int


@dataclass(frozen=True)
class InstallmentRow:
    """In-memory view of a row from the ``installments`` table."""

    installment_id: int
    sale_id: int
    number: int
    amount: Decimal
    due_date: date
    payment_date: Optional[date]
    paid_amount: Optional[Decimal]
    status: InstallmentStatus
    notes: Optional[str] = None


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. When no explicit path is given the function
    walks up from the current working directory toward the filesystem root
    looking for a file named ``CONFIG_FILE_NAME``. The first match that exists
    on disk is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for candidate_dir in (current, *current.parents):
        candidate = candidate_dir / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are expanded against ``base_path`` when
    provided, or against the current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing, or if
            the default payment method is not a known :class:`PaymentMethod`.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        payment_raw = parser.get("Defaults", "PaymentMethod")
        echo = parser.getboolean("Defaults", "Echo", fallback=False)
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    try:
        default_payment_method = PaymentMethod(payment_raw.strip().lower())
    except ValueError as exc:
        raise KeyError(f"Unknown default payment method: {payment_raw}") from exc

    data_file_path = Path(data_file_raw).expanduser()
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        default_payment_method=default_payment_method,
        echo=echo,
    )


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()


def create_store_engine(data_file: Path, *, echo: bool = False) -> Engine:
    """Build a SQLAlchemy engine bound to the SQLite file at ``data_file``.

    Every pooled connection gets ``PRAGMA foreign_keys = ON`` so that ledger
    and installment rows can never reference a missing sale or product.
    """

    data_file = Path(data_file).expanduser().resolve()
    engine = create_engine(f"sqlite:///{data_file}", echo=echo)
    event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def create_schema(engine: Engine) -> None:
    """Create every table known to :class:`stockledger.models.Base`."""

    Base.metadata.create_all(engine)


def open_database(data_file: Path, *, echo: bool = False) -> tuple[Engine, sessionmaker[Session]]:
    """Open an existing store and return its engine and session factory.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution. Stores are created explicitly through
            :mod:`stockledger.setup_database`, never implicitly here.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Database not found: {data_file}")

    engine = create_store_engine(data_file, echo=echo)
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    return engine, factory


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations.

    On normal exit the session is committed and closed. On any exception the
    session is rolled back, closed, and the exception is re-raised unchanged.
    """

    session = factory()
    log.debug("Transaction started")
    try:
        yield session
        session.commit()
        log.debug("Transaction committed")
    except Exception:
        session.rollback()
        log.warning("Transaction rolled back", exc_info=True)
        raise
    finally:
        session.close()


def apply_field_values(record: Base, field_values: Mapping[str, Any]) -> None:
    """Update selected columns of an ORM object in place.

    Raises:
        KeyError: If any requested field is not a mapped column of ``record``.
    """

    columns = set(record.__table__.columns.keys())
    for field, value in field_values.items():
        if field not in columns:
            raise KeyError(f"Unknown {record.__tablename__} field: {field}")
        setattr(record, field, value)


# ---------------------------------------------------------------------------
# Products and customers
# ---------------------------------------------------------------------------


def get_product(session: Session, product_id: int, *, include_deleted: bool = False) -> Optional[Product]:
    product = session.get(Product, product_id)
    if product is None or (product.deleted_at is not None and not include_deleted):
        return None
    return product


def iter_products(session: Session, *, include_inactive: bool = False) -> list[Product]:
    """Return non-deleted products ordered by name."""

    query = select(Product).where(Product.deleted_at.is_(None))
    if not include_inactive:
        query = query.where(Product.active.is_(True))
    return list(session.scalars(query.order_by(Product.name, Product.id)))


def insert_product(session: Session, **field_values: Any) -> Product:
    product = Product(**field_values)
    session.add(product)
    session.flush()
    return product


def count_products(session: Session) -> int:
    return session.scalar(select(func.count(Product.id)).where(Product.deleted_at.is_(None))) or 0


def get_customer(session: Session, customer_id: int) -> Optional[Customer]:
    customer = session.get(Customer, customer_id)
    if customer is None or customer.deleted_at is not None:
        return None
    return customer


def iter_customers(session: Session) -> list[Customer]:
    query = select(Customer).where(Customer.deleted_at.is_(None)).order_by(Customer.name, Customer.id)
    return list(session.scalars(query))


def insert_customer(session: Session, **field_values: Any) -> Customer:
    customer = Customer(**field_values)
    session.add(customer)
    session.flush()
    return customer


def count_customers(session: Session) -> int:
    return session.scalar(select(func.count(Customer.id)).where(Customer.deleted_at.is_(None))) or 0


# ---------------------------------------------------------------------------
# Stock ledger
# ---------------------------------------------------------------------------


def insert_stock_movement(
    session: Session,
    *,
    product_id: int,
    movement_type: MovementType,
    quantity: int,
    unit_value: int,
    total_value: int,
    sale_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> StockMovement:
    """Append one ledger row. ``quantity`` must already carry its sign."""

    movement = StockMovement(
        sale_id=sale_id,
        product_id=product_id,
        type=movement_type,
        quantity=quantity,
        unit_value=unit_value,
        total_value=total_value,
        notes=notes,
    )
    session.add(movement)
    session.flush()
    return movement


def delete_stock_movements_for_sale(session: Session, sale_id: int) -> int:
    """Physically delete every ledger row tied to ``sale_id``.

    Returns:
        int: Number of rows removed.
    """

    result = session.execute(
        delete(StockMovement).where(StockMovement.sale_id == sale_id)
    )
    return result.rowcount or 0


def find_opening_balance(session: Session, product_id: int) -> Optional[StockMovement]:
    query = (
        select(StockMovement)
        .where(StockMovement.product_id == product_id, StockMovement.type == MovementType.STOCK_IN)
        .order_by(StockMovement.id)
        .limit(1)
    )
    return session.scalars(query).first()


def sum_stock_quantity(session: Session, product_id: int) -> int:
    """Aggregate the signed quantity of non-deleted ledger rows for a product."""

    query = select(func.coalesce(func.sum(StockMovement.quantity), 0)).where(
        StockMovement.product_id == product_id,
        StockMovement.deleted_at.is_(None),
    )
    return int(session.scalar(query) or 0)


def stock_levels(session: Session) -> dict[int, int]:
    """Aggregate signed quantities for every product that has ledger rows."""

    query = (
        select(StockMovement.product_id, func.sum(StockMovement.quantity))
        .where(StockMovement.deleted_at.is_(None))
        .group_by(StockMovement.product_id)
    )
    return {product_id: int(total or 0) for product_id, total in session.execute(query)}


def iter_stock_movements(
    session: Session,
    *,
    product_id: Optional[int] = None,
    sale_id: Optional[int] = None,
) -> list[StockMovement]:
    query = select(StockMovement).where(StockMovement.deleted_at.is_(None))
    if product_id is not None:
        query = query.where(StockMovement.product_id == product_id)
    if sale_id is not None:
        query = query.where(StockMovement.sale_id == sale_id)
    return list(session.scalars(query.order_by(StockMovement.id)))


# ---------------------------------------------------------------------------
# Sales, items, installments
# ---------------------------------------------------------------------------


def insert_sale(session: Session, **field_values: Any) -> Sale:
    sale = Sale(**field_values)
    session.add(sale)
    session.flush()
    return sale


def get_sale(session: Session, sale_id: int, *, include_deleted: bool = False) -> Optional[Sale]:
    sale = session.get(Sale, sale_id)
    if sale is None or (sale.deleted_at is not None and not include_deleted):
        return None
    return sale


def iter_sales(session: Session) -> list[Sale]:
    """Return non-deleted sales, newest first."""

    query = select(Sale).where(Sale.deleted_at.is_(None)).order_by(Sale.sale_date.desc(), Sale.id.desc())
    return list(session.scalars(query))


def count_sales_between(session: Session, start: datetime, end: datetime) -> int:
    query = select(func.count(Sale.id)).where(
        Sale.deleted_at.is_(None),
        Sale.sale_date >= start,
        Sale.sale_date < end,
    )
    return session.scalar(query) or 0


def insert_sale_item(
    session: Session,
    *,
    sale_id: int,
    product_id: int,
    quantity: int,
    unit_price: int,
    subtotal: int,
) -> SaleItem:
    item = SaleItem(
        sale_id=sale_id,
        product_id=product_id,
        quantity=quantity,
        unit_price=unit_price,
        subtotal=subtotal,
    )
    session.add(item)
    session.flush()
    return item


def insert_installments(
    session: Session,
    sale_id: int,
    schedule: Sequence[tuple[int, Decimal, date]],
) -> list[Installment]:
    """Insert one pending installment per ``(number, amount, due_date)`` entry."""

    rows = [
        Installment(
            sale_id=sale_id,
            number=number,
            amount=amount,
            due_date=due_date,
            status=InstallmentStatus.PENDING,
        )
        for number, amount, due_date in schedule
    ]
    session.add_all(rows)
    session.flush()
    return rows


def get_installment(session: Session, installment_id: int) -> Optional[Installment]:
    return session.get(Installment, installment_id)


def iter_installments(
    session: Session,
    sale_id: int,
    *,
    status: Optional[InstallmentStatus] = None,
) -> list[Installment]:
    query = select(Installment).where(Installment.sale_id == sale_id)
    if status is not None:
        query = query.where(Installment.status == status)
    return list(session.scalars(query.order_by(Installment.number)))


def count_installments(session: Session, sale_id: int, *, status: Optional[InstallmentStatus] = None) -> int:
    query = select(func.count(Installment.id)).where(Installment.sale_id == sale_id)
    if status is not None:
        query = query.where(Installment.status == status)
    return session.scalar(query) or 0


def delete_installments_for_sale(session: Session, sale_id: int) -> int:
    result = session.execute(
        delete(Installment).where(Installment.sale_id == sale_id)
    )
    return result.rowcount or 0


def sum_revenue_for_day(session: Session, day: date) -> Decimal:
    """Sum installments completed with ``payment_date == day`` on live sales."""

    query = (
        select(func.coalesce(func.sum(Installment.amount), 0))
        .join(Sale, Sale.id == Installment.sale_id)
        .where(
            Installment.status == InstallmentStatus.COMPLETED,
            Installment.payment_date == day,
            Sale.deleted_at.is_(None),
        )
    )
    return Decimal(str(session.scalar(query) or 0))


def day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------


def deserialize_product(record: Product) -> ProductRow:
    return ProductRow(
        product_id=record.id,
        name=record.name,
        sale_price=int(record.sale_price or 0),
        minimum_stock=int(record.minimum_stock or 0),
        is_active=bool(record.active),
        barcode=record.barcode,
        reference=record.reference,
        description=record.description,
        cost_price=record.cost_price,
        deleted_at=record.deleted_at,
    )


def deserialize_customer(record: Customer) -> CustomerRow:
    return CustomerRow(
        customer_id=record.id,
        name=record.name,
        document=record.document,
        email=record.email,
        phone=record.phone,
        notes=record.notes,
        is_active=bool(record.active),
    )


def deserialize_stock_movement(record: StockMovement) -> StockMovementRow:
    return StockMovementRow(
        movement_id=record.id,
        sale_id=record.sale_id,
        product_id=record.product_id,
        movement_type=MovementType(record.type),
        quantity=int(record.quantity),
        unit_value=int(record.unit_value),
        total_value=int(record.total_value),
        notes=record.notes,
        deleted_at=record.deleted_at,
    )


def deserialize_sale(record: Sale) -> SaleRow:
    return SaleRow(
        sale_id=record.id,
        customer_id=record.customer_id,
        subtotal=int(record.subtotal),
        discount=int(record.discount),
        total=int(record.total),
        payment_method=PaymentMethod(record.payment_method),
        installments=int(record.installments),
        status=SaleStatus(record.status),
        sale_date=record.sale_date,
        notes=record.notes,
        deleted_at=record.deleted_at,
    )


def deserialize_sale_item(record: SaleItem) -> SaleItemRow:
    return SaleItemRow(
        item_id=record.id,
        sale_id=record.sale_id,
        product_id=record.product_id,
        quantity=int(record.quantity),
        unit_price=int(record.unit_price),
        subtotal=int(record.subtotal),
    )


def deserialize_installment(record: Installment) -> InstallmentRow:
    """Convert an installment ORM object, normalizing amounts to two decimals."""

    amount = Decimal(str(record.amount)).quantize(Decimal("0.01"))
    paid_amount = (
        Decimal(str(record.paid_amount)).quantize(Decimal("0.01")) if record.paid_amount is not None else None
    )
    return InstallmentRow(
        installment_id=record.id,
        sale_id=record.sale_id,
        number=int(record.number),
        amount=amount,
        due_date=record.due_date,
        payment_date=record.payment_date,
        paid_amount=paid_amount,
        status=InstallmentStatus(record.status),
        notes=record.notes,
    )


def serialize_product(record: ProductRow, *, current_stock: int) -> list[object]:
    """Convert a product row into the ``Products`` export column ordering."""

    return [
        record.product_id,
        record.name,
        record.sale_price,
        record.minimum_stock,
        current_stock,
        record.is_active,
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    return [
        record.sale_id,
        record.customer_id,
        record.sale_date.isoformat(),
        record.subtotal,
        record.discount,
        record.total,
        record.payment_method.value,
        record.installments,
        record.status.value,
        record.notes,
    ]


def serialize_installment(record: InstallmentRow) -> list[object]:
    """Convert an installment row, keeping :class:`~decimal.Decimal` amounts."""

    return [
        record.installment_id,
        record.sale_id,
        record.number,
        record.amount,
        record.due_date.isoformat(),
        record.payment_date.isoformat() if record.payment_date else None,
        record.paid_amount,
        record.status.value,
    ]


def serialize_stock_movement(record: StockMovementRow) -> list[object]:
    return [
        record.movement_id,
        record.sale_id,
        record.product_id,
        record.movement_type.value,
        record.quantity,
        record.unit_value,
        record.total_value,
        record.notes,
    ]


# ---------------------------------------------------------------------------
# Workbook export
# ---------------------------------------------------------------------------


def build_workbook(
    sheet_rows: Mapping[str, Sequence[Sequence[object]]],
    *,
    title: Optional[str] = None,
) -> Workbook:
    """Create a workbook with one bold-headed sheet per export table.

    Sheets are created in :data:`EXPORT_SHEET_COLUMNS` order; tables missing
    from ``sheet_rows`` are written with their header only. ``title`` is
    stored in the document properties.
    """

    workbook = openpyxl.Workbook()
    if title:
        workbook.properties.title = title
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)
    for sheet_name, columns in EXPORT_SHEET_COLUMNS.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font
        for row in sheet_rows.get(sheet_name, ()):
            worksheet.append(list(row))
    return workbook


def save_workbook(workbook: Workbook, destination: Path) -> Path:
    """Persist the workbook at ``destination``, creating parent folders.

    Returns:
        Path: The resolved destination.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)
    return dest
