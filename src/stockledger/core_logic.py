"""Business logic layer for stockledger.

This module contains the rule engine that keeps the stock ledger, sale
totals, and installment schedules mutually consistent. It consumes the Data
Access Layer (DAL) for all I/O and wraps every multi-row write in a single
session transaction so partial application is never observable.
"""

from __future__ import annotations

from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime, time
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from dateutil.relativedelta import relativedelta
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from . import data_manager, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    INSTALLMENT_QUANTUM,
    MOVEMENT_SIGNS,
    InstallmentStatus,
    MovementType,
    PaymentMethod,
    SaleStatus,
)


class LedgerError(Exception):
    """Base class for every error raised by the stockledger engine."""


class ValidationError(LedgerError, ValueError):
    """Raised when input is malformed; no write has been attempted."""


class InsufficientStockError(ValidationError):
    """Raised when a sale asks for more units than the ledger holds."""


class NotFound(LedgerError):
    """Raised when a referenced sale, product, customer, or installment is unknown."""


class OperationFailed(LedgerError):
    """Raised when the store fails inside a transaction that was rolled back.

    Attributes:
        kind (str): Name of the engine operation that failed.
        cause (BaseException | None): Original store exception, kept for
            diagnostics only.
    """

    def __init__(self, kind: str, cause: Optional[BaseException] = None) -> None:
        message = f"{kind} failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.kind = kind
        self.cause = cause


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and store handles used by the BLL."""

    settings: data_manager.ConfigSettings
    engine: Engine = field(repr=False)
    session_factory: sessionmaker[Session] = field(repr=False, compare=False)


@dataclass(frozen=True)
class ProductCommand:
    """User intent for creating or editing a product and its opening balance."""

    name: str
    sale_price: int
    initial_stock: int = 0
    minimum_stock: int = 0
    cost_price: Optional[int] = None
    barcode: Optional[str] = None
    reference: Optional[str] = None
    description: Optional[str] = None
    active: bool = True


@dataclass(frozen=True)
class CustomerCommand:
    """User intent for registering a customer."""

    name: str
    document: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class StockMovementCommand:
    """User intent for appending one ledger row.

    ``quantity`` and ``unit_value`` are non-negative magnitudes; the stored
    sign comes from ``movement_type`` (and ``outbound`` for adjustments).
    """

    product_id: int
    movement_type: MovementType
    quantity: int
    unit_value: int = 0
    total_value: Optional[int] = None
    sale_id: Optional[int] = None
    notes: Optional[str] = None
    outbound: bool = False


@dataclass(frozen=True)
class SaleItemCommand:
    """One requested line of a sale."""

    product_id: int
    quantity: int
    unit_price: int

    @property
    def subtotal(self) -> int:
        return self.quantity * self.unit_price


@dataclass(frozen=True)
class SaleCommand:
    """User intent for creating a sale with its installment schedule.

    ``sale_date`` accepts a datetime or a plain date and defaults to now;
    ``first_due_date`` defaults to the calendar day of the sale.
    """

    items: Sequence[SaleItemCommand]
    payment_method: PaymentMethod
    customer_id: Optional[int] = None
    discount: int = 0
    installment_count: int = 1
    sale_date: Optional[datetime] = None
    first_due_date: Optional[date] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class SaleUpdateCommand:
    """User intent for editing an existing sale."""

    sale_id: int
    status: Optional[SaleStatus] = None
    notes: Optional[str] = None
    first_due_date: Optional[date] = None


@dataclass(frozen=True)
class InstallmentStatusCommand:
    """User intent for settling or reopening a single installment."""

    installment_id: int
    status: InstallmentStatus
    payment_date: Optional[date] = None


@dataclass(frozen=True)
class SaleDetail:
    """A sale header together with its line items and installments."""

    sale: data_manager.SaleRow
    items: List[data_manager.SaleItemRow]
    installments: List[data_manager.InstallmentRow]

    @property
    def installment_total(self) -> Decimal:
        return sum((row.amount for row in self.installments), Decimal("0.00"))


@dataclass(frozen=True)
class DashboardSummary:
    """Headline figures for a single business day."""

    day: date
    total_products: int
    sales_today: int
    total_customers: int
    revenue_today: Decimal


SETTLEMENT_STATUSES: tuple[InstallmentStatus, ...] = (
    InstallmentStatus.PENDING,
    InstallmentStatus.COMPLETED,
)

SALE_UPDATE_STATUSES: tuple[SaleStatus, ...] = (
    SaleStatus.COMPLETED,
    SaleStatus.CANCELLED,
)


def _resolve_timestamp(candidate: Optional[date]) -> datetime:
    """Return ``candidate`` as a naive UTC datetime, defaulting to now.

    Aware values are converted to UTC, plain dates become midnight, and naive
    datetimes are taken to be UTC already. SQLite keeps no offset, so every
    stored timestamp is naive UTC.
    """

    if candidate is None:
        candidate = datetime.now(UTC)
    if type(candidate) is date:
        return datetime.combine(candidate, time.min)
    if candidate.tzinfo is not None:
        candidate = candidate.astimezone(UTC).replace(tzinfo=None)
    return candidate


def _resolve_today(candidate: Optional[date]) -> date:
    return candidate if candidate is not None else datetime.now(UTC).date()


@contextmanager
def _store_operation(context: RuntimeContext, kind: str) -> Iterator[Session]:
    """Run a block inside one transaction, translating store failures.

    Engine errors raised by the block propagate unchanged after rollback. Any
    :class:`sqlalchemy.exc.SQLAlchemyError` is logged and re-raised as
    :class:`OperationFailed` with the original exception chained.
    """

    try:
        with data_manager.session_scope(context.session_factory) as session:
            yield session
    except SQLAlchemyError as exc:
        log.error("Store failure during %s: %s", kind, exc)
        raise OperationFailed(kind, exc) from exc


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the store for the BLL.

    The helper forms the foundation for all business logic calls by resolving
    ``config.ini``, parsing settings, and opening the SQLite database that
    holds the ledger. The resulting :class:`RuntimeContext` bundles the
    immutable settings with the engine and a session factory.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or database cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    engine, session_factory = data_manager.open_database(settings.data_file, echo=settings.echo)
    log.info("Loaded runtime context for database '%s'", settings.data_file)
    return RuntimeContext(settings=settings, engine=engine, session_factory=session_factory)


def close_context(context: RuntimeContext) -> None:
    """Release pooled connections held by the context's engine."""

    context.engine.dispose()
    log.debug("Disposed engine for '%s'", context.settings.data_file)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate store compatibility before mutating state.

    Args:
        context (RuntimeContext): Runtime context containing the resolved
            settings.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Database schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Database schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValidationError: If ``quantity`` is zero or negative.
    """
    if quantity <= 0:
        log.warning("Quantity validation failed: %s", quantity)
        raise ValidationError("Quantity must be greater than zero")


def require_nonnegative_money(amount: int) -> None:
    """Validate that a monetary value in minor units is nonnegative.

    Raises:
        ValidationError: If ``amount`` is less than zero.
    """
    if amount < 0:
        log.warning("Monetary value validation failed: %s", amount)
        raise ValidationError("Amount must be zero or positive")


def validate_stock_movement(command: StockMovementCommand) -> StockMovementCommand:
    """Check a ledger entry before any write happens.

    Args:
        command (StockMovementCommand): Entry to validate. ``movement_type``
            may be a :class:`MovementType` or its string value.

    Returns:
        StockMovementCommand: The entry with ``movement_type`` coerced to
            :class:`MovementType`.

    Raises:
        ValidationError: If the product reference is missing, the kind is not
            a known movement type, either magnitude is negative, both
            magnitudes are zero, or ``outbound`` is set on a non-adjustment.
    """
    if command.product_id is None:
        log.warning("Stock movement rejected: missing product reference")
        raise ValidationError("Stock movement requires a product")
    command = replace(command, movement_type=_coerce_movement_type(command.movement_type))
    if command.quantity < 0 or command.unit_value < 0:
        log.warning(
            "Stock movement rejected: negative magnitude (quantity=%s, unit_value=%s)",
            command.quantity,
            command.unit_value,
        )
        raise ValidationError("Quantity and unit value must be zero or positive")
    if command.quantity == 0 and command.unit_value == 0:
        log.warning("Stock movement rejected: quantity and unit value are both zero")
        raise ValidationError("Quantity and unit value cannot both be zero")
    if command.outbound and command.movement_type is not MovementType.ADJUSTMENT:
        log.warning("Stock movement rejected: outbound flag on %s", command.movement_type.value)
        raise ValidationError("Only adjustments can be flagged outbound")
    return command


def signed_quantity(command: StockMovementCommand) -> int:
    """Apply the direction implied by the movement kind to the magnitude."""

    sign = MOVEMENT_SIGNS[command.movement_type]
    if command.movement_type is MovementType.ADJUSTMENT and command.outbound:
        sign = -1
    return sign * command.quantity


def validate_sale_command(command: SaleCommand) -> SaleCommand:
    """Reject malformed sale requests before the store is touched.

    Returns:
        SaleCommand: The request with ``payment_method`` coerced to
            :class:`PaymentMethod`.

    Raises:
        ValidationError: If the item list is empty, a quantity is not
            positive, a unit price or the discount is negative, the
            installment count is below one, the payment method is unknown, or
            the resulting total is not positive.
    """
    if not command.items:
        log.warning("Sale rejected: no items")
        raise ValidationError("A sale needs at least one item")
    for item in command.items:
        require_positive_quantity(item.quantity)
        require_nonnegative_money(item.unit_price)
    require_nonnegative_money(command.discount)
    if command.installment_count < 1:
        log.warning("Sale rejected: installment count %s", command.installment_count)
        raise ValidationError("Installment count must be at least 1")
    command = replace(command, payment_method=_coerce_payment_method(command.payment_method))
    _, total = sale_totals(command.items, command.discount)
    if total <= 0:
        log.warning("Sale rejected: total is %s", total)
        raise ValidationError("Sale total must be greater than zero")
    return command


def sale_totals(items: Sequence[SaleItemCommand], discount: int) -> tuple[int, int]:
    """Return ``(subtotal, total)`` where ``total = max(0, subtotal - discount)``."""

    subtotal = sum(item.subtotal for item in items)
    return subtotal, max(0, subtotal - discount)


def build_installment_schedule(total: int, count: int, first_due_date: date) -> List[tuple[int, Decimal, date]]:
    """Split ``total`` into ``count`` equal installments.

    Each installment carries ``round2(total / count)`` rounded half-up, so the
    schedule can fall short of ``total`` by a few hundredths (10000 over three
    installments sums to 9999.99). Due dates advance by calendar months from
    ``first_due_date``; month ends clamp (Jan 31 is followed by Feb 28/29).

    Returns:
        list[tuple[int, Decimal, date]]: ``(number, amount, due_date)`` tuples
            numbered from 1.
    """
    amount = (Decimal(total) / Decimal(count)).quantize(INSTALLMENT_QUANTUM, rounding=ROUND_HALF_UP)
    return [(number, amount, first_due_date + relativedelta(months=number - 1)) for number in range(1, count + 1)]


def reconcile_sale_status(current: SaleStatus, pending_count: int, new_status: InstallmentStatus) -> SaleStatus:
    """Decide the sale status after one installment changed.

    Only the boundary of the pending set moves the sale: exhausting it by a
    completion marks the sale completed, and reopening an installment while
    others are pending marks it pending. Every other combination leaves the
    status untouched.
    """
    if pending_count == 0 and new_status is InstallmentStatus.COMPLETED:
        return SaleStatus.COMPLETED
    if pending_count > 0 and new_status is InstallmentStatus.PENDING:
        return SaleStatus.PENDING
    return current


def _coerce_installment_status(value: object) -> InstallmentStatus:
    try:
        status = InstallmentStatus(value)
    except ValueError as exc:
        log.warning("Installment status rejected: %r", value)
        raise ValidationError(f"Unsupported installment status: {value}") from exc
    if status not in SETTLEMENT_STATUSES:
        log.warning("Installment status rejected: %s", status.value)
        raise ValidationError(f"Installments can only be set to pending or completed, not {status.value}")
    return status


def _coerce_payment_method(value: object) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError as exc:
        log.warning("Sale rejected: unsupported payment method %r", value)
        raise ValidationError(f"Unsupported payment method: {value}") from exc


def _coerce_movement_type(value: object) -> MovementType:
    try:
        return MovementType(value)
    except ValueError as exc:
        log.warning("Stock movement rejected: unknown kind %r", value)
        raise ValidationError(f"Unsupported movement type: {value}") from exc


def _coerce_sale_status(value: object) -> SaleStatus:
    try:
        status = SaleStatus(value)
    except ValueError as exc:
        log.warning("Sale status rejected: %r", value)
        raise ValidationError(f"Unsupported sale status: {value}") from exc
    if status not in SALE_UPDATE_STATUSES:
        log.warning("Sale status rejected: %s", status.value)
        raise ValidationError(f"Sales can only be moved to completed or cancelled, not {status.value}")
    return status


# ---------------------------------------------------------------------------
# Stock ledger
# ---------------------------------------------------------------------------


def _append_movement(session: Session, command: StockMovementCommand) -> data_manager.StockMovementRow:
    if data_manager.get_product(session, command.product_id, include_deleted=True) is None:
        log.warning("Stock movement rejected: unknown product %s", command.product_id)
        raise NotFound(f"Unknown product id: {command.product_id}")
    total_value = command.total_value
    if total_value is None:
        total_value = command.quantity * command.unit_value
    movement = data_manager.insert_stock_movement(
        session,
        product_id=command.product_id,
        movement_type=command.movement_type,
        quantity=signed_quantity(command),
        unit_value=command.unit_value,
        total_value=total_value,
        sale_id=command.sale_id,
        notes=command.notes,
    )
    return data_manager.deserialize_stock_movement(movement)


def _overwrite_opening_balance(
    session: Session,
    product_id: int,
    quantity: int,
    unit_value: int,
) -> data_manager.StockMovementRow:
    opening = data_manager.find_opening_balance(session, product_id)
    if opening is None:
        log.warning("No opening balance recorded for product %s", product_id)
        raise NotFound(f"Product {product_id} has no opening balance")
    opening.quantity = quantity
    opening.unit_value = unit_value
    opening.total_value = quantity * unit_value
    session.flush()
    return data_manager.deserialize_stock_movement(opening)


def append_stock_movement(context: RuntimeContext, command: StockMovementCommand) -> data_manager.StockMovementRow:
    """Validate and append one ledger row.

    The caller supplies magnitudes; ``stock_in`` and ``return`` add stock,
    ``sale`` removes it, and ``adjustment`` adds unless flagged outbound.
    ``total_value`` defaults to ``quantity * unit_value``.

    Args:
        context (RuntimeContext): Runtime context providing store access.
        command (StockMovementCommand): Entry to record.

    Returns:
        data_manager.StockMovementRow: The persisted, signed ledger row.

    Raises:
        ValidationError: If the entry fails :func:`validate_stock_movement`.
        NotFound: If the product does not exist.
        OperationFailed: If the store rejects the write.
    """
    command = validate_stock_movement(command)
    with _store_operation(context, "append_stock_movement") as session:
        row = _append_movement(session, command)
    log.info(
        "Recorded %s movement %s for product %s (quantity=%s)",
        row.movement_type.value,
        row.movement_id,
        row.product_id,
        row.quantity,
    )
    return row


def delete_stock_movements_for_sale(context: RuntimeContext, sale_id: int) -> int:
    """Physically delete every ledger row tied to ``sale_id``.

    Returns:
        int: Number of rows removed.
    """
    with _store_operation(context, "delete_stock_movements_for_sale") as session:
        removed = data_manager.delete_stock_movements_for_sale(session, sale_id)
    log.info("Deleted %d stock movements for sale %s", removed, sale_id)
    return removed


def overwrite_opening_balance(
    context: RuntimeContext,
    product_id: int,
    quantity: int,
    unit_value: int,
) -> data_manager.StockMovementRow:
    """Rewrite a product's single ``stock_in`` row in place.

    The opening balance is never duplicated: editing it mutates the existing
    row, so the change is not visible as a separate ledger entry.

    Raises:
        ValidationError: If the magnitudes fail ledger validation.
        NotFound: If the product has no ``stock_in`` row.
    """
    validate_stock_movement(
        StockMovementCommand(
            product_id=product_id,
            movement_type=MovementType.STOCK_IN,
            quantity=quantity,
            unit_value=unit_value,
        )
    )
    with _store_operation(context, "overwrite_opening_balance") as session:
        row = _overwrite_opening_balance(session, product_id, quantity, unit_value)
    log.info("Overwrote opening balance of product %s (quantity=%s)", product_id, quantity)
    return row


def list_stock_movements(
    context: RuntimeContext,
    *,
    product_id: Optional[int] = None,
    sale_id: Optional[int] = None,
) -> List[data_manager.StockMovementRow]:
    """Return non-deleted ledger rows in insertion order, optionally filtered."""

    with _store_operation(context, "list_stock_movements") as session:
        movements = data_manager.iter_stock_movements(session, product_id=product_id, sale_id=sale_id)
        return [data_manager.deserialize_stock_movement(movement) for movement in movements]


def current_stock(context: RuntimeContext, product_id: int) -> int:
    """Return the quantity on hand for ``product_id``.

    The value is the sum of signed quantities over non-deleted ledger rows and
    is 0 for products without rows, including unknown products.
    """
    with _store_operation(context, "current_stock") as session:
        return data_manager.sum_stock_quantity(session, product_id)


# ---------------------------------------------------------------------------
# Sale aggregate writer
# ---------------------------------------------------------------------------


def ensure_stock_available(context: RuntimeContext, items: Sequence[SaleItemCommand]) -> None:
    """Reject a sale whose lines exceed the quantity on hand.

    Quantities of repeated products are added together before comparing. The
    check is read-only and runs outside the creation transaction.

    Raises:
        NotFound: If a product does not exist or was removed.
        ValidationError: If a product is inactive.
        InsufficientStockError: If requested units exceed current stock.
    """
    requested: Dict[int, int] = defaultdict(int)
    for item in items:
        requested[item.product_id] += item.quantity

    with _store_operation(context, "ensure_stock_available") as session:
        for product_id, quantity in requested.items():
            product = data_manager.get_product(session, product_id)
            if product is None:
                log.warning("Sale rejected: unknown product %s", product_id)
                raise NotFound(f"Unknown product id: {product_id}")
            if not product.active:
                log.warning("Sale rejected: product %s is inactive", product_id)
                raise ValidationError(f"Product '{product.name}' is inactive")
            available = data_manager.sum_stock_quantity(session, product_id)
            if quantity > available:
                log.warning(
                    "Sale rejected: product %s has %s units, %s requested",
                    product_id,
                    available,
                    quantity,
                )
                raise InsufficientStockError(
                    f"Insufficient stock for '{product.name}': {available} available, {quantity} requested"
                )


def create_sale(context: RuntimeContext, command: SaleCommand) -> data_manager.SaleRow:
    """Validate and persist a sale with its items, ledger rows and installments.

    Validation and the availability check happen first. Then, inside one
    transaction, the header is inserted as ``pending``, each item is written
    followed by a ``sale`` ledger entry carrying the negated quantity, and
    the installment schedule from :func:`build_installment_schedule` is
    inserted. ``first_due_date`` defaults to the sale date.

    Args:
        context (RuntimeContext): Runtime context providing store access.
        command (SaleCommand): Structured intent describing the sale.

    Returns:
        data_manager.SaleRow: The persisted sale header.

    Raises:
        ValidationError: If :func:`validate_sale_command` rejects the input.
        InsufficientStockError: If a line exceeds current stock.
        NotFound: If a product or the customer is unknown.
        OperationFailed: If any store step fails; nothing is persisted.
    """
    command = validate_sale_command(command)
    ensure_stock_available(context, command.items)

    sale_date = _resolve_timestamp(command.sale_date)
    first_due_date = command.first_due_date or sale_date.date()
    subtotal, total = sale_totals(command.items, command.discount)
    schedule = build_installment_schedule(total, command.installment_count, first_due_date)

    with _store_operation(context, "create_sale") as session:
        if command.customer_id is not None and data_manager.get_customer(session, command.customer_id) is None:
            log.warning("Sale rejected: unknown customer %s", command.customer_id)
            raise NotFound(f"Unknown customer id: {command.customer_id}")

        sale = data_manager.insert_sale(
            session,
            customer_id=command.customer_id,
            subtotal=subtotal,
            discount=command.discount,
            total=total,
            payment_method=command.payment_method,
            installments=command.installment_count,
            status=SaleStatus.PENDING,
            sale_date=sale_date,
            notes=command.notes,
        )
        for item in command.items:
            data_manager.insert_sale_item(
                session,
                sale_id=sale.id,
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=item.unit_price,
                subtotal=item.subtotal,
            )
            _append_movement(
                session,
                StockMovementCommand(
                    product_id=item.product_id,
                    movement_type=MovementType.SALE,
                    quantity=item.quantity,
                    unit_value=item.unit_price,
                    total_value=item.subtotal,
                    sale_id=sale.id,
                    notes="Sale",
                ),
            )
        data_manager.insert_installments(session, sale.id, schedule)
        row = data_manager.deserialize_sale(sale)

    log.info(
        "Recorded sale %s (items=%d, total=%s, installments=%d)",
        row.sale_id,
        len(command.items),
        row.total,
        row.installments,
    )
    return row


# ---------------------------------------------------------------------------
# Installment settlement
# ---------------------------------------------------------------------------


def set_installment_status(context: RuntimeContext, command: InstallmentStatusCommand) -> None:
    """Settle or reopen one installment and reconcile its sale.

    The installment's status and payment date are written first; completing
    also records ``paid_amount = amount`` and defaults the payment date to
    today, while reopening clears the paid amount. The remaining pending
    count then feeds :func:`reconcile_sale_status`, and the sale row is
    written only when its status actually changes. The ledger is never
    touched.

    An unknown installment is logged and ignored.

    Args:
        context (RuntimeContext): Runtime context providing store access.
        command (InstallmentStatusCommand): Target installment and status.

    Raises:
        ValidationError: If the status is not ``pending`` or ``completed``.
        OperationFailed: If the store rejects the update.
    """
    new_status = _coerce_installment_status(command.status)

    with _store_operation(context, "set_installment_status") as session:
        installment = data_manager.get_installment(session, command.installment_id)
        if installment is None:
            log.warning("Installment %s not found; nothing to settle", command.installment_id)
            return

        if new_status is InstallmentStatus.COMPLETED:
            installment.payment_date = _resolve_today(command.payment_date)
            installment.paid_amount = installment.amount
        else:
            installment.payment_date = command.payment_date
            installment.paid_amount = None
        installment.status = new_status
        session.flush()

        pending_count = data_manager.count_installments(
            session,
            installment.sale_id,
            status=InstallmentStatus.PENDING,
        )
        sale = data_manager.get_sale(session, installment.sale_id, include_deleted=True)
        target = reconcile_sale_status(sale.status, pending_count, new_status)
        if target is not sale.status:
            log.info("Sale %s status %s -> %s", sale.id, sale.status.value, target.value)
            sale.status = target

    log.info("Installment %s set to %s", command.installment_id, new_status.value)


# ---------------------------------------------------------------------------
# Sale lifecycle
# ---------------------------------------------------------------------------


def _shift_due_dates(session: Session, sale_id: int, first_due_date: date) -> int:
    installments = data_manager.iter_installments(session, sale_id)
    if not installments or installments[0].due_date == first_due_date:
        return 0
    shifted = 0
    for installment in installments:
        if installment.status is not InstallmentStatus.PENDING:
            continue
        installment.due_date = first_due_date + relativedelta(months=installment.number - 1)
        shifted += 1
    return shifted


def _complete_pending_installments(session: Session, sale_id: int, today: date) -> int:
    pending = data_manager.iter_installments(session, sale_id, status=InstallmentStatus.PENDING)
    for installment in pending:
        installment.status = InstallmentStatus.COMPLETED
        installment.payment_date = today
        installment.paid_amount = installment.amount
    return len(pending)


def update_sale(context: RuntimeContext, command: SaleUpdateCommand) -> data_manager.SaleRow:
    """Apply a later edit to an existing sale in one transaction.

    - A new first due date that differs from installment #1's re-dates every
      still-pending installment to ``first_due_date + (n - 1)`` months;
      completed installments keep their dates.
    - ``completed`` forces every pending installment to completed with
      today's payment date and completes the sale.
    - ``cancelled`` deletes the sale's ledger rows and installments, so the
      stock returns to its pre-sale level, and flags the sale.
    - ``notes`` replaces the sale notes when given.

    Args:
        context (RuntimeContext): Runtime context providing store access.
        command (SaleUpdateCommand): Requested changes.

    Returns:
        data_manager.SaleRow: The sale header after the update.

    Raises:
        ValidationError: If the target status is not ``completed`` or
            ``cancelled``, or the sale is already cancelled.
        NotFound: If the sale does not exist or was removed.
        OperationFailed: If the store rejects any step.
    """
    target_status = _coerce_sale_status(command.status) if command.status is not None else None

    with _store_operation(context, "update_sale") as session:
        sale = data_manager.get_sale(session, command.sale_id)
        if sale is None:
            log.warning("Sale %s not found for update", command.sale_id)
            raise NotFound(f"Unknown sale id: {command.sale_id}")
        if target_status is not None and sale.status is SaleStatus.CANCELLED:
            log.warning("Sale %s is cancelled; status change refused", command.sale_id)
            raise ValidationError(f"Sale {command.sale_id} is cancelled")

        if command.first_due_date is not None:
            shifted = _shift_due_dates(session, sale.id, command.first_due_date)
            if shifted:
                log.info("Re-dated %d pending installments of sale %s", shifted, sale.id)

        if target_status is SaleStatus.COMPLETED:
            completed = _complete_pending_installments(session, sale.id, _resolve_today(None))
            sale.status = SaleStatus.COMPLETED
            log.info("Completed sale %s (%d installments settled)", sale.id, completed)
        elif target_status is SaleStatus.CANCELLED:
            movements = data_manager.delete_stock_movements_for_sale(session, sale.id)
            installments = data_manager.delete_installments_for_sale(session, sale.id)
            sale.status = SaleStatus.CANCELLED
            log.info(
                "Cancelled sale %s (%d movements, %d installments deleted)",
                sale.id,
                movements,
                installments,
            )

        if command.notes is not None:
            sale.notes = command.notes
        session.flush()
        row = data_manager.deserialize_sale(sale)

    return row


def remove_sale(context: RuntimeContext, sale_id: int) -> None:
    """Soft-delete a sale after deleting its ledger rows, whatever its status.

    Raises:
        NotFound: If the sale does not exist or was already removed.
        OperationFailed: If the store rejects any step.
    """
    with _store_operation(context, "remove_sale") as session:
        sale = data_manager.get_sale(session, sale_id)
        if sale is None:
            log.warning("Sale %s not found for removal", sale_id)
            raise NotFound(f"Unknown sale id: {sale_id}")
        removed = data_manager.delete_stock_movements_for_sale(session, sale_id)
        sale.deleted_at = _resolve_timestamp(None)

    log.info("Removed sale %s (%d movements deleted)", sale_id, removed)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


def _validate_product_command(command: ProductCommand) -> None:
    if not command.name or not command.name.strip():
        log.warning("Product rejected: empty name")
        raise ValidationError("Product name is required")
    require_nonnegative_money(command.sale_price)
    if command.cost_price is not None:
        require_nonnegative_money(command.cost_price)
    if command.minimum_stock < 0:
        log.warning("Product rejected: minimum stock %s", command.minimum_stock)
        raise ValidationError("Minimum stock must be zero or positive")


def _product_fields(command: ProductCommand) -> Dict[str, object]:
    return {
        "name": command.name.strip(),
        "sale_price": command.sale_price,
        "minimum_stock": command.minimum_stock,
        "cost_price": command.cost_price,
        "barcode": command.barcode,
        "reference": command.reference,
        "description": command.description,
        "active": command.active,
    }


def add_product(context: RuntimeContext, command: ProductCommand) -> data_manager.ProductRow:
    """Create a product together with its opening-balance ``stock_in`` row.

    The opening balance records ``initial_stock`` units valued at the sale
    price. Both rows are written in one transaction.

    Raises:
        ValidationError: If the product fields or opening balance are invalid.
        OperationFailed: If the store rejects the write.
    """
    _validate_product_command(command)

    with _store_operation(context, "add_product") as session:
        product = data_manager.insert_product(session, **_product_fields(command))
        opening = StockMovementCommand(
            product_id=product.id,
            movement_type=MovementType.STOCK_IN,
            quantity=command.initial_stock,
            unit_value=command.sale_price,
            notes="Opening balance",
        )
        validate_stock_movement(opening)
        _append_movement(session, opening)
        row = data_manager.deserialize_product(product)

    log.info("Added product %s '%s' (initial stock=%s)", row.product_id, row.name, command.initial_stock)
    return row


def update_product(context: RuntimeContext, product_id: int, command: ProductCommand) -> data_manager.ProductRow:
    """Update a product and overwrite its opening balance in one transaction.

    Raises:
        ValidationError: If the new values are invalid.
        NotFound: If the product or its opening balance is missing.
    """
    _validate_product_command(command)
    validate_stock_movement(
        StockMovementCommand(
            product_id=product_id,
            movement_type=MovementType.STOCK_IN,
            quantity=command.initial_stock,
            unit_value=command.sale_price,
        )
    )

    with _store_operation(context, "update_product") as session:
        product = data_manager.get_product(session, product_id)
        if product is None:
            log.warning("Product %s not found for update", product_id)
            raise NotFound(f"Unknown product id: {product_id}")
        data_manager.apply_field_values(product, _product_fields(command))
        _overwrite_opening_balance(session, product_id, command.initial_stock, command.sale_price)
        row = data_manager.deserialize_product(product)

    log.info("Updated product %s '%s'", row.product_id, row.name)
    return row


def remove_product(context: RuntimeContext, product_id: int) -> None:
    with _store_operation(context, "remove_product") as session:
        product = data_manager.get_product(session, product_id)
        if product is None:
            log.warning("Product %s not found for removal", product_id)
            raise NotFound(f"Unknown product id: {product_id}")
        product.active = False
        product.deleted_at = _resolve_timestamp(None)
    log.info("Removed product %s", product_id)


def get_product(context: RuntimeContext, product_id: int) -> data_manager.ProductRow:
    """Resolve a product by identifier.

    Raises:
        NotFound: If the product does not exist or was removed.
    """
    with _store_operation(context, "get_product") as session:
        product = data_manager.get_product(session, product_id)
        if product is None:
            log.warning("Product lookup failed for id %s", product_id)
            raise NotFound(f"Unknown product id: {product_id}")
        return data_manager.deserialize_product(product)


def list_products(
    context: RuntimeContext,
    *,
    include_inactive: bool = False,
    low_stock: bool = False,
) -> List[data_manager.ProductRow]:
    """Return products ordered by name.

    Args:
        context (RuntimeContext): Runtime context providing store access.
        include_inactive (bool): When ``True`` inactive products are included.
        low_stock (bool): When ``True`` only products whose current stock is
            at or below their minimum stock are returned.
    """
    with _store_operation(context, "list_products") as session:
        products = data_manager.iter_products(session, include_inactive=include_inactive)
        levels = data_manager.stock_levels(session) if low_stock else {}
        rows = [data_manager.deserialize_product(product) for product in products]

    if low_stock:
        rows = [row for row in rows if levels.get(row.product_id, 0) <= row.minimum_stock]
    return rows


def add_customer(context: RuntimeContext, command: CustomerCommand) -> data_manager.CustomerRow:
    if not command.name or not command.name.strip():
        log.warning("Customer rejected: empty name")
        raise ValidationError("Customer name is required")
    with _store_operation(context, "add_customer") as session:
        customer = data_manager.insert_customer(
            session,
            name=command.name.strip(),
            document=command.document,
            email=command.email,
            phone=command.phone,
            notes=command.notes,
        )
        row = data_manager.deserialize_customer(customer)
    log.info("Added customer %s '%s'", row.customer_id, row.name)
    return row


def get_customer(context: RuntimeContext, customer_id: int) -> data_manager.CustomerRow:
    with _store_operation(context, "get_customer") as session:
        customer = data_manager.get_customer(session, customer_id)
        if customer is None:
            log.warning("Customer lookup failed for id %s", customer_id)
            raise NotFound(f"Unknown customer id: {customer_id}")
        return data_manager.deserialize_customer(customer)


def list_customers(context: RuntimeContext) -> List[data_manager.CustomerRow]:
    with _store_operation(context, "list_customers") as session:
        return [data_manager.deserialize_customer(customer) for customer in data_manager.iter_customers(session)]


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


def calculate_inventory(context: RuntimeContext) -> Dict[int, int]:
    """Compute the quantity on hand for every non-deleted product.

    Products without ledger rows report 0.
    """
    with _store_operation(context, "calculate_inventory") as session:
        levels = data_manager.stock_levels(session)
        products = data_manager.iter_products(session, include_inactive=True)
        inventory = {product.id: levels.get(product.id, 0) for product in products}
    log.debug("Calculated inventory balances for %d products", len(inventory))
    return inventory


def get_sale(context: RuntimeContext, sale_id: int) -> SaleDetail:
    """Load a sale with its items and installments.

    Raises:
        NotFound: If the sale does not exist or was removed.
    """
    with _store_operation(context, "get_sale") as session:
        sale = data_manager.get_sale(session, sale_id)
        if sale is None:
            log.warning("Sale lookup failed for id %s", sale_id)
            raise NotFound(f"Unknown sale id: {sale_id}")
        return SaleDetail(
            sale=data_manager.deserialize_sale(sale),
            items=[data_manager.deserialize_sale_item(item) for item in sale.items],
            installments=[data_manager.deserialize_installment(installment) for installment in sale.installment_rows],
        )


def list_sales(context: RuntimeContext) -> List[data_manager.SaleRow]:
    """Return non-deleted sales, newest first."""

    with _store_operation(context, "list_sales") as session:
        return [data_manager.deserialize_sale(sale) for sale in data_manager.iter_sales(session)]


def dashboard_summary(context: RuntimeContext, today: Optional[date] = None) -> DashboardSummary:
    """Summarise the catalog and the day's activity.

    Revenue counts installments completed with ``today`` as payment date on
    sales that were not removed.
    """
    day = _resolve_today(today)
    start, end = data_manager.day_bounds(day)
    with _store_operation(context, "dashboard_summary") as session:
        summary = DashboardSummary(
            day=day,
            total_products=data_manager.count_products(session),
            sales_today=data_manager.count_sales_between(session, start, end),
            total_customers=data_manager.count_customers(session),
            revenue_today=data_manager.sum_revenue_for_day(session, day).quantize(INSTALLMENT_QUANTUM),
        )
    log.debug("Dashboard summary for %s: %s", day.isoformat(), summary)
    return summary


def export_workbook(context: RuntimeContext, destination: Path) -> Path:
    """Write an ``.xlsx`` snapshot of products, sales, installments and ledger.

    Products carry their derived current stock. Removed sales and their
    installments are left out.

    Returns:
        Path: The resolved destination.
    """
    with _store_operation(context, "export_workbook") as session:
        levels = data_manager.stock_levels(session)
        product_rows = [
            data_manager.serialize_product(
                data_manager.deserialize_product(product),
                current_stock=levels.get(product.id, 0),
            )
            for product in data_manager.iter_products(session, include_inactive=True)
        ]
        sales = data_manager.iter_sales(session)
        sale_rows = [data_manager.serialize_sale(data_manager.deserialize_sale(sale)) for sale in sales]
        installment_rows = [
            data_manager.serialize_installment(data_manager.deserialize_installment(installment))
            for sale in sales
            for installment in data_manager.iter_installments(session, sale.id)
        ]
        movement_rows = [
            data_manager.serialize_stock_movement(data_manager.deserialize_stock_movement(movement))
            for movement in data_manager.iter_stock_movements(session)
        ]

    workbook = data_manager.build_workbook(
        {
            "Products": product_rows,
            "Sales": sale_rows,
            "Installments": installment_rows,
            "StockMovements": movement_rows,
        },
        title=f"{context.settings.store_name} stock ledger",
    )
    saved = data_manager.save_workbook(workbook, destination)
    log.info("Exported workbook to '%s'", saved)
    return saved
