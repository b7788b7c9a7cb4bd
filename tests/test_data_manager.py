"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

import openpyxl
import pytest
from sqlalchemy.exc import IntegrityError

from stockledger import constants, data_manager
from stockledger.models import Product


@pytest.fixture
def session_factory(database_factory):
    engine, factory = data_manager.open_database(database_factory())
    try:
        yield factory
    finally:
        engine.dispose()


def _insert_product(session, name="Widget", sale_price=1000):
    return data_manager.insert_product(session, name=name, sale_price=sale_price, minimum_stock=0)


def _insert_sale(session, total=2500):
    return data_manager.insert_sale(
        session,
        customer_id=None,
        subtotal=total,
        discount=0,
        total=total,
        payment_method=constants.PaymentMethod.CASH,
        installments=1,
        status=constants.SaleStatus.PENDING,
        sale_date=datetime(2025, 3, 10, 12, 0),
    )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=stockledger.sqlite3")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    parser = data_manager.read_config(config_file)
    assert parser.get("System", "StoreName") == "Test Store"
    assert parser.get("Defaults", "PaymentMethod") == "cash"


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True)
    parser = configparser.ConfigParser()
    parser.read(bundle.config_path)

    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == bundle.database_path
    assert settings.store_name == "Test Store"
    assert settings.default_payment_method is constants.PaymentMethod.CASH
    assert settings.echo is False


def test_parse_settings_requires_expected_sections(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_rejects_unknown_payment_method(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile=db.sqlite3\nStoreName=S\nSchemaVersion=1.0.0\n"
        "[Defaults]\nPaymentMethod=barter\n"
    )
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Store lifecycle
# ---------------------------------------------------------------------------


def test_open_database_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_database(tmp_path / "missing.sqlite3")


def test_foreign_keys_are_enforced(session_factory):
    """Ledger rows must not reference products that do not exist."""

    with pytest.raises(IntegrityError):
        with data_manager.session_scope(session_factory) as session:
            data_manager.insert_stock_movement(
                session,
                product_id=999,
                movement_type=constants.MovementType.ADJUSTMENT,
                quantity=1,
                unit_value=0,
                total_value=0,
            )


def test_session_scope_commits_on_success(session_factory):
    with data_manager.session_scope(session_factory) as session:
        product_id = _insert_product(session).id

    with data_manager.session_scope(session_factory) as session:
        assert data_manager.get_product(session, product_id) is not None


def test_session_scope_rolls_back_on_error(session_factory):
    with pytest.raises(RuntimeError):
        with data_manager.session_scope(session_factory) as session:
            _insert_product(session)
            raise RuntimeError("boom")

    with data_manager.session_scope(session_factory) as session:
        assert data_manager.count_products(session) == 0


def test_apply_field_values_rejects_unknown_columns(session_factory):
    with data_manager.session_scope(session_factory) as session:
        product = _insert_product(session)
        data_manager.apply_field_values(product, {"name": "Renamed"})
        assert product.name == "Renamed"
        with pytest.raises(KeyError):
            data_manager.apply_field_values(product, {"colour": "red"})


# ---------------------------------------------------------------------------
# Ledger aggregation
# ---------------------------------------------------------------------------


def test_sum_stock_quantity_ignores_soft_deleted_rows(session_factory):
    with data_manager.session_scope(session_factory) as session:
        product = _insert_product(session)
        for quantity in (10, -3):
            data_manager.insert_stock_movement(
                session,
                product_id=product.id,
                movement_type=constants.MovementType.ADJUSTMENT,
                quantity=quantity,
                unit_value=0,
                total_value=0,
            )
        hidden = data_manager.insert_stock_movement(
            session,
            product_id=product.id,
            movement_type=constants.MovementType.ADJUSTMENT,
            quantity=100,
            unit_value=0,
            total_value=0,
        )
        hidden.deleted_at = datetime(2025, 1, 1)
        session.flush()

        assert data_manager.sum_stock_quantity(session, product.id) == 7
        assert data_manager.stock_levels(session) == {product.id: 7}


def test_sum_stock_quantity_is_zero_for_unknown_product(session_factory):
    with data_manager.session_scope(session_factory) as session:
        assert data_manager.sum_stock_quantity(session, 4242) == 0


def test_delete_stock_movements_for_sale_only_touches_that_sale(session_factory):
    with data_manager.session_scope(session_factory) as session:
        product = _insert_product(session)
        sale = _insert_sale(session)
        data_manager.insert_stock_movement(
            session,
            product_id=product.id,
            movement_type=constants.MovementType.STOCK_IN,
            quantity=5,
            unit_value=1000,
            total_value=5000,
        )
        for quantity in (-1, -2):
            data_manager.insert_stock_movement(
                session,
                product_id=product.id,
                movement_type=constants.MovementType.SALE,
                quantity=quantity,
                unit_value=1000,
                total_value=abs(quantity) * 1000,
                sale_id=sale.id,
            )

        removed = data_manager.delete_stock_movements_for_sale(session, sale.id)

        assert removed == 2
        assert data_manager.iter_stock_movements(session, sale_id=sale.id) == []
        assert data_manager.sum_stock_quantity(session, product.id) == 5


def test_find_opening_balance_returns_stock_in_row(session_factory):
    with data_manager.session_scope(session_factory) as session:
        product = _insert_product(session)
        assert data_manager.find_opening_balance(session, product.id) is None
        data_manager.insert_stock_movement(
            session,
            product_id=product.id,
            movement_type=constants.MovementType.STOCK_IN,
            quantity=4,
            unit_value=1000,
            total_value=4000,
        )
        opening = data_manager.find_opening_balance(session, product.id)
        assert opening is not None
        assert opening.quantity == 4


# ---------------------------------------------------------------------------
# Installments
# ---------------------------------------------------------------------------


def test_insert_installments_round_trip_keeps_two_decimals(session_factory):
    schedule = [
        (1, Decimal("3333.33"), date(2025, 1, 31)),
        (2, Decimal("3333.33"), date(2025, 2, 28)),
    ]
    with data_manager.session_scope(session_factory) as session:
        sale = _insert_sale(session, total=6667)
        data_manager.insert_installments(session, sale.id, schedule)
        sale_id = sale.id

    with data_manager.session_scope(session_factory) as session:
        rows = [data_manager.deserialize_installment(row) for row in data_manager.iter_installments(session, sale_id)]
        pending = data_manager.count_installments(session, sale_id, status=constants.InstallmentStatus.PENDING)

    assert [row.number for row in rows] == [1, 2]
    assert rows[0].amount == Decimal("3333.33")
    assert rows[1].due_date == date(2025, 2, 28)
    assert all(row.status is constants.InstallmentStatus.PENDING for row in rows)
    assert pending == 2


def test_sum_revenue_for_day_skips_removed_sales(session_factory):
    day = date(2025, 3, 10)
    with data_manager.session_scope(session_factory) as session:
        live = _insert_sale(session, total=1000)
        removed = _insert_sale(session, total=500)
        for sale, amount in ((live, Decimal("1000.00")), (removed, Decimal("500.00"))):
            (installment,) = data_manager.insert_installments(session, sale.id, [(1, amount, day)])
            installment.status = constants.InstallmentStatus.COMPLETED
            installment.payment_date = day
        removed.deleted_at = datetime(2025, 3, 10, 18, 0)
        session.flush()

        assert data_manager.sum_revenue_for_day(session, day) == Decimal("1000")
        assert data_manager.sum_revenue_for_day(session, date(2025, 3, 11)) == Decimal("0")


# ---------------------------------------------------------------------------
# Row conversion and workbook export
# ---------------------------------------------------------------------------


def test_deserialize_product_maps_columns(session_factory):
    with data_manager.session_scope(session_factory) as session:
        product = data_manager.insert_product(
            session,
            name="Gadget",
            sale_price=250,
            minimum_stock=3,
            barcode="789",
        )
        row = data_manager.deserialize_product(product)

    assert row == data_manager.ProductRow(
        product_id=row.product_id,
        name="Gadget",
        sale_price=250,
        minimum_stock=3,
        is_active=True,
        barcode="789",
    )
    assert data_manager.serialize_product(row, current_stock=7) == [row.product_id, "Gadget", 250, 3, 7, True]


def test_serialize_installment_formats_dates():
    row = data_manager.InstallmentRow(
        installment_id=1,
        sale_id=2,
        number=1,
        amount=Decimal("10.00"),
        due_date=date(2025, 4, 1),
        payment_date=None,
        paid_amount=None,
        status=constants.InstallmentStatus.PENDING,
    )
    assert data_manager.serialize_installment(row) == [1, 2, 1, Decimal("10.00"), "2025-04-01", None, None, "pending"]


def test_build_workbook_creates_bold_headers_and_rows(tmp_path):
    workbook = data_manager.build_workbook({"Products": [[1, "Widget", 1000, 0, 5, True]]})
    destination = data_manager.save_workbook(workbook, tmp_path / "out" / "export.xlsx")

    reloaded = openpyxl.load_workbook(destination)
    assert reloaded.sheetnames == list(data_manager.EXPORT_SHEET_COLUMNS)
    products = reloaded["Products"]
    header = [cell.value for cell in products[1]]
    assert header == list(data_manager.EXPORT_SHEET_COLUMNS["Products"])
    assert all(cell.font.bold for cell in products[1])
    assert list(products.iter_rows(min_row=2, values_only=True)) == [(1, "Widget", 1000, 0, 5, True)]
    assert reloaded["Sales"].max_row == 1


def test_iter_products_hides_inactive_and_deleted(session_factory):
    with data_manager.session_scope(session_factory) as session:
        _insert_product(session, name="A")
        inactive = _insert_product(session, name="B")
        inactive.active = False
        deleted = _insert_product(session, name="C")
        deleted.deleted_at = datetime(2025, 1, 1)
        session.flush()

        assert [p.name for p in data_manager.iter_products(session)] == ["A"]
        assert [p.name for p in data_manager.iter_products(session, include_inactive=True)] == ["A", "B"]
        assert isinstance(data_manager.get_product(session, deleted.id, include_deleted=True), Product)
        assert data_manager.get_product(session, deleted.id) is None
