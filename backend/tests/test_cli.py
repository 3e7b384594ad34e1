"""
Flask CLI command tests (system and ledger groups).
"""

from decimal import Decimal

import pytest

from matreq.models import Role, Site, Store, StockRecord
from matreq.services import stock_ledger_service
from matreq.services.identity_service import DEFAULT_ROLES


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


def _set_columns(session, stock_id, **values):
    session.execute(
        StockRecord.__table__.update().where(StockRecord.__table__.c.id == stock_id).values(**values)
    )
    session.commit()
    session.expire_all()


# =============================================================================
# SYSTEM
# =============================================================================


class TestSystemCommands:

    def test_init_is_idempotent(self, runner, db_session):
        first = runner.invoke(args=["system", "init"])
        assert first.exit_code == 0, first.output
        assert "PASS Created site: Main Site" in first.output
        assert "PASS Created store: Central Store" in first.output

        second = runner.invoke(args=["system", "init"])
        assert second.exit_code == 0, second.output
        assert "PASS Using existing site: Main Site" in second.output

        assert db_session.query(Role).count() == len(DEFAULT_ROLES)
        assert db_session.query(Site).count() == 1
        assert db_session.query(Store).count() == 1

    def test_reset_requires_confirmation(self, runner, db_session):
        result = runner.invoke(args=["system", "reset-db"])
        assert result.exit_code == 1
        assert "Refusing to reset" in result.output


# =============================================================================
# LEDGER
# =============================================================================


class TestLedgerCommands:

    @pytest.fixture
    def stock(self, db_session, storekeeper, store, cement):
        return stock_ledger_service.create_stock_record(
            cement.id, store.id, storekeeper.id, reorder_level="20", opening_quantity="100",
        )

    def test_verify_clean(self, runner, stock):
        result = runner.invoke(args=["ledger", "verify"])
        assert result.exit_code == 0, result.output
        assert f"PASS stock {stock.id}: 1 movements, on hand 100.000" in result.output
        assert "Checked 1 stock record(s), 0 broken" in result.output

    def test_verify_reports_break(self, runner, stock, db_session):
        _set_columns(db_session, stock.id, quantity_on_hand=Decimal("90"))
        result = runner.invoke(args=["ledger", "verify", "--stock-id", str(stock.id)])
        assert result.exit_code == 1
        assert f"FAIL stock {stock.id}" in result.output
        assert "sum of deltas 100.000 != quantity_on_hand 90.000" in result.output

    def test_reevaluate_thresholds(self, runner, stock, db_session):
        _set_columns(db_session, stock.id, low_stock_alert=True)
        result = runner.invoke(args=["ledger", "reevaluate-thresholds"])
        assert result.exit_code == 0, result.output
        assert "1 flag(s) changed" in result.output
        assert db_session.get(StockRecord, stock.id).low_stock_alert is False
