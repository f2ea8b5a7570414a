import contextlib
import io
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from lending_fixtures import T0, add_asset, add_station, add_user, make_store

from sqlalchemy import text

from scripts.ledger_audit import main, run_checks, run_existence_checks
from services.lending_service import checkout_cup


def _failures(engine):
    return [row.name for row in run_checks(engine) if not row.ok]


class LedgerAuditTests(unittest.TestCase):
    def setUp(self):
        self.engine, Session = make_store()
        self.db = Session()
        add_station(self.db, "S1", "store")
        add_user(self.db, "u1", balance="100000")
        add_asset(self.db, "C1", "cup", home="S1")

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def test_clean_store_passes_every_check(self):
        checkout_cup(self.db, user_id="u1", asset_id="C1", branch_id="S1", now=T0)
        self.assertTrue(all(row.ok for row in run_existence_checks(self.engine)))
        self.assertEqual(_failures(self.engine), [])

    def test_cached_balance_drift_is_reported(self):
        with self.engine.begin() as conn:
            conn.execute(text("UPDATE Users SET WalletBalance = 1 WHERE UserID = 'u1'"))
        self.assertEqual(
            _failures(self.engine),
            ["wallet:ledger_sum_mismatch", "wallet:last_balance_after_mismatch"],
        )

    def test_dangling_asset_reference_is_reported(self):
        with self.engine.begin() as conn:
            conn.execute(text("UPDATE Assets SET Status = 'in_use', CurrentHolderID = 'u1', CurrentCheckoutID = 'gone'"))
        self.assertEqual(_failures(self.engine), ["assets:in_use_without_ongoing_checkout"])


class LedgerAuditCliTests(unittest.TestCase):
    def test_cli_exit_codes(self):
        with tempfile.TemporaryDirectory() as tmp:
            db_url = f"sqlite+pysqlite:///{Path(tmp) / 'lending.db'}"
            engine, Session = make_store(db_url)
            db = Session()
            add_user(db, "u1", balance="50000")
            db.close()

            out = io.StringIO()
            with contextlib.redirect_stdout(out):
                self.assertEqual(main(["--db-url", db_url, "--counts"]), 0)
            self.assertIn("[OK] wallet:ledger_sum_mismatch", out.getvalue())
            self.assertIn("Users: 1", out.getvalue())

            with engine.begin() as conn:
                conn.execute(text("UPDATE Users SET WalletBalance = 0"))
            with contextlib.redirect_stdout(io.StringIO()):
                self.assertEqual(main(["--db-url", db_url]), 1)
            engine.dispose()

    def test_cli_requires_db_url(self):
        with contextlib.redirect_stdout(io.StringIO()):
            self.assertEqual(main(["--db-url", ""]), 2)


if __name__ == "__main__":
    unittest.main()
