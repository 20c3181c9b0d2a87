from __future__ import annotations

import json
import logging
import threading
import time

import pytest

from meatledger.config import CONFIG_FILE_NAME, ENV_DATA_DIR, configure_logging, load_settings
from meatledger.db import connect, ensure_schema, q, q1, transaction, x
from meatledger.errors import Conflict, LedgerTimeout, ValidationError
from meatledger.services.demo_data import default_actor, load_demo_data, wipe_all


class TestSettings:
    def test_explicit_dir(self, tmp_path):
        s = load_settings(tmp_path / "ledger")
        assert s.data_dir == (tmp_path / "ledger").resolve()
        assert s.db_path.name == "app.db"
        assert s.data_dir.exists()
        assert s.vat_rate_percent == 15.0
        assert s.unaccounted_tolerance_kg == 0.5

    def test_env_var(self, tmp_path, monkeypatch):
        monkeypatch.setenv(ENV_DATA_DIR, str(tmp_path / "from_env"))
        assert load_settings().data_dir == (tmp_path / "from_env").resolve()

    def test_overrides_from_settings_json(self, tmp_path):
        (tmp_path / CONFIG_FILE_NAME).write_text(json.dumps({"vat_rate_percent": "14.5", "currency": "ZAR"}))
        s = load_settings(tmp_path)
        assert s.vat_rate_percent == 14.5
        assert s.currency == "ZAR"

    def test_bad_override_raises(self, tmp_path):
        (tmp_path / CONFIG_FILE_NAME).write_text(json.dumps({"lock_timeout_s": "soon"}))
        with pytest.raises(ValueError):
            load_settings(tmp_path)

    def test_unreadable_settings_ignored(self, tmp_path):
        (tmp_path / CONFIG_FILE_NAME).write_text("{not json")
        assert load_settings(tmp_path).vat_rate_percent == 15.0

    def test_configure_logging_is_idempotent(self, tmp_path):
        root = logging.getLogger()
        before = list(root.handlers)
        try:
            s = load_settings(tmp_path)
            configure_logging(s)
            configure_logging(s)
            ours = [h for h in root.handlers if getattr(h, "_meatledger", False)]
            assert len(ours) == 2
            assert (s.log_dir / "meatledger.log").exists()
        finally:
            for h in list(root.handlers):
                if h not in before:
                    root.removeHandler(h)
                    h.close()


class TestUnitOfWork:
    def test_rollback_on_error(self, conn, actor):
        with pytest.raises(ValidationError):
            with transaction(conn):
                x(conn, "INSERT INTO suppliers(organization_id, name) VALUES (?, ?)", (actor.organization_id, "Temp"))
                raise ValidationError("boom")
        assert q1(conn, "SELECT id FROM suppliers WHERE name='Temp'") is None

    def test_nested_joins_outer(self, conn, actor):
        with pytest.raises(ValidationError):
            with transaction(conn):
                with transaction(conn):
                    x(conn, "INSERT INTO suppliers(organization_id, name) VALUES (?, ?)", (actor.organization_id, "Inner"))
                raise ValidationError("outer fails")
        assert q1(conn, "SELECT id FROM suppliers WHERE name='Inner'") is None

    def test_unique_violation_is_conflict(self, conn, actor):
        with pytest.raises(Conflict):
            x(conn, "INSERT INTO zones(organization_id, code, name) VALUES (?, 'COLD', 'Again')", (actor.organization_id,))

    def test_other_thread_write_survives_rollback(self, conn, actor):
        inside = threading.Event()
        started = threading.Event()
        errors = []

        def failing_unit_of_work():
            try:
                with transaction(conn):
                    x(conn, "INSERT INTO suppliers(organization_id, name) VALUES (?, ?)", (actor.organization_id, "Doomed"))
                    inside.set()
                    started.wait(2)
                    time.sleep(0.1)
                    raise ValidationError("rolled back")
            except ValidationError as e:
                errors.append(e)

        def plain_write():
            inside.wait(2)
            started.set()
            x(conn, "INSERT INTO suppliers(organization_id, name) VALUES (?, ?)", (actor.organization_id, "Kept"))

        threads = [threading.Thread(target=failing_unit_of_work), threading.Thread(target=plain_write)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)

        assert len(errors) == 1
        assert q1(conn, "SELECT id FROM suppliers WHERE name='Doomed'") is None
        assert q1(conn, "SELECT id FROM suppliers WHERE name='Kept'") is not None

    def test_waiting_on_another_thread_times_out(self):
        c = connect(":memory:", timeout_s=0.05)
        ensure_schema(c)
        inside = threading.Event()
        release = threading.Event()

        def hold():
            with transaction(c):
                inside.set()
                release.wait(2)

        t = threading.Thread(target=hold)
        t.start()
        try:
            inside.wait(2)
            with pytest.raises(LedgerTimeout) as exc:
                q(c, "SELECT COUNT(1) AS n FROM suppliers")
            assert exc.value.retryable is True
        finally:
            release.set()
            t.join(5)
            c.close()

    def test_locked_store_is_retryable_timeout(self, tmp_path):
        path = tmp_path / "ledger.db"
        a = connect(path, timeout_s=0.05)
        b = connect(path, timeout_s=0.05)
        ensure_schema(a)
        try:
            with transaction(a):
                x(a, "INSERT INTO organizations(name) VALUES ('Locker')")
                with pytest.raises(LedgerTimeout) as exc:
                    with transaction(b):
                        pass
                assert exc.value.retryable is True
        finally:
            a.close()
            b.close()


class TestDemoData:
    def test_load_and_wipe(self, conn):
        actor = load_demo_data(conn, seed=3)
        n_sales = q1(conn, "SELECT COUNT(1) AS n FROM sales WHERE organization_id=?", (actor.organization_id,))["n"]
        assert n_sales > 0
        assert q1(conn, "SELECT COUNT(1) AS n FROM carcasses WHERE status='completed'")["n"] == 2
        assert q1(conn, "SELECT COUNT(1) AS n FROM carcasses WHERE status='pending'")["n"] == 1

        wipe_all(conn)
        assert q1(conn, "SELECT COUNT(1) AS n FROM sales")["n"] == 0
        assert q1(conn, "SELECT COUNT(1) AS n FROM organizations")["n"] == 0

        # reference data comes back on demand
        assert default_actor(conn).organization_id > 0
