from pathlib import Path

import pytest

from leasedesk.api.ledger_store import LedgerStore, sqlite_database
from main import main


@pytest.fixture
def ledger_env(monkeypatch, tmp_path: Path) -> Path:
    monkeypatch.chdir(tmp_path)
    db_path = tmp_path / "ledger.sqlite"
    monkeypatch.setenv("LEDGER_BACKEND", "sqlite")
    monkeypatch.setenv("LEDGER_SQLITE_PATH", str(db_path))
    monkeypatch.setenv("DOCUMENTS_DIR", str(tmp_path / "documents"))
    return db_path


def _write_roster(path: Path, rate: str = "11200") -> Path:
    path.write_text(
        "ClientName,Address,RentalRate,VAT,BillingTerms,StartDate,EndDate\n"
        f"Servtrix Solutions Inc.,12 Ayala Ave,{rate},Y,Quarterly,01/01/2024,12/31/2024\n",
        encoding="utf-8",
    )
    return path


def test_init_db_creates_ledger(ledger_env: Path) -> None:
    assert main(["init-db"]) == 0
    assert ledger_env.exists()
    assert (ledger_env.parent / "logs" / "leasedesk_cli.log").exists()


def test_import_clients_creates_then_updates(ledger_env: Path, tmp_path: Path) -> None:
    roster = _write_roster(tmp_path / "clients.csv")
    assert main(["import-clients", str(roster)]) == 0

    _write_roster(roster, rate="12000")
    assert main(["import-clients", str(roster)]) == 0

    clients = LedgerStore(sqlite_database(ledger_env)).list_clients()
    assert len(clients) == 1
    assert str(clients[0].rental_rate) == "12000"


def test_generate_prints_new_invoices(ledger_env: Path, tmp_path: Path, capsys) -> None:
    main(["import-clients", str(_write_roster(tmp_path / "clients.csv"))])
    (client,) = LedgerStore(sqlite_database(ledger_env)).list_clients()

    assert main(["generate", client.id, "--up-to", "2024-04-01"]) == 0

    out = capsys.readouterr().out
    assert "INV-SERVTRIX-0001  2024-01-01  11200.00" in out
    assert "INV-SERVTRIX-0002  2024-04-01  11200.00" in out
    assert (tmp_path / "documents" / "invoices" / "SERVTRIX" / "INV-SERVTRIX-0002.pdf").exists()


def test_preview_lists_periods_with_due_dates(ledger_env: Path, tmp_path: Path, capsys) -> None:
    main(["import-clients", str(_write_roster(tmp_path / "clients.csv"))])
    (client,) = LedgerStore(sqlite_database(ledger_env)).list_clients()

    assert main(["preview", client.id, "--include-future"]) == 0

    lines = [line for line in capsys.readouterr().out.splitlines() if "  due " in line]
    assert lines[0] == "2024-01-01  2024-03-31  due 2023-12-29"
    assert len(lines) == 4


def test_unknown_client_returns_failure(ledger_env: Path) -> None:
    assert main(["generate", "does-not-exist"]) == 1


def test_bad_backend_is_a_config_error(ledger_env: Path, monkeypatch) -> None:
    monkeypatch.setenv("LEDGER_BACKEND", "oracle")

    assert main(["init-db"]) == 2


def test_unopenable_database_returns_failure(ledger_env: Path, monkeypatch, tmp_path: Path) -> None:
    blocked = tmp_path / "blocked"
    blocked.mkdir()
    monkeypatch.setenv("LEDGER_SQLITE_PATH", str(blocked))

    assert main(["init-db"]) == 1
