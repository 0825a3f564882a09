import logging
import os
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path


LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s - %(message)s"


class ConfigError(Exception):
    """Raised when required configuration is missing."""


def configure_logging(log_name: str, logger_name: str, logs_dir: Path = Path("logs")) -> logging.Logger:
    logs_dir.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(LOG_FORMAT)
    file_handler = TimedRotatingFileHandler(
        logs_dir / f"{log_name}.log",
        when="midnight",
        interval=1,
        backupCount=30,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)
    root_logger.handlers.clear()
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    for named_logger in ("uvicorn", "uvicorn.access", "uvicorn.error", "fastapi"):
        named = logging.getLogger(named_logger)
        named.handlers.clear()
        named.propagate = True

    return logging.getLogger(logger_name)


def get_required_env(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise ConfigError(f"Missing required environment variable: {name}")
    return value


def get_env_int(name: str, default: int | None = None) -> int:
    raw = os.getenv(name)
    if raw in (None, ""):
        if default is None:
            raise ConfigError(f"Missing required environment variable: {name}")
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {name}: {raw}") from exc


def resolve_sql_credentials(read_only: bool = False) -> tuple[str, str, str]:
    if read_only:
        ro_username = os.getenv("SQL_RO_USERNAME", "").strip()
        ro_password = os.getenv("SQL_RO_PASSWORD", "")
        if ro_username and ro_password:
            return ro_username, ro_password, "ro"

    return get_required_env("SQL_USERNAME"), get_required_env("SQL_PASSWORD"), "rw"


def get_sql_connection_string(read_only: bool = False) -> str:
    username, password, _ = resolve_sql_credentials(read_only)
    return (
        "DRIVER={ODBC Driver 18 for SQL Server};"
        f"SERVER={get_required_env('SQL_SERVER')};"
        f"DATABASE={get_required_env('SQL_DATABASE')};"
        f"UID={username};"
        f"PWD={password};"
        "Encrypt=yes;"
        "TrustServerCertificate=no;"
        "Connection Timeout=15;"
    )


def get_ledger_backend() -> str:
    backend = os.getenv("LEDGER_BACKEND", "sqlite").strip().lower() or "sqlite"
    if backend not in {"sqlite", "mssql"}:
        raise ConfigError(f"LEDGER_BACKEND must be 'sqlite' or 'mssql', got {backend!r}")
    return backend


def get_sqlite_path() -> Path:
    return Path(os.getenv("LEDGER_SQLITE_PATH", "data/ledger.sqlite"))


def get_documents_dir() -> Path:
    return Path(os.getenv("DOCUMENTS_DIR", "data/documents"))
