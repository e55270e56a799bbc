"""Local logging for chittydna.

Two outputs under ``<data_dir>/logs/``:

- ``local-<date>.log``: the ``chittydna`` logger (all module loggers)
- ``vault-events-<date>.log``: one line per vault-level event (save, load,
  export, import, sync). Lines carry counts and hashes, never content.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from chittydna.config import get_chittydna_home

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _log_dir(data_dir: Optional[Union[str, Path]] = None) -> Path:
    base = Path(data_dir) if data_dir is not None else get_chittydna_home()
    return base / "logs"


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def setup_chittydna_logging(
    level: str = "INFO", data_dir: Optional[Union[str, Path]] = None
) -> logging.Logger:
    """Configure the ``chittydna`` logger.

    Adds a file handler writing to ``logs/local-<date>.log``. At DEBUG a
    console handler is added as well. Calling this again does not add
    duplicate handlers.

    Args:
        level: Log level name (case-insensitive). Unknown names mean INFO.
        data_dir: Root data directory (default: CHITTYDNA_DATA_DIR or ~/.chittycan)

    Returns:
        The configured ``chittydna`` logger
    """
    logger = logging.getLogger("chittydna")

    resolved = getattr(logging, str(level).upper(), None)
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logger.setLevel(resolved)

    log_dir = _log_dir(data_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT)

    if not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        file_handler = logging.FileHandler(log_dir / f"local-{_today()}.log")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in logger.handlers
    )
    if resolved == logging.DEBUG and not has_console:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        logger.addHandler(console)

    return logger


def log_vault_event(
    event_type: str, details: str, data_dir: Optional[Union[str, Path]] = None
) -> None:
    """Append one line to the vault event log."""
    log_dir = _log_dir(data_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now(timezone.utc).isoformat()
    with open(log_dir / f"vault-events-{_today()}.log", "a", encoding="utf-8") as f:
        f.write(f"{timestamp} | {event_type} | {details}\n")


def log_save(workflows: int, content_hash: str, data_dir=None) -> None:
    log_vault_event(
        "save", f"workflows={workflows}, hash={content_hash[:12]}...", data_dir=data_dir
    )


def log_load(workflows: int, data_dir=None) -> None:
    log_vault_event("load", f"workflows={workflows}", data_dir=data_dir)


def log_export(privacy_mode: str, workflows: int, content_hash: str, data_dir=None) -> None:
    log_vault_event(
        "export",
        f"mode={privacy_mode}, workflows={workflows}, hash={content_hash[:12]}...",
        data_dir=data_dir,
    )


def log_import(policy: str, imported: int, errors: int = 0, data_dir=None) -> None:
    log_vault_event(
        "import", f"policy={policy}, imported={imported}, errors={errors}", data_dir=data_dir
    )


def log_sync(synced: int, errors: int = 0, data_dir=None) -> None:
    log_vault_event("sync", f"synced={synced}, errors={errors}", data_dir=data_dir)
