"""
Unified Logger
Zentrales Log für Bridge und Service.

stdout ist für MCP reserviert, daher gehen Konsolen-Logs nach stderr.
Fix: Keine Duplikate durch propagate=False
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

ROOT_LOGGER = "devtools"


class UnifiedFormatter(logging.Formatter):
    def format(self, record):
        name = record.name
        if name.startswith(ROOT_LOGGER + "."):
            name = name[len(ROOT_LOGGER) + 1:]
        if len(name) > 18:
            name = name[:15] + "..."
        record.short_name = name.ljust(18)
        return super().format(record)


LOG_FORMAT = '%(asctime)s|%(levelname)-7s|%(short_name)s|%(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

_initialized = False
_file_handler: Optional[RotatingFileHandler] = None


def setup_unified_logging(log_file: Optional[Path] = None, debug: bool = False) -> Optional[str]:
    global _initialized, _file_handler
    if _initialized:
        return str(_file_handler.baseFilename) if _file_handler else None

    level = logging.DEBUG if debug else logging.INFO
    formatter = UnifiedFormatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(level)
    stderr_handler.setFormatter(formatter)
    root.addHandler(stderr_handler)

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            _file_handler = RotatingFileHandler(
                log_file,
                maxBytes=10 * 1024 * 1024,
                backupCount=3,
                encoding='utf-8'
            )
            _file_handler.setLevel(logging.DEBUG)
            _file_handler.setFormatter(formatter)
            root.addHandler(_file_handler)
        except OSError as e:
            root.warning(f"File logging disabled ({log_file}): {e}")
            _file_handler = None

    root.propagate = False  # Verhindert Duplikate
    _initialized = True
    return str(log_file) if _file_handler else None

