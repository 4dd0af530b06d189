"""
Logging setup for the detection service.

All records go to logs/detector_<date>.log; ERROR and above are also kept in
logs/error_<date>.log. A file that outgrows LOG_MAX_BYTES continues in
detector_<date>_01.log, detector_<date>_02.log, and so on.
"""

import logging
import re
from datetime import date, timedelta
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from bubble_translate.config import Settings, get_settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class DailyRotatingFileHandler(RotatingFileHandler):
    """
    Size-rotating handler whose file name carries the current date.

    The first record of a new day opens a fresh file. Files of this
    base_name dated more than backup_days ago are pruned when the handler
    opens and on every date change.
    """

    def __init__(
        self,
        log_dir: str,
        base_name: str = "detector",
        max_bytes: int = 20 * 1024 * 1024,
        backup_count: int = 10,
        backup_days: int = 14,
        encoding: str = "utf-8",
    ):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.base_name = base_name
        self.backup_days = backup_days
        self._day = date.today()
        self._name_re = re.compile(rf"^{re.escape(base_name)}_(\d{{4}}-\d{{2}}-\d{{2}})(?:_\d+)?\.log$")

        super().__init__(
            filename=str(self._path_for(self._day)),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding=encoding,
        )
        self.prune()

    def _path_for(self, day: date) -> Path:
        return self.log_dir / f"{self.base_name}_{day.isoformat()}.log"

    def shouldRollover(self, record):
        if date.today() != self._day:
            return True
        return super().shouldRollover(record)

    def doRollover(self):
        today = date.today()
        if today == self._day:
            super().doRollover()
            return
        if self.stream:
            self.stream.close()
            self.stream = None
        self._day = today
        self.baseFilename = str(self._path_for(today))
        self.stream = self._open()
        self.prune()

    def rotation_filename(self, default_name):
        # detector_<date>.log.3 -> detector_<date>_03.log
        stem, sep, index = default_name.rpartition(".log.")
        if not sep:
            return default_name
        return f"{stem}_{index.zfill(2)}.log"

    def prune(self) -> int:
        """Delete this handler's files older than backup_days. Returns the count removed."""
        cutoff = date.today() - timedelta(days=self.backup_days)
        removed = 0
        for path in self.log_dir.glob(f"{self.base_name}_*.log"):
            match = self._name_re.match(path.name)
            if not match or date.fromisoformat(match.group(1)) >= cutoff:
                continue
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                logging.getLogger(__name__).warning(f"Could not remove old log file {path}: {e}")
        return removed


def setup_logging(config: Optional[Settings] = None) -> None:
    """
    Configure the root logger from settings.

    Uses LOG_DIR, LOG_LEVEL, LOG_MAX_BYTES, LOG_BACKUP_COUNT, LOG_BACKUP_DAYS,
    LOG_TO_CONSOLE and LOG_QUIET_LOGGERS. Safe to call more than once.
    """
    config = config or get_settings()
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(getattr(logging, config.LOG_LEVEL.upper(), logging.INFO))

    if config.LOG_TO_CONSOLE:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    for base_name, level in (("detector", logging.DEBUG), ("error", logging.ERROR)):
        file_handler = DailyRotatingFileHandler(
            log_dir=config.LOG_DIR,
            base_name=base_name,
            max_bytes=config.LOG_MAX_BYTES,
            backup_count=config.LOG_BACKUP_COUNT,
            backup_days=config.LOG_BACKUP_DAYS,
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        root_logger.addHandler(file_handler)

    # HTTP clients, ONNX and OCR libraries are chatty at INFO
    for name in config.quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        f"Logging initialized, dir: {Path(config.LOG_DIR).absolute()}, level: {config.LOG_LEVEL}"
    )
