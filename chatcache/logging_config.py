"""
Process-wide logging for the chatcache service.

`setup_logging()` is called once from `main.py`. Modules import `logger`
and never configure handlers themselves.
"""

import datetime
import logging
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .settings import settings

LOGGER_NAME = "chatcache"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
KEEP_DAYS = 7

_configured = False


def _zone(name: str | None) -> datetime.tzinfo:
    if name:
        try:
            return ZoneInfo(name)
        except ZoneInfoNotFoundError:
            pass
    return datetime.datetime.now().astimezone().tzinfo or datetime.timezone.utc


class ZonedFormatter(logging.Formatter):
    """Renders `asctime` in LOG_TIMEZONE, or in the host zone when unset."""

    def __init__(self, fmt: str = LOG_FORMAT, *, timezone_name: str | None = None):
        super().__init__(fmt)
        self.zone = _zone(timezone_name)

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        stamp = datetime.datetime.fromtimestamp(record.created, tz=self.zone)
        return stamp.strftime(datefmt) if datefmt else stamp.isoformat(timespec="milliseconds")


class DatedFileHandler(logging.Handler):
    """
    One file per calendar day, `<directory>/<prefix>-YYYY-MM-DD.log`.
    Only the newest `keep` files survive a day change.
    """

    def __init__(self, directory: Path, *, prefix: str = LOGGER_NAME, keep: int = KEEP_DAYS):
        super().__init__()
        self.directory = directory
        self.prefix = prefix
        self.keep = keep
        self._day: datetime.date | None = None
        self._file = None
        self._open_for_today()

    def filename(self, day: datetime.date) -> Path:
        return self.directory / f"{self.prefix}-{day.isoformat()}.log"

    def _drop_old_files(self) -> None:
        if self.keep <= 0:
            return
        ours = sorted(self.directory.glob(f"{self.prefix}-*.log"))
        for stale in ours[: max(0, len(ours) - self.keep)]:
            try:
                stale.unlink()
            except OSError:
                continue

    def _open_for_today(self) -> None:
        today = datetime.date.today()
        if self._file is not None and self._day == today:
            return
        if self._file is not None:
            self._file.close()
        self.directory.mkdir(parents=True, exist_ok=True)
        self._file = open(self.filename(today), "a", encoding="utf-8")
        self._day = today
        self._drop_old_files()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            text = self.format(record)
            self._open_for_today()
            self._file.write(text + "\n")
            self._file.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        try:
            if self._file is not None:
                self._file.close()
                self._file = None
        finally:
            super().close()


def setup_logging() -> None:
    """
    Configure logging once per process.

    The "chatcache" logger writes to a dated file under LOG_DIR and
    propagates to the root logger, whose console handler also carries
    uvicorn's records.
    """
    global _configured
    if _configured:
        return

    level = logging.getLevelName(str(settings.log_level).upper())
    if not isinstance(level, int):
        level = logging.INFO
    formatter = ZonedFormatter(timezone_name=settings.log_timezone)

    file_handler = DatedFileHandler(Path(settings.log_dir))
    file_handler.setFormatter(formatter)

    service_logger = logging.getLogger(LOGGER_NAME)
    service_logger.setLevel(level)
    service_logger.addHandler(file_handler)

    root = logging.getLogger()
    root.setLevel(level)
    if not any(type(handler) is logging.StreamHandler for handler in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)

    _configured = True


logger = logging.getLogger(LOGGER_NAME)
