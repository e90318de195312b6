#!/usr/bin/env python
# coding: utf-8


"""
Package logger for methmix.

One logger named ``methmix`` is shared by every module. At import it only
writes to stdout; the run log file is attached by the configuration
(:class:`methmix.config.config_manager.AnalysisConfig`) from
``global_settings.output_dir`` and follows that setting whenever it changes.

Features
--------
- Run log files under ``<output_dir>/log/``, created lazily on the first
  record so that importing the package never touches the filesystem
- Level taken from ``global_settings.log_level``
- :meth:`ProgressAwareLogger.track` wraps the K sweep and bootstrap loops in
  a ``tqdm`` bar; any log record closes the open bar before it is emitted
"""


from __future__ import annotations

import logging
import os
import sys
from datetime import datetime
from typing import Iterable, Iterator, Optional, TypeVar, Union

from tqdm import tqdm

T = TypeVar("T")

LOGGER_NAME = "methmix"

_FORMATTER = logging.Formatter(
    "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class RunLogHandler(logging.FileHandler):
    """
    File handler writing to ``<output_dir>/log/<name>_<timestamp>.log``.

    The directory and file are created when the first record arrives.
    """

    def __init__(self, output_dir: Union[str, os.PathLike], name: str = LOGGER_NAME):
        self.output_dir = os.fspath(output_dir)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = os.path.join(self.output_dir, "log", f"{name}_{timestamp}.log")
        super().__init__(log_file, encoding="utf-8", delay=True)

    def _open(self):
        os.makedirs(os.path.dirname(self.baseFilename), exist_ok=True)
        return super()._open()


class ProgressAwareLogger(logging.Logger):
    """Logger that owns at most one tqdm bar and knows its run log handler."""

    def __init__(self, name: str, level: int = logging.NOTSET) -> None:
        super().__init__(name, level)
        self._pbar: Optional[tqdm] = None

    def _close_pbar(self) -> None:
        if self._pbar is not None:
            self._pbar.close()
            self._pbar = None

    def handle(self, record: logging.LogRecord) -> None:
        self._close_pbar()
        super().handle(record)

    def track(
        self, iterable: Iterable[T], desc: str, total: Optional[int] = None
    ) -> Iterator[T]:
        """
        Iterate over ``iterable`` while showing a progress bar.

        The bar is closed when the loop ends, when it is abandoned, or when
        a record is logged from inside the loop.

        Examples
        --------
        >>> for k in logger.track([1, 2, 3], "Factorization sweep"):
        ...     fit(k)
        """
        if total is None and hasattr(iterable, "__len__"):
            total = len(iterable)
        self._close_pbar()
        self._pbar = tqdm(
            total=total, desc=desc, bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt}"
        )
        try:
            for item in iterable:
                yield item
                if self._pbar is not None:
                    self._pbar.update(1)
        finally:
            self._close_pbar()

    @property
    def run_log_handler(self) -> Optional[RunLogHandler]:
        for handler in self.handlers:
            if isinstance(handler, RunLogHandler):
                return handler
        return None

    @property
    def log_file(self) -> Optional[str]:
        """Path of the current run log, or ``None`` without file logging."""
        handler = self.run_log_handler
        return handler.baseFilename if handler is not None else None

    def set_output_dir(
        self, output_dir: Optional[Union[str, os.PathLike]]
    ) -> Optional[RunLogHandler]:
        """
        Point the run log at ``<output_dir>/log/``.

        Keeps the current handler when it already writes there, replaces it
        otherwise. ``None`` detaches file logging.
        """
        current = self.run_log_handler
        if output_dir is not None and current is not None:
            if current.output_dir == os.fspath(output_dir):
                return current
        if current is not None:
            self.removeHandler(current)
            current.close()
        if output_dir is None:
            return None
        handler = RunLogHandler(output_dir, name=self.name)
        handler.setFormatter(_FORMATTER)
        self.addHandler(handler)
        return handler


logging.setLoggerClass(ProgressAwareLogger)


def _configure_logger(
    name: str = LOGGER_NAME,
    output_dir: Optional[Union[str, os.PathLike]] = None,
    level: Union[int, str] = logging.INFO,
) -> ProgressAwareLogger:
    """
    Return the named logger with a stdout handler attached once.

    Parameters
    ----------
    name : str, default "methmix"
        Logger name.
    output_dir : str or PathLike, optional
        When given, records are also written under ``<output_dir>/log/``.
    level : int or str, default INFO
        Logger level.
    """
    log = logging.getLogger(name)
    log.setLevel(level)

    if not any(type(h) is logging.StreamHandler for h in log.handlers):
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(_FORMATTER)
        log.addHandler(console)

    if output_dir is not None:
        log.set_output_dir(output_dir)
    return log


def apply_global_settings(settings: dict) -> None:
    """
    Apply the logging keys of the ``global_settings`` config section.

    ``output_dir`` selects the run log directory (file logging is detached
    when ``log_to_file`` is false) and ``log_level`` sets the level.
    """
    logger.setLevel(settings.get("log_level", "INFO"))
    if settings.get("log_to_file", True):
        logger.set_output_dir(settings.get("output_dir", "output"))
    else:
        logger.set_output_dir(None)


logger = _configure_logger()


def get_logger(name: str = LOGGER_NAME) -> logging.Logger:
    """Return the package logger."""
    return logging.getLogger(name)
