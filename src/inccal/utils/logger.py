#########################################################################################
##
##                                 LOGGER MANAGER
##                                (utils/logger.py)
##
##         Process-wide access point for the package loggers. All loggers are
##         children of the 'inccal' root logger, so a single handler controls
##         where estimator, optimizer and solver messages end up.
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

import logging
import sys


# CONSTANTS =============================================================================

ROOT_LOGGER_NAME = "inccal"

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_DATE_FORMAT = "%H:%M:%S"


# CLASS =================================================================================

class LoggerManager:
    """Singleton managing the ``inccal`` logger hierarchy.

    The first instantiation attaches a stream handler to the package root
    logger; later instantiations return the same object.

    Example
    -------
    .. code-block:: python

        log = LoggerManager().get_logger("estimator")
        log.info("batch accepted")

        # route everything to a file at DEBUG level
        LoggerManager().configure(level=logging.DEBUG, output="run.log")
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance


    def __init__(self):
        if self._initialized:
            return

        self._root = logging.getLogger(ROOT_LOGGER_NAME)
        self._root.propagate = False
        self._handler = None
        self._initialized = True

        self.configure()


    @property
    def root(self) -> logging.Logger:
        """The package root logger."""
        return self._root


    def configure(
        self,
        enabled: bool = True,
        level: int = logging.INFO,
        output: str | None = None,
        fmt: str = DEFAULT_FORMAT,
        date_format: str = DEFAULT_DATE_FORMAT,
    ) -> None:
        """(Re)configure the package root logger.

        Parameters
        ----------
        enabled : bool
            If ``False`` all package logging is silenced.
        level : int
            Logging level of the package root logger.
        output : str, optional
            File path to log into; ``None`` logs to ``stdout``.
        fmt : str
            Record format string.
        date_format : str
            Timestamp format string.
        """
        if self._handler is not None:
            self._root.removeHandler(self._handler)
            self._handler.close()

        if output is None:
            self._handler = logging.StreamHandler(sys.stdout)
        else:
            self._handler = logging.FileHandler(output)

        self._handler.setFormatter(logging.Formatter(fmt, datefmt=date_format))
        self._root.addHandler(self._handler)

        # children inherit the effective level
        self._root.setLevel(level if enabled else logging.CRITICAL + 1)


    def get_logger(self, name: str) -> logging.Logger:
        """Return the child logger ``inccal.<name>``."""
        return self._root.getChild(name)


    def set_level(self, level: int) -> None:
        """Set the level of the package root logger."""
        self._root.setLevel(level)
