"""Logging setup for clinical survival runs.

Every run writes its logs under ``<output_dir>/logs``:

    main_<ts>.log         everything at DEBUG and above
    performance_<ts>.log  timings and headline metrics (log_performance)
    warnings_<ts>.log     WARNING and above, including tallied library warnings
    debug_<ts>.log        only when the console level is DEBUG

Example:
    >>> logger = setup_logging("outputs/run1/logs")
    >>> log_performance(logger, "Bootstrap validation", n_defined=198, mean_cindex=0.7112)
    >>> shutdown_logging(logger)
"""
import logging
import sys
import warnings
from collections import Counter
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional

from clinical_survival.errors import DegenerateResampleWarning

LOGGER_NAME = "clinical_survival"

DETAILED_FORMAT = logging.Formatter(
    fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
PERFORMANCE_FORMAT = logging.Formatter(fmt="%(asctime)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
CONSOLE_FORMAT = logging.Formatter(fmt="%(levelname)-8s | %(message)s")


class PerformanceFilter(logging.Filter):
    """Passes only records emitted through log_performance."""

    def filter(self, record):
        return getattr(record, "is_performance", False)


# stem -> (level, formatter, performance-only)
LOG_FILES = {
    "main": (logging.DEBUG, DETAILED_FORMAT, False),
    "performance": (logging.INFO, PERFORMANCE_FORMAT, True),
    "warnings": (logging.WARNING, DETAILED_FORMAT, False),
}


def _file_handler(path: Path, level: int, formatter: logging.Formatter) -> logging.FileHandler:
    handler = logging.FileHandler(path, mode="w", encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    log_dir,
    log_level: int = logging.INFO,
    console_output: bool = True
) -> logging.Logger:
    """Configure the clinical_survival logger for one run.

    Any handlers left from a previous run are closed first, so repeated calls
    in one process never duplicate output.

    Args:
        log_dir: Directory for log files (created if missing)
        log_level: Console level; DEBUG also adds a debug log file
        console_output: Whether to echo records to stdout

    Returns:
        The configured clinical_survival logger
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")

    logger = logging.getLogger(LOGGER_NAME)
    shutdown_logging(logger)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    if console_output:
        console = logging.StreamHandler(sys.stdout)
        console.setLevel(log_level)
        console.setFormatter(CONSOLE_FORMAT)
        logger.addHandler(console)

    files = dict(LOG_FILES)
    if log_level == logging.DEBUG:
        files["debug"] = (logging.DEBUG, DETAILED_FORMAT, False)
    for stem, (level, formatter, performance_only) in files.items():
        handler = _file_handler(log_dir / f"{stem}_{timestamp}.log", level, formatter)
        if performance_only:
            handler.addFilter(PerformanceFilter())
        logger.addHandler(handler)

    logger.info(f"Log directory: {log_dir.absolute()}")
    return logger


def shutdown_logging(logger: logging.Logger):
    """Flush, close and detach every handler of the logger."""
    for handler in list(logger.handlers):
        handler.flush()
        handler.close()
        logger.removeHandler(handler)


def log_performance(logger: logging.Logger, message: str, **metrics):
    """Log a timing or metric line to the main and performance logs.

    Example:
        >>> log_performance(logger, "Train/test validation", cindex=0.71, n_test=150)
        # "Train/test validation | cindex=0.71 | n_test=150"
    """
    parts = [message] + [f"{k}={v}" for k, v in metrics.items()]
    logger.info(" | ".join(parts), extra={"is_performance": True})


class WarningLogger:
    """Tallies library and pipeline warnings by category.

    Degenerate bootstrap draws and optimiser convergence problems are
    recognised by warning class; anything else falls back to keywords in
    the message.
    """

    KEYWORDS = (
        ("resampling", ("out-of-bag", "resample")),
        ("convergence", ("did not converge", "convergence", "maximum iterations", "step size")),
        ("numerical", ("overflow", "underflow", "invalid value", "divide by zero")),
        ("statistical", ("hessian", "variance_matrix", "low variance", "collinear")),
    )

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.counts = Counter()

    def categorize(self, message, warning_class=UserWarning) -> str:
        if issubclass(warning_class, DegenerateResampleWarning):
            return "resampling"
        if warning_class.__name__ == "ConvergenceWarning":
            return "convergence"
        text = str(message).lower()
        for category, keywords in self.KEYWORDS:
            if any(kw in text for kw in keywords):
                return category
        return "other"

    def record(self, message, warning_class=UserWarning) -> str:
        category = self.categorize(message, warning_class)
        self.counts[category] += 1
        self.logger.warning(f"[{category}] {warning_class.__name__}: {message}")
        return category

    def summary(self) -> dict:
        """Counts per category that occurred at least once."""
        return dict(self.counts)


@contextmanager
def capture_warnings(logger: logging.Logger):
    """Collect every warning raised in the block and log it by category.

    Warnings are recorded with the "always" filter, so repeated messages
    (one per degenerate bootstrap iteration) are each counted.

    Yields:
        WarningLogger whose counts are complete once the block exits

    Example:
        >>> with capture_warnings(logger) as tally:
        ...     bootstrap_validate(canonical, model, context)
        >>> tally.summary()
        {'resampling': 2}
    """
    tally = WarningLogger(logger)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        try:
            yield tally
        finally:
            for w in caught:
                tally.record(w.message, w.category)
            if tally.counts:
                logger.info("Warning summary: " + ", ".join(f"{k}={v}" for k, v in tally.counts.items()))


class ProgressLogger:
    """Periodic progress lines for a fixed number of iterations.

    Example:
        >>> progress = ProgressLogger(logger, total=200, desc="Bootstrap (cox_ph)")
        >>> for i in range(200):
        ...     progress.update()
        # "Bootstrap (cox_ph): 20/200 (10%)" every 20 iterations
    """

    def __init__(self, logger: logging.Logger, total: int, desc: str, log_every: Optional[int] = None):
        self.logger = logger
        self.total = total
        self.desc = desc
        self.log_every = log_every or max(1, total // 10)
        self.current = 0

    def update(self, n: int = 1, **metrics):
        previous, self.current = self.current, self.current + n
        crossed = self.current // self.log_every > previous // self.log_every
        if not (crossed or self.current >= self.total):
            return
        msg = f"{self.desc}: {self.current}/{self.total} ({100 * self.current / self.total:.0f}%)"
        if metrics:
            msg += " | " + ", ".join(f"{k}={v}" for k, v in metrics.items())
        self.logger.info(msg)
