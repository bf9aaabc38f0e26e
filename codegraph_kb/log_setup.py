import logging
import os
import sys
from datetime import datetime


def setup_logger(log_dir: str = ".codegraph_kb/logs", verbose: bool = False) -> logging.Logger:
    """Creates a file logger for the ``codegraph_kb`` package.

    All verbose output goes to a timestamped file; with *verbose* a console
    handler on stderr shows INFO and above as well.  Safe to call twice:
    existing handlers are replaced.
    """
    os.makedirs(log_dir, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(log_dir, f"codegraph_{timestamp}.log")

    logger = logging.getLogger("codegraph_kb")
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    # File handler: captures everything
    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%H:%M:%S"
    ))
    logger.addHandler(fh)

    if verbose:
        ch = logging.StreamHandler(sys.stderr)
        ch.setLevel(logging.INFO)
        ch.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
        logger.addHandler(ch)

    return logger
