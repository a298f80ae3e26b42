import logging
import sys


def configure_logging(level: str = "INFO") -> None:
    """Single stdout handler on the package logger; leaves the root logger alone."""
    pkg = logging.getLogger("vaultseed")
    pkg.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in pkg.handlers[:]:
        pkg.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    pkg.addHandler(handler)
