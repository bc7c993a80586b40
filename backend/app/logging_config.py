"""Logging setup for the Vroom sync backend."""

import logging
import sys

_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(debug: bool = False) -> None:
    """Configure root logging once for the service process."""
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(logging.DEBUG if debug else logging.INFO)
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_FORMAT))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.INFO)


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the ``vroom`` hierarchy."""
    if not name.startswith("vroom"):
        name = f"vroom.{name}"
    return logging.getLogger(name)


_audit = get_logger("vroom.audit")


def log_sync_operation(
    user_id: str,
    operation: str,
    target: str,
    success: bool,
    error: str | None = None,
) -> None:
    """One-line audit entry for a sync or restore operation."""
    status = "OK" if success else "FAIL"
    message = f"{operation.upper()} | {user_id} | {target} | {status}"
    if error:
        _audit.warning(f"{message} | {error}")
    else:
        _audit.info(message)
