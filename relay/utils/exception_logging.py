"""
Helpers for logging and rendering upstream failures together with their cause chain.
"""

import logging


def _safe_str(obj) -> str:
    """
    Safely convert an object to string, handling cases where __str__ or __repr__ might fail.
    """
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} object (string conversion failed)>"


def iter_causes(exception: BaseException, limit: int = 10):
    """Yield the exception followed by its ``__cause__``/``__context__`` chain."""
    seen = set()
    current = exception
    while current is not None and id(current) not in seen and len(seen) < limit:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def format_exception_message(exception: BaseException) -> str:
    """
    Format an exception and its causes as ``Type: message <- Type: message``.
    Never raises, even for exceptions whose ``__str__`` is broken.
    """
    if exception is None:
        return "None"
    parts = []
    for exc in iter_causes(exception):
        message = _safe_str(exc)
        name = type(exc).__name__
        parts.append(f"{name}: {message}" if message else name)
    return " <- ".join(parts)


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception with its cause chain. Logging failures are swallowed so a
    broken exception object can never turn an error response into a crash.
    """
    try:
        logger.log(
            level,
            f"{prefix} {format_exception_message(exception)}",
            exc_info=exception if exception is not None else False,
        )
    except Exception:
        try:
            logger.log(level, f"{prefix} Exception (logging failed)")
        except Exception:
            pass
