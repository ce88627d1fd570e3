import inspect
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger("galley.progress")

ProgressReporter = Optional[Callable[[Any], Any]]


async def emit_progress(reporter: ProgressReporter, event: Any):
    """Deliver one progress event; reporters may be plain or async callables."""
    if reporter is None:
        return
    try:
        maybe = reporter(event)
        if inspect.isawaitable(maybe):
            await maybe
    except Exception:
        logger.exception("progress reporter failed phase=%s", getattr(event, "phase", "?"))
