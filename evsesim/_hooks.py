import inspect
import logging
from typing import Any, Callable, Optional


async def invoke(hook: Optional[Callable[..., Any]], *args: Any) -> None:
    """Call a plain or async hook; a failing hook is logged, never raised."""
    if hook is None:
        return
    try:
        result = hook(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logging.exception(f"Hook {getattr(hook, '__name__', hook)!r} failed")
