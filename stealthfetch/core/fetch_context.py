"""Per-fetch correlation id.

Each ``fetch_html`` call binds a short id in a contextvars.ContextVar so every
log line emitted while serving it (pool, tabs, navigator, chain) can be
correlated. Tasks spawned from inside the call inherit the id.
"""

import contextvars
import uuid
from contextlib import contextmanager

# Context variable accessible from anywhere in the same async task
fetch_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "fetch_id", default=""
)


def new_fetch_id() -> str:
    return uuid.uuid4().hex[:12]


@contextmanager
def bind_fetch_id(fid: str | None = None):
    """Bind a fetch id for the duration of the block."""
    token = fetch_id_var.set(fid or new_fetch_id())
    try:
        yield fetch_id_var.get()
    finally:
        fetch_id_var.reset(token)


def get_fetch_id() -> str:
    """Get the current fetch id (empty string outside a fetch)."""
    return fetch_id_var.get()
