# src/devenv/core/ctx.py
from __future__ import annotations
import contextlib
import contextvars
from typing import Iterator, Optional, Mapping

_phase    = contextvars.ContextVar("phase",    default=None)
_service  = contextvars.ContextVar("service",  default=None)
_resource = contextvars.ContextVar("resource", default=None)


def get_ctx() -> Mapping[str, Optional[str]]:
    return {
        "phase":    _phase.get(),
        "service":  _service.get(),
        "resource": _resource.get(),
    }

@contextlib.contextmanager
def log_ctx(**fields: Optional[str]) -> Iterator[None]:
    """Bind context fields for the duration of a block (task-local under asyncio)."""
    tokens = []
    for name, value in fields.items():
        var = {"phase": _phase, "service": _service, "resource": _resource}[name]
        tokens.append((var, var.set(value)))
    try:
        yield
    finally:
        for var, tok in reversed(tokens):
            var.reset(tok)
