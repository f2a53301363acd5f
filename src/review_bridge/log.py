"""Component-scoped logging handles.

Components never reach for a module-level singleton to describe what they
are doing. They receive a logger at construction and wrap it with
``component_logger`` so every record carries structured context fields
(``component``, ``app_id``, ``review_id`` ...) in ``record.__dict__``.
"""

import logging
from collections.abc import Mapping, MutableMapping
from typing import Any


class ContextAdapter(logging.LoggerAdapter):
    """LoggerAdapter that merges bound context into each record's extra."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        context = dict(self.extra or {})
        extra = kwargs.get("extra")
        if extra:
            context.update(extra)
        kwargs["extra"] = context
        prefix = " ".join(f"{k}={v}" for k, v in context.items() if k != "component")
        component = context.get("component")
        if component and prefix:
            msg = f"[{component} {prefix}] {msg}"
        elif component:
            msg = f"[{component}] {msg}"
        return msg, kwargs

    def bind(self, **fields: Any) -> "ContextAdapter":
        """Return a child adapter with additional context fields."""
        context = dict(self.extra or {})
        context.update(fields)
        return ContextAdapter(self.logger, context)


def component_logger(
    logger: logging.Logger | logging.LoggerAdapter | None,
    component: str,
    **fields: Any,
) -> ContextAdapter:
    """Wrap a logger with component context.

    Args:
        logger: Base logger or an existing adapter. ``None`` falls back to
            the ``review_bridge.<component>`` logger.
        component: Component name attached to every record.
        **fields: Extra context such as ``app_id``.
    """
    if logger is None:
        return ContextAdapter(logging.getLogger(f"review_bridge.{component}"), {"component": component, **fields})
    if isinstance(logger, ContextAdapter):
        return logger.bind(component=component, **fields)
    if isinstance(logger, logging.LoggerAdapter):
        base: Mapping[str, Any] = logger.extra or {}
        return ContextAdapter(logger.logger, {**base, "component": component, **fields})
    return ContextAdapter(logger, {"component": component, **fields})
