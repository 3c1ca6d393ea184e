"""
Middleware registry - before/after hooks around CRUD operations.

Handlers are registered per (hook, operation), optionally scoped to one
entity. Global ("*") handlers run before entity handlers; each group runs
in registration order.

Usage:
    middleware = MiddlewareRegistry()

    def stamp(ctx):
        ctx.data["createdBy"] = ctx.user.id

    middleware.register("before", "create", stamp, entity="Post")

    def soft_delete(ctx):
        ctx.soft_delete = True
        ctx.data = {"deletedAt": datetime.now(timezone.utc)}

    middleware.register("before", "delete", soft_delete)

A handler may be sync or async. Returning a non-None value replaces the
context; setting ctx.abort stops the chain (and, in a before hook,
short-circuits the operation with ctx.result).
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from ..core.errors import MiddlewareError

logger = logging.getLogger(__name__)

HOOKS = ("before", "after")
OPERATIONS = ("create", "update", "upsert", "upsert_many", "delete", "get", "get_many", "count")
GLOBAL = "*"

Handler = Callable[["HookContext"], Any]


@dataclass
class HookContext:
    """
    Mutable state threaded through one hook chain.

    Operation-specific inputs live in the named fields (query, take, ...);
    anything else a handler wants to pass along goes into extra.
    """
    entity: str
    operation: str
    hook: str
    user: Any = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    data: Any = None
    id: Any = None
    result: Any = None

    query: Any = None
    include: Any = None
    fields: Optional[str] = None
    take: Optional[int] = None
    offset: Optional[int] = None
    sort_by: Optional[str] = None
    sort_order: Optional[str] = None
    unique_key: Any = None
    options: dict[str, Any] = field(default_factory=dict)

    abort: bool = False
    skip: bool = False
    soft_delete: bool = False

    extra: dict[str, Any] = field(default_factory=dict)


class MiddlewareRegistry:
    """
    Explicit registry of hook handlers. One per orchestrator.
    """

    def __init__(self):
        self._handlers: dict[tuple[str, str, str], list[Handler]] = {}

    def register(self, hook: str, operation: str, handler: Handler, entity: str = GLOBAL) -> None:
        """
        Register a handler.

        Args:
            hook: "before" or "after"
            operation: One of OPERATIONS
            handler: Callable taking a HookContext (sync or async)
            entity: Entity name, or "*" for every entity

        Raises:
            MiddlewareError: Invalid hook, operation or handler
        """
        if hook not in HOOKS:
            raise MiddlewareError(f"Invalid hook '{hook}'. Must be one of: {', '.join(HOOKS)}")
        if operation not in OPERATIONS:
            raise MiddlewareError(
                f"Invalid operation '{operation}'. Must be one of: {', '.join(OPERATIONS)}"
            )
        if not callable(handler):
            raise MiddlewareError("Middleware must be callable")

        self._handlers.setdefault((hook, operation, entity), []).append(handler)
        logger.info(f"Registered {hook}:{operation} middleware for {entity}: {getattr(handler, '__name__', handler)}")

    def use(self, hook: str, operation: str, entity: str = GLOBAL) -> Callable[[Handler], Handler]:
        """
        Decorator form of register().

        Example:
            @middleware.use("after", "get", entity="User")
            def hide_email(ctx): ...
        """
        def decorator(handler: Handler) -> Handler:
            self.register(hook, operation, handler, entity)
            return handler
        return decorator

    def remove(self, hook: str, operation: str, handler: Handler, entity: str = GLOBAL) -> bool:
        handlers = self._handlers.get((hook, operation, entity))
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        return True

    def clear(
        self,
        hook: Optional[str] = None,
        operation: Optional[str] = None,
        entity: Optional[str] = None,
    ) -> None:
        """Clear every handler, or those matching the given hook/operation/entity."""
        if hook is None and operation is None and entity is None:
            self._handlers.clear()
            return
        for key in list(self._handlers):
            h, op, ent = key
            if (hook is None or h == hook) and (operation is None or op == operation) and (
                entity is None or ent == entity
            ):
                del self._handlers[key]

    def handlers(self, hook: str, operation: str, entity: str) -> list[Handler]:
        """Global handlers first, then entity handlers."""
        result = list(self._handlers.get((hook, operation, GLOBAL), []))
        if entity != GLOBAL:
            result.extend(self._handlers.get((hook, operation, entity), []))
        return result

    def create_context(
        self,
        entity: str,
        operation: str,
        hook: str,
        user: Any = None,
        **params: Any,
    ) -> HookContext:
        return HookContext(entity=entity, operation=operation, hook=hook, user=user, **params)

    async def execute(self, hook: str, operation: str, context: HookContext) -> HookContext:
        """
        Run the chain for context.entity.

        Returns:
            The (possibly replaced) context
        """
        ctx = context
        for handler in self.handlers(hook, operation, context.entity):
            returned = handler(ctx)
            if inspect.isawaitable(returned):
                returned = await returned
            if returned is not None:
                ctx = returned
            if ctx.abort:
                logger.debug(f"{hook}:{operation} chain aborted for {context.entity}")
                break
        return ctx
