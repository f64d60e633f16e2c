"""Routing of queued mutations to the remote-service handlers that replay them."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Union

from .errors import DispatchError
from .models import MutationType, QueueItem, ResourceKind

Handler = Callable[[QueueItem], Awaitable[Any]]
Dispatcher = Callable[[QueueItem], Awaitable[Any]]


def _route(mutation: Union[MutationType, str], resource: Union[ResourceKind, str]) -> tuple[MutationType, ResourceKind]:
    return MutationType(mutation), ResourceKind(resource)


class DispatchRegistry:
    """Maps ``(mutation type, resource)`` to an async handler.

    Usable directly as the offline queue's dispatcher::

        registry = DispatchRegistry()

        @registry.handler("create", "credential")
        async def push_credential(item: QueueItem) -> None:
            await client.post("/credentials", json=item.data)
    """

    def __init__(self) -> None:
        self._handlers: dict[tuple[MutationType, ResourceKind], Handler] = {}

    def register(
        self,
        mutation: Union[MutationType, str],
        resource: Union[ResourceKind, str],
        handler: Handler,
    ) -> None:
        self._handlers[_route(mutation, resource)] = handler

    def handler(
        self,
        mutation: Union[MutationType, str],
        resource: Union[ResourceKind, str],
    ) -> Callable[[Handler], Handler]:
        def decorator(func: Handler) -> Handler:
            self.register(mutation, resource, func)
            return func

        return decorator

    def has_handler(self, mutation: Union[MutationType, str], resource: Union[ResourceKind, str]) -> bool:
        return _route(mutation, resource) in self._handlers

    async def __call__(self, item: QueueItem) -> Any:
        handler = self._handlers.get((item.type, item.resource))
        if handler is None:
            raise DispatchError(f"no handler for {item.type.value} {item.resource.value}")
        return await handler(item)
