"""Small typing helpers shared across xmt."""

import inspect
from typing import Any, Awaitable, Callable

from typing_extensions import TypeVar


T = TypeVar("T", default=Any)

MaybeAwaitable = T | Awaitable[T]
MaybeAwaitableCallable = Callable[..., MaybeAwaitable[Any]]


async def resolve(value: MaybeAwaitable[T]) -> T:
    """Await `value` if it is awaitable, return it otherwise."""
    if inspect.isawaitable(value):
        return await value
    return value
