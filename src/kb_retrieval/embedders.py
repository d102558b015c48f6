"""Embedding function interface.

The engine does not compute embeddings itself: it consumes fixed-dimension
vectors from an external embedding function, adapted here to one async
interface.
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Sequence
from typing import Protocol, runtime_checkable

EmbeddingFunction = Callable[[str], Sequence[float] | Awaitable[Sequence[float]]]


@runtime_checkable
class Embedder(Protocol):
    """Produces fixed-dimension vectors for text."""

    dimension: int

    async def embed(self, text: str, is_query: bool = True) -> list[float]: ...

    async def embed_batch(self, texts: list[str], is_query: bool = False) -> list[list[float]]: ...


class FunctionEmbedder:
    """Adapts a plain embedding function to the ``Embedder`` interface.

    Synchronous functions run in a worker thread so they do not block the
    event loop; coroutine functions are awaited directly.

    Attributes:
        dimension: Length of every returned vector.
    """

    def __init__(self, fn: EmbeddingFunction, dimension: int) -> None:
        self._fn = fn
        self.dimension = dimension

    async def embed(self, text: str, is_query: bool = True) -> list[float]:
        """Embed one text.

        Raises:
            ValueError: If the function returns a vector of the wrong length.
        """
        if inspect.iscoroutinefunction(self._fn):
            vector = await self._fn(text)
        else:
            vector = await asyncio.to_thread(self._fn, text)
            if inspect.isawaitable(vector):
                vector = await vector
        values = [float(v) for v in vector]
        if len(values) != self.dimension:
            raise ValueError(
                f"Embedding function returned {len(values)} dimensions, expected {self.dimension}"
            )
        return values

    async def embed_batch(self, texts: list[str], is_query: bool = False) -> list[list[float]]:
        return [await self.embed(text, is_query=is_query) for text in texts]
