"""Adapter registry keyed by source kind."""

import logging

from floodgate.adapters.base import AdapterNotFoundError, SourceAdapter

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Maps a Source.kind to the adapter that ingests it.

    The scheduler resolves adapters through this registry once per job
    instead of branching on source slugs.
    """

    def __init__(self, adapters: list[SourceAdapter] | None = None) -> None:
        self._adapters: dict[str, SourceAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: SourceAdapter) -> None:
        """Register an adapter under its kind, replacing any previous one.

        Raises:
            TypeError: If the object does not satisfy SourceAdapter.
        """
        if not isinstance(adapter, SourceAdapter):
            raise TypeError(f"{type(adapter).__name__} does not implement SourceAdapter")
        if adapter.kind in self._adapters:
            logger.warning(f"Replacing adapter for kind '{adapter.kind}'")
        self._adapters[adapter.kind] = adapter

    def get(self, kind: str, source_name: str = "") -> SourceAdapter:
        """Look up the adapter for a kind.

        Raises:
            AdapterNotFoundError: If nothing is registered for the kind.
        """
        try:
            return self._adapters[kind]
        except KeyError:
            raise AdapterNotFoundError(source_name or kind, kind) from None

    @property
    def kinds(self) -> list[str]:
        return sorted(self._adapters)

    def __contains__(self, kind: object) -> bool:
        return kind in self._adapters

    async def close(self) -> None:
        """Close every adapter that holds resources."""
        for adapter in self._adapters.values():
            close = getattr(adapter, "close", None)
            if close is not None:
                await close()


__all__ = ["AdapterRegistry"]
