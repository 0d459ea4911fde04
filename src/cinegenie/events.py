"""Invalidate-all notification for views that list stored assets."""

import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class AssetEvents:
    """Coarse "assets changed" signal.

    Subscribers receive no payload and are expected to re-fetch the full asset
    listing.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register `listener` and return a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self) -> None:
        logger.debug("assets-changed -> %d listener(s)", len(self._listeners))
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                # listener errors never propagate to the store operation
                logger.exception("Asset listener %r failed", listener)
