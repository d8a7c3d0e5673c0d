"""Connectivity monitor: an online flag callers can watch."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from healthsync.core.stream import ObservableValue, Subscription

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """Tracks whether the remote service is believed reachable.

    The platform (or a probe) calls :meth:`set_online`; interested parties
    subscribe and get the current flag immediately plus every change.
    Reconnect hooks fire only on an offline -> online transition.
    """

    def __init__(
        self,
        online: bool = True,
        *,
        probe: Callable[[], Awaitable[bool]] | None = None,
    ) -> None:
        self._online = ObservableValue(online)
        self._probe = probe
        self._reconnect_hooks: list[Callable[[], None]] = []

    @property
    def is_online(self) -> bool:
        return self._online.value

    def set_online(self, online: bool) -> None:
        was_online = self._online.value
        self._online.set(online)
        if online == was_online:
            return
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        if online:
            for hook in list(self._reconnect_hooks):
                try:
                    hook()
                except Exception:
                    logger.exception("Reconnect hook failed")

    def subscribe(self, callback: Callable[[bool], None]) -> Subscription:
        return self._online.subscribe(callback)

    def on_reconnect(self, hook: Callable[[], None]) -> None:
        """Register a callback for the offline -> online transition."""
        self._reconnect_hooks.append(hook)

    async def check(self) -> bool:
        """Run the probe (if any) and update the flag from its answer."""
        if self._probe is None:
            return self.is_online
        try:
            online = await self._probe()
        except Exception:
            logger.warning("Connectivity probe failed", exc_info=True)
            online = False
        self.set_online(online)
        return online
