"""
Online/offline mode tracking for nautune.

ModeController owns the active MusicRepository. It combines two inputs
into the effective mode:

    offline  <=>  network unavailable  OR  user pinned offline mode

Only an effective change replaces the repository. Each replacement bumps
the epoch, a counter identifying the repository generation, and notifies
observers through callbacks (subscribe) and per-consumer queues (changes).

Stale results:
    run() tags a call with the epoch it was issued under. If the mode
    changed before the call finished, the result is discarded and
    StaleResultError is raised instead. The call itself is never
    cancelled: it completes (or fails) on the repository it started on.

Connectivity debounce:
    Losing the network is applied immediately. Regaining it is applied
    only after online_debounce seconds, and only if the network is still
    up by then, so a flapping connection does not bounce the UI.

Usage:
    controller = ModeController(client, index)
    controller.subscribe(lambda change: print(change.mode, change.epoch))

    albums = await controller.run(lambda repo: repo.get_albums(library_id))
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from nautune.core.database import DownloadIndex
from nautune.core.exceptions import StaleResultError
from nautune.core.logger import format_mode_message, get_logger
from nautune.jellyfin.client import JellyfinClient
from nautune.repository.base import MusicRepository
from nautune.repository.factory import RepositoryFactory


logger = get_logger(__name__)

T = TypeVar("T")


class Mode(Enum):
    ONLINE = "online"
    OFFLINE = "offline"


@dataclass(frozen=True)
class ModeChange:
    """Notification sent to observers after every effective mode switch."""
    mode: Mode
    epoch: int
    repository: MusicRepository


class ModeController:
    """
    Holds the active repository and switches it when the mode changes.

    Attributes:
        online_debounce: Seconds to wait before going back online, 0 to
                         switch immediately.
    """

    def __init__(
        self,
        client: JellyfinClient | None,
        index: DownloadIndex | None,
        offline_pinned: bool = False,
        network_available: bool = True,
        online_debounce: float = 2.0,
    ) -> None:
        self._client = client
        self._index = index
        self._offline_pinned = offline_pinned
        self._network_available = network_available
        self.online_debounce = online_debounce

        self._epoch = 0
        self._mode = self._effective_mode()
        self._repository = RepositoryFactory.create(
            self._mode is Mode.OFFLINE, self._client, self._index
        )

        self._subscribers: list[Callable[[ModeChange], None]] = []
        self._queues: list[asyncio.Queue[ModeChange]] = []
        self._pending_online: asyncio.TimerHandle | None = None

    # =========================================================================
    # State
    # =========================================================================

    @property
    def mode(self) -> Mode:
        return self._mode

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def repository(self) -> MusicRepository:
        return self._repository

    @property
    def is_offline(self) -> bool:
        return self._mode is Mode.OFFLINE

    @property
    def network_available(self) -> bool:
        return self._network_available

    @property
    def offline_pinned(self) -> bool:
        return self._offline_pinned

    @property
    def is_transitioning(self) -> bool:
        """True while a debounced switch back online is pending."""
        return self._pending_online is not None

    def is_current(self, epoch: int) -> bool:
        return epoch == self._epoch

    def _effective_mode(self) -> Mode:
        if self._offline_pinned or not self._network_available:
            return Mode.OFFLINE
        return Mode.ONLINE

    # =========================================================================
    # Inputs
    # =========================================================================

    def set_offline_pinned(self, pinned: bool) -> None:
        """Pin (or unpin) offline mode. Applied immediately."""
        self._offline_pinned = pinned
        self._apply()

    def set_network_available(self, available: bool) -> None:
        """
        Report a connectivity change.

        Going offline is applied right away and cancels a pending switch
        back online. Coming back online waits online_debounce seconds;
        without a running event loop it is applied immediately.
        """
        self._cancel_pending()

        if available and self._network_available:
            return

        if not available or self.online_debounce <= 0:
            self._network_available = available
            self._apply()
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._network_available = available
            self._apply()
            return

        logger.debug(f"Network back, switching online in {self.online_debounce}s")
        self._pending_online = loop.call_later(self.online_debounce, self._apply_network_up)

    def _apply_network_up(self) -> None:
        self._pending_online = None
        self._network_available = True
        self._apply()

    def _cancel_pending(self) -> None:
        if self._pending_online is not None:
            self._pending_online.cancel()
            self._pending_online = None

    def _apply(self) -> None:
        mode = self._effective_mode()
        if mode is self._mode:
            return

        repository = RepositoryFactory.create(mode is Mode.OFFLINE, self._client, self._index)
        self._mode = mode
        self._repository = repository
        self._epoch += 1

        logger.info(format_mode_message(mode.value, self._epoch, repository.type_name))
        self._notify(ModeChange(mode=mode, epoch=self._epoch, repository=repository))

    # =========================================================================
    # Observers
    # =========================================================================

    def subscribe(self, callback: Callable[[ModeChange], None]) -> Callable[[], None]:
        """
        Register a callback for mode changes.

        Returns:
            A function that removes the callback.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def changes(self) -> AsyncIterator[ModeChange]:
        """
        Iterate over mode changes as they happen.

        Each consumer gets its own queue, registered when iteration starts.

        Example:
            async for change in controller.changes():
                await refresh(change.repository)
        """
        queue: asyncio.Queue[ModeChange] = asyncio.Queue()
        self._queues.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues.remove(queue)

    def _notify(self, change: ModeChange) -> None:
        for queue in list(self._queues):
            queue.put_nowait(change)

        for callback in list(self._subscribers):
            try:
                callback(change)
            except Exception as e:
                logger.error(f"Mode change subscriber failed: {e}", exc_info=True)

    # =========================================================================
    # Calls
    # =========================================================================

    async def run(self, operation: Callable[[MusicRepository], Awaitable[T]]) -> T:
        """
        Run a repository call tagged with the current epoch.

        Raises:
            StaleResultError: If the mode changed while the call was running.
            Any error raised by the call itself, unchanged.
        """
        epoch = self._epoch
        repository = self._repository
        result = await operation(repository)

        if epoch != self._epoch:
            logger.debug(
                f"Discarding {repository.type_name} result from epoch {epoch} "
                f"(current {self._epoch})"
            )
            raise StaleResultError(
                "Result discarded: repository mode changed during the call",
                issued_epoch=epoch,
                current_epoch=self._epoch,
            )
        return result

    def close(self) -> None:
        """Cancel a pending debounced switch."""
        self._cancel_pending()
