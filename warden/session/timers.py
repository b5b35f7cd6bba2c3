import asyncio
from collections.abc import Callable


class TimerSet:
    """Named one-shot timers for a single session.

    Scheduling a name that is already pending replaces it. ``cancel_all`` is
    synchronous, so nothing fires after a session has been stopped.
    """

    def __init__(self) -> None:
        self._handles: dict[str, asyncio.TimerHandle] = {}
        self._closed = False

    def schedule(self, name: str, delay: float, callback: Callable[..., None], *args) -> None:
        if self._closed:
            return
        self.cancel(name)
        loop = asyncio.get_running_loop()
        self._handles[name] = loop.call_later(max(0.0, delay), self._fire, name, callback, args)

    def _fire(self, name: str, callback: Callable[..., None], args: tuple) -> None:
        self._handles.pop(name, None)
        callback(*args)

    def cancel(self, name: str) -> None:
        handle = self._handles.pop(name, None)
        if handle:
            handle.cancel()

    def cancel_all(self) -> None:
        self._closed = True
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

    def pending(self, name: str) -> bool:
        return name in self._handles

    @property
    def names(self) -> list[str]:
        return list(self._handles)
