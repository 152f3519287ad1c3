"""Network reachability tracking.

:class:`ConnectivityMonitor` holds the current :class:`ConnectivityState` and notifies
listeners once per transition. Observations come from a periodic TCP probe of the
remote host, or from any other source through :meth:`ConnectivityMonitor.report`.
"""
import asyncio
import enum
import logging
from typing import Callable, List, Optional

from PySide6 import QtCore


class ConnectivityState(enum.StrEnum):
    Online = 'online'
    Offline = 'offline'


class ConnectivityMonitor(QtCore.QObject):
    """Observes reachability of the remote service.

    Signals:
        stateChanged (object): Emitted with the new :class:`ConnectivityState` on every transition.
    """
    stateChanged = QtCore.Signal(object)

    def __init__(self, host: str = 'firestore.googleapis.com', port: int = 443,
                 interval: float = 5.0, timeout: float = 3.0,
                 initial: ConnectivityState = ConnectivityState.Online,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self.host = host
        self.port = port
        self.interval = interval
        self.timeout = timeout

        self._state = initial
        self._callbacks: List[Callable[[ConnectivityState], None]] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._state == ConnectivityState.Online

    def on_change(self, callback: Callable[[ConnectivityState], None]) -> Callable[[], None]:
        """Register a callback for state transitions.

        Returns:
            A function that unregisters the callback.
        """
        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    def report(self, reachable: bool) -> bool:
        """Record a reachability observation.

        Returns:
            True if the observation changed the state.
        """
        state = ConnectivityState.Online if reachable else ConnectivityState.Offline
        if state == self._state:
            return False

        logging.info(f'Connectivity changed: {self._state} -> {state}')
        self._state = state
        for callback in list(self._callbacks):
            callback(state)
        self.stateChanged.emit(state)
        return True

    async def probe(self) -> bool:
        """Return True if a TCP connection to the probe host can be opened."""
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(self.host, self.port), self.timeout)
        except (OSError, asyncio.TimeoutError) as ex:
            logging.debug(f'Probe of {self.host}:{self.port} failed: {ex}')
            return False

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def check(self) -> ConnectivityState:
        """Probe once and record the result."""
        self.report(await self.probe())
        return self._state

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start probing periodically on the running event loop."""
        if self.running:
            return
        logging.debug(f'Probing {self.host}:{self.port} every {self.interval}s')
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
