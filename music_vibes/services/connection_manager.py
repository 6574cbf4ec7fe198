# music_vibes/services/connection_manager.py
# Keeps exactly one usable server link alive: external server first, own server as fallback.
from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Union

from music_vibes.devices.link import ConnectTimeout, EventSink, LinkError, ServerLink, TransportFailure
from music_vibes.devices.local_server import DEFAULT_HOST, DEFAULT_PORT, LocalDeviceServer
from music_vibes.devices.registry import DevicesReset

_LOG = logging.getLogger(__name__)


# ---------- States ----------

@dataclass(frozen=True)
class Disconnected:
    reason: str = ""


@dataclass(frozen=True)
class ConnectingToServer:
    url: str


@dataclass(frozen=True)
class Connected:
    link: ServerLink


@dataclass(frozen=True)
class HostingOwnServer:
    server: LocalDeviceServer
    link: ServerLink


ConnectionState = Union[Disconnected, ConnectingToServer, Connected, HostingOwnServer]
Listener = Callable[[ConnectionState], None]
LinkFactory = Callable[[str], Awaitable[ServerLink]]
ServerFactory = Callable[[str, int], Awaitable[LocalDeviceServer]]


def _describe(state: ConnectionState) -> str:
    if isinstance(state, ConnectingToServer):
        return f"ConnectingToServer({state.url})"
    if isinstance(state, Connected):
        return f"Connected({state.link.url})"
    if isinstance(state, HostingOwnServer):
        return f"HostingOwnServer({state.server.url})"
    return f"Disconnected({state.reason})" if state.reason else "Disconnected"


class Backoff:
    """Bounded exponential delay between reconnect attempts."""

    def __init__(self, initial: float = 0.5, maximum: float = 10.0, factor: float = 2.0):
        self.initial = float(initial)
        self.maximum = float(maximum)
        self.factor = float(factor)
        self._next = self.initial

    def next(self) -> float:
        delay = self._next
        self._next = min(self.maximum, self._next * self.factor)
        return delay

    def reset(self) -> None:
        self._next = self.initial


async def start_local_server(host: str, port: int) -> LocalDeviceServer:
    try:
        return await LocalDeviceServer(host, port).start()
    except OSError as e:
        if port == 0:
            raise
        _LOG.warning("Port %d on %s is taken (%s), hosting on an ephemeral port", port, host, e)
        return await LocalDeviceServer(host, 0).start()


class ConnectionManager:
    """
    Connection state machine.

        Disconnected -> ConnectingToServer -> Connected(link)
                                           -> HostingOwnServer(server, link)   on timeout / refusal
        Connected | HostingOwnServer -> Disconnected                           on transport failure
        Disconnected -> (backoff) -> ConnectingToServer ...

    Owns the only ConnectionState; others read it through state() / link().
    Runs on its own asyncio loop in a dedicated thread (start/stop), or directly
    via run() inside an existing loop.
    """

    def __init__(
        self,
        server_url: str,
        *,
        sink: EventSink,
        connect_timeout: float = 3.0,
        host: str = DEFAULT_HOST,
        host_port: int = DEFAULT_PORT,
        start_scanning: bool = True,
        backoff: Optional[Backoff] = None,
        link_factory: Optional[LinkFactory] = None,
        server_factory: Optional[ServerFactory] = None,
    ):
        self.server_url = server_url
        self.connect_timeout = float(connect_timeout)
        self.host = host
        self.host_port = int(host_port)
        self._sink = sink
        self._start_scanning = start_scanning
        self._backoff = backoff or Backoff()
        self._link_factory = link_factory or self._open_link
        self._server_factory = server_factory or start_local_server

        self._lock = threading.Lock()
        self._state: ConnectionState = Disconnected()
        self._listeners: List[Listener] = []

        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._ready = threading.Event()

    # ---------- Accessors ----------

    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    def link(self) -> Optional[ServerLink]:
        """The usable link, or None while not Connected/HostingOwnServer."""
        state = self.state()
        if isinstance(state, (Connected, HostingOwnServer)) and state.link.is_open:
            return state.link
        return None

    def add_listener(self, fn: Listener) -> None:
        self._listeners.append(fn)

    # ---------- Thread lifecycle ----------

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._ready.clear()
        self._thread = threading.Thread(target=self._thread_main, name="ConnectionManager", daemon=True)
        self._thread.start()
        self._ready.wait(timeout=2.0)

    def stop(self, timeout: float = 5.0) -> None:
        loop, event = self._loop, self._stop_event
        if loop is not None and event is not None and not loop.is_closed():
            loop.call_soon_threadsafe(event.set)
        if self._thread:
            self._thread.join(timeout=timeout)

    def _thread_main(self) -> None:
        asyncio.run(self._thread_run())

    async def _thread_run(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._ready.set()
        await self.run(self._stop_event)

    # ---------- State machine ----------

    async def run(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            state = await self._until_stopped(self._establish(), stop)
            if state is None:
                break
            if isinstance(state, Disconnected):
                self._set_state(state)
                if await self._sleep(self._backoff.next(), stop):
                    break
                continue

            self._backoff.reset()
            self._set_state(state)
            await self._until_stopped(state.link.wait_closed(), stop)
            await self._teardown(state)
            if stop.is_set():
                break

            failure = TransportFailure(f"link to {state.link.url} dropped")
            _LOG.warning("%s, reconnecting", failure)
            self._sink(DevicesReset(str(failure)))
            self._set_state(Disconnected(str(failure)))
            if await self._sleep(self._backoff.next(), stop):
                break

        self._sink(DevicesReset("shutdown"))
        self._set_state(Disconnected("shutdown"))

    async def _establish(self) -> ConnectionState:
        url = self.server_url
        self._set_state(ConnectingToServer(url))
        try:
            link = await asyncio.wait_for(self._link_factory(url), timeout=self.connect_timeout)
            return Connected(link)
        except asyncio.TimeoutError:
            err: LinkError = ConnectTimeout(f"no answer from {url} within {self.connect_timeout:.1f}s")
            _LOG.warning("Couldn't connect to external server: %s", err)
        except LinkError as e:
            _LOG.warning("Couldn't connect to external server: %s", e)
        # A half-finished handshake may already have announced devices.
        self._sink(DevicesReset("connect failed"))

        _LOG.info("Launching in-process server")
        try:
            return await self._host()
        except (OSError, LinkError, asyncio.TimeoutError) as e:
            _LOG.error("Could not host a local server: %s", e)
            self._sink(DevicesReset("hosting failed"))
            return Disconnected(f"hosting failed: {e}")

    async def _host(self) -> HostingOwnServer:
        server = await self._server_factory(self.host, self.host_port)
        try:
            link = await asyncio.wait_for(self._link_factory(server.url), timeout=self.connect_timeout)
        except BaseException:
            await server.stop()
            raise
        return HostingOwnServer(server=server, link=link)

    async def _teardown(self, state: ConnectionState) -> None:
        if isinstance(state, (Connected, HostingOwnServer)):
            try:
                await state.link.close()
            except (OSError, LinkError) as e:
                _LOG.debug("Error while closing link: %s", e)
        if isinstance(state, HostingOwnServer):
            await state.server.stop()

    async def _open_link(self, url: str) -> ServerLink:
        return await ServerLink.open(url, sink=self._sink, start_scanning=self._start_scanning)

    async def _until_stopped(self, coro: Awaitable, stop: asyncio.Event):
        """Await coro unless stop fires first (then coro is cancelled and None returned)."""
        work = asyncio.ensure_future(coro)
        stopper = asyncio.ensure_future(stop.wait())
        try:
            await asyncio.wait({work, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
        if work.done():
            return work.result()
        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        return None

    @staticmethod
    async def _sleep(delay: float, stop: asyncio.Event) -> bool:
        """Sleep for delay; True if stop fired meanwhile."""
        try:
            await asyncio.wait_for(stop.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    def _set_state(self, state: ConnectionState) -> None:
        with self._lock:
            self._state = state
        _LOG.info("Connection: %s", _describe(state))
        for fn in list(self._listeners):
            try:
                fn(state)
            except Exception:
                _LOG.exception("Connection listener failed")
