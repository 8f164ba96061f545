#!/usr/bin/env python3
"""
🔐 Simulated User Sessions
==========================
One authenticated HTTP conversation per simulated user.

Each UserSession owns its own aiohttp.ClientSession (cookie jar + connector),
logs in once and then either fires the page-load burst a browser tab sends
or hands its transport to a stream consumer.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Optional, Tuple

import aiohttp
from rich.console import Console

from progress_buckets import Failure, ProgressSink, Tick

console = Console()

PATH_LOGIN = "/apps/users/login/"
PATH_WHOAMI = "/apps/users/whoami/"
PATH_SERVERTIME = "/apps/core/servertime/"
PATH_CONSTANTS = "/apps/core/constants/"

# Requests a browser tab sends on page load, in order.
BURST_PATHS: Tuple[str, ...] = (
    PATH_WHOAMI,
    PATH_LOGIN,
    PATH_SERVERTIME,
    PATH_CONSTANTS,
)


# =============================================================================
# ERRORS
# =============================================================================

class LoadTestError(Exception):
    """Base class for all load test errors."""


class ConfigError(LoadTestError):
    """Invalid run parameters."""


class RunError(LoadTestError):
    """A run could not be set up or carried out."""


class Shutdown(LoadTestError):
    """The stop event fired before the awaited operation finished."""


class RequestError(LoadTestError):
    """A single request failed: non-200 status or transport error."""

    def __init__(self, path: str, status: int, body: str):
        self.path = path
        self.status = status
        self.body = body
        if status:
            message = f"{path}: got status {status}: {body}"
        else:
            message = f"{path}: {body}"
        super().__init__(message)


class AuthError(RequestError):
    """Login failed."""


class StreamError(LoadTestError):
    """A stream hit a fatal read or decode failure."""


# =============================================================================
# CANCELLATION
# =============================================================================

async def wait_or_stop(aw: Awaitable[Any], stop: asyncio.Event) -> Any:
    """
    Await `aw` unless `stop` fires first.

    Raises Shutdown if the stop event was already set (aw is never started)
    or fires while aw is pending (aw is cancelled). Unwind latency is one
    event loop iteration after stop.set().
    """
    if stop.is_set():
        if asyncio.iscoroutine(aw):
            aw.close()
        raise Shutdown()

    task = asyncio.ensure_future(aw)
    stopper = asyncio.ensure_future(stop.wait())
    try:
        done, _ = await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await _discard(task)
        raise
    finally:
        stopper.cancel()

    if task in done:
        return task.result()

    await _discard(task)
    raise Shutdown()


async def _discard(task: asyncio.Future):
    """Cancel `task` and wait for it to unwind; release a response it still produced."""
    task.cancel()
    # An exception the task ended with is returned, not raised.
    (result,) = await asyncio.gather(task, return_exceptions=True)
    if isinstance(result, aiohttp.ClientResponse):
        result.release()


# =============================================================================
# SESSION
# =============================================================================

class SessionState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


class UserSession:
    """
    One simulated user: base URL, credentials and an aiohttp session with its
    own cookie storage. Must be used as an async context manager or closed
    with close().
    """

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        sink: ProgressSink,
        stop: asyncio.Event,
        timeout: float = 30.0,
        verify_ssl: bool = False,
        scheme: str = "https",
    ):
        if not host:
            raise ConfigError("host must not be empty")
        self.base_url = f"{scheme}://{host}"
        self.username = username
        self.password = password
        self.sink = sink
        self.stop = stop
        self.verify_ssl = verify_ssl
        self.timeout = aiohttp.ClientTimeout(total=timeout, connect=10)
        self.state = SessionState.UNAUTHENTICATED
        self._http: Optional[aiohttp.ClientSession] = None

    @property
    def http(self) -> aiohttp.ClientSession:
        if self._http is None:
            # No connection cap: every stream and burst request gets its own socket.
            connector = aiohttp.TCPConnector(limit=0, ssl=self.verify_ssl)
            self._http = aiohttp.ClientSession(
                timeout=self.timeout,
                connector=connector,
                cookie_jar=aiohttp.CookieJar(unsafe=True),
                headers={"User-Agent": "AutoupdateLoad/1.0"},
            )
        return self._http

    async def close(self):
        if self._http is not None:
            await self._http.close()
            self._http = None

    async def __aenter__(self) -> "UserSession":
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    def url(self, path: str) -> str:
        return self.base_url + path

    def require_authenticated(self):
        if self.state is not SessionState.AUTHENTICATED:
            raise RunError(f"session for {self.username} is {self.state.value}, not authenticated")

    # =========================================================================
    # AUTH FLOW
    # =========================================================================

    async def _post_login(self) -> Tuple[int, str]:
        payload = {"username": self.username, "password": self.password}
        async with self.http.post(self.url(PATH_LOGIN), json=payload) as response:
            body = await response.text(errors="replace")
            return response.status, body

    async def login(self) -> float:
        """
        Log in with the session's credentials. The server's session cookie
        is stored in this session's jar and sent on every later request.

        Returns the login latency in ms. Raises AuthError on any non-200
        status or transport failure; the session is then FAILED for good.
        """
        if self.state is SessionState.FAILED:
            raise AuthError(PATH_LOGIN, 0, "session already failed to log in")

        self.state = SessionState.AUTHENTICATING
        start = time.perf_counter()
        try:
            status, body = await wait_or_stop(self._post_login(), self.stop)
        except Shutdown:
            self.state = SessionState.UNAUTHENTICATED
            raise
        except asyncio.TimeoutError:
            self.state = SessionState.FAILED
            raise AuthError(PATH_LOGIN, 0, "Timeout")
        except aiohttp.ClientError as e:
            self.state = SessionState.FAILED
            raise AuthError(PATH_LOGIN, 0, f"{type(e).__name__}: {e}")

        if status != 200:
            self.state = SessionState.FAILED
            raise AuthError(PATH_LOGIN, status, body)

        self.state = SessionState.AUTHENTICATED
        return (time.perf_counter() - start) * 1000

    # =========================================================================
    # REQUESTS
    # =========================================================================

    async def _fetch(self, path: str) -> Tuple[int, str]:
        async with self.http.get(self.url(path)) as response:
            if response.status == 200:
                await response.read()
                return response.status, ""
            return response.status, await response.text(errors="replace")

    async def get(self, path: str) -> float:
        """GET `path`, drain the body and return the latency in ms."""
        self.require_authenticated()
        start = time.perf_counter()
        try:
            status, body = await wait_or_stop(self._fetch(path), self.stop)
        except asyncio.TimeoutError:
            raise RequestError(path, 0, "Timeout")
        except aiohttp.ClientError as e:
            raise RequestError(path, 0, f"{type(e).__name__}: {e}")

        if status != 200:
            raise RequestError(path, status, body)
        return (time.perf_counter() - start) * 1000

    async def open_stream(self, path: str) -> aiohttp.ClientResponse:
        """
        Start a long-lived GET. Only connecting is time bounded; the caller
        owns the returned response and must release it.
        """
        self.require_authenticated()
        stream_timeout = aiohttp.ClientTimeout(total=None, connect=10, sock_read=None)

        async def _open() -> aiohttp.ClientResponse:
            return await self.http.get(self.url(path), timeout=stream_timeout)

        try:
            response = await wait_or_stop(_open(), self.stop)
        except asyncio.TimeoutError:
            raise StreamError(f"opening {path}: Timeout")
        except aiohttp.ClientError as e:
            raise StreamError(f"opening {path}: {type(e).__name__}: {e}")

        if response.status != 200:
            async with response:
                try:
                    body = await response.text(errors="replace")
                except aiohttp.ClientError:
                    body = "[can not read body]"
            raise StreamError(f"opening {path}: got status {response.status}: {body}")
        return response

    # =========================================================================
    # REQUEST BURST
    # =========================================================================

    async def _burst_request(self, path: str) -> Optional[RequestError]:
        try:
            latency = await self.get(path)
        except RequestError as e:
            console.print(f"[red]Error get request to {path}: {e}[/red]")
            self.sink.record(Failure("request", str(e)))
            self.sink.record(Tick("request", 0.0))
            return e
        self.sink.record(Tick("request", latency))
        return None

    async def burst(self, paths: Tuple[str, ...] = BURST_PATHS) -> Tuple[Optional[RequestError], ...]:
        """
        Fire one GET per path concurrently and wait for all of them.

        Each finished request emits one Tick whether it failed or not; a
        failed path never cancels its siblings. Returns one entry per path,
        None for success or the RequestError. Raises Shutdown if the stop
        event fired during the burst.
        """
        results = await asyncio.gather(
            *[self._burst_request(path) for path in paths],
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, RequestError):
                raise result
        return tuple(results)

    async def browser(self):
        """Log in, then send the requests each browser tab sends."""
        latency = await self.login()
        self.sink.record(Tick("login", latency))
        await self.burst()
