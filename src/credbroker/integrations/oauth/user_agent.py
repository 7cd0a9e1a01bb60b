"""External user-agent used to let the user authorize in a browser.

The user-agent opens the authorization URL and resolves exactly once with the
callback URL the provider redirected to, or with a cancellation. Only callbacks
on the expected scheme and host are accepted.
"""

import asyncio
import webbrowser
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol
from urllib.parse import urlsplit

from credbroker.integrations.oauth.registry import extract_callback_state
from credbroker.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class UserAgentResult:
    """Outcome of one user-agent session."""

    callback_url: Optional[str] = None
    cancelled: bool = False

    @classmethod
    def callback(cls, url: str) -> "UserAgentResult":
        return cls(callback_url=url)

    @classmethod
    def cancellation(cls) -> "UserAgentResult":
        return cls(cancelled=True)


class UserAgent(Protocol):
    """Interactive session that returns the provider's redirect."""

    async def authorize(
        self, url: str, callback_scheme: str, callback_host: Optional[str]
    ) -> UserAgentResult:
        """Open ``url`` and wait for a callback on ``callback_scheme``/``callback_host``."""
        ...


@dataclass
class _PendingSession:
    future: "asyncio.Future[UserAgentResult]"
    loop: asyncio.AbstractEventLoop
    callback_scheme: str
    callback_host: Optional[str]
    state: Optional[str] = field(default=None, repr=False)

    def listens_on(self, url: str) -> bool:
        parts = urlsplit(url)
        if parts.scheme.lower() != self.callback_scheme.lower():
            return False
        if self.callback_host is None:
            return True
        return (parts.hostname or "").lower() == self.callback_host.lower()

    def resolve(self, result: UserAgentResult) -> None:
        def _set() -> None:
            if not self.future.done():
                self.future.set_result(result)

        self.loop.call_soon_threadsafe(_set)


class BrowserUserAgent:
    """Opens the system browser and waits for the app to hand back the callback.

    The hosting application registers the callback URL scheme with the OS and
    forwards every URL it receives to ``deliver_callback``. Several sessions may
    wait at once; a callback goes to the session whose scheme, host and
    ``state`` match. A callback without ``state`` is only delivered when a single
    session listens on its scheme and host.

    Example:
        >>> agent = BrowserUserAgent()
        >>> manager = OAuthManager(registry, store, user_agent=agent)
        >>> # from the URL handler: agent.deliver_callback("credbroker://oauth/callback?code=...")
    """

    def __init__(self, opener: Callable[[str], bool] = webbrowser.open) -> None:
        self._opener = opener
        self._sessions: list[_PendingSession] = []

    @property
    def pending_sessions(self) -> int:
        return len(self._sessions)

    async def authorize(
        self, url: str, callback_scheme: str, callback_host: Optional[str]
    ) -> UserAgentResult:
        loop = asyncio.get_running_loop()
        session = _PendingSession(
            future=loop.create_future(),
            loop=loop,
            callback_scheme=callback_scheme,
            callback_host=callback_host,
            state=extract_callback_state(url),
        )
        self._sessions.append(session)
        try:
            if not self._opener(url):
                logger.warning("browser_open_failed", callback_scheme=callback_scheme)
            return await session.future
        finally:
            self._sessions.remove(session)

    def _session_for(self, url: str) -> Optional[_PendingSession]:
        candidates = [session for session in self._sessions if session.listens_on(url)]
        callback_state = extract_callback_state(url)
        if callback_state is None:
            return candidates[0] if len(candidates) == 1 else None
        for session in candidates:
            if session.state is None or session.state == callback_state:
                return session
        return None

    def deliver_callback(self, url: str) -> bool:
        """Resolve the waiting session that accepts ``url``.

        Returns:
            True if a session accepted the callback, False if it was ignored
        """
        session = self._session_for(url)
        if session is None:
            logger.warning("callback_ignored", scheme=urlsplit(url).scheme)
            return False
        session.resolve(UserAgentResult.callback(url))
        return True

    def cancel(self, state: Optional[str] = None) -> bool:
        """Report cancellation to the session waiting on ``state``.

        Without ``state`` the only waiting session is cancelled; when several
        sessions are waiting nothing is cancelled.

        Returns:
            True if a session was cancelled
        """
        if state is None:
            targets = self._sessions if len(self._sessions) == 1 else []
        else:
            targets = [session for session in self._sessions if session.state == state]
        if not targets:
            logger.warning("cancel_ignored", pending_sessions=len(self._sessions))
            return False
        targets[0].resolve(UserAgentResult.cancellation())
        return True
