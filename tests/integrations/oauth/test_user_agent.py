"""Tests for the browser user-agent."""

import asyncio

import pytest

from credbroker.integrations.oauth.user_agent import BrowserUserAgent, UserAgentResult

AUTH_URL = "https://login.example.com/authorize?client_id=c&state=state-1"


class RecordingOpener:
    def __init__(self, result: bool = True) -> None:
        self.result = result
        self.opened: list[str] = []

    def __call__(self, url: str) -> bool:
        self.opened.append(url)
        return self.result


async def _wait_for_session(agent: BrowserUserAgent) -> None:
    while agent.pending_sessions == 0:
        await asyncio.sleep(0)


class TestBrowserUserAgent:
    """Tests for BrowserUserAgent."""

    async def test_resolves_with_matching_callback(self) -> None:
        """A callback on the expected scheme and host should resolve the session."""
        opener = RecordingOpener()
        agent = BrowserUserAgent(opener=opener)
        task = asyncio.create_task(agent.authorize(AUTH_URL, "credbroker", "oauth"))
        await _wait_for_session(agent)

        accepted = agent.deliver_callback("credbroker://oauth/callback?code=abc&state=state-1")
        result = await task

        assert accepted
        assert opener.opened == [AUTH_URL]
        assert result == UserAgentResult.callback(
            "credbroker://oauth/callback?code=abc&state=state-1"
        )
        assert agent.pending_sessions == 0

    @pytest.mark.parametrize(
        "url",
        [
            "https://oauth/callback?code=abc",
            "credbroker://elsewhere/callback?code=abc",
            "credbroker://oauth/callback?code=abc&state=other",
        ],
    )
    async def test_ignores_foreign_callbacks(self, url: str) -> None:
        """Callbacks with another scheme, host or state should be ignored."""
        agent = BrowserUserAgent(opener=RecordingOpener())
        task = asyncio.create_task(agent.authorize(AUTH_URL, "credbroker", "oauth"))
        await _wait_for_session(agent)

        assert not agent.deliver_callback(url)
        assert not task.done()

        agent.cancel()
        assert (await task).cancelled

    async def test_cancel(self) -> None:
        agent = BrowserUserAgent(opener=RecordingOpener())
        task = asyncio.create_task(agent.authorize(AUTH_URL, "credbroker", None))
        await _wait_for_session(agent)

        agent.cancel()

        assert await task == UserAgentResult.cancellation()

    async def test_any_host_when_unrestricted(self) -> None:
        """Without a host restriction only the scheme should be checked."""
        agent = BrowserUserAgent(opener=RecordingOpener())
        task = asyncio.create_task(
            agent.authorize(AUTH_URL, "com.googleusercontent.apps.123", None)
        )
        await _wait_for_session(agent)

        assert agent.deliver_callback("com.googleusercontent.apps.123:/oauth2redirect?code=x")
        assert (await task).callback_url.endswith("code=x")

    async def test_routes_by_state(self) -> None:
        """Concurrent sessions on one scheme should each get their own callback."""
        agent = BrowserUserAgent(opener=RecordingOpener())
        first = asyncio.create_task(
            agent.authorize("https://a/authorize?state=one", "credbroker", "oauth")
        )
        second = asyncio.create_task(
            agent.authorize("https://a/authorize?state=two", "credbroker", "oauth")
        )
        while agent.pending_sessions < 2:
            await asyncio.sleep(0)

        agent.deliver_callback("credbroker://oauth/callback?code=2&state=two")
        agent.deliver_callback("credbroker://oauth/callback?code=1&state=one")

        assert (await first).callback_url.endswith("state=one")
        assert (await second).callback_url.endswith("state=two")

    async def test_browser_failure_keeps_waiting(self) -> None:
        """If the browser cannot be opened the session should still accept a callback."""
        agent = BrowserUserAgent(opener=RecordingOpener(result=False))
        task = asyncio.create_task(agent.authorize(AUTH_URL, "credbroker", "oauth"))
        await _wait_for_session(agent)

        agent.deliver_callback("credbroker://oauth/callback?code=abc&state=state-1")

        assert not (await task).cancelled

    async def test_cancel_targets_one_session(self) -> None:
        """Cancelling one attempt should leave a concurrent attempt waiting."""
        agent = BrowserUserAgent(opener=RecordingOpener())
        first = asyncio.create_task(
            agent.authorize("https://a/authorize?state=s1", "credbroker", "oauth")
        )
        second = asyncio.create_task(
            agent.authorize("https://a/authorize?state=s2", "credbroker", "oauth")
        )
        while agent.pending_sessions < 2:
            await asyncio.sleep(0)

        assert agent.cancel("s1")
        assert (await first).cancelled
        assert not second.done()

        agent.deliver_callback("credbroker://oauth/callback?code=2&state=s2")
        assert not (await second).cancelled

    async def test_cancel_without_state_is_ambiguous_with_two_sessions(self) -> None:
        agent = BrowserUserAgent(opener=RecordingOpener())
        tasks = [
            asyncio.create_task(
                agent.authorize(f"https://a/authorize?state={state}", "credbroker", "oauth")
            )
            for state in ("s1", "s2")
        ]
        while agent.pending_sessions < 2:
            await asyncio.sleep(0)

        assert not agent.cancel()
        await asyncio.sleep(0)
        assert not any(task.done() for task in tasks)

        agent.cancel("s1")
        agent.cancel("s2")
        assert all(result.cancelled for result in await asyncio.gather(*tasks))

    async def test_stateless_callback_needs_single_listener(self) -> None:
        """A callback without state should not be routed when two sessions share the host."""
        agent = BrowserUserAgent(opener=RecordingOpener())
        tasks = [
            asyncio.create_task(
                agent.authorize(f"https://a/authorize?state={state}", "credbroker", "oauth")
            )
            for state in ("s1", "s2")
        ]
        while agent.pending_sessions < 2:
            await asyncio.sleep(0)

        assert not agent.deliver_callback("credbroker://oauth/callback?error=access_denied")

        agent.cancel("s1")
        assert (await tasks[0]).cancelled
        assert agent.deliver_callback("credbroker://oauth/callback?error=access_denied")
        assert (await tasks[1]).callback_url.endswith("error=access_denied")
