"""
Unit Tests for Chromium captcha windows

Tests for:
- Proxied target URLs
- ChromiumOptions built for each window
- Window lifecycle (open, user close, forced close, launch failure)
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import Mock, patch

import pytest

from src.harvester.core.config import Settings
from src.harvester.services.broker import ChromiumWindowLauncher, SurfaceError, proxied_url


def fake_page(alive: bool = True):
    page = Mock()
    page.states = SimpleNamespace(is_alive=alive)
    return page


def make_launcher(page_factory) -> ChromiumWindowLauncher:
    return ChromiumWindowLauncher(proxy_server="http://p", poll_interval=0.01, page_factory=page_factory)


async def wait_until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestProxiedUrl:
    """Tests for proxied_url."""

    def test_https_loaded_over_http(self):
        assert proxied_url("https://example.com/login?sitekey=sk") == "http://example.com/login?sitekey=sk"

    def test_http_unchanged(self):
        assert proxied_url("http://127.0.0.1:8456/?captchaId=c1") == "http://127.0.0.1:8456/?captchaId=c1"


class TestBuildOptions:
    """Tests for ChromiumWindowLauncher.build_options."""

    def test_proxy_through_view_server(self):
        launcher = ChromiumWindowLauncher(proxy_server="http://127.0.0.1:8456", browser_path="/usr/bin/chromium")

        with patch("DrissionPage.ChromiumOptions") as options_class:
            options = launcher.build_options()

        assert options is options_class.return_value
        options.auto_port.assert_called_once()
        options.set_browser_path.assert_called_once_with("/usr/bin/chromium")
        options.set_proxy.assert_called_once_with("http://127.0.0.1:8456")
        options.set_argument.assert_any_call("--proxy-bypass-list", "*.google.com;*.gstatic.com")
        options.set_argument.assert_any_call("--window-size", "360,640")

    def test_from_settings(self):
        app_settings = Settings(VIEW_PORT=9001, HARVEST_WINDOW_POLL_INTERVAL=0.5, HARVEST_PROXY_BYPASS="*.google.com")

        launcher = ChromiumWindowLauncher.from_settings(app_settings)

        assert launcher.proxy_server == "http://127.0.0.1:9001"
        assert launcher.proxy_bypass == "*.google.com"
        assert launcher.poll_interval == 0.5


class TestWindowLifecycle:
    """Tests for ChromiumWindow."""

    def test_launch_requires_event_loop(self):
        launcher = ChromiumWindowLauncher(proxy_server="http://127.0.0.1:8456", page_factory=Mock())

        with pytest.raises(SurfaceError):
            launcher.launch("https://x", on_exit=Mock())

    @pytest.mark.asyncio
    async def test_opens_proxied_url(self):
        page = fake_page()
        factory = Mock(return_value=page)
        launcher = make_launcher(factory)

        window = launcher.launch("https://x/?sitekey=sk", on_exit=Mock())
        await wait_until(lambda: window.page is page)

        factory.assert_called_once_with("http://x/?sitekey=sk")
        window.close()
        await launcher.wait_closed()

    @pytest.mark.asyncio
    async def test_user_closing_window_calls_exit(self):
        page = fake_page()
        on_exit = Mock()
        launcher = make_launcher(Mock(return_value=page))

        window = launcher.launch("https://x", on_exit=on_exit)
        await wait_until(lambda: window.page is page)
        page.states.is_alive = False
        await wait_until(lambda: on_exit.called)
        await launcher.wait_closed()

        on_exit.assert_called_once()
        page.quit.assert_not_called()

    @pytest.mark.asyncio
    async def test_forced_close_quits_browser(self):
        page = fake_page()
        on_exit = Mock()
        launcher = make_launcher(Mock(return_value=page))

        window = launcher.launch("https://x", on_exit=on_exit)
        await wait_until(lambda: window.page is page)
        window.close()
        window.close()
        await launcher.wait_closed()

        page.quit.assert_called_once()
        on_exit.assert_not_called()

    @pytest.mark.asyncio
    async def test_close_while_launching(self):
        page = fake_page()
        on_exit = Mock()
        launcher = make_launcher(Mock(return_value=page))

        window = launcher.launch("https://x", on_exit=on_exit)
        window.close()
        await launcher.wait_closed()

        page.quit.assert_called_once()
        on_exit.assert_not_called()

    @pytest.mark.asyncio
    async def test_launch_failure_calls_exit(self):
        on_exit = Mock()
        launcher = make_launcher(Mock(side_effect=RuntimeError("browser not found")))

        launcher.launch("https://x", on_exit=on_exit)
        await launcher.wait_closed()

        on_exit.assert_called_once()
