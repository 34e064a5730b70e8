"""
Playwright Browser Session
==========================

Headless Chromium backend driven through Playwright's async API.

Responsibilities:
    - Launch an isolated browser per stream session
    - Navigate to the source and, for playlists and channels, open the
      first listed video
    - Start muted playback and keep it going (ad skips, "still watching?"
      prompts, consent dialogs) with a periodic dismissal sweep
    - Read player state and take screenshots on demand

Setup:
    pip install playwright
    playwright install chromium
"""

import asyncio
import logging
from typing import Optional

from playwright.async_api import (
    Browser,
    Error as PlaywrightError,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from watcher_agent.browser.session import PlaybackState
from watcher_agent.config import BrowserConfig, CaptureConfig
from watcher_agent.errors import CaptureError, NavigationError
from watcher_agent.models.source import Source


logger = logging.getLogger(__name__)


_LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-software-rasterizer",
    "--autoplay-policy=no-user-gesture-required",
]

_CLICK_FIRST_VIDEO_JS = """
() => {
    const selectors = [
        'ytd-playlist-video-renderer a#thumbnail',
        'ytd-rich-item-renderer a#thumbnail',
        'ytd-video-renderer a#thumbnail',
        'a#video-title',
        'a[href*="/watch?v="]',
    ];
    for (const selector of selectors) {
        const link = document.querySelector(selector);
        if (link && link.href && link.href.includes('/watch?v=')) {
            link.click();
            return true;
        }
    }
    return false;
}
"""

_START_PLAYBACK_JS = """
(muted) => {
    const video = document.querySelector('video');
    if (!video) return false;
    video.muted = muted;
    video.play().catch(() => {});
    return true;
}
"""

_PLAYBACK_STATE_JS = """
() => {
    const video = document.querySelector('video');
    const match = window.location.href.match(/[?&]v=([^&]+)/);
    const heading = document.querySelector('h1.ytd-watch-metadata, h1.ytd-video-primary-info-renderer');
    const title = (heading && heading.textContent ? heading.textContent.trim() : '')
        || document.title.replace(' - YouTube', '');
    return {
        currentTime: video ? video.currentTime || 0 : 0,
        duration: video && isFinite(video.duration) ? video.duration : 0,
        isPlaying: video ? !video.paused && !video.ended && video.readyState >= 3 : false,
        isBuffering: video ? !video.paused && !video.ended && video.readyState < 3 : false,
        videoId: match ? match[1] : '',
        title: title,
    };
}
"""

_DISMISS_POPUPS_JS = """
(muted) => {
    const clickFirst = (selectors) => {
        for (const selector of selectors) {
            const el = document.querySelector(selector);
            if (el && el.offsetParent !== null) { el.click(); return true; }
        }
        return false;
    };
    const clickByText = (texts, tag) => {
        for (const el of document.querySelectorAll(tag)) {
            const text = (el.textContent || '').toLowerCase();
            if (texts.some(t => text.includes(t))) { el.click(); return true; }
        }
        return false;
    };
    clickFirst(['.ytp-ad-skip-button', '.ytp-ad-skip-button-modern', '.ytp-skip-ad-button']);
    const dismissals = ['no thanks', 'no, thanks', 'dismiss', 'not now', 'skip trial'];
    clickByText(dismissals, 'button');
    clickByText(dismissals, 'tp-yt-paper-button');
    clickFirst(['button[aria-label="Close"]', 'button[aria-label="Dismiss"]', '#dismiss-button']);
    clickByText(['accept all', 'reject all'], 'button');
    clickFirst(['.ytp-pause-overlay-button']);
    const video = document.querySelector('video');
    if (video) {
        if (video.paused && !video.ended && !window.__watcherPaused) video.play().catch(() => {});
        video.muted = muted;
    }
}
"""

_PAUSE_JS = """
() => {
    window.__watcherPaused = true;
    const video = document.querySelector('video');
    if (video) video.pause();
}
"""

_RESUME_JS = """
() => {
    window.__watcherPaused = false;
    const video = document.querySelector('video');
    if (video) video.play().catch(() => {});
}
"""


class PlaywrightBrowserSession:
    """
    One Chromium instance rendering one source.

    Each session launches its own browser so a crashed page never takes
    down a sibling stream.
    """

    def __init__(self, config: BrowserConfig, capture: CaptureConfig) -> None:
        """
        Initialize Playwright browser session.

        Args:
            config: Browser settings (viewport, user agent, timeouts)
            capture: Capture settings (screenshot format and quality)
        """
        self.config = config
        self.capture = capture

        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._page: Optional[Page] = None
        self._popup_task: Optional[asyncio.Task] = None

    async def launch(self) -> None:
        """Start Playwright and open a blank page."""
        self._playwright = await async_playwright().start()

        proxy = {"server": self.config.proxy} if self.config.proxy else None
        args = list(_LAUNCH_ARGS)
        if self.config.muted:
            args.append("--mute-audio")
        args.append(
            f"--window-size={self.config.viewport.width},{self.config.viewport.height}"
        )

        self._browser = await self._playwright.chromium.launch(
            headless=self.config.headless,
            args=args,
            proxy=proxy,
        )
        context = await self._browser.new_context(
            viewport={
                "width": self.config.viewport.width,
                "height": self.config.viewport.height,
            },
            user_agent=self.config.user_agent,
        )
        self._page = await context.new_page()
        logger.info("Chromium launched")

    async def navigate_to_source(self, source: Source) -> None:
        """
        Load the source page and start playback.

        Raises:
            NavigationError: On timeout, blocked load or missing video
        """
        page = self._require_page()
        timeout_ms = self.config.navigation_timeout_seconds * 1000

        logger.info(f"Navigating to: {source.url} (type: {source.type.value})")

        try:
            await page.goto(source.url, wait_until="domcontentloaded", timeout=timeout_ms)

            if source.needs_video_selection:
                await self._open_first_video(page)

            await page.wait_for_selector("video", timeout=timeout_ms)
            await page.evaluate(_START_PLAYBACK_JS, self.config.muted)
        except PlaywrightTimeoutError as e:
            raise NavigationError(f"Timed out loading {source.url}: {e}") from e
        except PlaywrightError as e:
            raise NavigationError(f"Failed to load {source.url}: {e}") from e

        self._popup_task = asyncio.create_task(
            self._dismiss_popups_loop(),
            name="popup_dismissal",
        )
        logger.info("Playback started")

    async def _open_first_video(self, page: Page) -> None:
        logger.info("Looking for first video...")
        await page.wait_for_timeout(2000)

        clicked = await page.evaluate(_CLICK_FIRST_VIDEO_JS)
        if not clicked:
            raise NavigationError("No video link found on listing page")

        try:
            await page.wait_for_url("**/watch?v=**", timeout=15000)
        except PlaywrightTimeoutError:
            logger.warning("Video page did not finish loading, continuing")

    async def _dismiss_popups_loop(self) -> None:
        interval = self.config.popup_dismiss_interval_seconds
        while self._page is not None:
            await asyncio.sleep(interval)
            page = self._page
            if page is None:
                break
            try:
                await page.evaluate(_DISMISS_POPUPS_JS, self.config.muted)
            except PlaywrightError as e:
                logger.debug(f"Popup sweep failed: {e}")

    async def get_playback_state(self) -> PlaybackState:
        page = self._require_page()
        try:
            raw = await page.evaluate(_PLAYBACK_STATE_JS)
        except PlaywrightError as e:
            raise CaptureError(f"Failed to read player state: {e}") from e

        return PlaybackState(
            is_playing=bool(raw.get("isPlaying")),
            is_buffering=bool(raw.get("isBuffering")),
            current_time=float(raw.get("currentTime") or 0.0),
            duration=float(raw.get("duration") or 0.0),
            video_id=str(raw.get("videoId") or ""),
            title=str(raw.get("title") or ""),
        )

    async def capture_frame(self) -> Optional[bytes]:
        page = self._require_page()
        try:
            if self.capture.format == "png":
                return await page.screenshot(type="png")
            return await page.screenshot(type="jpeg", quality=self.capture.quality)
        except PlaywrightError as e:
            raise CaptureError(f"Screenshot failed: {e}") from e

    async def pause(self) -> None:
        page = self._require_page()
        try:
            await page.evaluate(_PAUSE_JS)
        except PlaywrightError as e:
            raise CaptureError(f"Failed to pause playback: {e}") from e

    async def resume(self) -> None:
        page = self._require_page()
        try:
            await page.evaluate(_RESUME_JS)
        except PlaywrightError as e:
            raise CaptureError(f"Failed to resume playback: {e}") from e

    async def close(self) -> None:
        """Release the page, browser and Playwright driver."""
        self._page = None

        if self._popup_task is not None:
            self._popup_task.cancel()
            try:
                await self._popup_task
            except asyncio.CancelledError:
                pass
            self._popup_task = None

        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError as e:
                logger.warning(f"Browser close failed: {e}")
            self._browser = None

        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except PlaywrightError as e:
                logger.warning(f"Playwright stop failed: {e}")
            self._playwright = None

    def _require_page(self) -> Page:
        if self._page is None:
            raise CaptureError("Browser session is not open")
        return self._page
