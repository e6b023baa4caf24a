import asyncio
import enum
import logging
import random
from dataclasses import dataclass

from stealthfetch.config import Settings, settings as default_settings
from stealthfetch.core import metrics
from stealthfetch.core.exceptions import (
    ChallengeDetected,
    ConfigError,
    ElementNotFound,
    FetchError,
    FetchTimeoutError,
    RetryLimitExceeded,
)
from stealthfetch.services.challenge import (
    ChallengeDetector,
    ChallengeSignature,
    PageVerdict,
    RELAY_SIGNATURE,
)
from stealthfetch.services.stealth import StealthProfileProvider
from stealthfetch.services.tabs import TabLease, TabManager

logger = logging.getLogger(__name__)


class NavState(str, enum.Enum):
    INIT = "init"
    NAVIGATING_TO_RELAY = "navigating_to_relay"
    SUBMITTING_FORM = "submitting_form"
    AWAITING_OUTCOME = "awaiting_outcome"
    AWAITING_FINAL_REDIRECT = "awaiting_final_redirect"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class RelaySite:
    """A web-proxy relay: entry page, URL form and the page signature."""

    url: str
    input_selector: str
    submit_selector: str
    signature: ChallengeSignature = RELAY_SIGNATURE
    type_delay_ms: int = 50

    @classmethod
    def from_settings(cls, config: Settings) -> "RelaySite":
        signature = ChallengeSignature(
            url_markers=RELAY_SIGNATURE.url_markers,
            text_markers=RELAY_SIGNATURE.text_markers,
            launching_markers=RELAY_SIGNATURE.launching_markers,
            success_selector=config.RELAY_SUCCESS_SELECTOR,
        )
        return cls(
            url=config.RELAY_URL,
            input_selector=config.RELAY_INPUT_SELECTOR,
            submit_selector=config.RELAY_SUBMIT_SELECTOR,
            signature=signature,
        )


@dataclass
class RetryState:
    max_attempts: int
    attempt: int = 0
    last_error: BaseException | None = None
    backoff: float = 0.0  # seconds slept before the next attempt

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts


@dataclass
class NavigationResult:
    content: str
    url: str
    attempts: int
    browser_id: int | None = None


class ResilientNavigator:
    """Reach a target page through a relay, retrying past challenge pages.

    Each attempt runs INIT -> NAVIGATING_TO_RELAY -> SUBMITTING_FORM ->
    AWAITING_OUTCOME [-> AWAITING_FINAL_REDIRECT] -> SUCCEEDED on a fresh
    tab with a fresh stealth profile. Any FetchError except ConfigError
    moves to RETRYING until ``max_attempts`` is used up, then FAILED with
    RetryLimitExceeded wrapping the last error.
    """

    def __init__(
        self,
        tabs: TabManager,
        config: Settings | None = None,
        provider: StealthProfileProvider | None = None,
        detector: ChallengeDetector | None = None,
        site: RelaySite | None = None,
        rng: random.Random | None = None,
    ):
        self._tabs = tabs
        self._settings = config or default_settings
        self._provider = provider or StealthProfileProvider(self._settings)
        self._site = site or RelaySite.from_settings(self._settings)
        self._detector = detector or ChallengeDetector(self._site.signature)
        self._rng = rng or random.Random()

    @property
    def site(self) -> RelaySite:
        return self._site

    def _transition(self, state: NavState, target_url: str, retry: RetryState):
        logger.debug(
            f"Navigator [{retry.attempt}/{retry.max_attempts}] {state.value} ({target_url})"
        )

    def backoff_for(self, attempt: int) -> float:
        """Jittered exponential backoff in seconds after failed ``attempt``."""
        base = self._settings.RETRY_DELAY / 1000 * (2 ** (attempt - 1))
        base = min(base, self._settings.RETRY_BACKOFF_MAX / 1000)
        return base * self._rng.uniform(0.5, 1.0)

    async def run(
        self,
        target_url: str,
        max_attempts: int | None = None,
        timeout: float | None = None,
    ) -> NavigationResult:
        if max_attempts is None:
            max_attempts = self._settings.MAX_RETRIES
        if max_attempts < 1:
            raise ConfigError(f"max_attempts must be >= 1 (got {max_attempts})")
        if timeout is None:
            return await self._run(target_url, max_attempts)
        try:
            return await asyncio.wait_for(self._run(target_url, max_attempts), timeout=timeout)
        except asyncio.TimeoutError:
            raise FetchTimeoutError("relay navigation", timeout, url=target_url) from None

    async def _run(self, target_url: str, max_attempts: int) -> NavigationResult:
        retry = RetryState(max_attempts=max_attempts)
        while True:
            retry.attempt += 1
            try:
                result = await self._attempt(target_url, retry)
            except ConfigError:
                raise
            except FetchError as e:
                retry.last_error = e
                if self._settings.METRICS_ENABLED:
                    metrics.navigator_attempts_total.labels(outcome=e.kind).inc()

                if retry.exhausted:
                    self._transition(NavState.FAILED, target_url, retry)
                    logger.error(
                        f"Relay navigation to {target_url} failed after "
                        f"{retry.attempt} attempt(s): {e}"
                    )
                    raise RetryLimitExceeded(retry.attempt, e, url=target_url) from e

                retry.backoff = self.backoff_for(retry.attempt)
                self._transition(NavState.RETRYING, target_url, retry)
                logger.warning(
                    f"Attempt {retry.attempt}/{retry.max_attempts} for {target_url} "
                    f"failed ({e.kind}: {e}), retrying in {retry.backoff:.2f}s"
                )
                if retry.backoff > 0:
                    await asyncio.sleep(retry.backoff)
                continue

            if self._settings.METRICS_ENABLED:
                metrics.navigator_attempts_total.labels(outcome="success").inc()
            self._transition(NavState.SUCCEEDED, target_url, retry)
            logger.info(
                f"Relay navigation to {target_url} succeeded on attempt "
                f"{retry.attempt}/{retry.max_attempts}"
            )
            return result

    async def _attempt(self, target_url: str, retry: RetryState) -> NavigationResult:
        s = self._settings
        site = self._site
        nav_timeout = s.NAVIGATION_TIMEOUT / 1000
        selector_timeout = s.SELECTOR_TIMEOUT / 1000

        self._transition(NavState.INIT, target_url, retry)
        profile = self._provider.next_profile()

        async with self._tabs.lease(profile=profile) as lease:
            self._transition(NavState.NAVIGATING_TO_RELAY, target_url, retry)
            await self._tabs.navigate(
                lease, site.url, timeout=nav_timeout, wait_until="domcontentloaded"
            )

            self._transition(NavState.SUBMITTING_FORM, target_url, retry)
            await self._tabs.wait_for_selector(
                lease, site.input_selector, timeout=selector_timeout
            )
            await self._tabs.type(
                lease, site.input_selector, target_url, delay_ms=site.type_delay_ms
            )
            await self._tabs.click_and_wait_for_navigation(
                lease, site.submit_selector, timeout=nav_timeout, wait_until="domcontentloaded"
            )

            self._transition(NavState.AWAITING_OUTCOME, target_url, retry)
            verdict = await self._inspect(lease)
            if verdict is PageVerdict.LAUNCHING:
                self._transition(NavState.AWAITING_FINAL_REDIRECT, target_url, retry)
                logger.info("Relay is launching, waiting for the final redirect")
                await self._tabs.wait_for_navigation(
                    lease, timeout=s.LAUNCH_REDIRECT_TIMEOUT / 1000, wait_until="load"
                )
                verdict = await self._inspect(lease)

            if verdict is not PageVerdict.SUCCEEDED and site.signature.success_selector:
                try:
                    await self._tabs.wait_for_selector(
                        lease, site.signature.success_selector, timeout=selector_timeout
                    )
                except ElementNotFound as e:
                    if await self._tabs.detect_challenge(lease):
                        raise ChallengeDetected("cloudflare", url=target_url) from e
                    raise

            content = await self._tabs.get_content(lease)
            return NavigationResult(
                content=content,
                url=self._tabs.current_url(lease),
                attempts=retry.attempt,
                browser_id=lease.browser_id,
            )

    async def _inspect(self, lease: TabLease) -> PageVerdict:
        url = self._tabs.current_url(lease)
        text = await self._tabs.get_content(lease)
        outcome = self._detector.classify(url, text)
        if outcome.verdict is PageVerdict.BLOCKED:
            raise ChallengeDetected(
                outcome.marker or "blocked",
                f"Relay returned a blocked page ({outcome.source}: {outcome.marker})",
                url=url,
            )
        return outcome.verdict
