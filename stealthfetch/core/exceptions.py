"""Typed failures raised by the browser pool, navigator and fetch chain.

Every error carries a short ``kind`` tag plus whatever context a caller needs
to decide whether to retry at a higher level (attempt count, last underlying
error, which strategy failed).
"""


class FetchError(Exception):
    """Base class for all stealthfetch failures."""

    kind = "other"

    def __init__(self, message: str = "", *, url: str | None = None):
        self.url = url
        super().__init__(message or self.kind)


class ConfigError(FetchError):
    """Startup misconfiguration. Fatal, never retried."""

    kind = "config"


class InvalidURLError(FetchError, ValueError):
    """The caller passed something that is not an absolute http(s) URL."""

    kind = "invalid_url"


class BrowserStartupError(FetchError):
    kind = "browser_startup"

    def __init__(self, message: str = "", *, browser_id: int | None = None, **kwargs):
        self.browser_id = browser_id
        super().__init__(message, **kwargs)


class TabCreationError(FetchError):
    kind = "tab_creation"


class NavigationError(FetchError):
    kind = "navigation"


class ElementNotFound(FetchError):
    kind = "element_not_found"

    def __init__(self, selector: str, message: str = "", **kwargs):
        self.selector = selector
        super().__init__(message or f"Element not found: {selector}", **kwargs)


class FetchTimeoutError(FetchError, TimeoutError):
    """A bounded wait expired. Also an instance of the builtin TimeoutError."""

    kind = "timeout"

    def __init__(
        self,
        operation: str,
        timeout: float | None = None,
        message: str = "",
        **kwargs,
    ):
        self.operation = operation
        self.timeout = timeout
        if not message:
            message = f"{operation} timed out"
            if timeout is not None:
                message += f" after {timeout:.1f}s"
        super().__init__(message, **kwargs)


class PermitError(FetchTimeoutError):
    """No concurrency permit or browser slot became free in time."""

    kind = "permit"


class ProtocolError(FetchError):
    """Communication with a browser process failed (disconnect, crash)."""

    kind = "protocol"

    def __init__(self, message: str = "", *, browser_id: int | None = None, **kwargs):
        self.browser_id = browser_id
        super().__init__(message, **kwargs)


class ChallengeDetected(FetchError):
    """The page is an anti-bot challenge or block page, not real content."""

    kind = "challenge"

    def __init__(self, marker: str, message: str = "", **kwargs):
        self.marker = marker
        super().__init__(message or f"Challenge page detected ({marker})", **kwargs)


class ProxyError(FetchError):
    kind = "proxy"


class ContentValidationError(FetchError):
    """A response arrived but is unusable (bad status, empty, wrong type)."""

    kind = "validation"

    def __init__(self, message: str, *, status_code: int = 0, **kwargs):
        self.status_code = status_code
        super().__init__(message, **kwargs)


class RetryLimitExceeded(FetchError):
    kind = "retry_limit"

    def __init__(self, attempts: int, last_error: BaseException | None, **kwargs):
        self.attempts = attempts
        self.last_error = last_error
        message = f"Gave up after {attempts} attempt(s)"
        if last_error is not None:
            message += f": {type(last_error).__name__}: {last_error}"
        super().__init__(message, **kwargs)


class AggregateFetchError(FetchError):
    """Every strategy of the fallback chain failed."""

    kind = "aggregate"

    def __init__(self, failures: dict[str, BaseException], **kwargs):
        self.failures = dict(failures)
        if failures:
            detail = "; ".join(
                f"{name}: {type(exc).__name__}: {exc}" for name, exc in failures.items()
            )
        else:
            detail = "no strategy applicable"
        super().__init__(f"All fetch strategies failed ({detail})", **kwargs)

    @property
    def last_error(self) -> BaseException | None:
        if not self.failures:
            return None
        return list(self.failures.values())[-1]
