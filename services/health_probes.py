"""Health probes for route monitoring."""

from __future__ import annotations

from dataclasses import dataclass
import ssl
import time
import urllib.error
import urllib.request


_USER_AGENT = "cluster-e2e-route-monitor"


@dataclass(frozen=True)
class RouteProbeResult:
    """Result of a single HTTP probe against a route."""

    url: str
    latency_s: float
    status_code: int | None = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.error


def _ssl_context(url: str, verify_tls: bool) -> ssl.SSLContext | None:
    if verify_tls or not url.lower().startswith("https"):
        return None
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


def probe_route(url: str, timeout_s: float, verify_tls: bool = False) -> RouteProbeResult:
    """Issue one GET against ``url`` and report latency and status."""

    request = urllib.request.Request(url, method="GET", headers={"User-Agent": _USER_AGENT})
    start = time.monotonic()
    try:
        with urllib.request.urlopen(
            request,
            timeout=timeout_s,
            context=_ssl_context(url, verify_tls),
        ) as response:
            response.read()
            status = int(response.status)
    except urllib.error.HTTPError as exc:
        return RouteProbeResult(
            url=url,
            latency_s=time.monotonic() - start,
            status_code=exc.code,
            error=f"HTTP {exc.code}",
        )
    except Exception as exc:  # noqa: BLE001 - probe should not raise
        return RouteProbeResult(
            url=url,
            latency_s=time.monotonic() - start,
            error=str(exc) or exc.__class__.__name__,
        )

    latency_s = time.monotonic() - start
    if status >= 400:
        return RouteProbeResult(
            url=url,
            latency_s=latency_s,
            status_code=status,
            error=f"HTTP {status}",
        )
    return RouteProbeResult(url=url, latency_s=latency_s, status_code=status)
