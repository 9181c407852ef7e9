from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Sequence

import dns.exception
import dns.resolver
import httpx

from localroute.errors import VerificationFailure
from localroute.schemas import Site


logger = logging.getLogger(__name__)

DNS_CHECK = "dns"
HTTP_CHECK = "http"
DEFAULT_CHECK_TIMEOUT_SECONDS = 5.0
DEFAULT_STAGE_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_WORKERS = 8
MAX_ERROR_LENGTH = 120


@dataclass(slots=True)
class CheckResult:
    domain: str
    check: str
    ok: bool
    detail: str
    status_code: int | None = None
    address: str | None = None
    timed_out: bool = False

    def as_failure(self) -> VerificationFailure:
        return VerificationFailure(f"{self.check} check failed for {self.domain}: {self.detail}", entity=self.domain)


@dataclass(slots=True)
class VerificationReport:
    results: list[CheckResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.results)

    @property
    def passed(self) -> list[CheckResult]:
        return [result for result in self.results if result.ok]

    @property
    def failed(self) -> list[CheckResult]:
        return [result for result in self.results if not result.ok]

    def for_domain(self, domain: str) -> list[CheckResult]:
        return [result for result in self.results if result.domain == domain]

    def failures(self) -> list[VerificationFailure]:
        return [result.as_failure() for result in self.failed]


def _url_host(address: str) -> str:
    if ":" in address and not address.startswith("["):
        return f"[{address}]"
    return address


class VerificationProbe:
    """Checks DNS answers and HTTP reachability for every site.

    Checks run on a bounded thread pool. Anything still running when the
    stage timeout elapses is reported as timed out.
    """

    def __init__(
        self,
        local_address: str,
        resolver_address: str = "127.0.0.1",
        resolver_port: int = 53,
        check_timeout: float = DEFAULT_CHECK_TIMEOUT_SECONDS,
        stage_timeout: float = DEFAULT_STAGE_TIMEOUT_SECONDS,
        max_workers: int = DEFAULT_MAX_WORKERS,
        resolve: Callable[[str], list[str]] | None = None,
        fetch: Callable[[str, str, bool], int] | None = None,
    ) -> None:
        self.local_address = local_address
        self.resolver_address = resolver_address
        self.resolver_port = resolver_port
        self.check_timeout = check_timeout
        self.stage_timeout = stage_timeout
        self.max_workers = max(1, max_workers)
        self._resolve = resolve or self.resolve_a
        self._fetch = fetch or self.fetch_status

    # ── transport ──
    def resolve_a(self, domain: str) -> list[str]:
        resolver = dns.resolver.Resolver(configure=False)
        resolver.nameservers = [self.resolver_address]
        resolver.port = self.resolver_port
        resolver.timeout = self.check_timeout
        resolver.lifetime = self.check_timeout
        answer = resolver.resolve(domain, "A")
        return [rdata.address for rdata in answer]

    def fetch_status(self, domain: str, url: str, secure: bool) -> int:
        extensions = {"sni_hostname": domain} if secure else None
        with httpx.Client(verify=False, timeout=self.check_timeout, follow_redirects=False) as client:
            response = client.get(url, headers={"Host": domain}, extensions=extensions)
        return response.status_code

    # ── checks ──
    def check_dns(self, site: Site) -> CheckResult:
        try:
            addresses = self._resolve(site.domain)
        except dns.exception.DNSException as exc:
            detail = str(exc)[:MAX_ERROR_LENGTH] or type(exc).__name__
            return CheckResult(domain=site.domain, check=DNS_CHECK, ok=False, detail=f"resolution failed: {detail}")

        if not addresses:
            return CheckResult(domain=site.domain, check=DNS_CHECK, ok=False, detail="no addresses returned")

        first = addresses[0]
        if first != self.local_address:
            return CheckResult(
                domain=site.domain,
                check=DNS_CHECK,
                ok=False,
                detail=f"resolved to {first} (expected {self.local_address})",
                address=first,
            )
        return CheckResult(domain=site.domain, check=DNS_CHECK, ok=True, detail=f"-> {first}", address=first)

    def check_http(self, site: Site) -> CheckResult:
        scheme = "https" if site.tls_required else "http"
        url = f"{scheme}://{_url_host(self.local_address)}/"
        try:
            status_code = self._fetch(site.domain, url, site.tls_required)
        except httpx.TimeoutException:
            return CheckResult(domain=site.domain, check=HTTP_CHECK, ok=False, detail="timeout", timed_out=True)
        except httpx.HTTPError as exc:
            detail = str(exc)[:MAX_ERROR_LENGTH] or type(exc).__name__
            return CheckResult(domain=site.domain, check=HTTP_CHECK, ok=False, detail=f"request failed: {detail}")

        return CheckResult(
            domain=site.domain,
            check=HTTP_CHECK,
            ok=True,
            detail=f"{scheme.upper()} {status_code}",
            status_code=status_code,
        )

    def _planned_checks(self, sites: Sequence[Site]) -> list[tuple[Site, str, Callable[[Site], CheckResult]]]:
        planned: list[tuple[Site, str, Callable[[Site], CheckResult]]] = []
        for site in sites:
            if site.dns_override:
                planned.append((site, DNS_CHECK, self.check_dns))
            planned.append((site, HTTP_CHECK, self.check_http))
        return planned

    def verify(self, sites: Sequence[Site]) -> VerificationReport:
        planned = self._planned_checks(sites)
        if not planned:
            return VerificationReport()

        executor = ThreadPoolExecutor(max_workers=min(self.max_workers, len(planned)), thread_name_prefix="verify")
        try:
            futures: list[Future[CheckResult]] = [executor.submit(check, site) for site, _, check in planned]
            wait(futures, timeout=self.stage_timeout)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        results: list[CheckResult] = []
        for (site, kind, _), future in zip(planned, futures):
            if not future.done() or future.cancelled():
                results.append(
                    CheckResult(
                        domain=site.domain,
                        check=kind,
                        ok=False,
                        detail=f"timed out after {self.stage_timeout:g}s",
                        timed_out=True,
                    )
                )
                continue
            exc = future.exception()
            if exc is not None:
                logger.error("Unexpected %s check error for %s", kind, site.domain, exc_info=exc)
                results.append(CheckResult(domain=site.domain, check=kind, ok=False, detail=f"error: {exc}"))
                continue
            results.append(future.result())

        for result in results:
            if result.ok:
                logger.info("%s check passed for %s: %s", result.check, result.domain, result.detail)
            else:
                logger.warning("%s check failed for %s: %s", result.check, result.domain, result.detail)
        return VerificationReport(results=results)
