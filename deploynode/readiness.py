"""Wait for HTTP endpoints to come up, and check DNS propagation."""

import threading
import time
from typing import Callable, Iterable

import dns.exception
import dns.resolver
import httpx

from .errors import ReadinessTimeout, WaitCancelled
from .utils import debug, log

StatusPredicate = Callable[[int], bool]

BOOT_WAIT_INTERVAL = 10
BOOT_WAIT_TIMEOUT = 10 * 60
HEALTH_CHECK_INTERVAL = 5
HEALTH_CHECK_TIMEOUT = 60
REQUEST_TIMEOUT = 5.0


def accept_boot_status(status: int) -> bool:
    """Anything from 200 to 503 means the server is up, if still initializing."""
    return 200 <= status <= 503


def accept_ok_status(status: int) -> bool:
    return status == 200


def probe(client: httpx.Client, url: str, timeout: float) -> int | None:
    """Status code of a GET, without reading the response body.

    :return: HTTP status code, or None if the endpoint could not be reached
    """
    try:
        with client.stream("GET", url, timeout=timeout) as response:
            return response.status_code
    except httpx.HTTPError as e:
        debug(f"'{url}' not reachable: {e}")
        return None


def wait_until_ready(
    urls: str | Iterable[str],
    *,
    interval: float = BOOT_WAIT_INTERVAL,
    timeout: float = BOOT_WAIT_TIMEOUT,
    accept: StatusPredicate = accept_boot_status,
    client: httpx.Client | None = None,
    stop_event: threading.Event | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """Poll every URL until each has returned an acceptable status once.

    Sleeps and per-request timeouts are clipped to the time remaining and
    response bodies are never read. httpx applies the request timeout to each
    phase (connect, write, read of the status line and headers) separately,
    so a server trickling its headers can overrun ``timeout`` by a few request
    timeouts; otherwise this returns or raises within ``timeout`` plus at most
    one ``interval``.

    :param urls: One URL or several
    :param interval: Seconds between polling rounds
    :param timeout: Seconds before giving up
    :param accept: Predicate on the status code
    :param client: httpx client to use (one is created and closed if omitted)
    :param stop_event: Set it to cancel the wait
    :raises ReadinessTimeout: If a URL never returned an acceptable status
    :raises WaitCancelled: If ``stop_event`` was set
    """
    pending = [urls] if isinstance(urls, str) else list(urls)
    stop_event = stop_event or threading.Event()
    owns_client = client is None
    if owns_client:
        client = httpx.Client(follow_redirects=False)

    deadline = clock() + timeout
    try:
        while True:
            for url in list(pending):
                remaining = deadline - clock()
                if remaining <= 0:
                    break
                status = probe(client, url, min(REQUEST_TIMEOUT, remaining))
                if status is not None and accept(status):
                    log(f"'{url}' is up (HTTP {status})")
                    pending.remove(url)
                elif status is not None:
                    debug(f"'{url}' returned HTTP {status}, waiting...")

            if not pending:
                return

            remaining = deadline - clock()
            if remaining <= 0:
                raise ReadinessTimeout(
                    f"Timed out after {timeout}s waiting for: {', '.join(pending)}",
                    pending=pending,
                )
            if stop_event.wait(min(interval, remaining)):
                raise WaitCancelled(f"Stopped waiting for: {', '.join(pending)}")
    finally:
        if owns_client:
            client.close()


def resolve_dns_a(name: str, nameserver: str = "8.8.8.8") -> str | None:
    """Resolve a name to its first IPv4 address.

    :param nameserver: DNS nameserver IP (default: 8.8.8.8)
    :return: First A record IP or None
    """
    resolver = dns.resolver.Resolver()
    resolver.nameservers = [nameserver]
    try:
        answer = resolver.resolve(name, "A")
    except dns.exception.DNSException:
        return None
    return str(answer[0]) if answer else None


def check_dns(
    names: Iterable[str], expected_ip: str, nameserver: str = "8.8.8.8"
) -> dict[str, str | None]:
    """Report which names do not resolve to ``expected_ip`` yet.

    :return: Name -> address it currently resolves to, for mismatches only
    """
    mismatches = {}
    for name in names:
        current = resolve_dns_a(name, nameserver)
        if current != expected_ip:
            mismatches[name] = current
    return mismatches
