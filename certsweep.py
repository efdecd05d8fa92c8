import argparse
import enum
import errno
import ipaddress
import itertools
import json
import logging
import math
import os
import re
import socket
import ssl
import sys
import tempfile
import threading
import time
from dataclasses import dataclass, field
from typing import Iterable, Iterator, TextIO

import dns.exception
import dns.resolver
import dns.reversename
import requests
from cryptography import x509
from cryptography.x509.oid import ExtensionOID, NameOID


DEFAULT_URL = "https://ip-ranges.amazonaws.com/ip-ranges.json"
DEFAULT_PORT = 443
DEFAULT_TIMEOUT = 10.0
DEFAULT_PROBE_TIMEOUT = 3.0
DEFAULT_FETCH_TIMEOUT = 30.0
JOIN_GRACE = 1.0
LOG_RETENTION_DAYS = 30

# Local resource exhaustion, as opposed to a remote host misbehaving.
FATAL_ERRNOS = frozenset({errno.EMFILE, errno.ENFILE, errno.ENOBUFS, errno.ENOMEM})


class CertsweepError(Exception):
    pass


class SourceUnavailable(CertsweepError):
    pass


class ProbeFatal(CertsweepError):
    def __init__(self, address: str, error: BaseException) -> None:
        super().__init__(f"fatal error probing {address}: {error}")
        self.address = address
        self.error = error


_DURATION_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str) -> float:
    """Parse ``10``, ``2.5``, ``500ms`` or ``1m30s`` into seconds."""
    text = value.strip()
    try:
        seconds = float(text)
    except ValueError:
        if not text:
            raise argparse.ArgumentTypeError("empty duration")
        seconds = 0.0
        pos = 0
        while pos < len(text):
            match = _DURATION_RE.match(text, pos)
            if match is None:
                raise argparse.ArgumentTypeError(f"invalid duration: {value!r}")
            seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
            pos = match.end()
    if seconds < 0 or not math.isfinite(seconds):
        raise argparse.ArgumentTypeError(f"invalid duration: {value!r}")
    return seconds


class Deadline:
    """Wall-clock cutoff shared by every worker of one scan."""

    def __init__(self, timeout: float) -> None:
        self.expires_at = time.monotonic() + max(timeout, 0.0)
        self._cancelled = threading.Event()

    def remaining(self) -> float:
        if self._cancelled.is_set():
            return 0.0
        return max(self.expires_at - time.monotonic(), 0.0)

    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()


class StaticRangeSource:
    def __init__(self, cidrs: Iterable[str]) -> None:
        self.cidrs = list(cidrs)

    def fetch(self) -> list[str]:
        return list(self.cidrs)


class HttpRangeSource:
    """Published IP-range document, e.g. AWS ``ip-ranges.json``."""

    def __init__(
        self,
        url: str = DEFAULT_URL,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
        region: str | None = None,
        service: str | None = None,
        include_ipv6: bool = False,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.region = region
        self.service = service
        self.include_ipv6 = include_ipv6

    def fetch(self) -> list[str]:
        try:
            response = requests.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            document = response.json()
        except requests.RequestException as exc:
            raise SourceUnavailable(f"error fetching IP ranges from {self.url}: {exc}") from exc
        except ValueError as exc:
            raise SourceUnavailable(f"error decoding IP ranges from {self.url}: {exc}") from exc
        try:
            return self._extract(document)
        except (KeyError, TypeError, AttributeError) as exc:
            raise SourceUnavailable(f"unexpected IP range document from {self.url}: {exc!r}") from exc

    def _extract(self, document: dict) -> list[str]:
        entries = [(entry["ip_prefix"], entry) for entry in document["prefixes"]]
        if self.include_ipv6:
            entries.extend(
                (entry["ipv6_prefix"], entry) for entry in document.get("ipv6_prefixes", [])
            )
        cidrs: dict[str, None] = {}
        for prefix, entry in entries:
            if not isinstance(prefix, str):
                raise TypeError(f"prefix is not a string: {prefix!r}")
            if self.region and entry.get("region") != self.region:
                continue
            if self.service and entry.get("service") != self.service:
                continue
            cidrs.setdefault(prefix, None)
        return list(cidrs)


def partition(cidrs: list[str], workers: int) -> list[list[str]]:
    worker_count = max(workers, 1)
    size = -(-len(cidrs) // worker_count)
    return [list(cidrs[i * size : (i + 1) * size]) for i in range(worker_count)]


def iter_addresses(cidr: str, limit: int | None = None) -> Iterator[str]:
    network = ipaddress.ip_network(cidr.strip(), strict=False)
    addresses: Iterator = iter(network)
    if limit is not None:
        addresses = itertools.islice(addresses, max(limit, 0))
    for address in addresses:
        yield str(address)


def count_addresses(cidrs: list[str], limit: int | None = None) -> int:
    total = 0
    for cidr in cidrs:
        try:
            network = ipaddress.ip_network(cidr.strip(), strict=False)
        except ValueError:
            continue
        count = network.num_addresses
        if limit is not None:
            count = min(count, max(limit, 0))
        total += count
    return total


def _address_sort_key(address: str) -> tuple[int, int]:
    ip = ipaddress.ip_address(address)
    return ip.version, int(ip)


class ProbeStatus(enum.Enum):
    MATCHED = "matched"
    NO_MATCH = "no-match"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ProbeResult:
    address: str
    status: ProbeStatus
    names: tuple[str, ...] = ()
    reason: str | None = None


def build_tls_context() -> ssl.SSLContext:
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


def build_legacy_tls_context() -> ssl.SSLContext | None:
    context = build_tls_context()
    try:
        context.minimum_version = ssl.TLSVersion.TLSv1
        context.set_ciphers("ALL:@SECLEVEL=0")
    except (ValueError, ssl.SSLError):
        return None
    return context


def _general_name_text(name: x509.GeneralName) -> str | None:
    if isinstance(name, x509.DirectoryName):
        return name.value.rfc4514_string()
    if isinstance(name, x509.RegisteredID):
        return name.value.dotted_string
    if isinstance(name, x509.OtherName):
        return None
    return str(name.value)


# Extensions are decoded lazily, so a malformed peer certificate can fail with
# any of these on first access rather than at load time.
CERTIFICATE_DECODE_ERRORS = (
    ValueError,
    x509.DuplicateExtension,
    x509.UnsupportedGeneralNameType,
)


def certificate_names(cert_der: bytes) -> list[str]:
    """Subject common names followed by every subject-alternative-name entry."""
    cert = x509.load_der_x509_certificate(cert_der)
    names = [
        str(attr.value)
        for attr in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    ]
    try:
        san = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
    except x509.ExtensionNotFound:
        return names
    for general_name in san.value:
        text = _general_name_text(general_name)
        if text:
            names.append(text)
    return names


def match_keyword(names: Iterable[str], keyword: str) -> list[str]:
    return [name for name in names if keyword in name]


def _skip_reason(exc: OSError) -> str:
    if isinstance(exc, TimeoutError):
        return "timeout"
    if isinstance(exc, ConnectionRefusedError):
        return "refused"
    if isinstance(exc, ConnectionResetError):
        return "reset"
    if isinstance(exc, ssl.SSLError):
        return "tls"
    return "unreachable"


def _is_fatal(exc: OSError) -> bool:
    return not isinstance(exc, ssl.SSLError) and exc.errno in FATAL_ERRNOS


class CertificateProber:
    def __init__(
        self,
        port: int = DEFAULT_PORT,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    ) -> None:
        self.port = port
        self.probe_timeout = probe_timeout
        self.context = build_tls_context()
        self.legacy_context = build_legacy_tls_context()

    def probe(self, address: str, keyword: str, deadline: Deadline) -> ProbeResult:
        try:
            cert_der = self._fetch_with_fallback(address, deadline)
        except OSError as exc:
            if _is_fatal(exc):
                raise ProbeFatal(address, exc) from exc
            reason = _skip_reason(exc)
            logging.debug("Skipped %s:%s (%s): %s", address, self.port, reason, exc)
            return ProbeResult(address, ProbeStatus.SKIPPED, reason=reason)

        if not cert_der:
            return ProbeResult(address, ProbeStatus.SKIPPED, reason="no-certificate")
        try:
            names = certificate_names(cert_der)
        except CERTIFICATE_DECODE_ERRORS as exc:
            logging.debug("Unparseable certificate from %s:%s: %s", address, self.port, exc)
            return ProbeResult(address, ProbeStatus.SKIPPED, reason="bad-certificate")

        matched = match_keyword(names, keyword)
        if matched:
            return ProbeResult(address, ProbeStatus.MATCHED, names=tuple(matched))
        return ProbeResult(address, ProbeStatus.NO_MATCH)

    def _budget(self, deadline: Deadline) -> float:
        budget = min(self.probe_timeout, deadline.remaining())
        if budget <= 0:
            raise TimeoutError("scan deadline reached")
        return budget

    def _fetch_cert(
        self, address: str, deadline: Deadline, tls_context: ssl.SSLContext
    ) -> bytes | None:
        with socket.create_connection(
            (address, self.port), timeout=self._budget(deadline)
        ) as sock:
            sock.settimeout(self._budget(deadline))
            with tls_context.wrap_socket(sock, server_hostname=None) as tls_sock:
                return tls_sock.getpeercert(binary_form=True)

    def _fetch_with_fallback(self, address: str, deadline: Deadline) -> bytes | None:
        try:
            return self._fetch_cert(address, deadline, self.context)
        except ssl.SSLError:
            if self.legacy_context is None:
                raise
            return self._fetch_cert(address, deadline, self.legacy_context)


class ResultSet:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self._matches: dict[str, tuple[str, ...]] = {}

    def insert(self, address: str, names: Iterable[str] = ()) -> bool:
        with self.lock:
            if address in self._matches:
                return False
            self._matches[address] = tuple(names)
            return True

    def snapshot(self) -> dict[str, tuple[str, ...]]:
        with self.lock:
            return dict(self._matches)

    def addresses(self) -> list[str]:
        return sorted(self.snapshot(), key=_address_sort_key)

    def __len__(self) -> int:
        with self.lock:
            return len(self._matches)

    def __contains__(self, address: object) -> bool:
        with self.lock:
            return address in self._matches


class Progress:
    def __init__(self, total: int = 0) -> None:
        self.total = total
        self.processed = 0
        self.matched = 0
        self.lock = threading.Lock()

    def set_total(self, total: int) -> None:
        with self.lock:
            self.total = total

    def increment(self, matched: bool = False) -> None:
        with self.lock:
            self.processed += 1
            if matched:
                self.matched += 1

    def snapshot(self) -> tuple[int, int, int]:
        with self.lock:
            return self.processed, self.total, self.matched


class ScanState(enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PARTITIONING = "partitioning"
    SCANNING = "scanning"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class ScanTask:
    index: int
    shard: tuple[str, ...]
    keyword: str
    deadline: Deadline


@dataclass(frozen=True)
class ShardFailure:
    index: int
    cidr: str | None
    address: str | None
    error: BaseException

    def __str__(self) -> str:
        return f"shard {self.index}: error checking IP range {self.cidr}: {self.error}"


@dataclass
class ScanOutcome:
    state: ScanState
    matches: dict[str, tuple[str, ...]] = field(default_factory=dict)
    failures: list[ShardFailure] = field(default_factory=list)
    error: CertsweepError | None = None

    @property
    def ok(self) -> bool:
        return self.state in (ScanState.COMPLETED, ScanState.CANCELLED)

    def addresses(self) -> list[str]:
        return sorted(self.matches, key=_address_sort_key)


class Scanner:
    """Runs one scan: fetch ranges, shard them, probe every address.

    A shard that hits a fatal error stops and is reported in the outcome;
    the remaining shards keep going and matches are never discarded.
    """

    def __init__(
        self,
        source: StaticRangeSource | HttpRangeSource,
        keyword: str,
        prober: CertificateProber | None = None,
        workers: int = 1,
        timeout: float = DEFAULT_TIMEOUT,
        max_hosts: int | None = None,
        progress: Progress | None = None,
    ) -> None:
        if not keyword:
            raise ValueError("keyword must not be empty")
        self.source = source
        self.keyword = keyword
        self.prober = prober if prober is not None else CertificateProber()
        self.workers = max(workers, 1)
        self.timeout = timeout
        self.max_hosts = max_hosts
        self.progress = progress
        self.results = ResultSet()
        self.state = ScanState.IDLE
        self.lock = threading.Lock()
        self._failures: list[ShardFailure] = []
        self._finished: set[int] = set()

    def _transition(self, state: ScanState) -> None:
        logging.debug("Scan state %s -> %s", self.state.value, state.value)
        self.state = state

    def run(self) -> ScanOutcome:
        if self.state is not ScanState.IDLE:
            raise RuntimeError("a Scanner can only run once")

        self._transition(ScanState.FETCHING)
        try:
            cidrs = self.source.fetch()
        except SourceUnavailable as exc:
            logging.error("%s", exc)
            self._transition(ScanState.FAILED)
            return ScanOutcome(ScanState.FAILED, error=exc)
        logging.info("IP ranges: %s", len(cidrs))
        if self.progress is not None:
            self.progress.set_total(count_addresses(cidrs, self.max_hosts))

        self._transition(ScanState.PARTITIONING)
        deadline = Deadline(self.timeout)
        tasks = [
            ScanTask(index, tuple(shard), self.keyword, deadline)
            for index, shard in enumerate(partition(cidrs, self.workers))
        ]

        self._transition(ScanState.SCANNING)
        threads: list[threading.Thread] = []
        for task in tasks:
            thread = threading.Thread(
                target=self._worker,
                args=(task,),
                name=f"certsweep-shard-{task.index}",
                daemon=True,
            )
            thread.start()
            threads.append(thread)
        self._join(threads, deadline)

        with self.lock:
            failures = list(self._failures)
            finished = len(self._finished)
        if failures:
            state = ScanState.FAILED
        elif finished < len(tasks):
            state = ScanState.CANCELLED
        else:
            state = ScanState.COMPLETED
        self._transition(state)

        matches = self.results.snapshot()
        logging.info(
            "Scan %s: matches=%s failed_shards=%s",
            state.value,
            len(matches),
            len(failures),
        )
        return ScanOutcome(state, matches, failures)

    def _join(self, threads: list[threading.Thread], deadline: Deadline) -> None:
        for thread in threads:
            thread.join(timeout=deadline.remaining())
        alive = sum(1 for thread in threads if thread.is_alive())
        if alive:
            logging.info("Scan deadline reached, cancelling %s worker(s)", alive)
        deadline.cancel()
        grace_end = time.monotonic() + JOIN_GRACE
        for thread in threads:
            thread.join(timeout=max(grace_end - time.monotonic(), 0.0))

    def _worker(self, task: ScanTask) -> None:
        cidr: str | None = None
        address: str | None = None
        try:
            for cidr in task.shard:
                for address in iter_addresses(cidr, self.max_hosts):
                    if task.deadline.expired():
                        logging.debug("Shard %s stopped at %s: deadline", task.index, address)
                        return
                    result = self.prober.probe(address, task.keyword, task.deadline)
                    matched = result.status is ProbeStatus.MATCHED
                    if matched and self.results.insert(address, result.names):
                        logging.info("Match %s: %s", address, ", ".join(result.names))
                    if self.progress is not None:
                        self.progress.increment(matched=matched)
                address = None
        except Exception as exc:
            logging.exception("Shard %s failed on %s (%s)", task.index, cidr, address)
            with self.lock:
                self._failures.append(ShardFailure(task.index, cidr, address, exc))
            return
        with self.lock:
            self._finished.add(task.index)


PTR_LOOKUP_ERRORS = (
    socket.herror,
    socket.gaierror,
    dns.resolver.NXDOMAIN,
    dns.resolver.NoAnswer,
    dns.resolver.NoNameservers,
    dns.exception.Timeout,
)


def build_dns_resolver(
    dns_servers: list[str] | None, timeout: float
) -> dns.resolver.Resolver | None:
    if not dns_servers:
        return None
    resolver = dns.resolver.Resolver(configure=False)
    resolver.nameservers = list(dns_servers)
    resolver.lifetime = resolver.timeout = timeout
    return resolver


def reverse_dns(ip: str, resolver: dns.resolver.Resolver | None) -> list[str]:
    """PTR names for ``ip``, lower-cased without the trailing dot, first seen first."""
    try:
        if resolver is None:
            primary, aliases, _ = socket.gethostbyaddr(ip)
            raw_names = [primary, *aliases]
        else:
            answers = resolver.resolve(dns.reversename.from_address(ip), "PTR")
            raw_names = [str(answer) for answer in answers]
    except PTR_LOOKUP_ERRORS as exc:
        logging.debug("No PTR for %s: %s", ip, exc)
        return []
    names = (name.rstrip(".").lower() for name in raw_names)
    return list(dict.fromkeys(name for name in names if name))


def annotate_matches(
    addresses: list[str], dns_servers: list[str] | None, timeout: float
) -> dict[str, list[str]]:
    resolver = build_dns_resolver(dns_servers, timeout)
    return {address: reverse_dns(address, resolver) for address in addresses}


def format_match(
    address: str,
    keyword: str,
    names: tuple[str, ...],
    ptr_names: list[str] | None,
    json_lines: bool,
) -> str:
    if json_lines:
        record = {"ip": address, "keyword": keyword, "names": list(names)}
        if ptr_names is not None:
            record["ptr"] = ptr_names
        return json.dumps(record, separators=(",", ":"))
    line = f"Keyword found in SSL certificate for IP: {address}"
    if ptr_names:
        line += f" (ptr: {', '.join(ptr_names)})"
    return line


def write_results(
    outcome: ScanOutcome,
    keyword: str,
    ptr: dict[str, list[str]] | None,
    json_lines: bool,
    output_stream: TextIO,
) -> None:
    for address in outcome.addresses():
        ptr_names = ptr.get(address, []) if ptr is not None else None
        output_stream.write(
            format_match(address, keyword, outcome.matches[address], ptr_names, json_lines)
            + "\n"
        )
    output_stream.flush()


def format_eta(seconds: float) -> str:
    minutes, secs = divmod(max(int(seconds), 0), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h{minutes:02d}m{secs:02d}s"
    return f"{minutes}m{secs:02d}s" if minutes else f"{secs}s"


def progress_line(progress: Progress, elapsed: float) -> str:
    processed, total, matched = progress.snapshot()
    if not total:
        return f"Scanning: {processed} matches={matched}"
    percent = processed / total * 100
    rate = processed / max(elapsed, 0.001) if processed else 0.0
    remaining = ((total - processed) / rate) if rate else 0.0
    return (
        f"Scanning: {processed}/{total} ({percent:5.1f}%) "
        f"matches={matched} ETA {format_eta(remaining)}"
    )


def status_monitor(
    progress: Progress, stop_event: threading.Event, stream: TextIO | None = None
) -> None:
    stream = stream or sys.stderr
    start_time = time.monotonic()
    while not stop_event.wait(0.2):
        stream.write(f"\r{progress_line(progress, time.monotonic() - start_time)}")
        stream.flush()
    stream.write(f"\r{progress_line(progress, time.monotonic() - start_time)}\n")
    stream.flush()


def cleanup_old_logs(directory: str, max_age_days: int) -> int:
    cutoff = time.time() - max_age_days * 86400
    removed = 0
    try:
        with os.scandir(directory) as entries:
            stale = [
                entry.path
                for entry in entries
                if entry.is_file()
                and entry.name.lower().endswith(".log")
                and entry.stat().st_mtime < cutoff
            ]
    except OSError:
        logging.exception("Cannot scan log directory %s", directory)
        return 0
    for path in stale:
        try:
            os.remove(path)
        except OSError:
            logging.exception("Cannot remove stale log %s", path)
        else:
            removed += 1
    return removed


def configure_logging(log_dir: str | None, verbose: bool) -> str | None:
    formatter = logging.Formatter(
        "%(asctime)sZ %(levelname)s %(message)s", datefmt="%Y-%m-%dT%H:%M:%S"
    )
    formatter.converter = time.gmtime
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    log_path = None
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        log_path = os.path.join(
            log_dir, f"scan_{time.strftime('%Y%m%d_%H%M%S', time.gmtime())}.log"
        )
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, handlers=handlers)

    if log_dir:
        removed_logs = cleanup_old_logs(log_dir, LOG_RETENTION_DAYS)
        if removed_logs:
            logging.info(
                "Removed %s log file(s) older than %s days", removed_logs, LOG_RETENTION_DAYS
            )
    return log_path


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Find hosts in a cloud provider's published IP ranges whose TLS "
            "certificate subject or alternative names contain a keyword."
        )
    )
    parser.add_argument(
        "--keyword",
        required=True,
        help="Keyword to search for in TLS certificate names.",
    )
    parser.add_argument(
        "--timeout",
        type=parse_duration,
        default=DEFAULT_TIMEOUT,
        help="Deadline for the whole scan, e.g. 10s, 1m30s or 45. Default 10s.",
    )
    parser.add_argument(
        "--threads",
        type=int,
        default=1,
        help="Number of concurrent workers. Non-positive values mean 1.",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=DEFAULT_PORT,
        help="TLS port to probe. Defaults to 443.",
    )
    parser.add_argument(
        "--probe-timeout",
        type=parse_duration,
        default=DEFAULT_PROBE_TIMEOUT,
        help="Per-address connect/handshake timeout. Default 3s.",
    )
    parser.add_argument(
        "--url",
        default=DEFAULT_URL,
        help="URL of the published IP-range JSON document.",
    )
    parser.add_argument("--region", help="Only scan prefixes from this region.")
    parser.add_argument("--service", help="Only scan prefixes for this service.")
    parser.add_argument(
        "--ipv6",
        action="store_true",
        help="Also scan the document's IPv6 prefixes.",
    )
    parser.add_argument(
        "--cidr",
        action="append",
        help="CIDR range to scan instead of fetching the document (repeatable).",
    )
    parser.add_argument(
        "--max-hosts-per-range",
        type=int,
        help="Probe at most this many addresses from the start of each range.",
    )
    parser.add_argument(
        "--reverse-dns",
        action="store_true",
        help="Annotate matches with their PTR names.",
    )
    parser.add_argument(
        "--dns-server",
        action="append",
        help="DNS server to use for PTR lookups (repeatable).",
    )
    parser.add_argument(
        "--json-lines",
        action="store_true",
        help="Output one JSON object per match instead of text lines.",
    )
    parser.add_argument(
        "--output",
        help="Write matches to a file instead of stdout.",
    )
    parser.add_argument(
        "--progress",
        action="store_true",
        help="Show a progress line on stderr.",
    )
    parser.add_argument("--log-dir", help="Also write a per-run log file here.")
    parser.add_argument("--verbose", action="store_true", help="Debug logging.")
    args = parser.parse_args(argv)
    if not args.keyword:
        parser.error("--keyword must not be empty")
    if args.max_hosts_per_range is not None and args.max_hosts_per_range <= 0:
        parser.error("--max-hosts-per-range must be positive")
    return args


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    log_path = configure_logging(args.log_dir, args.verbose)
    logging.info("Scan starting")
    if log_path:
        logging.info("Log file: %s", log_path)
    logging.info("Args: %s", vars(args))

    if args.cidr:
        source: StaticRangeSource | HttpRangeSource = StaticRangeSource(args.cidr)
    else:
        source = HttpRangeSource(
            args.url,
            region=args.region,
            service=args.service,
            include_ipv6=args.ipv6,
        )
    progress = Progress() if args.progress else None
    scanner = Scanner(
        source,
        args.keyword,
        prober=CertificateProber(port=args.port, probe_timeout=args.probe_timeout),
        workers=args.threads,
        timeout=args.timeout,
        max_hosts=args.max_hosts_per_range,
        progress=progress,
    )

    stop_event = threading.Event()
    monitor = None
    if progress is not None:
        monitor = threading.Thread(
            target=status_monitor, args=(progress, stop_event), daemon=True
        )
        monitor.start()
    try:
        outcome = scanner.run()
    finally:
        stop_event.set()
        if monitor is not None:
            monitor.join()

    if outcome.error is not None:
        print(f"Error fetching IP ranges: {outcome.error}", file=sys.stderr)
        return 1

    ptr = None
    if args.reverse_dns:
        ptr = annotate_matches(outcome.addresses(), args.dns_server, args.probe_timeout)

    if args.output:
        output_dir = os.path.dirname(os.path.abspath(args.output)) or "."
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            delete=False,
            dir=output_dir,
            prefix=".scan_tmp_",
        ) as temp_file:
            write_results(outcome, args.keyword, ptr, args.json_lines, temp_file)
        os.replace(temp_file.name, args.output)
    else:
        write_results(outcome, args.keyword, ptr, args.json_lines, sys.stdout)

    for failure in outcome.failures:
        print(f"Error: {failure}", file=sys.stderr)
    logging.info("Scan complete: %s", outcome.state.value)
    return 0 if outcome.ok else 1


if __name__ == "__main__":
    sys.exit(main())
