#!/usr/bin/env python3
import argparse
import hashlib
import logging
import os
import re
import socket
import sys
import time
import tomllib
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from threading import Event, Lock, Timer
from typing import (
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    Tuple,
    Union,
)
from urllib.parse import unquote, urlsplit

import requests
import yaml
from requests.adapters import HTTPAdapter
from requests.structures import CaseInsensitiveDict
from urllib3.util import Timeout
from urllib3.util.retry import Retry

# -------------------- Config --------------------

CONNECT_TIMEOUT = 10.0
READ_TIMEOUT = 10.0
REQUEST_TIMEOUT = 10.0  # whole request, headers and body included
IDLE_TIMEOUT = 1.0
MAX_IDLE_CONNS = 30
CHUNK_SIZE = 8192

DIR_MODE = 0o750
FILE_MODE = 0o644

UNSAFE_PATH_RE = re.compile(r"[^a-zA-Z0-9/._-]+")
HTML_RE = re.compile(rb"<html", re.IGNORECASE)
# RFC 7230 token
METHOD_RE = re.compile(r"^[!#$%&'*+.^_`|~0-9A-Za-z-]+$")

HTTP_VERSIONS = {9: "HTTP/0.9", 10: "HTTP/1.0", 11: "HTTP/1.1", 20: "HTTP/2"}

CONFIG_GROUPS = ("request", "save", "transport", "general")


# -------------------- Settings --------------------


@dataclass(frozen=True)
class Settings:
    method: str = "GET"
    body: str = ""
    delay: float = 0.5  # seconds
    headers: Tuple[str, ...] = ()  # raw "Name: value", command-line order
    match: str = ""
    output: str = "out"
    save_status: FrozenSet[int] = frozenset()
    save_all: bool = False
    ignore_html: bool = False
    ignore_empty: bool = False
    proxy: str = ""
    keep_alive: bool = False
    workers: int = 0  # 0 = one thread per input line


class ConfigError(RuntimeError):
    pass


# -------------------- Throttle --------------------


class LimiterCancelled(Exception):
    pass


class RateLimiter:
    """Token bucket of capacity one shared by every worker.

    Permits are granted at least ``delay`` seconds apart no matter how many
    threads are waiting. A delay of zero or less disables throttling.
    """

    def __init__(self, delay: float, clock: Callable[[], float] = time.monotonic):
        self.delay = max(delay, 0.0)
        self.clock = clock
        self.tokens = 1.0
        self.ts = clock()
        self.lock = Lock()

    def _refill(self) -> None:
        now = self.clock()
        delta = now - self.ts
        if delta > 0:
            self.tokens = min(1.0, self.tokens + delta / self.delay)
            self.ts = now

    def reserve(self) -> float:
        """Take the next permit; return the seconds until it is granted."""
        if self.delay <= 0:
            return 0.0
        with self.lock:
            self._refill()
            # tokens go negative to queue up later reservations
            self.tokens -= 1.0
            if self.tokens >= 0:
                return 0.0
            return -self.tokens * self.delay

    def wait(self, cancel: Optional[Event] = None) -> None:
        if cancel is not None and cancel.is_set():
            raise LimiterCancelled("context canceled")
        wait = self.reserve()
        if wait <= 0:
            return
        if cancel is None:
            time.sleep(wait)
        elif cancel.wait(wait):
            raise LimiterCancelled("context canceled")


# -------------------- Utils --------------------


def normalise_path(path: str) -> str:
    return UNSAFE_PATH_RE.sub("-", path)


def url_hostname(netloc: str) -> str:
    host = netloc.rpartition("@")[2]
    if host.startswith("["):
        end = host.find("]")
        return host[1:end] if end != -1 else host[1:]
    return host.partition(":")[0]


def artifact_dir(output_root: Union[str, Path], host: str, normalised_path: str) -> Path:
    # dot segments would let a crafted URL escape the output directory
    parts = [
        p for p in [host, *normalised_path.split("/")] if p not in ("", ".", "..")
    ]
    return Path(output_root, *parts)


def fingerprint(method: str, raw_url: str, body: str, headers: Iterable[str]) -> str:
    data = method + raw_url + body + ", ".join(headers)
    return hashlib.sha1(data.encode("utf-8", "surrogateescape")).hexdigest()


def effective_method(method: str, body: str) -> str:
    if body and method == "GET":
        return "POST"
    return method


def parse_header(raw: str) -> Optional[Tuple[str, str]]:
    if ":" not in raw:
        return None
    k, v = raw.split(":", 1)
    return k.strip(), v.strip()


def request_headers(raw_headers: Iterable[str]) -> CaseInsensitiveDict:
    headers: CaseInsensitiveDict = CaseInsensitiveDict()
    for h in raw_headers:
        parsed = parse_header(h)
        if parsed is None:
            logging.debug("skipping malformed header: %s", h)
            continue
        headers[parsed[0]] = parsed[1]
    return headers


def is_request_uri(raw_url: str) -> bool:
    if not raw_url:
        return False
    if any(c.isspace() or ord(c) < 0x20 or ord(c) == 0x7F for c in raw_url):
        return False
    try:
        raw_url.encode("utf-8")
        parts = urlsplit(raw_url)
        parts.port  # raises ValueError on a bad port
    except (UnicodeEncodeError, ValueError):
        return False
    return bool(parts.scheme) and bool(parts.netloc)


def parse_status_codes(values: Iterable[Union[str, int]]) -> FrozenSet[int]:
    codes = set()
    for v in values:
        try:
            codes.add(int(v))
        except (TypeError, ValueError):
            logging.warning("ignoring invalid status code: %s", v)
    return frozenset(codes)


def make_dirs(path: Path) -> None:
    # os.makedirs only applies mode to the leaf directory
    missing: List[Path] = []
    p = path
    while not p.exists():
        missing.append(p)
        p = p.parent
    for d in reversed(missing):
        try:
            d.mkdir(mode=DIR_MODE)
        except FileExistsError:
            pass


def write_file(path: Path, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
    with os.fdopen(fd, "wb") as f:
        f.write(data)


_output_lock = Lock()


def emit(line: str) -> None:
    with _output_lock:
        sys.stdout.write(line + "\n")
        sys.stdout.flush()


# -------------------- Save policy --------------------


def should_save(status: int, body: bytes, settings: Settings) -> bool:
    save = settings.save_all or status in settings.save_status
    if settings.ignore_html:
        save = save and not HTML_RE.search(body)
    if settings.ignore_empty:
        save = save and bool(body.strip())
    # a match wins over the html/empty filters
    if settings.match and settings.match.encode("utf-8", "surrogateescape") in body:
        save = True
    return save


# -------------------- HTTP --------------------


class KeepAliveAdapter(HTTPAdapter):
    """HTTPAdapter that drops pooled connections after ``idle_timeout`` seconds idle."""

    def __init__(self, idle_timeout: float = IDLE_TIMEOUT, **kwargs):
        self.idle_timeout = idle_timeout
        self._idle_lock = Lock()
        self._active = 0
        self._last_used = time.monotonic()
        super().__init__(**kwargs)

    def send(self, request, **kwargs):
        with self._idle_lock:
            idle = time.monotonic() - self._last_used
            if self._active == 0 and idle > self.idle_timeout:
                self.poolmanager.clear()
            self._active += 1
        try:
            return super().send(request, **kwargs)
        finally:
            with self._idle_lock:
                self._active -= 1
                self._last_used = time.monotonic()


def parse_proxy(proxy: str) -> Optional[str]:
    if not proxy:
        return None
    try:
        parts = urlsplit(proxy)
        parts.port  # raises ValueError on a bad port
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return proxy


def build_session(keep_alive: bool = False, proxy: str = "") -> requests.Session:
    s = requests.Session()
    s.trust_env = False
    s.verify = True
    s.max_redirects = 0
    retry = Retry(total=0, read=False, redirect=False, raise_on_status=False)
    adapter = KeepAliveAdapter(
        IDLE_TIMEOUT,
        max_retries=retry,
        pool_connections=MAX_IDLE_CONNS,
        pool_maxsize=MAX_IDLE_CONNS,
    )
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    if not keep_alive:
        s.headers["Connection"] = "close"
    p = parse_proxy(proxy)
    if p is not None:
        s.proxies = {"http": p, "https": p}
    elif proxy:
        logging.debug("ignoring unparsable proxy: %s", proxy)
    return s


@dataclass
class ResponseRecord:
    status: int
    proto: str
    reason: str
    headers: List[Tuple[str, str]]
    body: bytes

    @property
    def status_line(self) -> str:
        return f"{self.status} {self.reason}".strip()


def response_record(resp: requests.Response, body: bytes) -> ResponseRecord:
    raw = resp.raw
    raw_headers = getattr(raw, "headers", None)
    if raw_headers is not None and hasattr(raw_headers, "getlist"):
        # keep repeated headers such as Set-Cookie
        headers = [(k, v) for k in raw_headers for v in raw_headers.getlist(k)]
    else:
        headers = list(resp.headers.items())
    proto = HTTP_VERSIONS.get(getattr(raw, "version", 11), "HTTP/1.1")
    return ResponseRecord(
        status=resp.status_code,
        proto=proto,
        reason=resp.reason or "",
        headers=headers,
        body=body,
    )


def _response_socket(resp: requests.Response) -> Optional[socket.socket]:
    raw = resp.raw
    conn = getattr(raw, "connection", None) or getattr(raw, "_connection", None)
    return getattr(conn, "sock", None)


def read_body(resp: requests.Response, deadline: float) -> bytes:
    """Buffer the whole body, raising ``requests.Timeout`` once ``deadline`` passes.

    The read timeout only bounds a single socket read, so a server trickling
    bytes could hold the worker forever. A timer shuts the socket down at the
    deadline to wake up a blocked read.
    """
    expired = Event()
    sock = _response_socket(resp)

    def expire() -> None:
        expired.set()
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass  # already closed

    timer = Timer(max(0.0, deadline - time.monotonic()), expire)
    timer.daemon = True
    timer.start()
    chunks: List[bytes] = []
    try:
        for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
            if expired.is_set() or time.monotonic() > deadline:
                raise requests.Timeout("timeout")
            chunks.append(chunk)
    except requests.RequestException:
        if expired.is_set():
            raise requests.Timeout("timeout")
        raise
    finally:
        timer.cancel()
    # a close-delimited body just ends early when the socket is shut down
    if expired.is_set():
        raise requests.Timeout("timeout")
    return b"".join(chunks)


def render_transcript(
    method: str,
    raw_url: str,
    headers: Sequence[str],
    body: str,
    record: ResponseRecord,
) -> str:
    lines = [f"{method} {raw_url}\n\n"]
    lines.extend(f"> {h}\n" for h in headers)
    lines.append("\n")
    if body:
        lines.append(body + "\n\n")
    lines.append(f"< {record.proto} {record.status_line}\n")
    lines.extend(f"< {k}: {v}\n" for k, v in record.headers)
    return "".join(lines)


# -------------------- Fetcher --------------------


@dataclass
class FetchOutcome:
    url: str
    status: Optional[int] = None
    saved_path: Optional[Path] = None
    error: Optional[str] = None

    def fail(self, prefix: str, detail: object) -> "FetchOutcome":
        self.error = f"{prefix}: {detail}"
        logging.error("%s", self.error)
        return self


def persist(
    raw_url: str, method: str, record: ResponseRecord, settings: Settings, outcome: FetchOutcome
) -> FetchOutcome:
    parts = urlsplit(raw_url)
    directory = artifact_dir(
        settings.output,
        url_hostname(parts.netloc),
        normalise_path(unquote(parts.path)),
    )
    digest = fingerprint(method, raw_url, settings.body, settings.headers)
    body_path = directory / f"{digest}.body"
    headers_path = directory / f"{digest}.headers"

    try:
        make_dirs(directory)
    except OSError as e:
        return outcome.fail("failed to create dir", e)

    try:
        write_file(body_path, record.body)
    except OSError as e:
        return outcome.fail("failed to write file contents", e)

    transcript = render_transcript(
        method, raw_url, settings.headers, settings.body, record
    )
    try:
        fd = os.open(headers_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
    except OSError as e:
        return outcome.fail("failed to create file", e)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(transcript.encode("utf-8", "surrogateescape"))
    except OSError as e:
        return outcome.fail("failed to write file contents", e)

    outcome.saved_path = body_path
    emit(f"{body_path}: {raw_url} {record.status}")
    return outcome


def fetch_one(
    raw_url: str,
    session: requests.Session,
    limiter: RateLimiter,
    settings: Settings,
    cancel: Optional[Event] = None,
) -> FetchOutcome:
    outcome = FetchOutcome(url=raw_url)
    try:
        limiter.wait(cancel)
    except LimiterCancelled as e:
        return outcome.fail("rate limiter error", e)

    if not is_request_uri(raw_url):
        return outcome.fail("invalid URL", raw_url)

    method = effective_method(settings.method, settings.body)
    if not METHOD_RE.match(method):
        return outcome.fail("failed to create request", f"invalid method {method!r}")
    data = settings.body.encode("utf-8", "surrogateescape") if settings.body else None

    deadline = time.monotonic() + REQUEST_TIMEOUT
    try:
        resp = session.request(
            method,
            raw_url,
            data=data,
            headers=request_headers(settings.headers),
            timeout=Timeout(
                connect=CONNECT_TIMEOUT, read=READ_TIMEOUT, total=REQUEST_TIMEOUT
            ),
            allow_redirects=False,
            stream=True,
        )
    except requests.RequestException as e:
        return outcome.fail("request failed", e)

    with resp:
        try:
            body = read_body(resp, deadline)
        except requests.RequestException as e:
            return outcome.fail("failed to read body", e)
        record = response_record(resp, body)

    outcome.status = record.status
    if not should_save(record.status, record.body, settings):
        emit(f"{raw_url} {record.status}")
        return outcome
    return persist(raw_url, method, record, settings, outcome)


# -------------------- Runner --------------------


@dataclass
class RunSummary:
    fetched: int = 0
    saved: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[Tuple[str, str]] = field(default_factory=list)
    lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def add(self, outcome: FetchOutcome) -> None:
        with self.lock:
            if outcome.error is not None:
                self.failed += 1
                self.errors.append((outcome.url, outcome.error))
                return
            self.fetched += 1
            if outcome.saved_path is not None:
                self.saved += 1
            else:
                self.skipped += 1


def read_lines(stream: Iterable[str]) -> Iterator[str]:
    for line in stream:
        yield line.rstrip("\r\n")


def run(
    lines: Iterable[str],
    settings: Settings,
    session: Optional[requests.Session] = None,
    limiter: Optional[RateLimiter] = None,
    cancel: Optional[Event] = None,
) -> RunSummary:
    if session is None:
        session = build_session(settings.keep_alive, settings.proxy)
    if limiter is None:
        limiter = RateLimiter(settings.delay)
    if cancel is None:
        cancel = Event()
    # the pool only starts a new thread when none is idle, so a huge cap
    # gives one thread per pending line
    max_workers = settings.workers if settings.workers > 0 else sys.maxsize
    summary = RunSummary()

    def work(raw_url: str) -> None:
        summary.add(fetch_one(raw_url, session, limiter, settings, cancel))

    thread_limit_hit = False
    futures = []
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        try:
            for raw_url in lines:
                try:
                    futures.append(pool.submit(work, raw_url))
                except RuntimeError as e:
                    # the task is already queued; the running threads pick it up
                    if not thread_limit_hit:
                        logging.warning(
                            "cannot start more worker threads (%s), "
                            "queueing the remaining URLs; use --workers to cap",
                            e,
                        )
                        thread_limit_hit = True
            for fut in as_completed(futures):
                fut.result()
        except KeyboardInterrupt:
            cancel.set()
            pool.shutdown(wait=False, cancel_futures=True)
            raise
    return summary


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, object]:
    p = Path(path)
    suf = p.suffix.lower()
    try:
        if suf in {".toml", ".tml"}:
            with open(p, "rb") as f:
                data = tomllib.load(f)
        elif suf in {".yaml", ".yml"}:
            with open(p, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        else:
            raise ConfigError("Unsupported config format. Use .toml or .yaml")
    except (OSError, tomllib.TOMLDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot load config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("Top-level config must be a mapping")
    flat: Dict[str, object] = {}
    for k, v in data.items():
        if k in CONFIG_GROUPS and isinstance(v, dict):
            flat.update({str(gk).replace("-", "_"): gv for gk, gv in v.items()})
        else:
            flat[str(k).replace("-", "_")] = v
    return flat


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="urlfetcher",
        description="Safe URL fetcher for bug bounty hunting. "
        "Reads URLs from stdin, one per line.",
    )
    p.add_argument("--config", type=str, default=None, help="path to config.toml|.yaml")

    # request
    p.add_argument("-b", "--body", default="", help="request body")
    p.add_argument(
        "-d", "--delay", type=int, default=500, help="delay between issuing requests (ms)"
    )
    p.add_argument(
        "-H",
        "--header",
        dest="headers",
        action="append",
        default=[],
        help="add a header to the request (can be specified multiple times)",
    )
    p.add_argument(
        "-m",
        "--method",
        default="GET",
        help="HTTP method to use (default: GET, or POST if body is specified)",
    )

    # save policy
    p.add_argument(
        "--ignore-html",
        action="store_true",
        help="don't save HTML files; useful when looking for non-HTML files only",
    )
    p.add_argument("--ignore-empty", action="store_true", help="don't save empty files")
    p.add_argument(
        "-M", "--match", default="", help="save responses that include MATCH in the body"
    )
    p.add_argument(
        "-o", "--output", default="out", help="directory to save responses in (will be created)"
    )
    p.add_argument(
        "-s",
        "--save-status",
        action="append",
        default=[],
        help="save responses with given status code (can be specified multiple times)",
    )
    p.add_argument(
        "-S", "--save", dest="save_all", action="store_true", help="save all responses"
    )

    # transport
    p.add_argument(
        "-k", "--keep-alive", "--keep-alives", action="store_true", help="use HTTP keep-alive"
    )
    p.add_argument("-x", "--proxy", default="", help="use the provided HTTP proxy")
    p.add_argument(
        "-w",
        "--workers",
        type=int,
        default=0,
        help="max concurrent requests (default: 0, one per input line)",
    )

    # general
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return p


def config_defaults(
    parser: argparse.ArgumentParser, cfg: Dict[str, object]
) -> Dict[str, object]:
    """Map config keys to parser dests; keys may be a dest or a long option name."""
    dests = {a.dest for a in parser._actions}
    aliases = {
        opt[2:].replace("-", "_"): a.dest
        for a in parser._actions
        for opt in a.option_strings
        if opt.startswith("--")
    }
    defaults: Dict[str, object] = {}
    for k, v in cfg.items():
        if k in dests:
            defaults[k] = v
        elif k in aliases:
            defaults[aliases[k]] = v
        else:
            logging.warning("ignoring unknown config key: %s", k)
    return defaults


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        try:
            cfg = load_config_file(preliminary.config)
        except ConfigError as e:
            parser.error(str(e))
        parser.set_defaults(**config_defaults(parser, cfg))
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        method=args.method,
        body=args.body or "",
        delay=max(0, args.delay) / 1000.0,
        headers=tuple(args.headers or []),
        match=args.match or "",
        output=args.output,
        save_status=parse_status_codes(args.save_status or []),
        save_all=args.save_all,
        ignore_html=args.ignore_html,
        ignore_empty=args.ignore_empty,
        proxy=args.proxy or "",
        keep_alive=args.keep_alive,
        workers=max(0, args.workers),
    )


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s" if args.verbose else "%(message)s",
        stream=sys.stderr,
    )
    if not args.verbose:
        # "connection pool is full" noise under wide fan-out
        logging.getLogger("urllib3").setLevel(logging.ERROR)

    settings = settings_from_args(args)
    # undecodable bytes end up as an invalid URL on their own line
    reconfigure = getattr(sys.stdin, "reconfigure", None)
    if reconfigure is not None:
        reconfigure(errors="surrogateescape")
    try:
        summary = run(read_lines(sys.stdin), settings)
    except KeyboardInterrupt:
        sys.exit(130)
    except (OSError, UnicodeDecodeError) as e:
        logging.error("failed to read input: %s", e)
        sys.exit(1)
    logging.debug(
        "done: %d fetched, %d saved, %d skipped, %d failed",
        summary.fetched,
        summary.saved,
        summary.skipped,
        summary.failed,
    )


if __name__ == "__main__":
    main()
