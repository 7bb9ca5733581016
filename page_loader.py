#!/usr/bin/env python3
import argparse
import enum
import logging
import posixpath
import re
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union
from urllib.parse import urldefrag, urljoin, urlsplit

import requests
from bs4 import BeautifulSoup, FeatureNotFound
from bs4.element import Tag
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# -------------------- Config --------------------

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36"
)
DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
}

HTTP_SCHEMES = {"http", "https"}
INVALID_URL_MESSAGE = "unsupported URL (use http:// or https://)"
# 500 is left out so a broken resource fails without a backoff cycle
RETRY_STATUSES = [429, 502, 503, 504]
CHUNK_SIZE = 64 * 1024

NON_ALNUM_RE = re.compile(r"[^A-Za-z0-9]+")
EXTENSION_RE = re.compile(r"\.[A-Za-z0-9]+")
DEFAULT_BASENAME = "index"
DEFAULT_EXTENSION = ".html"
HTML_SUFFIX = ".html"
RESOURCES_DIR_SUFFIX = "_files"

SKIP_PREFIXES = ("#", "mailto:", "tel:", "javascript:", "data:", "blob:")

# -------------------- Settings --------------------


@dataclass
class Settings:
    timeout: float = 15.0
    workers: int = 16
    retries: int = 3
    max_bytes: int = 50_000_000

    # lenient by default: failed resources leave a partial mirror
    strict: bool = False
    include_anchors: bool = False

    # Session
    user_agent: str = DEFAULT_USER_AGENT
    extra_headers: List[str] = field(default_factory=list)  # "Name: value"


# -------------------- Errors --------------------


class Stage(enum.Enum):
    START = "start"
    MAIN_FETCHED = "main-fetched"
    RESOURCES_PREPARED = "resources-prepared"
    RESOURCES_DOWNLOADED = "resources-downloaded"
    WRITTEN = "written"
    DONE = "done"
    FAILED = "failed"


class PageLoaderError(Exception):
    """Base error; ``stage`` is the pipeline stage the failure happened in."""

    def __init__(self, message: str, *, stage: Optional[Stage] = None):
        super().__init__(message)
        self.stage = stage


class ConfigurationError(PageLoaderError):
    pass


class MainFetchError(PageLoaderError):
    def __init__(
        self,
        message: str,
        *,
        url: str,
        status: Optional[int] = None,
        stage: Optional[Stage] = None,
    ):
        super().__init__(message, stage=stage)
        self.url = url
        self.status = status


class ResourceFetchError(PageLoaderError):
    def __init__(
        self,
        message: str,
        *,
        url: str,
        status: Optional[int] = None,
        stage: Optional[Stage] = None,
    ):
        super().__init__(message, stage=stage)
        self.url = url
        self.status = status


class WriteError(PageLoaderError):
    def __init__(self, message: str, *, path: Path, stage: Optional[Stage] = None):
        super().__init__(message, stage=stage)
        self.path = path


class ResourcesFailedError(PageLoaderError):
    """Strict policy: one or more resources could not be mirrored."""

    def __init__(
        self, failures: List["DownloadOutcome"], *, stage: Optional[Stage] = None
    ):
        first = failures[0]
        message = (
            f"{len(failures)} resource(s) failed to download; "
            f"first: {first.error}"
        )
        super().__init__(message, stage=stage)
        self.failures = failures


# -------------------- Logging --------------------


def null_logger() -> logging.Logger:
    # detached from the logging registry so nothing global is touched
    log = logging.Logger("page_loader.null")
    log.addHandler(logging.NullHandler())
    log.propagate = False
    return log


# -------------------- Names --------------------


@dataclass
class DerivedNames:
    base_name: str
    html_file_name: str
    resources_dir_name: str


def sanitize_name(value: str, fallback: str = DEFAULT_BASENAME) -> str:
    return NON_ALNUM_RE.sub("-", value).strip("-") or fallback


def ascii_host(hostname: Optional[str]) -> str:
    if not hostname:
        return ""
    try:
        return hostname.encode("idna").decode("ascii")
    except UnicodeError:
        return hostname


def derive_main_name(page_url: str) -> Tuple[str, str]:
    p = urlsplit(page_url)
    base = sanitize_name(f"{ascii_host(p.hostname)}{p.path}")
    return base, base + HTML_SUFFIX


def derive_names(page_url: str) -> DerivedNames:
    base, html_name = derive_main_name(page_url)
    return DerivedNames(
        base_name=base,
        html_file_name=html_name,
        resources_dir_name=base + RESOURCES_DIR_SUFFIX,
    )


def split_extension(path: str) -> Tuple[str, str]:
    """Split ``path`` into (remainder, extension) on the last dot of its final segment.

    An absent or non-alphanumeric extension yields ``DEFAULT_EXTENSION`` and
    leaves ``path`` whole.
    """
    segment = path.rsplit("/", 1)[-1]
    _, ext = posixpath.splitext(segment)
    if ext and EXTENSION_RE.fullmatch(ext):
        return path[: -len(ext)], ext
    return path, DEFAULT_EXTENSION


def derive_resource_name(resource_url: str, page_url: str) -> str:
    p = urlsplit(urljoin(page_url, resource_url))
    remainder, ext = split_extension(p.path)
    return sanitize_name(f"{ascii_host(p.hostname)}{remainder}") + ext


# -------------------- Origin --------------------


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip()
    if not u or u.lower().startswith(SKIP_PREFIXES):
        return False
    return True


def is_local_resource(resource_url: str, page_url: str) -> bool:
    try:
        page = urlsplit(page_url)
        resolved = urlsplit(urljoin(page_url, resource_url))
    except ValueError:
        return False
    if resolved.scheme not in HTTP_SCHEMES or not resolved.hostname:
        return False
    return ascii_host(resolved.hostname) == ascii_host(page.hostname)


# -------------------- HTTP --------------------


def is_success(status: int) -> bool:
    return 200 <= status < 300


def apply_extra_headers(
    session: requests.Session, headers: Sequence[str], log: logging.Logger
) -> None:
    for h in headers:
        if ":" not in h:
            log.warning("invalid header (no colon): %s", h)
            continue
        k, v = h.split(":", 1)
        session.headers[k.strip()] = v.strip()


def build_session(
    settings: Settings, logger: Optional[logging.Logger] = None
) -> requests.Session:
    log = logger or null_logger()
    s = requests.Session()
    retry = Retry(
        total=max(0, settings.retries),
        backoff_factor=0.5,
        status_forcelist=RETRY_STATUSES,
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    pool_size = max(1, settings.workers)
    adapter = HTTPAdapter(
        max_retries=retry, pool_connections=pool_size, pool_maxsize=pool_size
    )
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS)
    s.headers["User-Agent"] = settings.user_agent
    apply_extra_headers(s, settings.extra_headers, log)
    return s


def fetch_page(
    session: requests.Session,
    url: str,
    settings: Settings,
    logger: Optional[logging.Logger] = None,
) -> str:
    log = logger or null_logger()
    log.info("GET %s", url)
    try:
        r = session.get(url, timeout=settings.timeout)
    except requests.RequestException as e:
        raise MainFetchError(f"failed to fetch page {url}: {e}", url=url) from e
    if not is_success(r.status_code):
        raise MainFetchError(
            f"failed to fetch page {url}: HTTP {r.status_code}",
            url=url,
            status=r.status_code,
        )
    ct = (r.headers.get("Content-Type") or "").lower()
    if not r.encoding or "charset" not in ct:
        r.encoding = r.apparent_encoding or "utf-8"
    return r.text


# -------------------- HTML utils --------------------


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except FeatureNotFound:
        return BeautifulSoup(html, "html.parser")


def serialize_html(soup: BeautifulSoup) -> str:
    return soup.decode(formatter="html")


def rel_tokens(tag: Tag) -> List[str]:
    rel = tag.get("rel") or []
    if isinstance(rel, str):
        rel = rel.split()
    return [r.lower() for r in rel]


# -------------------- Extraction --------------------


@dataclass
class ResourceRef:
    url: str
    file_name: str
    relative_path: str
    tag: Tag = field(repr=False)
    attribute: str
    original: str


def resource_attribute(tag: Tag, include_anchors: bool) -> Optional[str]:
    if tag.name in ("img", "script"):
        return "src"
    if tag.name == "link":
        return "href" if "stylesheet" in rel_tokens(tag) else None
    if tag.name == "a" and include_anchors:
        return "href"
    return None


def extract_resources(
    soup: BeautifulSoup,
    page_url: str,
    resources_dir_name: str,
    *,
    include_anchors: bool = False,
    logger: Optional[logging.Logger] = None,
) -> List[ResourceRef]:
    """Collect same-origin resources in document order, pointing each at its local copy.

    The matched attribute is rewritten in place to
    ``<resources_dir_name>/<file name>`` before anything is downloaded.
    """
    log = logger or null_logger()
    names = ["img", "link", "script"]
    if include_anchors:
        names.append("a")
    refs: List[ResourceRef] = []
    for tag in soup.find_all(names):
        attr = resource_attribute(tag, include_anchors)
        if attr is None:
            continue
        value = tag.get(attr)
        if not can_fetch_url(value):
            continue
        value = value.strip()
        try:
            absolute, _ = urldefrag(urljoin(page_url, value))
        except ValueError:
            log.debug("skip malformed %s=%r", attr, value)
            continue
        if not is_local_resource(absolute, page_url):
            log.debug("skip external: %s", absolute)
            continue
        file_name = derive_resource_name(absolute, page_url)
        rel = posixpath.join(resources_dir_name, file_name)
        log.debug("rewrite <%s %s> %s -> %s", tag.name, attr, value, rel)
        tag[attr] = rel
        refs.append(
            ResourceRef(
                url=absolute,
                file_name=file_name,
                relative_path=rel,
                tag=tag,
                attribute=attr,
                original=value,
            )
        )
    return refs


# -------------------- Downloaders --------------------


@dataclass
class DownloadOutcome:
    ref: ResourceRef
    path: Optional[Path] = None
    size: int = 0
    error: Optional[PageLoaderError] = None

    @property
    def success(self) -> bool:
        return self.error is None


ProgressCallback = Callable[[DownloadOutcome], None]


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def _write_stream(
    resp: requests.Response, destination: Path, url: str, max_bytes: int
) -> int:
    written = 0
    try:
        ensure_parent_dir(destination)
        with open(destination, "wb") as f:
            for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                if not chunk:
                    continue
                written += len(chunk)
                if written > max_bytes:
                    raise ResourceFetchError(
                        f"resource {url} exceeds {max_bytes} bytes", url=url
                    )
                f.write(chunk)
    # RequestException subclasses OSError, so it has to be caught first
    except requests.RequestException as e:
        raise ResourceFetchError(f"error downloading {url}: {e}", url=url) from e
    except OSError as e:
        raise WriteError(f"cannot write {destination}: {e}", path=destination) from e
    return written


def download_one(
    session: requests.Session,
    url: str,
    destination: Path,
    settings: Settings,
    log: logging.Logger,
) -> int:
    log.debug("GET %s", url)
    try:
        resp = session.get(url, timeout=settings.timeout, stream=True)
    except requests.RequestException as e:
        raise ResourceFetchError(f"error downloading {url}: {e}", url=url) from e
    try:
        if not is_success(resp.status_code):
            raise ResourceFetchError(
                f"failed {url} -> HTTP {resp.status_code}",
                url=url,
                status=resp.status_code,
            )
        cl = resp.headers.get("Content-Length")
        if cl and cl.isdigit() and int(cl) > settings.max_bytes:
            raise ResourceFetchError(
                f"resource {url} is too large ({cl} bytes)", url=url
            )
        try:
            return _write_stream(resp, destination, url, settings.max_bytes)
        except PageLoaderError:
            try:
                destination.unlink(missing_ok=True)
            except OSError:
                pass
            raise
    finally:
        resp.close()


def download_all(
    session: requests.Session,
    refs: Sequence[ResourceRef],
    resources_dir: Path,
    settings: Settings,
    *,
    logger: Optional[logging.Logger] = None,
    progress: Optional[ProgressCallback] = None,
) -> List[DownloadOutcome]:
    """Fetch every ref concurrently into ``resources_dir``.

    A failing resource never cancels its siblings; its error is recorded in
    the returned outcome. Refs sharing a file name are fetched once.
    Outcomes come back in the order of ``refs``.
    """
    log = logger or null_logger()
    try:
        resources_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise WriteError(
            f"cannot create resources directory {resources_dir}: {e}",
            path=resources_dir,
        ) from e
    if not refs:
        return []

    groups: Dict[str, List[int]] = {}
    for i, ref in enumerate(refs):
        groups.setdefault(ref.file_name, []).append(i)

    settled: Dict[int, DownloadOutcome] = {}
    with ThreadPoolExecutor(max_workers=max(1, settings.workers)) as pool:
        future_map = {
            pool.submit(
                download_one,
                session,
                refs[indexes[0]].url,
                resources_dir / name,
                settings,
                log,
            ): name
            for name, indexes in groups.items()
        }
        for fut in as_completed(future_map):
            name = future_map[fut]
            path: Optional[Path] = None
            size = 0
            error: Optional[PageLoaderError] = None
            try:
                size = fut.result()
                path = resources_dir / name
                url = refs[groups[name][0]].url
                log.info("downloaded resource: %s -> %s", url, path)
            except PageLoaderError as e:
                error = e
                log.warning("%s", e)
            for i in groups[name]:
                outcome = DownloadOutcome(
                    ref=refs[i], path=path, size=size, error=error
                )
                settled[i] = outcome
                if progress is not None:
                    progress(outcome)
    return [settled[i] for i in range(len(refs))]


def check_outcomes(
    outcomes: Sequence[DownloadOutcome],
    strict: bool,
    logger: Optional[logging.Logger] = None,
) -> None:
    log = logger or null_logger()
    failed = [o for o in outcomes if not o.success]
    if not failed:
        return
    for o in failed:
        if isinstance(o.error, WriteError):
            raise o.error
    if strict:
        raise ResourcesFailedError(failed)
    log.warning(
        "%d of %d resources failed; mirror is partial", len(failed), len(outcomes)
    )


# -------------------- Main: single page --------------------


def write_html(path: Path, text: str) -> None:
    try:
        path.write_text(text, encoding="utf-8")
    except OSError as e:
        raise WriteError(f"cannot write {path}: {e}", path=path) from e


def _advance(log: logging.Logger, current: Stage, nxt: Stage) -> Stage:
    log.debug("stage %s -> %s", current.value, nxt.value)
    return nxt


def check_output_dir(output_dir: Path) -> None:
    if not output_dir.exists():
        raise ConfigurationError(
            f"output directory does not exist: {output_dir}", stage=Stage.START
        )
    if not output_dir.is_dir():
        raise ConfigurationError(
            f"output path is not a directory: {output_dir}", stage=Stage.START
        )


def mirror(
    page_url: str,
    output_dir: Union[str, Path, None] = None,
    *,
    settings: Optional[Settings] = None,
    session: Optional[requests.Session] = None,
    logger: Optional[logging.Logger] = None,
    progress: Optional[ProgressCallback] = None,
) -> str:
    """Save ``page_url`` and its same-origin resources under ``output_dir``.

    Produces ``<base>.html`` plus a ``<base>_files`` directory and returns
    the absolute path of the HTML file. Raises a :class:`PageLoaderError`
    subclass whose ``stage`` names where the pipeline stopped.
    """
    settings = settings or Settings()
    log = logger or null_logger()
    out_dir = Path(output_dir) if output_dir is not None else Path.cwd()

    check_output_dir(out_dir)
    if urlsplit(page_url).scheme not in HTTP_SCHEMES:
        raise ConfigurationError(
            f"{INVALID_URL_MESSAGE}: {page_url}",
            stage=Stage.START,
        )

    own_session = session is None
    if session is None:
        session = build_session(settings, log)
    stage = Stage.START
    try:
        html = fetch_page(session, page_url, settings, log)
        stage = _advance(log, stage, Stage.MAIN_FETCHED)

        names = derive_names(page_url)
        html_path = (out_dir / names.html_file_name).resolve()
        resources_dir = out_dir / names.resources_dir_name
        soup = bs4_parse(html)
        refs = extract_resources(
            soup,
            page_url,
            names.resources_dir_name,
            include_anchors=settings.include_anchors,
            logger=log,
        )
        log.info("found %d local resources", len(refs))
        stage = _advance(log, stage, Stage.RESOURCES_PREPARED)

        outcomes = download_all(
            session, refs, resources_dir, settings, logger=log, progress=progress
        )
        stage = _advance(log, stage, Stage.RESOURCES_DOWNLOADED)
        check_outcomes(outcomes, settings.strict, logger=log)

        write_html(html_path, serialize_html(soup))
        stage = _advance(log, stage, Stage.WRITTEN)
        log.info("saved page: %s", html_path)
        _advance(log, stage, Stage.DONE)
        return str(html_path)
    except PageLoaderError as e:
        if e.stage is None:
            e.stage = stage
        _advance(log, stage, Stage.FAILED)
        raise
    finally:
        if own_session:
            session.close()


# -------------------- Config loader --------------------

CONFIG_GROUPS = ("general", "http", "download")


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    try:
        if suf in {".toml", ".tml"}:
            try:
                import tomllib  # py311+
            except ImportError:
                import tomli as tomllib  # backport

            with open(p, "rb") as f:
                try:
                    data = tomllib.load(f) or {}
                except tomllib.TOMLDecodeError as e:
                    raise ConfigurationError(f"cannot parse config {path}: {e}") from e
        elif suf in {".yaml", ".yml"}:
            import yaml

            with open(p, "r", encoding="utf-8") as f:
                try:
                    data = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise ConfigurationError(f"cannot parse config {path}: {e}") from e
        else:
            raise ConfigurationError(
                f"unsupported config format: {path} (use .toml or .yaml)"
            )
    except OSError as e:
        raise ConfigurationError(f"cannot read config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"top-level config in {path} must be a mapping")
    flat = {k: v for k, v in data.items() if k not in CONFIG_GROUPS}
    for g in CONFIG_GROUPS:
        if isinstance(data.get(g), dict):
            flat.update(data[g])
    return flat


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="page-loader",
        description="Download a web page together with its local resources.",
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)

    p.add_argument("url", help="http(s) URL of the page")
    p.add_argument(
        "-o",
        "--output",
        default=None,
        help="existing output directory (default: current directory)",
    )
    p.add_argument(
        "--timeout", type=float, default=15.0, help="request timeout seconds"
    )
    p.add_argument("--workers", type=int, default=16, help="concurrent downloads")
    p.add_argument("--retries", type=int, default=3, help="retries per request")
    p.add_argument(
        "--max-bytes", type=int, default=50_000_000, help="max bytes per resource"
    )
    p.add_argument(
        "--strict",
        action="store_true",
        help="fail when any resource cannot be downloaded",
    )
    p.add_argument(
        "--links", action="store_true", help="also mirror same-origin <a href> pages"
    )
    p.add_argument(
        "--user-agent", type=str, default=DEFAULT_USER_AGENT, help="User-Agent header"
    )
    p.add_argument(
        "--header",
        action="append",
        default=[],
        help="extra request header 'Name: value'",
    )
    p.add_argument("--verbose", action="store_true", help="debug logging")
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        parser.set_defaults(**load_config_file(preliminary.config))
    return parser.parse_args(argv)


def progress_reporter(log: logging.Logger) -> ProgressCallback:
    def report(outcome: DownloadOutcome) -> None:
        if outcome.success:
            log.info("ok %s (%d bytes)", outcome.ref.url, outcome.size)
        else:
            log.info("failed %s", outcome.ref.url)

    return report


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        timeout=args.timeout,
        workers=max(1, args.workers),
        retries=max(0, args.retries),
        max_bytes=max(1024, args.max_bytes),
        strict=args.strict,
        include_anchors=args.links,
        user_agent=args.user_agent,
        extra_headers=list(args.header or []),
    )


def main(argv: Optional[List[str]] = None) -> None:
    try:
        args = parse_args(argv)
    except ConfigurationError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    logger = logging.getLogger("page_loader")

    try:
        path = mirror(
            args.url,
            args.output,
            settings=settings_from_args(args),
            logger=logger,
            progress=progress_reporter(logger),
        )
    except PageLoaderError as e:
        stage = e.stage.value if e.stage else "?"
        logger.debug("failed at stage %s", stage, exc_info=True)
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)
    print(path)


if __name__ == "__main__":
    main()
