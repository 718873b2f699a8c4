#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# ------------------------------------------------------------------
# tokybook downloader  →  single chapters or a whole-book ZIP
# -----------------------------------------------------------
import argparse
import enum
import io
import json
import os
import re
import sys
import threading
import urllib.parse
import zipfile
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from bs4 import BeautifulSoup, FeatureNotFound

# cloudscraper is optional; fall back to requests.Session if unavailable
try:
    import cloudscraper  # type: ignore
except Exception:  # pragma: no cover
    cloudscraper = None

import requests

# Detect lxml availability (ensure C extension is importable)
try:
    from lxml import etree as _lxml_etree  # noqa: F401
    _HAS_LXML = True
except Exception:
    _HAS_LXML = False

from tqdm import tqdm

SITE_URL = "https://tokybook.com/"
MEDIA_URL = "https://files01.tokybook.com/audio/"
MEDIA_FALLBACK_URL = "https://files02.tokybook.com/audio/"
COMPRESSION_LEVEL = 6
DEFAULT_OUT_DIR = "audiobooks"
DEFAULT_SETTINGS_PATH = os.path.join(
    os.path.expanduser("~"), ".tokybook_downloader.json"
)
DEFAULT_SETTINGS = {"download_cover": True}

_VERBOSE = False  # Global flag for standard verbose output
_DEBUG = False  # Global flag for debug-level output


# -----------------------------------------------------------
# Helper Functions
# -----------------------------------------------------------
def log_verbose(*args, **kwargs):
    """Prints if --verbose or --debug is set."""
    if _VERBOSE or _DEBUG:
        print(*args, **kwargs)


def log_debug(*args, **kwargs):
    """Prints only if --debug is set."""
    if _DEBUG:
        print(*args, **kwargs)


def log_error(message: str):
    """Errors are always shown, regardless of verbosity."""
    print(f"Error: {message}", file=sys.stderr)


def sanitize_filename(name: str) -> str:
    return re.sub(r'[\\/*?:"<>|]', "", name).strip() or "untitled"


def archive_entry_name(name: str) -> str:
    """Only path separators are dropped; they would create folders in the ZIP."""
    return re.sub(r"[\\/]", "", name).strip() or "untitled"


def get_extension(path: str) -> str:
    return path.split(".")[-1]


def encode_uri_component(text: str) -> str:
    """Percent-encodes everything except the characters JS leaves alone."""
    return urllib.parse.quote(text, safe="-_.!~*'()")


class ChapterParseError(ValueError):
    """The page carries a tracks array, but it cannot be parsed."""


class PageFetchError(RuntimeError):
    pass


# -----------------------------------------------------------
# chapter helpers
# -----------------------------------------------------------
@dataclass(frozen=True)
class ChapterRecord:
    index: int
    name: str
    media_path: str


_TRACKS_RE = re.compile(r"tracks\s*=\s*(\[[^\]]+\])\s*")
# The "welcome" entry ends with a dangling comma before its closing brace
_TRAILING_COMMA_RE = re.compile(r",\s*}")


def find_tracks_literal(scripts: Iterable[str]) -> Optional[str]:
    """Returns the first `tracks = [...]` array literal found in the scripts."""
    for text in scripts:
        if not text:
            continue
        match = _TRACKS_RE.search(text)
        if match:
            return match.group(1)
    return None


def repair_tracks_literal(literal: str) -> str:
    return _TRAILING_COMMA_RE.sub("}", literal, count=1)


def parse_tracks(literal: str) -> List[Dict]:
    try:
        tracks = json.loads(literal)
    except json.JSONDecodeError as e:
        raise ChapterParseError(f"Malformed tracks data: {e}") from e
    if not isinstance(tracks, list):
        raise ChapterParseError("Tracks data is not an array.")
    return tracks


def _track_number(track: Dict) -> int:
    value = track.get("track")
    # bool is an int subclass; true/false are not track numbers
    if isinstance(value, bool):
        raise ChapterParseError(f"Invalid track number in {track!r}")
    if isinstance(value, float):
        if not value.is_integer():
            raise ChapterParseError(f"Invalid track number in {track!r}")
        return int(value)
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ChapterParseError(f"Invalid track number in {track!r}") from e


def resolve_chapters(scripts: Iterable[str]) -> Optional[Dict[int, ChapterRecord]]:
    """
    Builds the ordered chapter map from the page's script texts.

    Returns None when no script carries a tracks array (not a book page).
    Raises ChapterParseError when the array is there but cannot be read.
    Track 1 is the site's placeholder "welcome" entry and is always dropped.
    """
    literal = find_tracks_literal(scripts)
    if literal is None:
        return None

    raw_tracks = {}
    for track in parse_tracks(repair_tracks_literal(literal)):
        if not isinstance(track, dict):
            raise ChapterParseError(f"Unexpected track entry: {track!r}")
        raw_tracks[_track_number(track)] = track  # later duplicates win
    raw_tracks.pop(1, None)

    chapters = {}
    for index, track in raw_tracks.items():
        name = track.get("name")
        link = track.get("chapter_link_dropbox")
        if not name or not link:
            raise ChapterParseError(f"Track {index} is missing its name or link.")
        if not isinstance(link, str):
            raise ChapterParseError(f"Track {index} has a non-text link: {link!r}")
        chapters[index] = ChapterRecord(index, str(name), encode_uri_component(link))
        log_debug(f"  Track {index}: {name} -> {chapters[index].media_path}")

    log_verbose(f"  Resolved {len(chapters)} chapters.")
    return chapters


def cover_file_name(cover_url: str) -> str:
    ext = os.path.splitext(os.path.basename(urllib.parse.urlparse(cover_url).path))[1]
    return f"cover{ext}" if len(ext) > 1 else "cover"


def chapter_file_name(record: ChapterRecord) -> str:
    return f"{archive_entry_name(record.name)}.{get_extension(record.media_path)}"


# -----------------------------------------------------------
# file helpers
# -----------------------------------------------------------
def fetch_blob(url: str, scraper) -> Optional[bytes]:
    """Returns the response body on HTTP 2xx, None on any failure."""
    try:
        r = scraper.get(url)
    except requests.exceptions.RequestException as e:
        log_verbose(f"  Warning: Request for {url} failed: {e}")
        return None
    if not r.ok:
        log_verbose(f"  Warning: {url} answered HTTP {r.status_code}")
        return None
    return r.content


def save_file(data: bytes, file_name: str, out_dir: str) -> str:
    """Writes `data` into out_dir; the target never exists half-written."""
    os.makedirs(out_dir, exist_ok=True)
    out_path = os.path.join(out_dir, sanitize_filename(file_name))
    tmp_path = out_path + ".part"
    try:
        with open(tmp_path, "wb") as fh:
            fh.write(data)
        os.replace(tmp_path, out_path)
    except OSError:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise
    print(f"Saved → {out_path}")
    return out_path


# -----------------------------------------------------------
# Archive builder
# -----------------------------------------------------------
@dataclass(frozen=True)
class ArchiveEntry:
    file_name: str
    data: bytes


class Phase(enum.Enum):
    FETCHING_COVER = "Fetching the cover image"
    FETCHING_CHAPTERS = "Fetching chapters"
    COMPRESSING = "Creating archive"


class SessionState(enum.Enum):
    CREATED = "created"
    ACTIVE = "active"
    FINISHED = "finished"


@dataclass
class DownloadSession:
    total_count: int
    current_count: int = 0
    phase: Optional[Phase] = None
    percent: float = 0.0
    state: SessionState = SessionState.CREATED

    @property
    def in_progress(self) -> bool:
        return self.state is SessionState.ACTIVE


class ProgressSurface:
    """Status text plus a 0-100 bar, shown while an archive is being built."""

    def __init__(self, disable: bool = False):
        self._bar = tqdm(
            total=100,
            bar_format="{desc} |{bar}| {percentage:3.0f}%",
            leave=False,
            disable=disable,
        )

    def show(self, text: str, percent: float):
        self._bar.set_description_str(text, refresh=False)
        self._bar.n = percent
        self._bar.refresh()

    def close(self):
        self._bar.close()


def compress_entries(
    entries: List[ArchiveEntry],
    on_progress: Optional[Callable[[float], None]] = None,
    level: int = COMPRESSION_LEVEL,
) -> bytes:
    """
    Deflates the entries, in order, into an in-memory ZIP.
    on_progress receives a non-decreasing percentage after each entry.
    """
    total = sum(len(entry.data) for entry in entries)
    done = 0
    buffer = io.BytesIO()
    with zipfile.ZipFile(
        buffer, "w", zipfile.ZIP_DEFLATED, compresslevel=level
    ) as zf:
        for entry in entries:
            zf.writestr(entry.file_name, entry.data)
            done += len(entry.data)
            log_debug(f"    Deflated {entry.file_name} ({len(entry.data)} bytes)")
            if on_progress:
                on_progress(done / total * 100 if total else 100.0)
    return buffer.getvalue()


class ArchiveBuilder:
    """
    Downloads chapters from the media hosts and saves them, one by one or
    bundled into a single ZIP. Only one archive build may run at a time;
    a request that arrives while one is running is dropped.
    """

    def __init__(
        self,
        scraper,
        out_dir: str = DEFAULT_OUT_DIR,
        media_host: str = MEDIA_URL,
        fallback_host: str = MEDIA_FALLBACK_URL,
        show_progress: bool = True,
        progress_factory: Optional[Callable[[], ProgressSurface]] = None,
    ):
        self.scraper = scraper
        self.out_dir = out_dir
        self.media_host = media_host
        self.fallback_host = fallback_host
        self.progress_factory = progress_factory or (
            lambda: ProgressSurface(disable=not show_progress)
        )
        self.session: Optional[DownloadSession] = None
        self._lock = threading.Lock()

    def fetch_with_fallback(self, path: str) -> Optional[bytes]:
        data = fetch_blob(f"{self.media_host}{path}", self.scraper)
        if data is None:
            log_verbose("  Primary media host failed, trying the fallback host.")
            data = fetch_blob(f"{self.fallback_host}{path}", self.scraper)
        return data

    def download_single(self, record: ChapterRecord) -> Optional[str]:
        print(f"Downloading chapter {record.index}: {record.name}")
        data = self.fetch_with_fallback(record.media_path)
        if data is None:
            log_error(f'Could not download chapter "{record.name}".')
            return None
        return save_file(data, chapter_file_name(record), self.out_dir)

    def build_archive(
        self,
        book_title: str,
        chapters: Dict[int, ChapterRecord],
        include_cover: bool = True,
        cover_url: Optional[str] = None,
    ) -> Optional[str]:
        """Returns the path of the saved archive, or None if nothing was saved."""
        if not self._lock.acquire(blocking=False):
            log_debug("  An archive build is already running; request ignored.")
            return None

        session = None
        progress = None
        try:
            session = DownloadSession(total_count=len(chapters))
            self.session = session
            session.state = SessionState.ACTIVE
            progress = self.progress_factory()

            entries = self._collect_entries(
                session, progress, chapters, include_cover, cover_url
            )
            if entries is None:
                return None
            return self._save_archive(session, progress, book_title, entries)
        finally:
            if progress is not None:
                progress.close()
            if session is not None:
                session.state = SessionState.FINISHED
            self.session = None
            self._lock.release()

    def _report(self, session, progress, phase: Phase, text: str, percent: float):
        session.phase = phase
        session.percent = percent
        progress.show(text, percent)

    def _collect_entries(self, session, progress, chapters, include_cover, cover_url):
        entries: List[ArchiveEntry] = []

        if include_cover:
            self._report(session, progress, Phase.FETCHING_COVER, Phase.FETCHING_COVER.value, 0)
            if cover_url:
                data = fetch_blob(cover_url, self.scraper)
                if data is None:
                    log_error(f"Could not add zip entry for the cover image ({cover_url}).")
                    return None
                entries.append(ArchiveEntry(cover_file_name(cover_url), data))
                log_verbose("  Zipped the cover image")
            else:
                print("  Warning: Could not find the cover image")

        total = session.total_count
        for current, record in enumerate(chapters.values(), start=1):
            session.current_count = current
            self._report(
                session,
                progress,
                Phase.FETCHING_CHAPTERS,
                f"{Phase.FETCHING_CHAPTERS.value}: {current}/{total}",
                current / total * 100,
            )
            data = self.fetch_with_fallback(record.media_path)
            if data is None:
                log_error(f'Could not add zip entry for "{record.name}".')
                return None
            entries.append(ArchiveEntry(chapter_file_name(record), data))
            log_debug(f"  Fetched {record.name} ({len(data)} bytes)")

        return entries

    def _save_archive(self, session, progress, book_title, entries):
        self._report(session, progress, Phase.COMPRESSING, f"{Phase.COMPRESSING.value}: 0%", 0)

        def on_progress(percent):
            self._report(
                session,
                progress,
                Phase.COMPRESSING,
                f"{Phase.COMPRESSING.value}: {percent:.2f}%",
                percent,
            )

        try:
            log_verbose("Generating archive")
            archive = compress_entries(entries, on_progress)
            log_verbose(f'Archive "{book_title}.zip" is ready')
            return save_file(archive, f"{book_title}.zip", self.out_dir)
        except Exception as e:
            log_error(f"Could not save zip archive: {e}")
            return None


# -----------------------------------------------------------
# Page extractor
# -----------------------------------------------------------
_COVER_URL_RE = re.compile(r"""url\(\s*(['"]?)(.+?)\1\s*\)""")


def make_scraper(cookies: str = ""):
    # Prefer cloudscraper, fall back to a plain requests.Session on init errors
    scraper = None
    if cloudscraper is not None:
        try:
            scraper = cloudscraper.create_scraper(
                browser={
                    "browser": "chrome",
                    "platform": "darwin",
                    "mobile": False,
                }
            )
        except Exception as e:
            log_verbose(
                f"  Warning: cloudscraper init failed ({e}). "
                "Falling back to requests.Session()"
            )
    if scraper is None:
        scraper = requests.Session()
    scraper.headers.update({"Referer": SITE_URL, "Origin": SITE_URL})
    if cookies:
        scraper.cookies.update(
            dict(kv.strip().split("=", 1) for kv in cookies.split(";") if "=" in kv)
        )
    return scraper


def make_request(url: str, scraper):
    try:
        r = scraper.get(url)
        r.raise_for_status()
        return r
    except requests.exceptions.RequestException as e:
        raise PageFetchError(f"Request failed: {e}") from e


def make_soup(html: str) -> BeautifulSoup:
    # Prefer lxml when available, but fall back automatically if not
    try:
        parser = "lxml" if _HAS_LXML else "html.parser"
        return BeautifulSoup(html, parser)
    except FeatureNotFound:
        return BeautifulSoup(html, "html.parser")


def fetch_page(url: str, scraper) -> BeautifulSoup:
    log_verbose(f"Fetching {url}")
    return make_soup(make_request(url, scraper).text)


def extract_book_title(soup: BeautifulSoup) -> Optional[str]:
    heading = soup.select_one("div.inside-page-hero.grid-container.grid-parent h1")
    if heading is None:
        return None
    return heading.get_text().strip() or None


def extract_scripts(soup: BeautifulSoup) -> List[str]:
    return [script.string or "" for script in soup.find_all("script")]


def extract_cover_url(soup: BeautifulSoup, base_url: str = SITE_URL) -> Optional[str]:
    """Reads the hero banner's background-image, resolved against base_url."""
    hero = soup.select_one(".page-hero")
    if hero is None:
        return None
    for declaration in hero.get("style", "").split(";"):
        prop, _, value = declaration.partition(":")
        if prop.strip().lower() not in ("background-image", "background"):
            continue
        match = _COVER_URL_RE.search(value)
        if match:
            return urllib.parse.urljoin(base_url, match.group(2))
    return None


# -----------------------------------------------------------
# settings
# -----------------------------------------------------------
def load_settings(path: str) -> Dict:
    settings = dict(DEFAULT_SETTINGS)
    if not os.path.exists(path):
        return settings
    try:
        with open(path, "r") as f:
            stored = json.load(f)
        settings.update(
            {k: bool(v) for k, v in stored.items() if k in DEFAULT_SETTINGS}
        )
    except (json.JSONDecodeError, OSError, AttributeError) as e:
        print(f"  Warning: Could not read settings file at {path}: {e}")
    return settings


def save_settings(path: str, settings: Dict):
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(path, "w") as f:
        json.dump(settings, f, indent=4)
    log_verbose(f"  Settings saved to {path}")


# -----------------------------------------------------------
# main
# -----------------------------------------------------------
def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser("tokybook downloader")
    p.add_argument("book_url")
    p.add_argument(
        "--chapter",
        type=int,
        action="append",
        default=[],
        metavar="N",
        help="Download only this chapter (as listed by --list). Repeatable.",
    )
    p.add_argument(
        "--list",
        action="store_true",
        help="Print the chapters found on the page and exit.",
    )
    p.add_argument(
        "--cover",
        dest="cover",
        action="store_true",
        default=None,
        help="Include the book cover image in the zip file.",
    )
    p.add_argument(
        "--no-cover",
        dest="cover",
        action="store_false",
        help="Leave the book cover image out of the zip file.",
    )
    p.add_argument(
        "--save-settings",
        action="store_true",
        help="Remember the --cover/--no-cover choice for future runs.",
    )
    p.add_argument("--settings", default=DEFAULT_SETTINGS_PATH)
    p.add_argument("-o", "--output", default=DEFAULT_OUT_DIR)
    p.add_argument("--cookies", default="")
    p.add_argument("--media-host", default=MEDIA_URL)
    p.add_argument("--fallback-host", default=MEDIA_FALLBACK_URL)
    p.add_argument(
        "--no-progress",
        action="store_true",
        help="Do not draw the progress bar while building the archive.",
    )
    p.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable detailed, step-by-step logging.",
    )
    p.add_argument(
        "-d",
        "--debug",
        action="store_true",
        help="Enable highly detailed debug-level logging.",
    )
    return p


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    global _VERBOSE, _DEBUG
    _VERBOSE = args.verbose
    _DEBUG = args.debug

    settings = load_settings(args.settings)
    include_cover = settings["download_cover"] if args.cover is None else args.cover
    if args.save_settings:
        settings["download_cover"] = include_cover
        save_settings(args.settings, settings)

    scraper = make_scraper(args.cookies)
    try:
        soup = fetch_page(args.book_url, scraper)
    except PageFetchError as e:
        log_error(str(e))
        return 1

    title = extract_book_title(soup)
    if not title:
        print("No book title found on this page.")
        return 0

    try:
        chapters = resolve_chapters(extract_scripts(soup))
    except ChapterParseError as e:
        log_verbose(f"  {e}")
        log_error("Could not extract book chapters.")
        return 1
    if chapters is None:
        print("No chapter data found on this page.")
        return 0

    print(f"{title} ({len(chapters)} chapters)")
    if args.list:
        for index, record in chapters.items():
            print(f"  {index:>4}  {record.name}")
        return 0

    builder = ArchiveBuilder(
        scraper,
        out_dir=args.output,
        media_host=args.media_host,
        fallback_host=args.fallback_host,
        show_progress=not args.no_progress,
    )

    if args.chapter:
        unknown = [n for n in args.chapter if n not in chapters]
        if unknown:
            log_error(f"No such chapter(s): {', '.join(map(str, unknown))}")
            return 1
        failed = [n for n in args.chapter if builder.download_single(chapters[n]) is None]
        return 1 if failed else 0

    cover_url = extract_cover_url(soup, args.book_url) if include_cover else None
    if builder.build_archive(title, chapters, include_cover, cover_url) is None:
        return 1
    print("\nDone.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
