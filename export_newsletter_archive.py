# /// script
# requires-python = "==3.12.*"
# dependencies = [
#   "httpx",
#   "tqdm",
#   "humanize",
#   "beautifulsoup4",
#   "markdownify>=1.0",
#   "trafilatura"
# ]
# ///

"""
Exports a Substack-style newsletter archive to Markdown.
Posts are fetched concurrently (bounded), with retry/backoff on rate limiting and server errors,
and written either as ordered batch files or as one ZIP with a file per post.

Usage:
  uv run ./export_newsletter_archive.py --output-dir "../output_dir"
  uv run ./export_newsletter_archive.py --output-dir "../output_dir" --mode zip --concurrency 4

Args:
  --output-dir (required)
  --site-url (optional) -- defaults to Lenny's Newsletter
  --mode (optional) -- `batch` (default) or `zip`
  --concurrency, --max-retries, --backoff-base-ms, --batch-size (optional) -- clamped to safe ranges
  --file-prefix (optional)
  --front-matter (optional) -- prepend YAML front matter to each post
  --cookie (optional) -- raw Cookie header for subscriber-only posts; or set NEWSLETTER_COOKIE

Press Ctrl-C once to stop claiming new posts; posts already in flight still finish.
"""

import argparse
import logging
import os
import signal
import sys
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import httpx
import humanize
from tqdm import tqdm

from archive_lister import ArchiveLister, ListedItem, ListingError
from export_coordinator import ZIP_COLLECT_SHARE, CancellationToken, ProgressTracker
from filenames import UniqueNameAllocator
from ordered_assembler import BatchAssembler, FetchOutcome
from post_extractor import ExtractionError, PostDocument, extract_post, render_post
from resilient_transport import ResilientTransport, TransportError
from worker_pool import run_pool
from zip_store_writer import ArchiveBuildCancelled, ArchiveEntry, build_archive

## setup logging
log_level_name: str = os.getenv('LOG_LEVEL', 'INFO').upper()
log_level = getattr(
    logging, log_level_name, logging.INFO
)  # maps the string name to the corresponding logging level constant; defaults to INFO
logging.basicConfig(
    level=log_level,
    format='[%(asctime)s] %(levelname)s [%(module)s-%(funcName)s()::%(lineno)d] %(message)s',
    datefmt='%d/%b/%Y %H:%M:%S',
)
log = logging.getLogger(__name__)
## prevent httpx from logging
if log_level <= logging.INFO:
    for noisy in ('httpx', 'httpcore'):
        lg = logging.getLogger(noisy)
        lg.setLevel(logging.WARNING)  # or logging.ERROR if you prefer only errors
        lg.propagate = False  # don't bubble up to root


## constants --------------------------------------------------------
DEFAULT_SITE_URL: str = 'https://www.lennysnewsletter.com'
DEFAULT_FILE_PREFIX: str = 'lennysnewsletter_export'
USER_AGENT: str = 'newsletter-archive-exporter/1.0'
COOKIE_ENV_VAR: str = 'NEWSLETTER_COOKIE'

## default knobs, and the (min, max) each one is clamped to
DEFAULT_CONCURRENCY: int = 6  # higher values hit 429 sooner
DEFAULT_MAX_RETRIES: int = 5
DEFAULT_BACKOFF_BASE_MS: int = 500
DEFAULT_BATCH_SIZE: int = 20
CONCURRENCY_RANGE: tuple[int, int] = (1, 12)
MAX_RETRIES_RANGE: tuple[int, int] = (0, 10)
BACKOFF_BASE_MS_RANGE: tuple[int, int] = (100, 5000)
BATCH_SIZE_RANGE: tuple[int, int] = (1, 200)


class ExportMode(Enum):
    BATCH = 'batch'
    ZIP = 'zip'


def clamp_int(value: object, lo: int, hi: int, fallback: int) -> int:
    """
    Coerces `value` to an int within [lo, hi]; non-numeric input yields `fallback`.
    """
    try:
        number: int = int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        return fallback
    return max(lo, min(hi, number))


@dataclass(frozen=True)
class RunConfig:
    """
    Validated settings for one export run; read-only once built.
    """

    output_dir: Path
    site_url: str = DEFAULT_SITE_URL
    mode: ExportMode = ExportMode.BATCH
    concurrency: int = DEFAULT_CONCURRENCY
    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS
    batch_size: int = DEFAULT_BATCH_SIZE
    file_prefix: str = DEFAULT_FILE_PREFIX
    front_matter: bool = False
    cookie: str | None = field(default=None, repr=False)

    @property
    def backoff_base_s(self) -> float:
        return self.backoff_base_ms / 1000

    @classmethod
    def from_raw(
        cls,
        *,
        output_dir: str | Path,
        site_url: str = DEFAULT_SITE_URL,
        mode: str = 'batch',
        concurrency: object = None,
        max_retries: object = None,
        backoff_base_ms: object = None,
        batch_size: object = None,
        file_prefix: str = DEFAULT_FILE_PREFIX,
        front_matter: bool = False,
        cookie: str | None = None,
    ) -> 'RunConfig':
        return cls(
            output_dir=Path(output_dir).expanduser().resolve(),
            site_url=site_url.rstrip('/'),
            mode=ExportMode(mode),
            concurrency=clamp_int(concurrency, *CONCURRENCY_RANGE, DEFAULT_CONCURRENCY),
            max_retries=clamp_int(max_retries, *MAX_RETRIES_RANGE, DEFAULT_MAX_RETRIES),
            backoff_base_ms=clamp_int(backoff_base_ms, *BACKOFF_BASE_MS_RANGE, DEFAULT_BACKOFF_BASE_MS),
            batch_size=clamp_int(batch_size, *BATCH_SIZE_RANGE, DEFAULT_BATCH_SIZE),
            file_prefix=file_prefix.strip() or DEFAULT_FILE_PREFIX,
            front_matter=front_matter,
            cookie=cookie or None,
        )


@dataclass
class ExportSummary:
    mode: ExportMode
    total: int = 0
    succeeded: int = 0
    files: list[Path] = field(default_factory=list)
    cancelled: bool = False


class OutputDirectory:
    """
    Writes finished export files.
    - Creates the output directory on first use.
    - Writes through a temp file and `os.replace()` so a crash never leaves a half-written file.
    - Logs each file with a human-readable size.
    """

    def __init__(self, path: Path) -> None:
        self.path: Path = path

    def write_bytes(self, name: str, data: bytes) -> Path:
        self.path.mkdir(parents=True, exist_ok=True)
        target: Path = self.path / name
        tmp: Path = self.path / f'{name}.tmp'
        with tmp.open('wb') as fh:
            fh.write(data)
        os.replace(tmp, target)
        log.info(f'Saved: {target.name} ({humanize.naturalsize(len(data))})')
        return target

    def write_text(self, name: str, text: str) -> Path:
        return self.write_bytes(name, text.encode('utf-8'))


def part_filename(prefix: str, part_number: int) -> str:
    return f'{prefix}_part_{part_number:03d}.md'


class BatchExport:
    """
    Batch mode: ordered Markdown parts of up to `batch_size` posts each.
    """

    def __init__(self, config: RunConfig, output: OutputDirectory, cancel: CancellationToken) -> None:
        self.config: RunConfig = config
        self.output: OutputDirectory = output
        self.written: list[Path] = []
        self.assembler = BatchAssembler(config.batch_size, self._emit, cancel)

    def _emit(self, part_number: int, contents: list[str]) -> None:
        name: str = part_filename(self.config.file_prefix, part_number)
        self.written.append(self.output.write_text(name, ''.join(contents)))
        log.info(f'Wrote: {name} ({len(contents)} posts)')

    def accept(self, outcome: FetchOutcome) -> None:
        self.assembler.accept(outcome)

    def finish(self, summary: ExportSummary, progress: ProgressTracker) -> ExportSummary:
        self.assembler.finish()
        summary.files = list(self.written)
        return summary


class ZipExport:
    """
    Zip mode: one `<title>.md` entry per successful post, in listing order, in `<prefix>.zip`.
    - Collects successful outcomes from the workers.
    - Allocates unique entry names in listing order once collection is done.
    - Builds the archive with the store-only writer, reporting per-entry progress.
    """

    def __init__(self, config: RunConfig, output: OutputDirectory, cancel: CancellationToken) -> None:
        self.config: RunConfig = config
        self.output: OutputDirectory = output
        self.cancel: CancellationToken = cancel
        self.collected: list[FetchOutcome] = []
        self._lock = threading.Lock()

    def accept(self, outcome: FetchOutcome) -> None:
        if not outcome.succeeded:
            return
        with self._lock:
            self.collected.append(outcome)

    def build_entries(self) -> list[ArchiveEntry]:
        names = UniqueNameAllocator('.md')
        entries: list[ArchiveEntry] = []
        for outcome in sorted(self.collected, key=lambda o: o.index):
            name: str = names.allocate(outcome.title)
            entries.append(ArchiveEntry(name=name, content=(outcome.content or '').encode('utf-8')))
        return entries

    def finish(self, summary: ExportSummary, progress: ProgressTracker) -> ExportSummary:
        if self.cancel.cancelled:
            summary.cancelled = True
            return summary
        entries: list[ArchiveEntry] = self.build_entries()
        log.info(f'Collection complete: {len(entries)} files')
        log.info(f'Total content size: ~{humanize.naturalsize(sum(len(e.content) for e in entries))}')
        if not entries:
            log.warning('No files collected. Nothing to export.')
            return summary
        try:
            data: bytes = build_archive(entries, cancel=self.cancel, on_entry=progress.record_build_step)
        except ArchiveBuildCancelled:
            log.info('Archive build cancelled.')
            summary.cancelled = True
            return summary
        if self.cancel.cancelled:
            summary.cancelled = True
            return summary
        summary.files = [self.output.write_bytes(f'{self.config.file_prefix}.zip', data)]
        return summary


## mode -> handler; selected once per run
MODE_HANDLERS: dict[ExportMode, Callable[[RunConfig, OutputDirectory, CancellationToken], Any]] = {
    ExportMode.BATCH: BatchExport,
    ExportMode.ZIP: ZipExport,
}


class ArchiveExporter:
    """
    Runs one export: listing, concurrent fetching, then the mode's output assembly.
    - Lists and de-duplicates posts; a ListingError propagates and aborts the run.
    - Fetches each post through the resilient transport and extracts it to Markdown.
    - Records per-post failures as failed outcomes; sibling posts keep going.
    - Feeds every outcome to the mode handler and the progress tracker.
    """

    def __init__(
        self,
        config: RunConfig,
        transport: ResilientTransport,
        cancel: CancellationToken,
        *,
        lister: ArchiveLister | None = None,
        output: OutputDirectory | None = None,
        extract: Callable[[str, str, dict[str, Any] | None], PostDocument] = extract_post,
        on_progress: Callable[[float, str], None] | None = None,
    ) -> None:
        self.config: RunConfig = config
        self.transport: ResilientTransport = transport
        self.cancel: CancellationToken = cancel
        self.lister: ArchiveLister = lister or ArchiveLister(transport, config.site_url)
        self.output: OutputDirectory = output or OutputDirectory(config.output_dir)
        self.extract = extract
        self.on_progress = on_progress

    def fetch_post(self, item: ListedItem, total: int) -> FetchOutcome:
        url: str = item.canonical_key
        log.info(f'({item.index + 1}/{total}) Fetch post: {url}')
        try:
            resp: httpx.Response = self.transport.get(url)
            post: PostDocument = self.extract(resp.text, url, item.raw_record)
            content: str = render_post(post, front_matter=self.config.front_matter)
        except (TransportError, ExtractionError) as exc:
            log.warning(f'failed #{item.index + 1}: {exc}')
            return FetchOutcome(index=item.index, succeeded=False, error_detail=str(exc))
        except Exception as exc:
            log.exception(f'failed #{item.index + 1} unexpectedly: {url}')
            return FetchOutcome(index=item.index, succeeded=False, error_detail=repr(exc))
        return FetchOutcome(index=item.index, succeeded=True, content=content, title=post.title)

    def run(self) -> ExportSummary:
        config: RunConfig = self.config
        summary = ExportSummary(mode=config.mode)
        log.info(
            f'Mode={config.mode.value}, Concurrency={config.concurrency}, '
            f'Retries={config.max_retries}, BackoffBaseMs={config.backoff_base_ms}'
        )
        if config.mode is ExportMode.BATCH:
            log.info(f'BatchSize={config.batch_size}')

        ## list posts (fatal on failure) ---------------------------
        items: list[ListedItem] = self.lister.list_all(self.cancel)
        summary.total = len(items)
        if self.cancel.cancelled:
            summary.cancelled = True
            return summary
        if not items:
            log.warning('No posts found. Are you logged in / is the page accessible?')
            return summary

        ## fetch concurrently, feeding the mode handler --------------
        handler = MODE_HANDLERS[config.mode](config, self.output, self.cancel)
        collect_share: float = ZIP_COLLECT_SHARE if config.mode is ExportMode.ZIP else 1.0
        progress = ProgressTracker(len(items), self.on_progress, collect_share=collect_share)
        label: str = 'ZIP collecting' if config.mode is ExportMode.ZIP else 'Batch exporting'

        def export_item(item: ListedItem) -> None:
            outcome: FetchOutcome = self.fetch_post(item, len(items))
            progress.record(outcome.succeeded, label)
            handler.accept(outcome)

        run_pool(items, export_item, config.concurrency, self.cancel)
        summary.succeeded = progress.succeeded

        ## assemble output -------------------------------------------
        summary = handler.finish(summary, progress)
        if self.cancel.cancelled:
            summary.cancelled = True
            return summary
        progress.complete(f'Done ({config.mode.value}). Exported {summary.succeeded}/{summary.total} posts.')
        return summary


class TqdmProgress:
    """
    Renders tracker fractions as a percent bar on stderr.
    """

    def __init__(self) -> None:
        self.bar = tqdm(total=100, desc='Exporting', bar_format='{l_bar}{bar}| {n:.0f}% {postfix}')
        self._lock = threading.Lock()

    def __call__(self, fraction: float, status: str) -> None:
        with self._lock:
            self.bar.n = round(fraction * 100, 1)
            self.bar.set_postfix_str(status, refresh=False)
            self.bar.refresh()

    def close(self) -> None:
        self.bar.close()


class CLI:
    """
    Manages command-line parsing for the script entrypoint.
    - Requires an output directory; everything else has a default.
    - Numeric knobs are parsed as ints here and clamped by RunConfig.from_raw().
    - Exposes a parse helper to support testing with custom argv.
    """

    @staticmethod
    def build_parser() -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(description='Export a newsletter archive to Markdown.')
        parser.add_argument('--output-dir', required=True, help='Directory to write outputs')
        parser.add_argument('--site-url', default=DEFAULT_SITE_URL, help=f'Newsletter base url (default {DEFAULT_SITE_URL})')
        parser.add_argument('--mode', choices=[m.value for m in ExportMode], default=ExportMode.BATCH.value)
        parser.add_argument(
            '--concurrency', type=int, default=DEFAULT_CONCURRENCY, metavar='INTEGER', help='Parallel post fetches (1-12).'
        )
        parser.add_argument(
            '--max-retries', type=int, default=DEFAULT_MAX_RETRIES, metavar='INTEGER', help='Retries per request (0-10).'
        )
        parser.add_argument(
            '--backoff-base-ms',
            type=int,
            default=DEFAULT_BACKOFF_BASE_MS,
            metavar='INTEGER',
            help='Backoff base in milliseconds, doubled per retry (100-5000).',
        )
        parser.add_argument(
            '--batch-size', type=int, default=DEFAULT_BATCH_SIZE, metavar='INTEGER', help='Posts per batch file (1-200).'
        )
        parser.add_argument('--file-prefix', default=DEFAULT_FILE_PREFIX, help='Prefix for output filenames')
        parser.add_argument('--front-matter', action='store_true', help='Prepend YAML front matter to each post.')
        parser.add_argument(
            '--cookie',
            default=os.getenv(COOKIE_ENV_VAR),
            help=f'Raw Cookie header for subscriber-only posts (default: ${COOKIE_ENV_VAR}).',
        )
        return parser

    @staticmethod
    def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
        return CLI.build_parser().parse_args(argv)


def build_http_client(config: RunConfig) -> httpx.Client:
    headers: dict[str, str] = {'user-agent': USER_AGENT}
    if config.cookie:
        headers['cookie'] = config.cookie
    timeout: httpx.Timeout = httpx.Timeout(connect=30.0, read=60.0, write=60.0, pool=30.0)
    limits: httpx.Limits = httpx.Limits(
        max_keepalive_connections=config.concurrency, max_connections=config.concurrency
    )
    return httpx.Client(headers=headers, timeout=timeout, limits=limits, follow_redirects=True)


def install_stop_signal(cancel: CancellationToken) -> None:
    """
    First Ctrl-C cancels cooperatively; a second one falls back to the default KeyboardInterrupt.
    """

    def handler(signum: int, frame: object) -> None:
        cancel.cancel()
        log.warning('Cancelled by user; finishing posts already in flight.')
        signal.signal(signal.SIGINT, signal.default_int_handler)

    signal.signal(signal.SIGINT, handler)


def main(argv: list[str] | None = None) -> int:
    """
    Exports the archive and prints a success/total summary.

    Flow:
    - Parses CLI args and clamps numeric settings into a RunConfig.
    - Installs the Ctrl-C handler that sets the cancellation token.
    - Creates one httpx client shared by all workers.
    - Lists posts; a listing failure ends the run with exit code 1.
    - Fetches posts concurrently and writes batch parts or the zip; a write failure also exits with 1.

    Called by: dundermain
    """
    ## handle args --------------------------------------------------
    args: argparse.Namespace = CLI.parse_args(argv)
    config: RunConfig = RunConfig.from_raw(
        output_dir=args.output_dir,
        site_url=args.site_url,
        mode=args.mode,
        concurrency=args.concurrency,
        max_retries=args.max_retries,
        backoff_base_ms=args.backoff_base_ms,
        batch_size=args.batch_size,
        file_prefix=args.file_prefix,
        front_matter=args.front_matter,
        cookie=args.cookie,
    )
    cancel = CancellationToken()
    install_stop_signal(cancel)

    ## run the export -----------------------------------------------
    bar = TqdmProgress()
    try:
        with build_http_client(config) as client:
            transport = ResilientTransport(
                client, max_retries=config.max_retries, backoff_base_s=config.backoff_base_s
            )
            exporter = ArchiveExporter(config, transport, cancel, on_progress=bar)
            summary: ExportSummary = exporter.run()
    except ListingError as exc:
        log.error(f'Could not load the archive listing: {exc}')
        return 1
    except OSError as exc:
        log.error(f'Could not write to output directory ``{config.output_dir}``: {exc}')
        return 1
    finally:
        bar.close()

    ## wrap up output -----------------------------------------------
    if summary.cancelled:
        print(f'Cancelled. Exported {summary.succeeded}/{summary.total} posts before stopping.', file=sys.stderr)
        return 130
    print(f'Done ({config.mode.value}). Exported {summary.succeeded}/{summary.total} posts.')
    for path in summary.files:
        print(f'Output: {path}')
    return 0

    ## end def main()


if __name__ == '__main__':
    raise SystemExit(main())
