"""
treegrep: a fast, recursive regex search tool for the terminal.

Walks a directory tree, scans every text file line by line and prints the
matching lines, optionally with surrounding context, highlighting or only the
matched text. Run as `python treegrep.py <pattern> [path]` or through the
`treegrep` console script.
"""

import os
import sys
import re
import json
import time
import threading
import argparse
import logging
import stat
import queue
from dataclasses import dataclass, field

__all__ = [
    "main",
    "__version__",
    "TreegrepError",
    "PatternError",
    "IgnoreConfig",
    "SearchOptions",
    "SearchStats",
    "ConcurrencyGate",
    "OutputSink",
    "Searcher",
    "build_options",
    "load_config",
    "scan_lines",
    "compose_output",
    "matching_text",
]
__version__ = "0.1.0"

DEFAULT_SEARCH_LIMIT = 10

FILE_COLOR = "\x1b[96m"
MATCH_COLOR = "\x1b[30;42m"
MARKER_COLOR = "\x1b[93m"
RESET = "\x1b[0m"

logger = logging.getLogger("treegrep")


class TreegrepError(Exception):
    pass


class PatternError(TreegrepError):
    """The search pattern could not be compiled."""


# ---------- Utilities ----------
def is_binary_data(data: bytes) -> bool:
    if not data:
        return False
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        return True
    return False


def is_symlink(path: str) -> bool:
    try:
        return stat.S_ISLNK(os.lstat(path).st_mode)
    except OSError as e:
        logger.debug("lstat failed for %s: %s", path, e)
        return False


def is_dir(path: str) -> bool:
    try:
        return stat.S_ISDIR(os.stat(path).st_mode)
    except OSError as e:
        logger.debug("stat failed for %s: %s", path, e)
        return False


def is_file(path: str) -> bool:
    try:
        return stat.S_ISREG(os.stat(path).st_mode)
    except OSError as e:
        logger.debug("stat failed for %s: %s", path, e)
        return False


def stream_is_terminal(stream) -> bool:
    try:
        return stream.isatty()
    except (AttributeError, ValueError):
        return False


def stdin_is_piped(stream=None) -> bool:
    """True when stdin is a pipe or a redirected file rather than a terminal."""
    stream = sys.stdin if stream is None else stream
    try:
        mode = os.fstat(stream.fileno()).st_mode
    except (AttributeError, OSError, ValueError):
        return False
    return not stat.S_ISCHR(mode)


def configure_logging(verbose: bool = False, log_file: str | None = None) -> None:
    formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.DEBUG if log_file else logging.INFO)
    logger.propagate = False

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.INFO if verbose else logging.WARNING)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        try:
            handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as e:
            logger.warning("Cannot open log file %s: %s", log_file, e)
            return
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.info("Logging to %s enabled.", log_file)


# ---------- Configuration ----------
@dataclass
class IgnoreConfig:
    ignore_dirs: list[str] = field(default_factory=list)
    ignore_exts: list[str] = field(default_factory=list)

    def __post_init__(self):
        self.ignore_dirs = list(self.ignore_dirs)
        # .git is never searched; cd into it to search it.
        if ".git" not in self.ignore_dirs:
            self.ignore_dirs.append(".git")
        self._exts = frozenset(e.lstrip(".") for e in self.ignore_exts if e.lstrip("."))

    def ignore_dir(self, name: str) -> bool:
        return name in self.ignore_dirs

    def ignore_ext(self, name: str) -> bool:
        ext = os.path.splitext(name)[1]
        if not ext:
            return False
        return ext[1:] in self._exts


def config_path() -> str:
    base = os.getenv("APPDATA") or os.path.expanduser("~")
    return os.path.join(base, ".treegrep", "config.json")


def _string_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str) and v]


def load_config(path: str | None = None) -> IgnoreConfig:
    path = path or config_path()
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return IgnoreConfig()
    except (OSError, ValueError) as e:
        logger.info("Ignoring unreadable config %s: %s", path, e)
        return IgnoreConfig()
    if not isinstance(data, dict):
        return IgnoreConfig()
    return IgnoreConfig(
        ignore_dirs=_string_list(data.get("ignore-dirs")),
        ignore_exts=_string_list(data.get("ignore-exts")),
    )


# ---------- Options ----------
@dataclass(frozen=True)
class SearchOptions:
    pattern: re.Pattern
    insensitive: bool = False
    inverse: bool = False
    before: int = 0
    after: int = 0
    file_name_only: bool = False
    match_only: bool = False
    allow_binary: bool = False
    no_color: bool = False
    is_terminal: bool = False
    force_terminal: bool = False
    follow_symlinks: bool = False
    skip: str = ""
    config: IgnoreConfig = field(default_factory=IgnoreConfig)

    @property
    def show_markers(self) -> bool:
        return self.is_terminal or self.force_terminal

    @property
    def colorize(self) -> bool:
        return self.is_terminal and not self.no_color and not self.match_only


def build_options(
    term: str,
    *,
    insensitive: bool = False,
    before: int = 0,
    after: int = 0,
    context: int = 0,
    config: IgnoreConfig | None = None,
    **flags,
) -> SearchOptions:
    """Compile the pattern and resolve the flag interactions into SearchOptions.

    Raises PatternError when `term` is not a valid regular expression.
    """
    try:
        pattern = re.compile(term, re.IGNORECASE if insensitive else 0)
    except re.error as e:
        raise PatternError(f"{term!r}: {e}") from e

    if context > 0:
        before = after = context
    if flags.get("match_only"):
        flags["no_color"] = True

    return SearchOptions(
        pattern=pattern,
        insensitive=insensitive,
        before=max(0, before),
        after=max(0, after),
        config=config if config is not None else IgnoreConfig(),
        **flags,
    )


# ---------- Scanning ----------
def scan_lines(stream, options: SearchOptions) -> tuple[list[str], list[int]] | None:
    """Read `stream` (bytes) and collect every line plus the matching line numbers.

    Returns None when the scan is aborted, either by a read error or by a
    binary line while binary content is not allowed.
    """
    lines: list[str] = []
    matches: list[int] = []
    search = options.pattern.search
    try:
        for line_no, raw in enumerate(stream, 1):
            if not options.allow_binary and is_binary_data(raw):
                return None
            line = raw.decode("utf-8", errors="replace")
            lines.append(line)
            found = search(line) is not None
            if found != options.inverse:
                matches.append(line_no)
    except OSError as e:
        logger.info("Read error in %s: %s", getattr(stream, "name", "stream"), e)
        return None
    return lines, matches


# ---------- Output ----------
def matching_text(line: str, pattern: re.Pattern) -> list[str]:
    return [m.group(0) for m in pattern.finditer(line)]


def _format_line(text: str, marker: str, options: SearchOptions) -> str:
    text = text.rstrip("\n")
    if options.colorize:
        text = options.pattern.sub(lambda m: MATCH_COLOR + m.group(0) + RESET, text)
        marker = MARKER_COLOR + marker + RESET
    if options.show_markers:
        return f"{marker} {text}"
    return text


def compose_output(file_name: str, lines: list[str], matches: list[int], options: SearchOptions) -> list[str]:
    """Render one file's results as output lines (without newlines)."""
    if file_name.startswith("./"):
        file_name = file_name[2:]
    out: list[str] = []

    if options.show_markers or options.file_name_only:
        out.append(FILE_COLOR + file_name + RESET if options.colorize else file_name)
    if options.file_name_only:
        return out

    def emit(line_no: int, marker: str):
        text = lines[line_no - 1]
        if options.match_only:
            for m in matching_text(text.rstrip("\n"), options.pattern):
                out.append(_format_line(m, f"{line_no}-", options))
        else:
            out.append(_format_line(text, f"{line_no}{marker}", options))

    total = len(lines)
    for n in matches:
        for k in range(max(1, n - options.before), n):
            emit(k, "-")
        emit(n, ":")
        for k in range(n + 1, min(total, n + options.after) + 1):
            emit(k, "+")
        if options.before > 0 or options.after > 0:
            out.append("")

    out.append("")
    return out


class OutputSink:
    """Serializes whole per-file blocks onto one output stream.

    Once the reader on the other end goes away the sink is marked broken and
    every later write is dropped.
    """

    def __init__(self, stream=None):
        self.stream = stream if stream is not None else sys.stdout
        self._lock = threading.Lock()
        self._broken = threading.Event()

    @property
    def broken(self) -> bool:
        return self._broken.is_set()

    def write_file(self, file_name: str, lines: list[str], matches: list[int], options: SearchOptions):
        block = compose_output(file_name, lines, matches, options)
        with self._lock:
            if self.broken:
                return
            try:
                self.stream.write("".join(line + "\n" for line in block))
                self.stream.flush()
            except BrokenPipeError:
                self._broken.set()


# ---------- Concurrency ----------
class ConcurrencyGate:
    """Bounds the number of running file tasks and joins on all of them.

    The sliding counter limits how many tasks may be in flight; the dispatched
    counter only grows and is what `drain_all` waits for.
    """

    def __init__(self, limit: int = DEFAULT_SEARCH_LIMIT):
        if limit < 1:
            raise ValueError(f"concurrency limit must be at least 1, got {limit}")
        self.limit = limit
        self._lock = threading.Lock()
        self._done: queue.Queue = queue.Queue()
        self._open = 0
        self._dispatched = 0
        self._drained = 0

    @property
    def dispatched(self) -> int:
        return self._dispatched

    @property
    def drained(self) -> int:
        return self._drained

    def admit(self):
        with self._lock:
            self._open += 1
            self._dispatched += 1
            wait = self._open > self.limit
        if wait:
            self._done.get()
            with self._lock:
                self._drained += 1
                self._open -= 1

    def complete(self):
        self._done.put(True)

    def dispatch(self, target, *args):
        self.admit()

        def run():
            try:
                target(*args)
            except Exception as e:
                logger.error("Search task failed: %s", e, exc_info=True)
            finally:
                self.complete()

        worker = threading.Thread(target=run, daemon=True)
        try:
            worker.start()
        except RuntimeError:
            self.complete()
            raise

    def drain_all(self):
        while True:
            with self._lock:
                if self._drained >= self._dispatched:
                    return
            self._done.get()
            with self._lock:
                self._drained += 1


# ---------- Search ----------
@dataclass
class SearchStats:
    files_scanned: int = 0
    files_matched: int = 0
    lines_matched: int = 0
    start_ts: float = field(default_factory=time.time)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record(self, matched_lines: int):
        with self._lock:
            self.files_scanned += 1
            if matched_lines:
                self.files_matched += 1
                self.lines_matched += matched_lines

    def summary(self) -> str:
        elapsed = max(0.0, time.time() - self.start_ts)
        return (f"Files: {self.files_scanned} | Files matched: {self.files_matched} | "
                f"Lines matched: {self.lines_matched} | Elapsed: {elapsed:.2f}s")


class Searcher:
    def __init__(self, options: SearchOptions, sink: OutputSink, *, limit: int = DEFAULT_SEARCH_LIMIT):
        self.options = options
        self.sink = sink
        self.gate = ConcurrencyGate(limit)
        self.stats = SearchStats()

    def run(self, path: str = ".", stdin=None) -> SearchStats:
        """Search `stdin` when given, otherwise the tree under `path`, and wait for every task."""
        if stdin is not None:
            self.process_stream(getattr(stdin, "buffer", stdin), "stdin")
        else:
            if not os.path.lexists(path):
                logger.warning("%s: no such file or directory", path)
            self.walk(path)
            self.gate.drain_all()
        logger.info(self.stats.summary())
        return self.stats

    def walk(self, path: str):
        """Depth-first walk from `path`, dispatching one search task per regular file."""
        opts = self.options
        pending = [path]
        while pending:
            # Nobody is reading any more.
            if self.sink.broken:
                return
            path = pending.pop()
            if not opts.follow_symlinks and is_symlink(path):
                continue

            if is_dir(path):
                if opts.config.ignore_dir(os.path.basename(path.rstrip("/"))):
                    continue
                try:
                    names = sorted(os.listdir(path))
                except OSError as e:
                    logger.warning("%s", e)
                    continue
                children = []
                for name in names:
                    if opts.skip and opts.skip in name:
                        continue
                    if opts.config.ignore_dir(name) or opts.config.ignore_ext(name):
                        continue
                    children.append(path.rstrip("/") + "/" + name.lstrip("/"))
                pending.extend(reversed(children))
                continue

            if is_file(path):
                self.gate.dispatch(self.search_file, path)

    def search_file(self, path: str):
        try:
            f = open(path, "rb")
        except OSError as e:
            logger.info("Error opening %s: %s", path, e)
            return
        with f:
            self.process_stream(f, path)

    def process_stream(self, stream, name: str):
        result = scan_lines(stream, self.options)
        if result is None:
            logger.debug("Skipped %s", name)
            self.stats.record(0)
            return
        lines, matches = result
        self.stats.record(len(matches))
        if matches:
            self.sink.write_file(name, lines, matches, self.options)


# ---------- CLI ----------
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="treegrep",
        usage="treegrep [flags] <pattern> [path]",
        description="Use regular expressions to search text. Defaults to the current directory.",
    )
    parser.add_argument("pattern", help="regular expression to search for")
    parser.add_argument("path", nargs="?", default=".", help="file or directory to search (default: .)")
    parser.add_argument("-l", "--nameonly", action="store_true", help="display file names only")
    parser.add_argument("-f", "--follow", action="store_true", help="follow symlinks")
    parser.add_argument("-i", "--insensitive", action="store_true", help="case-insensitive search")
    parser.add_argument("-v", "--inverse", action="store_true", help="print only lines that do not match")
    parser.add_argument("-m", "--match-only", action="store_true", help="print only the matching text")
    parser.add_argument("--no-color", action="store_true", help="print lines without color")
    parser.add_argument("-A", "--after", type=int, default=0, metavar="N", help="lines to print after matches")
    parser.add_argument("-B", "--before", type=int, default=0, metavar="N", help="lines to print before matches")
    parser.add_argument("-C", "--context", type=int, default=0, metavar="N",
                        help="lines to print before and after matches; overrides -A and -B")
    parser.add_argument("-k", "--skip", default="", metavar="TEXT",
                        help="skip files and folders whose names contain TEXT")
    parser.add_argument("-b", "--binary", action="store_true", help="allow searching binary files")
    parser.add_argument("-t", "--terminal", action="store_true", help="force terminal output even when piping")
    parser.add_argument("-j", "--jobs", type=int, default=DEFAULT_SEARCH_LIMIT, metavar="N",
                        help=f"files searched concurrently (default: {DEFAULT_SEARCH_LIMIT})")
    parser.add_argument("--config", metavar="PATH", help=f"config file (default: {config_path()})")
    parser.add_argument("--log-file", metavar="PATH", help="also write diagnostics to PATH")
    parser.add_argument("--verbose", action="store_true", help="print diagnostics and a summary to stderr")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(verbose=args.verbose, log_file=args.log_file)

    if args.jobs < 1:
        print(f"treegrep: --jobs must be at least 1, got {args.jobs}", file=sys.stderr)
        return 1

    try:
        options = build_options(
            args.pattern,
            insensitive=args.insensitive,
            before=args.before,
            after=args.after,
            context=args.context,
            config=load_config(args.config),
            inverse=args.inverse,
            file_name_only=args.nameonly,
            match_only=args.match_only,
            allow_binary=args.binary,
            no_color=args.no_color,
            is_terminal=stream_is_terminal(sys.stdout),
            force_terminal=args.terminal,
            follow_symlinks=args.follow,
            skip=args.skip,
        )
    except PatternError as e:
        print(f"treegrep: invalid pattern: {e}", file=sys.stderr)
        return 1

    sink = OutputSink(sys.stdout)
    searcher = Searcher(options, sink, limit=args.jobs)
    if stdin_is_piped():
        searcher.run(stdin=sys.stdin)
    else:
        searcher.run(args.path)
    if sink.broken:
        _silence_stdout()
    return 0


def _silence_stdout():
    # Output still buffered in sys.stdout would fail again at interpreter exit.
    try:
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
    except (OSError, ValueError) as e:
        logger.debug("Cannot redirect stdout: %s", e)


if __name__ == "__main__":
    sys.exit(main())
