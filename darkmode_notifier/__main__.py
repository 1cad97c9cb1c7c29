from __future__ import annotations

import argparse
import logging
import logging.handlers
import os
import subprocess
import sys
import textwrap
import time
import tomllib
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Any
from typing import Callable
from typing import Protocol
from typing import Self

__appname__ = 'darkmode-notifier'
__version__ = 'v0.1.0'

logger = logging.getLogger(__name__)

TOMLTable = dict[str, Any]
Callback = Callable[[], None]


def get_config_root() -> Path:
    """Returns the XDG config root, ignoring an empty `XDG_CONFIG_HOME`."""
    return Path(os.environ.get('XDG_CONFIG_HOME') or Path.home() / '.config')


# app
APP_ROOT = get_config_root()
APP_HOME = APP_ROOT / __appname__.lower()
CONFIG_FILE = APP_HOME / 'config.toml'
COMMANDS = ['listen', 'update', 'list', 'init']
MAX_OUTPUT = 1000
HELP = textwrap.dedent(
    f"""usage: {__appname__} [-h] [-c CONFIG] [-d] [-f MODE] [--log BACKEND] [--color WHEN] [-V] [-v] [command]

commands:
    listen              Apply actions now and on every appearance change (default)
    update              Apply actions once and exit
    list                List the actions found in the config file
    init                Write a default config file

options:
    -c, --config        Path to the config file
    -d, --dry-run       Do not make any changes
    -f, --fallback      Mode used when it can not be queried [light|dark] (default: light)
    --force             Overwrite an existing config file on init
    --log               Logging backend [console|syslog] (default: console)
    --color             Enable color [always|never] (default: always)
    -V, --version       Print version and exit
    -v, --verbose       Increase output verbosity
    -h, --help          Print this help message

locations:
  {CONFIG_FILE}"""  # noqa: E501
)

DEFAULT_CONFIG = textwrap.dedent(
    """\
    # darkmode-notifier config
    #
    # Every [[item]] is applied when the notifier starts and each time the
    # system appearance changes or the machine wakes from sleep.
    #
    # A "File" item overwrites `path` with `light_string` or `dark_string`:
    #
    # [[item]]
    # type = "File"
    # path = "~/.config/nvim/lua/is_dark.lua"
    # light_string = "return false\\n"
    # dark_string = "return true\\n"
    #
    # A "Command" item runs `cmd` with `args`:
    #
    # [[item]]
    # type = "Command"
    # cmd = "/usr/local/bin/nvim-reload-colors"
    # args = ["--all"]
    """
)

# colors
BLUE = '\033[34m'
GREEN = '\033[32m'
MAGENTA = '\033[35m'
YELLOW = '\033[33m'
END = '\033[0m'
# styles
BOLD = '\033[1m'
ITALIC = '\033[3m'


class ConfigError(Exception):
    pass


class ConfigNotFoundError(ConfigError, FileNotFoundError):
    pass


class MalformedItemError(ValueError):
    pass


def get_string(table: TOMLTable, key: str) -> str:
    """Returns the string stored under `key` or raises `MalformedItemError`."""
    value = table.get(key)
    if not isinstance(value, str):
        err_msg = f'missing or invalid string {key!r}'
        raise MalformedItemError(err_msg)
    return value


def get_strings(table: TOMLTable, key: str) -> tuple[str, ...]:
    """Returns the array of strings stored under `key` or raises `MalformedItemError`."""
    value = table.get(key)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        err_msg = f'missing or invalid array of strings {key!r}'
        raise MalformedItemError(err_msg)
    return tuple(value)


@dataclass(frozen=True)
class ConfigFile:
    """
    A file whose whole contents are replaced with `light` or `dark`
    depending on the appearance mode.
    """

    path: Path
    light: str
    dark: str

    def get_mode(self, is_dark: bool) -> str:
        return self.dark if is_dark else self.light

    def apply(self, is_dark: bool, dry_run: bool) -> None:
        """
        Overwrites the file with the content for the given mode. If in
        dry-run mode, logs the write instead of doing it.
        """
        content = self.get_mode(is_dark)
        if dry_run:
            logger.info(f'dry run for file={self.path!s} ({len(content)} chars)')
            return

        Files.write(self.path, content)
        logger.info(f'updated file={self.path!s} dark={is_dark}')

    @classmethod
    def new(cls, data: TOMLTable) -> ConfigFile:
        """Creates a new ConfigFile instance from a `File` item table."""
        return cls(
            path=Files.get_path(get_string(data, 'path')),
            light=get_string(data, 'light_string'),
            dark=get_string(data, 'dark_string'),
        )

    def __str__(self) -> str:
        return f'{colorize("[file]", BOLD, BLUE)} {self.path!s}'


@dataclass(frozen=True)
class NotifyCmd:
    """
    A command invoked with a fixed list of arguments on every cycle,
    regardless of the appearance mode.
    """

    command: str
    args: tuple[str, ...] = ()

    def apply(self, is_dark: bool, dry_run: bool) -> None:
        """
        Runs the command and logs its merged output. If in dry-run mode,
        logs the command instead of executing it.
        """
        if dry_run:
            logger.info(f'dry run for command={self.command} args={list(self.args)}')
            return

        returncode, output = SysOps.capture(self.command, self.args)
        if returncode != 0:
            logger.warning(f'command={self.command} exited with code={returncode}')

        if not output:
            logger.info(f'notified command={self.command} args={list(self.args)}: empty output')
            return

        if len(output) > MAX_OUTPUT:
            output = output[:MAX_OUTPUT] + '...'
        logger.info(
            f'notified command={self.command} args={list(self.args)}: received output={output!r}'
        )

    @classmethod
    def new(cls, data: TOMLTable) -> NotifyCmd:
        """Creates a new NotifyCmd instance from a `Command` item table."""
        return cls(
            command=Files.expand_homepath(get_string(data, 'cmd')),
            args=get_strings(data, 'args'),
        )

    def __str__(self) -> str:
        args = ' '.join(self.args)
        return f'{colorize("[cmd]", BOLD, MAGENTA)} {self.command} {args}'.rstrip()


UpdateItem = ConfigFile | NotifyCmd

ITEM_TYPES: dict[str, Callable[[TOMLTable], UpdateItem]] = {
    'File': ConfigFile.new,
    'Command': NotifyCmd.new,
}


def parse_item(data: TOMLTable) -> UpdateItem:
    """
    Dispatches an `item` table on its `type` discriminator.
    Raises `MalformedItemError` if the table can not become an item.
    """
    kind = data.get('type')
    if kind is None:
        err_msg = "missing 'type'"
        raise MalformedItemError(err_msg)

    new = ITEM_TYPES.get(kind) if isinstance(kind, str) else None
    if new is None:
        err_msg = f'unknown type {kind!r}'
        raise MalformedItemError(err_msg)
    return new(data)


def parse_items(tables: list[Any]) -> tuple[UpdateItem, ...]:
    """
    Builds the ordered item tuple, skipping every malformed table.
    """
    items: list[UpdateItem] = []
    for idx, table in enumerate(tables):
        if not isinstance(table, dict):
            logger.warning(f'skipping item={idx}: not a table')
            continue
        try:
            items.append(parse_item(table))
        except MalformedItemError as err:
            logger.warning(f'skipping item={idx}: {err}')
    return tuple(items)


@dataclass
class TOMLFile:
    """
    A dataclass representing a TOML config file and providing
    methods to read it and build the update items.
    """

    path: Path
    _data: TOMLTable = field(default_factory=dict)

    @property
    def data(self) -> TOMLTable:
        """Returns the parsed data from the TOML file."""
        return self._data

    def read(self) -> Self:
        """
        Reads the TOML file and populates the data attribute with its contents.
        """
        if not self.path.is_file():
            err_msg = f'config file {self.path!s} not found.'
            raise ConfigNotFoundError(err_msg)

        try:
            with self.path.open(mode='rb') as file:
                self._data = tomllib.load(file)
        except (tomllib.TOMLDecodeError, UnicodeDecodeError, OSError) as err:
            err_msg = f'invalid config file {self.path!s}: {err}'
            raise ConfigError(err_msg) from err
        return self

    def items(self) -> tuple[UpdateItem, ...]:
        """Returns the valid items declared under the `item` array."""
        tables = self._data.get('item')
        if tables is None:
            logger.warning(f'no items found in {self.path!s}')
            return ()
        if not isinstance(tables, list):
            logger.warning(f"'item' in {self.path!s} is not an array of tables")
            return ()
        return parse_items(tables)


def load(path: Path) -> tuple[UpdateItem, ...]:
    """Reads the config file at `path` and returns its update items."""
    items = TOMLFile(path).read().items()
    logger.debug(f'loaded {len(items)} items from {path!s}')
    return items


class Files:
    """
    A utility class for handling file operations such as writing and
    expanding file paths.
    """

    @staticmethod
    def write(f: Path, content: str) -> None:
        """Replaces the whole contents of a file with `content`, UTF-8 encoded."""
        with f.open(mode='w', encoding='utf-8', newline='') as file:
            file.write(content)

    @staticmethod
    def get_path(f: str) -> Path:
        """
        Expands a file path (including '~' for the home directory) and
        returns it as a Path object.
        """
        return Path(f).expanduser()

    @staticmethod
    def expand_homepath(command: str) -> str:
        """Expands a leading '~' in an executable path."""
        if not command.startswith('~'):
            return command
        return Path(command).expanduser().as_posix()

    @staticmethod
    def mkdir(path: Path) -> None:
        """
        Creates a directory (and its parents) at the specified path if it
        does not already exist.
        """
        if path.is_file():
            err_msg = f'Cannot create directory: {path!s} is a file.'
            raise NotADirectoryError(err_msg)
        if path.exists():
            logger.debug(f'path={path!s} already exists')
            return

        logger.info(f'creating {path=}')
        path.mkdir(parents=True, exist_ok=True)


class SysOps:
    """
    A utility class for system operations such as process execution and
    querying the system appearance.
    """

    color: bool = False

    @staticmethod
    def capture(command: str, args: tuple[str, ...]) -> tuple[int, str]:
        """
        Runs a command without stdin, waits for it and returns its exit code
        and merged stdout/stderr decoded as UTF-8.
        """
        logger.debug(f'executing command={command!r} args={list(args)}')
        proc = subprocess.run(  # noqa: S603
            [command, *args],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            check=False,
            shell=False,
        )
        return proc.returncode, proc.stdout.decode('utf-8')

    @staticmethod
    def is_darwin() -> bool:
        return sys.platform == 'darwin'


@dataclass(frozen=True)
class StateProbe:
    """
    Queries the current system appearance. Returns `fallback` when the
    platform is not supported or the query fails.
    """

    fallback: bool = False
    timeout: float = 3.0

    def query(self) -> bool:
        """Returns True if dark mode is active."""
        if not SysOps.is_darwin():
            logger.debug(f'appearance query unsupported on {sys.platform}, dark={self.fallback}')
            return self.fallback

        try:
            proc = subprocess.run(
                ['defaults', 'read', '-g', 'AppleInterfaceStyle'],  # noqa: S607
                capture_output=True,
                timeout=self.timeout,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as err:
            logger.debug(f'appearance query failed: {err}, dark={self.fallback}')
            return self.fallback

        # the key is absent (non-zero exit) while in light mode
        return proc.returncode == 0 and b'Dark' in proc.stdout


def apply(item: UpdateItem, is_dark: bool, dry_run: bool = False) -> bool:
    """
    Applies a single item and returns whether it succeeded. Failures are
    logged, never raised.
    """
    try:
        item.apply(is_dark, dry_run)
    except (OSError, ValueError) as err:
        match item:
            case ConfigFile(path=path):
                logger.error(f'could not write file={path!s}: {err}')
            case NotifyCmd(command=command, args=args):
                logger.error(f'could not run command={command} args={list(args)}: {err}')
        return False
    return True


@dataclass
class Context:
    """
    Process-wide state: where the config lives, how to query the
    appearance and the items loaded from the config.
    """

    path: Path
    probe: StateProbe = field(default_factory=StateProbe)
    dry_run: bool = False
    _items: tuple[UpdateItem, ...] | None = None

    @property
    def items(self) -> tuple[UpdateItem, ...]:
        if self._items is None:
            err_msg = 'items not loaded'
            raise RuntimeError(err_msg)
        return self._items

    @property
    def loaded(self) -> bool:
        return self._items is not None

    def load(self) -> Self:
        """Loads the items from the config file. Can only be done once."""
        if self.loaded:
            err_msg = f'items already loaded from {self.path!s}'
            raise RuntimeError(err_msg)
        self._items = load(self.path)
        return self

    @classmethod
    def new(
        cls,
        path: str | Path | None = None,
        probe: StateProbe | None = None,
        dry_run: bool = False,
    ) -> Context:
        """
        Creates a new Context, falling back to the default config path
        when no path is given.
        """
        return cls(
            path=Files.get_path(str(path)) if path else CONFIG_FILE,
            probe=probe or StateProbe(),
            dry_run=dry_run,
        )


def run_cycle(ctx: Context) -> None:
    """Queries the appearance once and applies every item with that mode."""
    is_dark = ctx.probe.query()
    logger.info(f'applying {len(ctx.items)} items, dark={is_dark}')

    failed = 0
    for item in ctx.items:
        if not apply(item, is_dark, ctx.dry_run):
            failed += 1

    if failed:
        logger.warning(f'{failed} of {len(ctx.items)} items failed')


class EventSource(Protocol):
    def on_appearance_changed(self, callback: Callback) -> None: ...

    def on_wake(self, callback: Callback) -> None: ...

    def run_forever(self) -> None: ...


class MacOSEventSource:
    """
    Delivers the system theme-changed and did-wake notifications through
    the Cocoa notification centers.
    """

    THEME_CHANGED = 'AppleInterfaceThemeChangedNotification'

    def __init__(self) -> None:
        from AppKit import NSWorkspace
        from Foundation import NSDistributedNotificationCenter

        self._theme_center = NSDistributedNotificationCenter.defaultCenter()
        self._wake_center = NSWorkspace.sharedWorkspace().notificationCenter()
        # the centers do not retain block observers
        self._observers: list[Any] = []

    def _observe(self, center: Any, name: str, callback: Callback) -> None:
        observer = center.addObserverForName_object_queue_usingBlock_(
            name, None, None, lambda _notification: callback()
        )
        self._observers.append(observer)

    def on_appearance_changed(self, callback: Callback) -> None:
        self._observe(self._theme_center, self.THEME_CHANGED, callback)

    def on_wake(self, callback: Callback) -> None:
        from AppKit import NSWorkspaceDidWakeNotification

        self._observe(self._wake_center, NSWorkspaceDidWakeNotification, callback)

    def run_forever(self) -> None:
        from PyObjCTools import AppHelper

        AppHelper.runConsoleEventLoop(installInterrupt=True)


@dataclass
class PollingEventSource:
    """
    Polls the appearance every `interval` seconds. A wake is detected when
    the wall clock moved further than the monotonic clock between polls.
    """

    probe: StateProbe
    interval: float = 2.0
    wake_threshold: float = 5.0
    _changed: list[Callback] = field(default_factory=list)
    _woke: list[Callback] = field(default_factory=list)
    _last: bool | None = None
    _wall: float = field(default_factory=time.time)
    _mono: float = field(default_factory=time.monotonic)

    def on_appearance_changed(self, callback: Callback) -> None:
        self._changed.append(callback)

    def on_wake(self, callback: Callback) -> None:
        self._woke.append(callback)

    def tick(self) -> None:
        """Polls once and fires the callbacks for whatever happened."""
        wall, mono = time.time(), time.monotonic()
        slept = (wall - self._wall) - (mono - self._mono)
        self._wall, self._mono = wall, mono

        current = self.probe.query()
        changed = self._last is not None and current != self._last
        self._last = current

        if changed:
            for callback in self._changed:
                callback()
        if slept > self.wake_threshold:
            logger.debug(f'clock jumped {slept:.1f}s')
            for callback in self._woke:
                callback()

    def run_forever(self) -> None:
        self._last = self.probe.query()
        while True:
            time.sleep(self.interval)
            self.tick()


def get_event_source(probe: StateProbe) -> EventSource:
    """Returns the native event source on macOS and a polling one elsewhere."""
    if SysOps.is_darwin():
        return MacOSEventSource()
    logger.info(f'no native appearance notifications on {sys.platform}, polling')
    return PollingEventSource(probe)


def start(ctx: Context, source: EventSource) -> None:
    """
    Subscribes to appearance and wake events, re-running the update cycle
    on each, then blocks on the event source.
    """

    def on_appearance_changed() -> None:
        logger.info('detected appearance change')
        run_cycle(ctx)

    def on_wake() -> None:
        logger.info('detected wake from sleep')
        run_cycle(ctx)

    source.on_appearance_changed(on_appearance_changed)
    source.on_wake(on_wake)
    logger.info(f'listening for appearance changes with {type(source).__name__}')
    source.run_forever()


def version() -> None:
    print(f'{__appname__} {__version__}')


def logme(s: str) -> None:
    print(f'{__appname__} {__version__}: {s}')


def colorize(text: str, *styles: str) -> str:
    """Returns the given text with the specified styles applied."""
    # https://no-color.org/
    if os.getenv('NO_COLOR'):
        return text
    if not styles or not SysOps.color:
        return text
    return ''.join(styles) + text + END


def print_list_items(ctx: Context) -> None:
    """Prints the items loaded from the config file."""
    print(f'> {colorize(ctx.path.as_posix(), BOLD, BLUE)}', end='\n\n')
    if not ctx.items:
        print('> no items found')
        return
    for item in ctx.items:
        print(item)


def write_default_config(path: Path, force: bool = False) -> int:
    """Writes the default config template to `path`."""
    if path.exists() and not force:
        logme(f'config file {path!s} already exists, use --force to overwrite')
        return 1

    Files.mkdir(path.parent)
    Files.write(path, DEFAULT_CONFIG)
    print(f'{colorize("[new]", BOLD, GREEN)} {path!s}')
    return 0


def handle_missing_config(err: ConfigError) -> int:
    """Handles the case when the config can not be read."""
    logme(str(err))
    hint = colorize(f'{__appname__} init', ITALIC, YELLOW)
    print(f'> create one with {hint}')
    return 1


class Setup:
    """
    A utility class for initial setup tasks such as argument parsing and
    logging configuration.
    """

    @staticmethod
    def init(argv: list[str] | None = None) -> argparse.Namespace:
        """Initializes the application setup."""
        args = Setup.args(argv)
        verbose = args.verbose
        if args.command == 'listen':
            # cycle outcomes go to the log while listening
            verbose = max(verbose, 2)
        Setup.logging(verbose, args.log)
        # globals
        SysOps.color = args.color == 'always'

        logging.debug(vars(args))
        parse_and_exit(args)
        return args

    @staticmethod
    def logging(verbose: int, backend: str = 'console') -> None:
        """
        Configures the logging format, level and backend.
        """
        logging_format = '[{levelname:^7}] {name:<18}: {message} (line:{lineno})'
        levels = [logging.ERROR, logging.WARNING, logging.INFO, logging.DEBUG]
        level = levels[min(verbose, len(levels) - 1)]
        handler: logging.Handler
        fallback = ''
        if backend == 'syslog':
            address = '/var/run/syslog' if SysOps.is_darwin() else '/dev/log'
            try:
                handler = logging.handlers.SysLogHandler(address=address)
                logging_format = f'{__appname__}: {{name}}: {{message}}'
            except OSError as err:
                handler = logging.StreamHandler()
                fallback = f'syslog unavailable at {address}: {err}, logging to console'
        else:
            handler = logging.StreamHandler()
        logging.basicConfig(
            level=level,
            format=logging_format,
            style='{',
            handlers=[handler],
        )
        if fallback:
            logger.warning(fallback)

    @staticmethod
    def args(argv: list[str] | None = None) -> argparse.Namespace:
        """
        Parses and returns command-line arguments.
        """
        parser = argparse.ArgumentParser(
            formatter_class=argparse.RawTextHelpFormatter,
            add_help=False,
        )
        parser.add_argument('command', nargs='?', choices=COMMANDS, default='listen')
        parser.add_argument('-c', '--config', type=str)
        parser.add_argument('-d', '--dry-run', action='store_true')
        parser.add_argument('-f', '--fallback', choices=['light', 'dark'], default='light')
        parser.add_argument('--force', action='store_true')
        parser.add_argument('--log', choices=['console', 'syslog'], default='console')
        parser.add_argument('--color', type=str, choices=['always', 'never'], default='always')
        parser.add_argument('-V', '--version', action='store_true')
        parser.add_argument('-h', '--help', action='store_true')
        parser.add_argument('-v', '--verbose', action='count', default=0)
        return parser.parse_args(argv)


def parse_and_exit(args: argparse.Namespace) -> None:
    """Handles the arguments that exit before any config is read."""
    if args.help:
        print(HELP)
        sys.exit(0)
    if args.version:
        version()
        sys.exit(0)


def main(argv: list[str] | None = None) -> int:
    args = Setup.init(argv)
    probe = StateProbe(fallback=args.fallback == 'dark')
    ctx = Context.new(args.config, probe=probe, dry_run=args.dry_run)

    if args.command == 'init':
        return write_default_config(ctx.path, force=args.force)

    try:
        ctx.load()
    except ConfigError as err:
        return handle_missing_config(err)

    match args.command:
        case 'list':
            print_list_items(ctx)
        case 'update':
            run_cycle(ctx)
        case _:
            # apply once so a freshly started listener reflects the current mode
            run_cycle(ctx)
            start(ctx, get_event_source(ctx.probe))

    return 0


if __name__ == '__main__':
    sys.exit(main())
