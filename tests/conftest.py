from __future__ import annotations

import sys
from dataclasses import dataclass
from dataclasses import field
from typing import TYPE_CHECKING
from typing import Callable
from typing import NamedTuple

import pytest

from darkmode_notifier.__main__ import ConfigFile
from darkmode_notifier.__main__ import Context
from darkmode_notifier.__main__ import NotifyCmd

if TYPE_CHECKING:
    from pathlib import Path

    from darkmode_notifier.__main__ import Callback


class ConfigForTest(NamedTuple):
    name: str
    light: str
    dark: str


CONFIG = ConfigForTest(
    name='t.conf',
    light='L',
    dark='D',
)

# prints its arguments, one per line
ECHO_ARGS = 'import sys; print(*sys.argv[1:], sep="\\n")'


@dataclass
class FakeProbe:
    """Returns the queued modes in order, repeating the last one."""

    modes: list[bool] = field(default_factory=lambda: [False])
    calls: int = 0

    def query(self) -> bool:
        mode = self.modes[min(self.calls, len(self.modes) - 1)]
        self.calls += 1
        return mode


@dataclass
class FakeEventSource:
    """Collects the callbacks so tests can fire them in-process."""

    changed: list[Callback] = field(default_factory=list)
    woke: list[Callback] = field(default_factory=list)
    running: bool = False

    def on_appearance_changed(self, callback: Callback) -> None:
        self.changed.append(callback)

    def on_wake(self, callback: Callback) -> None:
        self.woke.append(callback)

    def run_forever(self) -> None:
        self.running = True

    def fire_changed(self) -> None:
        for callback in self.changed:
            callback()

    def fire_wake(self) -> None:
        for callback in self.woke:
            callback()


@pytest.fixture
def temp_file(tmp_path):
    def create_file(filename, content):
        path = tmp_path / filename
        path.write_text(content)
        return path

    return create_file


@pytest.fixture
def temp_toml(tmp_path):
    def create_toml(content) -> Path:
        path = tmp_path / 'config.toml'
        path.write_text(content, encoding='utf-8')
        return path

    return create_toml


@pytest.fixture
def target_file(tmp_path: Path) -> Path:
    return tmp_path / CONFIG.name


@pytest.fixture
def config_file(target_file: Path) -> ConfigFile:
    return ConfigFile(path=target_file, light=CONFIG.light, dark=CONFIG.dark)


@pytest.fixture
def echo_cmd() -> NotifyCmd:
    return NotifyCmd(command=sys.executable, args=('-c', ECHO_ARGS, 'first', 'second arg'))


@pytest.fixture
def valid_content(target_file: Path) -> str:
    return f"""\
    [[item]]
    type = "File"
    path = "{target_file.as_posix()}"
    light_string = "{CONFIG.light}"
    dark_string = "{CONFIG.dark}"

    [[item]]
    type = "Command"
    cmd = "/usr/bin/true"
    args = ["-a", "b"]
    """


@pytest.fixture
def make_context(temp_toml: Callable[..., Path]) -> Callable[..., Context]:
    def create_context(content: str, modes: list[bool] | None = None) -> Context:
        path = temp_toml(content)
        probe = FakeProbe(modes if modes is not None else [False])
        return Context.new(path, probe=probe).load()

    return create_context
