from __future__ import annotations

import subprocess
from unittest.mock import patch

import pytest

from darkmode_notifier.__main__ import StateProbe


@pytest.fixture
def darwin():
    with patch('darkmode_notifier.__main__.SysOps.is_darwin', return_value=True):
        yield


@pytest.mark.parametrize(
    'returncode, stdout, expected',
    [
        (0, b'Dark\n', True),
        (0, b'Light\n', False),
        (1, b'', False),
    ],
)
def test_probe_query_darwin(darwin, returncode: int, stdout: bytes, expected: bool):
    with patch('darkmode_notifier.__main__.subprocess.run') as mock_run:
        mock_run.return_value = subprocess.CompletedProcess([], returncode, stdout, b'')
        assert StateProbe().query() is expected
    args = mock_run.call_args.args[0]
    assert args == ['defaults', 'read', '-g', 'AppleInterfaceStyle']


@pytest.mark.parametrize(
    'exc', [FileNotFoundError('defaults'), subprocess.TimeoutExpired('defaults', 3)]
)
@pytest.mark.parametrize('fallback', [True, False])
def test_probe_query_fails(darwin, exc: Exception, fallback: bool):
    with patch('darkmode_notifier.__main__.subprocess.run', side_effect=exc):
        assert StateProbe(fallback=fallback).query() is fallback


@pytest.mark.parametrize('fallback', [True, False])
def test_probe_unsupported_platform(fallback: bool):
    with (
        patch('darkmode_notifier.__main__.SysOps.is_darwin', return_value=False),
        patch('darkmode_notifier.__main__.subprocess.run') as mock_run,
    ):
        assert StateProbe(fallback=fallback).query() is fallback
    mock_run.assert_not_called()


def test_probe_idempotent(darwin):
    with patch('darkmode_notifier.__main__.subprocess.run') as mock_run:
        mock_run.return_value = subprocess.CompletedProcess([], 0, b'Dark', b'')
        probe = StateProbe()
        assert probe.query() == probe.query()
