#!/usr/bin/env python3
''' test the castit command line '''

import pytest

from castit import __version__
from castit.__main__ import CommandHandler, run


def test_version(capsys):
    ''' test the version command '''
    assert run(['version']) == 0
    assert capsys.readouterr().out.strip() == __version__


def test_no_command(capsys):
    ''' test that a command is required '''
    assert run([]) == 1
    assert 'A command is required' in capsys.readouterr().err


def test_bad_argument():
    ''' test that argument errors exit with status 2 '''
    assert run(['mdns', '--duration', 'soon']) == 2


def test_serve_missing_file(tmp_path, capsys):
    ''' test that serving a missing file fails '''
    assert run(['serve', str(tmp_path / 'missing.mp4')]) == 1
    assert 'Media file not found' in capsys.readouterr().err


def test_traceback_flag_with_command_error(tmp_path, capsys):
    ''' test that --traceback still reports command errors by exit status '''
    assert run(['--traceback', 'serve', str(tmp_path / 'missing.mp4')]) == 1
    assert 'castit: error: Media file not found' in capsys.readouterr().err


def test_traceback_flag_raises_unexpected_errors(monkeypatch):
    ''' test that --traceback lets an unexpected exception through '''
    async def broken(self):
        raise RuntimeError('unexpected')

    monkeypatch.setattr(CommandHandler, 'cmd_version', broken)
    with pytest.raises(RuntimeError):
        run(['--tb', 'version'])
    assert run(['version']) == 1
