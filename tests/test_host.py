import os
import subprocess
from pathlib import Path

import pytest

from services import host


class DummyResult:
    def __init__(self, stdout: str = "") -> None:
        self.stdout = stdout
        self.stderr = ""


def systemctl_runner(known_units=(), failing=()):
    calls = []

    def runner(args, *, cwd=None):
        calls.append(tuple(args))
        action, unit = args[1], args[2]
        if action == 'status' and unit not in known_units:
            raise subprocess.CalledProcessError(4, args, stderr=f'Unit {unit}.service could not be found.')
        if (action, unit) in failing:
            raise subprocess.CalledProcessError(1, args, stderr='Job failed')
        return DummyResult()

    return runner, calls


def test_require_root_refuses_unprivileged_runs():
    with pytest.raises(host.HostError, match='Run as root'):
        host.require_root(lambda: False)

    host.require_root(lambda: True)


def test_ensure_tools_lists_every_missing_tool():
    available = {'php': '/usr/bin/php'}

    with pytest.raises(host.HostError) as excinfo:
        host.ensure_tools(('mysqldump', 'php', 'systemctl'), which=available.get)

    assert 'mysqldump' in str(excinfo.value)
    assert 'systemctl' in str(excinfo.value)
    assert 'php,' not in str(excinfo.value)


def test_detect_php_fpm_returns_first_known_unit():
    runner, calls = systemctl_runner(known_units={'php-fpm81', 'php-fpm82'})

    assert host.ServiceManager(runner).detect_php_fpm() == 'php-fpm81'
    assert calls == [
        ('systemctl', 'status', 'php-fpm'),
        ('systemctl', 'status', 'php-fpm80'),
        ('systemctl', 'status', 'php-fpm81'),
    ]


def test_detect_php_fpm_falls_back_to_default():
    runner, _ = systemctl_runner()

    assert host.ServiceManager(runner).detect_php_fpm() == host.DEFAULT_PHP_FPM_SERVICE


def test_restart_and_reload_are_best_effort(caplog):
    runner, calls = systemctl_runner(failing={('restart', 'php-fpm')})
    manager = host.ServiceManager(runner)

    assert manager.restart('php-fpm') is False
    assert manager.reload('nginx') is True
    assert ('systemctl', 'reload', 'nginx') in calls
    assert 'failed to restart php-fpm' in caplog.text


def test_restart_and_reload_survive_systemctl_that_cannot_start(caplog):
    def runner(args, *, cwd=None):
        raise PermissionError(13, 'Permission denied', args[0])

    manager = host.ServiceManager(runner)

    assert manager.restart('php-fpm') is False
    assert manager.reload('nginx') is False
    assert manager.detect_php_fpm() == host.DEFAULT_PHP_FPM_SERVICE
    assert 'failed to reload nginx' in caplog.text


def test_prepare_runtime_dirs_creates_directories_and_tolerates_unknown_owner(tmp_path, monkeypatch, caplog):
    def unknown_owner(user, group):
        raise LookupError(f'no such user: {user}')

    def unexpected_chown(*args, **kwargs):
        raise AssertionError('chown should not run without a resolved owner')

    monkeypatch.setattr(host, '_resolve_owner', unknown_owner)
    monkeypatch.setattr(host.os, 'chown', unexpected_chown)

    host.prepare_runtime_dirs(tmp_path, 'nginx', 'nginx')

    for name in ('cache', 'temp'):
        directory = tmp_path / name
        assert directory.is_dir()
        assert directory.stat().st_mode & 0o777 == 0o775
    assert 'Could not change ownership' in caplog.text


def test_prepare_runtime_dirs_tolerates_chown_errors(tmp_path, monkeypatch, caplog):
    def failing_chown(path, uid, gid, *, follow_symlinks=True):
        raise PermissionError(1, 'Operation not permitted')

    monkeypatch.setattr(host, '_resolve_owner', lambda user, group: (990, 990))
    monkeypatch.setattr(host.os, 'chown', failing_chown)

    host.prepare_runtime_dirs(tmp_path, 'nginx', 'nginx')

    assert (tmp_path / 'temp').is_dir()
    assert 'Could not change ownership of' in caplog.text


def test_prepare_runtime_dirs_chowns_recursively(tmp_path, monkeypatch):
    (tmp_path / 'cache' / 'nested').mkdir(parents=True)
    (tmp_path / 'cache' / 'nested' / 'entry').write_text('x')
    chowned = []

    def recording_chown(path, uid, gid, *, follow_symlinks=True):
        chowned.append((Path(path), uid, gid, follow_symlinks))

    monkeypatch.setattr(host, '_resolve_owner', lambda user, group: (33, 34))
    monkeypatch.setattr(host.os, 'chown', recording_chown)

    host.prepare_runtime_dirs(tmp_path, 'www-data', 'www')

    assert (tmp_path / 'cache' / 'nested' / 'entry', 33, 34, False) in chowned
    assert (tmp_path / 'temp', 33, 34, False) in chowned


def test_prepare_runtime_dirs_does_not_follow_symlinks(tmp_path, monkeypatch):
    outside = tmp_path / 'outside'
    (outside / 'private').mkdir(parents=True)
    secret = outside / 'secret'
    secret.write_text('keep me')
    rc_path = tmp_path / 'rc'
    (rc_path / 'cache').mkdir(parents=True)
    (rc_path / 'cache' / 'evil').symlink_to(secret)
    (rc_path / 'cache' / 'evil-dir').symlink_to(outside / 'private', target_is_directory=True)
    chowned = []

    def recording_chown(path, uid, gid, *, follow_symlinks=True):
        chowned.append((Path(path), follow_symlinks))

    monkeypatch.setattr(host, '_resolve_owner', lambda user, group: (65534, 65534))
    monkeypatch.setattr(host.os, 'chown', recording_chown)

    host.prepare_runtime_dirs(rc_path, 'nobody', 'nobody')

    touched = {path for path, _ in chowned}
    assert rc_path / 'cache' / 'evil' in touched
    assert rc_path / 'cache' / 'evil-dir' in touched
    assert all(path.parent != outside / 'private' for path in touched)
    assert secret not in touched
    assert all(follow is False for _, follow in chowned)


@pytest.mark.skipif(os.geteuid() != 0, reason='changing ownership needs root')
def test_prepare_runtime_dirs_keeps_symlink_target_owner(tmp_path, monkeypatch):
    secret = tmp_path / 'secret'
    secret.write_text('keep me')
    owner_before = secret.stat().st_uid
    rc_path = tmp_path / 'rc'
    (rc_path / 'cache').mkdir(parents=True)
    link = rc_path / 'cache' / 'evil'
    link.symlink_to(secret)
    monkeypatch.setattr(host, '_resolve_owner', lambda user, group: (65534, 65534))

    host.prepare_runtime_dirs(rc_path, 'nobody', 'nobody')

    assert secret.stat().st_uid == owner_before
    assert os.lstat(link).st_uid == 65534


def test_clear_runtime_dirs_keeps_dot_files(tmp_path):
    cache = tmp_path / 'cache'
    temp = tmp_path / 'temp'
    (cache / 'sub').mkdir(parents=True)
    (cache / 'sub' / 'x').write_text('x')
    (cache / 'entry.cache').write_text('x')
    (cache / '.htaccess').write_text('deny from all')
    temp.mkdir()
    (temp / 'upload.tmp').write_text('x')

    host.clear_runtime_dirs(tmp_path)

    assert [entry.name for entry in cache.iterdir()] == ['.htaccess']
    assert list(temp.iterdir()) == []


def test_clear_runtime_dirs_ignores_missing_directories(tmp_path):
    host.clear_runtime_dirs(tmp_path)
