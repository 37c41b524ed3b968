from pathlib import Path

import pytest

from services import settings as settings_module
from services.settings import SettingsError, UpgradeSettings, load_settings


def test_defaults_pin_release_and_checksum():
    settings = load_settings({})

    assert settings.version == settings_module.DEFAULT_VERSION
    assert settings.source_url == settings_module.DEFAULT_SOURCE_URL
    assert settings.expected_sha256 == settings_module.DEFAULT_SHA256
    assert settings.verify_checksum
    assert settings.rc_path is None
    assert settings.debug is False


def test_environment_overrides_are_applied():
    settings = load_settings(
        {
            'RC_PATH': '/srv/roundcube',
            'VERSION': '1.6.12',
            'SRC_URL': 'https://mirror.test/rc.tar.gz',
            'SHA256_EXPECTED': 'AB' * 32,
            'DEBUG': '1',
            'RC_WORKDIR_ROOT': '/var/backups',
            'RC_WEB_USER': 'apache',
        }
    )

    assert settings.rc_path == Path('/srv/roundcube')
    assert settings.version == '1.6.12'
    assert settings.source_url == 'https://mirror.test/rc.tar.gz'
    assert settings.expected_sha256 == 'ab' * 32
    assert settings.debug is True
    assert settings.workdir_root == Path('/var/backups')
    assert settings.web_user == 'apache'
    assert settings.web_group == 'apache'


def test_empty_checksum_disables_verification():
    settings = load_settings({'SHA256_EXPECTED': ''})

    assert settings.expected_sha256 == ''
    assert not settings.verify_checksum


def test_explicit_overrides_win_over_environment():
    settings = load_settings(
        {'VERSION': '1.6.10', 'RC_PATH': '/from/env'},
        version='1.6.11',
        rc_path=Path('/from/cli'),
        expected_sha256='',
    )

    assert settings.version == '1.6.11'
    assert settings.rc_path == Path('/from/cli')
    assert settings.expected_sha256 == ''


@pytest.mark.parametrize(
    'overrides',
    [
        {'version': 'latest'},
        {'source_url': 'not-a-url'},
        {'expected_sha256': 'abc123'},
    ],
)
def test_invalid_values_are_rejected(overrides):
    with pytest.raises(SettingsError):
        load_settings({}, **overrides)


def test_settings_are_immutable():
    settings = UpgradeSettings()

    with pytest.raises(AttributeError):
        settings.version = '9.9.9'
