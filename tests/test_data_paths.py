from datetime import datetime

import data_paths


def test_make_timestamp_format():
    assert data_paths.make_timestamp(datetime(2025, 3, 4, 5, 6, 7)) == '2025-03-04-050607'


def test_create_workdir_never_reuses_a_directory(tmp_path):
    first = data_paths.create_workdir(tmp_path / 'root', '2025-03-04-050607')
    second = data_paths.create_workdir(tmp_path / 'root', '2025-03-04-050607')

    assert first.name == 'roundcube-upgrade-2025-03-04-050607'
    assert second.name == 'roundcube-upgrade-2025-03-04-050607-1'
    assert first.is_dir() and second.is_dir()
