"""
Unit tests for destination fan-out (vwbackup/backup/uploader.py).
"""

from unittest.mock import MagicMock

import pytest

from vwbackup.backup.errors import UploadFailed
from vwbackup.backup.storage import LocalStorage, StorageError
from vwbackup.backup.uploader import RemoteUploader

KEY = 'hourly/vw-hourly-20240115-130000.tar.gz.enc'


@pytest.fixture
def artifact_file(tmp_path):
    path = tmp_path / 'artifact.enc'
    path.write_bytes(b'ciphertext' * 50)
    return path


def _failing_storage(name, message='connection timed out'):
    storage = MagicMock()
    storage.name = name
    storage.put_file.side_effect = StorageError(message)
    return storage


class TestRemoteUploader:
    """Test RemoteUploader."""

    def test_upload_to_primary_and_secondary(self, tmp_path, artifact_file):
        primary = LocalStorage(str(tmp_path / 'primary'), name='primary')
        secondary = LocalStorage(str(tmp_path / 'secondary'), name='secondary')

        result = RemoteUploader(primary, [secondary]).upload(str(artifact_file), KEY, run_id='run-1')

        assert result.primary.key == KEY
        assert [c.destination for c in result.secondary] == ['secondary']
        assert result.secondary_warning is None
        assert (tmp_path / 'primary' / KEY).exists()
        assert (tmp_path / 'secondary' / KEY).exists()

    def test_secondary_failure_is_a_warning(self, tmp_path, artifact_file):
        """Test a failing secondary never fails the upload."""
        primary = LocalStorage(str(tmp_path / 'primary'), name='primary')
        secondary = _failing_storage('offsite')

        result = RemoteUploader(primary, [secondary]).upload(str(artifact_file), KEY)

        assert result.primary.destination == 'primary'
        assert result.secondary == []
        assert 'offsite' in result.secondary_warning
        assert 'connection timed out' in result.secondary_warning

    def test_setup_warnings_are_reported(self, tmp_path, artifact_file):
        primary = LocalStorage(str(tmp_path / 'primary'), name='primary')

        result = RemoteUploader(primary, [], setup_warnings=['offsite: Secret not configured']).upload(
            str(artifact_file), KEY
        )

        assert (tmp_path / 'primary' / KEY).exists()
        assert result.secondary_warning == 'offsite: Secret not configured'

    def test_primary_failure_raises_and_skips_secondaries(self, artifact_file):
        primary = _failing_storage('primary', 'AccessDenied')
        secondary = MagicMock()
        secondary.name = 'offsite'

        with pytest.raises(UploadFailed) as exc_info:
            RemoteUploader(primary, [secondary]).upload(str(artifact_file), KEY)

        assert exc_info.value.destination == 'primary'
        assert 'AccessDenied' in exc_info.value.detail
        secondary.put_file.assert_not_called()

    def test_cancellation_check_is_forwarded(self, artifact_file):
        primary = MagicMock()
        primary.name = 'primary'
        check = MagicMock()

        RemoteUploader(primary).upload(str(artifact_file), KEY, run_id='run-1', cancellation_check=check)

        primary.put_file.assert_called_once_with(
            str(artifact_file), KEY, run_id='run-1', cancellation_check=check
        )

    def test_primary_is_required(self):
        with pytest.raises(UploadFailed):
            RemoteUploader(None)

    def test_destinations_order(self, tmp_path):
        primary = LocalStorage(str(tmp_path / 'primary'), name='primary')
        secondary = LocalStorage(str(tmp_path / 'secondary'), name='secondary')

        assert [d.name for d in RemoteUploader(primary, [secondary]).destinations] == ['primary', 'secondary']
