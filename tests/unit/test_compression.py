"""
Unit tests for compression module (vwbackup/backup/compression.py).

Tests archive packaging, checksums, safe extraction and artifact naming.
"""

import io
import os
import tarfile
from datetime import datetime, timezone

import pytest

from vwbackup.backup.compression import (
    create_archive,
    sha256_file,
    count_archive_members,
    safe_extract,
    generate_artifact_name,
    artifact_key,
    parse_artifact_timestamp,
    strip_archive_extension,
    get_archive_size
)
from vwbackup.backup.errors import PackagingFailed
from vwbackup.backup.tiers import BackupTier


class TestCreateArchive:
    """Test create_archive function."""

    def test_create_archive_with_file_and_directory(self, source_dir, tmp_path):
        """Test archiving a file and a directory under their archive names."""
        output = str(tmp_path / 'out.tar.gz')

        archive = create_archive([
            (str(source_dir / 'config.json'), 'config.json'),
            (str(source_dir / 'attachments'), 'attachments'),
        ], output)

        assert archive.path == output
        assert archive.size_bytes == os.path.getsize(output)
        assert archive.entry_names == ['config.json', 'attachments']

        with tarfile.open(output, 'r:gz') as tar:
            names = tar.getnames()
        assert 'config.json' in names
        assert 'attachments/cipher-1/a1b2c3' in names

    def test_checksum_matches_file(self, source_dir, tmp_path):
        """Test the reported checksum is the SHA-256 of the archive."""
        output = str(tmp_path / 'out.tar.gz')
        archive = create_archive([(str(source_dir / 'config.json'), 'config.json')], output)

        assert archive.checksum == sha256_file(output)
        assert len(archive.checksum) == 64

    def test_missing_input_raises(self, source_dir, tmp_path):
        """Test a missing input fails packaging and leaves no archive behind."""
        output = tmp_path / 'out.tar.gz'

        with pytest.raises(PackagingFailed, match='does not exist'):
            create_archive([
                (str(source_dir / 'config.json'), 'config.json'),
                (str(source_dir / 'missing'), 'missing'),
            ], str(output))

        assert not output.exists()

    def test_unreadable_input_raises(self, source_dir, tmp_path):
        """Test an unreadable input fails packaging."""
        if os.geteuid() == 0:
            pytest.skip('root can read any file')
        secret = source_dir / 'config.json'
        secret.chmod(0o000)
        try:
            with pytest.raises(PackagingFailed, match='not readable'):
                create_archive([(str(secret), 'config.json')], str(tmp_path / 'out.tar.gz'))
        finally:
            secret.chmod(0o644)

    def test_empty_inputs_raise(self, tmp_path):
        with pytest.raises(PackagingFailed):
            create_archive([], str(tmp_path / 'out.tar.gz'))

    @pytest.mark.parametrize('arcname', ['', '/etc/passwd', '../escape', 'a/../../b'])
    def test_invalid_archive_names_rejected(self, source_dir, tmp_path, arcname):
        with pytest.raises(PackagingFailed, match='Invalid archive name'):
            create_archive([(str(source_dir / 'config.json'), arcname)], str(tmp_path / 'out.tar.gz'))

    def test_unwritable_output_raises(self, source_dir, tmp_path):
        """Test a failing archive write is reported as PackagingFailed."""
        output = str(tmp_path / 'no-such-dir' / 'out.tar.gz')

        with pytest.raises(PackagingFailed, match='Failed to create archive'):
            create_archive([(str(source_dir / 'config.json'), 'config.json')], output)


class TestArchiveInspection:
    """Test member counting and safe extraction."""

    def test_count_members(self, sample_archive):
        # test_data, file1.txt, file2.txt
        assert count_archive_members(str(sample_archive)) == 3

    def test_count_members_rejects_garbage(self, tmp_path):
        garbage = tmp_path / 'garbage.tar.gz'
        garbage.write_bytes(b'definitely not a tar archive' * 10)

        with pytest.raises(tarfile.TarError):
            count_archive_members(str(garbage))

    def test_safe_extract(self, sample_archive, tmp_path):
        dest = tmp_path / 'restore'

        members = safe_extract(str(sample_archive), str(dest))

        assert 'test_data/file1.txt' in members
        assert (dest / 'test_data' / 'file2.txt').read_text() == 'Content 2'

    def test_safe_extract_rejects_path_traversal(self, tmp_path):
        """Test members escaping the destination are refused."""
        archive = tmp_path / 'evil.tar.gz'
        with tarfile.open(archive, 'w:gz') as tar:
            data = b'owned'
            info = tarfile.TarInfo('../evil.txt')
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))

        with pytest.raises(PackagingFailed, match='Unsafe path'):
            safe_extract(str(archive), str(tmp_path / 'restore'))

        assert not (tmp_path / 'evil.txt').exists()

    def test_safe_extract_rejects_escaping_symlink(self, tmp_path):
        archive = tmp_path / 'link.tar.gz'
        with tarfile.open(archive, 'w:gz') as tar:
            info = tarfile.TarInfo('link')
            info.type = tarfile.SYMTYPE
            info.linkname = '/etc/passwd'
            tar.addfile(info)

        with pytest.raises(PackagingFailed, match='Link escapes'):
            safe_extract(str(archive), str(tmp_path / 'restore'))


class TestArtifactNaming:
    """Test artifact names and keys."""

    def test_generate_artifact_name(self):
        when = datetime(2024, 1, 15, 2, 30, 0, tzinfo=timezone.utc)

        assert generate_artifact_name(BackupTier.DAILY, when) == 'vw-daily-20240115-023000.tar.gz.enc'

    def test_generate_artifact_name_accepts_naive_utc(self):
        when = datetime(2024, 1, 15, 13, 0, 5)

        assert generate_artifact_name('hourly', when) == 'vw-hourly-20240115-130005.tar.gz.enc'

    def test_generate_artifact_name_converts_to_utc(self):
        from datetime import timedelta
        when = datetime(2024, 1, 15, 4, 30, 0, tzinfo=timezone(timedelta(hours=2)))

        assert generate_artifact_name('daily', when) == 'vw-daily-20240115-023000.tar.gz.enc'

    def test_artifact_key(self):
        assert artifact_key('monthly', 'vw-monthly-20240101-040000.tar.gz.enc') == \
            'monthly/vw-monthly-20240101-040000.tar.gz.enc'

    def test_parse_artifact_timestamp(self):
        parsed = parse_artifact_timestamp('hourly/vw-hourly-20240115-130000.tar.gz.enc')

        assert parsed == datetime(2024, 1, 15, 13, 0, 0, tzinfo=timezone.utc)

    def test_parse_artifact_timestamp_round_trips_generated_names(self):
        when = datetime(2023, 12, 31, 23, 59, 59, tzinfo=timezone.utc)
        key = artifact_key('yearly', generate_artifact_name('yearly', when))

        assert parse_artifact_timestamp(key, BackupTier.YEARLY) == when

    @pytest.mark.parametrize('key', [
        'hourly/notes.txt',
        'hourly/vw-hourly-20240115-130000.tar.gz',
        'hourly/vw-hourly-20240115-130000.tar.gz.enc.partial-abc',
        'hourly/vw-hourly-20241315-130000.tar.gz.enc',
        'hourly/vw-weekly-20240115-130000.tar.gz.enc',
    ])
    def test_parse_artifact_timestamp_rejects_foreign_keys(self, key):
        assert parse_artifact_timestamp(key) is None

    def test_parse_artifact_timestamp_checks_tier(self):
        key = 'daily/vw-daily-20240115-023000.tar.gz.enc'

        assert parse_artifact_timestamp(key, BackupTier.DAILY) is not None
        assert parse_artifact_timestamp(key, BackupTier.HOURLY) is None


class TestHelpers:
    """Test helper functions."""

    @pytest.mark.parametrize('filename,expected', [
        ('vw-daily-20240115-023000.tar.gz.enc', 'vw-daily-20240115-023000'),
        ('vw-daily-20240115-023000.tar.gz', 'vw-daily-20240115-023000'),
        ('backup.zip', 'backup'),
    ])
    def test_strip_archive_extension(self, filename, expected):
        assert strip_archive_extension(filename) == expected

    def test_get_archive_size(self, sample_archive):
        assert get_archive_size(str(sample_archive)) == os.path.getsize(sample_archive)

    def test_get_archive_size_missing_file(self, tmp_path):
        with pytest.raises(PackagingFailed, match='not found'):
            get_archive_size(str(tmp_path / 'missing.tar.gz'))
