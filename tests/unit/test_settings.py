"""
Unit tests for backup settings and component factories (vwbackup/backup/settings.py).
"""

import pytest

from vwbackup.backup.errors import ConfigurationError, WeakPassphrase
from vwbackup.backup.settings import (
    BackupSettings,
    BackupContext,
    DestinationSettings,
    create_storage,
    create_cipher
)
from vwbackup.backup.storage import LocalStorage, S3Storage
from vwbackup.backup.tiers import BackupTier, PolicyKind
from vwbackup.utils.secrets import MappingSecretStore


@pytest.fixture
def raw_config(tmp_path, source_dir):
    return {
        'SOURCE_DIR': str(source_dir),
        'SOURCE_DB_NAME': 'db.sqlite3',
        'SCRATCH_DIR': str(tmp_path / 'scratch'),
        'LOCK_DIR': str(tmp_path / 'locks'),
        'PASSPHRASE_SECRET': 'backup_passphrase',
        'PRIMARY_DESTINATION': {'type': 'local', 'path': str(tmp_path / 'remote')},
        'SECONDARY_DESTINATION': None,
        'RETENTION_POLICIES': {'hourly': 'count:48', 'daily': 'age:30', 'monthly': 'age:365', 'yearly': 'age:2555'},
        'TIER_SCHEDULES': {'hourly': '0 * * * *', 'daily': '30 2 * * *', 'monthly': '0 4 1 * *',
                           'yearly': '0 5 1 1 *'},
        'FULL_BACKUP_INCLUDE': ['attachments', 'sends', 'config.json', 'rsa_key*'],
        'FULL_BACKUP_TIERS': ['daily', 'monthly', 'yearly'],
        'SCRYPT_N': 2 ** 10,
        'SNAPSHOT_TIMEOUT': 600,
    }


class TestDestinationSettings:
    """Test DestinationSettings.from_dict."""

    def test_s3_destination(self):
        dest = DestinationSettings.from_dict('primary', {
            'bucket': 'vault-backups',
            'endpoint_url': 'https://s3.fr-par.scw.cloud',
            'region': 'fr-par',
            'access_key_secret': 'primary_access_key_id',
            'secret_key_secret': 'primary_secret_access_key'
        })

        assert dest.type == 's3'
        assert dest.region == 'fr-par'
        assert dest.endpoint_url == 'https://s3.fr-par.scw.cloud'

    @pytest.mark.parametrize('data', [
        {'type': 's3'},
        {'type': 'local'},
        {'type': 'ftp', 'path': '/x', 'bucket': 'b'},
    ])
    def test_invalid_destinations(self, data):
        with pytest.raises(ConfigurationError):
            DestinationSettings.from_dict('primary', data)


class TestBackupSettings:
    """Test BackupSettings.from_config."""

    def test_from_config(self, raw_config, source_dir):
        settings = BackupSettings.from_config(raw_config)

        assert settings.source_db_path == str(source_dir / 'db.sqlite3')
        assert settings.policies[BackupTier.HOURLY].kind is PolicyKind.COUNT
        assert settings.policies[BackupTier.YEARLY].value == 2555
        assert settings.schedules[BackupTier.DAILY] == '30 2 * * *'
        assert settings.is_full('daily')
        assert not settings.is_full(BackupTier.HOURLY)
        assert settings.snapshot_timeout == 600.0
        assert settings.secondary is None

    def test_missing_policy_rejected(self, raw_config):
        del raw_config['RETENTION_POLICIES']['monthly']

        with pytest.raises(ConfigurationError, match='monthly'):
            BackupSettings.from_config(raw_config)

    def test_zero_count_policy_rejected(self, raw_config):
        raw_config['RETENTION_POLICIES']['hourly'] = 'count:0'

        with pytest.raises(ConfigurationError, match='hourly'):
            BackupSettings.from_config(raw_config)

    def test_missing_schedule_rejected(self, raw_config):
        raw_config['TIER_SCHEDULES']['yearly'] = ' '

        with pytest.raises(ConfigurationError, match='yearly'):
            BackupSettings.from_config(raw_config)

    def test_missing_primary_rejected(self, raw_config):
        raw_config['PRIMARY_DESTINATION'] = None

        with pytest.raises(ConfigurationError, match='PRIMARY_DESTINATION'):
            BackupSettings.from_config(raw_config)

    def test_unknown_full_tier_rejected(self, raw_config):
        raw_config['FULL_BACKUP_TIERS'] = ['weekly']

        with pytest.raises(ConfigurationError, match='weekly'):
            BackupSettings.from_config(raw_config)

    def test_invalid_number_rejected(self, raw_config):
        raw_config['UPLOAD_MAX_ATTEMPTS'] = 'many'

        with pytest.raises(ConfigurationError, match='Invalid backup setting'):
            BackupSettings.from_config(raw_config)

    def test_full_backup_entries(self, raw_config, source_dir):
        (source_dir / 'db.sqlite3-wal').write_bytes(b'')
        settings = BackupSettings.from_config(raw_config)

        entries = settings.full_backup_entries()

        assert [name for _, name in entries] == ['attachments', 'config.json', 'rsa_key.pem']
        assert all(path.startswith(str(source_dir)) for path, _ in entries)


class TestFactories:
    """Test create_storage, create_cipher and BackupContext."""

    def test_create_local_storage(self, raw_config):
        settings = BackupSettings.from_config(raw_config)

        storage = create_storage(settings.primary, settings, MappingSecretStore({}))

        assert isinstance(storage, LocalStorage)
        assert storage.name == 'primary'

    def test_create_s3_storage_uses_secrets(self, raw_config, mock_s3):
        raw_config['PRIMARY_DESTINATION'] = {
            'type': 's3', 'bucket': 'test-bucket',
            'access_key_secret': 'primary_access_key_id', 'secret_key_secret': 'primary_secret_access_key'
        }
        settings = BackupSettings.from_config(raw_config)
        secrets = MappingSecretStore({'primary_access_key_id': 'AKIDEXAMPLE', 'primary_secret_access_key': 's3cr3t'})

        storage = create_storage(settings.primary, settings, secrets)

        assert isinstance(storage, S3Storage)
        assert storage.bucket_name == 'test-bucket'
        assert 's3cr3t' in secrets.known_values()

    def test_create_cipher_weak_passphrase(self, raw_config):
        settings = BackupSettings.from_config(raw_config)

        with pytest.raises(WeakPassphrase):
            create_cipher(settings, MappingSecretStore({'backup_passphrase': 'short'}))

    def test_create_cipher_missing_passphrase(self, raw_config):
        settings = BackupSettings.from_config(raw_config)

        with pytest.raises(ConfigurationError, match='backup_passphrase'):
            create_cipher(settings, MappingSecretStore({}))

    def test_context_caches_storages(self, raw_config, tmp_path, passphrase):
        raw_config['SECONDARY_DESTINATION'] = {'type': 'local', 'path': str(tmp_path / 'nas')}
        settings = BackupSettings.from_config(raw_config)
        context = BackupContext(settings, MappingSecretStore({'backup_passphrase': passphrase}))

        assert context.primary_storage() is context.primary_storage()
        assert [d.name for d in context.destinations()] == ['primary', 'secondary']
        assert [d.name for d in context.uploader().destinations] == ['primary', 'secondary']
        assert context.cipher().log2_n == 10

    def test_uploader_skips_broken_secondary(self, raw_config):
        raw_config['SECONDARY_DESTINATION'] = {
            'type': 's3', 'bucket': 'offsite-bucket',
            'access_key_secret': 'secondary_access_key_id', 'secret_key_secret': 'secondary_secret_access_key'
        }
        context = BackupContext(BackupSettings.from_config(raw_config), MappingSecretStore({}))

        uploader = context.uploader()

        assert [d.name for d in uploader.destinations] == ['primary']
        assert uploader.setup_warnings == ['secondary: Secret not configured: secondary_access_key_id']
        with pytest.raises(ConfigurationError):
            context.secondary_storages()
