"""
Explicit backup settings and component factories.

The Flask config (filled from the environment by vwbackup.config) is turned
into an immutable BackupSettings object once, at startup. Components are then
built from it and from a SecretStore; none of them read the environment.
"""

import os
import glob
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, List, Mapping, FrozenSet

from .errors import ConfigurationError
from .storage import S3Storage, LocalStorage, StorageError
from .tiers import BackupTier, RetentionPolicy
from .uploader import RemoteUploader
from vwbackup.utils.crypto import ArchiveCipher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DestinationSettings:
    """One storage destination: an S3-compatible bucket or a local directory."""

    name: str
    type: str = 's3'
    bucket: Optional[str] = None
    endpoint_url: Optional[str] = None
    region: str = 'us-east-1'
    access_key_secret: Optional[str] = None
    secret_key_secret: Optional[str] = None
    path: Optional[str] = None

    @classmethod
    def from_dict(cls, name: str, data: Mapping) -> 'DestinationSettings':
        dest_type = (data.get('type') or 's3').lower()
        if dest_type == 's3' and not data.get('bucket'):
            raise ConfigurationError(f"Destination {name}: bucket is required")
        if dest_type == 'local' and not data.get('path'):
            raise ConfigurationError(f"Destination {name}: path is required")
        if dest_type not in ('s3', 'local'):
            raise ConfigurationError(f"Destination {name}: unknown type {dest_type!r}")
        return cls(
            name=name,
            type=dest_type,
            bucket=data.get('bucket'),
            endpoint_url=data.get('endpoint_url') or None,
            region=data.get('region') or 'us-east-1',
            access_key_secret=data.get('access_key_secret'),
            secret_key_secret=data.get('secret_key_secret'),
            path=data.get('path')
        )


@dataclass(frozen=True)
class BackupSettings:
    source_dir: str
    source_db_name: str
    scratch_dir: str
    lock_dir: str
    primary: DestinationSettings
    policies: Dict[BackupTier, RetentionPolicy]
    schedules: Dict[BackupTier, str]
    passphrase_secret: str
    secondary: Optional[DestinationSettings] = None
    full_backup_include: Tuple[str, ...] = ()
    full_backup_tiers: FrozenSet[BackupTier] = frozenset()
    verify_schedule: Optional[str] = None
    min_passphrase_length: int = 32
    scrypt_n: int = 2 ** 15
    scrypt_r: int = 8
    scrypt_p: int = 1
    snapshot_timeout: Optional[float] = None
    connect_timeout: float = 10
    network_timeout: float = 60
    upload_max_attempts: int = 5
    backoff_multiplier: float = 1
    backoff_max: float = 30
    stale_factor: float = 2.0

    @property
    def source_db_path(self) -> str:
        return os.path.join(self.source_dir, self.source_db_name)

    def is_full(self, tier: BackupTier) -> bool:
        return BackupTier.parse(tier) in self.full_backup_tiers

    @classmethod
    def from_config(cls, config: Mapping) -> 'BackupSettings':
        """
        Build and validate settings from a Flask config mapping.

        Raises:
            ConfigurationError: On any missing or invalid value
        """
        raw_policies = config.get('RETENTION_POLICIES') or {}
        policies = {}
        for tier in BackupTier:
            if tier.value not in raw_policies:
                raise ConfigurationError(f"No retention policy configured for tier {tier.value}")
            try:
                policies[tier] = RetentionPolicy.parse(raw_policies[tier.value])
            except ConfigurationError as e:
                raise ConfigurationError(f"Tier {tier.value}: {e.message}")

        raw_schedules = config.get('TIER_SCHEDULES') or {}
        schedules = {}
        for tier in BackupTier:
            cron = raw_schedules.get(tier.value)
            if not cron or not str(cron).strip():
                raise ConfigurationError(f"No schedule configured for tier {tier.value}")
            schedules[tier] = str(cron).strip()

        primary_cfg = config.get('PRIMARY_DESTINATION')
        if not primary_cfg:
            raise ConfigurationError("PRIMARY_DESTINATION is required")
        primary = DestinationSettings.from_dict('primary', primary_cfg)

        secondary_cfg = config.get('SECONDARY_DESTINATION')
        secondary = DestinationSettings.from_dict('secondary', secondary_cfg) if secondary_cfg else None

        for key in ('SOURCE_DIR', 'SCRATCH_DIR', 'LOCK_DIR', 'PASSPHRASE_SECRET'):
            if not config.get(key):
                raise ConfigurationError(f"{key} is required")

        try:
            return cls(
                source_dir=config['SOURCE_DIR'],
                source_db_name=config.get('SOURCE_DB_NAME') or 'db.sqlite3',
                scratch_dir=config['SCRATCH_DIR'],
                lock_dir=config['LOCK_DIR'],
                primary=primary,
                secondary=secondary,
                policies=policies,
                schedules=schedules,
                passphrase_secret=config['PASSPHRASE_SECRET'],
                full_backup_include=tuple(config.get('FULL_BACKUP_INCLUDE') or ()),
                full_backup_tiers=frozenset(BackupTier.parse(t) for t in config.get('FULL_BACKUP_TIERS') or ()),
                verify_schedule=config.get('VERIFY_SCHEDULE') or None,
                min_passphrase_length=int(config.get('MIN_PASSPHRASE_LENGTH', 32)),
                scrypt_n=int(config.get('SCRYPT_N', 2 ** 15)),
                scrypt_r=int(config.get('SCRYPT_R', 8)),
                scrypt_p=int(config.get('SCRYPT_P', 1)),
                snapshot_timeout=float(config['SNAPSHOT_TIMEOUT']) if config.get('SNAPSHOT_TIMEOUT') else None,
                connect_timeout=float(config.get('CONNECT_TIMEOUT', 10)),
                network_timeout=float(config.get('NETWORK_TIMEOUT', 60)),
                upload_max_attempts=int(config.get('UPLOAD_MAX_ATTEMPTS', 5)),
                backoff_multiplier=float(config.get('BACKOFF_MULTIPLIER', 1)),
                backoff_max=float(config.get('BACKOFF_MAX', 30)),
                stale_factor=float(config.get('STALE_FACTOR', 2.0))
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid backup setting: {e}")

    def full_backup_entries(self) -> List[Tuple[str, str]]:
        """
        Resolve FULL_BACKUP_INCLUDE patterns inside the source directory.

        Returns:
            Sorted (path, archive name) pairs for entries that currently exist;
            the live database and its WAL/SHM files are excluded since the
            snapshot covers them.
        """
        skip = {self.source_db_name, f"{self.source_db_name}-wal", f"{self.source_db_name}-shm",
                f"{self.source_db_name}-journal"}
        entries = {}
        for pattern in self.full_backup_include:
            for path in glob.glob(os.path.join(self.source_dir, pattern)):
                name = os.path.relpath(path, self.source_dir)
                if name in skip or name.startswith('..'):
                    continue
                entries[name] = path
        return [(entries[name], name) for name in sorted(entries)]


def create_storage(destination: DestinationSettings, settings: BackupSettings, secrets):
    """
    Build a storage handler for a destination.

    Raises:
        ConfigurationError: If credentials are missing or the client cannot be built
    """
    if destination.type == 'local':
        try:
            return LocalStorage(destination.path, name=destination.name)
        except StorageError as e:
            raise ConfigurationError(str(e))

    access_key = secrets.get(destination.access_key_secret) if destination.access_key_secret else None
    secret_key = secrets.get(destination.secret_key_secret) if destination.secret_key_secret else None

    try:
        return S3Storage(
            bucket_name=destination.bucket,
            access_key=access_key,
            secret_key=secret_key,
            region=destination.region,
            endpoint_url=destination.endpoint_url,
            name=destination.name,
            connect_timeout=settings.connect_timeout,
            read_timeout=settings.network_timeout,
            max_attempts=settings.upload_max_attempts,
            backoff_multiplier=settings.backoff_multiplier,
            backoff_max=settings.backoff_max
        )
    except StorageError as e:
        raise ConfigurationError(str(e))


def create_cipher(settings: BackupSettings, secrets) -> ArchiveCipher:
    """
    Build the archive cipher.

    Raises:
        WeakPassphrase: If the passphrase is below the configured minimum
        ConfigurationError: If the passphrase secret is missing
    """
    return ArchiveCipher(
        secrets.get(settings.passphrase_secret),
        min_passphrase_length=settings.min_passphrase_length,
        scrypt_n=settings.scrypt_n,
        scrypt_r=settings.scrypt_r,
        scrypt_p=settings.scrypt_p
    )


class BackupContext:
    """
    Everything a run needs, built from settings and a secret store.

    Storage handlers are created lazily and cached, so constructing a context
    performs no I/O.
    """

    def __init__(self, settings: BackupSettings, secrets):
        self.settings = settings
        self.secrets = secrets
        self._primary = None
        self._secondary = None

    def cipher(self) -> ArchiveCipher:
        return create_cipher(self.settings, self.secrets)

    def primary_storage(self):
        if self._primary is None:
            self._primary = create_storage(self.settings.primary, self.settings, self.secrets)
        return self._primary

    def secondary_storages(self) -> List:
        if self.settings.secondary is None:
            return []
        if self._secondary is None:
            self._secondary = create_storage(self.settings.secondary, self.settings, self.secrets)
        return [self._secondary]

    def destinations(self) -> List:
        return [self.primary_storage()] + self.secondary_storages()

    def uploader(self) -> RemoteUploader:
        """
        Build the uploader for a run.

        A secondary that cannot be built (missing credentials, unmounted path)
        is left out and reported as a warning; only the primary is required.
        """
        primary = self.primary_storage()
        warnings = []
        try:
            secondaries = self.secondary_storages()
        except ConfigurationError as e:
            warning = f"{self.settings.secondary.name}: {e}"
            logger.warning(f"Secondary destination unavailable, continuing with primary only: {warning}")
            warnings.append(warning)
            secondaries = []
        return RemoteUploader(primary, secondaries, setup_warnings=warnings)
