"""
Backup tiers, retention policies and artifact values.
"""

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .errors import ConfigurationError


class BackupTier(str, enum.Enum):
    """Named backup cadence/retention class. The value doubles as the storage prefix."""

    HOURLY = 'hourly'
    DAILY = 'daily'
    MONTHLY = 'monthly'
    YEARLY = 'yearly'

    @property
    def prefix(self) -> str:
        return f"{self.value}/"

    @classmethod
    def parse(cls, value) -> 'BackupTier':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ', '.join(t.value for t in cls)
            raise ConfigurationError(f"Unknown backup tier: {value!r} (valid: {valid})")


class PolicyKind(str, enum.Enum):
    COUNT = 'count'
    AGE = 'age'
    UNLIMITED = 'unlimited'


@dataclass(frozen=True)
class RetentionPolicy:
    """
    Retention rule for one tier.

    ``count`` keeps the N most recent artifacts, ``age`` keeps artifacts newer
    than N days, ``unlimited`` keeps everything and must be requested
    explicitly.
    """

    kind: PolicyKind
    value: Optional[int] = None

    @classmethod
    def parse(cls, spec) -> 'RetentionPolicy':
        """
        Parse a policy string such as ``count:48``, ``age:30`` or ``unlimited``.

        Raises:
            ConfigurationError: If the spec is empty, malformed or non-positive
        """
        if isinstance(spec, RetentionPolicy):
            return spec
        if spec is None or not str(spec).strip():
            raise ConfigurationError("Retention policy is empty")

        text = str(spec).strip().lower()
        if text == PolicyKind.UNLIMITED.value:
            return cls(PolicyKind.UNLIMITED)

        kind, sep, raw_value = text.partition(':')
        if not sep:
            raise ConfigurationError(
                f"Invalid retention policy {spec!r}: expected 'count:N', 'age:DAYS' or 'unlimited'"
            )
        try:
            policy_kind = PolicyKind(kind)
            value = int(raw_value)
        except ValueError:
            raise ConfigurationError(f"Invalid retention policy {spec!r}")

        if policy_kind is PolicyKind.UNLIMITED:
            raise ConfigurationError(f"Invalid retention policy {spec!r}: 'unlimited' takes no value")
        if value <= 0:
            raise ConfigurationError(
                f"Invalid retention policy {spec!r}: value must be positive "
                f"(use 'unlimited' to keep everything)"
            )
        return cls(policy_kind, value)

    def __str__(self):
        if self.kind is PolicyKind.UNLIMITED:
            return 'unlimited'
        return f"{self.kind.value}:{self.value}"


@dataclass(frozen=True)
class BackupArtifact:
    """One encrypted, uploaded backup file as seen in remote storage."""

    tier: BackupTier
    created_at: datetime
    remote_key: str
    size_bytes: int = 0
    source_checksum: Optional[str] = None
    encrypted: bool = True

    @property
    def name(self) -> str:
        return self.remote_key.rsplit('/', 1)[-1]

    def age_seconds(self, now: datetime = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.created_at).total_seconds()
