"""
Retention policy enforcement for remote artifacts.

For a tier, lists the artifacts under its prefix and deletes those outside
the tier's policy. Safety rules, in order of precedence:

- if listing fails, nothing is deleted;
- the newest artifact of a tier is never deleted;
- artifacts whose timestamp is shared with another artifact are kept
  pending operator review;
- keys that do not follow the artifact naming scheme are ignored.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Dict, Optional

from .compression import parse_artifact_timestamp
from .errors import RetentionListFailed, ConfigurationError
from .storage import StorageError
from .tiers import BackupTier, BackupArtifact, RetentionPolicy, PolicyKind

logger = logging.getLogger(__name__)


def artifacts_from_listing(tier: BackupTier, objects: List[Dict]) -> List[BackupArtifact]:
    """
    Turn raw storage listing entries into artifacts, newest first.

    Entries whose key does not carry a valid artifact name for this tier are skipped.
    """
    artifacts = []
    for obj in objects:
        created_at = parse_artifact_timestamp(obj['Key'], tier)
        if created_at is None:
            logger.debug(f"Ignoring non-artifact key {obj['Key']}")
            continue
        artifacts.append(BackupArtifact(
            tier=tier,
            created_at=created_at,
            remote_key=obj['Key'],
            size_bytes=obj.get('Size', 0)
        ))
    artifacts.sort(key=lambda a: a.created_at, reverse=True)
    return artifacts


def list_artifacts(storage, tier: BackupTier) -> List[BackupArtifact]:
    """
    List a tier's artifacts on a destination, newest first.

    Raises:
        RetentionListFailed: If the listing fails
    """
    tier = BackupTier.parse(tier)
    try:
        objects = storage.list_objects(prefix=tier.prefix)
    except StorageError as e:
        raise RetentionListFailed(f"Failed to list {tier.prefix} on {storage.name}", detail=str(e))
    return artifacts_from_listing(tier, objects)


class RetentionManager:
    """
    Enforces per-tier retention policies on one storage destination.
    """

    def __init__(self, storage, policies: Dict[BackupTier, RetentionPolicy]):
        """
        Args:
            storage: Destination to prune
            policies: Policy for every tier

        Raises:
            ConfigurationError: If a tier has no policy
        """
        missing = [t.value for t in BackupTier if t not in policies]
        if missing:
            raise ConfigurationError(f"No retention policy for tier(s): {', '.join(missing)}")
        self.storage = storage
        self.policies = dict(policies)

    def select_expired(self, tier: BackupTier, artifacts: List[BackupArtifact],
                       now: Optional[datetime] = None) -> List[BackupArtifact]:
        """
        Decide which artifacts fall outside the tier's policy.

        Args:
            tier: Tier being pruned
            artifacts: Artifacts of that tier (any order)
            now: Reference time for age policies (default: current UTC time)

        Returns:
            Artifacts to delete, oldest last
        """
        tier = BackupTier.parse(tier)
        policy = self.policies[tier]
        now = now or datetime.now(timezone.utc)

        ordered = sorted(artifacts, key=lambda a: a.created_at, reverse=True)
        if len(ordered) <= 1 or policy.kind is PolicyKind.UNLIMITED:
            return []

        if policy.kind is PolicyKind.COUNT:
            candidates = ordered[max(policy.value, 1):]
        else:
            cutoff = now - timedelta(days=policy.value)
            candidates = [a for a in ordered[1:] if a.created_at < cutoff]

        timestamp_counts = Counter(a.created_at for a in ordered)
        expired = []
        for artifact in candidates:
            if timestamp_counts[artifact.created_at] > 1:
                logger.warning(
                    f"Keeping {artifact.remote_key}: timestamp shared with another artifact, needs operator review"
                )
                continue
            expired.append(artifact)
        return expired

    def enforce(self, tier: BackupTier, now: Optional[datetime] = None) -> List[str]:
        """
        Apply the tier's policy: list, select and delete expired artifacts.

        Returns:
            Keys that were deleted

        Raises:
            RetentionListFailed: If the tier cannot be listed (nothing is deleted)
        """
        tier = BackupTier.parse(tier)
        artifacts = list_artifacts(self.storage, tier)
        expired = self.select_expired(tier, artifacts, now)

        logger.info(
            f"Retention {tier.value} on {self.storage.name}: policy {self.policies[tier]}, "
            f"{len(artifacts)} artifacts, {len(expired)} expired"
        )

        deleted = []
        for artifact in expired:
            try:
                self.storage.delete(artifact.remote_key)
                deleted.append(artifact.remote_key)
                logger.info(f"Deleted {artifact.remote_key} from {self.storage.name}")
            except StorageError as e:
                logger.error(f"Failed to delete {artifact.remote_key} from {self.storage.name}: {e}")

        return deleted


@dataclass
class RetentionReport:
    deleted: Dict[str, List[str]] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def deleted_count(self) -> int:
        return sum(len(keys) for keys in self.deleted.values())


def enforce_retention(destinations: List, policies: Dict[BackupTier, RetentionPolicy], tier: BackupTier,
                      now: Optional[datetime] = None) -> RetentionReport:
    """
    Enforce a tier's policy on every destination, primary first.

    A listing failure on the primary destination propagates; failures on
    secondary destinations are logged and reported as warnings.

    Returns:
        RetentionReport with deleted keys per destination
    """
    report = RetentionReport()
    for index, storage in enumerate(destinations):
        manager = RetentionManager(storage, policies)
        try:
            report.deleted[storage.name] = manager.enforce(tier, now)
        except RetentionListFailed as e:
            if index == 0:
                raise
            warning = f"{storage.name}: {e.message} ({e.detail})"
            logger.warning(f"Retention skipped on secondary destination: {warning}")
            report.warnings.append(warning)
    return report
