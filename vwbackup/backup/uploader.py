"""
Fan-out of an encrypted artifact to the configured destinations.

The primary destination is mandatory: if it fails the run fails. Secondary
destinations add geographic/provider redundancy; their failures are reported
as warnings and never fail the run.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Callable

from .errors import UploadFailed
from .storage import StorageError, UploadConfirmation

logger = logging.getLogger(__name__)


@dataclass
class UploadResult:
    primary: UploadConfirmation
    secondary: List[UploadConfirmation] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def secondary_warning(self) -> Optional[str]:
        return '; '.join(self.warnings) if self.warnings else None


class RemoteUploader:
    """Uploads an artifact to a primary destination and optional secondaries."""

    def __init__(self, primary, secondaries: Optional[List] = None, setup_warnings: Optional[List[str]] = None):
        """
        Args:
            primary: Required storage destination
            secondaries: Optional extra destinations
            setup_warnings: Secondaries that could not be built, reported with every upload
        """
        if primary is None:
            raise UploadFailed("A primary destination is required")
        self.primary = primary
        self.secondaries = list(secondaries or [])
        self.setup_warnings = list(setup_warnings or [])

    @property
    def destinations(self) -> List:
        return [self.primary] + self.secondaries

    def upload(self, artifact_path: str, remote_key: str, run_id: Optional[str] = None,
               cancellation_check: Optional[Callable] = None) -> UploadResult:
        """
        Upload artifact_path under remote_key to every destination.

        Returns:
            UploadResult with per-destination confirmations and secondary warnings

        Raises:
            UploadFailed: If the primary destination fails
        """
        try:
            primary = self.primary.put_file(
                artifact_path, remote_key, run_id=run_id, cancellation_check=cancellation_check
            )
        except StorageError as e:
            raise UploadFailed(
                f"Upload to primary destination {self.primary.name} failed",
                detail=str(e),
                destination=self.primary.name
            )
        logger.info(f"Uploaded {remote_key} to {primary.destination} (etag {primary.etag})")

        result = UploadResult(primary=primary, warnings=list(self.setup_warnings))

        for destination in self.secondaries:
            try:
                confirmation = destination.put_file(
                    artifact_path, remote_key, run_id=run_id, cancellation_check=cancellation_check
                )
                result.secondary.append(confirmation)
                logger.info(f"Uploaded {remote_key} to {confirmation.destination} (etag {confirmation.etag})")
            except StorageError as e:
                warning = f"{destination.name}: {e}"
                result.warnings.append(warning)
                logger.warning(f"Secondary upload failed, primary copy is safe: {warning}")

        return result
