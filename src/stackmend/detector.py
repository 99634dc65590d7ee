"""Runs CloudFormation drift detection for a single stack."""

import logging
import time
from dataclasses import dataclass, field

from stackmend.aws.client import CloudFormationClient
from stackmend.errors import DetectionFailedError, DetectionTimeoutError
from stackmend.models import DetectionRun, DetectionStatus, DriftedResource, StackStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DriftReport:
    """A finished detection run and the resources it found drifted."""

    run: DetectionRun
    resources: list[DriftedResource] = field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return self.run.stack_status == StackStatus.IN_SYNC or not self.resources


class DriftDetector:
    """Starts drift detection and polls it to completion."""

    def __init__(
        self,
        client: CloudFormationClient,
        poll_interval: float = 5.0,
        max_poll_attempts: int = 120,
    ):
        self._client = client
        self._poll_interval = poll_interval
        self._max_poll_attempts = max_poll_attempts

    def detect(self, stack_name: str) -> DriftReport:
        """Detect drift on ``stack_name``.

        Raises DetectionFailedError or DetectionTimeoutError.
        """
        run = self._client.detect_drift(stack_name)
        logger.info("Started drift detection %s for %s", run.detection_id, stack_name)

        for _ in range(self._max_poll_attempts):
            run = self._client.poll_detection(run.detection_id, stack_name)

            if run.status == DetectionStatus.COMPLETE:
                break
            elif run.status == DetectionStatus.FAILED:
                raise DetectionFailedError(
                    f"Drift detection failed: {run.status_reason or 'Unknown reason'}"
                )

            if self._poll_interval > 0:
                time.sleep(self._poll_interval)
        else:
            raise DetectionTimeoutError(
                f"Drift detection for {stack_name} did not complete "
                f"after {self._max_poll_attempts} attempts"
            )

        if run.stack_status == StackStatus.IN_SYNC:
            logger.info("Stack %s is in sync", stack_name)
            return DriftReport(run=run)

        resources = self._client.get_drifted_resources(stack_name)
        logger.info("Stack %s has %d drifted resources", stack_name, len(resources))
        return DriftReport(run=run, resources=resources)
