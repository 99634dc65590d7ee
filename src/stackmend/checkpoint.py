"""Recovery checkpoints written before the first mutating stack update."""

import json
import logging
import re
from dataclasses import asdict
from datetime import UTC, datetime
from pathlib import Path

from stackmend.models import RecoveryCheckpoint, StackInfo

logger = logging.getLogger(__name__)


def build_checkpoint(
    stack: StackInfo, template_body: str, drifted_resource_ids: list[str]
) -> RecoveryCheckpoint:
    return RecoveryCheckpoint(
        stack_name=stack.stack_name,
        stack_id=stack.stack_id,
        original_template_body=template_body,
        parameters=list(stack.parameters),
        drifted_resource_ids=list(drifted_resource_ids),
        timestamp=datetime.now(UTC).isoformat(),
    )


def checkpoint_filename(checkpoint: RecoveryCheckpoint) -> str:
    """``.stackmend-backup-<stack>-<timestamp>.json`` with a filesystem-safe timestamp."""
    stamp = re.sub(r"[:.]", "-", checkpoint.timestamp)
    return f".stackmend-backup-{checkpoint.stack_name}-{stamp}.json"


def write_checkpoint(checkpoint: RecoveryCheckpoint, directory: str | Path = ".") -> Path:
    """Write the checkpoint as indented JSON and return its resolved path."""
    target = Path(directory).resolve() / checkpoint_filename(checkpoint)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(asdict(checkpoint), indent=2), encoding="utf-8")
    logger.info("Recovery checkpoint saved to %s", target)
    return target
