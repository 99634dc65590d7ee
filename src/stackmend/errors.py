"""Error taxonomy for drift remediation."""


class StackmendError(RuntimeError):
    """Base class for every error raised by stackmend."""


class ConfigurationError(StackmendError):
    """Raised when configuration values are invalid."""


class NotFoundError(StackmendError):
    """Raised when a stack or its template cannot be found."""


class DetectionError(StackmendError):
    """Base class for drift detection failures."""


class DetectionFailedError(DetectionError):
    """Raised when CloudFormation reports DETECTION_FAILED."""


class DetectionTimeoutError(DetectionError):
    """Raised when drift detection does not finish within the polling window."""


class StackUpdateError(StackmendError):
    """Base class for stack update failures."""


class UpdateFailedError(StackUpdateError):
    """Raised when a stack operation ends in a *_FAILED status."""


class UpdateRolledBackError(StackUpdateError):
    """Raised when a stack update rolls back."""


class UpdateTimeoutError(StackUpdateError):
    """Raised when a stack update does not finish within the polling window."""


class ChangeSetError(StackmendError):
    """Base class for change set failures."""


class ChangeSetFailedError(ChangeSetError):
    """Raised when change set creation ends in FAILED."""


class ChangeSetTimeoutError(ChangeSetError):
    """Raised when change set creation does not finish within the polling window."""


class UnresolvableError(StackmendError):
    """Raised when a resource identifier cannot be derived from a physical id."""

    def __init__(self, resource_type: str, physical_id: str, reason: str | None = None):
        self.resource_type = resource_type
        self.physical_id = physical_id
        message = f"Cannot build import identifier for {resource_type} from {physical_id!r}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class DanglingReferenceError(StackmendError):
    """Raised when a plan decision names a resource missing from the plan snapshot."""

    def __init__(self, logical_id: str):
        self.logical_id = logical_id
        super().__init__(f'Resource "{logical_id}" in decisions not found in plan _resources')


class InvalidTemplateError(StackmendError):
    """Raised when template text is neither a JSON nor a YAML mapping."""


class InvalidPlanError(StackmendError):
    """Raised when a plan file fails validation."""


class NoActionableResourcesError(StackmendError):
    """Raised when drift exists but no drifted resource can be remediated."""
