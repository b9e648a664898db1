class FleetError(Exception):
    """Base class for fleet orchestration errors."""


class TransientError(FleetError):
    """A timeout or connection failure that is worth retrying."""


class VersionConflict(FleetError):
    """The stored instance version differs from the one the write expected."""

    def __init__(self, instance_id: str, expected_version: int, actual_version: int = None):
        self.instance_id = instance_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on instance {instance_id}: "
            f"expected {expected_version}, found {actual_version}"
        )


class ClusterError(FleetError):
    """A cluster API call failed. ``transient`` tells whether a retry may help."""

    def __init__(self, message: str, transient: bool = True, status: int = None):
        self.transient = transient
        self.status = status
        super().__init__(message)


class ConfigError(FleetError):
    """Configuration is missing or malformed; startup must abort."""


class StartupError(FleetError):
    """A required backing service is unreachable at startup."""
