# backend/showmover/errors.py


class JobError(Exception):
    """Base class for errors surfaced by move job admission."""

    message = "Move job error"

    def __init__(self, message=None):
        super().__init__(message or self.message)


class InvalidTarget(JobError):
    message = "target must be 'hot' or 'cold'"


class ShowNotFound(JobError):
    message = "Show not found"


class AlreadyInLocation(JobError):
    message = "Show already in requested pool"


class MissingRoot(JobError):
    def __init__(self, root_name: str):
        self.root_name = root_name
        super().__init__(f"Missing configuration for {root_name}")


class PathMismatch(JobError):
    message = "Show path is not within configured pools"


class JobInterrupted(Exception):
    """Shutdown was requested between two file copies; the job stays running."""


class ScanError(Exception):
    """A store-level failure aborted a library scan."""


class ConfigError(Exception):
    """Reading or writing the config file failed."""


class ConfigValidationError(ValueError):
    pass


class AdmissionRejected(Exception):
    """A scan or a move was refused because the other one is active."""


class ScanAlreadyRunning(AdmissionRejected):
    def __init__(self):
        super().__init__("scan_already_running")


class ScanBlockedByJobs(AdmissionRejected):
    def __init__(self):
        super().__init__("Cannot run scan while move jobs are active.")


class MoveBlockedByScan(AdmissionRejected):
    def __init__(self):
        super().__init__("Cannot create move jobs while a scan is running.")
