"""Errors raised by route handlers.

Each carries the HTTP status and envelope code it is rendered with.
"""


class ApiError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"


class ValidationError(ApiError):
    """The request body could not be parsed into an enqueue request."""

    status_code = 400
    code = "VALIDATION_ERROR"


class JobNotFoundError(ApiError):
    status_code = 404
    code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job with ID '{job_id}' not found")


class DuplicateJobError(ApiError):
    """An active job already exists for the same target and entry."""

    status_code = 409
    code = "DUPLICATE_JOB"

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"An active job already exists for entry '{entry_id}'")


class InvalidJobTransitionError(ApiError):
    """An operator action does not apply to the job's current status."""

    status_code = 409
    code = "INVALID_JOB_STATUS"

    def __init__(self, job_id: str, action: str, status: str):
        self.job_id = job_id
        self.action = action
        self.status = status
        super().__init__(f"Cannot {action} job '{job_id}' in status '{status}'")
