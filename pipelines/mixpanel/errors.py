"""Error taxonomy shared by the client, the planner and the services.

Two kinds only:
    config   -> caller-fixable input (bad timezone, bad query, fatal 4xx ...)
    runtime  -> transient trouble that outlived the retry budget
"""


class IngestError(Exception):
    kind = "error"


class ConfigError(IngestError, ValueError):
    kind = "config"


class ServiceError(IngestError, RuntimeError):
    kind = "runtime"

    def __init__(self, message: str, status_code: int | None = None, attempts: int = 0):
        super().__init__(message)
        self.status_code = status_code
        self.attempts = attempts
