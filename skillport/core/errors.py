"""Error taxonomy shared by the service layer.

Routers translate these into ``HTTPException`` responses; Celery tasks use
``TransientError`` to decide whether to retry.
"""


class LeaderboardError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(LeaderboardError):
    status_code = 404


class ConflictError(LeaderboardError):
    status_code = 409


class TransientError(LeaderboardError):
    status_code = 503


class ValidationError(LeaderboardError):
    status_code = 422


def to_http_exception(error: LeaderboardError):
    from fastapi import HTTPException
    return HTTPException(error.status_code, error.message)
