"""
Error taxonomy for the observation store.

Every failure the core raises derives from `ObsError`, so the HTTP layer can
render all of them with a single handler. `status_code` is a hint for that
handler; the core itself never looks at it.
"""

from __future__ import annotations


class ObsError(RuntimeError):
    status_code = 500

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


# Malformed wire input. Raised while decoding, before any store access.
class ValidationError(ObsError):
    status_code = 400


# An observation names a condition its set did not declare.
class ReferentialError(ObsError):
    status_code = 400


class NotFoundError(ObsError):
    status_code = 404


# Connectivity, constraint violations, aborted transactions.
class StoreError(ObsError):
    status_code = 500
