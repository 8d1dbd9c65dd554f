"""Row ids supplied by callers.

Repositories parse every incoming id with parse_id. A malformed id raises
InvalidIdError, which the app answers with a 422 instead of letting
uuid.UUID's ValueError surface as a 500.
"""

from __future__ import annotations

import uuid

from fastapi import Request, status
from fastapi.responses import JSONResponse


class InvalidIdError(Exception):
    """A caller-supplied id is not a UUID."""

    def __init__(self, value: object) -> None:
        super().__init__(f"Invalid id: {value!r}")
        self.value = value


def parse_id(value: str | uuid.UUID) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise InvalidIdError(value) from exc


async def invalid_id_handler(request: Request, exc: InvalidIdError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc)},
    )
