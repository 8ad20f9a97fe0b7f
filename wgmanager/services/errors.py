"""Error taxonomy shared by the WireGuard services.

The HTTP-facing errors subclass ``HTTPException`` so services can raise them
directly and FastAPI maps them to a status code. Errors raised below the
service layer (allocator, kernel commands) stay plain exceptions.
"""

from __future__ import annotations

from fastapi import HTTPException


class BadRequestError(HTTPException):
    """Malformed or missing required input."""

    def __init__(self, detail: str):
        super().__init__(status_code=400, detail=detail)


class NotFoundError(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=404, detail=detail)


class ConflictError(HTTPException):
    """Duplicate name/port/address/key, or an exhausted subnet."""

    def __init__(self, detail: str):
        super().__init__(status_code=409, detail=detail)


class MissingKeyError(HTTPException):
    """Interface has no private key at apply or render time."""

    def __init__(self, detail: str = "interface private key is missing"):
        super().__init__(status_code=400, detail=detail)


class InternalError(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=500, detail=detail)


class NoAvailableAddressError(Exception):
    """Every usable host address in the subnet is taken."""

    def __init__(self, cidr: str):
        super().__init__(f"no available ip in {cidr}")
        self.cidr = cidr


class NetworkCommandError(Exception):
    """An ``ip``/``wg`` invocation failed; carries its diagnostic output."""

    def __init__(self, command: list[str], returncode: int | None, output: str):
        self.command = list(command)
        self.returncode = returncode
        self.output = (output or "").strip()
        message = f"{' '.join(self.command)} failed"
        if returncode is not None:
            message += f" (exit {returncode})"
        if self.output:
            message += f": {self.output}"
        super().__init__(message)
