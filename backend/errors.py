# errors.py — Error taxonomy shared by all routers
# Each class is an HTTPException so routers raise them exactly like HTTPException.

from fastapi import HTTPException, status


class Unauthenticated(HTTPException):
    """No valid bearer token; distinct from an authorization failure."""

    def __init__(self, detail: str = "Authentication required"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class AccessDenied(HTTPException):
    """Insufficient level, or a resource the caller may not learn about."""

    def __init__(self, detail: str = "Access denied"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class NotFound(HTTPException):
    def __init__(self, what: str = "Resource"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=f"{what} not found")


class ValidationFailed(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class Conflict(HTTPException):
    """Duplicate grant/membership, including one that lost an insert race."""

    def __init__(self, detail: str):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)
