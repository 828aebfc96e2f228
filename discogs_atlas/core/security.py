from fastapi import Header, HTTPException, status


async def get_discogs_token(
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> str | None:
    """Return the caller's Discogs token from an optional bearer header.

    The token is only handed to the run's client; it is never stored.
    """
    if authorization is None:
        return None
    if not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Discogs credentials require a bearer token",
        )

    token = authorization.split(" ", maxsplit=1)[1].strip()
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="empty bearer token")
    return token
