import hmac

from fastapi import Header, HTTPException, Request

from scriptmarket.core.config import settings


def require_service_key(x_service_key: str | None = Header(default=None)) -> None:
    """Callers are trusted backends holding the shared service key."""
    if not x_service_key or not hmac.compare_digest(
        x_service_key.encode("utf-8"), settings.service_api_key.encode("utf-8")
    ):
        raise HTTPException(status_code=401, detail="unauthorized")


async def raw_body(request: Request) -> bytes:
    """Unparsed request body, as signed by the sender."""
    return await request.body()
