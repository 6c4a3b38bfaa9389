"""FastAPI dependencies shared by the route modules."""
from typing import AsyncIterator, Optional

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from auth import Identity, authenticate, bearer_token_from_header
from file_service import FileService


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Yields a DB session and always closes it after the request."""
    db = request.app.state.session_factory()
    try:
        yield db
    except Exception:
        await db.rollback()
        raise
    finally:
        await db.close()


def get_file_service(request: Request) -> FileService:
    return request.app.state.file_service


async def get_identity(
    db: AsyncSession = Depends(get_db),
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None),
) -> Identity:
    return await authenticate(db, bearer_token=bearer_token_from_header(authorization), api_key=x_api_key)


def get_client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def get_user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent")
