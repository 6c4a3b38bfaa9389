import asyncio
import io
import logging
from contextlib import asynccontextmanager, suppress
from typing import Optional
from urllib.parse import quote

from fastapi import Depends, FastAPI, File, Form, Header, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

import auth
import schemas
from auth import Identity, bearer_token_from_header
from config import Settings
from database import create_engine, create_session_factory, init_db
from dependencies import get_client_ip, get_db, get_file_service, get_identity, get_user_agent
from encryption import EncryptionManager
from exceptions import DarkDropError, Unauthenticated
from file_service import FileService
from permissions import list_accounts_for
from storage import LocalStorage
from tool_routes import router as tool_router

logger = logging.getLogger(__name__)


def _download_response(db_file, content: bytes) -> StreamingResponse:
    return StreamingResponse(
        io.BytesIO(content),
        media_type=db_file.mime_type or "application/octet-stream",
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(db_file.original_name)}"},
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    engine = create_engine(settings)
    session_factory = create_session_factory(engine)
    encryption = EncryptionManager(settings.master_key, iterations=settings.kdf_iterations)
    if not encryption.available:
        logger.warning("No master key configured; accounts with encryption enabled will store plaintext")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Create tables, sweep stale sessions, start the cleanup task."""
        await init_db(engine)
        await auth.cleanup_expired_sessions(session_factory)
        cleanup_task = asyncio.create_task(
            auth.session_cleanup_loop(session_factory, settings.session_cleanup_interval_seconds)
        )

        yield

        cleanup_task.cancel()
        with suppress(asyncio.CancelledError):
            await cleanup_task
        await engine.dispose()

    app = FastAPI(
        title="DarkDrop API",
        description="Multi-tenant file storage with encryption at rest, versioning and audit trail",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.file_service = FileService(
        storage=LocalStorage(settings.storage_root),
        encryption=encryption,
        public_base_url=settings.public_base_url,
        max_upload_bytes=settings.max_upload_bytes,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ─── Error mapping ────────────────────────────────────────────────────────

    @app.exception_handler(DarkDropError)
    async def darkdrop_error_handler(request: Request, exc: DarkDropError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path}: {exc.category}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.category, "detail": exc.message})

    @app.exception_handler(SQLAlchemyError)
    async def store_error_handler(request: Request, exc: SQLAlchemyError):
        logger.exception(f"Store failure on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=503, content={"error": "dependency_error", "detail": "Storage backend unavailable"}
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content={"error": "internal_error", "detail": "Internal server error"})

    # ─── Health ───────────────────────────────────────────────────────────────

    @app.get("/health", tags=["System"])
    async def health():
        return {"status": "ok", "service": "darkdrop-api"}

    # ─── Auth ─────────────────────────────────────────────────────────────────

    @app.post("/auth/register", response_model=schemas.UserOut, status_code=201, tags=["Auth"])
    async def register(body: schemas.RegisterRequest, db: AsyncSession = Depends(get_db)):
        return await auth.register(db, body.email, body.password, body.name)

    @app.post("/auth/login", response_model=schemas.LoginResponse, tags=["Auth"])
    async def login(body: schemas.LoginRequest, db: AsyncSession = Depends(get_db)):
        token, user, permissions = await auth.login(db, body.email, body.password, settings.session_ttl_hours)
        return {
            "token": token,
            "user": schemas.UserOut.model_validate(user),
            "accounts": [
                {"id": a.id, "name": a.name, "domain": a.domain, "role": p.role} for p, a in permissions
            ],
        }

    @app.post("/auth/logout", response_model=schemas.MessageOut, tags=["Auth"])
    async def logout(
        db: AsyncSession = Depends(get_db),
        authorization: Optional[str] = Header(None),
    ):
        token = bearer_token_from_header(authorization)
        if not token:
            raise Unauthenticated("No token provided")
        await auth.authenticate_session(db, token)
        await auth.logout(db, token)
        return {"message": "Logged out successfully"}

    # ─── Accounts ─────────────────────────────────────────────────────────────

    @app.get("/accounts", response_model=list[schemas.AccountAccessOut], tags=["Accounts"])
    async def list_accounts(db: AsyncSession = Depends(get_db), identity: Identity = Depends(get_identity)):
        return await list_accounts_for(db, identity)

    @app.get("/accounts/{account_id}", response_model=schemas.AccountOut, tags=["Accounts"])
    async def get_account(
        account_id: str,
        db: AsyncSession = Depends(get_db),
        identity: Identity = Depends(get_identity),
        files: FileService = Depends(get_file_service),
    ):
        return await files.get_account(db, account_id, identity)

    # ─── Upload / download ────────────────────────────────────────────────────

    @app.post("/upload/{account_id}", response_model=schemas.UploadOut, status_code=201, tags=["Files"])
    async def upload_file(
        account_id: str,
        request: Request,
        file: UploadFile = File(...),
        type: Optional[str] = Form(None),
        folder: Optional[str] = Form(None),
        db: AsyncSession = Depends(get_db),
        identity: Identity = Depends(get_identity),
        files: FileService = Depends(get_file_service),
    ):
        content = await file.read()
        result = await files.upload_file(
            db,
            account_id,
            identity,
            content,
            original_name=file.filename or "",
            mime_type=file.content_type,
            file_type=type,
            folder=folder,
            ip_address=get_client_ip(request),
            user_agent=get_user_agent(request),
        )
        out = schemas.UploadOut.model_validate(result.file)
        out.version_number = result.version.version_number if result.version else None
        return out

    @app.get("/download/{file_id}", tags=["Files"])
    async def download_file(
        file_id: str,
        request: Request,
        db: AsyncSession = Depends(get_db),
        identity: Identity = Depends(get_identity),
        files: FileService = Depends(get_file_service),
    ):
        db_file, content = await files.download_file(
            db, file_id, identity, ip_address=get_client_ip(request), user_agent=get_user_agent(request)
        )
        return _download_response(db_file, content)

    @app.get("/public/{token}", tags=["Sharing"])
    async def public_download(
        token: str,
        db: AsyncSession = Depends(get_db),
        files: FileService = Depends(get_file_service),
    ):
        db_file, content = await files.download_public(db, token)
        return _download_response(db_file, content)

    # ─── Files ────────────────────────────────────────────────────────────────

    @app.get("/files/{account_id}", response_model=list[schemas.FileOut], tags=["Files"])
    async def list_files(
        account_id: str,
        folder: Optional[str] = Query(None),
        type: Optional[str] = Query(None),
        db: AsyncSession = Depends(get_db),
        identity: Identity = Depends(get_identity),
        files: FileService = Depends(get_file_service),
    ):
        return await files.list_files(db, account_id, identity, folder=folder, file_type=type)

    @app.get("/files/{account_id}/search", response_model=list[schemas.FileOut], tags=["Files"])
    async def search_files(
        account_id: str,
        q: Optional[str] = Query(None),
        folder: Optional[str] = Query(None),
        type: Optional[str] = Query(None),
        db: AsyncSession = Depends(get_db),
        identity: Identity = Depends(get_identity),
        files: FileService = Depends(get_file_service),
    ):
        return await files.search_files(db, account_id, identity, q, folder=folder, file_type=type)

    @app.delete("/files/{file_id}", response_model=schemas.MessageOut, tags=["Files"])
    async def delete_file(
        file_id: str,
        request: Request,
        db: AsyncSession = Depends(get_db),
        identity: Identity = Depends(get_identity),
        files: FileService = Depends(get_file_service),
    ):
        await files.delete_file(
            db, file_id, identity, ip_address=get_client_ip(request), user_agent=get_user_agent(request)
        )
        return {"message": "File deleted successfully"}

    @app.post("/files/{file_id}/share", response_model=schemas.ShareOut, tags=["Sharing"])
    async def share_file(
        file_id: str,
        request: Request,
        db: AsyncSession = Depends(get_db),
        identity: Identity = Depends(get_identity),
        files: FileService = Depends(get_file_service),
    ):
        db_file, public_url = await files.share_file(
            db, file_id, identity, ip_address=get_client_ip(request), user_agent=get_user_agent(request)
        )
        return {"file_id": db_file.id, "public_url": public_url, "token": db_file.public_token}

    # ─── Versions & audit ─────────────────────────────────────────────────────

    @app.get("/files/{file_id}/versions", response_model=list[schemas.VersionOut], tags=["Versions"])
    async def list_versions(
        file_id: str,
        db: AsyncSession = Depends(get_db),
        identity: Identity = Depends(get_identity),
        files: FileService = Depends(get_file_service),
    ):
        return await files.list_versions(db, file_id, identity)

    @app.post(
        "/files/{file_id}/versions/{version_id}/restore", response_model=schemas.FileOut, tags=["Versions"]
    )
    async def restore_version(
        file_id: str,
        version_id: str,
        request: Request,
        db: AsyncSession = Depends(get_db),
        identity: Identity = Depends(get_identity),
        files: FileService = Depends(get_file_service),
    ):
        return await files.restore_version(
            db, file_id, version_id, identity,
            ip_address=get_client_ip(request), user_agent=get_user_agent(request),
        )

    @app.get("/files/{file_id}/audit", response_model=list[schemas.AuditEntryOut], tags=["Audit"])
    async def file_audit_log(
        file_id: str,
        db: AsyncSession = Depends(get_db),
        identity: Identity = Depends(get_identity),
        files: FileService = Depends(get_file_service),
    ):
        return await files.get_audit_log(db, file_id, identity)

    app.include_router(tool_router)
    return app
