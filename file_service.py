"""
file_service.py — File lifecycle for DarkDrop: upload, versioning, download,
public sharing, delete and version restore.

Every operation resolves the owning account from the stored file before
checking access; account ids supplied by callers are only trusted for
account-scoped operations (upload, list, search).
"""
import asyncio
import logging
import weakref
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

import crud
from audit import create_audit_entry, get_file_audit_log
from auth import Identity, UserIdentity
from encryption import EncryptionManager, hash_file, verify_integrity
from exceptions import CapacityError, DependencyError, Forbidden, IntegrityError, NotFound, ValidationError
from models import FILE_TYPES, Account, AuditLog, File, FileVersion, utcnow
from permissions import Role, require_access
from security import generate_public_token
from storage import LocalStorage

logger = logging.getLogger(__name__)

# Extension → MIME type map (avoids python-magic cross-platform issues)
MIME_MAP = {
    "pdf":  "application/pdf",
    "png":  "image/png",
    "jpg":  "image/jpeg",
    "jpeg": "image/jpeg",
    "gif":  "image/gif",
    "webp": "image/webp",
    "txt":  "text/plain",
    "md":   "text/markdown",
    "csv":  "text/csv",
    "json": "application/json",
    "xml":  "application/xml",
    "zip":  "application/zip",
    "tar":  "application/x-tar",
    "gz":   "application/gzip",
    "mp4":  "video/mp4",
    "mp3":  "audio/mpeg",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
}


def detect_mime(filename: str) -> str:
    """Detect MIME type from file extension."""
    if "." in filename:
        ext = filename.rsplit(".", 1)[-1].lower()
        return MIME_MAP.get(ext, "application/octet-stream")
    return "application/octet-stream"


def normalize_folder(folder: Optional[str]) -> str:
    if not folder:
        return "/"
    folder = folder.strip()
    if not folder.startswith("/"):
        folder = "/" + folder
    parts = [p for p in folder.split("/") if p]
    if any(p in (".", "..") for p in parts):
        raise ValidationError("Folder may not contain '.' or '..' segments")
    return "/" + "/".join(parts)


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks = weakref.WeakValueDictionary()

    def get(self, key) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


@dataclass
class UploadResult:
    file: File
    # snapshot of the previous content when the upload replaced an existing file
    version: Optional[FileVersion] = None


class FileService:

    def __init__(
        self,
        storage: LocalStorage,
        encryption: EncryptionManager,
        public_base_url: str,
        max_upload_bytes: int,
    ):
        self.storage = storage
        self.encryption = encryption
        self.public_base_url = public_base_url.rstrip("/")
        self.max_upload_bytes = max_upload_bytes
        self._locks = KeyedLocks()

    def public_url(self, token: str) -> str:
        return f"{self.public_base_url}/public/{token}"

    def _lock_for(self, account_id: str, folder: str, original_name: str) -> asyncio.Lock:
        return self._locks.get((account_id, folder, original_name))

    # ─── Upload ───────────────────────────────────────────────────────────────

    async def upload_file(
        self,
        db: AsyncSession,
        account_id: str,
        identity: Identity,
        content: bytes,
        original_name: str,
        mime_type: Optional[str] = None,
        file_type: Optional[str] = None,
        folder: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> UploadResult:
        original_name = (original_name or "").strip()
        if not original_name:
            raise ValidationError("No file uploaded")
        file_type = file_type or ("users" if isinstance(identity, UserIdentity) else "agents")
        if file_type not in FILE_TYPES:
            raise ValidationError(f"Type must be one of: {', '.join(FILE_TYPES)}")
        folder = normalize_folder(folder)
        if len(content) > self.max_upload_bytes:
            raise CapacityError("File exceeds maximum upload size")

        # unknown accounts have no permission rows, so they fail here as Forbidden
        await require_access(db, account_id, identity, Role.WRITE)
        account = await crud.get_account(db, account_id)
        if account is None:
            raise NotFound("Account not found")
        if account.status != "active":
            raise Forbidden("Account is suspended")

        checksum = hash_file(content)
        stored, encrypted = await self._encode(account, content)
        mime_type = mime_type or detect_mime(original_name)

        # end the read transaction so the locked section sees the latest commits
        await db.commit()

        async with self._lock_for(account_id, folder, original_name):
            existing = await crud.find_file(db, account_id, folder, original_name)
            delta = len(stored) - (existing.size if existing else 0)
            await self._check_quota(db, account_id, delta)

            name, path = await self.storage.put(account_id, file_type, original_name, stored)
            try:
                uploader = self._uploader_fields(identity)
                if existing is None:
                    db_file = await crud.create_file(
                        db,
                        account_id=account_id,
                        name=name,
                        original_name=original_name,
                        path=path,
                        size=len(stored),
                        mime_type=mime_type,
                        type=file_type,
                        folder=folder,
                        checksum=checksum,
                        is_encrypted=encrypted,
                        **uploader,
                    )
                    version = None
                    action = "upload"
                else:
                    version = await self._snapshot(db, existing, identity)
                    existing.name = name
                    existing.path = path
                    existing.size = len(stored)
                    existing.mime_type = mime_type
                    existing.checksum = checksum
                    existing.is_encrypted = encrypted
                    existing.uploaded_by_user_id = uploader["uploaded_by_user_id"]
                    existing.uploaded_by_agent_id = uploader["uploaded_by_agent_id"]
                    existing.updated_at = utcnow()
                    db_file = existing
                    action = "version_create"

                await self._charge_storage(db, account_id, delta)
                await self._audit(db, action, db_file, identity, ip_address, user_agent)
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                await self.storage.delete(path)
                logger.error(f"Upload of {original_name!r} to {account_id} failed: {e}")
                raise DependencyError("Upload failed")
            except BaseException:
                await db.rollback()
                await self.storage.delete(path)
                raise

        if version is None:
            logger.info(f"Uploaded file {db_file.id} to {account_id} ({db_file.size} bytes)")
        else:
            logger.info(f"Stored version {version.version_number} of file {db_file.id}")
        return UploadResult(file=db_file, version=version)

    # ─── Download ─────────────────────────────────────────────────────────────

    async def download_file(
        self,
        db: AsyncSession,
        file_id: str,
        identity: Identity,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[File, bytes]:
        db_file = await self._resolve_file(db, file_id)
        await require_access(db, db_file.account_id, identity, Role.READ)

        plaintext = await self._read_plaintext(db_file)
        try:
            await crud.increment_download_count(db, db_file.id)
            await self._audit(db, "download", db_file, identity, ip_address, user_agent)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Recording download of {file_id} failed: {e}")
            raise DependencyError("Download failed")

        await db.refresh(db_file)
        return db_file, plaintext

    async def download_public(self, db: AsyncSession, token: str) -> tuple[File, bytes]:
        """Anonymous download by share token. No permission check and no audit entry."""
        db_file = await crud.get_file_by_public_token(db, token)
        if db_file is None:
            raise NotFound("File not found")

        plaintext = await self._read_plaintext(db_file)
        try:
            await crud.increment_download_count(db, db_file.id)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Recording public download of {db_file.id} failed: {e}")
            raise DependencyError("Download failed")

        logger.info(f"Public download of file {db_file.id}")
        await db.refresh(db_file)
        return db_file, plaintext

    # ─── Listing ──────────────────────────────────────────────────────────────

    async def get_account(self, db: AsyncSession, account_id: str, identity: Identity) -> Account:
        await require_access(db, account_id, identity, Role.READ)
        account = await crud.get_account(db, account_id)
        if account is None:
            raise NotFound("Account not found")
        return account

    async def list_files(
        self,
        db: AsyncSession,
        account_id: str,
        identity: Identity,
        folder: Optional[str] = None,
        file_type: Optional[str] = None,
    ) -> list[File]:
        if file_type and file_type not in FILE_TYPES:
            raise ValidationError(f"Type must be one of: {', '.join(FILE_TYPES)}")
        await require_access(db, account_id, identity, Role.READ)
        return await crud.list_files(db, account_id, normalize_folder(folder), file_type)

    async def search_files(
        self,
        db: AsyncSession,
        account_id: str,
        identity: Identity,
        term: Optional[str],
        folder: Optional[str] = None,
        file_type: Optional[str] = None,
    ) -> list[File]:
        if not term:
            raise ValidationError("Search term required")
        await require_access(db, account_id, identity, Role.READ)
        return await crud.search_files(
            db, account_id, term, normalize_folder(folder) if folder else None, file_type
        )

    # ─── Delete ───────────────────────────────────────────────────────────────

    async def delete_file(
        self,
        db: AsyncSession,
        file_id: str,
        identity: Identity,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        db_file = await self._resolve_file(db, file_id)
        await require_access(db, db_file.account_id, identity, Role.WRITE)
        await db.commit()

        async with self._lock_for(db_file.account_id, db_file.folder, db_file.original_name):
            db_file = await self._resolve_file(db, file_id)
            account_id, size = db_file.account_id, db_file.size
            versions = await crud.get_file_versions(db, file_id)
            paths = {db_file.path, *(v.path for v in versions)}
            try:
                await self._audit(db, "delete", db_file, identity, ip_address, user_agent)
                await crud.delete_file(db, file_id)
                await crud.adjust_account_storage(db, account_id, -size)
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error(f"Deleting file {file_id} failed: {e}")
                raise DependencyError("Delete failed")
            finally:
                for path in paths:
                    await self.storage.delete(path)

        logger.info(f"Deleted file {file_id} from {account_id}")

    # ─── Share ────────────────────────────────────────────────────────────────

    async def share_file(
        self,
        db: AsyncSession,
        file_id: str,
        identity: Identity,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[File, str]:
        """Make a file public under a fresh token. Any previous token stops working."""
        db_file = await self._resolve_file(db, file_id)
        await require_access(db, db_file.account_id, identity, Role.WRITE)

        token = generate_public_token()
        try:
            await crud.make_file_public(db, db_file.id, token)
            await self._audit(db, "share", db_file, identity, ip_address, user_agent)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Sharing file {file_id} failed: {e}")
            raise DependencyError("Failed to create share link")

        await db.refresh(db_file)
        return db_file, self.public_url(token)

    # ─── Versions ─────────────────────────────────────────────────────────────

    async def list_versions(self, db: AsyncSession, file_id: str, identity: Identity) -> list[FileVersion]:
        db_file = await self._resolve_file(db, file_id)
        await require_access(db, db_file.account_id, identity, Role.READ)
        return await crud.get_file_versions(db, file_id)

    async def restore_version(
        self,
        db: AsyncSession,
        file_id: str,
        version_id: str,
        identity: Identity,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> File:
        db_file = await self._resolve_file(db, file_id)
        await require_access(db, db_file.account_id, identity, Role.WRITE)
        target = await crud.get_file_version(db, version_id)
        if target is None or target.file_id != db_file.id:
            raise NotFound("Version not found")
        await db.commit()

        async with self._lock_for(db_file.account_id, db_file.folder, db_file.original_name):
            db_file = await self._resolve_file(db, file_id)
            delta = target.size - db_file.size
            await self._check_quota(db, db_file.account_id, delta)
            try:
                await self._snapshot(db, db_file, identity)
                db_file.path = target.path
                db_file.name = target.path.replace("\\", "/").rsplit("/", 1)[-1]
                db_file.size = target.size
                db_file.checksum = target.checksum
                db_file.is_encrypted = target.is_encrypted
                db_file.mime_type = target.mime_type or db_file.mime_type
                db_file.updated_at = utcnow()
                await self._charge_storage(db, db_file.account_id, delta)
                await self._audit(db, "version_create", db_file, identity, ip_address, user_agent)
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error(f"Restoring version {version_id} of file {file_id} failed: {e}")
                raise DependencyError("Restore failed")
            except BaseException:
                await db.rollback()
                raise

        logger.info(f"Restored file {file_id} to version {target.version_number}")
        return db_file

    # ─── Audit trail ──────────────────────────────────────────────────────────

    async def get_audit_log(self, db: AsyncSession, file_id: str, identity: Identity) -> list[AuditLog]:
        db_file = await self._resolve_file(db, file_id)
        await require_access(db, db_file.account_id, identity, Role.ADMIN)
        return await get_file_audit_log(db, file_id)

    # ─── Internals ────────────────────────────────────────────────────────────

    async def _resolve_file(self, db: AsyncSession, file_id: str) -> File:
        db_file = await crud.get_file(db, file_id)
        if db_file is None:
            raise NotFound("File not found")
        return db_file

    async def _check_quota(self, db: AsyncSession, account_id: str, delta: int) -> None:
        account = await crud.get_account(db, account_id)
        if account is None:
            raise NotFound("Account not found")
        if account.storage_quota and delta > 0 and account.storage_used + delta > account.storage_quota:
            raise CapacityError("Storage quota exceeded")

    async def _charge_storage(self, db: AsyncSession, account_id: str, delta: int) -> None:
        # _check_quota fails fast before bytes are written; this is the authoritative check
        if not await crud.adjust_account_storage(db, account_id, delta, enforce_quota=True):
            raise CapacityError("Storage quota exceeded")

    async def _encode(self, account: Account, content: bytes) -> tuple[bytes, bool]:
        if not account.encryption_enabled:
            return content, False
        key = await asyncio.to_thread(self.encryption.get_account_key, account.id)
        if key is None:
            return content, False
        return await asyncio.to_thread(self.encryption.encrypt, content, key), True

    async def _read_plaintext(self, db_file: File) -> bytes:
        data = await self.storage.get(db_file.path)
        if db_file.is_encrypted:
            key = await asyncio.to_thread(self.encryption.get_account_key, db_file.account_id)
            if key is None:
                raise DependencyError("Encryption key unavailable")
            data = await asyncio.to_thread(self.encryption.decrypt, data, key)
        if not verify_integrity(data, db_file.checksum):
            logger.error(f"Integrity check failed for file {db_file.id}")
            raise IntegrityError("File integrity check failed")
        return data

    async def _snapshot(self, db: AsyncSession, db_file: File, identity: Identity) -> FileVersion:
        number = await crud.get_max_version_number(db, db_file.id) + 1
        return await crud.create_file_version(
            db,
            file_id=db_file.id,
            version_number=number,
            path=db_file.path,
            size=db_file.size,
            checksum=db_file.checksum,
            is_encrypted=db_file.is_encrypted,
            mime_type=db_file.mime_type,
            created_by=identity.id,
        )

    @staticmethod
    def _uploader_fields(identity: Identity) -> dict:
        if isinstance(identity, UserIdentity):
            return {"uploaded_by_user_id": identity.id, "uploaded_by_agent_id": None}
        return {"uploaded_by_user_id": None, "uploaded_by_agent_id": identity.id}

    @staticmethod
    async def _audit(
        db: AsyncSession,
        action: str,
        db_file: File,
        identity: Identity,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> AuditLog:
        return await create_audit_entry(
            db,
            action,
            file_id=db_file.id,
            account_id=db_file.account_id,
            performed_by=identity.id,
            performed_by_type=identity.kind,
            ip_address=ip_address,
            user_agent=user_agent,
        )
