import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger, Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint,
)

from database import Base


def utcnow() -> datetime:
    # Stored naive; every timestamp in the database is UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


# Ordered by increasing privilege; checks compare with >=
ROLE_HIERARCHY = {"read": 1, "write": 2, "admin": 3}
FILE_TYPES = ("users", "agents", "shared")
AUDIT_ACTIONS = ("upload", "download", "version_create", "delete", "share")


# ─────────────────────────────────────────────────────────────
# Account (tenant)
# ─────────────────────────────────────────────────────────────
class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("status IN ('active', 'suspended')", name="check_account_status"),
        CheckConstraint("storage_quota >= 0", name="check_account_quota"),
    )

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    domain = Column(String, nullable=True)
    status = Column(String, nullable=False, default="active")
    storage_used = Column(BigInteger, nullable=False, default=0)
    storage_quota = Column(BigInteger, nullable=False, default=0)  # 0 = unlimited
    encryption_enabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


# ─────────────────────────────────────────────────────────────
# Identities
# ─────────────────────────────────────────────────────────────
class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_id)
    email = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    name = Column(String, nullable=False)
    last_login = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Agent(Base):
    __tablename__ = "agents"
    __table_args__ = (
        CheckConstraint("status IN ('active', 'revoked')", name="check_agent_status"),
    )

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    api_key = Column(String, unique=True, index=True, nullable=False)
    status = Column(String, nullable=False, default="active")
    last_used = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


# ─────────────────────────────────────────────────────────────
# Permissions: exactly one of user_id / agent_id per row
# ─────────────────────────────────────────────────────────────
class Permission(Base):
    __tablename__ = "permissions"
    __table_args__ = (
        CheckConstraint("(user_id IS NULL) <> (agent_id IS NULL)", name="check_permission_identity"),
        CheckConstraint("role IN ('read', 'write', 'admin')", name="check_permission_role"),
        UniqueConstraint("account_id", "user_id", name="uq_permission_account_user"),
        UniqueConstraint("account_id", "agent_id", name="uq_permission_account_agent"),
    )

    id = Column(String, primary_key=True, default=new_id)
    account_id = Column(String, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    agent_id = Column(String, ForeignKey("agents.id", ondelete="CASCADE"), nullable=True)
    role = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


# ─────────────────────────────────────────────────────────────
# Files: uploader ids are soft references so history survives
# identity deletion
# ─────────────────────────────────────────────────────────────
class File(Base):
    __tablename__ = "files"
    __table_args__ = (
        CheckConstraint(
            "(uploaded_by_user_id IS NULL) <> (uploaded_by_agent_id IS NULL)", name="check_file_uploader"
        ),
        CheckConstraint("type IN ('users', 'agents', 'shared')", name="check_file_type"),
        UniqueConstraint("account_id", "folder", "original_name", name="uq_file_location"),
    )

    id = Column(String, primary_key=True, default=new_id)
    account_id = Column(String, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    original_name = Column(String, nullable=False)
    path = Column(String, nullable=False)
    size = Column(BigInteger, nullable=False)
    mime_type = Column(String, nullable=True)
    type = Column(String, nullable=False)
    folder = Column(String, nullable=False, default="/")
    checksum = Column(String, nullable=False)
    is_encrypted = Column(Boolean, nullable=False, default=False)
    uploaded_by_user_id = Column(String, nullable=True)
    uploaded_by_agent_id = Column(String, nullable=True)
    is_public = Column(Boolean, nullable=False, default=False)
    public_token = Column(String, unique=True, nullable=True, index=True)
    download_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class FileVersion(Base):
    __tablename__ = "file_versions"
    __table_args__ = (
        UniqueConstraint("file_id", "version_number", name="uq_file_version_number"),
        CheckConstraint("version_number >= 1", name="check_version_number"),
    )

    id = Column(String, primary_key=True, default=new_id)
    file_id = Column(String, ForeignKey("files.id", ondelete="CASCADE"), nullable=False, index=True)
    version_number = Column(Integer, nullable=False)
    path = Column(String, nullable=False)
    size = Column(BigInteger, nullable=False)
    checksum = Column(String, nullable=False)
    is_encrypted = Column(Boolean, nullable=False, default=False)
    mime_type = Column(String, nullable=True)
    created_by = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


# ─────────────────────────────────────────────────────────────
# Audit Log: append-only, soft references only
# ─────────────────────────────────────────────────────────────
class AuditLog(Base):
    __tablename__ = "file_audit_log"
    __table_args__ = (
        CheckConstraint(
            "action IN ('upload', 'download', 'version_create', 'delete', 'share')", name="check_audit_action"
        ),
        CheckConstraint("performed_by_type IN ('user', 'agent')", name="check_audit_identity_type"),
    )

    id = Column(String, primary_key=True, default=new_id)
    file_id = Column(String, nullable=False, index=True)
    account_id = Column(String, nullable=False, index=True)
    action = Column(String, nullable=False)
    performed_by = Column(String, nullable=False, default="unknown")
    performed_by_type = Column(String, nullable=False)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


# ─────────────────────────────────────────────────────────────
# Login sessions
# ─────────────────────────────────────────────────────────────
class Session(Base):
    __tablename__ = "sessions"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token = Column(String, unique=True, index=True, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
