# tool_routes.py
"""Tool-call surface for agents: the core file operations as named tools
taking JSON arguments, with file content carried as base64."""

import base64
import binascii
from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

import schemas
from auth import Identity
from dependencies import get_client_ip, get_db, get_file_service, get_identity, get_user_agent
from exceptions import NotFound, ValidationError
from file_service import FileService

router = APIRouter(prefix="/tools", tags=["Agent Tools"])


# ─── TOOL DEFINITIONS ─────────────────────────────────────

TOOLS = [
    {
        "name": "upload_file",
        "description": "Upload a file to DarkDrop storage",
        "input_schema": {
            "type": "object",
            "properties": {
                "account_id": {"type": "string", "description": "Account ID (e.g., custcorp)"},
                "filename": {"type": "string", "description": "Name to store the file under"},
                "content_base64": {"type": "string", "description": "File content, base64 encoded"},
                "type": {"type": "string", "enum": ["users", "agents", "shared"],
                         "description": "File storage type"},
                "folder": {"type": "string", "description": "Destination folder path"},
                "mime_type": {"type": "string"},
            },
            "required": ["account_id", "filename", "content_base64"],
        },
    },
    {
        "name": "download_file",
        "description": "Download a file from DarkDrop storage",
        "input_schema": {
            "type": "object",
            "properties": {"file_id": {"type": "string", "description": "File ID to download"}},
            "required": ["file_id"],
        },
    },
    {
        "name": "list_files",
        "description": "List files in a DarkDrop account",
        "input_schema": {
            "type": "object",
            "properties": {
                "account_id": {"type": "string", "description": "Account ID"},
                "folder": {"type": "string", "description": "Folder path to list"},
                "type": {"type": "string", "enum": ["users", "agents", "shared"],
                         "description": "Filter by storage type"},
            },
            "required": ["account_id"],
        },
    },
    {
        "name": "search_files",
        "description": "Search for files in a DarkDrop account",
        "input_schema": {
            "type": "object",
            "properties": {
                "account_id": {"type": "string", "description": "Account ID"},
                "query": {"type": "string", "description": "Search query"},
            },
            "required": ["account_id", "query"],
        },
    },
    {
        "name": "delete_file",
        "description": "Delete a file from DarkDrop storage",
        "input_schema": {
            "type": "object",
            "properties": {"file_id": {"type": "string", "description": "File ID to delete"}},
            "required": ["file_id"],
        },
    },
    {
        "name": "share_file",
        "description": "Create a public share link for a file",
        "input_schema": {
            "type": "object",
            "properties": {"file_id": {"type": "string", "description": "File ID to share"}},
            "required": ["file_id"],
        },
    },
    {
        "name": "list_versions",
        "description": "List previous versions of a file",
        "input_schema": {
            "type": "object",
            "properties": {"file_id": {"type": "string"}},
            "required": ["file_id"],
        },
    },
    {
        "name": "restore_version",
        "description": "Restore a file to one of its previous versions",
        "input_schema": {
            "type": "object",
            "properties": {"file_id": {"type": "string"}, "version_id": {"type": "string"}},
            "required": ["file_id", "version_id"],
        },
    },
]


def _require(arguments: dict, key: str) -> Any:
    value = arguments.get(key)
    if value in (None, ""):
        raise ValidationError(f"Missing required argument: {key}")
    return value


def _file_out(db_file) -> dict:
    return schemas.FileOut.model_validate(db_file).model_dump(mode="json")


# ─── TOOL HANDLERS ────────────────────────────────────────

async def _upload_file(files: FileService, db: AsyncSession, identity: Identity, args: dict, ctx: dict):
    try:
        content = base64.b64decode(_require(args, "content_base64"), validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("content_base64 is not valid base64")
    result = await files.upload_file(
        db,
        _require(args, "account_id"),
        identity,
        content,
        original_name=_require(args, "filename"),
        mime_type=args.get("mime_type"),
        file_type=args.get("type"),
        folder=args.get("folder"),
        **ctx,
    )
    out = _file_out(result.file)
    out["version_number"] = result.version.version_number if result.version else None
    return out


async def _download_file(files: FileService, db: AsyncSession, identity: Identity, args: dict, ctx: dict):
    db_file, content = await files.download_file(db, _require(args, "file_id"), identity, **ctx)
    out = _file_out(db_file)
    out["content_base64"] = base64.b64encode(content).decode("ascii")
    return out


async def _list_files(files: FileService, db: AsyncSession, identity: Identity, args: dict, ctx: dict):
    found = await files.list_files(
        db, _require(args, "account_id"), identity, folder=args.get("folder"), file_type=args.get("type")
    )
    return [_file_out(f) for f in found]


async def _search_files(files: FileService, db: AsyncSession, identity: Identity, args: dict, ctx: dict):
    found = await files.search_files(db, _require(args, "account_id"), identity, _require(args, "query"))
    return [_file_out(f) for f in found]


async def _delete_file(files: FileService, db: AsyncSession, identity: Identity, args: dict, ctx: dict):
    file_id = _require(args, "file_id")
    await files.delete_file(db, file_id, identity, **ctx)
    return {"deleted": True, "file_id": file_id}


async def _share_file(files: FileService, db: AsyncSession, identity: Identity, args: dict, ctx: dict):
    db_file, public_url = await files.share_file(db, _require(args, "file_id"), identity, **ctx)
    return {"file_id": db_file.id, "public_url": public_url, "token": db_file.public_token}


async def _list_versions(files: FileService, db: AsyncSession, identity: Identity, args: dict, ctx: dict):
    versions = await files.list_versions(db, _require(args, "file_id"), identity)
    return [schemas.VersionOut.model_validate(v).model_dump(mode="json") for v in versions]


async def _restore_version(files: FileService, db: AsyncSession, identity: Identity, args: dict, ctx: dict):
    db_file = await files.restore_version(
        db, _require(args, "file_id"), _require(args, "version_id"), identity, **ctx
    )
    return _file_out(db_file)


HANDLERS = {
    "upload_file": _upload_file,
    "download_file": _download_file,
    "list_files": _list_files,
    "search_files": _search_files,
    "delete_file": _delete_file,
    "share_file": _share_file,
    "list_versions": _list_versions,
    "restore_version": _restore_version,
}


# ─── ROUTES ───────────────────────────────────────────────

@router.get("")
async def list_tools(identity: Identity = Depends(get_identity)):
    return {"tools": TOOLS}


@router.post("/call", response_model=schemas.ToolCallResponse)
async def call_tool(
    call: schemas.ToolCallRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_identity),
    files: FileService = Depends(get_file_service),
):
    handler = HANDLERS.get(call.name)
    if handler is None:
        raise NotFound(f"Unknown tool: {call.name}")
    ctx = {"ip_address": get_client_ip(request), "user_agent": get_user_agent(request)}
    result = await handler(files, db, identity, call.arguments, ctx)
    return {"tool": call.name, "result": result}
