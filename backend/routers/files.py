# routers/files.py — Project files & folders on the configured storage backend
import os
import uuid
import logging
from typing import Iterable, Optional, List
from urllib.parse import quote

from fastapi import APIRouter, Depends, File as FastAPIFile, Form, Query, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from errors import AccessDenied, NotFound, ValidationFailed
from models import File, Folder, PermissionLevel
from permissions import project_access
from routers.users import ts
from storage import LocalStorageProvider, StorageError, StorageProvider, get_storage

logger = logging.getLogger("teamspace.files")

router = APIRouter(prefix="/api/v1/files", tags=["Files"])

MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(50 * 1024 * 1024)))
SIGNED_URL_TTL = int(os.getenv("SIGNED_URL_TTL", "3600"))


# --- Schemas ---

class FileOut(BaseModel):
    id: str
    project_id: str
    folder_id: Optional[str] = None
    name: str
    original_name: str
    mime_type: str
    size: int
    created_by: str
    created_at: Optional[str] = None


class FolderOut(BaseModel):
    id: str
    project_id: str
    name: str
    parent_id: Optional[str] = None
    created_by: str
    created_at: Optional[str] = None


class FolderCreate(BaseModel):
    project_id: str
    name: str = Field(..., min_length=1, max_length=255)
    parent_id: Optional[str] = None


class FolderRename(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class ProjectFilesOut(BaseModel):
    files: List[FileOut]
    folders: List[FolderOut]


# --- Helpers ---

def _file_to_out(f: File) -> FileOut:
    return FileOut(
        id=f.id,
        project_id=f.project_id,
        folder_id=f.folder_id,
        name=f.name,
        original_name=f.original_name,
        mime_type=f.mime_type,
        size=f.size or 0,
        created_by=f.created_by,
        created_at=ts(f.created_at),
    )


def _folder_to_out(f: Folder) -> FolderOut:
    return FolderOut(
        id=f.id, project_id=f.project_id, name=f.name, parent_id=f.parent_id,
        created_by=f.created_by, created_at=ts(f.created_at),
    )


def _content_disposition(filename: str) -> str:
    """Latin-1 safe header: ASCII fallback name plus the RFC 5987 UTF-8 form"""
    fallback = "".join(c if 32 <= ord(c) < 127 and c not in '"\\' else "_" for c in filename)
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


async def _get_file(db: AsyncSession, file_id: str) -> File:
    f = (await db.execute(select(File).where(File.id == file_id))).scalar_one_or_none()
    if not f:
        raise NotFound("File")
    return f


async def _get_folder(db: AsyncSession, folder_id: str) -> Folder:
    folder = (await db.execute(select(Folder).where(Folder.id == folder_id))).scalar_one_or_none()
    if not folder:
        raise NotFound("Folder")
    return folder


async def _folder_in_project(db: AsyncSession, folder_id: Optional[str], project_id: str) -> None:
    if folder_id is None:
        return
    folder = (await db.execute(select(Folder).where(Folder.id == folder_id))).scalar_one_or_none()
    if not folder or folder.project_id != project_id:
        raise ValidationFailed("Folder not found in this project")


async def _descendant_folder_ids(db: AsyncSession, folder_id: str) -> List[str]:
    """The folder itself plus every nested folder, deepest last"""
    ids, frontier = [folder_id], [folder_id]
    while frontier:
        children = (await db.execute(
            select(Folder.id).where(Folder.parent_id.in_(frontier))
        )).scalars().all()
        ids.extend(children)
        frontier = list(children)
    return ids


async def purge_objects(storage: StorageProvider, keys: Iterable[str]) -> None:
    """Delete stored objects whose rows are already gone; failures leave orphans, logged"""
    for key in keys:
        try:
            await run_in_threadpool(storage.delete, key)
        except StorageError:
            logger.warning(f"Orphaned storage object left behind: {key}", exc_info=True)


# ============================================================
# FILES
# ============================================================

@router.get("/project/{project_id}", response_model=ProjectFilesOut)
async def list_project_files(
    project_id: str,
    folder_id: Optional[str] = Query(None),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Files and folders at one level of the project tree (root when folder_id is omitted)"""
    await project_access.require(db, project_id, user.id, PermissionLevel.READ)

    file_stmt = select(File).where(File.project_id == project_id).order_by(File.name.asc())
    folder_stmt = select(Folder).where(Folder.project_id == project_id).order_by(Folder.name.asc())
    if folder_id:
        file_stmt = file_stmt.where(File.folder_id == folder_id)
        folder_stmt = folder_stmt.where(Folder.parent_id == folder_id)
    else:
        file_stmt = file_stmt.where(File.folder_id.is_(None))
        folder_stmt = folder_stmt.where(Folder.parent_id.is_(None))

    files = (await db.execute(file_stmt)).scalars().all()
    folders = (await db.execute(folder_stmt)).scalars().all()
    return ProjectFilesOut(
        files=[_file_to_out(f) for f in files],
        folders=[_folder_to_out(f) for f in folders],
    )


@router.post("/upload", response_model=FileOut, status_code=201)
async def upload_file(
    file: UploadFile = FastAPIFile(...),
    project_id: str = Form(...),
    folder_id: Optional[str] = Form(None),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    storage: StorageProvider = Depends(get_storage),
):
    await project_access.require(db, project_id, user.id, PermissionLevel.WRITE)
    await _folder_in_project(db, folder_id, project_id)

    data = await file.read()
    if len(data) > MAX_UPLOAD_BYTES:
        raise ValidationFailed(f"File exceeds the {MAX_UPLOAD_BYTES // (1024 * 1024)} MB limit")

    original_name = file.filename or "upload"
    ext = os.path.splitext(original_name)[1].lower()
    key = f"projects/{project_id}/{uuid.uuid4()}{ext}"
    mime_type = file.content_type or "application/octet-stream"

    uploaded = await run_in_threadpool(storage.upload, key, data, mime_type)

    record = File(
        project_id=project_id,
        folder_id=folder_id,
        name=original_name,
        original_name=original_name,
        storage_key=uploaded.key,
        mime_type=uploaded.mime_type,
        size=uploaded.size,
        created_by=user.id,
    )
    db.add(record)
    await db.commit()
    await db.refresh(record)
    logger.info(f"Uploaded file {record.id} ({record.size} bytes) to project {project_id}")
    return _file_to_out(record)


@router.get("/local/{key:path}")
async def download_signed_local(
    key: str,
    expires: int = Query(...),
    signature: str = Query(...),
    storage: StorageProvider = Depends(get_storage),
):
    """Serves URLs minted by the local backend's get_signed_url; the signature is the credential"""
    if not isinstance(storage, LocalStorageProvider):
        raise NotFound("File")
    if not storage.verify_signature(key, expires, signature):
        raise AccessDenied("Invalid or expired link")
    if not await run_in_threadpool(storage.exists, key):
        raise NotFound("File")
    return StreamingResponse(await run_in_threadpool(storage.stream, key), media_type="application/octet-stream")


@router.get("/{file_id}", response_model=FileOut)
async def get_file(
    file_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    f = await _get_file(db, file_id)
    await project_access.require(db, f.project_id, user.id, PermissionLevel.READ)
    return _file_to_out(f)


@router.get("/{file_id}/download")
async def download_file(
    file_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    storage: StorageProvider = Depends(get_storage),
):
    f = await _get_file(db, file_id)
    await project_access.require(db, f.project_id, user.id, PermissionLevel.READ)
    chunks = await run_in_threadpool(storage.stream, f.storage_key)
    return StreamingResponse(
        chunks,
        media_type=f.mime_type,
        headers={
            "Content-Disposition": _content_disposition(f.original_name),
            "Content-Length": str(f.size or 0),
        },
    )


@router.get("/{file_id}/url")
async def get_file_url(
    file_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    storage: StorageProvider = Depends(get_storage),
):
    f = await _get_file(db, file_id)
    await project_access.require(db, f.project_id, user.id, PermissionLevel.READ)
    url = await run_in_threadpool(storage.get_signed_url, f.storage_key, SIGNED_URL_TTL)
    return {"url": url, "expires_in": SIGNED_URL_TTL}


@router.delete("/{file_id}")
async def delete_file(
    file_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    storage: StorageProvider = Depends(get_storage),
):
    f = await _get_file(db, file_id)
    await project_access.require(db, f.project_id, user.id, PermissionLevel.WRITE)
    await run_in_threadpool(storage.delete, f.storage_key)
    await db.delete(f)
    await db.commit()
    return {"message": "File deleted successfully"}


# ============================================================
# FOLDERS
# ============================================================

@router.post("/folders", response_model=FolderOut, status_code=201)
async def create_folder(
    data: FolderCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await project_access.require(db, data.project_id, user.id, PermissionLevel.WRITE)
    await _folder_in_project(db, data.parent_id, data.project_id)

    folder = Folder(project_id=data.project_id, name=data.name.strip(), parent_id=data.parent_id, created_by=user.id)
    db.add(folder)
    await db.commit()
    await db.refresh(folder)
    return _folder_to_out(folder)


@router.put("/folders/{folder_id}", response_model=FolderOut)
async def rename_folder(
    folder_id: str,
    data: FolderRename,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    folder = await _get_folder(db, folder_id)
    await project_access.require(db, folder.project_id, user.id, PermissionLevel.WRITE)
    folder.name = data.name.strip()
    await db.commit()
    await db.refresh(folder)
    return _folder_to_out(folder)


@router.delete("/folders/{folder_id}")
async def delete_folder(
    folder_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    storage: StorageProvider = Depends(get_storage),
):
    """Delete a folder, its sub-folders and every file inside them"""
    folder = await _get_folder(db, folder_id)
    await project_access.require(db, folder.project_id, user.id, PermissionLevel.WRITE)

    folder_ids = await _descendant_folder_ids(db, folder_id)
    keys = (await db.execute(select(File.storage_key).where(File.folder_id.in_(folder_ids)))).scalars().all()

    await db.execute(delete(File).where(File.folder_id.in_(folder_ids)))
    for fid in reversed(folder_ids):
        await db.execute(delete(Folder).where(Folder.id == fid))
    await db.commit()

    await purge_objects(storage, keys)
    return {"message": "Folder deleted successfully", "files_deleted": len(keys)}
