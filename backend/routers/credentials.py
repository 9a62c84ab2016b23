# routers/credentials.py — Encrypted project credentials (metadata only over the API)
import logging
from typing import Optional, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from encryption import encrypt
from errors import NotFound
from models import Credential, CredentialType, PermissionLevel
from permissions import project_access
from routers.users import ts

logger = logging.getLogger("teamspace.credentials")

router = APIRouter(prefix="/api/v1/credentials", tags=["Credentials"])


# --- Schemas ---

class CredentialCreate(BaseModel):
    project_id: str
    name: str = Field(..., min_length=1, max_length=200)
    value: str = Field(..., min_length=1, max_length=20000)
    type: CredentialType = CredentialType.OTHER
    description: Optional[str] = Field(default=None, max_length=2000)


class CredentialUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    value: Optional[str] = Field(default=None, min_length=1, max_length=20000)
    type: Optional[CredentialType] = None
    description: Optional[str] = Field(default=None, max_length=2000)


class CredentialOut(BaseModel):
    """Never carries the ciphertext or IV"""
    id: str
    project_id: str
    name: str
    type: str
    description: Optional[str] = None
    created_by: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


def _credential_out(c: Credential) -> CredentialOut:
    return CredentialOut(
        id=c.id,
        project_id=c.project_id,
        name=c.name,
        type=CredentialType(c.type).value,
        description=c.description,
        created_by=c.created_by,
        created_at=ts(c.created_at),
        updated_at=ts(c.updated_at),
    )


async def _get_credential(db: AsyncSession, credential_id: str) -> Credential:
    cred = (await db.execute(select(Credential).where(Credential.id == credential_id))).scalar_one_or_none()
    if not cred:
        raise NotFound("Credential")
    return cred


# --- Endpoints ---

@router.get("/project/{project_id}", response_model=List[CredentialOut])
async def list_project_credentials(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await project_access.require(db, project_id, user.id, PermissionLevel.READ)
    result = await db.execute(
        select(Credential).where(Credential.project_id == project_id).order_by(Credential.name.asc())
    )
    return [_credential_out(c) for c in result.scalars().all()]


@router.post("", response_model=CredentialOut, status_code=201)
async def create_credential(
    data: CredentialCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await project_access.require(db, data.project_id, user.id, PermissionLevel.WRITE)
    sealed = encrypt(data.value)
    cred = Credential(
        project_id=data.project_id,
        name=data.name.strip(),
        type=data.type,
        encrypted_value=sealed.encrypted,
        encryption_iv=sealed.iv,
        description=data.description,
        created_by=user.id,
    )
    db.add(cred)
    await db.commit()
    await db.refresh(cred)
    logger.info(f"Credential {cred.id} stored for project {data.project_id} by {user.id}")
    return _credential_out(cred)


@router.put("/{credential_id}", response_model=CredentialOut)
async def update_credential(
    credential_id: str,
    data: CredentialUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    cred = await _get_credential(db, credential_id)
    await project_access.require(db, cred.project_id, user.id, PermissionLevel.WRITE)

    if data.name is not None:
        cred.name = data.name.strip()
    if data.type is not None:
        cred.type = data.type
    if "description" in data.model_fields_set:
        cred.description = data.description
    if data.value is not None:
        sealed = encrypt(data.value)
        cred.encrypted_value = sealed.encrypted
        cred.encryption_iv = sealed.iv
    await db.commit()
    await db.refresh(cred)
    return _credential_out(cred)


@router.delete("/{credential_id}")
async def delete_credential(
    credential_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    cred = await _get_credential(db, credential_id)
    await project_access.require(db, cred.project_id, user.id, PermissionLevel.WRITE)
    await db.delete(cred)
    await db.commit()
    return {"message": "Credential deleted successfully"}
