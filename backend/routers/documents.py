"""
Documents Router — Project wiki pages
Tree of pages per project (parent + sort order), CRUD and bulk reordering.
Access follows the owning project's grants.
"""

from typing import Optional, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from errors import NotFound, ValidationFailed
from models import Document, PermissionLevel
from permissions import project_access
from routers.users import ts

router = APIRouter(prefix="/api/v1/documents", tags=["Documents"])


# ── Schemas ──────────────────────────────────────────────────

class DocumentCreate(BaseModel):
    project_id: str
    title: str = Field(..., min_length=1, max_length=500)
    content: Optional[str] = None
    parent_id: Optional[str] = None


class DocumentUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    content: Optional[str] = None
    parent_id: Optional[str] = None


class DocumentOut(BaseModel):
    id: str
    project_id: str
    title: str
    content: Optional[str] = None
    parent_id: Optional[str] = None
    sort_order: int = 0
    created_by: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ReorderItem(BaseModel):
    id: str
    sort_order: int = Field(..., ge=0)
    parent_id: Optional[str] = None


class DocumentReorder(BaseModel):
    items: List[ReorderItem] = Field(..., min_length=1)


# ── Helpers ──────────────────────────────────────────────────

def _doc_out(d: Document, with_content: bool = True) -> DocumentOut:
    return DocumentOut(
        id=d.id,
        project_id=d.project_id,
        title=d.title,
        content=d.content if with_content else None,
        parent_id=d.parent_id,
        sort_order=d.sort_order or 0,
        created_by=d.created_by,
        created_at=ts(d.created_at),
        updated_at=ts(d.updated_at),
    )


async def _get_document(db: AsyncSession, document_id: str) -> Document:
    doc = (await db.execute(select(Document).where(Document.id == document_id))).scalar_one_or_none()
    if not doc:
        raise NotFound("Document")
    return doc


async def _check_parent(db: AsyncSession, project_id: str, parent_id: Optional[str], moving_id: Optional[str] = None):
    """The parent must live in the same project and must not sit below the page being moved."""
    current = parent_id
    while current is not None:
        if current == moving_id:
            raise ValidationFailed("A document cannot be nested under itself")
        parent = (await db.execute(select(Document).where(Document.id == current))).scalar_one_or_none()
        if not parent or parent.project_id != project_id:
            raise ValidationFailed("Parent document not found in this project")
        current = parent.parent_id


# ── Endpoints ────────────────────────────────────────────────

@router.get("/project/{project_id}", response_model=List[DocumentOut])
async def list_project_documents(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Document tree of a project, without page bodies"""
    await project_access.require(db, project_id, user.id, PermissionLevel.READ)
    result = await db.execute(
        select(Document)
        .where(Document.project_id == project_id)
        .order_by(Document.sort_order.asc(), Document.created_at.asc())
    )
    return [_doc_out(d, with_content=False) for d in result.scalars().all()]


@router.post("", response_model=DocumentOut, status_code=201)
async def create_document(
    data: DocumentCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await project_access.require(db, data.project_id, user.id, PermissionLevel.WRITE)
    await _check_parent(db, data.project_id, data.parent_id)

    siblings = select(func.max(Document.sort_order)).where(Document.project_id == data.project_id)
    siblings = siblings.where(Document.parent_id == data.parent_id) if data.parent_id else \
        siblings.where(Document.parent_id.is_(None))
    last = (await db.execute(siblings)).scalar()

    doc = Document(
        project_id=data.project_id,
        title=data.title.strip(),
        content=data.content,
        parent_id=data.parent_id,
        sort_order=0 if last is None else last + 1,
        created_by=user.id,
    )
    db.add(doc)
    await db.commit()
    await db.refresh(doc)
    return _doc_out(doc)


@router.post("/reorder")
async def reorder_documents(
    data: DocumentReorder,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Apply sort order and parent changes to pages of a single project"""
    ids = [item.id for item in data.items]
    docs = {d.id: d for d in (await db.execute(select(Document).where(Document.id.in_(ids)))).scalars().all()}
    if len(docs) != len(set(ids)):
        raise NotFound("Document")
    project_ids = {d.project_id for d in docs.values()}
    if len(project_ids) != 1:
        raise ValidationFailed("Documents must belong to one project")
    project_id = project_ids.pop()
    await project_access.require(db, project_id, user.id, PermissionLevel.WRITE)

    for item in data.items:
        if item.parent_id != docs[item.id].parent_id:
            await _check_parent(db, project_id, item.parent_id, moving_id=item.id)
        docs[item.id].parent_id = item.parent_id
        docs[item.id].sort_order = item.sort_order
    await db.commit()
    return {"message": "Documents reordered", "count": len(data.items)}


@router.get("/{document_id}", response_model=DocumentOut)
async def get_document(
    document_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    doc = await _get_document(db, document_id)
    await project_access.require(db, doc.project_id, user.id, PermissionLevel.READ)
    return _doc_out(doc)


@router.put("/{document_id}", response_model=DocumentOut)
async def update_document(
    document_id: str,
    data: DocumentUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    doc = await _get_document(db, document_id)
    await project_access.require(db, doc.project_id, user.id, PermissionLevel.WRITE)

    if data.title is not None:
        doc.title = data.title.strip()
    if "content" in data.model_fields_set:
        doc.content = data.content
    if "parent_id" in data.model_fields_set and data.parent_id != doc.parent_id:
        await _check_parent(db, doc.project_id, data.parent_id, moving_id=doc.id)
        doc.parent_id = data.parent_id
    await db.commit()
    await db.refresh(doc)
    return _doc_out(doc)


@router.delete("/{document_id}")
async def delete_document(
    document_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a page; its children move up to the deleted page's parent"""
    doc = await _get_document(db, document_id)
    await project_access.require(db, doc.project_id, user.id, PermissionLevel.WRITE)

    await db.execute(
        update(Document).where(Document.parent_id == doc.id).values(parent_id=doc.parent_id)
    )
    await db.delete(doc)
    await db.commit()
    return {"message": "Document deleted successfully"}
