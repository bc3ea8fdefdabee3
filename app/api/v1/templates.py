"""Template endpoints."""

from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from app.core.template_resolver import extract_variable_names
from app.deps import CurrentUser, DbSession
from app.models.document import Document
from app.models.template import Template
from app.schemas.template import (
    TemplateCreate,
    TemplateRead,
    TemplateUpdate,
    TemplateVariablesRead,
)
from app.services.audit import AuditAction, record_audit

router = APIRouter()


async def _get_template(db, template_id: UUID, tenant_id: UUID) -> Template:
    result = await db.execute(
        select(Template).where(Template.id == template_id, Template.tenant_id == tenant_id)
    )
    template = result.scalar_one_or_none()
    if not template:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Template not found",
        )
    return template


async def _name_taken(db, tenant_id: UUID, name: str, exclude_id: UUID | None = None) -> bool:
    query = select(Template.id).where(Template.tenant_id == tenant_id, Template.name == name)
    if exclude_id:
        query = query.where(Template.id != exclude_id)
    return (await db.execute(query)).first() is not None


def _name_conflict(name: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=f"A template named '{name}' already exists",
    )


@router.get("", response_model=list[TemplateRead])
async def list_templates(
    user: CurrentUser,
    db: DbSession,
    active_only: bool = False,
) -> list[Template]:
    query = select(Template).where(Template.tenant_id == user.tenant_id)
    if active_only:
        query = query.where(Template.is_active.is_(True))
    result = await db.execute(query.order_by(Template.name))
    return list(result.scalars().all())


@router.post("", response_model=TemplateRead, status_code=status.HTTP_201_CREATED)
async def create_template(
    data: TemplateCreate,
    user: CurrentUser,
    db: DbSession,
) -> Template:
    if await _name_taken(db, user.tenant_id, data.name):
        raise _name_conflict(data.name)

    template = Template(
        tenant_id=user.tenant_id,
        created_by_id=user.id,
        name=data.name,
        description=data.description,
        content=data.content,
        variables=[v.model_dump(mode="json") for v in data.variables],
        is_active=data.is_active,
    )
    db.add(template)
    await db.flush()
    record_audit(
        db,
        tenant_id=user.tenant_id,
        user_id=user.id,
        action=AuditAction.CREATE,
        entity_type="template",
        entity_id=template.id,
        new_values={"name": template.name},
    )
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise _name_conflict(data.name)
    await db.refresh(template)
    return template


@router.get("/{template_id}", response_model=TemplateRead)
async def get_template(
    template_id: UUID,
    user: CurrentUser,
    db: DbSession,
) -> Template:
    return await _get_template(db, template_id, user.tenant_id)


@router.get("/{template_id}/variables", response_model=TemplateVariablesRead)
async def get_template_variables(
    template_id: UUID,
    user: CurrentUser,
    db: DbSession,
) -> TemplateVariablesRead:
    """Placeholders used in the HTML, and which of them are not declared."""
    template = await _get_template(db, template_id, user.tenant_id)
    placeholders = extract_variable_names(template.content)
    declared = [v["name"] for v in template.variables or []]
    computed = {"current_date", "current_datetime", "current_year", "current_month"}
    return TemplateVariablesRead(
        placeholders=sorted(placeholders),
        declared=declared,
        undeclared=sorted(placeholders - set(declared) - computed),
    )


@router.put("/{template_id}", response_model=TemplateRead)
async def update_template(
    template_id: UUID,
    data: TemplateUpdate,
    user: CurrentUser,
    db: DbSession,
) -> Template:
    template = await _get_template(db, template_id, user.tenant_id)
    changes = data.model_dump(exclude_unset=True, mode="json")

    if "name" in changes and await _name_taken(db, user.tenant_id, changes["name"], exclude_id=template.id):
        raise _name_conflict(changes["name"])

    old_values = {key: getattr(template, key) for key in changes if key != "content"}
    for key, value in changes.items():
        setattr(template, key, value)

    record_audit(
        db,
        tenant_id=user.tenant_id,
        user_id=user.id,
        action=AuditAction.UPDATE,
        entity_type="template",
        entity_id=template.id,
        old_values=old_values,
        new_values={key: value for key, value in changes.items() if key != "content"},
    )
    await db.commit()
    await db.refresh(template)
    return template


@router.post("/{template_id}/duplicate", response_model=TemplateRead, status_code=status.HTTP_201_CREATED)
async def duplicate_template(
    template_id: UUID,
    user: CurrentUser,
    db: DbSession,
) -> Template:
    """Copy a template. The copy starts inactive."""
    source = await _get_template(db, template_id, user.tenant_id)

    name = f"{source.name} (copia)"
    suffix = 2
    while await _name_taken(db, user.tenant_id, name):
        name = f"{source.name} (copia {suffix})"
        suffix += 1

    copy = Template(
        tenant_id=user.tenant_id,
        created_by_id=user.id,
        name=name,
        description=source.description,
        content=source.content,
        variables=list(source.variables or []),
        is_active=False,
    )
    db.add(copy)
    await db.flush()
    record_audit(
        db,
        tenant_id=user.tenant_id,
        user_id=user.id,
        action=AuditAction.CREATE,
        entity_type="template",
        entity_id=copy.id,
        new_values={"name": copy.name, "duplicated_from": str(source.id)},
    )
    await db.commit()
    await db.refresh(copy)
    return copy


@router.delete("/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_template(
    template_id: UUID,
    user: CurrentUser,
    db: DbSession,
) -> None:
    """Delete a template that no document uses."""
    template = await _get_template(db, template_id, user.tenant_id)

    count = await db.scalar(
        select(func.count()).select_from(Document).where(Document.template_id == template.id)
    )
    if count:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Template is used by {count} document(s)",
        )

    record_audit(
        db,
        tenant_id=user.tenant_id,
        user_id=user.id,
        action=AuditAction.DELETE,
        entity_type="template",
        entity_id=template.id,
        old_values={"name": template.name},
    )
    await db.delete(template)
    await db.commit()
