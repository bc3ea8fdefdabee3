"""Read-only HubSpot proxy used by the template editor's variable pickers."""

import logging
from dataclasses import asdict
from typing import Any, Awaitable

from fastapi import APIRouter, HTTPException, Query, status

from app.core.exceptions import CrmApiError, CrmAuthError
from app.deps import CrmClient, CurrentUser
from app.models.document import CrmObjectType

logger = logging.getLogger(__name__)

router = APIRouter()


async def _call(request: Awaitable[Any]) -> Any:
    """Await a CRM call, mapping CRM failures onto HTTP errors.

    Not-found errors propagate to the app's 404 handler.
    """
    try:
        return await request
    except CrmAuthError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"HubSpot connection unusable: {e}")
    except CrmApiError as e:
        logger.warning("HubSpot proxy call failed: %s", e)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="HubSpot request failed")


def _split(properties: str | None) -> list[str] | None:
    if not properties:
        return None
    return [name.strip() for name in properties.split(",") if name.strip()]


@router.get("/properties")
async def list_properties(
    user: CurrentUser,
    crm: CrmClient,
    object_type: CrmObjectType = Query(default=CrmObjectType.CONTACT, alias="object"),
) -> list[dict]:
    descriptors = await _call(crm.get_properties(user.tenant_id, object_type))
    return [asdict(d) for d in descriptors]


@router.get("/contacts")
async def search_contacts(
    user: CurrentUser,
    crm: CrmClient,
    search: str | None = None,
    properties: str | None = None,
    limit: int = Query(default=10, ge=1, le=100),
) -> list[dict]:
    contacts = await _call(
        crm.search_contacts(user.tenant_id, properties=_split(properties), limit=limit, query=search)
    )
    return [asdict(c) for c in contacts]


@router.get("/contacts/{contact_id}")
async def get_contact(contact_id: str, user: CurrentUser, crm: CrmClient, properties: str | None = None) -> dict:
    return asdict(await _call(crm.get_contact(user.tenant_id, contact_id, _split(properties))))


@router.get("/deals/{deal_id}")
async def get_deal(deal_id: str, user: CurrentUser, crm: CrmClient, properties: str | None = None) -> dict:
    return asdict(await _call(crm.get_deal(user.tenant_id, deal_id, _split(properties))))


@router.get("/companies/{company_id}")
async def get_company(company_id: str, user: CurrentUser, crm: CrmClient, properties: str | None = None) -> dict:
    return asdict(await _call(crm.get_company(user.tenant_id, company_id, _split(properties))))
