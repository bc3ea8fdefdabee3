"""HTTP client for the HubSpot CRM API.

Thin wrapper over the endpoints the document pipeline needs:

- ``GET  /crm/v3/objects/{type}/{id}``         read a record's properties
- ``POST /crm/v3/objects/contacts/search``     search contacts
- ``GET  /crm/v3/properties/{type}``           list property descriptors
- ``POST /files/v3/files``                     upload a PDF
- ``POST /crm/v3/objects/notes``               attach an uploaded file to a record

Each call resolves a bearer token through ``HubSpotAuth`` first, so expired
tokens are refreshed transparently.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

import httpx

from app.config import get_settings
from app.core.exceptions import CrmApiError, CrmAuthError, CrmObjectNotFoundError
from app.integrations.hubspot.auth import HubSpotAuth
from app.models.document import CrmObjectType

settings = get_settings()
logger = logging.getLogger(__name__)

OBJECT_PATHS: dict[CrmObjectType, str] = {
    CrmObjectType.CONTACT: "contacts",
    CrmObjectType.DEAL: "deals",
    CrmObjectType.COMPANY: "companies",
    CrmObjectType.TICKET: "tickets",
}

# HubSpot-defined association type ids for note -> record
NOTE_ASSOCIATION_TYPES: dict[CrmObjectType, int] = {
    CrmObjectType.CONTACT: 202,
    CrmObjectType.COMPANY: 190,
    CrmObjectType.DEAL: 214,
    CrmObjectType.TICKET: 228,
}


@dataclass
class CrmObject:
    id: str
    properties: dict[str, Any] = field(default_factory=dict)
    created_at: str | None = None
    updated_at: str | None = None
    archived: bool = False

    @classmethod
    def from_api(cls, data: dict) -> "CrmObject":
        return cls(
            id=str(data.get("id", "")),
            properties=data.get("properties") or {},
            created_at=data.get("createdAt"),
            updated_at=data.get("updatedAt"),
            archived=bool(data.get("archived", False)),
        )


@dataclass
class UploadedFile:
    id: str
    url: str | None = None


@dataclass
class PropertyDescriptor:
    name: str
    label: str
    type: str
    field_type: str | None = None
    group_name: str | None = None
    description: str | None = None


class HubSpotClient:
    """REST client bound to a token provider."""

    def __init__(
        self,
        auth: HubSpotAuth,
        base_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.auth = auth
        self.base_url = (base_url or settings.hubspot_api_url).rstrip("/")
        self.timeout = timeout or settings.hubspot_timeout_seconds

    async def _request(
        self,
        tenant_id: UUID,
        method: str,
        endpoint: str,
        **kwargs: Any,
    ) -> httpx.Response:
        token = await self.auth.get_valid_access_token(tenant_id)
        headers = {"Authorization": f"Bearer {token}", **kwargs.pop("headers", {})}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(
                    method,
                    f"{self.base_url}{endpoint}",
                    headers=headers,
                    **kwargs,
                )
        except httpx.HTTPError as e:
            raise CrmApiError(f"HubSpot request {method} {endpoint} failed: {e}", retryable=True) from e

        if response.status_code == 404:
            raise CrmObjectNotFoundError(f"HubSpot resource not found: {endpoint}")
        if response.status_code in (401, 403):
            raise CrmAuthError(
                f"HubSpot denied {method} {endpoint} ({response.status_code})",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise CrmApiError(
                f"HubSpot {method} {endpoint} failed with status {response.status_code}: "
                f"{response.text[:300]}",
                status_code=response.status_code,
            )
        return response

    async def get_object(
        self,
        tenant_id: UUID,
        object_type: CrmObjectType,
        object_id: str,
        properties: list[str] | None = None,
    ) -> CrmObject:
        params = {"properties": ",".join(properties)} if properties else None
        response = await self._request(
            tenant_id,
            "GET",
            f"/crm/v3/objects/{OBJECT_PATHS[object_type]}/{object_id}",
            params=params,
        )
        return CrmObject.from_api(response.json())

    async def get_contact(self, tenant_id: UUID, contact_id: str, properties: list[str] | None = None) -> CrmObject:
        return await self.get_object(tenant_id, CrmObjectType.CONTACT, contact_id, properties)

    async def get_deal(self, tenant_id: UUID, deal_id: str, properties: list[str] | None = None) -> CrmObject:
        return await self.get_object(tenant_id, CrmObjectType.DEAL, deal_id, properties)

    async def get_company(self, tenant_id: UUID, company_id: str, properties: list[str] | None = None) -> CrmObject:
        return await self.get_object(tenant_id, CrmObjectType.COMPANY, company_id, properties)

    async def search_contacts(
        self,
        tenant_id: UUID,
        filters: list[dict] | None = None,
        properties: list[str] | None = None,
        limit: int = 10,
        query: str | None = None,
    ) -> list[CrmObject]:
        """Search contacts with HubSpot filter dicts ``{propertyName, operator, value}``."""
        body: dict[str, Any] = {"limit": limit}
        if filters:
            body["filterGroups"] = [{"filters": filters}]
        if properties:
            body["properties"] = properties
        if query:
            body["query"] = query
        response = await self._request(
            tenant_id,
            "POST",
            "/crm/v3/objects/contacts/search",
            json=body,
        )
        return [CrmObject.from_api(item) for item in response.json().get("results", [])]

    async def get_properties(
        self,
        tenant_id: UUID,
        object_type: CrmObjectType,
    ) -> list[PropertyDescriptor]:
        response = await self._request(
            tenant_id,
            "GET",
            f"/crm/v3/properties/{OBJECT_PATHS[object_type]}",
        )
        return [
            PropertyDescriptor(
                name=item["name"],
                label=item.get("label") or item["name"],
                type=item.get("type", "string"),
                field_type=item.get("fieldType"),
                group_name=item.get("groupName"),
                description=item.get("description"),
            )
            for item in response.json().get("results", [])
        ]

    async def upload_file(
        self,
        tenant_id: UUID,
        file_name: str,
        content: bytes,
        folder_path: str,
    ) -> UploadedFile:
        """Upload a PDF to the portal's file manager (private, no overwrite)."""
        options = {
            "access": "PRIVATE",
            "overwrite": False,
            "duplicateValidationStrategy": "NONE",
        }
        response = await self._request(
            tenant_id,
            "POST",
            "/files/v3/files",
            files={"file": (file_name, content, "application/pdf")},
            data={
                "folderPath": folder_path,
                "fileName": file_name,
                "options": json.dumps(options),
            },
        )
        data = response.json()
        logger.info("Uploaded %s to HubSpot folder %s (file %s)", file_name, folder_path, data.get("id"))
        return UploadedFile(id=str(data["id"]), url=data.get("url"))

    async def attach_file(
        self,
        tenant_id: UUID,
        file_id: str,
        object_type: CrmObjectType,
        object_id: str,
        note_body: str | None = None,
    ) -> str:
        """Attach ``file_id`` to a record through a note. Returns the note id."""
        body = {
            "properties": {
                "hs_timestamp": datetime.now(timezone.utc).isoformat(),
                "hs_note_body": note_body or "Documento PDF generado",
                "hs_attachment_ids": file_id,
            },
            "associations": [
                {
                    "to": {"id": object_id},
                    "types": [
                        {
                            "associationCategory": "HUBSPOT_DEFINED",
                            "associationTypeId": NOTE_ASSOCIATION_TYPES[object_type],
                        }
                    ],
                }
            ],
        }
        response = await self._request(tenant_id, "POST", "/crm/v3/objects/notes", json=body)
        note_id = str(response.json().get("id", ""))
        logger.info(
            "Attached HubSpot file %s to %s %s (note %s)",
            file_id,
            object_type.value,
            object_id,
            note_id,
        )
        return note_id
