from typing import Any, Dict, List, Optional

import httpx

from .http_utils import raise_for_external_status, transport_error

OBJECT_PATHS = {
    "contact": "contacts",
    "company": "companies",
    "deal": "deals",
    "ticket": "tickets",
    "note": "notes",
}


def object_path(record_type: str) -> str:
    key = str(record_type or "").strip().lower()
    if key in OBJECT_PATHS:
        return OBJECT_PATHS[key]
    if key in OBJECT_PATHS.values():
        return key
    raise ValueError(f"unsupported record type: {record_type}")


class CrmClient:
    """HubSpot-style CRM API client; every method maps failures onto External* errors."""

    provider = "crm"

    def __init__(self, base_url: str, access_token: Optional[str], timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.access_token)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        allow_not_found: bool = False,
    ) -> Optional[Dict[str, Any]]:
        url = f"{self.base_url}{path}"
        try:
            resp = await self.client.request(method, url, json=json_body, params=params, headers=self._headers())
        except httpx.RequestError as exc:
            raise transport_error(exc, self.provider) from exc
        if allow_not_found and resp.status_code == 404:
            return None
        raise_for_external_status(resp, self.provider, {"method": method, "path": path})
        if resp.status_code == 204 or not resp.content:
            return {}
        return resp.json()

    async def create_record(self, record_type: str, properties: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._request(
            "POST",
            f"/crm/v3/objects/{object_path(record_type)}",
            json_body={"properties": properties},
        )
        return data or {}

    async def update_record(self, record_type: str, record_id: str, properties: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._request(
            "PATCH",
            f"/crm/v3/objects/{object_path(record_type)}/{record_id}",
            json_body={"properties": properties},
        )
        return data or {}

    async def search_records(
        self,
        record_type: str,
        property_name: str,
        value: Any,
        *,
        limit: int = 2,
        properties: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        body: Dict[str, Any] = {
            "filterGroups": [
                {"filters": [{"propertyName": property_name, "operator": "EQ", "value": str(value)}]}
            ],
            "limit": limit,
        }
        if properties:
            body["properties"] = properties
        data = await self._request(
            "POST",
            f"/crm/v3/objects/{object_path(record_type)}/search",
            json_body=body,
        )
        return list((data or {}).get("results") or [])

    async def associate(
        self,
        from_type: str,
        from_id: str,
        to_type: str,
        to_id: str,
        association_type_id: int,
    ) -> Dict[str, Any]:
        data = await self._request(
            "PUT",
            f"/crm/v4/objects/{object_path(from_type)}/{from_id}/associations/{object_path(to_type)}/{to_id}",
            json_body=[{"associationCategory": "HUBSPOT_DEFINED", "associationTypeId": association_type_id}],
        )
        return data or {}

    async def get_property(self, record_type: str, name: str) -> Optional[Dict[str, Any]]:
        return await self._request(
            "GET",
            f"/crm/v3/properties/{object_path(record_type)}/{name}",
            allow_not_found=True,
        )

    async def create_property(self, record_type: str, definition: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._request(
            "POST",
            f"/crm/v3/properties/{object_path(record_type)}",
            json_body=definition,
        )
        return data or {}

    async def update_property(self, record_type: str, name: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._request(
            "PATCH",
            f"/crm/v3/properties/{object_path(record_type)}/{name}",
            json_body=patch,
        )
        return data or {}

    async def list_pipelines(self, record_type: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"/crm/v3/pipelines/{object_path(record_type)}")
        return list((data or {}).get("results") or [])

    async def list_owners(self, limit: int = 100) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/crm/v3/owners", params={"limit": limit})
        return list((data or {}).get("results") or [])

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
