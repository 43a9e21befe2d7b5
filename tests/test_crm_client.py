import json

import httpx
import pytest
import respx
from httpx import Response

from simcrm.crm_client import CrmClient, object_path
from simcrm.errors import ExternalPermanentError, ExternalRateLimitError, ExternalTransientError

BASE = "http://crm.test"


def test_object_path():
    assert object_path("Contact") == "contacts"
    assert object_path("companies") == "companies"
    with pytest.raises(ValueError):
        object_path("spaceship")


@pytest.mark.asyncio
async def test_create_record_payload_and_auth():
    client = CrmClient(BASE, "secret-token")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["headers"] = request.headers
                return Response(201, json={"id": "501", "properties": {"email": "a@b.io"}})

            respx_mock.post(f"{BASE}/crm/v3/objects/contacts").mock(side_effect=handler)
            created = await client.create_record("contact", {"email": "a@b.io"})
            assert created["id"] == "501"
            assert captured["json"] == {"properties": {"email": "a@b.io"}}
            assert captured["headers"]["Authorization"] == "Bearer secret-token"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_search_builds_equality_filter():
    client = CrmClient(BASE, "t")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(200, json={"total": 1, "results": [{"id": "9"}]})

            respx_mock.post(f"{BASE}/crm/v3/objects/companies/search").mock(side_effect=handler)
            results = await client.search_records("company", "domain", "hoth.io")
            assert results == [{"id": "9"}]
            assert captured["json"]["filterGroups"][0]["filters"][0] == {
                "propertyName": "domain",
                "operator": "EQ",
                "value": "hoth.io",
            }
            assert captured["json"]["limit"] == 2
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_associate_uses_v4_default_association():
    client = CrmClient(BASE, "t")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(200, json={"fromObjectId": 1})

            respx_mock.put(f"{BASE}/crm/v4/objects/deals/7/associations/contacts/8").mock(side_effect=handler)
            await client.associate("deal", "7", "contact", "8", 3)
            assert captured["json"] == [{"associationCategory": "HUBSPOT_DEFINED", "associationTypeId": 3}]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_missing_property_returns_none():
    client = CrmClient(BASE, "t")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(f"{BASE}/crm/v3/properties/contacts/favorite_ship").mock(
                return_value=Response(404, json={"message": "not found"})
            )
            assert await client.get_property("contact", "favorite_ship") is None
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_owners_and_pipelines():
    client = CrmClient(BASE, "t")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            owners = respx_mock.get(f"{BASE}/crm/v3/owners", params={"limit": "100"}).mock(
                return_value=Response(200, json={"results": [{"id": "77"}]})
            )
            respx_mock.get(f"{BASE}/crm/v3/pipelines/deals").mock(
                return_value=Response(200, json={"results": [{"id": "default", "stages": []}]})
            )
            assert await client.list_owners() == [{"id": "77"}]
            assert (await client.list_pipelines("deal"))[0]["id"] == "default"
            assert owners.called
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_rate_limit_maps_retry_after():
    client = CrmClient(BASE, "t")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(f"{BASE}/crm/v3/objects/deals").mock(
                return_value=Response(429, headers={"Retry-After": "12"}, json={"message": "slow down"})
            )
            with pytest.raises(ExternalRateLimitError) as excinfo:
                await client.create_record("deal", {"dealname": "x"})
            assert excinfo.value.retry_after_s == 12.0
            assert excinfo.value.retryable is True
            assert excinfo.value.context["detail"] == "slow down"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_status_classification():
    client = CrmClient(BASE, "t")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.patch(f"{BASE}/crm/v3/objects/deals/1").mock(return_value=Response(503, text="down"))
            respx_mock.patch(f"{BASE}/crm/v3/objects/deals/2").mock(
                return_value=Response(400, json={"message": "Property values were not valid"})
            )
            with pytest.raises(ExternalTransientError) as transient:
                await client.update_record("deal", "1", {"amount": 1})
            assert transient.value.status_code == 503
            with pytest.raises(ExternalPermanentError) as permanent:
                await client.update_record("deal", "2", {"amount": -1})
            assert permanent.value.code == "UPSTREAM_REJECTED"
            assert "not valid" in permanent.value.message
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_conflict_on_create_is_permanent():
    client = CrmClient(BASE, "t")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(f"{BASE}/crm/v3/objects/contacts").mock(
                return_value=Response(409, json={"message": "Contact already exists. Existing ID: 501"})
            )
            with pytest.raises(ExternalPermanentError) as excinfo:
                await client.create_record("contact", {"email": "ada@example.com"})
        assert excinfo.value.status_code == 409
        assert excinfo.value.retryable is False
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_transport_error_is_transient():
    client = CrmClient(BASE, "t")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(f"{BASE}/crm/v3/objects/notes").mock(side_effect=httpx.ConnectError("refused"))
            with pytest.raises(ExternalTransientError) as excinfo:
                await client.create_record("note", {"hs_note_body": "x"})
            assert excinfo.value.code == "TRANSPORT_ERROR"
    finally:
        await client.close()
