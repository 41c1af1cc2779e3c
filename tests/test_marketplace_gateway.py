import json

import httpx
import pytest

from delisting_hub.services.errors import ErrorKind
from delisting_hub.services.http_client import ConnectorHttpClient, classify_status
from delisting_hub.services.marketplace_gateway import DELIST_REASON, HttpMarketplaceGateway


def _gateway(handler) -> HttpMarketplaceGateway:
    client = ConnectorHttpClient(
        base_url="http://connectors.test",
        default_headers={"Authorization": "Bearer t0k"},
        transport=httpx.MockTransport(handler),
    )
    return HttpMarketplaceGateway(client)


@pytest.mark.asyncio
async def test_delist_posts_end_request():
    seen = {}

    def handler(request: httpx.Request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers["authorization"]
        return httpx.Response(200, json={"ended": True})

    gw = _gateway(handler)
    res = await gw.delist(marketplace="poshmark", external_listing_id="pm-123")
    await gw.aclose()

    assert res.ok
    assert res.detail == {"ended": True}
    assert seen == {
        "path": "/marketplaces/poshmark/listings/pm-123/end",
        "body": {"reason": DELIST_REASON},
        "auth": "Bearer t0k",
    }


@pytest.mark.asyncio
@pytest.mark.parametrize("status,kind,retryable", [
    (429, ErrorKind.RATE_LIMITED, True),
    (503, ErrorKind.API_UNAVAILABLE, True),
    (401, ErrorKind.TOKEN_EXPIRED, False),
    (403, ErrorKind.INSUFFICIENT_PERMISSIONS, False),
    (404, ErrorKind.LISTING_NOT_FOUND, False),
    (409, ErrorKind.LISTING_ALREADY_ENDED, False),
    (400, ErrorKind.INVALID_REQUEST, False),
])
async def test_http_failures_are_classified(status, kind, retryable):
    gw = _gateway(lambda request: httpx.Response(status, json={"message": "nope"}))
    res = await gw.delist(marketplace="ebay", external_listing_id="e-1")
    await gw.aclose()

    assert not res.ok
    assert res.error_kind == kind
    assert res.retryable is retryable
    assert res.error_message == "nope"


@pytest.mark.asyncio
async def test_connection_errors_are_retryable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    gw = _gateway(handler)
    res = await gw.delist(marketplace="ebay", external_listing_id="e-1")
    await gw.aclose()

    assert res.error_kind == ErrorKind.NETWORK_ERROR
    assert res.retryable


@pytest.mark.asyncio
async def test_timeouts_are_retryable():
    def handler(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    gw = _gateway(handler)
    res = await gw.confirm_sale(marketplace="ebay", external_listing_id="e-1", external_transaction_id="t-1")
    await gw.aclose()

    assert res.error_kind == ErrorKind.TIMEOUT
    assert res.retryable


@pytest.mark.asyncio
async def test_delist_without_external_id_never_calls_out():
    calls = []
    gw = _gateway(lambda request: calls.append(request) or httpx.Response(200, json={}))
    res = await gw.delist(marketplace="depop", external_listing_id=None)
    await gw.aclose()

    assert res.error_kind == ErrorKind.INVALID_REQUEST
    assert calls == []


@pytest.mark.asyncio
async def test_unconfirmed_sale_is_a_verification_failure():
    gw = _gateway(lambda request: httpx.Response(200, json={"confirmed": False, "reason": "order cancelled"}))
    res = await gw.confirm_sale(marketplace="ebay", external_listing_id="e-1", external_transaction_id="t-1")
    await gw.aclose()

    assert not res.ok
    assert res.error_kind == ErrorKind.VERIFICATION_FAILED
    assert res.error_message == "order cancelled"


@pytest.mark.asyncio
async def test_confirmed_sale():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        return httpx.Response(200, json={"confirmed": True})

    gw = _gateway(handler)
    res = await gw.confirm_sale(marketplace="mercari", external_listing_id="m-1", external_transaction_id="t-9")
    await gw.aclose()

    assert res.ok
    assert seen["path"] == "/marketplaces/mercari/sales/confirm"


def test_status_classification_edges():
    assert classify_status(502) == ErrorKind.API_UNAVAILABLE
    assert classify_status(408) == ErrorKind.TIMEOUT
    assert classify_status(422) == ErrorKind.LISTING_CANNOT_BE_ENDED


@pytest.mark.asyncio
async def test_non_json_error_body_is_kept_as_text():
    gw = _gateway(lambda request: httpx.Response(502, text="<html>Bad gateway</html>"))
    res = await gw.delist(marketplace="vinted", external_listing_id="v-1")
    await gw.aclose()

    assert res.error_kind == ErrorKind.API_UNAVAILABLE
    assert res.detail == {"raw": "<html>Bad gateway</html>"}
    assert res.error_message == "HTTP 502"


@pytest.mark.asyncio
async def test_preloaded_responses_still_report_duration():
    gw = _gateway(lambda request: httpx.Response(409, json={"message": "already ended"}))
    res = await gw.delist(marketplace="grailed", external_listing_id="g-1")
    await gw.aclose()

    assert res.error_kind == ErrorKind.LISTING_ALREADY_ENDED
    assert isinstance(res.duration_ms, int) and res.duration_ms >= 0
