import httpx
import pytest

from mgit_server.nip05 import Nip05Error, fetch_nostr_json, validate_identifier

NOSTR_JSON = {"names": {"alice": "ab" * 32}, "relays": {"ab" * 32: ["wss://relay.example"]}}


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.parametrize(
    "domain,name",
    [("Example.COM", " Alice "), ("sub.example.org", "a.b_c-d")],
)
def test_validate_identifier_normalizes(domain, name):
    d, n = validate_identifier(domain, name)
    assert d == domain.strip().lower()
    assert n == name.strip().lower()


@pytest.mark.parametrize(
    "domain,name",
    [("localhost", "alice"), ("exa mple.com", "alice"), ("example.com/x", "alice"), ("example.com", "al ice"), ("example.com", "")],
)
def test_validate_identifier_rejects(domain, name):
    with pytest.raises(ValueError):
        validate_identifier(domain, name)


@pytest.mark.asyncio
async def test_fetch_passes_body_through():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=NOSTR_JSON)

    async with mock_client(handler) as client:
        data = await fetch_nostr_json("example.com", "Alice", client=client)

    assert data == NOSTR_JSON
    assert str(seen[0].url) == "https://example.com/.well-known/nostr.json?name=alice"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(404, text="nope"),
        httpx.Response(200, text="<html>"),
        httpx.Response(200, json=["not", "an", "object"]),
    ],
)
async def test_fetch_failures_raise_nip05_error(response):
    async with mock_client(lambda request: response) as client:
        with pytest.raises(Nip05Error):
            await fetch_nostr_json("example.com", "alice", client=client)


@pytest.mark.asyncio
async def test_transport_error_raises_nip05_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async with mock_client(handler) as client:
        with pytest.raises(Nip05Error):
            await fetch_nostr_json("example.com", "alice", client=client)


@pytest.mark.asyncio
async def test_caller_client_is_left_open():
    async with mock_client(lambda request: httpx.Response(200, json={})) as client:
        await fetch_nostr_json("example.com", "alice", client=client)
        assert not client.is_closed
