"""Tests for the metadata-service and anchor clients against a local server."""

import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from govsync.common.config import Settings
from govsync.common.errors import PermanentUpstreamError
from govsync.integrations.anchors.client import AnchorClient
from govsync.integrations.cgov.client import CgovClient


@pytest.fixture
async def upstream():
    """Local metadata service plus two IPFS mirrors, the first one down."""
    hits = {"proposal": 0, "down": 0, "up": 0}
    in_flight = {"now": 0, "peak": 0}

    async def proposal(request):
        hits["proposal"] += 1
        if hits["proposal"] == 1:
            return web.json_response({"error": "busy"}, status=503)
        return web.json_response({"votes": [{"voterType": "drep", "voterId": "drep1", "txHash": "v1"}]})

    async def unknown(request):
        return web.json_response({"error": "not found"}, status=404)

    async def down(request):
        hits["down"] += 1
        return web.json_response({"error": "bad gateway"}, status=502)

    async def up(request):
        hits["up"] += 1
        in_flight["now"] += 1
        in_flight["peak"] = max(in_flight["peak"], in_flight["now"])
        await asyncio.sleep(0.02)
        in_flight["now"] -= 1
        if request.match_info["cid"] == "doc":
            return web.json_response({"body": {"comment": "Supports the roadmap."}})
        return web.Response(text="Plain rationale text.")

    app = web.Application()
    app.router.add_get("/api/proposal/{key}", proposal)
    app.router.add_get("/missing/{key}", unknown)
    app.router.add_get("/down/ipfs/{cid}", down)
    app.router.add_get("/up/ipfs/{cid}", up)
    server = TestServer(app)
    await server.start_server()
    server.hits = hits
    server.in_flight = in_flight
    server.base = f"http://{server.host}:{server.port}"
    yield server
    await server.close()


def client_settings(tmp_path, base: str, **overrides) -> Settings:
    fields = {
        "DATA_DIR": tmp_path,
        "CGOV_PROPOSAL_API_BASE": f"{base}/api/proposal",
        "CGOV_MAX_RETRIES": 2,
        "CGOV_REQUEST_DELAY": 0,
        "CGOV_BACKOFF_STEP": 0.01,
        "ANCHOR_MAX_RETRIES": 1,
        "ANCHOR_REQUEST_DELAY": 0,
        "ANCHOR_BACKOFF_STEP": 0.01,
        "IPFS_GATEWAYS": [f"{base}/down/ipfs/", f"{base}/up/ipfs/"],
    }
    fields.update(overrides)
    return Settings(**fields)


class TestCgovClient:
    """Tests for CgovClient."""

    @pytest.mark.asyncio
    async def test_busy_service_is_retried_then_memoised(self, upstream, tmp_path) -> None:
        """Test that a 503 is retried and the payload is then served from memory."""
        async with CgovClient(client_settings(tmp_path, upstream.base)) as client:
            payload = await client.get_proposal("P1TX", 0)
            again = await client.get_proposal("p1tx", 0)
        assert payload["votes"][0]["voterId"] == "drep1"
        assert again is payload
        assert upstream.hits["proposal"] == 2
        assert client.http.request_count == 2

    @pytest.mark.asyncio
    async def test_unaddressable_proposal_makes_no_request(self, upstream, tmp_path) -> None:
        """Test that a missing tx hash or cert index short-circuits."""
        async with CgovClient(client_settings(tmp_path, upstream.base)) as client:
            assert await client.get_proposal("", 0) is None
            assert await client.get_proposal("p1tx", None) is None
        assert upstream.hits["proposal"] == 0

    @pytest.mark.asyncio
    async def test_missing_proposal_is_permanent(self, upstream, tmp_path) -> None:
        """Test that a 404 from the service is raised without retrying."""
        config = client_settings(tmp_path, upstream.base, CGOV_PROPOSAL_API_BASE=f"{upstream.base}/missing")
        async with CgovClient(config) as client:
            with pytest.raises(PermanentUpstreamError):
                await client.get_proposal("p1tx", 0)
        assert client.http.request_count == 1


class TestAnchorClient:
    """Tests for AnchorClient."""

    @pytest.mark.asyncio
    async def test_mirrors_are_tried_in_order(self, upstream, tmp_path) -> None:
        """Test that a failing mirror is retried, then the next mirror answers."""
        async with AnchorClient(client_settings(tmp_path, upstream.base)) as client:
            payload = await client.fetch_payload("ipfs://notes")
        assert payload == "Plain rationale text."
        assert upstream.hits["down"] == 2
        assert upstream.hits["up"] == 1

    @pytest.mark.asyncio
    async def test_rationale_from_json_anchor(self, upstream, tmp_path) -> None:
        """Test that JSON anchors are parsed and memoised."""
        async with AnchorClient(client_settings(tmp_path, upstream.base, IPFS_GATEWAYS=[f"{upstream.base}/up/ipfs/"])) as client:
            first = await client.fetch_rationale("ipfs://doc")
            second = await client.fetch_rationale("ipfs://doc")
        assert first["text"] == "Supports the roadmap."
        assert second is first
        assert upstream.hits["up"] == 1

    @pytest.mark.asyncio
    async def test_no_mirror_answers(self, upstream, tmp_path) -> None:
        """Test that None comes back when every mirror fails."""
        config = client_settings(tmp_path, upstream.base, IPFS_GATEWAYS=[f"{upstream.base}/down/ipfs/"])
        async with AnchorClient(config) as client:
            assert await client.fetch_payload("ipfs://gone") is None
            assert await client.fetch_payload("not a url") is None
        assert upstream.hits["down"] == 2

    @pytest.mark.asyncio
    async def test_concurrent_fetches_share_the_cap(self, upstream, tmp_path) -> None:
        """Test that parallel anchor lookups respect ANCHOR_MAX_CONCURRENCY."""
        config = client_settings(
            tmp_path,
            upstream.base,
            IPFS_GATEWAYS=[f"{upstream.base}/up/ipfs/"],
            ANCHOR_MAX_CONCURRENCY=1,
        )
        async with AnchorClient(config) as client:
            payloads = await asyncio.gather(*(client.fetch_payload(f"ipfs://cid{n}") for n in range(4)))
        assert payloads == ["Plain rationale text."] * 4
        assert upstream.hits["up"] == 4
        assert upstream.in_flight["peak"] == 1
