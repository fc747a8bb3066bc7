import json
import logging
from contextlib import asynccontextmanager

import httpx
import pytest

from hashmark.app.core.config import Settings
from hashmark.app.core.errors import UnclassifiedLedgerError
from hashmark.app.main import create_app
from hashmark.app.utils.hashing import EMPTY_DIGEST, compute_digest
from hashmark.tests.fixtures.fake_ledger import FakeLedgerGateway, FakeSigner
from hashmark.tests.fixtures.unhealthy_node import BAD_GATEWAY, unhealthy_rpc_node

pytestmark = pytest.mark.anyio


DIGEST = "deadbeef" * 8
CONTRACT = "0x" + "11" * 20
SERVER_WALLET = "0x" + "ab" * 20


def make_settings(**overrides):
    values = {
        "contract_address": CONTRACT,
        "frontend_url": "https://example.org/",
        "max_upload_size_mb": 1,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@asynccontextmanager
async def api_client(
    *,
    gateway=None,
    signer=None,
    settings=None,
    http_client=None,
):
    app = create_app(
        settings or make_settings(),
        gateway=gateway or FakeLedgerGateway(),
        server_signer=signer,
        http_client=http_client,
    )
    async with app.router.lifespan_context(app):
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app),
            base_url="http://testserver",
        ) as client:
            yield client


# ----------------------------------------------------------------------
# Monitoring
# ----------------------------------------------------------------------

async def test_health_and_info():
    async with api_client(signer=FakeSigner(SERVER_WALLET)) as client:
        health = await client.get("/api/health")
        info = await client.get("/api/info")

    assert health.status_code == 200
    assert health.json()["ok"] is True
    assert info.json() == {
        "contractAddress": CONTRACT,
        "rpcUrl": "http://127.0.0.1:8545/",
        "serverWallet": SERVER_WALLET,
        "serverSigning": True,
    }


async def test_cors_allows_only_configured_origins():
    settings = make_settings(cors_origins="https://app.example.org")

    async with api_client(settings=settings) as client:
        allowed = await client.options(
            "/api/stats",
            headers={
                "Origin": "https://app.example.org",
                "Access-Control-Request-Method": "GET",
            },
        )
        rejected = await client.options(
            "/api/stats",
            headers={
                "Origin": "https://evil.example.com",
                "Access-Control-Request-Method": "GET",
            },
        )

    assert allowed.status_code == 200
    assert (
        allowed.headers["access-control-allow-origin"]
        == "https://app.example.org"
    )
    assert "access-control-allow-origin" not in rejected.headers


# ----------------------------------------------------------------------
# Fingerprinting
# ----------------------------------------------------------------------

async def test_hash_file_returns_digest_and_metadata():
    payload = b"\x00\x01video-bytes\xff"

    async with api_client() as client:
        response = await client.post(
            "/api/hash/file",
            files={"file": ("clip.mp4", payload, "video/mp4")},
        )

    assert response.status_code == 200
    assert response.json() == {
        "hash": compute_digest(payload),
        "filename": "clip.mp4",
        "size": len(payload),
        "mimetype": "video/mp4",
    }


async def test_hash_file_accepts_empty_upload():
    async with api_client() as client:
        response = await client.post(
            "/api/hash/file",
            files={"file": ("empty.bin", b"", "application/octet-stream")},
        )

    assert response.json()["hash"] == EMPTY_DIGEST


async def test_hash_file_without_file_is_400():
    async with api_client() as client:
        response = await client.post("/api/hash/file")

    assert response.status_code == 400
    assert "file" in response.json()["error"]


async def test_hash_file_rejects_unsupported_media_type():
    async with api_client() as client:
        response = await client.post(
            "/api/hash/file",
            files={"file": ("notes.txt", b"hello", "text/plain")},
        )

    assert response.status_code == 415


async def test_hash_file_enforces_size_limit():
    too_large = b"x" * (1024 * 1024 + 1)

    async with api_client() as client:
        response = await client.post(
            "/api/hash/file",
            files={"file": ("big.mp4", too_large, "video/mp4")},
        )

    assert response.status_code == 413


async def test_hash_raw_trims_value():
    async with api_client() as client:
        response = await client.post("/api/hash/raw", json={"value": "  cid  "})

    assert response.status_code == 200
    assert response.json() == {"hash": compute_digest(b"cid")}


@pytest.mark.parametrize("body", [{}, {"value": "   "}, {"value": 42}])
async def test_hash_raw_rejects_missing_or_blank_value(body):
    async with api_client() as client:
        response = await client.post("/api/hash/raw", json=body)

    assert response.status_code == 400


async def test_malformed_json_body_is_400():
    async with api_client() as client:
        response = await client.post(
            "/api/hash/raw",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

    assert response.status_code == 400


# ----------------------------------------------------------------------
# Authentication
# ----------------------------------------------------------------------

async def test_authenticate_confirms_then_conflicts():
    gateway = FakeLedgerGateway()

    async with api_client(gateway=gateway, signer=FakeSigner(SERVER_WALLET)) as client:
        first = await client.post("/api/authenticate", json={"hash": DIGEST})
        second = await client.post("/api/authenticate", json={"hash": DIGEST})

    assert first.status_code == 200
    body = first.json()
    assert body["hash"] == DIGEST
    assert body["creator"] == SERVER_WALLET
    assert body["blockNumber"] > 0
    assert body["txHash"].startswith("0x")
    assert body["timestamp"] == gateway.records[DIGEST].block_timestamp

    assert second.status_code == 409
    assert second.json()["hash"] == DIGEST


async def test_authenticate_without_server_wallet_hints_client_signing():
    gateway = FakeLedgerGateway()

    async with api_client(gateway=gateway, signer=None) as client:
        response = await client.post("/api/authenticate", json={"hash": DIGEST})

    assert response.status_code == 503
    assert response.json()["clientSigning"] is True
    assert response.json()["contractAddress"] == CONTRACT
    assert gateway.broadcasts == []


async def test_authenticate_requires_hash():
    async with api_client(signer=FakeSigner()) as client:
        response = await client.post("/api/authenticate", json={"hash": "  "})

    assert response.status_code == 400


async def test_authenticate_reports_unconfirmed_transaction():
    gateway = FakeLedgerGateway(hold_confirmations=True)
    settings = make_settings(confirmation_timeout_seconds=0.05)

    async with api_client(
        gateway=gateway,
        signer=FakeSigner(),
        settings=settings,
    ) as client:
        response = await client.post("/api/authenticate", json={"hash": DIGEST})

    assert response.status_code == 504
    assert response.json()["txHash"] == gateway.broadcasts[0].transaction_id


def sse_frames(body: str):
    frames = []
    for block in body.strip().split("\n\n"):
        fields = dict(line.split(": ", 1) for line in block.splitlines())
        frames.append((fields["event"], json.loads(fields["data"])))
    return frames


async def test_authenticate_stream_reports_each_transition():
    gateway = FakeLedgerGateway()

    async with api_client(gateway=gateway, signer=FakeSigner(SERVER_WALLET)) as client:
        response = await client.post(
            "/api/authenticate/stream", json={"hash": DIGEST}
        )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")

    frames = sse_frames(response.text)
    assert [name for name, _ in frames] == [
        "workflow_started",
        "hashing_started",
        "digest_ready",
        "signing_capability_acquired",
        "submission_started",
        "transaction_broadcast",
        "workflow_confirmed",
    ]
    assert frames[-1][1]["details"]["tx_hash"] == (
        gateway.records[DIGEST].transaction_id
    )
    assert len({data["workflow_id"] for _, data in frames}) == 1


async def test_authenticate_stream_ends_with_failure_for_duplicates():
    gateway = FakeLedgerGateway()
    gateway.seed(DIGEST)

    async with api_client(gateway=gateway, signer=FakeSigner()) as client:
        response = await client.post(
            "/api/authenticate/stream", json={"hash": DIGEST}
        )

    name, data = sse_frames(response.text)[-1]
    assert name == "workflow_failed"
    assert data["details"]["failure_reason"] == "already_authenticated"


async def test_authenticate_stream_without_server_wallet_is_503():
    async with api_client(signer=None) as client:
        response = await client.post(
            "/api/authenticate/stream", json={"hash": DIGEST}
        )

    assert response.status_code == 503
    assert response.json()["clientSigning"] is True


# ----------------------------------------------------------------------
# Verification
# ----------------------------------------------------------------------

async def test_verify_found_and_not_found():
    gateway = FakeLedgerGateway()
    record = gateway.seed(DIGEST)

    async with api_client(gateway=gateway) as client:
        found = await client.get(f"/api/verify/{DIGEST}")
        missing = await client.get(f"/api/verify/{'00' * 32}")

    assert found.json() == {
        "authenticated": True,
        "creator": record.creator_address,
        "timestamp": record.block_timestamp,
        "hash": DIGEST,
    }
    assert missing.json() == {"authenticated": False, "hash": "00" * 32}


async def test_verify_offline_is_not_conflated_with_absence():
    gateway = FakeLedgerGateway()
    gateway.offline = True

    async with api_client(gateway=gateway) as client:
        response = await client.get(f"/api/verify/{DIGEST}")

    assert response.status_code == 503
    assert response.json()["offline"] is True
    assert "authenticated" not in response.json()


# ----------------------------------------------------------------------
# Listings
# ----------------------------------------------------------------------

async def test_stats_lists_five_most_recent():
    gateway = FakeLedgerGateway()
    for n in range(8):
        gateway.seed(f"{n:064x}")

    async with api_client(gateway=gateway) as client:
        response = await client.get("/api/stats")

    body = response.json()
    assert body["totalProofs"] == 8
    assert body["blockNumber"] == 8
    assert [p["videoHash"] for p in body["recentProofs"]] == [
        f"{n:064x}" for n in (7, 6, 5, 4, 3)
    ]
    assert set(body["recentProofs"][0]) == {
        "videoHash",
        "creator",
        "timestamp",
        "blockNumber",
        "txHash",
    }


async def test_stats_offline_degrades_to_zeros():
    gateway = FakeLedgerGateway()
    gateway.offline = True

    async with api_client(gateway=gateway) as client:
        response = await client.get("/api/stats")

    assert response.status_code == 200
    assert response.json() == {
        "totalProofs": 0,
        "recentProofs": [],
        "blockNumber": 0,
        "offline": True,
    }


@pytest.mark.parametrize(
    "query, expected",
    [("", 20), ("?limit=3", 3), ("?limit=500", 100), ("?limit=abc", 20)],
)
async def test_recent_limit_is_clamped(query, expected):
    gateway = FakeLedgerGateway()
    for n in range(120):
        gateway.seed(f"{n:064x}")

    async with api_client(gateway=gateway) as client:
        response = await client.get(f"/api/recent{query}")

    body = response.json()
    assert len(body["proofs"]) == expected
    assert body["total"] == 120
    heights = [p["blockNumber"] for p in body["proofs"]]
    assert heights == sorted(heights, reverse=True)


async def test_recent_offline_degrades_to_zeros():
    gateway = FakeLedgerGateway()
    gateway.offline = True

    async with api_client(gateway=gateway) as client:
        response = await client.get("/api/recent?limit=5")

    assert response.status_code == 200
    assert response.json() == {
        "proofs": [],
        "total": 0,
        "blockNumber": 0,
        "offline": True,
    }


class BrokenLedgerGateway(FakeLedgerGateway):
    async def list_recent_proofs(self, limit):
        raise UnclassifiedLedgerError(
            "Unexpected event log shape.",
            detail="KeyError('args')",
        )

    async def locate_proof(self, digest):
        raise UnclassifiedLedgerError("Ledger call failed.")


@pytest.mark.parametrize(
    "path, event",
    [
        ("/api/stats", "stats_failed"),
        ("/api/recent", "recent_failed"),
        (f"/api/certificate/{DIGEST}", "certificate_lookup_failed"),
    ],
)
async def test_unclassified_failures_are_500_and_logged_with_traceback(
    caplog, path, event
):
    caplog.set_level(logging.ERROR, logger="hashmark.api")

    async with api_client(gateway=BrokenLedgerGateway()) as client:
        response = await client.get(path)

    assert response.status_code == 500
    assert "KeyError" not in response.text

    records = [r for r in caplog.records if r.getMessage() == event]
    assert len(records) == 1
    assert records[0].exc_info is not None
    assert records[0].exc_info[0] is UnclassifiedLedgerError


@pytest.mark.parametrize(
    "response",
    [None, BAD_GATEWAY],
    ids=["connection_dropped", "bad_gateway"],
)
async def test_listings_degrade_when_real_node_is_unhealthy(response):
    async with unhealthy_rpc_node(response) as rpc_url:
        app = create_app(
            make_settings(rpc_url=rpc_url, read_retry_attempts=1),
            server_signer=None,
        )
        async with app.router.lifespan_context(app):
            async with httpx.AsyncClient(
                transport=httpx.ASGITransport(app=app),
                base_url="http://testserver",
            ) as client:
                stats = await client.get("/api/stats")
                listing = await client.get("/api/recent")

    assert stats.status_code == 200
    assert stats.json()["offline"] is True
    assert listing.status_code == 200
    assert listing.json()["offline"] is True


# ----------------------------------------------------------------------
# Artifacts
# ----------------------------------------------------------------------

async def test_qr_endpoint_builds_canonical_verify_url():
    async with api_client() as client:
        response = await client.get(f"/api/qr/{DIGEST}")

    body = response.json()
    assert body["verifyUrl"] == f"https://example.org/verify?hash={DIGEST}"
    assert body["qrDataUrl"].startswith("data:image/png;base64,")
    assert body["hash"] == DIGEST


async def test_certificate_json_download():
    gateway = FakeLedgerGateway()
    record = gateway.seed(DIGEST)

    async with api_client(gateway=gateway) as client:
        response = await client.get(f"/api/certificate/{DIGEST}")

    assert response.status_code == 200
    assert "attachment" in response.headers["content-disposition"]
    document = json.loads(response.content)
    assert document["txHash"] == record.transaction_id
    assert document["videoHash"] == f"sha256:{DIGEST}"
    assert document["block"] == record.block_height
    assert document["network"] == "Hardhat Local"
    assert document["issuance"]["authoritative"] is False


async def test_certificate_pdf_download():
    gateway = FakeLedgerGateway()
    gateway.seed(DIGEST)

    async with api_client(gateway=gateway) as client:
        response = await client.get(f"/api/certificate/{DIGEST}?format=pdf")

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert response.content.startswith(b"%PDF")


async def test_certificate_for_unknown_digest_is_404():
    async with api_client() as client:
        response = await client.get(f"/api/certificate/{DIGEST}")

    assert response.status_code == 404


# ----------------------------------------------------------------------
# Faucet
# ----------------------------------------------------------------------

async def test_faucet_is_disabled_by_default():
    async with api_client() as client:
        response = await client.post(
            "/api/faucet", json={"address": SERVER_WALLET}
        )

    assert response.status_code == 403


async def test_faucet_funds_address_on_local_node():
    calls = []

    def handler(request):
        calls.append(json.loads(request.content))
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": None})

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

    async with api_client(
        settings=make_settings(enable_faucet=True),
        http_client=http_client,
    ) as client:
        bad = await client.post("/api/faucet", json={"address": "0x123"})
        good = await client.post("/api/faucet", json={"address": SERVER_WALLET})

    await http_client.aclose()

    assert bad.status_code == 400
    assert good.json() == {
        "success": True,
        "address": SERVER_WALLET,
        "funded": "10 ETH",
    }
    assert calls == [
        {
            "jsonrpc": "2.0",
            "method": "anvil_setBalance",
            "params": [SERVER_WALLET, "0x8AC7230489E80000"],
            "id": 1,
        }
    ]
