"""HTTP surface tests with an injected faucet (no chain, no timers)."""

import pytest
from fastapi.testclient import TestClient

from app import Faucet, create_app
from drip_config import FaucetConfig
from erc20_issuer import DryRunIssuanceClient
from fakes import FailingIssuer, RecordingIssuer

ADDR = "0x52908400098527886e0f7030069857d2e4169ee7"
ADDR_CHECKSUM = "0x52908400098527886E0F7030069857D2E4169EE7"
OTHER = "0xde709f2102306220921060314715629080e2fb77"
OTHER_CHECKSUM = "0xde709f2102306220921060314715629080e2fb77"
ADMIN = {"Authorization": "Bearer s3cret"}


@pytest.fixture
def cfg() -> FaucetConfig:
    return FaucetConfig(dry_run=True, admin_token="s3cret")


@pytest.fixture
def issuer() -> RecordingIssuer:
    return RecordingIssuer()


@pytest.fixture
def faucet(cfg: FaucetConfig, issuer: RecordingIssuer) -> Faucet:
    return Faucet.build(cfg, issuer=issuer)


@pytest.fixture
def client(faucet: Faucet):
    with TestClient(create_app(faucet=faucet, run_schedulers=False)) as c:
        yield c


def test_drip_token_queues_request(client: TestClient, faucet: Faucet):
    r = client.post("/drip-token", json={"address": ADDR})

    assert r.status_code == 200
    assert r.json() == {"message": "Request added to the queue", "queued": 1}
    assert [req.address for req in faucet.queue.snapshot()] == [ADDR_CHECKSUM]


def test_drip_token_rejects_invalid_address(client: TestClient, faucet: Faucet):
    r = client.post("/drip-token", json={"address": "0x1234"})

    assert r.status_code == 400
    assert r.json() == {"detail": "Invalid wallet address"}
    assert len(faucet.queue) == 0


def test_drip_token_rejects_missing_address(client: TestClient):
    r = client.post("/drip-token", json={})

    assert r.status_code == 400


@pytest.mark.parametrize("address", [123, True, [ADDR], {"hex": ADDR}])
def test_drip_token_rejects_non_string_address(client: TestClient, faucet: Faucet, address):
    r = client.post("/drip-token", json={"address": address})

    assert r.status_code == 400
    assert r.json() == {"detail": "Invalid wallet address"}
    assert len(faucet.queue) == 0


def test_queue_snapshot(client: TestClient, faucet: Faucet):
    for addr in (ADDR, OTHER, ADDR):
        client.post("/drip-token", json={"address": addr})

    r = client.get("/queue")

    assert r.status_code == 200
    assert r.json() == {"total": 3, "addresses": {ADDR_CHECKSUM: 2, OTHER_CHECKSUM: 1}}
    # Read-only
    assert len(faucet.queue) == 3


def test_settle_requires_admin_token(client: TestClient):
    assert client.post("/settle").status_code == 401
    assert client.post("/settle", headers={"Authorization": "Bearer wrong"}).status_code == 401


def test_settle_disabled_without_admin_token(issuer: RecordingIssuer):
    faucet = Faucet.build(FaucetConfig(dry_run=True), issuer=issuer)
    with TestClient(create_app(faucet=faucet, run_schedulers=False)) as c:
        assert c.post("/settle", headers=ADMIN).status_code == 404


def test_settle_runs_one_cycle(client: TestClient, issuer: RecordingIssuer, faucet: Faucet):
    for addr in (ADDR, OTHER, ADDR):
        client.post("/drip-token", json={"address": addr})

    r = client.post("/settle", headers=ADMIN)

    assert r.status_code == 200
    body = r.json()
    assert body["skipped"] is False
    assert body["report"]["sent_amount"] == 3
    assert body["report"]["ok"] is True
    assert issuer.calls == [(ADDR_CHECKSUM, 2), (OTHER_CHECKSUM, 1)]
    assert len(faucet.queue) == 0


def test_settle_with_empty_queue(client: TestClient, issuer: RecordingIssuer):
    r = client.post("/settle", headers=ADMIN)

    assert r.json() == {"skipped": False, "report": None}
    assert issuer.calls == []


def test_settlements_history_and_stats(cfg: FaucetConfig):
    issuer = FailingIssuer(fail_for={ADDR_CHECKSUM})
    faucet = Faucet.build(cfg, issuer=issuer)
    with TestClient(create_app(faucet=faucet, run_schedulers=False)) as c:
        c.post("/drip-token", json={"address": ADDR})
        c.post("/drip-token", json={"address": OTHER})
        c.post("/drip-token", json={"address": "bogus"})
        c.post("/settle", headers=ADMIN)

        history = c.get("/settlements").json()
        stats = c.get("/stats").json()

    assert len(history) == 1
    assert [(o["address"], o["status"]) for o in history[0]["outcomes"]] == [
        (ADDR_CHECKSUM, "failed"),
        (OTHER_CHECKSUM, "abandoned"),
    ]
    assert history[0]["dropped_amount"] == 2
    assert stats["requests_accepted"] == 2
    assert stats["requests_rejected"] == 1
    assert stats["pending_requests"] == 0
    assert stats["settlement"]["transfers_failed"] == 1
    assert stats["settlement"]["tokens_dropped"] == 2


def test_config_endpoint(client: TestClient):
    body = client.get("/config").json()

    assert body == {
        "drip_amount": 1,
        "settlement_interval_sec": 20.0,
        "monitor_interval_sec": 5.0,
        "failure_policy": "abort",
        "issue_timeout_sec": 60.0,
        "dry_run": True,
    }


def test_not_ready_without_startup():
    app = create_app(cfg=FaucetConfig(dry_run=True), run_schedulers=False)
    c = TestClient(app)

    assert c.get("/queue").status_code == 503


def test_startup_builds_dry_run_faucet():
    app = create_app(cfg=FaucetConfig(dry_run=True), run_schedulers=False)
    with TestClient(app) as c:
        assert c.post("/drip-token", json={"address": ADDR}).status_code == 200
        assert isinstance(app.state.faucet.settlement.issuer, DryRunIssuanceClient)


def test_startup_starts_and_stops_periodic_tasks(faucet: Faucet):
    app = create_app(faucet=faucet, run_schedulers=True)
    with TestClient(app):
        names = [t.name for t in app.state.tasks]
        assert names == ["settlement", "monitor"]
        assert all(t.running for t in app.state.tasks)
    assert app.state.tasks == []


def test_cors_allows_configured_origin(client: TestClient):
    r = client.options(
        "/drip-token",
        headers={"Origin": "http://localhost:5173", "Access-Control-Request-Method": "POST"},
    )

    assert r.headers.get("access-control-allow-origin") == "http://localhost:5173"
