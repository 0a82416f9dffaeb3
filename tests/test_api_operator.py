from settlement.jobs.transitions import Failed
from settlement.models.db import AlertCategory, AlertSeverity, JobType
from settlement.models.schemas.jobs import PostTradePayload
from settlement.services.alerting import raise_operator_alert


def _enqueue(runtime, trade_factory) -> int:
    return runtime.store.enqueue(JobType.POST_TRADE, PostTradePayload.from_trade(trade_factory()))


def test_health_and_root(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["service"] == "settlement-ledger"
    assert r.headers["X-Request-ID"]
    assert "X-Process-Time" in r.headers

    root = client.get("/").json()
    assert root["api_base"] == "/api/v1"


def test_request_id_is_echoed(client):
    r = client.get("/health", headers={"X-Request-ID": "req-abc-123"})
    assert r.headers["X-Request-ID"] == "req-abc-123"


def test_detailed_health_reports_components(client):
    body = client.get("/health/detailed").json()
    assert body["checks"]["database"] == "healthy"
    assert body["checks"]["queue"]["health"] == "healthy"
    # aggregator has not run yet in this process
    assert body["checks"]["aggregator"] == "stale"
    assert body["status"] == "degraded"


def test_queue_stats_and_job_lookup(client, runtime, trade_factory):
    job_id = _enqueue(runtime, trade_factory)
    stats = client.get("/api/v1/queue/stats").json()["data"]
    assert stats["queue_depth"] == 1
    assert stats["worker"]["running"] is False

    job = client.get(f"/api/v1/queue/jobs/{job_id}").json()["data"]
    assert job["status"] == "pending"

    missing = client.get("/api/v1/queue/jobs/999999")
    assert missing.status_code == 404
    assert missing.json()["success"] is False


def test_dead_letter_requeue(client, runtime, trade_factory):
    live_id = _enqueue(runtime, trade_factory)
    assert client.post(f"/api/v1/queue/dead-letter/{live_id}/requeue").status_code == 409
    assert client.post("/api/v1/queue/dead-letter/424242/requeue").status_code == 404

    [job] = runtime.store.claim_batch(1)
    runtime.store.record_outcome(job, Failed("poison", retryable=False))
    listed = client.get("/api/v1/queue/dead-letter").json()["data"]
    assert [j["id"] for j in listed["jobs"]] == [job.id]

    r = client.post(f"/api/v1/queue/dead-letter/{job.id}/requeue")
    assert r.status_code == 200
    assert runtime.store.get_job(job.id).attempts == 0
    assert client.get("/api/v1/queue/dead-letter").json()["data"]["count"] == 0


def test_dead_letter_pagination_bounds(client):
    assert client.get("/api/v1/queue/dead-letter?limit=0").status_code == 400


def test_revenue_streams_and_aggregator(client, runtime):
    runtime.recorder.record_revenue("TRADING_FEES", "t-1", 100, user_id="u1")
    streams = client.get("/api/v1/revenue/streams").json()["data"]["streams"]
    assert len(streams) == 10
    trading = next(s for s in streams if s["name"] == "TRADING_FEES")
    assert trading["collected"] == 100
    assert trading["event_count"] == 1

    run = client.post("/api/v1/revenue/aggregator/run").json()
    assert run["message"] == "Aggregation complete"
    status = client.get("/api/v1/revenue/aggregator/status").json()["data"]
    assert status["last_run_at"] is not None

    heartbeat = client.get("/api/v1/revenue/heartbeat?window_minutes=30")
    assert heartbeat.status_code == 200
    assert client.get("/api/v1/revenue/heartbeat?window_minutes=0").status_code == 422


def test_onchain_endpoints(client):
    r = client.get("/api/v1/revenue/onchain/failures?stream_id=premium_subs")
    assert r.status_code == 200
    assert r.json()["data"]["summary"]["total_failures"] == 0

    bad = client.get("/api/v1/revenue/onchain/failures?stream_id=BOGUS")
    assert bad.status_code == 400
    assert "unknown revenue stream" in bad.json()["message"]

    status = client.get("/api/v1/revenue/onchain/status").json()["data"]
    assert status["max_retry_attempts"] == 5


def test_parameter_change_lifecycle(client):
    r = client.post(
        "/api/v1/defense/parameter-changes",
        json={"key": "taker_fee_bps", "new_value": 15, "requested_by": "ops@desk"},
    )
    assert r.status_code == 201
    change = r.json()["data"]
    assert change["status"] == "PENDING"
    assert change["old_value"] == 12.0

    listed = client.get("/api/v1/defense/parameter-changes").json()["data"]["changes"]
    assert [c["id"] for c in listed] == [change["id"]]

    # delay has not elapsed
    executed = client.post("/api/v1/defense/parameter-changes/execute").json()["data"]
    assert executed == {"processed": []}
    assert client.get("/api/v1/defense/parameters").json()["data"]["parameters"]["taker_fee_bps"] == 12.0

    cancelled = client.delete(f"/api/v1/defense/parameter-changes/{change['id']}")
    assert cancelled.status_code == 200
    assert cancelled.json()["data"]["status"] == "CANCELLED"
    assert client.delete(f"/api/v1/defense/parameter-changes/{change['id']}").status_code == 404


def test_parameter_change_over_cap_is_rejected(client):
    r = client.post(
        "/api/v1/defense/parameter-changes",
        json={"key": "taker_fee_bps", "new_value": 500, "requested_by": "ops@desk"},
    )
    assert r.status_code == 422
    body = r.json()
    assert body["success"] is False
    assert body["violations"][0]["param"] == "taker_fee_bps"
    assert client.get("/api/v1/alerts/?category=GOVERNANCE").json()["data"]["count"] == 1


def test_defense_checks_endpoint(client):
    r = client.get("/api/v1/defense/checks")
    assert r.status_code == 200
    assert set(r.json()["data"]["checks"]) == {"parameter_changes", "concentration", "negative_flows", "missing_events"}


def test_alert_filters(client):
    raise_operator_alert(AlertCategory.FRAUD, AlertSeverity.MEDIUM, "concentration")
    raise_operator_alert(AlertCategory.SYSTEM_HEALTH, AlertSeverity.CRITICAL, "exhausted")
    data = client.get("/api/v1/alerts/?severity=CRITICAL").json()["data"]
    assert [a["title"] for a in data["alerts"]] == ["exhausted"]
    assert client.get("/api/v1/alerts/?limit=1").json()["data"]["count"] == 1
    assert client.get("/api/v1/alerts/?category=nope").status_code == 422
