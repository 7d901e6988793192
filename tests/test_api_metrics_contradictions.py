from __future__ import annotations

import pytest

from conftest import ENGAGEMENT_ID, VIEWER

BASE = f"/api/v1/engagements/{ENGAGEMENT_ID}"


@pytest.fixture
def contradiction(services) -> dict:
    return services.contradictions.create(
        engagement_id=ENGAGEMENT_ID,
        description="Management claims 3% churn but the cohort data shows 9%",
        severity="high",
    )


# Metrics


def test_record_metric_with_camel_case_alias(client):
    resp = client.post(f"{BASE}/metrics", json={"metricType": "overall_confidence", "value": 0.72})
    assert resp.status_code == 201
    stored = resp.json()["data"]
    assert stored["metric_type"] == "overall_confidence"
    assert stored["value"] == 0.72
    assert stored["id"].startswith("met_")


@pytest.mark.parametrize("value", [1.5, -0.1])
def test_metric_value_must_be_a_unit_fraction(client, value):
    resp = client.post(f"{BASE}/metrics", json={"metricType": "overall_confidence", "value": value})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "REQ_VALIDATION_FAILED"


def test_unknown_metric_type_is_rejected(client):
    resp = client.post(f"{BASE}/metrics", json={"metricType": "vibes", "value": 0.5})
    assert resp.status_code == 400


def test_metric_history_is_newest_first(client):
    for value in (0.1, 0.2, 0.3):
        client.post(f"{BASE}/metrics", json={"metricType": "hypothesis_coverage", "value": value})
    client.post(f"{BASE}/metrics", json={"metricType": "overall_confidence", "value": 0.9})

    resp = client.get(f"{BASE}/metrics/history", params={"metric_type": "hypothesis_coverage", "limit": 2})
    assert resp.status_code == 200
    assert [x["value"] for x in resp.json()["data"]["items"]] == [0.3, 0.2]

    latest = client.get(f"{BASE}/metrics/history").json()["data"]["items"]
    assert {x["metric_type"]: x["value"] for x in latest} == {"hypothesis_coverage": 0.3, "overall_confidence": 0.9}


@pytest.mark.parametrize("limit", [0, 201])
def test_metric_history_limit_bounds(client, limit):
    resp = client.get(f"{BASE}/metrics/history", params={"limit": limit})
    assert resp.status_code == 400


def test_calculate_records_every_metric(client, services):
    hypothesis = services.seed_hypothesis(engagement_id=ENGAGEMENT_ID, statement="Clinics retain 95% of clients", confidence=0.6)
    services.seed_evidence(
        engagement_id=ENGAGEMENT_ID,
        content="Client retention held at 96% over three years",
        credibility=0.8,
        sentiment="supporting",
        hypothesis_ids=[hypothesis["id"]],
    )

    resp = client.post(f"{BASE}/metrics/calculate")
    assert resp.status_code == 201
    metrics = resp.json()["data"]["metrics"]
    assert len(metrics) == 7
    assert metrics["hypothesis_coverage"] == 1.0
    assert metrics["evidence_credibility_avg"] == 0.8
    assert metrics["contradiction_resolution_rate"] == 1.0
    assert all(0.0 <= v <= 1.0 for v in metrics.values())

    quality = client.get(f"{BASE}/metrics", subject=VIEWER).json()["data"]
    assert quality["metrics"]["hypothesis_coverage"] == 1.0
    assert quality["evidence_count"] == 1
    assert quality["hypothesis_count"] == 1
    assert quality["last_calculated_at"] is not None


def test_quality_before_any_calculation(client):
    quality = client.get(f"{BASE}/metrics").json()["data"]
    assert set(quality["metrics"].values()) == {None}
    assert quality["last_calculated_at"] is None


# Contradictions


def test_list_and_filter_contradictions(client, contradiction, services):
    services.contradictions.create(engagement_id=ENGAGEMENT_ID, description="Pricing deck conflicts", severity="low")

    items = client.get(f"{BASE}/contradictions").json()["data"]["items"]
    assert len(items) == 2
    high = client.get(f"{BASE}/contradictions", params={"severity": "high"}).json()["data"]["items"]
    assert [x["id"] for x in high] == [contradiction["id"]]
    assert client.get(f"{BASE}/contradictions", params={"status": "open"}).status_code == 400


def test_resolution_notes_must_be_substantive(client, contradiction):
    resp = client.post(
        f"{BASE}/contradictions/{contradiction['id']}/resolve",
        json={"status": "explained", "resolutionNotes": "ok fine"},
    )
    assert resp.status_code == 400
    assert "at least 10" in resp.json()["error"]["message"]


def test_resolve_then_conflict(client, contradiction):
    url = f"{BASE}/contradictions/{contradiction['id']}/resolve"
    payload = {"status": "explained", "resolutionNotes": "Churn figure excluded acquired clinics"}

    resp = client.post(url, json=payload)
    assert resp.status_code == 200
    resolved = resp.json()["data"]
    assert resolved["status"] == "explained"
    assert resolved["resolved_by"] == "user_editor"
    assert resolved["resolved_at"] is not None

    again = client.post(url, json={**payload, "status": "dismissed"})
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "CONTRADICTION_ALREADY_RESOLVED"

    critical = client.post(f"{BASE}/contradictions/{contradiction['id']}/critical")
    assert critical.status_code == 409


def test_critical_contradiction_can_still_be_resolved(client, contradiction):
    critical = client.post(f"{BASE}/contradictions/{contradiction['id']}/critical")
    assert critical.status_code == 200
    assert critical.json()["data"]["status"] == "critical"

    resp = client.post(
        f"{BASE}/contradictions/{contradiction['id']}/resolve",
        json={"status": "dismissed", "resolutionNotes": "Source was a stale broker note"},
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "dismissed"


def test_contradiction_stats(client, contradiction, services):
    services.contradictions.create(engagement_id=ENGAGEMENT_ID, description="Capex guidance mismatch", severity="medium")
    client.post(
        f"{BASE}/contradictions/{contradiction['id']}/resolve",
        json={"status": "explained", "resolutionNotes": "Reconciled against the audited cohort file"},
    )

    stats = client.get(f"{BASE}/contradictions/stats").json()["data"]
    assert stats["total_count"] == 2
    assert stats["by_severity"] == {"low": 0, "medium": 1, "high": 1}
    assert stats["by_status"]["explained"] == 1
    assert stats["resolution_rate"] == 0.5


def test_unknown_contradiction_is_not_found(client):
    resp = client.get(f"{BASE}/contradictions/ctr_missing")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "CONTRADICTION_NOT_FOUND"
