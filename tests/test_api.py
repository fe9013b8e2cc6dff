"""API tests against the FastAPI app with test-database overrides."""

import warnings

import httpx
import pytest

from demand_engine.api.deps import (
    get_boost_registry,
    get_database,
    get_demand_queue,
    get_demand_store,
    http_error,
)
from demand_engine.config import settings
from demand_engine.errors import ConcurrencyConflict, InvalidCorrection
from demand_engine.main import app

ADMIN = {"X-Admin-API-Key": "test-admin-key"}


@pytest.fixture
async def client(session_factory, store, queue, boost_registry, monkeypatch):
    """HTTP client wired to the per-test database."""
    monkeypatch.setattr(settings, "admin_api_key", "test-admin-key")

    async def get_test_database():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_database] = get_test_database
    app.dependency_overrides[get_demand_store] = lambda: store
    app.dependency_overrides[get_demand_queue] = lambda: queue
    app.dependency_overrides[get_boost_registry] = lambda: boost_registry

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _event(**overrides) -> dict:
    body = {"barcode": "012345", "event_type": "scan", "voter_key": "voter-1"}
    body.update(overrides)
    return body


class TestDemandAPI:
    @pytest.mark.asyncio
    async def test_submit_scan(self, client):
        response = await client.post("/api/demand/events", json=_event())
        assert response.status_code == 200

        data = response.json()
        assert data["vote_registered"] is True
        assert data["weighted_total"] == 5
        assert data["your_vote_rank"] == 1
        assert data["funding_progress"] == 1
        assert "Your scan counts 5x" in data["message"]


    @pytest.mark.asyncio
    async def test_member_scan_from_non_member_reports_scan(self, client):
        response = await client.post("/api/demand/events", json=_event(event_type="member_scan"))
        assert response.status_code == 200

        data = response.json()
        assert data["event_type"] == "scan"
        assert data["weight_applied"] == 5

        member = await client.post(
            "/api/demand/events",
            json=_event(event_type="member_scan", voter_key="voter-2", is_member=True),
        )
        assert member.json()["event_type"] == "member_scan"
        assert member.json()["weight_applied"] == 20
    @pytest.mark.asyncio
    async def test_unknown_event_type_is_422(self, client):
        response = await client.post("/api/demand/events", json=_event(event_type="like"))
        assert response.status_code == 422

        missing = await client.get("/api/demand/012345")
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_photo_without_submission_is_422(self, client):
        response = await client.post(
            "/api/demand/events", json=_event(event_type="photo_contribution")
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_duplicate_photo_acknowledged(self, client):
        body = _event(event_type="photo_contribution", submission_id="sub-1")
        await client.post("/api/demand/events", json=body)
        response = await client.post("/api/demand/events", json=body)

        assert response.status_code == 200
        assert response.json()["duplicate"] is True
        assert response.json()["weighted_total"] == 10

    @pytest.mark.asyncio
    async def test_record_view_hides_internal_fields(self, client):
        await client.post(
            "/api/demand/events",
            json=_event(product={"product_name": "Oat Milk", "brand": "Oatly"}),
        )
        response = await client.get("/api/demand/012345")
        assert response.status_code == 200

        data = response.json()
        assert data["product_name"] == "Oat Milk"
        assert data["funding_progress_percent"] == 1
        for internal in ("version_id", "last_trending_notification_at", "last_notified_tier"):
            assert internal not in data

    @pytest.mark.asyncio
    async def test_contributors_and_investigations(self, client):
        await client.post("/api/demand/events", json=_event(voter_key="alice"))
        await client.post("/api/demand/events", json=_event(voter_key="bob"))

        ledger = (await client.get("/api/demand/012345/contributors")).json()
        assert ledger["first_scout_key"] == "alice"
        assert [c["voter_key"] for c in ledger["contributors"]] == ["alice", "bob"]

        cases = (await client.get("/api/demand/voters/bob/investigations")).json()
        assert len(cases) == 1
        assert cases[0]["your_vote_rank"] == 2
        assert cases[0]["queue_position"] == 1

    @pytest.mark.asyncio
    async def test_queue_and_requests(self, client):
        await client.post("/api/demand/events", json=_event(barcode="111"))
        await client.post("/api/demand/events", json=_event(barcode="222", event_type="search"))

        queue = (await client.get("/api/demand/queue")).json()
        assert queue["total"] == 2
        assert [r["barcode"] for r in queue["items"]] == ["111", "222"]

        requests = await client.get("/api/demand/requests", params={"sort": "newest"})
        assert requests.status_code == 200

        bad = await client.get("/api/demand/requests", params={"sort": "random"})
        assert bad.status_code == 422

    @pytest.mark.asyncio
    async def test_concurrency_conflict_is_503(self, client, store, monkeypatch):
        async def always_conflicts(event):
            raise ConcurrencyConflict(event.barcode, attempts=5)

        monkeypatch.setattr(store, "apply_event", always_conflicts)
        response = await client.post("/api/demand/events", json=_event())

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "1"


class TestBoostsAPI:
    @pytest.mark.asyncio
    async def test_requires_admin_key(self, client):
        response = await client.get("/api/boosts", headers={"X-Admin-API-Key": "wrong"})
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_boost_lifecycle_affects_weights(self, client):
        created = await client.post(
            "/api/boosts",
            json={"category_label": "Snacks", "keywords": ["chips"], "multiplier": 3},
            headers=ADMIN,
        )
        assert created.status_code == 201
        boost_id = created.json()["id"]

        active = (await client.get("/api/boosts/active")).json()
        assert [b["category_label"] for b in active] == ["Snacks"]

        scan = await client.post(
            "/api/demand/events", json=_event(product={"product_name": "Salt & Vinegar Chips"})
        )
        assert scan.json()["weight_applied"] == 15

        updated = await client.patch(
            f"/api/boosts/{boost_id}", json={"is_active": False}, headers=ADMIN
        )
        assert updated.status_code == 200
        assert (await client.get("/api/boosts/active")).json() == []

        deleted = await client.delete(f"/api/boosts/{boost_id}", headers=ADMIN)
        assert deleted.status_code == 204

    @pytest.mark.asyncio
    async def test_multiplier_out_of_range(self, client):
        response = await client.post(
            "/api/boosts", json={"category_label": "Snacks", "multiplier": 25}, headers=ADMIN
        )
        assert response.status_code == 422


class TestLabAPI:
    @pytest.mark.asyncio
    async def test_lab_flow(self, client, monkeypatch):
        monkeypatch.setattr(settings, "default_funding_threshold", 10.0)
        await client.post("/api/demand/events", json=_event(voter_key="a"))
        await client.post("/api/demand/events", json=_event(voter_key="b"))

        skipped = await client.post(
            "/api/lab/012345/advance", json={"to_status": "testing"}, headers=ADMIN
        )
        assert skipped.status_code == 409

        for status in ("queued", "testing", "complete"):
            response = await client.post(
                "/api/lab/012345/advance", json={"to_status": status}, headers=ADMIN
            )
            assert response.status_code == 200
            assert response.json()["status"] == status

        linked = await client.post(
            "/api/lab/012345/link", json={"product_id": "prod-42"}, headers=ADMIN
        )
        assert linked.status_code == 200

        history = (await client.get("/api/lab/012345/history", headers=ADMIN)).json()
        assert [h["to_status"] for h in history][-1] == "complete"

    @pytest.mark.asyncio
    async def test_admin_correction_and_override(self, client):
        await client.post("/api/demand/events", json=_event())

        corrected = await client.post(
            "/api/lab/012345/correction",
            json={"weighted_total": 2, "actor": "admin", "reason": "duplicate device"},
            headers=ADMIN,
        )
        assert corrected.json()["weighted_total"] == 2

        negative = await client.post(
            "/api/lab/012345/correction",
            json={"weighted_total": -5, "actor": "admin"},
            headers=ADMIN,
        )
        assert negative.status_code == 422

        override = await client.post(
            "/api/lab/012345/override",
            json={"to_status": "queued", "actor": "admin", "reason": "sponsor request"},
            headers=ADMIN,
        )
        assert override.status_code == 200
        assert override.json()["status"] == "queued"

    @pytest.mark.asyncio
    async def test_unknown_barcode_is_404(self, client):
        response = await client.post(
            "/api/lab/nope/advance", json={"to_status": "queued"}, headers=ADMIN
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_lab_requires_admin_key(self, client):
        response = await client.get("/api/lab/012345/history")
        assert response.status_code == 422


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_validation_errors_map_to_422_without_warnings():
    with warnings.catch_warnings():
        warnings.simplefilter("error", DeprecationWarning)
        error = http_error(InvalidCorrection("weighted_total must be >= 0"))
    assert error.status_code == 422
