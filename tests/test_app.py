"""
HTTP API tests.

Requests go through httpx.ASGITransport against an app wired to the per-test
SQLite database, the in-memory queue and a temp-dir blob store. No scheduler
runs here, so submitted jobs stay PENDING.
"""

from unittest.mock import patch

import httpx
import pytest

from api.app import build_services, create_app
from api.enums import AssetType, JobStatus

OWNER = {"X-User-Id": "user-1"}
OTHER = {"X-User-Id": "user-2"}
ADMIN = {"X-User-Id": "admin-1", "X-User-Role": "admin"}


@pytest.fixture
def services(repository, cache, blob_store, memory_queue):
    return build_services(repository, cache, blob_store, memory_queue)


@pytest.fixture
async def client(services):
    app = create_app(services)
    # ASGITransport does not run the lifespan
    app.state.services = services
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


async def _submit(client, headers=OWNER, formats=("720p",)):
    response = await client.post(
        "/api/jobs",
        json={"input_source": "https://example.com/v.mp4", "requested_formats": list(formats)},
        headers=headers,
    )
    assert response.status_code == 201
    return response.json()


async def _completed_with_asset(repository, blob_store, tmp_path, owner_id="user-1"):
    job = await repository.create(owner_id, "https://example.com/v.mp4", ["720p"])
    await repository.update(job["id"], status=JobStatus.COMPLETED, progress=100)
    output = tmp_path / "720p.mp4"
    output.write_bytes(b"rendition")
    key = f"jobs/{job['id']}/transcode_720.mp4"
    size = await blob_store.put(output, key, "video/mp4")
    asset = await repository.create_asset(job["id"], AssetType.TRANSCODE_720, key, "video/mp4", size)
    return job, asset


class TestHealthAndMetrics:
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"] == {"database": True, "redis": "disabled"}
        assert body["queue_mode"] == "memory"
        assert "code_version" in body

    async def test_metrics(self, client):
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "vforge_queue_depth" in response.text


class TestAuthentication:
    async def test_missing_user_header(self, client):
        response = await client.get("/api/jobs")
        assert response.status_code == 401

    async def test_blank_user_header(self, client):
        response = await client.get("/api/jobs", headers={"X-User-Id": "   "})
        assert response.status_code == 401


class TestJobRoutes:
    """Tests for the owner-facing job routes."""

    async def test_submit(self, client, memory_queue):
        job = await _submit(client, formats=("1080p", "480p"))

        assert job["status"] == "PENDING"
        assert job["progress"] == 0
        assert job["owner_id"] == "user-1"
        assert job["requested_formats"] == ["1080p", "480p"]
        assert memory_queue.pending_count() == 1

    async def test_submit_defaults_to_720p(self, client):
        response = await client.post("/api/jobs", json={"input_source": "blob://uploads/a.mp4"}, headers=OWNER)
        assert response.json()["requested_formats"] == ["720p"]

    async def test_submit_unknown_format(self, client, memory_queue):
        response = await client.post(
            "/api/jobs",
            json={"input_source": "https://example.com/v.mp4", "requested_formats": ["720p", "8k"]},
            headers=OWNER,
        )

        assert response.status_code == 400
        assert "8k" in response.json()["detail"]
        assert memory_queue.pending_count() == 0

    async def test_submit_empty_source(self, client):
        response = await client.post("/api/jobs", json={"input_source": "  "}, headers=OWNER)
        assert response.status_code == 400

    async def test_get_job(self, client):
        job = await _submit(client)

        response = await client.get(f"/api/jobs/{job['id']}", headers=OWNER)

        assert response.status_code == 200
        assert response.json()["id"] == job["id"]

    async def test_other_owner_gets_404(self, client):
        job = await _submit(client)
        response = await client.get(f"/api/jobs/{job['id']}", headers=OTHER)
        assert response.status_code == 404

    async def test_missing_job(self, client):
        response = await client.get("/api/jobs/9999", headers=OWNER)
        assert response.status_code == 404
        assert response.json() == {"detail": "Job not found"}

    async def test_list_only_own_jobs(self, client):
        await _submit(client)
        await _submit(client)
        await _submit(client, headers=OTHER)

        response = await client.get("/api/jobs", params={"limit": 1}, headers=OWNER)

        body = response.json()
        assert len(body["jobs"]) == 1
        assert body["pagination"] == {"page": 1, "limit": 1, "total": 2, "totalPages": 2}

    async def test_owner_stats(self, client):
        await _submit(client)
        response = await client.get("/api/jobs/stats", headers=OWNER)

        assert response.status_code == 200
        assert response.json()["PENDING"]["count"] == 1

    async def test_cancel(self, client):
        job = await _submit(client)

        response = await client.post(f"/api/jobs/{job['id']}/cancel", headers=OWNER)

        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"
        again = await client.post(f"/api/jobs/{job['id']}/cancel", headers=OWNER)
        assert again.status_code == 403

    async def test_delete_pending_job(self, client):
        job = await _submit(client)

        response = await client.delete(f"/api/jobs/{job['id']}", headers=OWNER)

        assert response.status_code == 204
        assert (await client.get(f"/api/jobs/{job['id']}", headers=OWNER)).status_code == 404

    async def test_delete_active_job_forbidden(self, client, repository):
        job = await _submit(client)
        await repository.update(job["id"], status=JobStatus.PROCESSING, progress=40)

        response = await client.delete(f"/api/jobs/{job['id']}", headers=OWNER)

        assert response.status_code == 403
        assert (await repository.find_by_id(job["id"]))["status"] == "PROCESSING"


class TestAssets:
    """Tests for asset listing and presigned downloads."""

    async def test_list_assets(self, client, repository, blob_store, tmp_path):
        job, asset = await _completed_with_asset(repository, blob_store, tmp_path)

        response = await client.get(f"/api/jobs/{job['id']}/assets", headers=OWNER)

        assert response.status_code == 200
        assert [a["id"] for a in response.json()] == [asset["id"]]
        assert response.json()[0]["asset_type"] == "TRANSCODE_720"

    async def test_presigned_download_round_trip(self, client, repository, blob_store, tmp_path):
        """Test the presigned URL from the download route serves the stored bytes."""
        job, asset = await _completed_with_asset(repository, blob_store, tmp_path)

        response = await client.get(f"/api/jobs/{job['id']}/assets/{asset['id']}/download", headers=OWNER)
        assert response.status_code == 200
        download = response.json()
        assert download["content_type"] == "video/mp4"

        blob = await client.get(download["url"])
        assert blob.status_code == 200
        assert blob.content == b"rendition"

    async def test_other_owner_cannot_download(self, client, repository, blob_store, tmp_path):
        job, asset = await _completed_with_asset(repository, blob_store, tmp_path)
        response = await client.get(f"/api/jobs/{job['id']}/assets/{asset['id']}/download", headers=OTHER)
        assert response.status_code == 404

    async def test_unknown_asset(self, client, repository, blob_store, tmp_path):
        job, _ = await _completed_with_asset(repository, blob_store, tmp_path)
        response = await client.get(f"/api/jobs/{job['id']}/assets/9999/download", headers=OWNER)
        assert response.status_code == 404

    async def test_bad_signature(self, client, repository, blob_store, tmp_path):
        job, asset = await _completed_with_asset(repository, blob_store, tmp_path)
        url = blob_store.presign(asset["storage_key"])
        tampered = url.split("signature=")[0] + "signature=" + "0" * 64

        response = await client.get(tampered)

        assert response.status_code == 403

    async def test_signed_but_missing_blob(self, client, blob_store):
        response = await client.get(blob_store.presign("jobs/404/gif.gif"))
        assert response.status_code == 404


class TestAdminRoutes:
    """Tests for the admin routes and their authorization."""

    async def test_non_admin_forbidden(self, client):
        response = await client.get("/api/admin/processing-status", headers=OWNER)
        assert response.status_code == 403

    async def test_processing_status(self, client):
        await _submit(client)

        response = await client.get("/api/admin/processing-status", headers=ADMIN)

        assert response.status_code == 200
        body = response.json()
        assert body["jobCounts"]["PENDING"] == 1
        assert body["activeJobs"] == []
        assert body["queue"] == {"activeJobs": 0, "maxConcurrentJobs": 0, "queuedJobs": 0}

    async def test_admin_secret_required_when_configured(self, client):
        with patch("api.app.ADMIN_API_SECRET", "s3cret"):
            missing = await client.get("/api/admin/processing-status", headers=ADMIN)
            wrong = await client.get("/api/admin/processing-status", headers={**ADMIN, "X-Admin-Secret": "nope"})
            right = await client.get("/api/admin/processing-status", headers={**ADMIN, "X-Admin-Secret": "s3cret"})

        assert missing.status_code == 401
        assert wrong.status_code == 401
        assert right.status_code == 200

    async def test_restart_failed(self, client, repository, memory_queue):
        job = await repository.create("user-1", "https://example.com/v.mp4", ["720p"])
        await repository.transition(job["id"], [JobStatus.PENDING], JobStatus.FAILED, error_text="Download: boom")

        response = await client.post("/api/admin/restart-failed", headers=ADMIN)

        assert response.json() == {"restartedCount": 1}
        assert (await repository.find_by_id(job["id"]))["status"] == "PENDING"
        assert memory_queue.pending_count() == 1

    async def test_cleanup_validates_days(self, client):
        response = await client.post("/api/admin/cleanup", params={"older_than_days": 0}, headers=ADMIN)
        assert response.status_code == 400

    async def test_cleanup(self, client):
        response = await client.post("/api/admin/cleanup", params={"older_than_days": 30}, headers=ADMIN)
        assert response.json() == {"deletedCount": 0, "olderThanDays": 30}

    async def test_admin_lists_all_owners(self, client):
        await _submit(client)
        await _submit(client, headers=OTHER)

        everyone = await client.get("/api/admin/jobs", headers=ADMIN)
        one = await client.get("/api/admin/jobs", params={"owner_id": "user-2"}, headers=ADMIN)

        assert everyone.json()["pagination"]["total"] == 2
        assert [j["owner_id"] for j in one.json()["jobs"]] == ["user-2"]

    async def test_admin_sees_and_deletes_any_job(self, client):
        job = await _submit(client)

        assert (await client.get(f"/api/jobs/{job['id']}", headers=ADMIN)).status_code == 200
        response = await client.delete(f"/api/admin/jobs/{job['id']}", headers=ADMIN)

        assert response.status_code == 204
        assert (await client.get(f"/api/jobs/{job['id']}", headers=OWNER)).status_code == 404
