"""
Tests for Komik Upload API endpoints.

Tests cover:
- Health checks
- Authentication
- Metadata validation
- Bulk JSON uploads, dry runs and conflict handling
- Single chapter uploads
- Job lookup, progress, cancellation and resume errors
"""

import io
import json
import zipfile
from uuid import uuid4

import pytest

from conftest import chapter_pages, page_bytes

API = "/api/v1/upload"


def zip_upload(entries, name="chapters.zip"):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for entry, data in entries.items():
            archive.writestr(entry, data)
    return {"zip_file": (name, buffer.getvalue(), "application/zip")}


def metadata(slug, *folders):
    return json.dumps({
        "manga_slug": slug,
        "title": slug.replace("-", " ").title(),
        "chapters": [
            {"chapter_main": number, "chapter_folder_name": folder}
            for number, folder in enumerate(folders, start=1)
        ],
    })


@pytest.fixture
def slug():
    """Unique slug; the app's catalog is shared by every test in the session."""
    return f"manga-{uuid4().hex[:10]}"


@pytest.fixture
def uploaded(client, auth_headers, slug):
    """A manga with two chapters already in the catalog."""
    response = client.post(
        f"{API}/bulk-json",
        data={"metadata": metadata(slug, "ch1", "ch2")},
        files=zip_upload({**chapter_pages("ch1", 2), **chapter_pages("ch2", 3)}),
        headers=auth_headers,
    )
    assert response.status_code == 200
    return response.json()


class TestHealthCheck:
    """Tests for the liveness and health endpoints."""

    def test_health_check_returns_ok(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_health_report(self, client):
        response = client.get(f"{API}/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert data["primary_remote"] == "primary"
        assert ".jpg" in data["allowed_extensions"]
        assert data["features"]["dry_run"] is True


class TestAuthentication:
    def test_missing_key_is_forbidden(self, client):
        response = client.post(f"{API}/validate-json", data={"config": "{}"})

        assert response.status_code == 403
        assert response.json()["error_type"] == "forbidden"

    def test_invalid_key_is_forbidden(self, client):
        response = client.post(
            f"{API}/bulk-json",
            data={"metadata": metadata("x", "ch1")},
            files=zip_upload(chapter_pages("ch1", 1)),
            headers={"X-API-Key": "invalid-key"},
        )

        assert response.status_code == 403

    def test_credential_is_checked_before_form_fields(self, client):
        """An anonymous caller learns nothing about which fields were wrong."""
        response = client.post(
            f"{API}/bulk-json",
            data={"metadata": "not json", "conflict_strategy_chapter": "bogus"},
            files=zip_upload(chapter_pages("ch1", 1), name="chapters.tar"),
        )

        assert response.status_code == 403
        assert response.json()["error_type"] == "forbidden"

    def test_missing_required_fields_without_key_is_forbidden(self, client):
        response = client.post(f"{API}/chapter", data={"chapter_main": "not-a-number"})

        assert response.status_code == 403

    def test_queries_require_a_key(self, client):
        assert client.get(f"{API}/jobs/{uuid4().hex}").status_code == 403
        assert client.get(f"{API}/progress/{uuid4().hex}").status_code == 403
        assert client.post(f"{API}/resume/some-token").status_code == 403

    def test_x_api_key_header_works(self, client, master_key):
        response = client.get(f"{API}/smart-import/example", headers={"X-API-Key": master_key})

        assert response.status_code == 200
        data = response.json()
        assert "layout" in data and "manga_json" in data


class TestValidateJson:
    def test_valid_document(self, client, auth_headers, slug):
        response = client.post(f"{API}/validate-json", data={"config": metadata(slug, "ch1")}, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is True
        assert data["summary"]["total_chapters"] == 1

    def test_invalid_document_lists_errors(self, client, auth_headers):
        document = json.dumps({"manga_slug": "Not A Slug", "chapters": [{"chapter_main": 0, "chapter_folder_name": "c"}]})

        response = client.post(f"{API}/validate-json", data={"config": document}, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is False
        assert len(data["errors"]) >= 2

    def test_check_existing(self, client, auth_headers, uploaded, slug):
        response = client.post(
            f"{API}/validate-json",
            data={"config": metadata(slug, "ch1"), "check_existing": "true"},
            headers=auth_headers,
        )

        kinds = [conflict["kind"] for conflict in response.json()["conflicts"]]
        assert kinds == ["manga_exists", "chapter_exists"]

    def test_malformed_json(self, client, auth_headers):
        response = client.post(f"{API}/validate-json", data={"config": "{oops"}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["error_type"] == "schema_error"


class TestBulkJson:
    """Tests for the /bulk-json endpoint."""

    def test_upload_creates_manga_and_chapters(self, uploaded):
        assert uploaded["status"] == "completed"
        assert uploaded["created"] == 2
        assert uploaded["total_files"] == 5
        assert uploaded["partial_failure"] is False
        assert [unit["page_count"] for unit in uploaded["units"]] == [2, 3]

    def test_dry_run_writes_nothing(self, client, auth_headers, slug):
        response = client.post(
            f"{API}/bulk-json",
            data={"metadata": metadata(slug, "ch1"), "dry_run": "true"},
            files=zip_upload(chapter_pages("ch1", 2)),
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["dry_run"] is True
        assert data["status"] == "planning"
        assert data["units"][0]["action"] == "create"

        check = client.post(
            f"{API}/validate-json",
            data={"config": metadata(slug, "ch1"), "check_existing": "true"},
            headers=auth_headers,
        )
        assert check.json()["conflicts"] == []

    def test_second_upload_skips_existing_chapters(self, client, auth_headers, uploaded, slug):
        response = client.post(
            f"{API}/bulk-json",
            data={"metadata": metadata(slug, "ch1", "ch2")},
            files=zip_upload({**chapter_pages("ch1", 2), **chapter_pages("ch2", 3)}),
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["skipped"] == 2

    def test_chapter_conflict_error_is_409(self, client, auth_headers, uploaded, slug):
        response = client.post(
            f"{API}/bulk-json",
            data={"metadata": metadata(slug, "ch1"), "conflict_strategy_chapter": "error"},
            files=zip_upload(chapter_pages("ch1", 2)),
            headers=auth_headers,
        )

        assert response.status_code == 409
        data = response.json()
        assert data["error_type"] == "conflict"
        assert data["conflicts"][0]["kind"] == "chapter_exists"

    def test_missing_folder_is_422(self, client, auth_headers, slug):
        response = client.post(
            f"{API}/bulk-json",
            data={"metadata": metadata(slug, "ch1", "ch2")},
            files=zip_upload(chapter_pages("ch1", 2)),
            headers=auth_headers,
        )

        assert response.status_code == 422
        assert response.json()["error_type"] == "archive_mapping_error"

    def test_invalid_metadata_is_400(self, client, auth_headers):
        response = client.post(
            f"{API}/bulk-json",
            data={"metadata": json.dumps({"manga_slug": "Bad Slug", "title": "x", "chapters": []})},
            files=zip_upload(chapter_pages("ch1", 1)),
            headers=auth_headers,
        )

        assert response.status_code == 400
        assert response.json()["status"] == "failed"

    def test_invalid_policy(self, client, auth_headers, slug):
        response = client.post(
            f"{API}/bulk-json",
            data={"metadata": metadata(slug, "ch1"), "conflict_strategy_manga": "overwrite"},
            files=zip_upload(chapter_pages("ch1", 1)),
            headers=auth_headers,
        )

        assert response.status_code == 400

    def test_archive_must_be_a_zip(self, client, auth_headers, slug):
        response = client.post(
            f"{API}/bulk-json",
            data={"metadata": metadata(slug, "ch1")},
            files={"zip_file": ("chapters.rar", b"not a zip", "application/octet-stream")},
            headers=auth_headers,
        )

        assert response.status_code == 400


class TestChapterUpload:
    """Tests for the /chapter endpoint."""

    def test_upload_into_existing_manga(self, client, auth_headers, uploaded, slug):
        files = [("files", (name, page_bytes(name), "image/jpeg")) for name in ("page2.jpg", "page10.jpg", "page1.jpg")]

        response = client.post(
            f"{API}/chapter",
            data={"manga_slug": slug, "chapter_main": "3", "chapter_label": "The Third"},
            files=files,
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["units"][0]["label"] == "The Third"
        assert data["units"][0]["page_count"] == 3

    def test_unknown_manga(self, client, auth_headers, slug):
        response = client.post(
            f"{API}/chapter",
            data={"manga_slug": slug, "chapter_main": "1"},
            files=[("files", ("001.jpg", page_bytes("x"), "image/jpeg"))],
            headers=auth_headers,
        )

        assert response.status_code == 400
        assert any("does not exist" in error for error in response.json()["report"]["errors"])

    def test_existing_chapter_conflicts_by_default(self, client, auth_headers, uploaded, slug):
        response = client.post(
            f"{API}/chapter",
            data={"manga_slug": slug, "chapter_main": "1"},
            files=[("files", ("001.jpg", page_bytes("x"), "image/jpeg"))],
            headers=auth_headers,
        )

        assert response.status_code == 409


class TestJobs:
    def test_get_job(self, client, auth_headers, uploaded):
        response = client.get(f"{API}/jobs/{uploaded['upload_id']}", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "completed"

    def test_progress(self, client, auth_headers, uploaded):
        response = client.get(f"{API}/progress/{uploaded['upload_id']}", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["processed_units"] == 2
        assert data["progress"] == 100.0

    def test_unknown_job_is_404(self, client, auth_headers):
        response = client.get(f"{API}/jobs/{uuid4().hex}", headers=auth_headers)

        assert response.status_code == 404
        assert response.json()["error_type"] == "job_not_found"

    def test_cancel_finished_job(self, client, auth_headers, uploaded):
        response = client.post(f"{API}/jobs/{uploaded['upload_id']}/cancel", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"cancel_requested": False}

    def test_cancel_unknown_job(self, client, auth_headers):
        response = client.post(f"{API}/jobs/{uuid4().hex}/cancel", headers=auth_headers)

        assert response.status_code == 404

    def test_unknown_resume_token_is_410(self, client, auth_headers):
        response = client.post(f"{API}/resume/not-a-token", headers=auth_headers)

        assert response.status_code == 410
        assert response.json()["error_type"] == "invalid_resume_token"
