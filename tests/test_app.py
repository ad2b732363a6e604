"""Tests for the app-level routes and error envelopes."""

import database


class TestDatabaseCheck:
    def test_reports_store_collections(self, client, db, customer, monkeypatch):
        monkeypatch.setattr(database, "db", db)

        body = client.get("/test").json()

        assert body["database"] == "connected"
        assert set(body["collections"]) == set(database.COLLECTIONS)
        assert body["collections"]["user"] == 1
        assert body["collections"]["order"] == 0

    def test_without_database(self, client, monkeypatch):
        monkeypatch.setattr(database, "db", None)

        assert client.get("/test").json() == {"backend": "running", "database": "not configured"}


class TestErrorEnvelope:
    def test_unknown_route(self, client):
        response = client.get("/api/v1/nowhere")

        assert response.status_code == 404
        assert response.json() == {
            "success": False, "message": "Route /api/v1/nowhere not found", "statusCode": 404,
        }
