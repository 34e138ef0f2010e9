import database


def test_root_banner(client):
    assert client.get("/").json() == {"message": "EcoCropShare Backend Running"}


def test_report_without_database(client, monkeypatch):
    monkeypatch.setattr(database, "db", None)
    body = client.get("/test").json()
    assert body["backend"] == "running"
    assert body["database"] == "not configured"
    assert "DATABASE_URL" in body["message"]


def test_report_lists_collections(client, mongo_db, monkeypatch, alice):
    monkeypatch.setattr(database, "db", mongo_db)
    body = client.get("/test").json()
    assert body["database"] == "connected"
    assert body["databaseName"] == "ecocropshare_test"
    assert "user" in body["collections"]
