import asyncio
import base64

import pytest
from fastapi.testclient import TestClient

import crud
from database import create_engine, create_session_factory, init_db
from main import create_app

PASSWORD = "Sup3r-Secret"


def run_db(settings, fn):
    """Run fn(db) against the app's database on a private engine, committing afterwards."""
    async def _go():
        engine = create_engine(settings)
        try:
            await init_db(engine)
            async with create_session_factory(engine)() as db:
                result = await fn(db)
                await db.commit()
                return result
        finally:
            await engine.dispose()

    return asyncio.run(_go())


@pytest.fixture
def seeded(settings):
    async def seed(db):
        await crud.create_account(db, "acme", "Acme Corp", domain="acme.example.com")
        await crud.create_account(db, "vault", "Vault Inc", encryption_enabled=True)
        agent = await crud.create_agent(db, "Acme Assistant")
        await crud.create_permission(db, "acme", "write", agent_id=agent.id)
        return agent.api_key

    return run_db(settings, seed)


@pytest.fixture
def client(settings, seeded):
    with TestClient(create_app(settings)) as c:
        yield c


def register_and_login(client, settings, email, role=None, account_id="acme"):
    resp = client.post("/auth/register", json={"email": email, "password": PASSWORD, "name": email.split("@")[0]})
    assert resp.status_code == 201, resp.text
    user_id = resp.json()["id"]
    if role:
        run_db(settings, lambda db: crud.create_permission(db, account_id, role, user_id=user_id))

    resp = client.post("/auth/login", json={"email": email, "password": PASSWORD})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['token']}"}


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_login_lists_accounts_and_logout_ends_session(client, settings):
    headers = register_and_login(client, settings, "ada@acme.example.com", role="admin")

    resp = client.get("/accounts", headers=headers)
    assert resp.json() == [{"id": "acme", "name": "Acme Corp", "domain": "acme.example.com", "role": "admin"}]

    resp = client.get("/accounts/acme", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["storage_used"] == 0

    resp = client.post("/auth/logout", headers=headers)
    assert resp.json() == {"message": "Logged out successfully"}

    resp = client.get("/accounts", headers=headers)
    assert resp.status_code == 401


def test_bad_login(client, settings):
    register_and_login(client, settings, "ada@acme.example.com")

    resp = client.post("/auth/login", json={"email": "ada@acme.example.com", "password": "Wrong-Pass-1"})
    assert resp.status_code == 401
    assert resp.json()["error"] == "unauthenticated"


def test_weak_password_is_rejected(client):
    resp = client.post("/auth/register", json={"email": "x@acme.example.com", "password": "short", "name": "X"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "validation_error"


def test_missing_and_malformed_credentials(client):
    resp = client.get("/files/acme")
    assert resp.status_code == 401
    assert resp.json() == {"error": "unauthenticated", "detail": "No authentication provided"}

    resp = client.get("/files/acme", headers={"Authorization": "Token abc"})
    assert resp.status_code == 401


def test_upload_list_download_audit(client, settings):
    headers = register_and_login(client, settings, "ada@acme.example.com", role="admin")

    resp = client.post(
        "/upload/acme",
        headers=headers,
        files={"file": ("notes.txt", b"hello darkdrop", "text/plain")},
        data={"folder": "/docs"},
    )
    assert resp.status_code == 201, resp.text
    body = resp.json()
    assert body["version_number"] is None
    assert body["folder"] == "/docs"
    assert "path" not in body
    file_id = body["id"]

    resp = client.post(
        "/upload/acme", headers=headers, files={"file": ("notes.txt", b"hello again", "text/plain")},
        data={"folder": "/docs"},
    )
    assert resp.json()["id"] == file_id
    assert resp.json()["version_number"] == 1

    resp = client.get("/files/acme", headers=headers, params={"folder": "/docs"})
    assert [f["id"] for f in resp.json()] == [file_id]

    resp = client.get("/files/acme/search", headers=headers, params={"q": "note"})
    assert [f["id"] for f in resp.json()] == [file_id]

    resp = client.get(f"/download/{file_id}", headers=headers)
    assert resp.status_code == 200
    assert resp.content == b"hello again"
    assert "notes.txt" in resp.headers["content-disposition"]

    resp = client.get(f"/files/{file_id}/audit", headers={**headers, "User-Agent": "darkdrop-tests"})
    actions = sorted(e["action"] for e in resp.json())
    assert actions == ["download", "upload", "version_create"]


def test_encrypted_account_over_http(client, settings):
    headers = register_and_login(client, settings, "val@vault.example.com", role="write", account_id="vault")

    resp = client.post("/upload/vault", headers=headers, files={"file": ("s.bin", b"\x00secret\xff")})
    body = resp.json()
    assert body["is_encrypted"] is True
    assert body["size"] == len(b"\x00secret\xff") + 28

    resp = client.get(f"/download/{body['id']}", headers=headers)
    assert resp.content == b"\x00secret\xff"


def test_agent_api_key(client, settings, seeded):
    headers = {"X-API-Key": seeded}

    resp = client.post("/upload/acme", headers=headers, files={"file": ("out.csv", b"a,b\n1,2\n")})
    assert resp.status_code == 201, resp.text
    assert resp.json()["type"] == "agents"

    async def revoke(db):
        agent = await crud.get_agent_by_api_key(db, seeded)
        await crud.revoke_agent(db, agent.id)

    run_db(settings, revoke)

    resp = client.get("/files/acme", headers=headers)
    assert resp.status_code == 401
    assert resp.json()["error"] == "unauthenticated"


def test_forbidden_and_not_found(client, settings):
    reader = register_and_login(client, settings, "rae@acme.example.com", role="read")
    outsider = register_and_login(client, settings, "otto@elsewhere.example.com")

    resp = client.post("/upload/acme", headers=reader, files={"file": ("a.txt", b"a")})
    assert resp.status_code == 403
    assert resp.json()["error"] == "forbidden"

    resp = client.get("/files/acme", headers=outsider)
    assert resp.status_code == 403

    resp = client.get("/download/does-not-exist", headers=reader)
    assert resp.status_code == 404
    assert resp.json()["error"] == "not_found"


def test_share_and_public_download(client, settings):
    headers = register_and_login(client, settings, "wes@acme.example.com", role="write")
    file_id = client.post("/upload/acme", headers=headers, files={"file": ("flyer.pdf", b"%PDF-1.7")}).json()["id"]

    resp = client.post(f"/files/{file_id}/share", headers=headers)
    share = resp.json()
    assert share["public_url"] == f"https://drop.example.com/public/{share['token']}"

    resp = client.get(f"/public/{share['token']}")
    assert resp.status_code == 200
    assert resp.content == b"%PDF-1.7"
    assert resp.headers["content-type"] == "application/pdf"

    assert client.get("/public/not-a-token").status_code == 404


def test_versions_restore_and_delete(client, settings):
    headers = register_and_login(client, settings, "wes@acme.example.com", role="write")
    client.post("/upload/acme", headers=headers, files={"file": ("plan.md", b"# v1")})
    file_id = client.post("/upload/acme", headers=headers, files={"file": ("plan.md", b"# v2!")}).json()["id"]

    versions = client.get(f"/files/{file_id}/versions", headers=headers).json()
    assert [v["version_number"] for v in versions] == [1]

    resp = client.post(f"/files/{file_id}/versions/{versions[0]['id']}/restore", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["size"] == 4
    assert client.get(f"/download/{file_id}", headers=headers).content == b"# v1"

    resp = client.delete(f"/files/{file_id}", headers=headers)
    assert resp.json() == {"message": "File deleted successfully"}
    assert client.get(f"/download/{file_id}", headers=headers).status_code == 404
    assert client.get("/accounts/acme", headers=headers).json()["storage_used"] == 0


def test_tool_surface(client, settings, seeded):
    headers = {"X-API-Key": seeded}

    tools = client.get("/tools", headers=headers).json()["tools"]
    assert {"upload_file", "download_file", "list_files", "restore_version"} <= {t["name"] for t in tools}

    resp = client.post("/tools/call", headers=headers, json={
        "name": "upload_file",
        "arguments": {
            "account_id": "acme",
            "filename": "summary.txt",
            "content_base64": base64.b64encode(b"agent wrote this").decode(),
        },
    })
    assert resp.status_code == 200, resp.text
    uploaded = resp.json()["result"]
    assert uploaded["type"] == "agents"

    resp = client.post("/tools/call", headers=headers, json={
        "name": "download_file", "arguments": {"file_id": uploaded["id"]},
    })
    assert base64.b64decode(resp.json()["result"]["content_base64"]) == b"agent wrote this"

    resp = client.post("/tools/call", headers=headers, json={
        "name": "search_files", "arguments": {"account_id": "acme", "query": "summary"},
    })
    assert [f["id"] for f in resp.json()["result"]] == [uploaded["id"]]

    resp = client.post("/tools/call", headers=headers, json={"name": "format_disk", "arguments": {}})
    assert resp.status_code == 404
    assert resp.json()["error"] == "not_found"

    resp = client.post("/tools/call", headers=headers, json={
        "name": "upload_file", "arguments": {"account_id": "acme", "filename": "x", "content_base64": "!!"},
    })
    assert resp.status_code == 400


def test_tools_require_authentication(client):
    assert client.get("/tools").status_code == 401
