"""HTTP surface: status codes and the {status, message} body on every route."""
from datetime import datetime, timedelta, UTC

from models import Account
from security import create_jwt


def _root(client, headers):
    """List the caller's root, which creates it on first use."""
    resp = client.get("/drive", headers=headers)
    assert resp.status_code == 200
    return resp


def _root_id(session_factory, username):
    with session_factory() as session:
        return session.get(Account, username).root_folder_id


def _used(session_factory, username):
    with session_factory() as session:
        return session.get(Account, username).storage_used_bytes


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_requests_without_session_are_unauthorized(client):
    resp = client.get("/drive")

    assert resp.status_code == 401
    assert resp.json() == {"status": 401, "message": "Unauthorized"}


def test_invalid_token_is_unauthorized(client):
    resp = client.get("/drive", headers={"Authorization": "Bearer not-a-jwt"})

    assert resp.status_code == 401
    assert resp.json()["status"] == 401


def test_session_cookie_is_accepted(client, make_account):
    make_account("alice")
    client.cookies.set("session", create_jwt("alice"))

    assert client.get("/drive").status_code == 200


def test_list_root_and_create_folder(client, make_account, auth_headers, session_factory):
    make_account("alice")
    headers = auth_headers("alice")
    assert _root(client, headers).json()["files"] == []

    created = client.post("/drive/folder", json={"folderName": "Photos"}, headers=headers)
    assert created.status_code == 201
    assert created.json()["status"] == 201
    folder_id = created.json()["id"]

    listing = client.get("/drive", headers=headers).json()
    assert listing["status"] == 200
    assert [(f["id"], f["name"], f["fileType"]) for f in listing["files"]] == [(folder_id, "Photos", "folder")]

    crumbs = client.get(f"/drive/{folder_id}", params={"parents": "true"}, headers=headers).json()
    assert crumbs["parents"] == [{"id": folder_id, "name": "Photos"}]


def test_create_folder_requires_name(client, make_account, auth_headers):
    make_account("alice")

    resp = client.post("/drive/folder", json={"folderName": " "}, headers=auth_headers("alice"))

    assert resp.status_code == 400
    assert resp.json()["status"] == 400


def test_listing_foreign_folder_is_forbidden(client, make_account, auth_headers, drive):
    make_account("alice")
    foreign = drive.create_folder("user-carol", "shared-parent")

    resp = client.get(f"/drive/{foreign}", headers=auth_headers("alice"))

    assert resp.status_code == 403
    assert resp.json() == {"status": 403, "message": "Forbidden"}


def test_resumable_flow_returns_308_then_200(client, make_account, auth_headers, session_factory):
    make_account("alice", used=900_000, limit=1_000_000)
    headers = auth_headers("alice")

    started = client.post("/drive/resumable", json={"name": "a.bin", "size": 50_000}, headers=headers)
    assert started.status_code == 200
    upload_id = started.json()["uploadId"]

    partial = client.post(
        f"/drive/chunk/{upload_id}",
        content=b"x" * 30_000,
        headers={**headers, "x-upload-start": "0", "x-upload-end": "29999", "x-upload-total": "50000"},
    )
    assert partial.status_code == 308
    assert partial.json() == {"status": 308, "message": "Resume incomplete", "range": "bytes=0-29999"}

    done = client.post(
        f"/drive/chunk/{upload_id}",
        content=b"x" * 20_000,
        headers={
            **headers,
            "x-upload-start": "30000",
            "x-upload-end": "49999",
            "x-upload-total": "50000",
            "x-upload-size": "20000",
        },
    )
    assert done.status_code == 200
    assert done.json()["id"]
    assert _used(session_factory, "alice") == 950_000


def test_resumable_start_over_limit_is_413(client, make_account, auth_headers, drive, registry):
    make_account("alice", used=900_000, limit=1_000_000)

    resp = client.post("/drive/resumable", json={"name": "a.bin", "size": 200_000}, headers=auth_headers("alice"))

    assert resp.status_code == 413
    assert resp.json() == {"status": 413, "message": "Storage limit exceeded"}
    assert "create_resumable_session" not in drive.call_names()
    assert len(registry) == 0


def test_resumable_start_with_blocked_plan_is_402(client, make_account, auth_headers):
    make_account(
        "alice",
        used=6 * 1024 ** 3,
        limit=1024 ** 4,
        plan_id="starter",
        next_billing_at=datetime.now(UTC) - timedelta(days=2),
    )

    resp = client.post("/drive/resumable", json={"name": "a.bin", "size": 10}, headers=auth_headers("alice"))

    assert resp.status_code == 402
    assert resp.json()["message"] == "Plan expired. Storage exceeds free limit."


def test_chunk_by_other_account_is_403(client, make_account, auth_headers, drive):
    make_account("alice")
    make_account("mallory")
    upload_id = client.post(
        "/drive/resumable", json={"name": "a.bin", "size": 10}, headers=auth_headers("alice")
    ).json()["uploadId"]

    resp = client.post(
        f"/drive/chunk/{upload_id}",
        content=b"0123456789",
        headers={**auth_headers("mallory"), "x-upload-start": "0", "x-upload-end": "9", "x-upload-total": "10"},
    )

    assert resp.status_code == 403
    assert "put_chunk" not in drive.call_names()


def test_chunk_for_unknown_upload_is_404(client, make_account, auth_headers):
    make_account("alice")

    resp = client.post(
        "/drive/chunk/nope",
        content=b"x",
        headers={**auth_headers("alice"), "x-upload-start": "0", "x-upload-end": "0", "x-upload-total": "1"},
    )

    assert resp.status_code == 404
    assert resp.json()["status"] == 404


def test_multipart_upload_and_delete(client, make_account, auth_headers, session_factory, drive):
    make_account("alice", limit=10_000)
    headers = auth_headers("alice")

    resp = client.post(
        "/drive/file",
        files=[
            ("files", ("a.txt", b"a" * 300, "text/plain")),
            ("files", ("b.txt", b"b" * 200, "text/plain")),
        ],
        headers=headers,
    )
    assert resp.status_code == 200
    uploaded = resp.json()["files"]
    assert sorted(f["size"] for f in uploaded) == [200, 300]
    assert _used(session_factory, "alice") == 500

    deleted = client.delete(f"/drive/{uploaded[0]['id']}", headers=headers)
    assert deleted.status_code == 200
    assert deleted.json()["freedBytes"] == uploaded[0]["size"]
    assert _used(session_factory, "alice") == 500 - uploaded[0]["size"]
    assert uploaded[0]["id"] not in drive.nodes


def test_multipart_without_files_is_400(client, make_account, auth_headers):
    make_account("alice")

    resp = client.post("/drive/file", headers=auth_headers("alice"))

    assert resp.status_code == 400


def test_rename(client, make_account, auth_headers, drive):
    make_account("alice")
    headers = auth_headers("alice")
    folder_id = client.post("/drive/folder", json={"folderName": "Old"}, headers=headers).json()["id"]

    resp = client.put(f"/drive/{folder_id}", json={"newName": "New"}, headers=headers)

    assert resp.status_code == 200
    assert resp.json()["id"] == folder_id
    assert drive.nodes[folder_id]["name"] == "New"


def test_admin_can_delete_any_folder(client, make_account, auth_headers, drive):
    make_account("root")
    foreign = drive.create_folder("user-carol", "shared-parent")

    resp = client.delete(f"/drive/{foreign}", headers=auth_headers("root", role="admin"))

    assert resp.status_code == 200
    assert foreign not in drive.nodes


def test_download_streams_file(client, make_account, auth_headers, session_factory, drive):
    make_account("alice")
    headers = auth_headers("alice")
    _root(client, headers)
    file_id = drive.add_file_node("notes.txt", _root_id(session_factory, "alice"), b"hello", "text/plain")

    resp = client.get(f"/drive/download/{file_id}", headers=headers)

    assert resp.status_code == 200
    assert resp.content == b"hello"
    assert 'filename="notes.txt"' in resp.headers["content-disposition"]


def test_storage_status(client, make_account, auth_headers):
    make_account("alice", used=42, limit=1_000)

    body = client.get("/drive/storage", headers=auth_headers("alice")).json()

    assert body["usedBytes"] == 42
    assert body["limitBytes"] == 1_000
    assert body["blocked"] is False


def test_folder_share_lifecycle(client, make_account, auth_headers, session_factory, drive):
    make_account("alice")
    make_account("bob")
    alice = auth_headers("alice")
    bob = auth_headers("bob")

    shared = client.post("/folder-share", json={"username": "bob"}, headers=alice)
    assert shared.status_code == 200
    assert client.get("/folder-share", headers=alice).json()["data"]["sharedWithUsernames"] == ["bob"]

    folders = client.get("/shared-folders", headers=bob).json()["data"]
    alice_root = _root_id(session_factory, "alice")
    assert folders == [{"id": alice_root, "name": "user-alice", "ownerUsername": "alice"}]

    # bob uploads into alice's root; alice is charged
    resp = client.post(
        f"/drive/file/{alice_root}",
        files=[("files", ("c.txt", b"c" * 40, "text/plain"))],
        headers=bob,
    )
    assert resp.status_code == 200
    assert _used(session_factory, "alice") == 40
    assert _used(session_factory, "bob") == 0

    left = client.request("DELETE", "/shared-folders", json={"folderId": alice_root}, headers=bob)
    assert left.status_code == 200
    assert client.get("/shared-folders", headers=bob).json()["data"] == []
    assert client.get("/folder-share", headers=alice).json()["data"]["sharedWithUsernames"] == []
    assert client.get(f"/drive/{alice_root}", headers=bob).status_code == 403


def test_folder_share_rejects_self_and_unknown(client, make_account, auth_headers):
    make_account("alice")
    headers = auth_headers("alice")

    assert client.post("/folder-share", json={"username": "alice"}, headers=headers).status_code == 400
    assert client.post("/folder-share", json={"username": ""}, headers=headers).status_code == 400
    assert client.post("/folder-share", json={"username": "ghost"}, headers=headers).status_code == 404


def test_unshare_removes_access(client, make_account, auth_headers, session_factory):
    make_account("alice")
    make_account("bob")
    alice = auth_headers("alice")
    client.post("/folder-share", json={"username": "bob"}, headers=alice)

    resp = client.request("DELETE", "/folder-share", json={"username": "bob"}, headers=alice)

    assert resp.status_code == 200
    with session_factory() as session:
        assert session.get(Account, "bob").shared_root_folder_ids == []


def test_unknown_route_uses_error_shape(client):
    resp = client.get("/nowhere")

    assert resp.status_code == 404
    assert resp.json() == {"status": 404, "message": "Not Found"}


def test_resumable_start_with_oversized_number_is_400(client, make_account, auth_headers, drive):
    make_account("alice")

    resp = client.post(
        "/drive/resumable",
        content='{"name": "a.bin", "size": ' + "9" * 400 + "}",
        headers={**auth_headers("alice"), "Content-Type": "application/json"},
    )

    assert resp.status_code == 400
    assert resp.json()["status"] == 400
    assert "create_resumable_session" not in drive.call_names()


def test_chunk_with_underscore_digits_is_400(client, make_account, auth_headers, drive):
    make_account("alice")
    headers = auth_headers("alice")
    upload_id = client.post("/drive/resumable", json={"name": "a.bin", "size": 20}, headers=headers).json()["uploadId"]

    resp = client.post(
        f"/drive/chunk/{upload_id}",
        content=b"x" * 11,
        headers={**headers, "x-upload-start": "0", "x-upload-end": "1_0", "x-upload-total": "2_0"},
    )

    assert resp.status_code == 400
    assert "put_chunk" not in drive.call_names()


def test_billing_status(client, make_account, auth_headers):
    make_account("alice", used=42, limit=1_000, plan_id="free")

    body = client.get("/billing", headers=auth_headers("alice")).json()

    assert body["status"] == 200
    assert body["data"]["planId"] == "free"
    assert body["data"]["billingCycle"] is None
    assert body["data"]["storageUsedBytes"] == 42
    assert body["data"]["storageLimitBytes"] == 1_000
    assert body["data"]["nextBillingAt"] is None


def test_billing_upgrade_sets_plan_limit(client, make_account, auth_headers, session_factory):
    make_account("alice")

    resp = client.post("/billing", json={"planId": "pro", "billingCycle": "annual"}, headers=auth_headers("alice"))

    assert resp.status_code == 200
    assert resp.json()["data"] == {
        "planId": "pro",
        "billingCycle": "annual",
        "storageLimitBytes": 10 * 1024 ** 4,
    }
    with session_factory() as session:
        account = session.get(Account, "alice")
        assert (account.plan_id, account.storage_limit_bytes) == ("pro", 10 * 1024 ** 4)


def test_billing_rejects_unknown_plan(client, make_account, auth_headers):
    make_account("alice")

    resp = client.post("/billing", json={"planId": "platinum"}, headers=auth_headers("alice"))

    assert resp.status_code == 400
    assert resp.json() == {"status": 400, "message": "Invalid plan"}


def test_billing_downgrade_forbidden_for_users_allowed_for_admins(client, make_account, auth_headers):
    make_account("alice", plan_id="pro")
    make_account("root", plan_id="pro")

    denied = client.post("/billing", json={"planId": "starter", "billingCycle": "monthly"}, headers=auth_headers("alice"))
    allowed = client.post("/billing", json={"planId": "free", "billingCycle": "monthly"}, headers=auth_headers("root", role="admin"))

    assert denied.status_code == 403
    assert denied.json()["message"] == "Plan downgrade is not allowed"
    assert allowed.status_code == 200
    assert allowed.json()["data"]["billingCycle"] is None


def test_billing_requires_session(client):
    assert client.get("/billing").status_code == 401
