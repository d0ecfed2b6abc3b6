"""Test configuration and fixtures: in-memory database and an in-memory Drive."""

import itertools
import os

os.environ.setdefault("DRIVE_CLIENT_ID", "test-client-id")
os.environ.setdefault("DRIVE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("DRIVE_REFRESH_TOKEN", "test-refresh-token")
os.environ.setdefault("DRIVE_SHARED_FOLDER_ID", "shared-parent")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SKIP_DB_INIT", "true")
os.environ.setdefault("ENV", "test")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, get_db
from errors import UpstreamError
from models import Account
from security import create_jwt
from services.drive_client import FOLDER_MIME, ChunkResult
from services.upload_sessions import UploadSessionRegistry

SHARED_PARENT = "shared-parent"


class FakeDrive:
    """In-memory stand-in for DriveClient with the same method surface."""

    def __init__(self):
        self.nodes = {
            SHARED_PARENT: {"id": SHARED_PARENT, "name": "storage", "mimeType": FOLDER_MIME, "parents": []},
        }
        self.calls = []
        self.sessions = {}
        self.fail_delete = set()
        self.cleared = []
        self._ids = itertools.count(1)

    def _new_id(self, prefix):
        return f"{prefix}-{next(self._ids)}"

    # --- reads ---

    def _node(self, item_id):
        node = self.nodes.get(item_id)
        if node is None:
            raise UpstreamError("Drive API error: File not found", status_code=404)
        return node

    def get_parent(self, item_id):
        self.calls.append(("get_parent", item_id))
        node = self._node(item_id)
        if not node["parents"]:
            return None
        return {"current_id": node["id"], "current_name": node["name"], "id": node["parents"][0]}

    def get_folder_name(self, folder_id):
        return self._node(folder_id)["name"]

    def get_file(self, file_id):
        node = self._node(file_id)
        data = {k: v for k, v in node.items() if k != "content"}
        if "size" in data:
            data["size"] = str(data["size"])
        return data

    def list_files(self, folder_id):
        self.calls.append(("list_files", folder_id))
        return [
            self.get_file(n["id"]) for n in self.nodes.values() if folder_id in n["parents"]
        ]

    def clear_cache(self, folder_id):
        self.cleared.append(folder_id)

    def open_media(self, file_id, export_mime=None):
        node = self._node(file_id)

        class _Media:
            def __init__(self, content):
                self.content = content
                self.closed = False

            def iter_content(self, chunk_size=1):
                yield self.content

            def close(self):
                self.closed = True

        return _Media(node.get("content", b""))

    # --- writes ---

    def create_folder(self, name, parent_id):
        self.calls.append(("create_folder", name, parent_id))
        folder_id = self._new_id("folder")
        self.nodes[folder_id] = {"id": folder_id, "name": name, "mimeType": FOLDER_MIME, "parents": [parent_id]}
        return folder_id

    def add_file_node(self, name, parent_id, content=b"", mime_type="application/octet-stream"):
        file_id = self._new_id("file")
        self.nodes[file_id] = {
            "id": file_id,
            "name": name,
            "mimeType": mime_type,
            "parents": [parent_id],
            "size": len(content),
            "content": content,
        }
        return file_id

    def upload_file(self, name, mime_type, content, parent_id, size=None):
        self.calls.append(("upload_file", name, parent_id))
        if hasattr(content, "read"):
            data = content.read()
        else:
            data = b"".join(content)
        file_id = self.add_file_node(name, parent_id, data, mime_type)
        return {"id": file_id, "size": str(len(data))}

    def create_resumable_session(self, name, mime_type, size, parent_id):
        self.calls.append(("create_resumable_session", name, size, parent_id))
        url = f"https://upload.test/{self._new_id('session')}"
        self.sessions[url] = {"name": name, "mime": mime_type, "parent": parent_id, "data": b""}
        return url

    def put_chunk(self, upload_url, data, start, end, total):
        self.calls.append(("put_chunk", upload_url, start, end, total))
        session = self.sessions[upload_url]
        session["data"] = session["data"][:start] + data
        if len(session["data"]) < total:
            return ChunkResult(complete=False, range=f"bytes=0-{len(session['data']) - 1}")
        file_id = self.add_file_node(session["name"], session["parent"], session["data"], session["mime"])
        return ChunkResult(complete=True, file={"id": file_id, "size": str(total), "parents": [session["parent"]]})

    def delete_file(self, file_id, parent_ids=()):
        self.calls.append(("delete_file", file_id))
        if file_id in self.fail_delete:
            raise UpstreamError("Drive API error: backend error", status_code=500)
        self._node(file_id)
        del self.nodes[file_id]

    def rename_file(self, file_id, new_name, parent_ids=()):
        node = self._node(file_id)
        node["name"] = new_name
        return self.get_file(file_id)

    def call_names(self):
        return [c[0] for c in self.calls]


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def drive():
    return FakeDrive()


@pytest.fixture
def registry():
    return UploadSessionRegistry(ttl_seconds=6 * 60 * 60)


@pytest.fixture
def make_account(db):
    def _make(username, used=0, limit=1_000_000, plan_id="free", **extra):
        account = Account(
            username=username,
            plan_id=plan_id,
            storage_used_bytes=used,
            storage_limit_bytes=limit,
            shared_root_folder_ids=[],
            shared_with_usernames=[],
            **extra,
        )
        db.add(account)
        db.commit()
        return account

    return _make


@pytest.fixture
def app(drive, registry, session_factory):
    from main import create_app

    application = create_app(drive=drive, upload_registry=registry)

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    application.dependency_overrides[get_db] = override_get_db
    return application


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def auth_headers():
    def _headers(username, role="user"):
        return {"Authorization": f"Bearer {create_jwt(username, role)}"}

    return _headers
