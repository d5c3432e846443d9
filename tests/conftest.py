"""Shared test fixtures and in-memory collaborators."""

from datetime import datetime, timezone

import pytest

from certanchor.api import create_app
from certanchor.auth import Principal, bearer_token
from certanchor.config import Settings
from certanchor.errors import AuthenticationError, LedgerError, NotFoundError, StorageError
from certanchor.storage import ObjectInfo, build_key, owner_prefix
from certanchor.workflow import CertificateService

ISSUER_ID = "issuer-0001"
USER_ID = "user-0002"


class InMemoryObjectStore:
    """ObjectStore double that records every call."""

    def __init__(self):
        self.objects = {}
        self.calls = []
        self.fail_put = False
        self.fail_set_metadata = False
        self._stamp = 1700000000000

    def put(self, owner_id, filename, content_type, data, metadata=None):
        self.calls.append(("put", owner_id, filename))
        if self.fail_put:
            raise StorageError("bucket unavailable")
        self._stamp += 1
        key = build_key(owner_id, filename, self._stamp)
        self.objects[key] = {
            "data": bytes(data),
            "content_type": content_type,
            "metadata": dict(metadata or {}),
            "last_modified": datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        }
        return key

    def list(self, owner_id):
        self.calls.append(("list", owner_id))
        prefix = owner_prefix(owner_id)
        return [
            ObjectInfo(
                key=key,
                filename=key.rsplit("/", 1)[-1],
                size=len(obj["data"]),
                last_modified=obj["last_modified"],
                url=f"https://signed.example/{key}?expires=3600",
                metadata=dict(obj["metadata"]),
            )
            for key, obj in sorted(self.objects.items())
            if key.startswith(prefix)
        ]

    def get(self, owner_id, filename):
        return self.read(owner_prefix(owner_id) + filename)

    def read(self, key):
        self.calls.append(("read", key))
        if key not in self.objects:
            raise NotFoundError(key)
        return self.objects[key]["data"]

    def head(self, key):
        if key not in self.objects:
            raise NotFoundError(key)
        return dict(self.objects[key]["metadata"])

    def set_metadata(self, key, updates):
        self.calls.append(("set_metadata", key, dict(updates)))
        if self.fail_set_metadata:
            raise StorageError("metadata write failed")
        self.objects[key]["metadata"].update(updates)
        return dict(self.objects[key]["metadata"])

    def iter_keys(self, prefix="certificates/"):
        return [key for key in sorted(self.objects) if key.startswith(prefix)]

    def mutating_calls(self):
        return [call for call in self.calls if call[0] in ("put", "set_metadata")]


class InMemoryLedger:
    """Ledger double: a set of digests plus a call log."""

    def __init__(self):
        self.entries = set()
        self.calls = []
        self.failures_left = 0
        self.fail_query = False
        self._tx = 0

    def anchor(self, digest):
        self.calls.append(("anchor", digest))
        if digest in self.entries:
            return None
        if self.failures_left:
            self.failures_left -= 1
            raise LedgerError("node unreachable")
        self.entries.add(digest)
        self._tx += 1
        return "0x" + f"{self._tx:064x}"

    def query(self, digest):
        self.calls.append(("query", digest))
        if self.fail_query:
            raise LedgerError("node unreachable")
        return digest in self.entries

    def total(self):
        return len(self.entries)

    def anchor_calls(self):
        return [call for call in self.calls if call[0] == "anchor"]


class StaticVerifier:
    """Token verifier double mapping opaque tokens to principals."""

    def __init__(self, principals):
        self.principals = principals

    def authenticate(self, header):
        token = bearer_token(header)
        if token not in self.principals:
            raise AuthenticationError("Invalid token")
        return self.principals[token]


class FakeDirectory:
    def __init__(self):
        self.users = {
            "admin@example.com": True,
            "reader@example.com": False,
        }
        self.fail_count = False

    def list_users(self):
        return [
            {"username": name, "email": name, "group": "issuers" if issuer else "users"}
            for name, issuer in sorted(self.users.items())
        ]

    def create_user(self, email, password, name=None, issuer=False):
        self.users[email] = issuer

    def set_issuer(self, username, issuer):
        self.users[username] = issuer

    def change_group(self, username, group):
        wants_issuer = group == "issuers"
        if self.users.get(username) == wants_issuer:
            return False
        self.users[username] = wants_issuer
        return True

    def count_users(self):
        if self.fail_count:
            raise StorageError("directory down")
        return len(self.users)


@pytest.fixture
def issuer():
    return Principal(subject=ISSUER_ID, username="admin", groups=("issuers",), is_issuer=True)


@pytest.fixture
def user():
    return Principal(subject=USER_ID, username="reader", groups=(), is_issuer=False)


@pytest.fixture
def store():
    return InMemoryObjectStore()


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def service(store, ledger):
    return CertificateService(store, ledger)


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def settings():
    return Settings(max_upload_bytes=1024 * 1024)


@pytest.fixture
def app(settings, service, issuer, user, directory):
    verifier = StaticVerifier({"issuer-token": issuer, "user-token": user})
    app = create_app(settings, service=service, verifier=verifier, directory=directory)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth():
    """Build an Authorization header for a named test token."""
    def _auth(token="issuer-token"):
        return {"Authorization": f"Bearer {token}"}
    return _auth
