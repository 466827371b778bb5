import re
import smtplib
from datetime import timedelta
from typing import Dict, List, Optional

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from errors import DuplicateReference, PersistenceUnavailable
from main import create_access_token, create_app
from notifications import Notifier
from settings import Settings


def _get(doc: dict, dotted: str):
    value = doc
    for part in dotted.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _matches(doc: dict, query: dict) -> bool:
    for key, wanted in query.items():
        if key == "$or":
            if not any(_matches(doc, sub) for sub in wanted):
                return False
            continue
        value = _get(doc, key)
        if isinstance(wanted, dict):
            if "$regex" in wanted:
                flags = re.I if "i" in wanted.get("$options", "") else 0
                if value is None or not re.search(wanted["$regex"], str(value), flags):
                    return False
            if "$gte" in wanted and (value is None or value < wanted["$gte"]):
                return False
            if "$lte" in wanted and (value is None or value > wanted["$lte"]):
                return False
        elif value != wanted:
            return False
    return True


class FakeOrderStore:
    """In-memory stand-in for OrderStore with a unique reference index."""

    def __init__(self):
        self.docs: List[dict] = []
        self.fail_writes = False
        self.fail_reads = False

    def ensure_indexes(self):
        pass

    def ping(self):
        return ["order"]

    def create(self, doc: dict) -> str:
        if self.fail_writes:
            raise PersistenceUnavailable("Document store unavailable during insert order")
        if any(d["reference"] == doc["reference"] for d in self.docs):
            raise DuplicateReference("Order reference already exists")
        stored = dict(doc, _id=ObjectId())
        self.docs.append(stored)
        return str(stored["_id"])

    def find_one(self, query: dict) -> Optional[dict]:
        if self.fail_reads:
            raise PersistenceUnavailable("Document store unavailable during find order")
        return next((dict(d) for d in self.docs if _matches(d, query)), None)

    def find(self, query: dict, skip: int = 0, limit: int = 50) -> List[dict]:
        found = sorted((d for d in self.docs if _matches(d, query)), key=lambda d: d["created_at"], reverse=True)
        return [dict(d) for d in found[skip:skip + limit]]

    def count(self, query: dict) -> int:
        return sum(1 for d in self.docs if _matches(d, query))

    def update(self, query: dict, changes: dict, push: Optional[dict] = None) -> Optional[dict]:
        if self.fail_writes:
            raise PersistenceUnavailable("Document store unavailable during update order")
        for doc in self.docs:
            if _matches(doc, query):
                doc.update(changes)
                for key, value in (push or {}).items():
                    doc.setdefault(key, []).append(value)
                return dict(doc)
        return None


class FakeAdmins:
    def __init__(self):
        self.users: Dict[str, dict] = {}

    def find_active(self, username: str) -> Optional[dict]:
        user = self.users.get(username)
        return user if user and user.get("is_active") else None

    def count(self) -> int:
        return len(self.users)

    def create(self, user) -> str:
        self.users[user.username] = user.model_dump(mode="json")
        return user.username


class RecordingMailer:
    configured = True

    def __init__(self):
        self.sent: List[dict] = []
        self.fail_for: set = set()

    def send(self, to, subject, html, text, attachments=()):
        if to in self.fail_for:
            raise smtplib.SMTPServerDisconnected(f"Connection unexpectedly closed while sending to {to}")
        self.sent.append({
            "to": to,
            "subject": subject,
            "html": html,
            "text": text,
            "attachments": list(attachments),
        })
        return to


class RecordingMessenger:
    configured = True

    def __init__(self):
        self.sent: List[dict] = []
        self.fail_for: set = set()

    def notify(self, to, params, text):
        if to in self.fail_for:
            raise RuntimeError(f"messaging API rejected {to}")
        self.sent.append({"to": to, "params": params, "text": text})
        return "text"


class RecordingUploader:
    configured = True

    def __init__(self):
        self.uploads: List[str] = []
        self.fail = False

    def upload(self, proof, reference):
        if self.fail:
            raise RuntimeError("upload service timed out")
        self.uploads.append(reference)
        return f"https://cdn.example.com/proofs/{reference}.png"


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        SECRET_KEY="test-secret",
        ADMIN_EMAIL="admin@lwg.test",
        ADMIN_WHATSAPP="+23276000000",
        SMTP_HOST="smtp.lwg.test",
        WHATSAPP_TOKEN="wa-token",
        WHATSAPP_PHONE_ID="12345",
        UPLOAD_URL="https://upload.example.com/image/upload",
    )


@pytest.fixture
def store():
    return FakeOrderStore()


@pytest.fixture
def admins():
    return FakeAdmins()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def messenger():
    return RecordingMessenger()


@pytest.fixture
def uploader():
    return RecordingUploader()


@pytest.fixture
def notifier(settings, mailer, messenger):
    return Notifier(settings, mailer, messenger)


@pytest.fixture
def app(settings, store, admins, notifier, uploader):
    return create_app(settings=settings, store=store, admins=admins, notifier=notifier, uploader=uploader)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_headers(settings, admins):
    admins.users["boss"] = {"username": "boss", "password_hash": "x", "role": "admin", "is_active": True}
    token = create_access_token({"sub": "boss", "role": "admin"}, settings.SECRET_KEY, timedelta(minutes=5))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def order_body():
    return {
        "order": {
            "items": [{"productKey": "mug", "unitTitle": "Mug", "unitPrice": 80, "quantity": 2}],
            "info": {
                "name": "Aminata Kamara",
                "phone": "+232 76 123 456",
                "email": "Aminata@Example.com",
                "address": "12 Wilkinson Road",
                "paymentMethod": "Orange Money",
            },
        }
    }
