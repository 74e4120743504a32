"""
Pytest configuration and shared fixtures for backend tests.

FakeDB is a small in-memory stand-in for the motor collections the pipeline
uses (insert/find/update/delete/count with the query operators we rely on).
It is patched onto the `database` singleton so every `database.get_db()`
call sees it.
"""
import copy
import os
import sys
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from types import SimpleNamespace

import pytest

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))


# ============================================================================
# FAKE MOTOR
# ============================================================================

def _matches_value(actual, expected):
    if isinstance(expected, dict) and any(k.startswith("$") for k in expected):
        for op, operand in expected.items():
            if op == "$in" and actual not in operand:
                return False
            if op == "$nin" and actual in operand:
                return False
            if op == "$ne" and actual == operand:
                return False
        return True
    return actual == expected


def _matches(doc, query):
    return all(_matches_value(doc.get(key), expected) for key, expected in (query or {}).items())


def _project(doc, projection):
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    excluded = [k for k, v in projection.items() if not v]
    included = [k for k, v in projection.items() if v]
    if included:
        keep = set(included)
        if projection.get("_id", 1):
            keep.add("_id")
        return {k: v for k, v in doc.items() if k in keep}
    for key in excluded:
        doc.pop(key, None)
    return doc


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key, direction=1):
        self._docs = sorted(self._docs, key=lambda d: d.get(key), reverse=direction == -1)
        return self

    def skip(self, count):
        self._docs = self._docs[count:]
        return self

    def limit(self, count):
        if count:
            self._docs = self._docs[:count]
        return self

    async def to_list(self, length=None):
        return self._docs[:length] if length else list(self._docs)


class FakeCollection:
    def __init__(self, name):
        self.name = name
        self.docs = []
        self.fail_inserts = False

    async def insert_one(self, doc):
        if self.fail_inserts:
            raise RuntimeError(f"insert into {self.name} failed")
        doc.setdefault("_id", uuid.uuid4().hex)
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=doc["_id"])

    async def find_one(self, query=None, projection=None):
        for doc in self.docs:
            if _matches(doc, query):
                return _project(doc, projection)
        return None

    def find(self, query=None, projection=None):
        return FakeCursor([_project(d, projection) for d in self.docs if _matches(d, query)])

    async def update_one(self, query, update, upsert=False):
        for doc in self.docs:
            if _matches(doc, query):
                doc.update(copy.deepcopy(update.get("$set", {})))
                return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
        if upsert:
            new_doc = {k: v for k, v in query.items() if not isinstance(v, dict)}
            new_doc.update(copy.deepcopy(update.get("$setOnInsert", {})))
            new_doc.update(copy.deepcopy(update.get("$set", {})))
            new_doc["_id"] = uuid.uuid4().hex
            self.docs.append(new_doc)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=new_doc["_id"])
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def delete_many(self, query):
        before = len(self.docs)
        self.docs = [d for d in self.docs if not _matches(d, query)]
        return SimpleNamespace(deleted_count=before - len(self.docs))

    async def count_documents(self, query):
        return sum(1 for d in self.docs if _matches(d, query))

    async def create_index(self, *args, **kwargs):
        return "ok"


class FakeDB:
    def __init__(self):
        self._collections = {}

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    async def command(self, *args, **kwargs):
        return {"ok": 1}


# ============================================================================
# FIXTURES
# ============================================================================

INTEGRATION_ENV_VARS = (
    "MOCK_SHAREPOINT",
    "AZURE_TENANT_ID",
    "AZURE_CLIENT_ID",
    "AZURE_CLIENT_SECRET",
    "LLM_API_KEY",
    "LLM_MODEL",
)


@pytest.fixture(autouse=True)
def clean_integration_env(monkeypatch):
    """Tests never pick up real integration credentials from the environment."""
    for name in INTEGRATION_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fake_db(monkeypatch):
    from database import database

    db = FakeDB()
    monkeypatch.setattr(database, "db", db)
    return db


@pytest.fixture
def encryption_key():
    return os.urandom(32)


@pytest.fixture
def config_store(fake_db, encryption_key):
    from services.config_store import ConfigStore

    return ConfigStore(encryption_key=encryption_key)


@pytest.fixture
def intake_schema():
    return {
        "type": "object",
        "title": "Project Details",
        "required": ["client_name", "project_type", "project_description"],
        "properties": {
            "client_name": {"type": "string", "title": "Client Name"},
            "project_type": {
                "type": "string",
                "title": "Project Type",
                "enum": ["Implementation", "Migration", "Assessment", "Security Audit", "Managed Services"],
            },
            "project_description": {"type": "string", "title": "Project Description", "format": "textarea"},
            "budget_usd": {"type": "number", "title": "Budget (USD)"},
            "timeline_weeks": {"type": "number", "title": "Timeline (weeks)"},
            "billing_model": {"type": "string", "title": "Billing Model", "enum": ["fixed", "tm", "retainer"]},
            "include_training": {"type": "boolean", "title": "Include End-User Training"},
            "special_requirements": {"type": "string", "title": "Special Requirements"},
        },
    }


@pytest.fixture
def intake_data():
    return {
        "client_name": "Acme Corp",
        "project_type": "Migration",
        "project_description": "Move 400 mailboxes to Exchange Online.",
        "budget_usd": "25000",
        "billing_model": "fixed",
        "include_training": True,
    }


@pytest.fixture
def sow_payload():
    """A generator response that satisfies the output contract."""
    return {
        "sow": {
            "project_title": "Exchange Online Migration",
            "client_name": "Acme Corp",
            "overview": "Acme Corp will move its on-premises mail to Exchange Online.",
            "objectives": ["Migrate all mailboxes", "Decommission on-prem Exchange"],
            "scope_included": ["Mailbox migration", "DNS cutover"],
            "scope_excluded": ["Archive migration"],
            "deliverables": [
                {"name": "Migration plan", "description": "Wave plan", "acceptance_criteria": "Signed off by IT lead"},
                {"name": "Cutover", "description": "MX cutover", "acceptance_criteria": "Mail flows"},
            ],
            "timeline": [{"milestone": "Kickoff", "eta": "Week 1"}, {"milestone": "Cutover", "eta": "Week 4"}],
            "roles_responsibilities": [
                {"role": "Project Manager", "responsibilities": ["Status reports", "Risk log"]},
                {"role": "Engineer", "responsibilities": ["Mailbox moves"]},
            ],
            "assumptions": ["Client provides admin access"],
            "risks": [{"risk": "Large mailboxes", "mitigation": "Pre-stage over weekends"}],
            "pricing": {"model": "fixed", "amount": 25000, "currency": "USD", "notes": "50% upfront"},
            "terms": ["Net 30"],
        },
        "doc_merge_map": {"objectives_list": "Migrate all mailboxes; Decommission on-prem Exchange"},
    }


@pytest.fixture
def generated_content(sow_payload):
    from models import GeneratedContent

    return GeneratedContent.model_validate(sow_payload)


@pytest.fixture
def template_doc(intake_schema):
    return {
        "template_id": "demo-template-001",
        "name": "Professional Services - Fixed Price",
        "description": "Standard fixed-price SOW",
        "intake_schema": intake_schema,
        "sharepoint_site_id": "site-1",
        "sharepoint_drive_id": "drive-1",
        "sharepoint_file_id": "template-file-1",
        "output_folder_id": "folder-1",
        "active": True,
        "created_by": "admin-1",
    }


@pytest.fixture
def app_without_lifespan(monkeypatch):
    """server.app with startup skipped; tests attach their own app.state components."""
    from server import app

    @asynccontextmanager
    async def no_lifespan(_app):
        yield

    monkeypatch.setattr(app.router, "lifespan_context", no_lifespan)
    return app
