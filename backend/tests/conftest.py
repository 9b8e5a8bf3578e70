import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

import json
from typing import Any, Dict, List

import numpy as np
import pytest

from kb_service.core.config import Settings, get_settings
from kb_service.repositories.knowledge_store import KnowledgeStore
from kb_service.retrieval.tokenizer import tokenize
from kb_service.services.embedding_service import EmbeddingEngine


VOCAB = [
    "feathers", "service", "hooks", "register", "create", "authentication",
    "jwt", "database", "validate", "email", "timeout", "channel",
    "realtime", "schema", "query", "error",
]

FAKE_MODEL_NAME = "fake-model"
FAKE_SCHEME = f"{FAKE_MODEL_NAME}:mean:norm"


class FakeModel:
    """Deterministic bag-of-words encoder over VOCAB, L2-normalised."""

    def __init__(self, vocab: List[str] = VOCAB):
        self.vocab = {word: i for i, word in enumerate(vocab)}
        self.calls = 0

    def encode(self, text: str, **kwargs: Any) -> np.ndarray:
        self.calls += 1
        vector = np.zeros(len(self.vocab), dtype=np.float32)
        for token in tokenize(text):
            if token in self.vocab:
                vector[self.vocab[token]] += 1.0
        norm = np.linalg.norm(vector)
        return vector / norm if norm > 0 else vector


def embed_text(text: str) -> List[float]:
    return [float(x) for x in FakeModel().encode(text)]


def make_doc(
    doc_id: str,
    heading: str,
    content: str,
    version: str = "v6",
    embed: bool = True,
    **extra: Any,
) -> Dict[str, Any]:
    doc: Dict[str, Any] = {
        "id": doc_id,
        "heading": heading,
        "content": content,
        "rawContent": content,
        "breadcrumb": f"Guides > {heading}",
        "version": version,
    }
    if embed:
        doc["embedding"] = embed_text(f"{heading} {content}")
    doc.update(extra)
    return doc


def write_json(path: Path, payload: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def reset_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def kb_root(tmp_path: Path) -> Path:
    root = tmp_path / "knowledge-base"
    write_json(root / "chunks" / "v6" / "services.json", [
        make_doc(
            "svc-create", "Creating a service",
            "Register a feathers service with app.use to create a service.",
            category="services", sourceFile="guides/services.md", tokens=20,
        ),
        make_doc(
            "svc-hooks", "Service hooks",
            "Hooks run before and after every service method.",
            category="hooks", sourceFile="guides/services.md", tokens=15,
        ),
        make_doc(
            "svc-custom", "Custom service methods",
            "A feathers service can expose custom methods.",
            version="both", category="services", sourceFile="guides/services.md", tokens=12,
        ),
        make_doc(
            "auth-jwt", "JWT authentication",
            "Authentication uses the jwt strategy with the database.",
            category="authentication", sourceFile="guides/auth.md", tokens=18,
        ),
        make_doc(
            "foreign", "Feathers service",
            "feathers service feathers service",
            category="services", embeddingModel="other-model:cls:raw",
        ),
    ])
    write_json(root / "chunks" / "v5" / "hooks.json", [
        make_doc(
            "v5-hooks", "Hooks in v5",
            "Feathers v5 hooks register around a service.",
            version="v5", embed=False, sourceFile="v5/hooks.md",
        ),
    ])
    write_json(root / "chunks" / ".drafts" / "hidden.json", [
        make_doc("hidden", "Draft", "Not published yet."),
    ])
    write_json(root / "errors" / "errors.json", [
        {
            "id": "err-not-auth",
            "pattern": "NotAuthenticated",
            "cause": "No valid access token was sent.",
            "solution": "Authenticate the client before calling the service.",
            "category": "authentication",
            "embedding": embed_text("NotAuthenticated jwt authentication error"),
        },
        {
            "id": "err-not-auth-jwt",
            "pattern": "NotAuthenticated: jwt expired",
            "cause": "The JWT has expired.",
            "solution": "Refresh the access token.",
            "example": "await app.reAuthenticate(true)",
            "category": "authentication",
            "version": "v6",
        },
        {
            "id": "err-timeout",
            "pattern": "",
            "cause": "The database did not answer in time.",
            "solution": "Check the database connection pool.",
            "category": "database",
            "version": "v5",
            "embedding": embed_text("database timeout error"),
        },
        {
            "id": "err-schema",
            "pattern": "",
            "cause": "Request data failed schema validation.",
            "solution": "Validate the payload against the service schema.",
            "category": "validation",
            "embedding": embed_text("schema validate error"),
        },
    ])
    write_json(root / "snippets" / "hooks.json", [
        {
            "id": "hook-log",
            "type": "before",
            "useCase": "log every request",
            "code": "export const logRequest = async (context) => {}",
            "explanation": "Logs the method and path.",
            "embedding": embed_text("log every request"),
        },
        {
            "id": "hook-email",
            "type": "before",
            "useCase": "validate email",
            "code": "export const validateEmail = async (context) => {}",
            "explanation": "Rejects malformed email addresses.",
            "version": "v6",
            "embedding": embed_text("validate email"),
        },
        {
            "id": "hook-error",
            "type": "error",
            "useCase": "report errors",
            "code": "export const reportError = async (context) => {}",
            "explanation": "Sends the error to a tracker.",
        },
    ])
    write_json(root / "best-practices" / "hooks.json", [
        {
            "id": "bp-small",
            "topic": "hooks",
            "rule": "Keep hooks small.",
            "rationale": "Small hooks are easy to reuse.",
            "tags": ["reuse"],
        },
        {
            "id": "bp-validate",
            "topic": "hooks",
            "rule": "Validate data in before hooks.",
            "rationale": "Invalid data never reaches the database.",
            "tags": ["validation", "schema"],
        },
        {
            "id": "bp-errors",
            "topic": "hooks",
            "rule": "Use error hooks for logging.",
            "rationale": "Errors are handled in one place.",
            "tags": ["logging"],
        },
    ])
    write_json(root / "templates" / "base.json", [
        {
            "id": "tpl-app",
            "name": "app",
            "code": "const app = feathers()",
            "imports": ["import { feathers } from '@feathersjs/feathers'"],
            "featureFlags": ["koa"],
            "version": "v6",
        },
    ])
    return root


@pytest.fixture
def settings() -> Settings:
    return Settings(embedding_model_name=FAKE_MODEL_NAME)


@pytest.fixture
def fake_model() -> FakeModel:
    return FakeModel()


@pytest.fixture
def engine(settings: Settings, fake_model: FakeModel) -> EmbeddingEngine:
    return EmbeddingEngine(settings, model_factory=lambda _settings: fake_model)


@pytest.fixture
def store(kb_root: Path, settings: Settings) -> KnowledgeStore:
    return KnowledgeStore(root=kb_root, settings=settings)
