"""agentmem test configuration."""
import os
import sys
from pathlib import Path

import pytest

# Ensure agentmem package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


class FakeProvider:
    """Deterministic embedding provider: text -> preset vector ([] when unknown)."""

    def __init__(self, vectors=None, fail=False):
        self.vectors = dict(vectors or {})
        self.fail = fail
        self.calls = []

    def is_configured(self):
        return True

    def embed(self, text):
        self.calls.append(text)
        if self.fail:
            raise RuntimeError("embedding backend down")
        return list(self.vectors.get(text, []))

    def embed_batch(self, texts):
        return [list(self.vectors.get(t, [])) for t in texts]

    def info(self):
        return {"configured": True, "backend": "fake", "dimension": 4}


class FakeJudge:
    """Judge returning a fixed verdict and recording every call."""

    def __init__(self, verdict=None):
        self.verdict = verdict
        self.calls = []

    def judge(self, existing_text, new_text, existing_created_at):
        self.calls.append((existing_text, new_text))
        return self.verdict


# Synthetic unit vectors with known cosine similarity to BASE_VEC
BASE_VEC = [1.0, 0.0, 0.0, 0.0]
SIM_95_VEC = [0.95, 0.31225, 0.0, 0.0]
SIM_80_VEC = [0.8, 0.6, 0.0, 0.0]
ORTHO_VEC = [0.0, 0.0, 1.0, 0.0]


@pytest.fixture
def tmp_agentmem_dir(tmp_path):
    """Create a temporary AGENTMEM_HOME for testing."""
    home = tmp_path / ".agentmem"
    home.mkdir()
    old = {k: os.environ.get(k) for k in ("AGENTMEM_HOME", "AGENTMEM_ENCRYPT", "AGENTMEM_SKIP_EMBEDDINGS")}
    os.environ["AGENTMEM_HOME"] = str(home)
    # Default: plaintext content and no model loading, for deterministic output
    os.environ["AGENTMEM_ENCRYPT"] = "0"
    os.environ["AGENTMEM_SKIP_EMBEDDINGS"] = "1"
    yield home
    for key, value in old.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    from agentmem.crypto import reset_crypto_state
    reset_crypto_state()


@pytest.fixture
def tmp_agentmem_dir_encrypted(tmp_agentmem_dir):
    """Temporary AGENTMEM_HOME with encryption enabled."""
    os.environ["AGENTMEM_ENCRYPT"] = "1"
    from agentmem.crypto import reset_crypto_state
    reset_crypto_state()
    yield tmp_agentmem_dir
    reset_crypto_state()


@pytest.fixture(autouse=True)
def _reset_embeddings_after_test():
    """Drop the process-wide embedding provider after every test."""
    yield
    from agentmem.embedding import reset_provider
    reset_provider()


@pytest.fixture
def _reset_bridge(tmp_agentmem_dir):
    """Reset the bridge singleton so each test gets a fresh store."""
    from agentmem.bridge import reset_memory

    reset_memory()
    yield
    reset_memory()


@pytest.fixture
def store(tmp_agentmem_dir):
    """Create a fresh MemoryStore for testing."""
    from agentmem.sqlite_store import MemoryStore
    s = MemoryStore(db_path=tmp_agentmem_dir / "test.db")
    yield s
    s.close()


@pytest.fixture
def vec_store(store):
    """A store with sqlite-vec loaded; skips where the extension is unavailable."""
    if not store.vec_available:
        pytest.skip("sqlite-vec extension not loadable in this interpreter")
    return store


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def fake_judge():
    return FakeJudge()
