"""Tests for agentmem.embedding -- provider availability, caching, circuit breaker."""
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from agentmem import embedding
from agentmem.embedding import LocalEmbeddingProvider, get_provider, reset_provider


class _FakeSTModel:
    """Stands in for a loaded SentenceTransformer."""

    def __init__(self):
        self.calls = 0

    def encode(self, texts, normalize_embeddings=True, batch_size=32):
        self.calls += 1
        return [np.array([float(len(t)), 1.0, 0.0, 0.0]) for t in texts]


@pytest.fixture
def loaded_provider(monkeypatch):
    monkeypatch.delenv("AGENTMEM_SKIP_EMBEDDINGS", raising=False)
    provider = LocalEmbeddingProvider(dimension=4)
    provider._model = _FakeSTModel()
    provider._backend = "sentence-transformers"
    return provider


class TestAvailability:
    def test_skip_env_disables(self, monkeypatch):
        monkeypatch.setenv("AGENTMEM_SKIP_EMBEDDINGS", "1")
        provider = LocalEmbeddingProvider()
        assert provider.is_configured() is False
        assert provider.embed("hello") == []
        assert provider.embed_batch(["a", "b"]) == [[], []]

    def test_not_configured_without_backends(self, monkeypatch, tmp_path):
        monkeypatch.delenv("AGENTMEM_SKIP_EMBEDDINGS", raising=False)
        with patch.object(embedding, "_has_module", return_value=False):
            provider = LocalEmbeddingProvider(model_dir=str(tmp_path))
            assert provider.is_configured() is False
            assert provider.embed("hello") == []

    def test_onnx_dir_detected(self, monkeypatch, tmp_path):
        monkeypatch.delenv("AGENTMEM_SKIP_EMBEDDINGS", raising=False)
        (tmp_path / "model.onnx").write_bytes(b"")
        with patch.object(embedding, "_has_module", side_effect=lambda name: name == "onnxruntime"):
            provider = LocalEmbeddingProvider(model_dir=str(tmp_path))
            assert provider.is_configured() is True
            assert provider.info()["onnx_model_dir"] == str(tmp_path)

    def test_empty_text(self, loaded_provider):
        assert loaded_provider.embed("") == []
        assert loaded_provider.embed_batch([]) == []


class TestEmbedding:
    def test_embed_uses_model(self, loaded_provider):
        assert loaded_provider.embed("abc") == [3.0, 1.0, 0.0, 0.0]

    def test_embed_cached(self, loaded_provider):
        loaded_provider.embed("same text")
        loaded_provider.embed("same text")
        assert loaded_provider._model.calls == 1
        assert loaded_provider.info()["cache_size"] == 1

    def test_embed_failure_returns_empty(self, loaded_provider):
        loaded_provider._model.encode = MagicMock(side_effect=RuntimeError("boom"))
        assert loaded_provider.embed("anything") == []

    def test_embed_batch_preserves_order(self, loaded_provider):
        assert loaded_provider.embed_batch(["a", "bbb"]) == [
            [1.0, 1.0, 0.0, 0.0],
            [3.0, 1.0, 0.0, 0.0],
        ]

    def test_embed_batch_failure_yields_empties(self, loaded_provider):
        loaded_provider._model.encode = MagicMock(side_effect=RuntimeError("boom"))
        assert loaded_provider.embed_batch(["a", "b"]) == [[], []]

    def test_reset_drops_model(self, loaded_provider):
        loaded_provider.embed("x")
        loaded_provider.reset()
        assert loaded_provider._model is None
        assert loaded_provider.backend is None
        assert loaded_provider.info()["cache_size"] == 0


class TestOnnxEncode:
    def test_mean_pooling_and_normalization(self):
        tokenizer = MagicMock()
        tokenizer.encode_batch.return_value = [SimpleNamespace(ids=[101, 7], attention_mask=[1, 0])]
        session = MagicMock()
        session.get_inputs.return_value = [SimpleNamespace(name="input_ids"),
                                           SimpleNamespace(name="attention_mask")]
        # (batch, tokens, dim); the padded second token must be ignored
        session.run.return_value = [np.array([[[3.0, 4.0], [100.0, 100.0]]], dtype=np.float32)]

        out = LocalEmbeddingProvider._onnx_encode(tokenizer, session, ["hi"])
        assert out.shape == (1, 2)
        assert out[0][0] == pytest.approx(0.6)
        assert out[0][1] == pytest.approx(0.8)
        feed = session.run.call_args[0][1]
        assert "token_type_ids" not in feed


class TestCircuitBreaker:
    def test_stops_retrying_after_max_attempts(self, monkeypatch):
        monkeypatch.delenv("AGENTMEM_SKIP_EMBEDDINGS", raising=False)
        provider = LocalEmbeddingProvider()
        with patch.object(embedding, "_has_module", return_value=False):
            for _ in range(embedding._MAX_LOAD_ATTEMPTS):
                assert provider._load_model() is None
            assert provider._attempts == embedding._MAX_LOAD_ATTEMPTS
            assert provider._load_model() is None
            assert provider._attempts == embedding._MAX_LOAD_ATTEMPTS

    def test_cooldown_allows_retry(self, monkeypatch):
        monkeypatch.delenv("AGENTMEM_SKIP_EMBEDDINGS", raising=False)
        provider = LocalEmbeddingProvider()
        with patch.object(embedding, "_has_module", return_value=False):
            for _ in range(embedding._MAX_LOAD_ATTEMPTS):
                provider._load_model()
            provider._first_failure -= embedding._CIRCUIT_BREAKER_COOLDOWN_S + 1
            provider._load_model()
            assert provider._attempts == 1


class TestSingleton:
    def test_get_provider_is_shared(self):
        assert get_provider() is get_provider()

    def test_reset_provider(self):
        first = get_provider()
        reset_provider()
        assert get_provider() is not first
