"""
agentmem embeddings -- local text-to-vector provider for semantic recall.

Provides ``LocalEmbeddingProvider``:
- ``embed(text)`` -> 384-dim normalized vector, or ``[]`` on any failure
- ``embed_batch(texts)`` -> one vector (or ``[]``) per input, same order
- ``is_configured()`` -> whether a backend can be loaded at all
- LRU cache for repeated texts, idle unloading, and a load circuit breaker

Uses bge-small-en-v1.5 via ONNX Runtime, or SentenceTransformers (PyTorch)
when the ONNX model is not downloaded. There is no pseudo-embedding fallback:
an empty vector means "no semantic signal" and every caller degrades to
keyword-only operation.

The provider is created once (``get_provider()``) and injected into the
components that need it.
"""

import contextlib
import hashlib
import importlib.util
import io
import logging
import os
import threading
import time
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np

__all__ = [
    "EMBEDDING_DIM",
    "LocalEmbeddingProvider",
    "get_provider",
    "reset_provider",
]

logger = logging.getLogger("agentmem.embedding")

EMBEDDING_DIM = 384
MAX_INPUT_CHARS = 32_000
BATCH_SIZE = 32

_MODEL_NAME = "bge-small-en-v1.5"
_ST_MODEL_ID = "BAAI/bge-small-en-v1.5"
_ONNX_DEFAULT_DIR = "~/.cache/agentmem/models/bge-small-en-v1.5-onnx"

_CACHE_MAX = 512
_IDLE_TIMEOUT_S = 600
_UNLOAD_CHECK_INTERVAL_S = 60
_MAX_LOAD_ATTEMPTS = 3
_CIRCUIT_BREAKER_COOLDOWN_S = 300


def _has_module(name: str) -> bool:
    try:
        return importlib.util.find_spec(name) is not None
    except (ImportError, ValueError):
        return False


class LocalEmbeddingProvider:
    """Embedding capability backed by a locally loaded model."""

    def __init__(self, model_dir: Optional[str] = None, dimension: int = EMBEDDING_DIM):
        self.dimension = dimension
        self._model_dir_override = model_dir
        self._lock = threading.Lock()
        self._model = None
        self._backend: Optional[str] = None  # "onnx" or "sentence-transformers"
        self._attempts = 0
        self._first_failure = 0.0
        self._last_embed = 0.0
        self._last_unload_check = 0.0
        self._cache: OrderedDict = OrderedDict()

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    def _onnx_model_dir(self) -> Optional[Path]:
        candidates = [
            self._model_dir_override,
            os.environ.get("AGENTMEM_ONNX_MODEL_DIR"),
            _ONNX_DEFAULT_DIR,
        ]
        for candidate in candidates:
            if not candidate:
                continue
            path = Path(os.path.expanduser(candidate))
            if (path / "model.onnx").exists():
                return path
        return None

    def is_configured(self) -> bool:
        """True when a backend exists that could produce embeddings."""
        if os.environ.get("AGENTMEM_SKIP_EMBEDDINGS") == "1":
            return False
        if self._model is not None:
            return True
        if _has_module("onnxruntime") and self._onnx_model_dir() is not None:
            return True
        return _has_module("sentence_transformers")

    @property
    def backend(self) -> Optional[str]:
        return self._backend

    # ------------------------------------------------------------------
    # Model lifecycle
    # ------------------------------------------------------------------

    def _load_model(self):
        """Lazy-load the model. Up to 3 attempts, then a 5 minute cooldown."""
        if self._model is not None:
            return self._model

        now = time.monotonic()
        if self._attempts >= _MAX_LOAD_ATTEMPTS:
            if self._first_failure and now - self._first_failure >= _CIRCUIT_BREAKER_COOLDOWN_S:
                logger.info("Embedding circuit breaker cooldown expired, retrying model load")
                self._attempts = 0
                self._first_failure = 0.0
            else:
                return None
        self._attempts += 1
        if self._attempts == 1:
            self._first_failure = now

        os.environ.setdefault("TQDM_DISABLE", "1")

        onnx_dir = self._onnx_model_dir() if _has_module("onnxruntime") else None
        if onnx_dir is not None:
            try:
                import onnxruntime as ort
                from tokenizers import Tokenizer

                tokenizer = Tokenizer.from_file(str(onnx_dir / "tokenizer.json"))
                tokenizer.enable_padding(pad_id=0, pad_token="[PAD]")
                tokenizer.enable_truncation(max_length=512)
                sess_opts = ort.SessionOptions()
                sess_opts.log_severity_level = 4
                sess_opts.enable_cpu_mem_arena = False
                with contextlib.redirect_stderr(io.StringIO()):
                    session = ort.InferenceSession(
                        str(onnx_dir / "model.onnx"),
                        sess_options=sess_opts,
                        providers=["CPUExecutionProvider"],
                    )
                self._model = (tokenizer, session)
                self._backend = "onnx"
                self._attempts = 0
                self._first_failure = 0.0
                logger.info("Loaded ONNX embedding model from %s", onnx_dir)
                return self._model
            except Exception as e:
                logger.warning("Failed to load ONNX model (attempt %d): %s", self._attempts, e)

        if _has_module("sentence_transformers"):
            try:
                from sentence_transformers import SentenceTransformer

                self._model = SentenceTransformer(_ST_MODEL_ID)
                self._backend = "sentence-transformers"
                self._attempts = 0
                self._first_failure = 0.0
                logger.info("Loaded sentence-transformers model %s", _ST_MODEL_ID)
                return self._model
            except Exception as e:
                logger.warning("Failed to load sentence-transformers: %s", e)

        logger.warning(
            "No embedding model loaded (attempt %d/%d); semantic recall disabled",
            self._attempts,
            _MAX_LOAD_ATTEMPTS,
        )
        return None

    def _maybe_unload(self) -> None:
        """Drop the model after 10 idle minutes; it reloads lazily on demand."""
        now = time.monotonic()
        if now - self._last_unload_check < _UNLOAD_CHECK_INTERVAL_S:
            return
        self._last_unload_check = now
        if self._model is None or self._last_embed == 0.0:
            return
        if now - self._last_embed < _IDLE_TIMEOUT_S:
            return
        logger.info("Idle-unloading embedding model (idle > %ds)", _IDLE_TIMEOUT_S)
        self._model = None
        self._backend = None
        self._last_embed = 0.0
        self._cache.clear()

    def reset(self) -> None:
        """Forget the loaded model, cache and circuit breaker state."""
        with self._lock:
            self._model = None
            self._backend = None
            self._attempts = 0
            self._first_failure = 0.0
            self._last_embed = 0.0
            self._cache.clear()

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    @staticmethod
    def _onnx_encode(tokenizer, session, texts: List[str]) -> "np.ndarray":
        batch = tokenizer.encode_batch(texts)
        ids = np.array([b.ids for b in batch], dtype=np.int64)
        mask = np.array([b.attention_mask for b in batch], dtype=np.int64)
        feed = {"input_ids": ids, "attention_mask": mask}
        if "token_type_ids" in {i.name for i in session.get_inputs()}:
            feed["token_type_ids"] = np.zeros_like(ids)
        outputs = session.run(None, feed)
        embeddings = outputs[1] if len(outputs) > 1 else outputs[0]
        if embeddings.ndim == 3:
            # Mean pooling over non-padding tokens
            mask_expanded = mask[:, :, np.newaxis].astype(np.float32)
            embeddings = np.sum(embeddings * mask_expanded, axis=1) / np.clip(
                np.sum(mask_expanded, axis=1), a_min=1e-9, a_max=None
            )
        norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
        return embeddings / np.clip(norms, a_min=1e-9, a_max=None)

    def _encode(self, model, texts: List[str]) -> List[List[float]]:
        if self._backend == "onnx":
            tokenizer, session = model
            return self._onnx_encode(tokenizer, session, texts).tolist()
        return [e.tolist() for e in model.encode(texts, normalize_embeddings=True, batch_size=BATCH_SIZE)]

    def embed(self, text: str) -> List[float]:
        """Embed one text. Never raises; returns [] when no vector is available."""
        if not text or not self.is_configured():
            return []
        text = text[:MAX_INPUT_CHARS]
        cache_key = hashlib.md5(text.encode()).hexdigest()
        with self._lock:
            self._maybe_unload()
            cached = self._cache.get(cache_key)
            if cached is not None:
                self._cache.move_to_end(cache_key)
                self._last_embed = time.monotonic()
                return cached
            try:
                model = self._load_model()
                if model is None:
                    return []
                vector = self._encode(model, [text])[0]
            except Exception as e:
                logger.warning("Embedding generation failed: %s", e)
                return []
            self._cache[cache_key] = vector
            while len(self._cache) > _CACHE_MAX:
                self._cache.popitem(last=False)
            self._last_embed = time.monotonic()
            return vector

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed many texts. Failed chunks yield [] for each of their items."""
        if not texts:
            return []
        if not self.is_configured():
            return [[] for _ in texts]
        results: List[List[float]] = [[] for _ in texts]
        with self._lock:
            model = self._load_model()
            if model is None:
                return results
            for start in range(0, len(texts), BATCH_SIZE):
                chunk = [t[:MAX_INPUT_CHARS] for t in texts[start:start + BATCH_SIZE]]
                try:
                    vectors = self._encode(model, chunk)
                except Exception as e:
                    logger.warning("Batch %d-%d embedding failed: %s", start, start + len(chunk), e)
                    continue
                for offset, vector in enumerate(vectors):
                    results[start + offset] = vector
            self._last_embed = time.monotonic()
        return results

    def info(self) -> Dict[str, Any]:
        onnx_dir = self._onnx_model_dir()
        return {
            "configured": self.is_configured(),
            "backend": self._backend,
            "model": _MODEL_NAME,
            "model_loaded": self._model is not None,
            "onnx_available": _has_module("onnxruntime"),
            "onnx_model_dir": str(onnx_dir) if onnx_dir else None,
            "sentence_transformers_available": _has_module("sentence_transformers"),
            "dimension": self.dimension,
            "cache_size": len(self._cache),
        }


_provider: Optional[LocalEmbeddingProvider] = None
_provider_lock = threading.Lock()


def get_provider() -> LocalEmbeddingProvider:
    """Process-wide provider, created once."""
    global _provider
    if _provider is not None:
        return _provider
    with _provider_lock:
        if _provider is None:
            _provider = LocalEmbeddingProvider()
    return _provider


def reset_provider() -> None:
    """Drop the process-wide provider (test isolation)."""
    global _provider
    with _provider_lock:
        _provider = None
