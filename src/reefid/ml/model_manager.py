"""Model manager: fetch, map, load, cache, invoke, and evict the ONNX classifier.

Handles optional asset download from HuggingFace, memory-mapping the bundled
model file, creating and caching ONNX InferenceSessions keyed by asset
identity, TTL-based eviction, and the single forward pass of the classifier.
"""

from __future__ import annotations

import logging
import mmap
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import numpy as np
from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from reefid.ml.labels import load_labels
from reefid.ml.preprocessing import to_model_input

if TYPE_CHECKING:
    from collections.abc import Iterator
    from contextlib import AbstractContextManager

    from reefid.config import Settings

logger = logging.getLogger(__name__)


class ShapeMismatchError(ValueError):
    """The model's output length does not match the number of class labels."""


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def get_labels(self, path: Path) -> tuple[str, ...]:
        """Return the label list stored at ``path``."""
        ...

    def open_session(self, path: Path) -> AbstractContextManager[InferenceSession]:
        """Yield an InferenceSession for the model stored at ``path``."""
        ...

    def invoke(self, session: InferenceSession, buffer: bytes, num_classes: int) -> bytes:
        """Run one forward pass and return the raw float32 output buffer."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def unload_idle_models(self) -> None:
        """Unload models that have exceeded their TTL."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions and labels."""
        ...


# ---------------------------------------------------------------------------
# Asset identity
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AssetKey:
    """Identity of a bundled file: a cache entry is valid while this is unchanged."""

    path: Path
    mtime_ns: int
    size: int

    @classmethod
    def for_path(cls, path: Path) -> AssetKey:
        resolved = path.resolve()
        stat = resolved.stat()
        return cls(path=resolved, mtime_ns=stat.st_mtime_ns, size=stat.st_size)


def load_model_bytes(path: Path) -> bytes:
    """Map the model file read-only and return its contents.

    onnxruntime only accepts a path or a ``bytes`` object, so the mapped region
    is materialized once here.
    """
    with path.open("rb") as fh, mmap.mmap(fh.fileno(), 0, access=mmap.ACCESS_READ) as mapped:
        return mapped[:]


def declared_num_classes(session: InferenceSession) -> int | None:
    """Return the static class dimension of the model output, if it has one."""
    shape = session.get_outputs()[0].shape
    if not shape:
        return None
    last = shape[-1]
    return last if isinstance(last, int) else None


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


@dataclass
class _CachedSession:
    session: InferenceSession
    last_used: float


class OnnxModelManager:
    """Loads, caches, runs, and evicts ONNX inference sessions and label lists."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

        self._lock = threading.Lock()
        self._sessions: dict[AssetKey, _CachedSession] = {}
        self._labels: dict[AssetKey, tuple[str, ...]] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_assets(self) -> Path:
        """Download missing model and label files from HuggingFace, if a repo is configured."""
        settings = self._settings
        if settings.model_repo_id is None:
            return settings.model_path

        settings.assets_dir.mkdir(parents=True, exist_ok=True)
        for filename in (settings.model_filename, settings.labels_filename):
            if (settings.assets_dir / filename).exists():
                continue
            downloaded = hf_hub_download(
                repo_id=settings.model_repo_id,
                filename=filename,
                local_dir=str(settings.assets_dir),
            )
            logger.info("Downloaded %s to %s", filename, downloaded)
        return settings.model_path

    def get_labels(self, path: Path) -> tuple[str, ...]:
        """Return the labels stored at ``path``, cached while the file is unchanged."""
        if not self._settings.cache_models:
            return load_labels(path)

        try:
            key = AssetKey.for_path(path)
        except OSError:
            # Missing file: the loader logs and supplies the fallback list.
            return load_labels(path)

        with self._lock:
            cached = self._labels.get(key)
            if cached is not None:
                return cached

        labels = load_labels(path)
        with self._lock:
            self._drop_stale(self._labels, key)
            return self._labels.setdefault(key, labels)

    @contextmanager
    def open_session(self, path: Path) -> Iterator[InferenceSession]:
        """Yield a session for the model at ``path``.

        With caching enabled the session is shared and stays loaded. Without
        it a fresh session with default options is built for this call and
        released on exit.
        """
        if self._settings.cache_models:
            yield self.get_session(path)
            return

        session = self._create_session(path, sess_options=None)
        try:
            yield session
        finally:
            del session
            logger.debug("Released per-call session for %s", path)

    def get_session(self, path: Path) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        key = AssetKey.for_path(path)
        with self._lock:
            cached = self._sessions.get(key)
            if cached is not None:
                cached.last_used = time.monotonic()
                return cached.session

        session = self._create_session(key.path, sess_options=self._session_options)

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._sessions.get(key)
            if existing is not None:
                existing.last_used = time.monotonic()
                return existing.session
            self._drop_stale(self._sessions, key)
            self._sessions[key] = _CachedSession(
                session=session,
                last_used=time.monotonic(),
            )
            logger.info("Loaded session for %s", key.path.name)
            return session

    def invoke(self, session: InferenceSession, buffer: bytes, num_classes: int) -> bytes:
        """Feed the packed input buffer through the model.

        Returns exactly ``num_classes`` float32 values in native byte order.

        Raises:
            ShapeMismatchError: If the model output has a different length.
        """
        input_name = session.get_inputs()[0].name
        output_name = session.get_outputs()[0].name
        batch = to_model_input(buffer, self._settings.input_size)

        (raw,) = session.run([output_name], {input_name: batch})
        values = np.asarray(raw, dtype=np.float32).reshape(-1)
        if values.size != num_classes:
            raise ShapeMismatchError(f"Model produced {values.size} outputs for {num_classes} labels")

        output = np.empty(num_classes, dtype=np.float32)
        output[:] = values
        return output.tobytes()

    def model_status(self, path: Path) -> str:
        """Return 'active', 'available', or 'missing' for the model at ``path``."""
        resolved = path.resolve()
        with self._lock:
            if any(key.path == resolved for key in self._sessions):
                return "active"
        return "available" if resolved.exists() else "missing"

    def get_loaded_models(self) -> list[str]:
        """Return file names of models with active sessions."""
        with self._lock:
            return [key.path.name for key in self._sessions]

    def unload_idle_models(self) -> None:
        """Remove sessions that have exceeded the configured TTL."""
        ttl = self._settings.model_ttl
        if ttl == 0:
            return

        now = time.monotonic()
        with self._lock:
            expired = [key for key, cached in self._sessions.items() if (now - cached.last_used) > ttl]
            for key in expired:
                del self._sessions[key]
                logger.info("Evicted idle session for %s", key.path.name)

    def shutdown(self) -> None:
        """Clear all cached sessions and labels."""
        with self._lock:
            self._sessions.clear()
            self._labels.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _drop_stale(cache: dict[AssetKey, object], key: AssetKey) -> None:
        for stale in [k for k in cache if k.path == key.path and k != key]:
            del cache[stale]
            logger.info("Dropped outdated cache entry for %s", stale.path.name)

    def _create_session(self, path: Path, sess_options: SessionOptions | None) -> InferenceSession:
        return InferenceSession(
            load_model_bytes(path),
            sess_options=sess_options,
            providers=self._providers,
        )

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
