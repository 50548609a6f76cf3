# cachestore.py
from __future__ import annotations

import hashlib
import io
import json
import os
import tarfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .errors import CacheBackendError
from .expressions import ExpressionContext, render
from .logging import get_logger
from .model import CacheSpec

log = get_logger("pipewright.cache")

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# A job's cache is addressed by a primary key, usually embedding
# hashFiles('<globs>') so that it changes with lockfile contents:
#
#     key:          Linux-cargo-${{ hashFiles('**/Cargo.lock') }}
#     restore_keys: [Linux-cargo-]
#
# Lookup order:
#   1. exact match on the primary key
#   2. each restore-key prefix in declared order; the most recent entry
#      whose key starts with that prefix wins, and the first prefix with
#      any match stops the search (prefix order beats recency)
#
# Every backend failure is logged and treated as a miss.
# ---------------------------------------------------------------------

DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".pipewright/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(repo_root: Path, patterns: List[str]) -> List[Path]:
    """
    Expand patterns into concrete files.
    Supports:
      - file path: "pyproject.toml"
      - dir path:  "src/"
      - glob:      "**/Cargo.lock", "tests/**/*.py"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = repo_root / pat
        candidates = [p] if p.exists() else sorted(repo_root.glob(pat))
        for c in candidates:
            if c.is_dir():
                out.extend(_iter_files_under(c))
            elif c.is_file():
                out.append(c)

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def hash_files(repo_root: str | Path, patterns: List[str]) -> str:
    """
    Digest of every file matching `patterns`, ordered by relative path.
    Empty string when nothing matches.
    """
    root = Path(repo_root).resolve()
    files = [
        f for f in _resolve_globs(root, patterns)
        if not _matches_any_glob(_relpath(f, root), DEFAULT_CACHE_EXCLUDES)
    ]
    if not files:
        return ""
    h = hashlib.sha256()
    for f in sorted(files, key=lambda p: _relpath(p, root)):
        h.update(_relpath(f, root).encode("utf-8"))
        h.update(_hash_file_contents(f).encode("ascii"))
    return h.hexdigest()


# ---------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CacheEntry:
    key: str
    content: bytes = field(repr=False)
    created_at: float = 0.0


class CacheBackend:
    """Storage boundary. Implementations raise CacheBackendError on failure."""

    def lookup(self, key: str) -> Optional[CacheEntry]:
        raise NotImplementedError

    def lookup_by_prefix(self, prefix: str) -> Optional[CacheEntry]:
        """Most recent entry whose key starts with prefix."""
        raise NotImplementedError

    def store(self, key: str, content: bytes) -> CacheEntry:
        raise NotImplementedError


class MemoryCacheBackend(CacheBackend):
    """Process-local backend, handy for dry runs and tests."""

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._seq = 0

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def lookup_by_prefix(self, prefix: str) -> Optional[CacheEntry]:
        matches = [e for k, e in self._entries.items() if k.startswith(prefix)]
        return max(matches, key=lambda e: e.created_at, default=None)

    def store(self, key: str, content: bytes, *, created_at: float | None = None) -> CacheEntry:
        with self._lock:
            self._seq += 1
            # sequence keeps ordering strict even when the clock doesn't move
            stamp = created_at if created_at is not None else time.time() + self._seq * 1e-6
            entry = CacheEntry(key=key, content=content, created_at=stamp)
            self._entries[key] = entry
            return entry


class LocalCacheBackend(CacheBackend):
    """
    File-based cache store:
      root/
        <sha256(key)>.tar.gz
        <sha256(key)>.manifest.json   {"key", "created_at", "size"}
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    def _ensure_root(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheBackendError(f"cannot create cache dir {self.root}: {e}") from e

    def _stem(self, key: str) -> str:
        return _sha256_bytes(key.encode("utf-8"))

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{self._stem(key)}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{self._stem(key)}.manifest.json"

    def _manifests(self) -> List[dict]:
        if not self.root.exists():
            return []
        out = []
        try:
            for p in self.root.glob("*.manifest.json"):
                try:
                    out.append(json.loads(p.read_text(encoding="utf-8")))
                except (ValueError, OSError) as e:
                    log.warning("ignoring unreadable cache manifest %s: %s", p, e)
        except OSError as e:
            raise CacheBackendError(f"cannot list cache dir {self.root}: {e}") from e
        return out

    def _read(self, manifest: dict) -> CacheEntry:
        key = manifest["key"]
        try:
            content = self.artifact_path(key).read_bytes()
        except OSError as e:
            raise CacheBackendError(f"cache artifact for {key!r} unreadable: {e}") from e
        return CacheEntry(key=key, content=content, created_at=float(manifest.get("created_at", 0.0)))

    def lookup(self, key: str) -> Optional[CacheEntry]:
        man = self.manifest_path(key)
        if not man.exists() or not self.artifact_path(key).exists():
            return None
        try:
            manifest = json.loads(man.read_text(encoding="utf-8"))
        except (ValueError, OSError) as e:
            raise CacheBackendError(f"cache manifest for {key!r} unreadable: {e}") from e
        return self._read(manifest)

    def lookup_by_prefix(self, prefix: str) -> Optional[CacheEntry]:
        matches = [
            m for m in self._manifests()
            if str(m.get("key", "")).startswith(prefix) and self.artifact_path(m["key"]).exists()
        ]
        if not matches:
            return None
        return self._read(max(matches, key=lambda m: float(m.get("created_at", 0.0))))

    def store(self, key: str, content: bytes) -> CacheEntry:
        self._ensure_root()
        art = self.artifact_path(key)
        man = self.manifest_path(key)
        created_at = time.time()
        tmp = art.with_suffix(".tmp")
        try:
            # write to tmp, then atomic rename
            tmp.write_bytes(content)
            tmp.replace(art)
            man.write_text(
                json.dumps({"key": key, "created_at": created_at, "size": len(content)}, sort_keys=True, indent=2),
                encoding="utf-8",
            )
        except OSError as e:
            raise CacheBackendError(f"cannot store cache entry {key!r}: {e}") from e
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)
        return CacheEntry(key=key, content=content, created_at=created_at)

    def prune(self, keep: int = 3) -> List[str]:
        """
        Keep only the newest N entries. Returns the removed keys.
        """
        manifests = sorted(self._manifests(), key=lambda m: float(m.get("created_at", 0.0)), reverse=True)
        removed = []
        for m in manifests[keep:]:
            key = m["key"]
            self.artifact_path(key).unlink(missing_ok=True)
            self.manifest_path(key).unlink(missing_ok=True)
            removed.append(key)
        return removed


# ---------------------------------------------------------------------
# Archives
# ---------------------------------------------------------------------

def pack_paths(repo_root: str | Path, paths: List[str]) -> bytes:
    """tar.gz of the given repo-relative paths, excluding DEFAULT_CACHE_EXCLUDES."""
    root = Path(repo_root).resolve()
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for entry in paths:
            src = (root / os.path.expanduser(entry)).resolve()
            if not src.exists():
                continue
            try:
                src.relative_to(root)
            except ValueError:
                log.warning("cache path %s is outside the repository, not cached", entry)
                continue
            files = [src] if src.is_file() else list(_iter_files_under(src))
            for f in files:
                rel = _relpath(f, root)
                if _matches_any_glob(rel, DEFAULT_CACHE_EXCLUDES):
                    continue
                tar.add(str(f), arcname=rel, recursive=False)
    return buf.getvalue()


def _checked_members(tar: tarfile.TarFile, dest: Path) -> List[tarfile.TarInfo]:
    """Members that extract inside dest; links and device files are refused."""
    members = []
    for m in tar.getmembers():
        target = (dest / m.name).resolve()
        if not (m.isfile() or m.isdir()) or (target != dest and dest not in target.parents):
            raise tarfile.TarError(f"refusing to extract {m.name!r}")
        members.append(m)
    return members


def unpack(content: bytes, repo_root: str | Path) -> None:
    dest = Path(repo_root).resolve()
    with tarfile.open(fileobj=io.BytesIO(content), mode="r:gz") as tar:
        # extraction filters arrived in 3.10.12 / 3.11.4
        if hasattr(tarfile, "data_filter"):
            tar.extractall(path=str(dest), filter="data")
        else:
            tar.extractall(path=str(dest), members=_checked_members(tar, dest))


# ---------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ResolvedCacheKey:
    key: str
    restore_keys: List[str] = field(default_factory=list, hash=False)
    paths: List[str] = field(default_factory=list, hash=False)


@dataclass
class CacheResolution:
    key: str
    paths: List[str] = field(default_factory=list)
    matched_key: str | None = None
    exact: bool = False
    warning: str | None = None
    saved: bool = False

    @property
    def hit(self) -> bool:
        return self.matched_key is not None

    @property
    def reason(self) -> str:
        if self.warning:
            return f"unavailable ({self.warning})"
        if self.exact:
            return "hit"
        if self.hit:
            return f"restored from {self.matched_key}"
        return "miss"


class CacheKeyResolver:
    """Resolves cache specs and looks them up against a backend."""

    def __init__(self, backend: CacheBackend | None, repo_root: str | Path = "."):
        self.backend = backend
        self.repo_root = Path(repo_root).resolve()

    def resolve(self, spec: CacheSpec, ctx: ExpressionContext | None = None) -> ResolvedCacheKey:
        ctx = ctx or ExpressionContext()
        if ctx.hash_files is None:
            ctx = ExpressionContext(ctx.namespaces, status=ctx.status,
                                    hash_files=lambda pats: hash_files(self.repo_root, pats))
        key = render(spec.key, ctx)
        restore = [render(p, ctx) for p in spec.restore_keys]
        paths = [render(p, ctx) for p in spec.paths]
        return ResolvedCacheKey(key=key, restore_keys=[p for p in restore if p], paths=[p for p in paths if p])

    def lookup(self, resolved: ResolvedCacheKey) -> tuple[CacheResolution, Optional[CacheEntry]]:
        result = CacheResolution(key=resolved.key, paths=list(resolved.paths))
        if self.backend is None:
            return result, None
        try:
            entry = self.backend.lookup(resolved.key)
            if entry is not None:
                result.matched_key, result.exact = entry.key, True
                return result, entry
            for prefix in resolved.restore_keys:
                entry = self.backend.lookup_by_prefix(prefix)
                if entry is not None:
                    result.matched_key = entry.key
                    return result, entry
        except (CacheBackendError, OSError) as e:
            log.warning("cache lookup for %r failed, running cold: %s", resolved.key, e)
            result.warning = str(e)
        return result, None

    def restore(self, spec: CacheSpec, ctx: ExpressionContext | None = None) -> CacheResolution:
        result, entry = self.lookup(self.resolve(spec, ctx))
        if entry is None or not result.paths:
            return result
        try:
            unpack(entry.content, self.repo_root)
        except (tarfile.TarError, OSError) as e:
            log.warning("cache entry %r could not be extracted, running cold: %s", entry.key, e)
            result.matched_key, result.exact, result.warning = None, False, str(e)
        return result

    def save(self, spec: CacheSpec, resolution: CacheResolution, *, on_exact_hit: bool = False) -> bool:
        paths = resolution.paths or spec.paths
        if self.backend is None or not paths:
            return False
        if resolution.exact and not on_exact_hit:
            return False
        try:
            content = pack_paths(self.repo_root, paths)
            self.backend.store(resolution.key, content)
        except (CacheBackendError, tarfile.TarError, OSError) as e:
            log.warning("cache save for %r failed: %s", resolution.key, e)
            return False
        resolution.saved = True
        return True
