"""
Repository Ingestion: validate, extract, manifest and index uploaded archives.

Pipeline for one upload:
  1. Validate the archive as a whole (name, size, entry count, entry paths,
     symlinks, declared sizes, compression ratio). Nothing is written yet.
  2. Create the snapshot row (status=uploading) and extract into
     <repo_storage_path>/<org_id>/<snapshot_id>, counting streamed bytes, then
     make the tree read-only (files 0o444, directories 0o555).
  3. Build the deterministic manifest (sorted paths, SHA-256 per file).
  4. Detect technologies and index the manifest into repository_files.
  5. Mark the snapshot indexed.

Any failure after step 2 removes the partial directory, marks the snapshot
`error` with the message, commits that state and re-raises.
"""

from __future__ import annotations

import asyncio
import hashlib
import io
import logging
import os
import posixpath
import re
import shutil
import stat
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

from sqlalchemy import select, insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings as default_settings
from app.database import utcnow
from app.errors import ValidationError
from app.models import RepositorySnapshot, RepositoryFile
from app.models.enums import SnapshotStatus, FileCategory
from app.services.audit_service import AuditService
from app.services.technology_detector import detect_technologies

logger = logging.getLogger(__name__)

MAX_PATH_LENGTH = 4096
INDEX_BATCH_SIZE = 1000
HASH_CHUNK_SIZE = 64 * 1024
READ_ONLY_FILE_MODE = 0o444
READ_ONLY_DIR_MODE = 0o555

BLOCKED_EXTENSIONS = {
    ".exe", ".dll", ".so", ".dylib", ".app", ".dmg", ".pkg", ".deb", ".rpm",
    ".msi", ".bat", ".cmd", ".ps1", ".vbs", ".scr", ".com",
}

EXT_TO_LANG = {
    ".py": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".java": "java",
    ".kt": "kotlin",
    ".go": "go",
    ".rs": "rust",
    ".rb": "ruby",
    ".php": "php",
    ".cs": "csharp",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".swift": "swift",
    ".scala": "scala",
    ".sql": "sql",
    ".sh": "shell",
    ".bash": "shell",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".json": "json",
    ".toml": "toml",
    ".xml": "xml",
    ".md": "markdown",
    ".tf": "terraform",
    ".hcl": "terraform",
}

SOURCE_EXTENSIONS = {
    ".js", ".jsx", ".mjs", ".ts", ".tsx", ".py", ".java", ".kt", ".go", ".rb",
    ".php", ".c", ".h", ".cpp", ".hpp", ".cs", ".rs", ".swift", ".scala", ".sql", ".sh",
}

CONFIG_EXTENSIONS = {".yaml", ".yml", ".toml", ".ini", ".cfg", ".conf", ".env", ".properties", ".xml"}
CONFIG_NAMES = {
    ".gitignore", ".dockerignore", ".env", "package.json", "package-lock.json", "yarn.lock",
    "pnpm-lock.yaml", "requirements.txt", "pipfile", "pipfile.lock", "poetry.lock", "go.mod",
    "go.sum", "cargo.toml", "cargo.lock", "gemfile", "gemfile.lock", "composer.json",
    "composer.lock", "pom.xml", "build.gradle", "setup.py", "setup.cfg", "pyproject.toml",
}

SECURITY_KEYWORDS = (
    "auth", "security", "crypto", "encrypt", "middleware", "jwt", "oauth", "permission",
    "role", "access", "session", "token", "secret", "password", "login", "policy",
)

_DRIVE_LETTER = re.compile(r"^[A-Za-z]:")


# ── Result types ──────────────────────────────────────────────────────────────

@dataclass
class ManifestEntry:
    relative_path: str
    file_name: str
    file_type: str
    size: int
    content_hash: str | None
    language: str | None
    category: str
    is_security_relevant: bool
    is_oversized: bool = False


@dataclass
class Manifest:
    files: list[ManifestEntry] = field(default_factory=list)
    manifest_hash: str = ""
    total_size: int = 0


@dataclass
class UploadResult:
    snapshot_id: str
    extracted_path: str
    file_count: int
    manifest_hash: str
    technologies: list[str]
    duplicate_of: str | None = None


# ── File classification ───────────────────────────────────────────────────────

def detect_language(file_name: str) -> str | None:
    if file_name.lower().startswith("dockerfile"):
        return "dockerfile"
    return EXT_TO_LANG.get(posixpath.splitext(file_name)[1].lower())


def categorize_file(relative_path: str) -> str:
    lower_path = relative_path.lower()
    name = posixpath.basename(lower_path)
    ext = posixpath.splitext(name)[1]
    parts = lower_path.split("/")[:-1]

    if (
        ".github/workflows/" in f"/{lower_path}"
        or ".circleci" in parts
        or name in (".gitlab-ci.yml", "jenkinsfile", ".travis.yml", "azure-pipelines.yml", "bitbucket-pipelines.yml")
    ):
        return FileCategory.CI_CD.value

    if (
        ext in (".tf", ".hcl")
        or name.startswith("dockerfile")
        or name.startswith("docker-compose")
        or name == "chart.yaml"
        or any(p in ("terraform", "cloudformation", "kubernetes", "k8s", "helm") for p in parts)
    ):
        return FileCategory.IAC.value

    if (
        any(p in ("test", "tests", "__tests__", "spec") for p in parts)
        or ".test." in name
        or ".spec." in name
        or (name.startswith("test_") and ext == ".py")
    ):
        return FileCategory.TEST.value

    if ext in (".md", ".rst", ".adoc", ".txt") and name not in CONFIG_NAMES or "docs" in parts or name == "license":
        return FileCategory.DOCS.value

    if name in CONFIG_NAMES or ext in CONFIG_EXTENSIONS or name.startswith(".env") or (
        ext == ".json" and "config" in name
    ):
        return FileCategory.CONFIG.value

    if ext in SOURCE_EXTENSIONS:
        return FileCategory.SOURCE.value

    return FileCategory.OTHER.value


def is_security_relevant(relative_path: str, category: str) -> bool:
    if category in (FileCategory.CI_CD.value, FileCategory.IAC.value):
        return True
    lower_path = relative_path.lower()
    if posixpath.basename(lower_path).startswith(".env"):
        return True
    return any(keyword in lower_path for keyword in SECURITY_KEYWORDS)


# ── Archive validation ────────────────────────────────────────────────────────

def sanitize_entry_path(entry_name: str) -> str:
    """
    Normalize a zip entry name to a safe relative POSIX path.

    Raises ValidationError for traversal, absolute paths, NUL bytes and
    over-long names.
    """
    if "\x00" in entry_name:
        raise ValidationError("Archive entry contains a NUL byte", details={"entry": entry_name[:200]})
    if len(entry_name) > MAX_PATH_LENGTH:
        raise ValidationError(
            f"Archive entry path exceeds {MAX_PATH_LENGTH} characters",
            details={"entry": entry_name[:200]},
        )

    normalized = entry_name.replace("\\", "/")
    if normalized.startswith("/") or _DRIVE_LETTER.match(normalized):
        raise ValidationError("Archive contains an absolute path", details={"entry": entry_name[:200]})

    parts = [p for p in normalized.split("/") if p not in ("", ".")]
    if any(p == ".." for p in parts):
        raise ValidationError("Archive contains a path traversal sequence", details={"entry": entry_name[:200]})

    return "/".join(parts)


def _is_symlink(info: zipfile.ZipInfo) -> bool:
    mode = info.external_attr >> 16
    return stat.S_ISLNK(mode)


def _check_path_conflicts(paths: list[str]) -> None:
    """Reject duplicate entries and files that are also a directory of another entry."""
    files: set[str] = set()
    for path in paths:
        if path in files:
            raise ValidationError("Archive contains a duplicate entry", details={"entry": path[:200]})
        files.add(path)

    for path in paths:
        parent = posixpath.dirname(path)
        while parent:
            if parent in files:
                raise ValidationError(
                    "Archive entry is both a file and a directory",
                    details={"entry": parent[:200]},
                )
            parent = posixpath.dirname(parent)


def validate_archive(data: bytes, filename: str, config: Settings) -> list[tuple[zipfile.ZipInfo, str]]:
    """
    Validate the whole archive before anything is created.

    Returns the (entry, safe relative path) pairs to extract. Directories
    and blocked executable types are left out.
    """
    if not filename.lower().endswith(".zip"):
        raise ValidationError("Only .zip archives are accepted", details={"filename": filename})

    if len(data) > config.max_upload_bytes:
        raise ValidationError(
            f"Archive exceeds maximum upload size of {config.max_upload_bytes // (1024 * 1024)}MB",
            details={"size": len(data), "max_size": config.max_upload_bytes},
        )

    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
    except (zipfile.BadZipFile, OSError) as e:
        raise ValidationError("Invalid or corrupted ZIP archive", details={"error": str(e)}) from e

    with zf:
        infos = zf.infolist()
        if len(infos) > config.max_archive_entries:
            raise ValidationError(
                f"Archive contains too many entries ({len(infos)}). Maximum allowed: {config.max_archive_entries}",
                details={"entries": len(infos), "max_entries": config.max_archive_entries},
            )

        selected: list[tuple[zipfile.ZipInfo, str]] = []
        declared_total = 0
        for info in infos:
            safe_path = sanitize_entry_path(info.filename)
            if _is_symlink(info):
                raise ValidationError("Archive contains a symbolic link", details={"entry": info.filename[:200]})
            if info.is_dir() or not safe_path:
                continue

            declared_total += info.file_size

            ext = posixpath.splitext(safe_path)[1].lower()
            if ext in BLOCKED_EXTENSIONS:
                logger.warning("Skipping blocked file type %s in archive %s", safe_path, filename)
                continue
            selected.append((info, safe_path))

    _check_path_conflicts([p for _, p in selected])

    if declared_total > config.max_extracted_bytes:
        raise ValidationError(
            "Extracted size would exceed the configured maximum",
            details={"size": declared_total, "max_size": config.max_extracted_bytes},
        )

    ratio = declared_total / max(len(data), 1)
    if ratio > config.compression_ratio_threshold:
        raise ValidationError(
            "Suspicious compression ratio detected (possible zip bomb)",
            details={"ratio": round(ratio, 2), "threshold": config.compression_ratio_threshold},
        )

    return selected


def extract_archive(
    data: bytes,
    entries: list[tuple[zipfile.ZipInfo, str]],
    target: Path,
    max_extracted_bytes: int,
) -> tuple[int, int]:
    """
    Extract the validated entries under `target`.

    Enforces the extracted-size limit on the bytes actually written, since
    declared sizes in entry headers are not trustworthy. Returns
    (file_count, bytes_written).
    """
    root = target.resolve()
    root.mkdir(parents=True, exist_ok=False)

    written_total = 0
    file_count = 0
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        for info, safe_path in entries:
            dest = (root / safe_path).resolve()
            if root != dest and root not in dest.parents:
                raise ValidationError("Archive entry resolves outside the extraction root", details={"entry": safe_path})

            dest.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info) as src, open(dest, "wb") as out:
                while True:
                    chunk = src.read(HASH_CHUNK_SIZE)
                    if not chunk:
                        break
                    written_total += len(chunk)
                    if written_total > max_extracted_bytes:
                        raise ValidationError(
                            "Extracted size exceeded the configured maximum during extraction",
                            details={"max_size": max_extracted_bytes},
                        )
                    out.write(chunk)
            file_count += 1

    return file_count, written_total


def make_tree_read_only(root: Path) -> None:
    """Freeze an extracted tree: files 0o444, directories 0o555."""
    for dirpath, dirnames, filenames in os.walk(root, topdown=False):
        for name in filenames:
            os.chmod(os.path.join(dirpath, name), READ_ONLY_FILE_MODE)
        for name in dirnames:
            os.chmod(os.path.join(dirpath, name), READ_ONLY_DIR_MODE)
    os.chmod(root, READ_ONLY_DIR_MODE)


def remove_tree(path: str | Path) -> None:
    """Delete an extraction directory, read-only or not. A missing path is a no-op."""
    root = Path(path)
    if not root.exists():
        return
    # unlinking needs write permission on the containing directory only
    for dirpath, _dirnames, _filenames in os.walk(root):
        os.chmod(dirpath, 0o755)
    shutil.rmtree(root)


# ── Manifest ──────────────────────────────────────────────────────────────────

def _hash_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def generate_manifest(extracted_path: str | Path, max_hash_bytes: int) -> Manifest:
    """
    Build the deterministic manifest of an extracted tree.

    The aggregate hash covers `relative_path \\0 size \\0 content_hash \\n`
    for every file in sorted path order; oversized files contribute an
    empty content hash. No timestamps or ids are included, so identical
    content always yields the same hash.
    """
    root = Path(extracted_path)
    relative_paths: list[str] = []
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            full = Path(dirpath) / name
            if full.is_symlink() or not full.is_file():
                continue
            relative_paths.append(full.relative_to(root).as_posix())
    relative_paths.sort()

    manifest = Manifest()
    aggregate = hashlib.sha256()
    for rel in relative_paths:
        full = root / rel
        size = full.stat().st_size
        oversized = size > max_hash_bytes
        content_hash = None if oversized else _hash_file(full)
        category = categorize_file(rel)
        name = posixpath.basename(rel)

        manifest.files.append(ManifestEntry(
            relative_path=rel,
            file_name=name,
            file_type=posixpath.splitext(name)[1].lower() or "none",
            size=size,
            content_hash=content_hash,
            language=detect_language(name),
            category=category,
            is_security_relevant=is_security_relevant(rel, category),
            is_oversized=oversized,
        ))
        manifest.total_size += size
        aggregate.update(f"{rel}\0{size}\0{content_hash or ''}\n".encode("utf-8"))

    manifest.manifest_hash = aggregate.hexdigest()
    return manifest


# ── Indexer ───────────────────────────────────────────────────────────────────

async def index_files(session: AsyncSession, snapshot: RepositorySnapshot, manifest: Manifest) -> int:
    """Persist manifest entries in batches and mark the snapshot indexed."""
    now = utcnow()
    for start in range(0, len(manifest.files), INDEX_BATCH_SIZE):
        batch = manifest.files[start:start + INDEX_BATCH_SIZE]
        await session.execute(
            insert(RepositoryFile),
            [
                {
                    "snapshot_id": snapshot.id,
                    "relative_path": e.relative_path,
                    "file_name": e.file_name,
                    "file_type": e.file_type,
                    "size": e.size,
                    "content_hash": e.content_hash,
                    "language": e.language,
                    "category": e.category,
                    "is_security_relevant": e.is_security_relevant,
                    "is_oversized": e.is_oversized,
                    "indexed_at": now,
                }
                for e in batch
            ],
        )

    snapshot.file_count = len(manifest.files)
    snapshot.total_size = manifest.total_size
    snapshot.status = SnapshotStatus.INDEXED.value
    await session.flush()
    logger.info("Indexed %d files for snapshot %s", len(manifest.files), snapshot.snapshot_id)
    return len(manifest.files)


# ── Service ───────────────────────────────────────────────────────────────────

class IngestionService:
    """Upload → extract → manifest → detect → index, for one organization."""

    def __init__(self, session: AsyncSession, config: Settings | None = None):
        self.session = session
        self.config = config or default_settings

    def extraction_dir(self, org_id: str, snapshot_id: str) -> Path:
        root = Path(self.config.repo_storage_path).resolve()
        target = (root / org_id / snapshot_id).resolve()
        if root not in target.parents:
            raise ValidationError("Invalid organization id for storage path")
        return target

    async def upload_and_extract(
        self,
        data: bytes,
        filename: str,
        org_id: str,
        profile_id: str,
        uploader_id: str,
        name: str,
    ) -> UploadResult:
        entries = validate_archive(data, filename, self.config)
        file_hash = hashlib.sha256(data).hexdigest()

        snapshot = RepositorySnapshot(
            snapshot_id=f"SNAP-{uuid4().hex[:12].upper()}",
            organization_id=org_id,
            company_profile_id=profile_id,
            name=name,
            uploaded_by=uploader_id,
            uploaded_file_name=filename,
            uploaded_file_hash=file_hash,
            status=SnapshotStatus.UPLOADING.value,
        )
        self.session.add(snapshot)
        await self.session.flush()

        target = self.extraction_dir(org_id, snapshot.snapshot_id)
        try:
            try:
                file_count, written = await asyncio.to_thread(
                    extract_archive, data, entries, target, self.config.max_extracted_bytes,
                )
            except (FileExistsError, NotADirectoryError, IsADirectoryError) as e:
                raise ValidationError("Archive entries conflict with each other on disk") from e
            await asyncio.to_thread(make_tree_read_only, target)
            snapshot.extracted_path = str(target)
            logger.info(
                "Extracted %d files (%d bytes) for snapshot %s", file_count, written, snapshot.snapshot_id,
            )

            manifest = await asyncio.to_thread(
                generate_manifest, target, self.config.manifest_hash_max_bytes,
            )
            snapshot.manifest_hash = manifest.manifest_hash
            snapshot.technologies = detect_technologies(e.relative_path for e in manifest.files)

            await index_files(self.session, snapshot, manifest)
        except Exception as e:
            logger.error("Ingestion failed for snapshot %s: %s", snapshot.snapshot_id, e)
            await remove_extraction_dir(target)
            await self._mark_failed(snapshot, e)
            raise

        duplicate_of = await self._find_duplicate(snapshot)

        await AuditService(self.session).log_snapshot_uploaded(
            snapshot.snapshot_id, org_id, uploader_id, filename, len(data), file_hash,
        )

        return UploadResult(
            snapshot_id=snapshot.snapshot_id,
            extracted_path=str(target),
            file_count=snapshot.file_count,
            manifest_hash=manifest.manifest_hash,
            technologies=list(snapshot.technologies),
            duplicate_of=duplicate_of,
        )

    async def _mark_failed(self, snapshot: RepositorySnapshot, error: Exception) -> None:
        """Persist the error state even though the request will fail."""
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        fields = {
            "snapshot_id": snapshot.snapshot_id,
            "organization_id": snapshot.organization_id,
            "company_profile_id": snapshot.company_profile_id,
            "name": snapshot.name,
            "uploaded_by": snapshot.uploaded_by,
            "uploaded_file_name": snapshot.uploaded_file_name,
            "uploaded_file_hash": snapshot.uploaded_file_hash,
        }
        # partial file rows must not survive; keep only the snapshot in error
        await self.session.rollback()
        self.session.add(RepositorySnapshot(
            **fields,
            status=SnapshotStatus.ERROR.value,
            error_message=message[:2000],
        ))
        await self.session.commit()

    async def _find_duplicate(self, snapshot: RepositorySnapshot) -> str | None:
        result = await self.session.execute(
            select(RepositorySnapshot.snapshot_id)
            .where(
                RepositorySnapshot.organization_id == snapshot.organization_id,
                RepositorySnapshot.manifest_hash == snapshot.manifest_hash,
                RepositorySnapshot.id != snapshot.id,
                RepositorySnapshot.status != SnapshotStatus.ERROR.value,
            )
            .order_by(RepositorySnapshot.id.asc())
            .limit(1)
        )
        return result.scalar()


async def remove_extraction_dir(path: str | Path | None) -> None:
    """Remove an extraction directory off the event loop; failures are logged, not raised."""
    if not path:
        return
    try:
        await asyncio.to_thread(remove_tree, path)
    except OSError as e:
        logger.warning("Could not remove extraction directory %s: %s", path, e)
