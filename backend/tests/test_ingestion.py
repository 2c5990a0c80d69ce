"""Tests for archive validation, extraction, manifest and indexing."""

import io
import stat
import zipfile
from pathlib import Path

import pytest
from sqlalchemy import select, func

from app.config import settings
from app.errors import ValidationError
from app.models import RepositoryFile, RepositorySnapshot
from app.services.ingestion import (
    IngestionService,
    categorize_file,
    generate_manifest,
    is_security_relevant,
    remove_extraction_dir,
    sanitize_entry_path,
    validate_archive,
)
from app.services.technology_detector import detect_technologies
from tests.factories import ORG_A, SAMPLE_REPO, make_zip


# ── Path sanitization ────────────────────────────────────────────────────────

class TestSanitizeEntryPath:
    def test_normalizes_separators_and_dots(self):
        assert sanitize_entry_path("src\\app/./main.py") == "src/app/main.py"
        assert sanitize_entry_path("a//b/") == "a/b"

    @pytest.mark.parametrize("name", ["../etc/passwd", "src/../../x", "..\\win.ini"])
    def test_rejects_traversal(self, name):
        with pytest.raises(ValidationError):
            sanitize_entry_path(name)

    @pytest.mark.parametrize("name", ["/etc/passwd", "C:\\Windows\\x", "c:/x"])
    def test_rejects_absolute(self, name):
        with pytest.raises(ValidationError):
            sanitize_entry_path(name)

    def test_rejects_nul_and_overlong(self):
        with pytest.raises(ValidationError):
            sanitize_entry_path("a\x00b")
        with pytest.raises(ValidationError):
            sanitize_entry_path("a/" * 3000)


# ── Archive validation ───────────────────────────────────────────────────────

class TestValidateArchive:
    def test_accepts_plain_repo(self):
        entries = validate_archive(make_zip(SAMPLE_REPO), "repo.zip", settings)
        assert sorted(p for _, p in entries) == sorted(SAMPLE_REPO)

    def test_rejects_non_zip_name(self):
        with pytest.raises(ValidationError):
            validate_archive(make_zip(SAMPLE_REPO), "repo.tar.gz", settings)

    def test_rejects_corrupt_archive(self):
        with pytest.raises(ValidationError):
            validate_archive(b"definitely not a zip", "repo.zip", settings)

    def test_rejects_oversized_upload(self):
        config = settings.model_copy(update={"max_upload_bytes": 100})
        with pytest.raises(ValidationError):
            validate_archive(make_zip(SAMPLE_REPO), "repo.zip", config)

    def test_rejects_too_many_entries(self):
        config = settings.model_copy(update={"max_archive_entries": 2})
        with pytest.raises(ValidationError):
            validate_archive(make_zip(SAMPLE_REPO), "repo.zip", config)

    def test_rejects_high_compression_ratio(self):
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            zf.writestr("bomb.txt", b"0" * 2_000_000)
        config = settings.model_copy(update={"compression_ratio_threshold": 10.0})
        with pytest.raises(ValidationError) as exc:
            validate_archive(buf.getvalue(), "repo.zip", config)
        assert "compression ratio" in exc.value.message

    def test_rejects_symlink(self):
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as zf:
            info = zipfile.ZipInfo("link")
            info.external_attr = (0o120777 << 16)
            zf.writestr(info, "/etc/passwd")
        with pytest.raises(ValidationError):
            validate_archive(buf.getvalue(), "repo.zip", settings)

    def test_skips_blocked_extensions(self):
        data = make_zip({"src/app.py": "print(1)\n", "bin/tool.exe": b"MZ\x90\x00"})
        entries = validate_archive(data, "repo.zip", settings)
        assert [p for _, p in entries] == ["src/app.py"]

    @pytest.mark.parametrize("files", [
        {"a": "file", "a/b.txt": "nested"},
        {"a/b/c.txt": "nested", "a/b": "file"},
    ])
    def test_rejects_file_that_is_also_a_directory(self, files):
        with pytest.raises(ValidationError) as exc:
            validate_archive(make_zip(files), "repo.zip", settings)
        assert "both a file and a directory" in exc.value.message

    def test_rejects_entries_that_normalize_to_the_same_path(self):
        with pytest.raises(ValidationError) as exc:
            validate_archive(make_zip({"a.txt": "one", "./a.txt": "two"}), "repo.zip", settings)
        assert "duplicate" in exc.value.message


# ── Classification / manifest ────────────────────────────────────────────────

def test_categorize_and_security_relevance():
    assert categorize_file(".github/workflows/ci.yml") == "ci_cd"
    assert categorize_file("Dockerfile") == "iac"
    assert categorize_file("tests/test_app.py") == "test"
    assert categorize_file("docs/intro.md") == "docs"
    assert categorize_file("package.json") == "config"
    assert categorize_file("src/main.go") == "source"
    assert is_security_relevant("src/auth/login.py", "source")
    assert not is_security_relevant("src/util/strings.py", "source")


def test_detect_technologies():
    paths = ["package.json", "Dockerfile", ".github/workflows/ci.yml", "infra/main.tf", "src/x.js"]
    assert detect_technologies(paths) == ["docker", "github_actions", "node", "terraform"]


def _write_tree(root: Path, files: dict[str, str], order: list[str]) -> None:
    for rel in order:
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(files[rel])


def test_manifest_hash_is_independent_of_write_order(tmp_path):
    names = list(SAMPLE_REPO)
    _write_tree(tmp_path / "a", SAMPLE_REPO, names)
    _write_tree(tmp_path / "b", SAMPLE_REPO, list(reversed(names)))

    first = generate_manifest(tmp_path / "a", settings.manifest_hash_max_bytes)
    second = generate_manifest(tmp_path / "b", settings.manifest_hash_max_bytes)
    assert first.manifest_hash == second.manifest_hash
    assert [e.relative_path for e in first.files] == sorted(names)


def test_manifest_hash_changes_with_content(tmp_path):
    _write_tree(tmp_path / "a", SAMPLE_REPO, list(SAMPLE_REPO))
    changed = dict(SAMPLE_REPO, **{"README.md": "# Changed\n"})
    _write_tree(tmp_path / "b", changed, list(changed))

    first = generate_manifest(tmp_path / "a", settings.manifest_hash_max_bytes)
    second = generate_manifest(tmp_path / "b", settings.manifest_hash_max_bytes)
    assert first.manifest_hash != second.manifest_hash


def test_oversized_files_are_listed_without_content_hash(tmp_path):
    _write_tree(tmp_path, {"big.txt": "x" * 100, "small.txt": "x"}, ["big.txt", "small.txt"])
    manifest = generate_manifest(tmp_path, max_hash_bytes=10)
    entries = {e.relative_path: e for e in manifest.files}
    assert entries["big.txt"].is_oversized and entries["big.txt"].content_hash is None
    assert entries["small.txt"].content_hash is not None


# ── Service ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestIngestionService:
    async def test_upload_indexes_files(self, db_session):
        result = await IngestionService(db_session).upload_and_extract(
            make_zip(SAMPLE_REPO), "repo.zip", ORG_A, "PROFILE-1", "user-1", "demo",
        )
        await db_session.commit()

        snapshot = (await db_session.execute(
            select(RepositorySnapshot).where(RepositorySnapshot.snapshot_id == result.snapshot_id)
        )).scalar_one()
        assert snapshot.status == "indexed"
        assert snapshot.file_count == len(SAMPLE_REPO) == result.file_count
        assert snapshot.manifest_hash == result.manifest_hash
        assert "node" in result.technologies
        assert Path(result.extracted_path, "src/auth/middleware.js").is_file()

        count = (await db_session.execute(
            select(func.count(RepositoryFile.id)).where(RepositoryFile.snapshot_id == snapshot.id)
        )).scalar()
        assert count == len(SAMPLE_REPO)

    async def test_traversal_rejects_whole_archive(self, db_session):
        data = make_zip({"ok.txt": "fine", "../escape.txt": "evil"})
        with pytest.raises(ValidationError):
            await IngestionService(db_session).upload_and_extract(
                data, "repo.zip", ORG_A, "PROFILE-1", "user-1", "demo",
            )
        count = (await db_session.execute(select(func.count(RepositorySnapshot.id)))).scalar()
        assert count == 0
        # nothing was written anywhere under the test storage area
        assert list(Path(settings.repo_storage_path).parent.rglob("escape.txt")) == []

    async def test_failure_after_extraction_marks_snapshot_error(self, db_session, monkeypatch):
        def broken_manifest(*args, **kwargs):
            raise RuntimeError("disk went away")

        monkeypatch.setattr("app.services.ingestion.generate_manifest", broken_manifest)
        with pytest.raises(RuntimeError):
            await IngestionService(db_session).upload_and_extract(
                make_zip(SAMPLE_REPO), "repo.zip", ORG_A, "PROFILE-1", "user-1", "demo",
            )

        snapshot = (await db_session.execute(select(RepositorySnapshot))).scalar_one()
        assert snapshot.status == "error"
        assert "disk went away" in snapshot.error_message
        files = (await db_session.execute(select(func.count(RepositoryFile.id)))).scalar()
        assert files == 0
        assert not Path(settings.repo_storage_path, ORG_A, snapshot.snapshot_id).exists()

    async def test_duplicate_upload_is_reported(self, db_session):
        service = IngestionService(db_session)
        first = await service.upload_and_extract(
            make_zip(SAMPLE_REPO), "repo.zip", ORG_A, "PROFILE-1", "user-1", "demo",
        )
        second = await service.upload_and_extract(
            make_zip(SAMPLE_REPO), "repo.zip", ORG_A, "PROFILE-1", "user-1", "demo again",
        )
        assert second.snapshot_id != first.snapshot_id
        assert second.manifest_hash == first.manifest_hash
        assert second.duplicate_of == first.snapshot_id

    async def test_conflicting_entries_are_rejected_before_extraction(self, db_session):
        data = make_zip({"a": "file", "a/b.txt": "nested"})
        with pytest.raises(ValidationError):
            await IngestionService(db_session).upload_and_extract(
                data, "repo.zip", ORG_A, "PROFILE-1", "user-1", "demo",
            )
        count = (await db_session.execute(select(func.count(RepositorySnapshot.id)))).scalar()
        assert count == 0

    async def test_conflict_on_disk_is_a_validation_error(self, db_session, monkeypatch):
        monkeypatch.setattr("app.services.ingestion._check_path_conflicts", lambda paths: None)
        with pytest.raises(ValidationError):
            await IngestionService(db_session).upload_and_extract(
                make_zip({"a": "file", "a/b.txt": "nested"}), "repo.zip", ORG_A, "PROFILE-1", "user-1", "demo",
            )

        snapshot = (await db_session.execute(select(RepositorySnapshot))).scalar_one()
        assert snapshot.status == "error"
        assert "conflict" in snapshot.error_message
        assert not Path(settings.repo_storage_path, ORG_A, snapshot.snapshot_id).exists()

    async def test_extracted_tree_is_read_only(self, db_session):
        result = await IngestionService(db_session).upload_and_extract(
            make_zip(SAMPLE_REPO), "repo.zip", ORG_A, "PROFILE-1", "user-1", "demo",
        )
        root = Path(result.extracted_path)
        assert stat.S_IMODE(root.stat().st_mode) == 0o555
        assert stat.S_IMODE((root / "src" / "auth").stat().st_mode) == 0o555
        assert stat.S_IMODE((root / "src" / "auth" / "middleware.js").stat().st_mode) == 0o444

        await remove_extraction_dir(root)
        assert not root.exists()
