import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from skillpm.errors import FileSystemError
from skillpm.lock_file import (
    LOCK_FILENAME,
    InstalledSkillRecord,
    LockFile,
    merge_lock,
    read_lock,
    resolve_lock_file_path,
    update_lock,
    write_lock,
)


def _record(name: str, version: str = "1.0.0", **overrides) -> InstalledSkillRecord:
    fields = dict(
        name=name,
        version=version,
        content_id="L" * 43,
        installed_at="2026-01-01T00:00:00Z",
        installed_path=f"/skills/{name}",
    )
    fields.update(overrides)
    return InstalledSkillRecord(**fields)


class TestReadLock(unittest.TestCase):
    def test_missing_file_is_empty(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / LOCK_FILENAME
            lock = read_lock(path)
        self.assertEqual(lock.skills, ())
        self.assertEqual(lock.install_location, str(Path(td)))

    def test_corrupt_file_is_empty_with_warning(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / LOCK_FILENAME
            for content in ("{not json", "[]", '{"skills": "nope"}'):
                with self.subTest(content=content):
                    path.write_text(content, encoding="utf-8")
                    with self.assertLogs("skillpm.lock_file", level="WARNING"):
                        lock = read_lock(path)
                    self.assertEqual(lock.skills, ())

    def test_permission_denied_is_fatal(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / LOCK_FILENAME
            with patch.object(Path, "read_text", side_effect=PermissionError("denied")):
                with self.assertRaises(FileSystemError):
                    read_lock(path)


class TestWriteLock(unittest.TestCase):
    def test_round_trips_through_disk(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / LOCK_FILENAME
            lock = LockFile(
                install_location=td,
                skills=(_record("a", is_direct_dependency=True, dependencies=({"name": "b", "version": "1.0.0"},)),),
            )
            write_lock(lock, path)

            raw = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(raw["schemaVersion"], 1)
            self.assertEqual(raw["skills"][0]["contentId"], "L" * 43)
            self.assertEqual(read_lock(path), lock)
            self.assertEqual(sorted(p.name for p in Path(td).iterdir()), [LOCK_FILENAME])

    def test_failed_write_keeps_previous_lock(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / LOCK_FILENAME
            original = LockFile(install_location=td, skills=(_record("a"),))
            write_lock(original, path)

            with patch.object(Path, "replace", side_effect=OSError(28, "No space left on device")):
                with self.assertRaises(FileSystemError):
                    write_lock(LockFile(install_location=td, skills=(_record("b"),)), path)

            self.assertEqual([s.name for s in read_lock(path).skills], ["a"])
            self.assertEqual(sorted(p.name for p in Path(td).iterdir()), [LOCK_FILENAME])


class TestMergeLock(unittest.TestCase):
    def test_upserts_by_name(self) -> None:
        lock = LockFile(install_location="/x", generated_at="2000-01-01T00:00:00Z", skills=(_record("a"), _record("b")))

        merged = merge_lock(lock, [_record("a", "2.0.0"), _record("c")])

        self.assertEqual([(s.name, s.version) for s in merged.skills], [("a", "2.0.0"), ("b", "1.0.0"), ("c", "1.0.0")])
        self.assertNotEqual(merged.generated_at, lock.generated_at)

    def test_update_lock_creates_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / LOCK_FILENAME
            update_lock(_record("a"), path)
            update_lock(_record("a", "1.1.0"), path)
            lock = read_lock(path)
        self.assertEqual([(s.name, s.version) for s in lock.skills], [("a", "1.1.0")])


class TestResolveLockFilePath(unittest.TestCase):
    def test_lives_beside_the_install_directory(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td).resolve()
            self.assertEqual(resolve_lock_file_path(root / ".skills" / "skills"), root / ".skills" / LOCK_FILENAME)
