import tempfile
import unittest
from pathlib import Path

from skillpm.errors import FileSystemError, ValidationError
from skillpm.manifest import DependencyRef, load_manifest, parse_manifest_text


def _text(extra: str = "", **fields: str) -> str:
    base = {"name": "web-fetch", "version": "1.2.0", "description": "Fetch pages", "author": "alice"}
    base.update(fields)
    lines = [f"{k}: {v}" for k, v in base.items() if v is not None]
    return "---\n" + "\n".join(lines) + "\n" + extra + "---\n# Body\n"


class TestParseManifest(unittest.TestCase):
    def test_required_and_optional_fields(self) -> None:
        manifest = parse_manifest_text(_text("license: MIT\ntags:\n  - web\n  - http\n"))

        self.assertEqual(manifest.name, "web-fetch")
        self.assertEqual(manifest.version, "1.2.0")
        self.assertEqual(manifest.license, "MIT")
        self.assertEqual(manifest.tags, ("web", "http"))
        self.assertEqual(manifest.body.strip(), "# Body")
        self.assertEqual(manifest.warnings, ())

    def test_legacy_and_structured_dependencies(self) -> None:
        manifest = parse_manifest_text(
            _text("dependencies:\n  - html-parse\n  - name: url-utils\n    version: 2.0.0\n")
        )
        self.assertEqual(
            manifest.dependencies,
            (DependencyRef("html-parse"), DependencyRef("url-utils", "2.0.0")),
        )

    def test_external_requirements_and_alias(self) -> None:
        self.assertEqual(
            parse_manifest_text(_text("externalRequirements:\n  - mcp__browser\n")).external_requirements,
            ("mcp__browser",),
        )
        self.assertEqual(
            parse_manifest_text(_text("mcpServers:\n  - mcp__search\n")).external_requirements,
            ("mcp__search",),
        )

    def test_external_requirement_in_dependencies_warns(self) -> None:
        with self.assertLogs("skillpm.manifest", level="WARNING"):
            manifest = parse_manifest_text(_text("dependencies:\n  - mcp__browser\n"))
        self.assertEqual(len(manifest.warnings), 1)
        self.assertIn("mcp__browser", manifest.warnings[0])

    def test_missing_required_field(self) -> None:
        for missing in ("name", "version", "description", "author"):
            with self.subTest(missing=missing):
                with self.assertRaises(ValidationError) as ctx:
                    parse_manifest_text(_text(**{missing: None}))
                self.assertEqual(ctx.exception.field, missing)

    def test_invalid_values(self) -> None:
        cases = [
            (_text(name="Web_Fetch"), "name"),
            (_text(version="1.2"), "version"),
            (_text(description="x" * 1025), "description"),
            (_text("tags: web\n"), "tags"),
            (_text("dependencies:\n  - 42\n"), "dependencies"),
        ]
        for text, field in cases:
            with self.subTest(field=field):
                with self.assertRaises(ValidationError) as ctx:
                    parse_manifest_text(text)
                self.assertEqual(ctx.exception.field, field)

    def test_empty_or_missing_frontmatter(self) -> None:
        with self.assertRaises(ValidationError):
            parse_manifest_text("   \n")
        with self.assertRaises(ValidationError):
            parse_manifest_text("# Just a heading\n")

    def test_malformed_yaml(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            parse_manifest_text("---\nname: [unclosed\n---\n")
        self.assertEqual(ctx.exception.field, "frontmatter")


class TestLoadManifest(unittest.TestCase):
    def test_missing_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(FileSystemError):
                load_manifest(Path(td))

    def test_reads_from_directory(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            (Path(td) / "SKILL.md").write_text(_text(), encoding="utf-8")
            self.assertEqual(load_manifest(Path(td)).name, "web-fetch")
