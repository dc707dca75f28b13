"""Unit tests for the template.json manager (templateflow.templates.metadata)."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from templateflow.models import TemplateMetadata, TemplateVariable, VariableType
from templateflow.result import TemplateErrorCode
from templateflow.templates.metadata import (
    DEFAULT_DESCRIPTION,
    MANIFEST_FILENAME,
    TemplateMetadataManager,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def manager() -> TemplateMetadataManager:
    return TemplateMetadataManager()


def _write_manifest(root: Path, data: object) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    path = root / MANIFEST_FILENAME
    path.write_text(json.dumps(data) if not isinstance(data, str) else data, encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# load()
# ---------------------------------------------------------------------------


class TestLoad:
    def test_missing_manifest_uses_defaults(self, manager, tmp_path):
        root = tmp_path / "my-template"
        root.mkdir()

        result = manager.load(root)

        assert result.success
        assert result.value.name == "my-template"
        assert result.value.description == DEFAULT_DESCRIPTION
        assert result.value.version == "1.0.0"

    def test_default_name_hint(self, manager, tmp_path):
        result = manager.load(tmp_path, default_name="cli")
        assert result.value.name == "cli"

    def test_partial_manifest_merged_with_defaults(self, manager, tmp_path):
        _write_manifest(tmp_path / "tpl", {"description": "Custom"})

        metadata = manager.load(tmp_path / "tpl").value

        assert metadata.name == "tpl"
        assert metadata.description == "Custom"
        assert metadata.version == "1.0.0"

    def test_full_manifest(self, manager, tmp_path):
        _write_manifest(tmp_path, {
            "name": "react",
            "description": "React app",
            "version": "2.1.0",
            "author": "Ada",
            "tags": ["react", "ts"],
            "nodeVersion": ">=20",
            "variables": [
                {"name": "framework", "description": "UI kit", "type": "select", "options": ["mui", "none"]},
            ],
            "homepage": "https://example.com",
        })

        metadata = manager.load(tmp_path).value

        assert metadata.node_version == ">=20"
        assert metadata.variables[0].type is VariableType.SELECT
        assert metadata.model_extra == {"homepage": "https://example.com"}

    def test_invalid_json(self, manager, tmp_path):
        _write_manifest(tmp_path, "{not json")

        result = manager.load(tmp_path)

        assert not result.success
        assert result.error.code is TemplateErrorCode.TEMPLATE_INVALID

    def test_non_object_manifest(self, manager, tmp_path):
        _write_manifest(tmp_path, [1, 2, 3])
        assert not manager.load(tmp_path).success

    def test_invalid_variable(self, manager, tmp_path):
        _write_manifest(tmp_path, {
            "name": "x",
            "variables": [{"name": "flavour", "description": "d", "type": "select"}],
        })

        result = manager.load(tmp_path)

        assert not result.success
        assert "options" in str(result.error)

    def test_null_fields_fall_back_to_defaults(self, manager, tmp_path):
        _write_manifest(tmp_path / "tpl", {"name": None, "version": None})

        metadata = manager.load(tmp_path / "tpl").value

        assert metadata.name == "tpl"
        assert metadata.version == "1.0.0"


# ---------------------------------------------------------------------------
# validate()
# ---------------------------------------------------------------------------


class TestValidate:
    def test_valid(self, manager):
        result = manager.validate({"name": "a", "description": "b", "version": "1.0.0"})
        assert result.valid
        assert result.errors is None
        assert result.warnings is None

    def test_non_semver_version_warns(self, manager):
        result = manager.validate({"name": "a", "version": "latest"})
        assert result.valid
        assert result.warnings == ['Template version "latest" is not a valid semver']

    def test_prerelease_semver_accepted(self, manager):
        assert manager.validate({"name": "a", "version": "1.2.3-beta.1"}).warnings is None

    def test_empty_name(self, manager):
        result = manager.validate({"name": ""})
        assert not result.valid
        assert result.errors[0].startswith("name:")

    def test_pattern_on_non_string_variable(self, manager):
        result = manager.validate({
            "name": "a",
            "variables": [{"name": "n", "description": "d", "type": "number", "pattern": "^\\d+$"}],
        })
        assert not result.valid
        assert any("pattern is only applicable" in e for e in result.errors)

    def test_invalid_regex(self, manager):
        result = manager.validate({
            "name": "a",
            "variables": [{"name": "n", "description": "d", "type": "string", "pattern": "("}],
        })
        assert not result.valid
        assert any("invalid pattern" in e for e in result.errors)

    def test_accepts_model(self, manager):
        assert manager.validate(TemplateMetadata(name="x", version="v1")).warnings


# ---------------------------------------------------------------------------
# save() / create()
# ---------------------------------------------------------------------------


class TestSave:
    def test_canonical_key_order_and_format(self, manager, tmp_path):
        metadata = TemplateMetadata.model_validate({
            "homepage": "https://example.com",
            "nodeVersion": ">=18",
            "tags": ["a"],
            "version": "1.0.0",
            "name": "ordered",
            "description": "d",
            "variables": [TemplateVariable(name="v", description="d", type=VariableType.STRING)],
        })

        result = manager.save(tmp_path, metadata)

        assert result.success
        text = result.value.read_text(encoding="utf-8")
        assert text.endswith("}\n")
        assert text.startswith('{\n  "name": "ordered"')
        keys = list(json.loads(text))
        assert keys == ["name", "description", "version", "tags", "variables", "nodeVersion", "homepage"]

    def test_round_trip(self, manager, tmp_path):
        original = TemplateMetadata(name="rt", description="d", version="3.0.0", author="Ada", tags=["x"])

        manager.save(tmp_path, original)

        assert manager.load(tmp_path).value == original

    def test_create_writes_manifest(self, manager, tmp_path):
        root = tmp_path / "fresh"
        root.mkdir()

        result = manager.create(root, author="Ada")

        assert result.success
        assert result.value.name == "fresh"
        assert result.value.description == "Template for fresh"
        saved = json.loads((root / MANIFEST_FILENAME).read_text(encoding="utf-8"))
        assert saved["author"] == "Ada"
        assert saved["variables"] == []
