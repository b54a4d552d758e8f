from __future__ import annotations

import json
import tempfile
import zipfile
from pathlib import Path

import pytest

from conftest import BUILD_TIME, make_config
from mcpb_build import (
    REQUIRED_FILES,
    BundleParseError,
    MissingFileError,
    PackagingError,
    generate_artifacts,
    package_bundle,
    reset_workspace,
    validate_bundle,
)


def _staged(root: Path, **overrides):
    config = make_config(root, **overrides)
    reset_workspace(config.staging_dir)
    generate_artifacts(config)
    return config


# ── Validation ───────────────────────────────────────────────


def test_validate_passes_on_generated_bundle() -> None:
    with tempfile.TemporaryDirectory() as td:
        config = _staged(Path(td))
        assert validate_bundle(config.staging_dir) == []


@pytest.mark.parametrize("missing", REQUIRED_FILES)
def test_validate_names_the_missing_file(missing: str) -> None:
    with tempfile.TemporaryDirectory() as td:
        config = _staged(Path(td))
        (config.staging_dir / missing).unlink()
        with pytest.raises(MissingFileError) as excinfo:
            validate_bundle(config.staging_dir)
    assert excinfo.value.path == missing
    assert missing in str(excinfo.value)


def test_validate_reports_first_missing_file_in_order() -> None:
    with tempfile.TemporaryDirectory() as td:
        config = _staged(Path(td))
        (config.staging_dir / "package.json").unlink()
        (config.staging_dir / "server" / "index.js").unlink()
        with pytest.raises(MissingFileError) as excinfo:
            validate_bundle(config.staging_dir)
    assert excinfo.value.path == "package.json"


def test_validate_rejects_malformed_manifest() -> None:
    with tempfile.TemporaryDirectory() as td:
        config = _staged(Path(td))
        (config.staging_dir / "manifest.json").write_text('{"name": "broken",', encoding="utf-8")
        with pytest.raises(BundleParseError) as excinfo:
            validate_bundle(config.staging_dir)
    assert excinfo.value.path == "manifest.json"


def test_validate_rejects_non_object_package_descriptor() -> None:
    with tempfile.TemporaryDirectory() as td:
        config = _staged(Path(td))
        (config.staging_dir / "package.json").write_text("[1, 2]\n", encoding="utf-8")
        with pytest.raises(BundleParseError, match="expected a JSON object"):
            validate_bundle(config.staging_dir)


def test_validate_rejects_manifest_that_is_not_utf8() -> None:
    with tempfile.TemporaryDirectory() as td:
        config = _staged(Path(td))
        (config.staging_dir / "manifest.json").write_bytes(b'{"name": "\xff\xfe"}')
        with pytest.raises(BundleParseError) as excinfo:
            validate_bundle(config.staging_dir)
    assert excinfo.value.path == "manifest.json"
    assert str(excinfo.value).startswith("JSON validation failed for manifest.json: ")


def test_validate_does_not_check_semantics() -> None:
    with tempfile.TemporaryDirectory() as td:
        config = _staged(Path(td))
        (config.staging_dir / "manifest.json").write_text('{"capabilities": {"tools": []}}', encoding="utf-8")
        assert validate_bundle(config.staging_dir) == []


# ── Packaging ────────────────────────────────────────────────


def test_package_writes_zip_with_artifacts_and_build_info() -> None:
    with tempfile.TemporaryDirectory() as td:
        config = _staged(Path(td), version="1.2.3", endpoint="https://example.test/mcp")
        artifact = package_bundle(config, now=BUILD_TIME)

        assert artifact.staged_path == config.staging_dir / "n8n-dev-bridge.mcpb"
        assert artifact.path == config.publish_dir / "n8n-dev-bridge.mcpb"
        assert artifact.path.read_bytes() == artifact.staged_path.read_bytes()
        assert artifact.size == artifact.path.stat().st_size
        assert len(artifact.sha256) == 64

        with zipfile.ZipFile(artifact.path) as z:
            assert z.namelist() == ["manifest.json", "package.json", "server/index.js", "build-info.json"]
            for rel in REQUIRED_FILES:
                assert z.read(rel) == (config.staging_dir / rel).read_bytes()
            info = json.loads(z.read("build-info.json"))
            assert z.getinfo("manifest.json").date_time == (2025, 3, 14, 15, 9, 26)
            assert z.getinfo("server/index.js").external_attr >> 16 == 0o755

    assert info == {
        "builder": "mcpb-build",
        "endpoint": "https://example.test/mcp",
        "timestamp": "2025-03-14T15:09:26+00:00",
        "version": "1.2.3",
    }


def test_package_is_reproducible_for_a_fixed_build_time() -> None:
    with tempfile.TemporaryDirectory() as td1, tempfile.TemporaryDirectory() as td2:
        first = package_bundle(_staged(Path(td1)), now=BUILD_TIME)
        second = package_bundle(_staged(Path(td2)), now=BUILD_TIME)
        assert first.sha256 == second.sha256


def test_package_into_staging_dir_skips_the_copy() -> None:
    with tempfile.TemporaryDirectory() as td:
        config = _staged(Path(td), publish_dir=Path(td) / "bundle")
        artifact = package_bundle(config, now=BUILD_TIME)
        assert artifact.path == artifact.staged_path
        assert zipfile.is_zipfile(artifact.path)


def test_package_before_artifacts_exist_reports_read_error() -> None:
    with tempfile.TemporaryDirectory() as td:
        config = make_config(Path(td))
        reset_workspace(config.staging_dir)
        with pytest.raises(PackagingError) as excinfo:
            package_bundle(config, now=BUILD_TIME)
    message = str(excinfo.value)
    assert "No such file or directory" in message
    assert "manifest.json" in message
    assert isinstance(excinfo.value.__cause__, FileNotFoundError)
