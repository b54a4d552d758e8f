from __future__ import annotations

import json
import os
import shutil
import subprocess
import sys
import tempfile
from pathlib import Path

import pytest

from conftest import clean_env, make_config
from mcpb_build import SERVER_ENTRY, generate_artifacts, reset_workspace

NODE = shutil.which("node")

pytestmark = pytest.mark.skipif(
    NODE is None or sys.platform == "win32", reason="runs the generated stub with node on a POSIX shell"
)

ENDPOINT = "https://example.test/mcp"

# Stands in for npx: reports what it was launched with, then exits 7.
FAKE_NPX = """#!{python}
import json, os, sys
sys.stdout.write("relayed from remote\\n")
sys.stderr.write("FAKE_NPX " + json.dumps({{"argv": sys.argv[1:], "token": os.environ.get("AUTH_HEADER_DEV")}}) + "\\n")
sys.exit(7)
"""


def _staged_stub(root: Path) -> Path:
    config = make_config(root, endpoint=ENDPOINT, transport="http-only", credential_key="AUTH_HEADER_DEV")
    reset_workspace(config.staging_dir)
    generate_artifacts(config)
    return config.staging_dir


def _fake_npx(bin_dir: Path) -> None:
    bin_dir.mkdir()
    npx = bin_dir / "npx"
    npx.write_text(FAKE_NPX.format(python=sys.executable), encoding="utf-8")
    npx.chmod(0o755)


def _run_stub(staging: Path, env: dict[str, str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [NODE, SERVER_ENTRY],
        input="",
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        cwd=staging,
        env=env,
        timeout=30,
    )


def _fake_npx_report(stderr: str) -> dict:
    line = next(l for l in stderr.splitlines() if l.startswith("FAKE_NPX "))
    return json.loads(line[len("FAKE_NPX ") :])


def test_stub_exits_when_credential_is_missing() -> None:
    with tempfile.TemporaryDirectory() as td:
        staging = _staged_stub(Path(td))
        proc = _run_stub(staging, clean_env())

    assert proc.returncode == 1
    assert "n8n-dev-bridge: AUTH_HEADER_DEV is not set" in proc.stderr
    assert "claude-desktop/n8n-dev-bridge/AUTH_HEADER_DEV" in proc.stderr
    assert proc.stdout == ""


def test_stub_launches_remote_with_header_reference_and_relays_exit_code() -> None:
    with tempfile.TemporaryDirectory() as td:
        root = Path(td)
        staging = _staged_stub(root)
        _fake_npx(root / "bin")
        env = clean_env(AUTH_HEADER_DEV="Bearer abc def")
        env["PATH"] = os.pathsep.join([str(root / "bin"), env.get("PATH", "")])
        proc = _run_stub(staging, env)

    assert proc.returncode == 7
    report = _fake_npx_report(proc.stderr)
    assert report["argv"] == [
        "-y",
        "mcp-remote@latest",
        ENDPOINT,
        "--transport",
        "http-only",
        "--header",
        "Authorization:${AUTH_HEADER_DEV}",
    ]
    assert report["token"] == "Bearer abc def"
    assert "abc def" not in " ".join(report["argv"])
    assert proc.stdout == "relayed from remote\n"
    assert "mcp-remote@latest exited with code 7" in proc.stderr
