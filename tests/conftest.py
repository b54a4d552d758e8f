from __future__ import annotations

import json
import os
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path

from mcpb_build import BuildConfig, Capability, resolve_config

ROOT = Path(__file__).resolve().parents[1]
TOY_DIR = ROOT / "tests" / "toy_servers"

BUILD_TIME = datetime(2025, 3, 14, 15, 9, 26, tzinfo=timezone.utc)

E2E_TOOLS = [
    Capability("list_nodes", "List n8n nodes with filtering"),
    Capability("search_nodes", "Search n8n nodes by keyword"),
]


def make_config(root: Path, **overrides) -> BuildConfig:
    """Resolve a config rooted in a temp dir, ignoring the real environment."""
    overrides.setdefault("staging_dir", root / "bundle")
    overrides.setdefault("publish_dir", root / "dist")
    return resolve_config(env={}, **overrides)


def clean_env(**extra: str) -> dict[str, str]:
    """The current environment minus anything mcpb-build reads, plus `extra`."""
    env = {k: v for k, v in os.environ.items() if not k.startswith("MCPB_") and k != "GITHUB_REF_NAME"}
    env.pop("AUTH_HEADER_DEV", None)
    env.update(extra)
    return env


def run_build(
    args: list[str], *, check: bool = True, env: dict[str, str] | None = None
) -> subprocess.CompletedProcess[str]:
    """Run mcpb-build as a module and return the CompletedProcess."""
    return subprocess.run(
        [sys.executable, "-m", "mcpb_build", *args],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        check=check,
        cwd=ROOT,
        env=env if env is not None else clean_env(),
    )


def run_build_json(
    args: list[str], *, check: bool = True, env: dict[str, str] | None = None
) -> tuple[subprocess.CompletedProcess[str], dict]:
    """Run mcpb-build with --json and return the process plus the parsed result."""
    proc = run_build(["--json", *args], check=check, env=env)
    return proc, json.loads(proc.stdout)
