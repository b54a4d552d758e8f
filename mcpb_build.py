"""
mcpb-build — Package a remote MCP endpoint as a Claude Desktop MCPB bundle.

The bundle holds a small Node server that reads a bearer token from the
environment (filled by the host from its credential store) and bridges stdio
to `npx mcp-remote <endpoint>`.

Usage:
  mcpb-build
  mcpb-build --endpoint https://example.test/mcp --credential-key AUTH_HEADER_DEV
  mcpb-build --tool list_nodes="List nodes" --tool search_nodes="Search nodes"
  mcpb-build --json --save build.json
  mcpb-build --probe
"""

from __future__ import annotations

import argparse
import asyncio
import enum
import hashlib
import json
import logging
import os
import re
import shlex
import shutil
import string
import subprocess
import sys
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Mapping, Sequence, TextIO
from urllib.parse import urlparse

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

logger = logging.getLogger("mcpb_build")


# ── Defaults ─────────────────────────────────────────────────

BUILDER_ID = "mcpb-build"
MCPB_VERSION = "0.1"

DEFAULT_NAME = "n8n-dev-bridge"
DEFAULT_VERSION = "1.0.0-dev"
DEFAULT_DESCRIPTION = "n8n Development Bridge - Railway MCP server with HTTP transport and Bearer authentication"
DEFAULT_ENDPOINT = "https://czlonkowskin8n-mcp-railwaylatest-dev.up.railway.app/mcp"
DEFAULT_TRANSPORT = "http-only"
DEFAULT_CREDENTIAL_KEY = "AUTH_HEADER_DEV"
CREDENTIAL_NAMESPACE = "claude-desktop"

AUTHOR = {"name": "Kurt Anderson", "url": "https://github.com/mapachekurt/n8n-dev-bridge-mcpb"}
HOMEPAGE = "https://github.com/mapachekurt/n8n-dev-bridge-mcpb"
LICENSE = "MIT"
KEYWORDS = ["n8n", "mcp-remote", "railway", "workflow-automation", "http-transport"]
TAGS = ["n8n", "railway", "mcp-remote", "http-transport", "bearer-auth"]

REMOTE_PACKAGE = "mcp-remote"
REMOTE_PACKAGE_RANGE = "latest"
MIN_HOST_VERSION = ">=0.11.0"
MIN_NODE_VERSION = ">=18.0.0"
MIN_NODE_MAJOR = 18
MIN_PYTHON = (3, 11)

TRANSPORTS = ("http-only", "sse-only", "http-first", "sse-first")

MANIFEST_FILE = "manifest.json"
PACKAGE_FILE = "package.json"
SERVER_DIR = "server"
SERVER_ENTRY = f"{SERVER_DIR}/index.js"
BUILD_INFO_FILE = "build-info.json"

REQUIRED_FILES = (MANIFEST_FILE, PACKAGE_FILE, SERVER_ENTRY)
STRUCTURED_FILES = (MANIFEST_FILE, PACKAGE_FILE)

# Second-level labels that country-code registries sell names under (example.co.uk).
REGISTRY_SECOND_LEVEL = frozenset({"ac", "co", "com", "edu", "gov", "ltd", "ne", "net", "or", "org", "plc"})

ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
RELEASE_TAG_RE = re.compile(r"^v?(\d+\.\d+\.\d+(?:[-+][0-9A-Za-z.+-]+)?)$")
NODE_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)")


# ── Errors ───────────────────────────────────────────────────


class BuildError(Exception):
    """A fatal build failure; the pipeline stops at the first one."""


class ConfigError(BuildError):
    pass


class PrerequisiteError(BuildError):
    pass


class WorkspaceError(BuildError):
    pass


class ManifestError(BuildError):
    pass


class InstallError(BuildError):
    pass


class MissingFileError(BuildError):
    def __init__(self, path: str):
        super().__init__(f"Missing required file: {path}")
        self.path = path


class BundleParseError(BuildError):
    def __init__(self, path: str, reason: str):
        super().__init__(f"JSON validation failed for {path}: {reason}")
        self.path = path


class PackagingError(BuildError):
    pass


# ── Configuration ────────────────────────────────────────────


@dataclass(frozen=True)
class Capability:
    name: str
    description: str

    def to_dict(self) -> dict:
        return {"name": self.name, "description": self.description}


DEFAULT_TOOLS = (
    Capability("list_nodes", "List n8n nodes with filtering"),
    Capability("search_nodes", "Search n8n nodes by keyword"),
    Capability("get_node_info", "Get detailed node information"),
    Capability("n8n_create_workflow", "Create new workflows"),
    Capability("n8n_list_workflows", "List existing workflows"),
    Capability("n8n_get_workflow", "Get workflow details"),
    Capability("n8n_health_check", "Check n8n connectivity"),
    Capability("validate_workflow", "Validate workflow structure"),
    Capability("search_templates", "Search community templates"),
)

DEFAULT_RESOURCES = (
    Capability("n8n://workflows", "Access to n8n workflows"),
    Capability("n8n://nodes", "Access to n8n node library"),
    Capability("n8n://templates", "Access to workflow templates"),
)


@dataclass(frozen=True)
class BuildConfig:
    name: str
    version: str
    endpoint: str
    transport: str
    credential_key: str
    staging_dir: Path
    publish_dir: Path
    output_name: str
    description: str = DEFAULT_DESCRIPTION
    tools: tuple[Capability, ...] = DEFAULT_TOOLS
    resources: tuple[Capability, ...] = DEFAULT_RESOURCES

    @property
    def credential_target(self) -> str:
        """Credential store target name: <namespace>/<app-name>/<credential-key>."""
        return f"{CREDENTIAL_NAMESPACE}/{self.name}/{self.credential_key}"

    @property
    def config_key(self) -> str:
        return self.credential_key.lower()

    @property
    def endpoint_host(self) -> str:
        return urlparse(self.endpoint).hostname or ""

    @property
    def allowed_hosts(self) -> list[str]:
        """The endpoint host plus wildcards for each parent domain, widest first."""
        host = self.endpoint_host
        labels = host.split(".")
        if all(label.isdigit() for label in labels):
            return [host]
        # Stop above registry suffixes such as co.uk; a wildcard there would match every site under it.
        wildcards = [
            f"*.{'.'.join(labels[i:])}"
            for i in range(len(labels) - 2, 0, -1)
            if not _is_registry_suffix(labels[i:])
        ]
        return [host, *wildcards]


def _is_registry_suffix(labels: list[str]) -> bool:
    return len(labels) == 2 and labels[0] in REGISTRY_SECOND_LEVEL and len(labels[1]) == 2


def parse_capability(text: str) -> Capability:
    """Parse a `NAME=DESCRIPTION` command-line capability."""
    name, sep, description = text.partition("=")
    name = name.strip()
    if not sep or not name:
        raise ConfigError(f"--tool must be NAME=DESCRIPTION (got {text!r})")
    return Capability(name, description.strip())


def _release_version(ref: str) -> str | None:
    m = RELEASE_TAG_RE.match(ref.strip())
    return m.group(1) if m else None


def resolve_config(
    env: Mapping[str, str] | None = None,
    *,
    name: str | None = None,
    version: str | None = None,
    endpoint: str | None = None,
    transport: str | None = None,
    credential_key: str | None = None,
    staging_dir: str | Path | None = None,
    publish_dir: str | Path | None = None,
    output_name: str | None = None,
    tools: Sequence[Capability] | None = None,
    resources: Sequence[Capability] | None = None,
) -> BuildConfig:
    """Assemble the build configuration from overrides, environment and defaults."""
    env = os.environ if env is None else env

    name = name or env.get("MCPB_NAME") or DEFAULT_NAME
    if not NAME_RE.match(name):
        raise ConfigError(f"invalid bundle name {name!r}")

    explicit_version = version or env.get("MCPB_VERSION")
    if explicit_version:
        resolved_version = _release_version(explicit_version)
        if resolved_version is None:
            raise ConfigError(f"version must look like 1.2.3 or v1.2.3 (got {explicit_version!r})")
    else:
        # Branch builds set GITHUB_REF_NAME to the branch; only tags count as releases.
        resolved_version = _release_version(env.get("GITHUB_REF_NAME", "")) or DEFAULT_VERSION

    endpoint = endpoint or env.get("MCPB_ENDPOINT") or DEFAULT_ENDPOINT
    parsed = urlparse(endpoint)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ConfigError(f"endpoint must be an absolute http(s) URL (got {endpoint!r})")

    transport = transport or DEFAULT_TRANSPORT
    if transport not in TRANSPORTS:
        raise ConfigError(f"transport must be one of {', '.join(TRANSPORTS)} (got {transport!r})")

    credential_key = credential_key or env.get("MCPB_CREDENTIAL_KEY") or DEFAULT_CREDENTIAL_KEY
    if not ENV_NAME_RE.match(credential_key):
        raise ConfigError(f"credential key must be an environment variable name (got {credential_key!r})")

    staging = Path(staging_dir or env.get("MCPB_STAGING_DIR") or "bundle")
    publish = Path(publish_dir or env.get("MCPB_PUBLISH_DIR") or ".")

    output_name = output_name or f"{name}.mcpb"
    if (
        "/" in output_name
        or "\\" in output_name
        or output_name in (".", "..", SERVER_DIR, BUILD_INFO_FILE, *REQUIRED_FILES)
    ):
        raise ConfigError(f"output must be a plain file name that is not a bundle member (got {output_name!r})")

    return BuildConfig(
        name=name,
        version=resolved_version,
        endpoint=endpoint,
        transport=transport,
        credential_key=credential_key,
        staging_dir=staging,
        publish_dir=publish,
        output_name=output_name,
        tools=tuple(tools) if tools is not None else DEFAULT_TOOLS,
        resources=tuple(resources) if resources is not None else DEFAULT_RESOURCES,
    )


# ── Filesystem helpers ───────────────────────────────────────


def write_text(path: Path, text: str) -> None:
    with open(path, "w", encoding="utf-8", newline="\n") as f:
        f.write(text)


def dump_json(obj) -> str:
    return json.dumps(obj, indent=2, sort_keys=True) + "\n"


def write_json(path: Path, obj) -> None:
    write_text(path, dump_json(obj))


def read_json(path: Path, rel: str | None = None) -> dict:
    """Read a JSON object, raising BundleParseError if it is malformed."""
    rel = rel or path.name
    try:
        obj = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise BundleParseError(rel, str(e)) from e
    if not isinstance(obj, dict):
        raise BundleParseError(rel, "expected a JSON object")
    return obj


def reset_workspace(path: Path) -> None:
    """Remove `path` if present, then recreate it with an empty `server/` subdirectory."""
    logger.info("Setting up bundle directory %s", path)
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        raise WorkspaceError(f"cannot clear {path}: {e}") from e
    try:
        (path / SERVER_DIR).mkdir(parents=True)
    except OSError as e:
        raise WorkspaceError(f"cannot create {path}: {e}") from e
    logger.info("Bundle directory structure created")


# ── Manifest ─────────────────────────────────────────────────


@dataclass(frozen=True)
class ConfigProperty:
    name: str
    type: str
    title: str
    description: str
    sensitive: bool = False
    required: bool = False

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "title": self.title,
            "description": self.description,
            "sensitive": self.sensitive,
            "required": self.required,
        }


def _duplicates(names: Sequence[str]) -> list[str]:
    seen: set[str] = set()
    dupes: list[str] = []
    for n in names:
        if n in seen and n not in dupes:
            dupes.append(n)
        seen.add(n)
    return dupes


@dataclass(frozen=True)
class ManifestDescriptor:
    name: str
    version: str
    description: str
    author: dict
    tools: tuple[Capability, ...]
    resources: tuple[Capability, ...]
    user_config: tuple[ConfigProperty, ...]
    launch_command: str
    launch_args: tuple[str, ...]
    launch_env: dict
    allowed_hosts: tuple[str, ...]
    compatibility: dict
    transport: dict
    entry_point: str = SERVER_ENTRY

    def __post_init__(self) -> None:
        for category, items in (("tool", self.tools), ("resource", self.resources), ("config", self.user_config)):
            dupes = _duplicates([i.name for i in items])
            if dupes:
                raise ManifestError(f"duplicate {category} name(s): {', '.join(dupes)}")

        # Each user_config property has to reach the server through args or env.
        launch_text = " ".join([*self.launch_args, *self.launch_env.values()])
        for prop in self.user_config:
            if f"${{user_config.{prop.name}}}" not in launch_text:
                raise ManifestError(f"config property {prop.name!r} is not used by the launch args or env")

    def to_dict(self) -> dict:
        return {
            "mcpb_version": MCPB_VERSION,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "author": dict(self.author),
            "license": LICENSE,
            "homepage": HOMEPAGE,
            "repository": HOMEPAGE,
            "keywords": list(KEYWORDS),
            "server": {
                "type": "node",
                "entry_point": self.entry_point,
                "mcp_config": {
                    "command": self.launch_command,
                    "args": list(self.launch_args),
                    "env": dict(self.launch_env),
                },
            },
            "capabilities": {
                "tools": [t.to_dict() for t in self.tools],
                "resources": [r.to_dict() for r in self.resources],
            },
            "user_config": {p.name: p.to_dict() for p in self.user_config},
            "permissions": {"network": {"allowed_hosts": list(self.allowed_hosts)}},
            "compatibility": dict(self.compatibility),
            "metadata": {
                "category": "development",
                "tags": list(TAGS),
                "transport": dict(self.transport),
            },
        }


def build_manifest(config: BuildConfig) -> ManifestDescriptor:
    token_property = ConfigProperty(
        name=config.config_key,
        type="string",
        title=config.credential_key,
        description="Bearer token for the remote MCP endpoint, sent as the Authorization header",
        sensitive=True,
        required=True,
    )
    return ManifestDescriptor(
        name=config.name,
        version=config.version,
        description=config.description,
        author=AUTHOR,
        tools=config.tools,
        resources=config.resources,
        user_config=(token_property,),
        launch_command="node",
        launch_args=(f"${{__dirname}}/{SERVER_ENTRY}",),
        launch_env={config.credential_key: f"${{user_config.{token_property.name}}}"},
        allowed_hosts=tuple(config.allowed_hosts),
        compatibility={"claude_desktop": MIN_HOST_VERSION, "node": MIN_NODE_VERSION},
        transport={
            "protocol": config.transport.split("-")[0],
            "authentication": "bearer",
            "endpoint": config.endpoint,
        },
    )


def generate_manifest(config: BuildConfig) -> ManifestDescriptor:
    logger.info("Generating MCPB manifest...")
    manifest = build_manifest(config)
    path = config.staging_dir / MANIFEST_FILE
    write_json(path, manifest.to_dict())
    logger.info("Manifest generated: %s", path)
    return manifest


# ── Package descriptor ───────────────────────────────────────


@dataclass(frozen=True)
class PackageDescriptor:
    name: str
    version: str
    entry_point: str
    dependencies: dict
    min_runtime: str

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "private": True,
            "main": self.entry_point,
            "type": "module",
            "scripts": {"start": f"node {self.entry_point}"},
            "dependencies": dict(self.dependencies),
            "engines": {"node": self.min_runtime},
            "license": LICENSE,
        }


def generate_package_descriptor(config: BuildConfig) -> PackageDescriptor:
    logger.info("Generating bundle package.json...")
    package = PackageDescriptor(
        name=f"{config.name}-bundle",
        version=config.version,
        entry_point=SERVER_ENTRY,
        dependencies={REMOTE_PACKAGE: REMOTE_PACKAGE_RANGE},
        min_runtime=MIN_NODE_VERSION,
    )
    path = config.staging_dir / PACKAGE_FILE
    write_json(path, package.to_dict())
    logger.info("Package descriptor generated: %s", path)
    return package


# ── Server stub ──────────────────────────────────────────────


class StubTemplate(string.Template):
    # `$` belongs to JavaScript template literals.
    delimiter = "@@"


SERVER_STUB_TEMPLATE = StubTemplate(
    r"""#!/usr/bin/env node
// Generated by mcpb-build. Bridges MCP stdio to mcp-remote.
// Logs go to stderr: stdout is the MCP channel.

import { spawn } from 'node:child_process';

const NAME = @@name;
const ENDPOINT = @@endpoint;
const TRANSPORT = @@transport;
const ENV_VAR = @@env_var;
const CREDENTIAL_TARGET = @@credential_target;
const REMOTE_PACKAGE = @@remote_package;

const token = process.env[ENV_VAR];
if (!token) {
  console.error(`${NAME}: ${ENV_VAR} is not set`);
  console.error(`Store the bearer token as ${CREDENTIAL_TARGET} and configure it in the host.`);
  process.exit(1);
}

// mcp-remote expands ${VAR} in header values from its own environment, so the
// token never appears on a command line.
const args = ['-y', REMOTE_PACKAGE, ENDPOINT, '--transport', TRANSPORT, '--header', `Authorization:\${${ENV_VAR}}`];
const isWindows = process.platform === 'win32';

// cmd.exe joins arguments with spaces; quote anything it would split or interpret.
function quoteForCmd(arg) {
  return /[\s"&|<>^()]/.test(arg) ? `"${arg.replace(/"/g, '""')}"` : arg;
}

console.error(`${NAME}: starting ${REMOTE_PACKAGE} for ${ENDPOINT} (${TRANSPORT})`);

const child = spawn(isWindows ? 'npx.cmd' : 'npx', isWindows ? args.map(quoteForCmd) : args, {
  stdio: ['pipe', 'pipe', 'inherit'],
  shell: isWindows,
  env: process.env,
});

process.stdin.pipe(child.stdin);
child.stdout.pipe(process.stdout);

// EPIPE after the child exits; the close handler reports it.
child.stdin.on('error', () => {});

child.on('error', (error) => {
  console.error(`${NAME}: failed to start ${REMOTE_PACKAGE}: ${error.message}`);
  process.exit(1);
});

// `close` waits for the child's stdout to drain before exiting.
child.on('close', (code, signal) => {
  if (code !== 0 && code !== null) {
    console.error(`${NAME}: ${REMOTE_PACKAGE} exited with code ${code}`);
  }
  process.exit(code ?? (signal ? 1 : 0));
});

let stopping = false;
function shutdown(signal) {
  if (stopping) return;
  stopping = true;
  if (child.exitCode === null && child.signalCode === null) {
    child.kill(isWindows ? undefined : signal);
  }
  process.exit(0);
}

for (const signal of ['SIGINT', 'SIGTERM', 'SIGHUP']) {
  process.on(signal, () => shutdown(signal));
}
"""
)


@dataclass(frozen=True)
class ServerStub:
    path: str
    env_var: str
    source: str


def js_string(value: str) -> str:
    """Encode `value` as a JavaScript string literal."""
    return json.dumps(value, ensure_ascii=True)


def render_server_stub(
    *, name: str, endpoint: str, transport: str, env_var: str, credential_target: str
) -> str:
    if not ENV_NAME_RE.match(env_var):
        raise ConfigError(f"credential key must be an environment variable name (got {env_var!r})")
    return SERVER_STUB_TEMPLATE.substitute(
        name=js_string(name),
        endpoint=js_string(endpoint),
        transport=js_string(transport),
        env_var=js_string(env_var),
        credential_target=js_string(credential_target),
        remote_package=js_string(f"{REMOTE_PACKAGE}@{REMOTE_PACKAGE_RANGE}"),
    )


def generate_server_stub(config: BuildConfig) -> ServerStub:
    logger.info("Generating server implementation...")
    stub = ServerStub(
        path=SERVER_ENTRY,
        env_var=config.credential_key,
        source=render_server_stub(
            name=config.name,
            endpoint=config.endpoint,
            transport=config.transport,
            env_var=config.credential_key,
            credential_target=config.credential_target,
        ),
    )
    path = config.staging_dir / SERVER_ENTRY
    write_text(path, stub.source)
    logger.info("Server implementation generated: %s", path)
    return stub


def generate_artifacts(config: BuildConfig) -> list[str]:
    generate_manifest(config)
    generate_package_descriptor(config)
    generate_server_stub(config)
    return []


# ── Prerequisites & install ──────────────────────────────────


def run_command(cmd: list[str], *, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    logger.debug("Running %s", " ".join(cmd))
    return subprocess.run(cmd, cwd=cwd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)


def parse_node_version(text: str) -> tuple[int, int, int] | None:
    m = NODE_VERSION_RE.match(text.strip())
    if not m:
        return None
    return int(m.group(1)), int(m.group(2)), int(m.group(3))


def node_version_warnings(text: str) -> list[str]:
    version = parse_node_version(text)
    if version is None:
        return [f"Could not parse node version {text.strip()!r}; the host needs Node.js {MIN_NODE_VERSION}"]
    if version[0] < MIN_NODE_MAJOR:
        return [f"Node.js {MIN_NODE_VERSION} required at runtime, found {text.strip()}"]
    return []


def check_prerequisites(
    *,
    python_version: Sequence[int] | None = None,
    which: Callable[[str], str | None] | None = None,
) -> list[str]:
    """Check the toolchain. Old Python is fatal; Node.js issues are warnings."""
    logger.info("Checking build prerequisites...")
    version = tuple(python_version or sys.version_info[:3])
    if version[:2] < MIN_PYTHON:
        raise PrerequisiteError(
            f"Python {'.'.join(map(str, MIN_PYTHON))}+ required, found {'.'.join(map(str, version))}"
        )
    logger.info("Python version: %s", ".".join(map(str, version)))

    which = which or shutil.which
    warnings: list[str] = []

    node = which("node")
    if node is None:
        warnings.append(f"node not found - the host needs Node.js {MIN_NODE_VERSION} to run the bundle")
    else:
        try:
            proc = run_command([node, "--version"])
        except OSError as e:
            warnings.append(f"Could not run node --version: {e}")
        else:
            if proc.returncode != 0:
                warnings.append(f"node --version failed with code {proc.returncode}")
            else:
                found = node_version_warnings(proc.stdout)
                if not found:
                    logger.info("Node.js version: %s", proc.stdout.strip())
                warnings.extend(found)

    if which("npx") is None:
        warnings.append(f"npx not found - {REMOTE_PACKAGE} may fail at runtime")
    else:
        logger.info("npx available")
    return warnings


def install_dependencies(config: BuildConfig, *, enabled: bool = False) -> list[str]:
    if not enabled:
        logger.info("Skipping bundle dependency installation")
        return [f"Dependency install skipped; npx resolves {REMOTE_PACKAGE} when the host starts the server"]

    npm = shutil.which("npm")
    if npm is None:
        raise InstallError("npm not found on PATH (required by --install)")
    logger.info("Installing bundle dependencies with npm...")
    try:
        proc = run_command([npm, "install", "--omit=dev", "--no-audit", "--no-fund"], cwd=config.staging_dir)
    except OSError as e:
        raise InstallError(f"could not start npm: {e}") from e
    if proc.returncode != 0:
        raise InstallError(f"npm install failed with code {proc.returncode}: {(proc.stderr or proc.stdout).strip()}")
    logger.info("Bundle dependencies installed")
    return []


# ── Validation ───────────────────────────────────────────────


def validate_bundle(staging_dir: Path) -> list[str]:
    """Check that the required artifacts exist and that the JSON ones parse."""
    logger.info("Validating bundle structure...")
    for rel in REQUIRED_FILES:
        if not (staging_dir / rel).is_file():
            raise MissingFileError(rel)
        logger.debug("Found required file: %s", rel)
    for rel in STRUCTURED_FILES:
        read_json(staging_dir / rel, rel)
    logger.info("Bundle validation completed successfully")
    return []


# ── Packaging ────────────────────────────────────────────────


@dataclass(frozen=True)
class BundleArtifact:
    path: Path
    staged_path: Path
    size: int
    sha256: str


def _archive_members(config: BuildConfig, now: datetime) -> list[tuple[str, bytes, int]]:
    staging = config.staging_dir
    members = [
        (rel, (staging / rel).read_bytes(), 0o755 if rel == SERVER_ENTRY else 0o644)
        for rel in REQUIRED_FILES
    ]
    build_info = {
        "builder": BUILDER_ID,
        "endpoint": config.endpoint,
        "timestamp": now.isoformat(),
        "version": config.version,
    }
    members.append((BUILD_INFO_FILE, dump_json(build_info).encode("utf-8"), 0o644))
    return members


def write_archive(path: Path, members: list[tuple[str, bytes, int]], when: datetime) -> None:
    # Entry times are pinned so a given build time yields identical bytes.
    date_time = when.astimezone(timezone.utc).timetuple()[:6]
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as z:
        for arcname, data, mode in members:
            info = zipfile.ZipInfo(arcname, date_time=date_time)
            info.compress_type = zipfile.ZIP_DEFLATED
            info.external_attr = mode << 16
            z.writestr(info, data)


def package_bundle(config: BuildConfig, *, now: datetime | None = None) -> BundleArtifact:
    """Zip the staged artifacts into the bundle and publish a copy."""
    logger.info("Building MCPB bundle...")
    now = now or datetime.now(timezone.utc)
    staged = config.staging_dir / config.output_name
    published = config.publish_dir / config.output_name
    try:
        members = _archive_members(config, now)
        write_archive(staged, members, now)
        data = staged.read_bytes()
        config.publish_dir.mkdir(parents=True, exist_ok=True)
        if published.resolve() != staged.resolve():
            shutil.copyfile(staged, published)
    except OSError as e:
        raise PackagingError(f"MCPB build failed: {e}") from e

    artifact = BundleArtifact(
        path=published, staged_path=staged, size=len(data), sha256=hashlib.sha256(data).hexdigest()
    )
    logger.info("MCPB bundle created: %s (%d bytes)", config.output_name, artifact.size)
    logger.info("Bundle copied to: %s", published)
    return artifact


# ── Live probe ───────────────────────────────────────────────


def compare_tools(declared: Sequence[str], served: Sequence[str]) -> list[str]:
    missing = [n for n in declared if n not in served]
    extra = sorted(set(served) - set(declared))
    warnings: list[str] = []
    if missing:
        warnings.append(f"Probe: declared but not served: {', '.join(missing)}")
    if extra:
        warnings.append(f"Probe: served but not declared: {', '.join(extra)}")
    return warnings


def contains_timeout(exc: BaseException) -> bool:
    """Return True if exc (possibly an exception group) carries a timeout."""
    # Timeouts often surface as cancellation or stream teardown inside anyio task groups.
    if isinstance(exc, (TimeoutError, asyncio.CancelledError)):
        return True
    if type(exc).__name__ in {"BrokenResourceError", "ClosedResourceError"}:
        return True
    if isinstance(exc, BaseExceptionGroup):
        return any(contains_timeout(sub) for sub in exc.exceptions)
    return False


async def probe_bundle(
    config: BuildConfig,
    *,
    command: Sequence[str] | None = None,
    env: Mapping[str, str] | None = None,
    timeout_s: float = 10.0,
    errlog: TextIO | None = None,
) -> list[str]:
    """Launch the staged server over MCP stdio and compare its tools with the manifest."""
    env = dict(os.environ if env is None else env)
    if not env.get(config.credential_key):
        return [f"Probe skipped: {config.credential_key} is not set"]

    manifest = read_json(config.staging_dir / MANIFEST_FILE, MANIFEST_FILE)
    declared = [t["name"] for t in manifest.get("capabilities", {}).get("tools", [])]

    cmd = list(command) if command else ["node", str(config.staging_dir / SERVER_ENTRY)]
    server_params = StdioServerParameters(command=cmd[0], args=cmd[1:], env=env)
    logger.info("Probing bundle server: %s", " ".join(cmd))

    async with stdio_client(server_params, errlog=errlog or sys.stderr) as (read_stream, write_stream):
        async with ClientSession(read_stream, write_stream) as session:
            await asyncio.wait_for(session.initialize(), timeout=timeout_s)
            served = [t.name for t in (await asyncio.wait_for(session.list_tools(), timeout=timeout_s)).tools]

    logger.info("Probe listed %d tool(s)", len(served))
    return compare_tools(declared, served)


def run_probe(config: BuildConfig, *, timeout_s: float = 10.0, **kwargs) -> list[str]:
    """Run the probe; any failure becomes a warning."""
    try:
        return asyncio.run(probe_bundle(config, timeout_s=timeout_s, **kwargs))
    except (Exception, BaseExceptionGroup) as e:
        if contains_timeout(e):
            return [f"Probe timed out after {timeout_s}s"]
        return [f"Probe failed: {e}"]


# ── Orchestration ────────────────────────────────────────────


class BuildState(str, enum.Enum):
    INIT = "Init"
    PREREQS = "Prereqs"
    WORKSPACE = "Workspace"
    GENERATE = "Generate"
    INSTALL = "Install"
    VALIDATE = "Validate"
    PACKAGE = "Package"
    PROBE = "Probe"
    DONE = "Done"
    FAILED = "Failed"


@dataclass
class BuildResult:
    state: BuildState = BuildState.INIT
    steps: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    failed_at: str | None = None
    output_path: Path | None = None
    size: int | None = None
    sha256: str | None = None

    @property
    def ok(self) -> bool:
        return self.state is BuildState.DONE

    def warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    def fail(self, message: str) -> None:
        logger.error("Build failed: %s", message)
        self.failed_at = self.state.value
        self.errors.append(message)
        self.state = BuildState.FAILED

    def to_dict(self) -> dict:
        return {
            "generatedAt": datetime.now(timezone.utc).isoformat(),
            "state": self.state.value,
            "steps": list(self.steps),
            "failedAt": self.failed_at,
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "output": str(self.output_path) if self.output_path else None,
            "size": self.size,
            "sha256": self.sha256,
        }


def build(
    config: BuildConfig,
    *,
    install: bool = False,
    probe: bool = False,
    probe_command: Sequence[str] | None = None,
    timeout_s: float = 10.0,
    now: datetime | None = None,
) -> BuildResult:
    """Run the pipeline in order, stopping at the first fatal error."""
    result = BuildResult()
    logger.info("Starting %s MCPB build (version %s)", config.name, config.version)

    def package() -> list[str]:
        artifact = package_bundle(config, now=now)
        result.output_path = artifact.path
        result.size = artifact.size
        result.sha256 = artifact.sha256
        return []

    steps: list[tuple[BuildState, Callable[[], list[str] | None]]] = [
        (BuildState.PREREQS, check_prerequisites),
        (BuildState.WORKSPACE, lambda: reset_workspace(config.staging_dir)),
        (BuildState.GENERATE, lambda: generate_artifacts(config)),
        (BuildState.INSTALL, lambda: install_dependencies(config, enabled=install)),
        (BuildState.VALIDATE, lambda: validate_bundle(config.staging_dir)),
        (BuildState.PACKAGE, package),
    ]
    if probe:
        steps.append(
            (BuildState.PROBE, lambda: run_probe(config, command=probe_command, timeout_s=timeout_s))
        )

    for state, step in steps:
        result.state = state
        try:
            warnings = step() or []
        except (BuildError, OSError) as e:
            result.fail(str(e))
            return result
        for w in warnings:
            result.warn(w)
        result.steps.append(state.value)

    result.state = BuildState.DONE
    logger.info("Build completed successfully")
    return result


# ── Output formatting ────────────────────────────────────────


def print_warnings(warnings: list[str], *, file: TextIO | None = None):
    if not warnings:
        return
    out = file or sys.stdout
    print(f"  Warnings ({len(warnings)}):", file=out)
    for i, w in enumerate(warnings, 1):
        print(f"    {i}. {w}", file=out)
    print(file=out)


def print_next_steps(config: BuildConfig):
    print("  Next steps:")
    print(f"    1. Store the bearer token in the credential store as {config.credential_target}")
    print(f"    2. Install {config.output_name} in Claude Desktop")
    print("    3. Remove the old JSON entry from claude_desktop_config.json")
    print()


def print_summary(result: BuildResult, config: BuildConfig):
    print(f"{config.name} {config.version} (MCPB {MCPB_VERSION})\n")
    print(f"  Bundle:  {result.output_path}")
    print(f"  Size:    {result.size} bytes")
    print(f"  SHA-256: {result.sha256}\n")
    print_warnings(result.warnings)
    print_next_steps(config)


def print_failure(result: BuildResult):
    reason = result.errors[-1] if result.errors else "unknown error"
    sys.stderr.write(f"mcpb-build: error: {reason}\n")
    if result.failed_at and result.failed_at != BuildState.INIT.value:
        sys.stderr.write(f"  (failed during {result.failed_at}; staging directory left for inspection)\n")
    print_warnings(result.warnings, file=sys.stderr)


# ── Main ─────────────────────────────────────────────────────


def setup_logging(level: int = logging.INFO) -> None:
    """Send mcpb_build logs to stderr with a timestamped format."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    logger.handlers[:] = [handler]
    logger.setLevel(level)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcpb-build",
        description="Build an MCPB bundle that bridges Claude Desktop to a remote MCP endpoint.",
        epilog="The bearer token is never written into the bundle; the host supplies it at launch.",
    )
    parser.add_argument("--json", action="store_true", dest="as_json", help="Print the build result as JSON")
    parser.add_argument("--save", type=Path, help="Save the JSON build result to a file")
    parser.add_argument("--name", help="Bundle name (env: MCPB_NAME)")
    parser.add_argument("--version", dest="bundle_version", help="Release version (env: MCPB_VERSION, GITHUB_REF_NAME)")
    parser.add_argument("--endpoint", help="Remote MCP endpoint URL (env: MCPB_ENDPOINT)")
    parser.add_argument("--transport", choices=TRANSPORTS, help=f"mcp-remote transport (default: {DEFAULT_TRANSPORT})")
    parser.add_argument("--credential-key", help="Environment variable holding the token (env: MCPB_CREDENTIAL_KEY)")
    parser.add_argument("--staging", type=Path, help="Staging directory (env: MCPB_STAGING_DIR, default: ./bundle)")
    parser.add_argument("--publish-dir", type=Path, help="Where the finished bundle is copied (env: MCPB_PUBLISH_DIR)")
    parser.add_argument("--output", help="Bundle file name (default: <name>.mcpb)")
    parser.add_argument(
        "--tool",
        action="append",
        default=[],
        metavar="NAME=DESCRIPTION",
        help="Declare a tool (repeatable; replaces the built-in catalog)",
    )
    parser.add_argument("--install", action="store_true", help="Run npm install in the staging directory")
    parser.add_argument("--probe", action="store_true", help="Launch the built server and compare its tools")
    parser.add_argument("--probe-command", help="Command used by --probe instead of node server/index.js")
    parser.add_argument("--timeout", type=float, default=10.0, help="Timeout (seconds) for probe MCP calls (default: 10)")
    vgroup = parser.add_mutually_exclusive_group()
    vgroup.add_argument("--quiet", action="store_true", help="Only log warnings and errors")
    vgroup.add_argument("--verbose", action="store_true", help="Log debug details")
    return parser


def main(argv: list[str] | None = None) -> None:
    ns = build_parser().parse_args(argv)

    level = logging.INFO
    if ns.quiet:
        level = logging.WARNING
    elif ns.verbose:
        level = logging.DEBUG
    setup_logging(level)

    config: BuildConfig | None = None
    try:
        config = resolve_config(
            name=ns.name,
            version=ns.bundle_version,
            endpoint=ns.endpoint,
            transport=ns.transport,
            credential_key=ns.credential_key,
            staging_dir=ns.staging,
            publish_dir=ns.publish_dir,
            output_name=ns.output,
            tools=[parse_capability(t) for t in ns.tool] or None,
        )
    except ConfigError as e:
        result = BuildResult()
        result.fail(str(e))
    else:
        probe_command = shlex.split(ns.probe_command) if ns.probe_command else None
        result = build(
            config,
            install=ns.install,
            probe=ns.probe,
            probe_command=probe_command,
            timeout_s=ns.timeout,
        )

    report = result.to_dict()
    if ns.save:
        try:
            ns.save.write_text(dump_json(report), encoding="utf-8")
        except OSError as e:
            sys.stderr.write(f"mcpb-build: error: cannot save build result to {ns.save}: {e}\n")
            raise SystemExit(1)
    if ns.as_json:
        sys.stdout.write(dump_json(report))
    elif result.ok and config is not None:
        print_summary(result, config)

    if not result.ok:
        print_failure(result)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
