"""
Pytest fixtures and configuration.
"""

from __future__ import annotations

import json
import logging
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, Generator, Sequence

import pytest

from depaudit.config import PipelineConfig
from depaudit.constants import STAGE_TOOLS
from depaudit.core.models import ExceptionEntry, PolicyScope
from depaudit.engine.artifacts import ArtifactStore
from depaudit.engine.invoker import ToolInvoker, ToolOutput
from depaudit.exceptions import ArtifactError, ToolInvocationError
from depaudit.policy import PolicyStore


class FakeInvoker(ToolInvoker):
    """
    Scripted tool invoker.

    Outputs are keyed by ``"<stage>/<tool>"`` or, for any tool of the stage,
    by the bare stage id. A value is a ToolOutput, an exception to raise, or
    a callable returning either. Stages listed in ``blocking`` wait until
    cancel() is called (or ``release`` is set).
    """

    def __init__(
        self,
        outputs: dict[str, Any] | None = None,
        delays: dict[str, float] | None = None,
        blocking: Sequence[str] = (),
    ) -> None:
        self.outputs = dict(outputs or {})
        self.delays = dict(delays or {})
        self.blocking = set(blocking)
        self.calls: list[tuple[str, tuple[str, ...], float, str | None]] = []
        self.release = threading.Event()
        self.cancelled = False
        self.cancels = 0
        self.resets = 0
        self._lock = threading.Lock()

    def invoke(
        self,
        stage_id: str,
        ignore_list: Sequence[str],
        timeout: float,
        tool: str | None = None,
    ) -> ToolOutput:
        with self._lock:
            self.calls.append((stage_id, tuple(ignore_list), timeout, tool))

        if self.cancelled:
            raise ToolInvocationError("Invocation cancelled", stage=stage_id, tool=tool)

        if stage_id in self.blocking:
            self.release.wait(10)
            if self.cancelled:
                raise ToolInvocationError("Invocation cancelled", stage=stage_id, tool=tool)

        if stage_id in self.delays:
            time.sleep(self.delays[stage_id])

        scripted = self.outputs.get(f"{stage_id}/{tool}", self.outputs.get(stage_id))
        if callable(scripted):
            scripted = scripted()
        if isinstance(scripted, BaseException):
            raise scripted
        if scripted is None:
            raise ToolInvocationError("No scripted output", stage=stage_id, tool=tool)
        return scripted

    def cancel(self) -> None:
        self.cancels += 1
        self.cancelled = True
        self.release.set()

    def reset(self) -> None:
        self.cancelled = False
        self.release.clear()
        self.resets += 1

    def called_stages(self) -> set[str]:
        return {call[0] for call in self.calls}

    def called_tools(self, stage_id: str) -> list[str | None]:
        return [call[3] for call in self.calls if call[0] == stage_id]


class MemoryArtifactStore(ArtifactStore):
    """Artifact store kept in a dict; ``fail`` makes every put raise."""

    def __init__(self, fail: bool = False) -> None:
        self.blobs: dict[tuple[str, str], bytes] = {}
        self.fail = fail
        self._lock = threading.Lock()

    def put(self, name: str, run_id: str, blob: bytes) -> str:
        if self.fail:
            raise ArtifactError("Disk full")
        with self._lock:
            self.blobs[(name, run_id)] = blob
        return f"memory://{run_id}/{name}"

    def get(self, name: str, run_id: str) -> bytes:
        try:
            return self.blobs[(name, run_id)]
        except KeyError:
            raise ArtifactError("Artifact not found") from None


def tool_output(data: Any, exit_status: int = 0, stream: str = "stdout", secondary: str = "") -> ToolOutput:
    """ToolOutput with ``data`` serialized as JSON (strings are passed through)."""
    raw = data if isinstance(data, str) else json.dumps(data)
    return ToolOutput(raw=raw, exit_status=exit_status, secondary=secondary, stream=stream)


def primary_tools_only() -> dict[str, Any]:
    """Stage settings that leave each stage only its first tool."""
    return {
        stage: {"tools": {name: {"enabled": False} for name in tools[1:]}}
        for stage, tools in STAGE_TOOLS.items()
    }


@pytest.fixture(autouse=True)
def reset_logging() -> Generator[None, None, None]:
    """Drop handlers installed by CLI runs; their streams close with the runner."""
    yield
    logger = logging.getLogger("depaudit")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def project_dir(temp_dir: Path) -> Path:
    """A Rust project with cargo-vet configured."""
    project = temp_dir / "project"
    (project / "supply-chain").mkdir(parents=True)
    (project / "supply-chain" / "config.toml").write_text("[cargo-vet]\nversion = \"0.9\"\n")
    (project / "Cargo.toml").write_text("[package]\nname = \"demo\"\nversion = \"0.1.0\"\n")
    return project


@pytest.fixture
def pipeline_config(project_dir: Path, temp_dir: Path) -> PipelineConfig:
    """Configuration pointing at the test project with one tool per stage and no grace period."""
    return PipelineConfig(
        project_dir=project_dir,
        artifact_dir=temp_dir / "reports",
        stage_grace_seconds=0.0,
        stages=primary_tools_only(),
    )


@pytest.fixture
def policy() -> PolicyStore:
    """The project's documented exceptions."""
    return PolicyStore([
        ExceptionEntry(
            "RUSTSEC-2023-0071",
            PolicyScope.ADVISORIES,
            "RSA Marvin Attack - only affects Windows SSPI, not used on Linux",
        ),
        ExceptionEntry(
            "RUSTSEC-2024-0436",
            PolicyScope.ADVISORIES,
            "paste crate unmaintained - transitive dependency, no alternative available",
        ),
    ])


@pytest.fixture
def fake_invoker_factory() -> Generator[Callable[..., FakeInvoker], None, None]:
    """Build scripted invokers; all are released at teardown."""
    created: list[FakeInvoker] = []

    def factory(**kwargs: Any) -> FakeInvoker:
        invoker = FakeInvoker(**kwargs)
        created.append(invoker)
        return invoker

    yield factory

    for invoker in created:
        invoker.release.set()


@pytest.fixture
def memory_artifacts() -> MemoryArtifactStore:
    return MemoryArtifactStore()


@pytest.fixture
def audit_report() -> dict[str, Any]:
    """cargo-audit JSON with one ignored and one new vulnerability."""
    return {
        "database": {"advisory-count": 812, "last-commit": "5c1e9b1"},
        "lockfile": {"dependency-count": 214},
        "vulnerabilities": {
            "found": True,
            "count": 2,
            "list": [
                {
                    "advisory": {
                        "id": "RUSTSEC-2023-0071",
                        "title": "Marvin Attack: potential key recovery through timing sidechannels",
                        "description": "Non-constant-time RSA decryption.",
                        "url": "https://rustsec.org/advisories/RUSTSEC-2023-0071",
                    },
                    "package": {"name": "rsa", "version": "0.9.6"},
                },
                {
                    "advisory": {
                        "id": "RUSTSEC-2024-0003",
                        "title": "Resource exhaustion vulnerability in h2",
                        "description": "An attacker can exhaust server memory.",
                    },
                    "package": {"name": "h2", "version": "0.3.22"},
                },
            ],
        },
        "warnings": {
            "unmaintained": [
                {
                    "kind": "unmaintained",
                    "advisory": {
                        "id": "RUSTSEC-2024-0436",
                        "title": "paste - no longer maintained",
                    },
                    "package": {"name": "paste", "version": "1.0.15"},
                }
            ]
        },
    }


@pytest.fixture
def clean_audit_report() -> dict[str, Any]:
    return {
        "vulnerabilities": {"found": False, "count": 0, "list": []},
        "warnings": {},
    }


@pytest.fixture
def deny_output() -> str:
    """cargo-deny JSON lines with a license rejection and a duplicate."""
    lines = [
        {
            "type": "diagnostic",
            "fields": {
                "severity": "error",
                "code": "rejected",
                "message": "failed to satisfy license requirements",
                "graphs": [{"Krate": {"name": "ring", "version": "0.16.20"}}],
            },
        },
        {
            "type": "diagnostic",
            "fields": {
                "severity": "warning",
                "code": "duplicate",
                "message": "found 2 duplicate entries for crate 'syn'",
                "graphs": [{"Krate": {"name": "syn", "version": "1.0.109"}}],
            },
        },
        {
            "type": "diagnostic",
            "fields": {"severity": "note", "code": "accepted", "message": "license accepted"},
        },
        {"type": "summary", "fields": {"advisories": {"errors": 0}}},
    ]
    return "\n".join(json.dumps(line) for line in lines) + "\n"


@pytest.fixture
def vet_failure_report() -> dict[str, Any]:
    return {
        "conclusion": "fail (vetting)",
        "failures": [
            {"name": "tokio", "version": "1.36.0", "missing_criteria": ["safe-to-deploy"]},
        ],
    }


@pytest.fixture
def vet_success_report() -> dict[str, Any]:
    return {"conclusion": "success", "vetted_fully": [{"name": "serde", "version": "1.0.197"}]}


@pytest.fixture
def machete_output() -> str:
    """cargo-machete text report with unused dependencies in two crates."""
    return (
        "Analyzing dependencies of crates in this directory...\n"
        "cargo-machete found the following unused dependencies in this directory:\n"
        "demo -- ./Cargo.toml:\n"
        "\tanyhow\n"
        "\tlog\n"
        "demo-cli -- ./cli/Cargo.toml:\n"
        "\tserde_json\n"
        "\n"
        "If you believe cargo-machete has detected an unused dependency incorrectly,\n"
        "you can add the dependency to the list of dependencies to ignore in the\n"
        "`[package.metadata.cargo-machete]` section of the appropriate Cargo.toml.\n"
    )


@pytest.fixture
def udeps_report() -> dict[str, Any]:
    return {
        "success": False,
        "unused_deps": {
            "demo 0.1.0 (path+file:///work/demo)": {
                "manifest_path": "/work/demo/Cargo.toml",
                "normal": ["log"],
                "development": ["proptest"],
                "build": [],
            },
        },
        "note": "Note: They might be false-positive.",
    }


@pytest.fixture
def geiger_report() -> dict[str, Any]:
    """cargo-geiger JSON: one crate using unsafe code, one forbidding it."""
    return {
        "packages": [
            {
                "package": {"id": {"name": "libc", "version": "0.2.153"}},
                "unsafety": {
                    "used": {
                        "functions": {"safe": 0, "unsafe_": 12},
                        "exprs": {"safe": 40, "unsafe_": 300},
                        "item_impls": {"safe": 0, "unsafe_": 0},
                    },
                    "forbids_unsafe": False,
                },
            },
            {
                "package": {"id": {"name": "demo", "version": "0.1.0"}},
                "unsafety": {
                    "used": {"functions": {"safe": 5, "unsafe_": 0}},
                    "forbids_unsafe": True,
                },
            },
        ],
    }


@pytest.fixture
def tree_duplicates_output() -> str:
    """``cargo tree --duplicates`` with syn locked at two versions."""
    return (
        "syn v1.0.109\n"
        "└── serde_derive v1.0.130 (proc-macro)\n"
        "    └── serde v1.0.130\n"
        "        └── demo v0.1.0 (/work/demo)\n"
        "\n"
        "syn v2.0.52\n"
        "└── tokio-macros v2.2.0 (proc-macro)\n"
        "    └── tokio v1.36.0\n"
        "        └── demo v0.1.0 (/work/demo)\n"
    )


@pytest.fixture
def crev_output() -> str:
    """``cargo crev verify`` table: one passing, one unreviewed, one flagged crate."""
    return (
        "status reviews     downloads    own. advisories issues lines  geiger flgs crate                version         latest_t\n"
        "pass    1  2   1234567  9876543 1/1    0    0      0   1200      0      serde                1.0.197\n"
        "none    0  0     12345   456789 0/2    0    0      0   3400     15      rsa                  0.9.6\n"
        "flagged 1  1      2345    45678 0/1    0    1      0    800      2      paste                1.0.15\n"
    )
