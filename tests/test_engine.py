"""
Tests for tool invocation and artifact storage.
"""

import json
import os
import sys
import threading
import time
from pathlib import Path

import pytest

from depaudit.config import PipelineConfig
from depaudit.core.models import PolicyScope, StageOutcome
from depaudit.engine.artifacts import FileArtifactStore, artifact_name, stage_of
from depaudit.engine.invoker import SubprocessInvoker, ToolCommand
from depaudit.exceptions import ArtifactError, ToolInvocationError
from depaudit.policy import PolicyStore
from depaudit.stages import StageTool, VulnerabilityStage

# A tool whose real work happens in a helper process, like `cargo audit`
# handing over to `cargo-audit`
SPAWNS_HELPER = (
    "import subprocess, sys, time; "
    "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(8)']); "
    "time.sleep(30)"
)


def python_tool(script: str, **kwargs) -> ToolCommand:
    return ToolCommand([sys.executable, "-c", script], **kwargs)


class TestSubprocessInvoker:
    """Tests for SubprocessInvoker."""

    def test_ignore_flags_appended(self):
        invoker = SubprocessInvoker({
            "vulnerability": {"cargo-deny": ToolCommand(["cargo", "deny", "check"], ignore_flag="--ignore")},
        })

        command = invoker.build_command("vulnerability", ["RUSTSEC-2023-0071", "RUSTSEC-2024-0436"])

        assert command == [
            "cargo", "deny", "check",
            "--ignore", "RUSTSEC-2023-0071",
            "--ignore", "RUSTSEC-2024-0436",
        ]

    def test_no_flag_no_ignores(self):
        invoker = SubprocessInvoker({"supply-chain": {"cargo-vet": ToolCommand(["cargo", "vet"])}})
        assert invoker.build_command("supply-chain", ["X"]) == ["cargo", "vet"]

    def test_tool_selection(self):
        """Without a tool name the stage's first tool runs."""
        invoker = SubprocessInvoker({"supply-chain": {
            "cargo-vet": ToolCommand(["cargo", "vet"]),
            "cargo-crev": ToolCommand(["cargo", "crev", "verify"]),
        }})

        assert invoker.resolve("supply-chain")[0] == "cargo-vet"
        assert invoker.build_command("supply-chain", [], tool="cargo-crev") == ["cargo", "crev", "verify"]

    def test_unconfigured_stage(self):
        with pytest.raises(ToolInvocationError, match="No command"):
            SubprocessInvoker({}).invoke("vulnerability", [], 10)

    def test_unconfigured_tool(self):
        invoker = SubprocessInvoker({"vulnerability": {"cargo-audit": ToolCommand(["cargo", "audit"])}})
        with pytest.raises(ToolInvocationError, match="No command") as exc_info:
            invoker.invoke("vulnerability", [], 10, tool="cargo-geiger")
        assert exc_info.value.tool == "cargo-geiger"

    def test_missing_executable(self):
        invoker = SubprocessInvoker({"vulnerability": {"cargo-audit": ToolCommand(["definitely-not-a-scanner-xyz"])}})
        with pytest.raises(ToolInvocationError, match="not found"):
            invoker.invoke("vulnerability", [], 10)

    def test_captures_output_and_nonzero_exit(self, temp_dir: Path):
        """A non-zero exit status is data, not an error."""
        script = "import sys; print('{\"found\": true}'); sys.stderr.write('Fetching advisory database\\n'); sys.exit(1)"
        invoker = SubprocessInvoker(
            {"vulnerability": {"cargo-audit": python_tool(script)}},
            cwd=temp_dir,
        )

        output = invoker.invoke("vulnerability", [], 30)

        assert output.exit_status == 1
        assert output.raw.strip() == '{"found": true}'
        assert output.stream == "stdout"
        assert output.secondary == "Fetching advisory database\n"

    def test_report_read_from_stderr(self):
        script = "import sys; sys.stdout.write('progress\\n'); sys.stderr.write('{\"type\": \"summary\"}\\n')"
        invoker = SubprocessInvoker({
            "vulnerability": {"cargo-deny": python_tool(script, output_stream="stderr")},
        })

        output = invoker.invoke("vulnerability", [], 30, tool="cargo-deny")

        assert output.raw == '{"type": "summary"}\n'
        assert output.stream == "stderr"
        assert output.secondary == "progress\n"
        assert output.secondary_stream == "stdout"

    def test_timeout(self):
        invoker = SubprocessInvoker({
            "vulnerability": {"cargo-audit": python_tool("import time; time.sleep(30)")},
        })

        with pytest.raises(ToolInvocationError) as exc_info:
            invoker.invoke("vulnerability", [], 0.5)

        assert exc_info.value.timed_out is True
        assert exc_info.value.tool == "cargo-audit"

    @pytest.mark.skipif(os.name != "posix", reason="process groups are POSIX only")
    def test_timeout_stops_helper_processes(self):
        """A helper holding the output pipes is killed with the tool."""
        invoker = SubprocessInvoker({"vulnerability": {"cargo-audit": python_tool(SPAWNS_HELPER)}})

        started = time.monotonic()
        with pytest.raises(ToolInvocationError) as exc_info:
            invoker.invoke("vulnerability", [], 1)

        assert exc_info.value.timed_out is True
        assert time.monotonic() - started < 5

    @pytest.mark.skipif(os.name != "posix", reason="process groups are POSIX only")
    def test_cancel_stops_running_tool(self):
        invoker = SubprocessInvoker({"vulnerability": {"cargo-audit": python_tool(SPAWNS_HELPER)}})
        timer = threading.Timer(0.5, invoker.cancel)
        timer.start()

        started = time.monotonic()
        try:
            with pytest.raises(ToolInvocationError, match="cancelled"):
                invoker.invoke("vulnerability", [], 30)
        finally:
            timer.cancel()

        assert time.monotonic() - started < 5

    def test_cancelled_invoker_refuses_work(self):
        invoker = SubprocessInvoker({"vulnerability": {"cargo-audit": python_tool("pass")}})
        invoker.cancel()

        with pytest.raises(ToolInvocationError, match="cancelled"):
            invoker.invoke("vulnerability", [], 10)

    def test_reset_after_cancel(self):
        """The same invoker accepts work again once reset."""
        invoker = SubprocessInvoker({"vulnerability": {"cargo-audit": python_tool("print('{}')")}})
        invoker.cancel()
        invoker.reset()

        output = invoker.invoke("vulnerability", [], 30)

        assert output.exit_status == 0
        assert output.raw.strip() == "{}"

    def test_from_config(self, temp_dir: Path):
        """Advisory exceptions reach cargo-audit through the policy, not its command line."""
        invoker = SubprocessInvoker.from_config(PipelineConfig(project_dir=temp_dir))

        assert invoker.build_command("vulnerability", ["RUSTSEC-2023-0071"]) == ["cargo", "audit", "--json"]
        assert invoker.resolve("vulnerability", "cargo-deny")[1].output_stream == "stderr"
        assert invoker.resolve("dependency-hygiene")[0] == "cargo-machete"

    def test_from_config_skips_disabled_tools(self, temp_dir: Path):
        config = PipelineConfig(
            project_dir=temp_dir,
            stages={"supply-chain": {"tools": {"cargo-crev": {"enabled": False}}}},
        )
        invoker = SubprocessInvoker.from_config(config)

        with pytest.raises(ToolInvocationError, match="No command"):
            invoker.resolve("supply-chain", "cargo-crev")


class TestSubprocessStageRun:
    """A real child process feeding a stage."""

    def test_deny_diagnostics_on_stderr_fail_the_stage(self, temp_dir: Path):
        """Diagnostics written to stderr are parsed and stored; the stage fails, it does not error."""
        diagnostic = json.dumps({"type": "diagnostic", "fields": {
            "severity": "error",
            "code": "rejected",
            "message": "failed to satisfy license requirements",
            "graphs": [{"Krate": {"name": "ring", "version": "0.16.20"}}],
        }})
        script = (
            "import sys; sys.stdout.write('checking 214 crates\\n'); "
            f"sys.stderr.write({diagnostic!r} + '\\n'); sys.exit(1)"
        )
        invoker = SubprocessInvoker({
            "vulnerability": {"cargo-deny": python_tool(script, output_stream="stderr")},
        })
        store = FileArtifactStore(temp_dir)

        result = VulnerabilityStage().run(
            invoker,
            PolicyStore(),
            store,
            run_id="run-1",
            timeout=30,
            tools=[StageTool("cargo-deny")],
        )

        assert result.outcome is StageOutcome.FAILURE
        (finding,) = result.findings
        assert finding.identifier == "ring"
        assert finding.scope is PolicyScope.LICENSES
        assert b"rejected" in store.get("vulnerability.cargo-deny", "run-1")
        assert store.get("vulnerability.cargo-deny.stdout", "run-1") == b"checking 214 crates\n"


class TestFileArtifactStore:
    """Tests for FileArtifactStore."""

    def test_put_and_get(self, temp_dir: Path):
        store = FileArtifactStore(temp_dir)

        ref = store.put("vulnerability.cargo-audit", "run-1", b'{"vulnerabilities": {}}')

        assert Path(ref) == temp_dir / "run-1" / "vulnerability.cargo-audit.out"
        assert store.get("vulnerability.cargo-audit", "run-1") == b'{"vulnerabilities": {}}'
        assert store.run_ids() == ["run-1"]

    def test_names(self):
        assert artifact_name("vulnerability", "cargo-deny") == "vulnerability.cargo-deny"
        assert artifact_name("vulnerability", "cargo-deny", "stdout") == "vulnerability.cargo-deny.stdout"
        assert stage_of("dependency-hygiene.cargo-machete.stderr") == "dependency-hygiene"

    def test_missing_artifact(self, temp_dir: Path):
        with pytest.raises(ArtifactError, match="not found"):
            FileArtifactStore(temp_dir).get("vulnerability.cargo-audit", "run-1")

    @pytest.mark.parametrize("run_id", ["../escape", "", ".hidden", "a/b"])
    def test_unsafe_keys_rejected(self, temp_dir: Path, run_id: str):
        with pytest.raises(ArtifactError, match="Unsafe"):
            FileArtifactStore(temp_dir).put("vulnerability.cargo-audit", run_id, b"x")

    def test_unsafe_name_rejected(self, temp_dir: Path):
        with pytest.raises(ArtifactError, match="Unsafe"):
            FileArtifactStore(temp_dir).put("../vulnerability", "run-1", b"x")

    def test_discard_expired_per_stage_retention(self, temp_dir: Path):
        """Vulnerability reports outlive hygiene reports, whichever tool wrote them."""
        store = FileArtifactStore(
            temp_dir,
            retention_days={"vulnerability": 90, "dependency-hygiene": 30},
        )
        store.put("vulnerability.cargo-audit", "old-run", b"a")
        store.put("dependency-hygiene.cargo-machete", "old-run", b"b")
        store.put("dependency-hygiene.cargo-tree.stderr", "old-run", b"b2")
        store.put("dependency-hygiene.cargo-machete", "new-run", b"c")

        forty_days_ago = time.time() - 40 * 86400
        for name in (
            "vulnerability.cargo-audit.out",
            "dependency-hygiene.cargo-machete.out",
            "dependency-hygiene.cargo-tree.stderr.out",
        ):
            os.utime(temp_dir / "old-run" / name, (forty_days_ago, forty_days_ago))

        assert store.discard_expired(dry_run=True) == 2
        assert (temp_dir / "old-run" / "dependency-hygiene.cargo-machete.out").exists()

        assert store.discard_expired() == 2
        assert not (temp_dir / "old-run" / "dependency-hygiene.cargo-machete.out").exists()
        assert store.get("vulnerability.cargo-audit", "old-run") == b"a"
        assert store.get("dependency-hygiene.cargo-machete", "new-run") == b"c"

    def test_empty_run_directory_removed(self, temp_dir: Path):
        store = FileArtifactStore(temp_dir, default_retention_days=1)
        store.put("supply-chain.cargo-vet", "run-1", b"x")
        old = time.time() - 2 * 86400
        os.utime(temp_dir / "run-1" / "supply-chain.cargo-vet.out", (old, old))

        store.discard_expired()

        assert store.run_ids() == []
