"""Tool invocation, artifact storage and pipeline orchestration."""

from depaudit.engine.artifacts import ArtifactStore, FileArtifactStore
from depaudit.engine.invoker import SubprocessInvoker, ToolInvoker, ToolOutput
from depaudit.engine.pipeline import Pipeline, PipelineResult, build_graph, new_run_id

__all__ = [
    "ArtifactStore",
    "FileArtifactStore",
    "Pipeline",
    "PipelineResult",
    "SubprocessInvoker",
    "ToolInvoker",
    "ToolOutput",
    "build_graph",
    "new_run_id",
]
