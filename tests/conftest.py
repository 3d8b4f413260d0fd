from __future__ import annotations

import pathlib
import sys

import pytest

REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]

if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from apps.toolpacks.python.kyverno import runtime  # noqa: E402
from tests.helpers.fakes import FakeClusterClient  # noqa: E402


@pytest.fixture(scope="session")
def repo_root() -> pathlib.Path:
    return REPO_ROOT


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "KYSCAN_KUBECONFIG",
        "KYSCAN_KUBE_CONTEXT",
        "KYSCAN_NAMESPACE_MODE",
        "KYSCAN_DEFAULT_NAMESPACE",
        "KYSCAN_NAMESPACE_EXCLUDE",
        "KYSCAN_AUDIT_WARN",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fake_cluster() -> FakeClusterClient:
    return FakeClusterClient()


@pytest.fixture
def wired_runtime(fake_cluster: FakeClusterClient):
    """Point the kyverno tool modules at ``fake_cluster`` for one test."""

    from scancore.engine import ApplicationOrchestrator, PolicyEngine
    from scancore.evaluator import PatternEvaluator
    from scancore.loader import PolicyLoader
    from scancore.report import ReportClassifier
    from scancore.resolver import ResolverOptions, ResourceResolver

    def engine_factory(settings):
        return PolicyEngine(
            loader=PolicyLoader(),
            resolver=ResourceResolver(
                lambda credential: fake_cluster,
                options=ResolverOptions.from_settings(settings),
            ),
            orchestrator=ApplicationOrchestrator(PatternEvaluator()),
            classifier=ReportClassifier(clock=lambda: 1_700_000_000),
        )

    runtime.set_engine_factory(engine_factory)
    runtime.set_client_factory(lambda settings: fake_cluster)
    try:
        yield fake_cluster
    finally:
        runtime.set_engine_factory(None)
        runtime.set_client_factory(None)


@pytest.fixture
def sample_service(tmp_path: pathlib.Path):
    """McpService over the ``mcp.tool:sample.*`` test tools, logging under ``tmp_path``."""

    from apps.mcp_server.service.mcp_service import McpService
    from tests.helpers.toolpack_samples import write_sample_toolpacks

    return McpService.create(
        toolpacks_dir=write_sample_toolpacks(tmp_path / "toolpacks"),
        schema_dir=REPO_ROOT / "apps" / "mcp_server" / "schemas" / "mcp",
        log_dir=tmp_path / "runs",
    )


@pytest.fixture
def kyverno_service(tmp_path: pathlib.Path, wired_runtime: FakeClusterClient):
    """McpService over the shipped kyverno tools, backed by ``wired_runtime``."""

    from apps.mcp_server.service.mcp_service import McpService

    return McpService.create(
        toolpacks_dir=REPO_ROOT / "apps" / "mcp_server" / "toolpacks",
        schema_dir=REPO_ROOT / "apps" / "mcp_server" / "schemas" / "mcp",
        log_dir=tmp_path / "runs",
    )
