import json
import os
import subprocess
import sys

import pytest


@pytest.fixture
def cli_env(tmp_path):
    env = dict(os.environ)
    env["FAULTLINE_ROOT"] = str(tmp_path)
    env["FAULTLINE_DATA_DIR"] = str(tmp_path / ".faultline")
    env["AGENT_IDS"] = "worker-a,worker-b"
    env["TYPECHECK_CMD"] = ""
    env["LINT_CMD"] = ""
    return env


def _run(env, *args):
    return subprocess.run(
        [sys.executable, "-m", "faultline", *args],
        capture_output=True,
        text=True,
        env=env,
        cwd=env["FAULTLINE_ROOT"],
    )


def test_faultline_status(cli_env):
    """Status prints the version and the configured agent count."""
    result = _run(cli_env, "status")
    assert result.returncode == 0
    assert "faultline v" in result.stdout
    assert "Known agents: 2" in result.stdout


def test_faultline_help(cli_env):
    """Help lists the main subcommands."""
    result = _run(cli_env, "--help")
    assert result.returncode == 0
    assert "scan" in result.stdout
    assert "health" in result.stdout
    assert "recover" in result.stdout


def test_scan_clean_tree(cli_env):
    """Scanning a tree with no watched sources finds nothing and exits 0."""
    result = _run(cli_env, "scan")
    assert result.returncode == 0
    assert "Findings: 0" in result.stdout


def test_metrics_then_health(cli_env):
    """Recorded metrics feed the health command; agents without metrics fail it."""
    assert _run(cli_env, "metrics", "worker-a", "--completed", "9", "--failed", "1").returncode == 0

    result = _run(cli_env, "health", "worker-a", "--json")
    assert result.returncode == 0
    checks = json.loads(result.stdout)
    assert checks[0]["healthy"] is True

    result = _run(cli_env, "health")
    assert result.returncode == 1
    assert "worker-b" in result.stdout


def test_recover_build_failure_escalates(cli_env):
    """A build failure escalates and leaves a critical build-error record."""
    result = _run(cli_env, "recover", "tsc exited with 2", "--agent", "worker-a", "--category", "build")
    assert result.returncode == 0
    assert json.loads(result.stdout)["action"] == "escalate"

    result = _run(cli_env, "errors", "--kind", "build-error", "--json")
    records = json.loads(result.stdout)
    assert len(records) == 1
    assert records[0]["severity"] == "critical"


def test_strategies_export(cli_env, tmp_path):
    """The strategy table can be exported to YAML."""
    target = tmp_path / "strategies.yaml"
    result = _run(cli_env, "strategies", "--export", str(target))
    assert result.returncode == 0
    assert "rate limit|429" in target.read_text(encoding="utf-8")
