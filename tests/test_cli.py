"""
CLI tests — plan/apply/destroy cycles against the sandbox provider.
"""
import json
import os
import shutil
import subprocess
import sys

import pytest
from click.testing import CliRunner

from converge import providers
from converge.cli import cli
from converge.errors import PermanentAPIError
from converge.providers.sandbox import SandboxProvider

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    infra = tmp_path / "infra"
    infra.mkdir()
    shutil.copy(os.path.join(FIXTURES, "web_tier.tf"), infra / "main.tf")
    (tmp_path / "converge.yaml").write_text(
        "state: state/converge.tfstate.json\n"
        "parallelism: 4\n"
        "retry:\n"
        "  max_attempts: 2\n"
        "  backoff: 0\n"
        "provider:\n"
        "  kind: sandbox\n"
        "  path: state/sandbox.json\n"
    )
    monkeypatch.chdir(tmp_path)
    return tmp_path


def _state(workspace):
    with open(workspace / "state" / "converge.tfstate.json", encoding="utf-8") as fh:
        return json.load(fh)


def _invoke(*args, **kwargs):
    return CliRunner().invoke(cli, list(args), **kwargs)


class TestPlanCommand:
    def test_plan_succeeds_and_writes_nothing(self, workspace):
        result = _invoke("plan", "infra")
        assert result.exit_code == 0, result.output
        assert not (workspace / "state" / "converge.tfstate.json").exists()

    def test_plan_json_report(self, workspace):
        result = _invoke("plan", "infra", "--format", "json", "-o", "plan.json")
        assert result.exit_code == 0, result.output
        doc = json.loads((workspace / "plan.json").read_text(encoding="utf-8"))
        assert doc["meta"]["tool"] == "converge"
        assert doc["plan"]["summary"]["create"] == 6
        keys = [op["key"] for op in doc["plan"]["operations"]]
        assert keys.index("create:aws_lb.web") < keys.index("create:aws_lb_listener.http")
        assert {"source": "aws_autoscaling_group.web", "target": "aws_lb_listener.http", "explicit": True} \
            in doc["graph"]["edges"]

    def test_plan_markdown_report(self, workspace):
        result = _invoke("plan", "infra", "--format", "markdown", "-o", "plan.md")
        assert result.exit_code == 0, result.output
        raw = (workspace / "plan.md").read_bytes()
        assert b"\r\n" not in raw
        text = raw.decode("utf-8")
        assert "# Plan Report" in text
        assert "```mermaid" in text

    def test_var_override(self, workspace):
        result = _invoke("plan", "infra", "--var", "environment=prod", "--format", "json", "-o", "plan.json")
        assert result.exit_code == 0, result.output
        doc = json.loads((workspace / "plan.json").read_text(encoding="utf-8"))
        sg = next(c for c in doc["plan"]["changes"] if c["address"] == "aws_security_group.web")
        assert {"name": "name", "kind": "added", "old": None, "new": "web-prod",
                "forces_replacement": True} in sg["diffs"]

    def test_cycle_exits_2(self, workspace):
        shutil.copy(os.path.join(FIXTURES, "cycle.tf"), workspace / "infra" / "cycle.tf")
        result = _invoke("plan", "infra")
        assert result.exit_code == 2
        assert "cycle" in result.output

    def test_undeclared_var_exits_2(self, workspace):
        result = _invoke("plan", "infra", "--var", "nope=1")
        assert result.exit_code == 2

    def test_invalid_config_exits_2(self, workspace):
        (workspace / "converge.yaml").write_text("parallelism: zero\n")
        result = _invoke("plan", "infra")
        assert result.exit_code == 2


class TestApplyCommand:
    def test_apply_then_noop(self, workspace):
        result = _invoke("apply", "infra", "-y")
        assert result.exit_code == 0, result.output
        state = _state(workspace)
        assert state["version"] == 1
        assert len(state["resources"]) == 6
        assert "lb_dns_name = web-dev.elb.sandbox.internal" in result.output

        again = _invoke("apply", "infra", "-y")
        assert again.exit_code == 0, again.output
        assert "No changes." in again.output
        assert _state(workspace)["serial"] == state["serial"]

    def test_declined_confirmation_exits_1(self, workspace):
        result = _invoke("apply", "infra", input="n\n")
        assert result.exit_code == 1
        assert not (workspace / "state" / "converge.tfstate.json").exists()

    def test_partial_failure_exits_1(self, workspace, monkeypatch):
        def failing(**kwargs):
            provider = SandboxProvider(**kwargs)
            provider.inject("aws_lb", "create", PermanentAPIError, times=None)
            return provider

        monkeypatch.setitem(providers.PROVIDERS, "sandbox", failing)
        result = _invoke("apply", "infra", "-y")
        assert result.exit_code == 1
        resources = _state(workspace)["resources"]
        assert "aws_security_group.web" in resources
        assert "aws_lb.web" not in resources
        assert "aws_lb_listener.http" not in resources

    def test_apply_report(self, workspace):
        result = _invoke("apply", "infra", "-y", "-o", "apply.md")
        assert result.exit_code == 0, result.output
        text = (workspace / "apply.md").read_text(encoding="utf-8")
        assert "# Apply Report" in text
        assert "## Results" in text

    def test_held_lock_exits_2(self, workspace):
        (workspace / "state").mkdir()
        lock = {"id": "abc-123", "operation": "apply", "who": "ci@runner", "created": "2024-01-01T00:00:00Z"}
        (workspace / "state" / "converge.tfstate.json.lock").write_text(json.dumps(lock))

        result = _invoke("apply", "infra", "-y")
        assert result.exit_code == 2
        assert "abc-123" in result.output

        unlock = _invoke("force-unlock", "abc-123")
        assert unlock.exit_code == 0
        assert not (workspace / "state" / "converge.tfstate.json.lock").exists()
        assert _invoke("apply", "infra", "-y").exit_code == 0

    def test_force_unlock_wrong_id_exits_1(self, workspace):
        assert _invoke("force-unlock", "nothing-held").exit_code == 1

    def test_protected_resource_exits_2(self, workspace):
        stack = workspace / "stack"
        stack.mkdir()
        shutil.copy(os.path.join(FIXTURES, "stack.yaml"), stack / "stack.yaml")
        assert _invoke("apply", "stack", "-y").exit_code == 0
        result = _invoke("destroy", "stack", "-y")
        assert result.exit_code == 2
        assert "prevent_destroy" in result.output


class TestOtherCommands:
    def test_destroy(self, workspace):
        assert _invoke("apply", "infra", "-y").exit_code == 0
        result = _invoke("destroy", "infra", "-y")
        assert result.exit_code == 0, result.output
        assert _state(workspace)["resources"] == {}
        sandbox = json.loads((workspace / "state" / "sandbox.json").read_text(encoding="utf-8"))
        assert sandbox["objects"] == {}

    def test_destroy_with_empty_state(self, workspace):
        result = _invoke("destroy", "infra", "-y")
        assert result.exit_code == 0
        assert "Nothing to destroy." in result.output

    def test_show(self, workspace):
        empty = _invoke("show")
        assert empty.exit_code == 0
        assert "State is empty." in empty.output
        assert _invoke("apply", "infra", "-y").exit_code == 0
        assert _invoke("show").exit_code == 0

    def test_output(self, workspace):
        assert _invoke("apply", "infra", "-y").exit_code == 0
        result = _invoke("output", "infra")
        assert result.exit_code == 0
        assert "lb_dns_name = web-dev.elb.sandbox.internal" in result.output

    def test_output_before_apply_is_unknown(self, workspace):
        result = _invoke("output", "infra")
        assert result.exit_code == 0
        assert "lb_dns_name = (known after apply)" in result.output

    def test_document_sources(self, workspace):
        stack = workspace / "stack"
        stack.mkdir()
        shutil.copy(os.path.join(FIXTURES, "stack.tf.json"), stack / "stack.tf.json")
        result = _invoke("apply", "stack", "-y")
        assert result.exit_code == 0, result.output
        assert set(_state(workspace)["resources"]) == {"aws_lb_target_group.api", "aws_autoscaling_group.api"}


def test_module_execution():
    """python -m converge works."""
    result = subprocess.run(
        [sys.executable, "-m", "converge", "--help"],
        capture_output=True,
        text=True,
    )
    assert result.returncode == 0
    assert "converge" in result.stdout
