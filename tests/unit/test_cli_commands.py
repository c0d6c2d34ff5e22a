from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from cloud_provisioner.cli import _log_level, app
from cloud_provisioner.core.state import State
from cloud_provisioner.engine.errors import ApplyError
from cloud_provisioner.engine.types import Action, ApplyResult, NodeStatus, ResourceChange

if TYPE_CHECKING:
    from pathlib import Path

runner = CliRunner()

_CONFIG = """\
variables:
  release:
    default: "1"
resources:
  - kind: null_resource
    name: a
    attributes:
      triggers:
        release: "${var.release}"
  - kind: null_resource
    name: b
    attributes:
      upstream: "${null_resource.a.id}"
outputs:
  a_id: "${null_resource.a.id}"
  label: "release-${var.release}"
"""


@pytest.fixture
def project(tmp_path: Path) -> Path:
    config = tmp_path / "provisioner.yaml"
    config.write_text(_CONFIG)
    return config


def _invoke(*args: str, input: str | None = None) -> tuple[int, str]:
    result = runner.invoke(app, list(args), input=input)
    return result.exit_code, result.output


def _apply(project: Path, *extra: str) -> None:
    code, out = _invoke("apply", "-c", str(project), "--auto-approve", "--no-color", *extra)
    assert code == 0, out


class TestVersion:
    @pytest.mark.parametrize("flag", ["--version", "-V"])
    def test_version_flag(self, flag: str) -> None:
        code, out = _invoke(flag)
        assert code == 0
        assert "cloud-provisioner" in out


class TestPlanCommand:
    def test_changes_exit_two(self, project: Path) -> None:
        code, out = _invoke("plan", "-c", str(project), "--no-color")
        assert code == 2
        assert "# null_resource.a will be created" in out
        assert "upstream = (known after apply)" in out
        assert "Plan: 2 to add, 0 to change, 0 to destroy." in out
        assert 'label = "release-1"' in out

    def test_no_changes_exit_zero(self, project: Path) -> None:
        _apply(project)
        code, out = _invoke("plan", "-c", str(project), "--no-color")
        assert code == 0
        assert "No changes. Resources are up-to-date." in out

    def test_var_forces_replacement(self, project: Path) -> None:
        _apply(project)
        code, out = _invoke("plan", "-c", str(project), "--no-color", "--var", "release=2")
        assert code == 2
        assert "# null_resource.a must be replaced" in out
        assert "# forces replacement" in out

    def test_malformed_var(self, project: Path) -> None:
        code, out = _invoke("plan", "-c", str(project), "--var", "release")
        assert code == 1
        assert "Configuration error: Invalid --var 'release'" in out

    def test_missing_config(self, tmp_path: Path) -> None:
        code, out = _invoke("plan", "-c", str(tmp_path / "nope.yaml"))
        assert code == 1
        assert "Configuration error: Failed to read" in out

    def test_saved_plan_applies_without_prompt(self, project: Path, tmp_path: Path) -> None:
        plan_path = tmp_path / "changes.plan"
        code, out = _invoke("plan", "-c", str(project), "--no-color", "-o", str(plan_path))
        assert code == 2
        assert f"Plan saved to {plan_path}" in out

        code, out = _invoke("apply", str(plan_path), "-c", str(project), "--no-color")
        assert code == 0, out
        assert "Apply complete! Resources: 2 added, 0 changed, 0 destroyed." in out
        assert set(State.load(tmp_path / ".provisioner-state.json").resources) == {
            "null_resource.a",
            "null_resource.b",
        }


class TestApplyCommand:
    def test_confirmed_apply_prints_outputs(self, project: Path, tmp_path: Path) -> None:
        code, out = _invoke("apply", "-c", str(project), "--no-color", input="y\n")
        assert code == 0, out
        assert "Do you want to apply these changes?" in out
        assert "Outputs:" in out

        state = State.load(tmp_path / ".provisioner-state.json")
        a_id = state.resources["null_resource.a"].attributes["id"]
        assert state.outputs == {"a_id": a_id, "label": "release-1"}
        assert state.resources["null_resource.b"].attributes["upstream"] == a_id

    def test_declined_apply(self, project: Path, tmp_path: Path) -> None:
        code, out = _invoke("apply", "-c", str(project), "--no-color", input="n\n")
        assert code == 1
        assert "Apply canceled." in out
        assert not (tmp_path / ".provisioner-state.json").exists()

    def test_nothing_to_apply(self, project: Path) -> None:
        _apply(project)
        code, out = _invoke("apply", "-c", str(project), "--no-color")
        assert code == 0
        assert "No changes. Resources are up-to-date." in out

    def test_lifecycle_change_is_recorded_without_changes(
        self, project: Path, tmp_path: Path
    ) -> None:
        _apply(project)
        project.write_text(
            _CONFIG.replace(
                "    name: b\n", "    name: b\n    lifecycle:\n      prevent_destroy: true\n"
            )
        )

        code, out = _invoke("apply", "-c", str(project), "--no-color")
        assert code == 0, out
        assert "No changes. Resources are up-to-date." in out
        state = State.load(tmp_path / ".provisioner-state.json")
        assert state.resources["null_resource.b"].prevent_destroy

    def test_failed_apply_reports_each_node(self, project: Path) -> None:
        result = ApplyResult(
            applied=[
                ResourceChange(
                    address="null_resource.a", kind="null_resource", action=Action.CREATE
                )
            ],
            statuses={
                "null_resource.a": NodeStatus.APPLIED,
                "null_resource.b": NodeStatus.FAILED,
            },
            errors={"null_resource.b": "quota exceeded"},
        )
        with patch("cloud_provisioner.config.apply", side_effect=ApplyError(result)):
            code, out = _invoke("apply", "-c", str(project), "--auto-approve", "--no-color")

        assert code == 1
        assert "Apply failed:" in out
        assert "null_resource.b: failed (quota exceeded)" in out
        assert "Partial result: 1 added." in out

    def test_stale_saved_plan(self, project: Path, tmp_path: Path) -> None:
        plan_path = tmp_path / "changes.plan"
        _invoke("plan", "-c", str(project), "-o", str(plan_path))
        _apply(project)

        code, out = _invoke("apply", str(plan_path), "-c", str(project), "--no-color")
        assert code == 1
        assert "Plan is stale:" in out


class TestDestroyCommand:
    def test_destroys_everything(self, project: Path, tmp_path: Path) -> None:
        _apply(project)
        code, out = _invoke("destroy", "-c", str(project), "--auto-approve", "--no-color")
        assert code == 0, out
        assert "# null_resource.b will be destroyed" in out
        assert "0 added, 0 changed, 2 destroyed" in out
        assert State.load(tmp_path / ".provisioner-state.json").resources == {}

    def test_empty_state(self, project: Path) -> None:
        code, out = _invoke("destroy", "-c", str(project), "--auto-approve")
        assert code == 0
        assert "No resources to destroy." in out


class TestOutputCommand:
    def test_single_and_json(self, project: Path) -> None:
        _apply(project)

        code, out = _invoke("output", "label", "-c", str(project))
        assert code == 0
        assert out.strip() == "release-1"

        code, out = _invoke("output", "-c", str(project), "--json")
        assert code == 0
        assert json.loads(out)["label"] == "release-1"

    def test_unknown_name(self, project: Path) -> None:
        _apply(project)
        code, out = _invoke("output", "missing", "-c", str(project), "--no-color")
        assert code == 1
        assert "Output 'missing' not found in state" in out

    def test_before_apply(self, project: Path) -> None:
        code, out = _invoke("output", "-c", str(project))
        assert code == 0
        assert "No outputs found." in out


class TestRefreshCommand:
    def test_in_sync(self, project: Path) -> None:
        _apply(project)
        code, out = _invoke("refresh", "-c", str(project))
        assert code == 0
        assert "No changes. State is up-to-date." in out


class TestValidateCommand:
    def test_valid(self, project: Path) -> None:
        code, out = _invoke("validate", "-c", str(project), "--no-color")
        assert code == 0
        assert "Configuration is valid." in out

    def test_cycle(self, tmp_path: Path) -> None:
        config = tmp_path / "provisioner.yaml"
        config.write_text(
            """\
resources:
  - kind: null_resource
    name: a
    attributes: {peer: "${null_resource.b.id}"}
  - kind: null_resource
    name: b
    attributes: {peer: "${null_resource.a.id}"}
"""
        )
        code, out = _invoke("validate", "-c", str(config), "--no-color")
        assert code == 1
        assert "Dependency cycle:" in out

    def test_invalid_triggers(self, tmp_path: Path) -> None:
        config = tmp_path / "provisioner.yaml"
        config.write_text(
            "resources:\n  - kind: null_resource\n    name: a\n"
            "    attributes: {triggers: nope}\n"
        )
        code, out = _invoke("validate", "-c", str(config), "--no-color")
        assert code == 1
        assert "Validation failed:" in out
        assert "null_resource.a: triggers must be a mapping" in out


class TestLogLevel:
    def test_env_var_wins(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PROVISIONER_LOG", "debug")
        assert _log_level(0) == logging.DEBUG

    def test_invalid_env_var(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PROVISIONER_LOG", "chatty")
        assert _log_level(0) == logging.INFO

    @pytest.mark.parametrize(
        ("verbose", "level"), [(0, None), (1, logging.INFO), (2, logging.DEBUG)]
    )
    def test_verbosity(self, verbose: int, level: int | None) -> None:
        assert _log_level(verbose) == level
