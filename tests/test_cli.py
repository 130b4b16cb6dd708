"""Tests for the vpsctl command line interface."""
from __future__ import annotations

import json
import threading
from collections.abc import Iterator
from pathlib import Path

import pytest
import yaml
from fakes import DIGEST_A, DIGEST_B, FakeContainers, FakeHost, image
from typer.testing import CliRunner

from vpsctl import __version__, cli
from vpsctl.cli import app
from vpsctl.desired import load_desired_state
from vpsctl.errors import CommandTimeout, HostUnreachable
from vpsctl.probe import ALL_CHECKS
from vpsctl.rollout import RolloutController

runner = CliRunner()

WEB_A = image("web", DIGEST_A)
WEB_B = image("web", DIGEST_B)

DESIRED = """
packages: [nginx]
firewall:
  default: deny
  allow: ["22/tcp", "443/tcp"]
services: [nginx]
"""

PROXY = """
proxy:
  sites:
    - name: app
      server_names: [app.example.com]
      routes:
        - {path: /, upstream: "http://127.0.0.1:8080"}
"""


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _json_lines(output: str) -> list[dict[str, object]]:
    return [json.loads(line) for line in output.splitlines() if line.startswith("{")]


def _operations(tmp_path: Path) -> list[dict[str, object]]:
    path = tmp_path / "logs" / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def _prepare_environment(tmp_path: Path, **extra: object) -> dict[str, str]:
    config: dict[str, object] = {
        "state_dir": str(tmp_path / "state"),
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "templates_dir": str(tmp_path / "templates"),
        "lock_timeout": 1.0,
        "secrets": {"directory": str(tmp_path / "secrets")},
    }
    config.update(extra)
    config_file = tmp_path / "config.yml"
    config_file.write_text(yaml.safe_dump(config), encoding="utf-8")
    return {"VPSCTL_CONFIG_FILE": str(config_file)}


def _write(tmp_path: Path, name: str, text: str) -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture
def host(monkeypatch: pytest.MonkeyPatch) -> FakeHost:
    """Route every host target to an in-memory fake host."""
    fake = FakeHost()
    monkeypatch.setattr(cli, "_host_providers", lambda runtime, target: fake.providers())
    return fake


def test_version_option_outputs_package_version(tmp_path: Path) -> None:
    """``--version`` prints the package version."""
    result = runner.invoke(app, ["--version"], env=_prepare_environment(tmp_path))

    assert result.exit_code == 0
    assert f"vpsctl {__version__}" in result.stdout


def test_invocation_without_subcommand_shows_help(tmp_path: Path) -> None:
    """Bare invocation lists the command groups."""
    result = runner.invoke(app, [], env=_prepare_environment(tmp_path))

    assert result.exit_code == 0
    assert "rollout" in result.stdout
    assert "provision" in result.stdout


def test_config_show_json(tmp_path: Path) -> None:
    """Effective configuration is rendered with derived paths."""
    result = runner.invoke(app, ["config", "show", "--json"], env=_prepare_environment(tmp_path))

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["state_dir"] == str(tmp_path / "state")
    assert payload["registry_dir"] == str(tmp_path / "state" / "registry")
    assert payload["lock_timeout"] == 1.0


def test_environment_overrides_nested_config(tmp_path: Path) -> None:
    """``VPSCTL_<SECTION>__<KEY>`` variables override the YAML file."""
    env = _prepare_environment(tmp_path)
    env["VPSCTL_SSH__PORT"] = "2222"

    result = runner.invoke(app, ["config", "show", "--json"], env=env)

    assert result.exit_code == 0
    assert _extract_json(result.stdout)["ssh"]["port"] == 2222  # type: ignore[index]


def test_invalid_config_exits_with_validation_code(tmp_path: Path) -> None:
    """Unknown config keys stop the CLI before any command runs."""
    env = _prepare_environment(tmp_path, bogus=True)

    result = runner.invoke(app, ["config", "show"], env=env)

    assert result.exit_code == 2
    assert "Configuration error" in result.stdout


def test_probe_json_reports_every_check(tmp_path: Path, host: FakeHost) -> None:
    """Probing gathers one fact per check kind and changes nothing."""
    host.packages.add("nginx")

    result = runner.invoke(
        app, ["probe", "fake-host", "--json"], env=_prepare_environment(tmp_path)
    )

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["host"] == "fake-host"
    facts = payload["facts"]
    assert set(facts) == {kind.value for kind in ALL_CHECKS}  # type: ignore[arg-type]
    assert facts["packages"]["status"] == "ok"  # type: ignore[index]
    assert host.mutations == []


def test_probe_rejects_unknown_check(tmp_path: Path, host: FakeHost) -> None:
    """Unknown ``--check`` kinds are a validation error."""
    result = runner.invoke(
        app, ["probe", "fake-host", "--check", "kernel"], env=_prepare_environment(tmp_path)
    )

    assert result.exit_code == 2
    (record,) = _operations(tmp_path)
    assert record["command"] == "probe"
    assert record["result"]["rc"] == 2  # type: ignore[index]


def test_plan_json_lists_actions_without_mutating(tmp_path: Path, host: FakeHost) -> None:
    """Planning reports the ordered actions and the desired-state checksum."""
    desired = _write(tmp_path, "host.yml", DESIRED)

    result = runner.invoke(
        app, ["plan", str(desired), "fake-host", "--json"], env=_prepare_environment(tmp_path)
    )

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["desired_checksum"] == load_desired_state(desired).checksum
    ids = [action["id"] for action in payload["actions"]]  # type: ignore[index, union-attr]
    assert ids[0] == "install-package:nginx"
    assert payload["partial"] == []
    assert host.mutations == []


def test_provision_converges_and_status_reports_it(tmp_path: Path, host: FakeHost) -> None:
    """A successful run is persisted and shown by ``status``."""
    env = _prepare_environment(tmp_path)
    desired = _write(tmp_path, "host.yml", DESIRED)

    result = runner.invoke(app, ["provision", str(desired), "fake-host", "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    report = _extract_json(result.stdout)
    assert report["exit_code"] == 0
    assert report["summary"]["applied"] > 0  # type: ignore[index, operator]
    assert host.packages == {"nginx"}
    assert host.default_incoming == "deny"

    status = runner.invoke(app, ["status", "fake-host", "--json"], env=env)

    assert status.exit_code == 0
    assert _extract_json(status.stdout)["desired_checksum"] == report["desired_checksum"]

    again = runner.invoke(app, ["provision", str(desired), "fake-host"], env=env)

    assert again.exit_code == 0
    assert "already converged" in again.stdout


def test_provision_dry_run_changes_nothing(tmp_path: Path, host: FakeHost) -> None:
    """``--dry-run`` reports every action as not run."""
    desired = _write(tmp_path, "host.yml", DESIRED)

    result = runner.invoke(
        app,
        ["provision", str(desired), "fake-host", "--dry-run", "--json"],
        env=_prepare_environment(tmp_path),
    )

    assert result.exit_code == 0, result.stdout
    report = _extract_json(result.stdout)
    assert report["dry_run"] is True
    assert report["summary"]["applied"] == 0  # type: ignore[index]
    assert host.mutations == []


def test_provision_failure_sets_exit_code(tmp_path: Path, host: FakeHost) -> None:
    """A failing action ends the run with the provider exit code."""
    host.broken_packages.add("nginx")
    desired = _write(tmp_path, "host.yml", DESIRED)

    result = runner.invoke(
        app, ["provision", str(desired), "fake-host"], env=_prepare_environment(tmp_path)
    )

    assert result.exit_code == 4
    record = _operations(tmp_path)[-1]
    outcome: dict[str, object] = record["result"]  # type: ignore[assignment]
    assert str(outcome["message"]).startswith("Action install-package:nginx failed")
    assert outcome["status"] == "error"
    assert outcome["rc"] == 4


def test_provision_rejects_unknown_partial_policy(tmp_path: Path, host: FakeHost) -> None:
    """Only the documented ``--on-partial`` policies are accepted."""
    desired = _write(tmp_path, "host.yml", DESIRED)

    result = runner.invoke(
        app,
        ["provision", str(desired), "fake-host", "--on-partial", "ignore"],
        env=_prepare_environment(tmp_path),
    )

    assert result.exit_code == 2
    assert "Unsupported --on-partial" in result.stdout
    assert host.mutations == []


def test_invalid_desired_state_is_rejected(tmp_path: Path, host: FakeHost) -> None:
    """Unknown desired-state sections fail validation before probing."""
    desired = _write(tmp_path, "host.yml", "packages: [nginx]\nkernel: {}\n")

    result = runner.invoke(
        app, ["provision", str(desired), "fake-host"], env=_prepare_environment(tmp_path)
    )

    assert result.exit_code == 2
    assert "kernel" in result.stdout
    assert host.transport.commands == []


def test_status_without_report(tmp_path: Path) -> None:
    """Hosts that were never provisioned have no status."""
    result = runner.invoke(app, ["status", "fresh-host"], env=_prepare_environment(tmp_path))

    assert result.exit_code == 2
    assert "No convergence report" in result.stdout


def test_proxy_render_prints_site(tmp_path: Path) -> None:
    """Rendered nginx configuration is printed for each site."""
    desired = _write(tmp_path, "host.yml", PROXY)

    result = runner.invoke(
        app, ["proxy", "render", str(desired)], env=_prepare_environment(tmp_path)
    )

    assert result.exit_code == 0, result.stdout
    assert "# site: app" in result.stdout
    assert "server_name app.example.com;" in result.stdout
    assert "proxy_pass http://127.0.0.1:8080;" in result.stdout


def test_proxy_render_unknown_site(tmp_path: Path) -> None:
    """Selecting a site that is not declared is an error."""
    desired = _write(tmp_path, "host.yml", PROXY)

    result = runner.invoke(
        app, ["proxy", "render", str(desired), "--site", "blog"], env=_prepare_environment(tmp_path)
    )

    assert result.exit_code == 2
    assert "no proxy site named 'blog'" in result.stdout


def _broken_site_override(tmp_path: Path) -> None:
    override = tmp_path / "templates" / "nginx" / "site.conf.j2"
    override.parent.mkdir(parents=True)
    override.write_text("server { {{ undefined_upstream }} }\n", encoding="utf-8")


def test_proxy_render_broken_override_template(tmp_path: Path) -> None:
    """A broken operator template is a validation error, not a crash."""
    _broken_site_override(tmp_path)
    desired = _write(tmp_path, "host.yml", PROXY)

    result = runner.invoke(
        app, ["proxy", "render", str(desired)], env=_prepare_environment(tmp_path)
    )

    assert result.exit_code == 2
    assert "Failed to render template nginx/site.conf.j2" in result.stdout
    assert "# site: app" not in result.stdout


def test_plan_broken_override_template(tmp_path: Path, host: FakeHost) -> None:
    """Planning stops with a validation error when a site cannot be rendered."""
    _broken_site_override(tmp_path)
    desired = _write(tmp_path, "host.yml", PROXY)

    result = runner.invoke(
        app, ["plan", str(desired), "fake-host"], env=_prepare_environment(tmp_path)
    )

    assert result.exit_code == 2
    (record,) = _operations(tmp_path)
    assert record["command"] == "plan"
    assert "Failed to render template" in str(record["result"]["message"])  # type: ignore[index]
    assert host.mutations == []


def test_proxy_apply_activates_site(tmp_path: Path, host: FakeHost) -> None:
    """Applying a site validates and enables it on the host."""
    desired = _write(tmp_path, "host.yml", PROXY)
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["proxy", "apply", str(desired), "fake-host"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "Activated site 'app'" in result.stdout
    assert "app" in host.sites

    again = runner.invoke(app, ["proxy", "apply", str(desired), "fake-host"], env=env)

    assert "already up to date" in again.stdout


def _manifest(tmp_path: Path, version: str, reference: str) -> Path:
    document = {"version": version, "services": [{"name": "web", "image": reference}]}
    return _write(tmp_path, f"manifest-{version}.yml", yaml.safe_dump(document))


def test_rollout_trigger_success(tmp_path: Path, host: FakeHost) -> None:
    """A healthy release replaces the running container."""
    host.run_container("vpsctl-web", WEB_A)
    manifest = _manifest(tmp_path, "2", WEB_B)

    result = runner.invoke(
        app,
        ["rollout", "trigger", str(manifest), "fake-host", "--json"],
        env=_prepare_environment(tmp_path),
    )

    assert result.exit_code == 0, result.stdout
    outcome = _extract_json(result.stdout)
    assert outcome["status"] == "success"
    assert outcome["final_state"] == "stable"
    assert host.containers["vpsctl-web"]["image"] == WEB_B


def test_rollout_trigger_rollback_exit_code(tmp_path: Path, host: FakeHost) -> None:
    """A crashing release is rolled back and reported with exit code 6."""
    host.run_container("vpsctl-web", WEB_A)
    host.crashing_images.add(WEB_B)
    manifest = _manifest(tmp_path, "2", WEB_B)
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["rollout", "trigger", str(manifest), "fake-host"], env=env)

    assert result.exit_code == 6
    assert "rolled-back" in result.stdout
    assert host.containers["vpsctl-web"]["image"] == WEB_A

    history = runner.invoke(app, ["rollout", "history", "fake-host", "--json"], env=env)

    assert history.exit_code == 0
    payload = _extract_json(history.stdout)
    assert payload["host"] == "fake-host"
    rollouts = payload["rollouts"]
    outcomes = [entry["outcome"] for entry in rollouts]  # type: ignore[union-attr, index]
    assert outcomes == ["failure", "rolled-back"]


def test_rollout_trigger_missing_manifest(tmp_path: Path, host: FakeHost) -> None:
    """Unreadable manifests are a validation error."""
    result = runner.invoke(
        app,
        ["rollout", "trigger", str(tmp_path / "missing.yml"), "fake-host"],
        env=_prepare_environment(tmp_path),
    )

    assert result.exit_code == 2
    assert "Cannot read manifest" in result.stdout
    assert host.mutations == []


def test_rollout_serve_processes_events_in_order(tmp_path: Path, host: FakeHost) -> None:
    """CI events are rolled out in order and invalid lines are reported."""
    events = "\n".join(
        [
            json.dumps({"manifestVersion": "1", "imageReferences": {"web": WEB_A}}),
            "{not json",
            json.dumps({"manifestVersion": "2", "imageReferences": {"web": WEB_B}}),
        ]
    )

    result = runner.invoke(
        app,
        ["rollout", "serve", "fake-host"],
        input=events + "\n",
        env=_prepare_environment(tmp_path),
    )

    assert result.exit_code == 0, result.stdout
    lines = _json_lines(result.stdout)
    invalid = [line for line in lines if "line" in line]
    outcomes = [line for line in lines if "manifest_version" in line]
    assert invalid == [{"line": 2, "status": "invalid", "reason": invalid[0]["reason"]}]
    assert [line["manifest_version"] for line in outcomes] == ["1", "2"]
    assert all(line["status"] == "success" for line in outcomes)
    assert host.containers["vpsctl-web"]["image"] == WEB_B


def test_rollout_serve_reports_each_outcome_while_input_is_open(
    tmp_path: Path, host: FakeHost, monkeypatch: pytest.MonkeyPatch
) -> None:
    """An outcome is printed before the next event is read."""
    printed = threading.Event()
    waited: list[bool] = []
    print_json = cli._print_json

    def recording(payload: object, *, indent: int | None = 2) -> None:
        print_json(payload, indent=indent)
        if isinstance(payload, dict) and payload.get("manifest_version") == "1":
            printed.set()

    def stream() -> Iterator[str]:
        yield json.dumps({"manifestVersion": "1", "imageReferences": {"web": WEB_A}}) + "\n"
        waited.append(printed.wait(timeout=10))
        yield json.dumps({"manifestVersion": "2", "imageReferences": {"web": WEB_B}}) + "\n"

    monkeypatch.setattr(cli, "_print_json", recording)
    monkeypatch.setattr(cli.typer, "get_text_stream", lambda name: stream())

    result = runner.invoke(
        app, ["rollout", "serve", "fake-host"], env=_prepare_environment(tmp_path)
    )

    assert result.exit_code == 0, result.stdout
    assert waited == [True]
    versions = [line["manifest_version"] for line in _json_lines(result.stdout)]
    assert versions == ["1", "2"]


def _unreachable_inspect(self: FakeContainers, name: str) -> None:
    raise HostUnreachable("Cannot reach fake-host: connection reset", host="fake-host")


def test_rollout_trigger_unreachable_host_is_recorded(
    tmp_path: Path, host: FakeHost, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Losing the host before the pull reports a preserved host and records the attempt."""
    host.run_container("vpsctl-web", WEB_A)
    monkeypatch.setattr(FakeContainers, "inspect", _unreachable_inspect)
    manifest = _manifest(tmp_path, "2", WEB_B)
    env = _prepare_environment(tmp_path)

    result = runner.invoke(
        app, ["rollout", "trigger", str(manifest), "fake-host", "--json"], env=env
    )

    assert result.exit_code == 3, result.stdout
    outcome = _extract_json(result.stdout)
    assert outcome["status"] == "failure"
    assert outcome["final_state"] == "failed"
    assert outcome["host_state"] == "pre-rollout-preserved"

    history = runner.invoke(app, ["rollout", "history", "fake-host", "--json"], env=env)

    rollouts = _extract_json(history.stdout)["rollouts"]
    outcomes = [entry["outcome"] for entry in rollouts]  # type: ignore[union-attr, index]
    assert outcomes == ["failure"]


def test_rollout_serve_unreachable_host_reports_every_trigger(
    tmp_path: Path, host: FakeHost, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Each queued trigger still gets an outcome line when the host is gone."""
    monkeypatch.setattr(FakeContainers, "inspect", _unreachable_inspect)
    events = "\n".join(
        json.dumps({"manifestVersion": version, "imageReferences": {"web": reference}})
        for version, reference in (("1", WEB_A), ("2", WEB_B))
    )

    result = runner.invoke(
        app,
        ["rollout", "serve", "fake-host"],
        input=events + "\n",
        env=_prepare_environment(tmp_path),
    )

    assert result.exit_code == 3, result.stdout
    outcomes = _json_lines(result.stdout)
    assert [line["manifest_version"] for line in outcomes] == ["1", "2"]
    assert all(line["host_state"] == "pre-rollout-preserved" for line in outcomes)
    assert _operations(tmp_path)[-1]["result"]["rc"] == 3  # type: ignore[index]


def test_rollout_serve_turns_raised_errors_into_failure_lines(
    tmp_path: Path, host: FakeHost, monkeypatch: pytest.MonkeyPatch
) -> None:
    """An error escaping a rollout becomes that trigger's outcome line."""

    def exploding(self: RolloutController, manifest: object) -> None:
        raise CommandTimeout("docker inspect timed out", host="fake-host")

    monkeypatch.setattr(RolloutController, "deploy", exploding)
    event = json.dumps({"manifestVersion": "5", "imageReferences": {"web": WEB_B}})

    result = runner.invoke(
        app,
        ["rollout", "serve", "fake-host"],
        input=event + "\n",
        env=_prepare_environment(tmp_path),
    )

    assert result.exit_code == 3, result.stdout
    (line,) = _json_lines(result.stdout)
    assert line["manifest_version"] == "5"
    assert line["status"] == "failure"
    assert line["host_state"] is None
    assert str(line["reason"]).startswith("CommandTimeout")


def test_rollout_history_without_records(tmp_path: Path) -> None:
    """A host without rollouts reports an empty history."""
    result = runner.invoke(
        app, ["rollout", "history", "fresh-host"], env=_prepare_environment(tmp_path)
    )

    assert result.exit_code == 0
    assert "No rollouts recorded for fresh-host" in result.stdout
