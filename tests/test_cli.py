from __future__ import annotations

import json
from pathlib import Path

import pytest
import typer
from typer.testing import CliRunner

from conftest import (
    CAMPAIGN_ID,
    DEVICE_ID,
    ENDPOINTS,
    GROUP_ID,
    UPDATE_ID,
    FakeTransport,
    campaign_doc,
    connection_refused,
    write_bundle,
)
from ota_cli import __version__
from ota_cli.main import app, main


runner = CliRunner()


def _plain(s: str) -> str:
    return " ".join(s.split())


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in ("OTA_CREDENTIALS", "OTA_LOG_LEVEL", "OTA_HTTP_TIMEOUT", "OTA_MAX_ATTEMPTS"):
        monkeypatch.delenv(name, raising=False)


def _install(monkeypatch, transport: FakeTransport) -> FakeTransport:
    monkeypatch.setattr("ota_cli.main._http_request", transport)
    return transport


def _invoke(bundle: Path, *args: str):
    return runner.invoke(app, ["--credentials", str(bundle), "--quiet", *args])


def test_version_needs_no_bundle() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"ota {__version__}" in result.stdout


def test_campaign_create_prints_created_campaign(token_bundle: Path, monkeypatch) -> None:
    transport = _install(
        monkeypatch,
        FakeTransport(
            {
                "POST /api/v2/campaigns": [(201, CAMPAIGN_ID)],
                f"GET /api/v2/campaigns/{CAMPAIGN_ID}": [(200, campaign_doc(name="rollout-1"))],
            }
        ),
    )

    result = _invoke(token_bundle, "campaign", "create", "--name", "rollout-1", "--update", UPDATE_ID, "-g", "g1")

    assert result.exit_code == 0
    parsed = json.loads(result.stdout)
    assert parsed["kind"] == "ota.campaign.v1"
    assert parsed["campaign"]["state"] == "created"
    assert parsed["campaign"]["groups"] == ["g1"]
    assert parsed["campaign"]["update"] == UPDATE_ID
    assert transport.calls[0]["body"]["groups"] == ["g1"]


def test_campaign_create_with_targets_creates_update_first(token_bundle: Path, tmp_path: Path, monkeypatch) -> None:
    targets = tmp_path / "targets.toml"
    targets.write_text('[ecu-1]\nname = "firmware"\nversion = "2.0.0"\n', encoding="utf-8")
    transport = _install(
        monkeypatch,
        FakeTransport(
            {
                "POST /api/v1/multi_target_updates": [(201, UPDATE_ID)],
                "POST /api/v2/campaigns": [(201, campaign_doc())],
            }
        ),
    )

    result = _invoke(
        token_bundle, "campaign", "create", "--name", "spring-rollout", "--targets", str(targets), "-g", "g1,g2"
    )

    assert result.exit_code == 0
    assert transport.paths() == ["POST /api/v1/multi_target_updates", "POST /api/v2/campaigns"]
    assert transport.calls[1]["body"] == {"name": "spring-rollout", "update": UPDATE_ID, "groups": ["g1", "g2"]}


def test_campaign_create_without_groups_exits_before_any_request(token_bundle: Path, monkeypatch) -> None:
    transport = _install(monkeypatch, FakeTransport())

    result = _invoke(token_bundle, "campaign", "create", "--name", "rollout-1", "--update", UPDATE_ID)

    assert result.exit_code == 4
    assert transport.calls == []
    assert "at least one target group" in _plain(result.output)


def test_campaign_create_needs_exactly_one_update_source(token_bundle: Path, monkeypatch) -> None:
    _install(monkeypatch, FakeTransport())
    result = _invoke(
        token_bundle, "campaign", "create", "--name", "n", "--update", UPDATE_ID, "--targets", "t.toml", "-g", "g1"
    )
    assert result.exit_code == 2


def test_missing_credentials_is_a_usage_error(monkeypatch) -> None:
    _install(monkeypatch, FakeTransport())
    result = runner.invoke(app, ["campaign", "list"])
    assert result.exit_code == 2
    assert "OTA_CREDENTIALS" in _plain(result.output)


def test_credentials_from_env(token_bundle: Path, monkeypatch) -> None:
    monkeypatch.setenv("OTA_CREDENTIALS", str(token_bundle))
    _install(monkeypatch, FakeTransport({"GET /api/v2/campaigns": [(200, [CAMPAIGN_ID])]}))

    result = runner.invoke(app, ["--quiet", "--plain-json", "campaign", "list"])

    assert result.exit_code == 0
    assert result.stdout.strip() == json.dumps(
        {
            "campaigns": {"limit": None, "offset": 0, "total": 1, "values": [CAMPAIGN_ID]},
            "kind": "ota.campaign.list.v1",
        },
        separators=(",", ":"),
        sort_keys=True,
    )


def test_missing_bundle_exits_with_bundle_code(tmp_path: Path, monkeypatch) -> None:
    _install(monkeypatch, FakeTransport())
    result = _invoke(tmp_path / "missing.zip", "campaign", "list")
    assert result.exit_code == 3


def test_bundle_without_registry_refuses_device_commands(tmp_path: Path, monkeypatch) -> None:
    bundle = write_bundle(
        tmp_path / "c.zip",
        {
            "services.json": {"campaigner": ENDPOINTS["campaigner"], "director": ENDPOINTS["director"]},
            "api.token": "tok",
        },
    )
    transport = _install(monkeypatch, FakeTransport())

    result = _invoke(bundle, "device", "list")

    assert result.exit_code == 3
    assert transport.calls == []
    assert "registry" in _plain(result.output)


def test_update_create_with_duplicate_ids_makes_no_request(token_bundle: Path, tmp_path: Path, monkeypatch) -> None:
    targets = tmp_path / "targets.json"
    targets.write_text(
        '{"ecu-1": {"name": "a", "version": "1"}, "ecu-1": {"name": "b", "version": "2"}}',
        encoding="utf-8",
    )
    transport = _install(monkeypatch, FakeTransport())

    result = _invoke(token_bundle, "update", "create", "--targets", str(targets))

    assert result.exit_code == 4
    assert transport.calls == []


def test_update_create_prints_update_id(token_bundle: Path, tmp_path: Path, monkeypatch) -> None:
    targets = tmp_path / "targets.toml"
    targets.write_text('[ecu-1]\nname = "firmware"\nversion = "2.0.0"\n', encoding="utf-8")
    _install(monkeypatch, FakeTransport({"POST /api/v1/multi_target_updates": [(201, UPDATE_ID)]}))

    result = _invoke(token_bundle, "update", "create", "--targets", str(targets))

    assert result.exit_code == 0
    parsed = json.loads(result.stdout)
    assert parsed == {"kind": "ota.update.v1", "updateId": UPDATE_ID, "hardwareIds": ["ecu-1"]}


def test_update_launch_assigns_to_device(token_bundle: Path, monkeypatch) -> None:
    transport = _install(
        monkeypatch,
        FakeTransport({f"PUT /api/v1/admin/devices/{DEVICE_ID}/multi_target_update/{UPDATE_ID}": [(200, b"")]}),
    )
    result = _invoke(token_bundle, "update", "launch", "--update", UPDATE_ID, "--device", DEVICE_ID)

    assert result.exit_code == 0
    assert len(transport.calls) == 1


def test_launch_rejection_exits_with_rejected_code(token_bundle: Path, monkeypatch) -> None:
    transport = _install(
        monkeypatch,
        FakeTransport(
            {f"POST /api/v2/campaigns/{CAMPAIGN_ID}/launch": [(409, {"description": "campaign already launched"})]}
        ),
    )

    result = _invoke(token_bundle, "campaign", "launch", "--campaign", CAMPAIGN_ID)

    assert result.exit_code == 6
    assert len(transport.calls) == 1
    assert "campaign already launched" in _plain(result.output)


def test_transport_failure_exits_with_transport_code(token_bundle: Path, monkeypatch) -> None:
    transport = _install(monkeypatch, FakeTransport({f"GET /api/v2/campaigns/{CAMPAIGN_ID}/stats": [connection_refused()]}))

    result = _invoke(token_bundle, "--max-attempts", "1", "campaign", "stats", "--campaign", CAMPAIGN_ID)

    assert result.exit_code == 5
    assert len(transport.calls) == 1


def test_decode_failure_exits_with_decode_code(token_bundle: Path, monkeypatch) -> None:
    _install(monkeypatch, FakeTransport({f"GET /api/v2/campaigns/{CAMPAIGN_ID}": [(200, {"id": CAMPAIGN_ID})]}))
    result = _invoke(token_bundle, "campaign", "get", "--campaign", CAMPAIGN_ID)
    assert result.exit_code == 7


def test_campaign_stats_prints_backend_stats(token_bundle: Path, monkeypatch) -> None:
    _install(
        monkeypatch,
        FakeTransport(
            {f"GET /api/v2/campaigns/{CAMPAIGN_ID}/stats": [(200, {"status": "launched", "processed": 4, "affected": 4})]}
        ),
    )
    result = _invoke(token_bundle, "campaign", "stats", "--campaign", CAMPAIGN_ID)

    assert result.exit_code == 0
    parsed = json.loads(result.stdout)
    assert parsed["campaignId"] == CAMPAIGN_ID
    assert parsed["stats"]["processed"] == 4


def test_device_list_for_group(token_bundle: Path, monkeypatch) -> None:
    _install(monkeypatch, FakeTransport({f"GET /api/v1/device_groups/{GROUP_ID}/devices": [(200, [DEVICE_ID])]}))
    result = _invoke(token_bundle, "device", "list", "--group", GROUP_ID)

    assert result.exit_code == 0
    assert json.loads(result.stdout)["devices"]["values"] == [DEVICE_ID]


def test_device_create_needs_one_type(token_bundle: Path, monkeypatch) -> None:
    transport = _install(monkeypatch, FakeTransport())
    result = _invoke(token_bundle, "device", "create", "--name", "truck-7", "--id", "VIN0001")
    assert result.exit_code == 2
    assert transport.calls == []


def test_group_add_and_list(token_bundle: Path, monkeypatch) -> None:
    transport = _install(
        monkeypatch,
        FakeTransport(
            {
                f"POST /api/v1/device_groups/{GROUP_ID}/devices/{DEVICE_ID}": [(200, b"")],
                f"GET /api/v1/devices/{DEVICE_ID}/groups": [(200, [GROUP_ID])],
            }
        ),
    )

    added = _invoke(token_bundle, "group", "add", "--group", GROUP_ID, "--device", DEVICE_ID)
    listed = _invoke(token_bundle, "group", "list", "--device", DEVICE_ID)

    assert added.exit_code == 0
    assert listed.exit_code == 0
    assert json.loads(listed.stdout)["groups"]["values"] == [GROUP_ID]
    assert len(transport.calls) == 2


def test_invalid_log_level_is_a_usage_error(token_bundle: Path) -> None:
    result = runner.invoke(app, ["--credentials", str(token_bundle), "--log-level", "chatty", "campaign", "list"])
    assert result.exit_code == 2


def test_main_returns_exit_codes(monkeypatch, capsys) -> None:
    monkeypatch.setattr("ota_cli.main._bootstrap_env", lambda: None)

    assert main(["--version"]) == 0
    assert __version__ in capsys.readouterr().out
    assert main(["campaign", "get"]) == 2


def test_main_renders_usage_errors_raised_by_typer(monkeypatch, capsys) -> None:
    monkeypatch.setattr("ota_cli.main._bootstrap_env", lambda: None)

    def _raise(**_kwargs):
        raise typer.BadParameter("--limit must be positive")

    monkeypatch.setattr("ota_cli.main.app", _raise)

    assert main(["campaign", "list", "--limit", "0"]) == 2
    assert "--limit must be positive" in _plain(capsys.readouterr().err)


def test_device_create_and_delete(token_bundle: Path, monkeypatch) -> None:
    transport = _install(
        monkeypatch,
        FakeTransport(
            {
                "PUT /api/v1/devices": [(201, DEVICE_ID)],
                f"DELETE /api/v1/devices/{DEVICE_ID}": [(200, b"")],
            }
        ),
    )

    created = _invoke(token_bundle, "device", "create", "--name", "truck-7", "--id", "VIN0001", "--other")
    deleted = _invoke(token_bundle, "device", "delete", "--device", DEVICE_ID)

    assert created.exit_code == 0
    assert json.loads(created.stdout)["uuid"] == DEVICE_ID
    assert transport.calls[0]["body"]["deviceType"] == "Other"
    assert deleted.exit_code == 0
    assert transport.paths()[1] == f"DELETE /api/v1/devices/{DEVICE_ID}"


def test_group_create_and_rename(token_bundle: Path, monkeypatch) -> None:
    transport = _install(
        monkeypatch,
        FakeTransport(
            {
                "POST /api/v1/device_groups": [(201, GROUP_ID)],
                f"PUT /api/v1/device_groups/{GROUP_ID}/rename": [(200, b"")],
            }
        ),
    )

    created = _invoke(token_bundle, "group", "create", "--name", "north")
    renamed = _invoke(token_bundle, "group", "rename", "--group", GROUP_ID, "--name", "north-2")

    assert json.loads(created.stdout)["groupId"] == GROUP_ID
    assert renamed.exit_code == 0
    assert transport.calls[1]["url"].endswith("?groupName=north-2")
