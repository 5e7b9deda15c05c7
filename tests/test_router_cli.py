from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import yaml

import ai_task_router.router_cli as router_cli
from ai_task_router.router_cli import main


def test_explain_route_prints_decision(capsys: Any) -> None:
    assert main(["explain-route", "--task", "chat", "--priority", "quality"]) == 0

    payload = yaml.safe_load(capsys.readouterr().out)
    assert payload["provider"] == "fast-cloud"
    assert payload["model"] == "google/gemini-2.5-pro"
    assert payload["fallbacks"] == ["cost-efficient-cloud"]
    assert "decision_trace" not in payload


def test_explain_route_applies_block_prefer_and_cost(capsys: Any) -> None:
    exit_code = main(
        [
            "explain-route",
            "--task",
            "embedding",
            "--priority",
            "cost",
            "--block",
            "local-device",
            "--prefer",
            "fast-cloud",
            "--debug",
        ]
    )

    assert exit_code == 0
    payload = yaml.safe_load(capsys.readouterr().out)
    assert payload["provider"] == "cost-efficient-cloud"
    assert payload["fallbacks"] == ["fast-cloud"]
    assert payload["decision_trace"]["blocked_providers"] == ["local-device"]


def test_explain_route_reports_constraint_violation(capsys: Any) -> None:
    main(
        [
            "explain-route",
            "--task",
            "chat",
            "--priority",
            "quality",
            "--max-cost",
            "0.00005",
        ]
    )

    payload = yaml.safe_load(capsys.readouterr().out)
    assert payload["constraint_violations"] == ["max_cost"]


def test_show_config_uses_yaml_overrides(tmp_path: Path, capsys: Any) -> None:
    config_path = tmp_path / "routing.yaml"
    config_path.write_text(
        yaml.safe_dump({"providers": {"fast-cloud": {"avg_latency_ms": 900.0}}}),
        encoding="utf-8",
    )

    assert main(["show-config", "--path", str(config_path)]) == 0

    payload = yaml.safe_load(capsys.readouterr().out)
    assert payload["providers"]["fast-cloud"]["avg_latency_ms"] == 900.0
    assert sorted(payload["tasks"]) == sorted(
        [
            "chat",
            "embedding",
            "classification",
            "image-generation",
            "object-detection",
            "captioning",
        ]
    )


def test_blocking_every_provider_exits_with_error(capsys: Any) -> None:
    with pytest.raises(SystemExit) as exc_info:
        main(["explain-route", "--task", "captioning", "--block", "local-device"])

    assert exc_info.value.code == 2
    assert "blocked" in capsys.readouterr().err


def test_serve_delegates_to_uvicorn_runner(monkeypatch: Any) -> None:
    calls: list[tuple[str, int]] = []

    def fake_run(host: str = "0.0.0.0", port: int = 8000) -> None:
        calls.append((host, port))

    monkeypatch.setattr("ai_task_router.main.run", fake_run)

    assert router_cli.main(["serve", "--host", "127.0.0.1", "--port", "9001"]) == 0
    assert calls == [("127.0.0.1", 9001)]
