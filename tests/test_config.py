from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from ai_task_router.config import (
    RoutingConfig,
    default_routing_config,
    load_routing_config,
    merge_routing_document,
)
from ai_task_router.enums import Priority, ProviderId, TaskType
from ai_task_router.routing_defaults import default_routing_document


def test_default_config_covers_every_task() -> None:
    config = default_routing_config()

    assert set(config.tasks) == set(TaskType)
    assert config.policy_for(TaskType.OBJECT_DETECTION).providers() == [
        ProviderId.LOCAL_DEVICE
    ]
    quality = config.policy_for(TaskType.CHAT).steps_for(Priority.QUALITY)
    assert quality[0].model == "google/gemini-2.5-pro"


def test_default_document_is_a_fresh_copy() -> None:
    first = default_routing_document()
    first["tasks"]["chat"]["candidates"].clear()

    assert default_routing_document()["tasks"]["chat"]["candidates"]


def test_load_without_path_uses_builtin_defaults() -> None:
    assert load_routing_config(None) == default_routing_config()


def test_missing_config_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_routing_config(str(tmp_path / "absent.yaml"))


def test_yaml_overrides_merge_provider_profiles_and_replace_tasks(tmp_path: Path) -> None:
    path = tmp_path / "routing.yaml"
    document = {
        "providers": {"local-device": {"avg_latency_ms": 400.0}},
        "tasks": {
            "captioning": {
                "candidates": [
                    {
                        "provider": "fast-cloud",
                        "model": "google/gemini-2.5-flash",
                        "estimated_cost": 0.0003,
                    }
                ]
            }
        },
    }
    path.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")

    config = load_routing_config(str(path))

    baseline = config.baselines()[ProviderId.LOCAL_DEVICE]
    assert baseline.avg_latency_ms == pytest.approx(400.0)
    assert baseline.success_rate == pytest.approx(0.98)
    assert config.policy_for(TaskType.CAPTIONING).providers() == [ProviderId.FAST_CLOUD]
    assert config.policy_for(TaskType.CHAT).default_step().model == "google/gemini-2.5-flash"


def test_step_provider_must_be_a_candidate() -> None:
    document = merge_routing_document(
        {
            "tasks": {
                "captioning": {
                    "candidates": [
                        {"provider": "local-device", "model": "captioner"},
                    ],
                    "priorities": {
                        "speed": [{"provider": "fast-cloud", "model": "remote"}],
                    },
                }
            }
        }
    )

    with pytest.raises(ValidationError):
        RoutingConfig.model_validate(document)


def test_duplicate_candidates_and_blank_models_are_rejected() -> None:
    duplicated = merge_routing_document(
        {
            "tasks": {
                "captioning": {
                    "candidates": [
                        {"provider": "local-device", "model": "a"},
                        {"provider": "local-device", "model": "b"},
                    ]
                }
            }
        }
    )
    blank = merge_routing_document(
        {"tasks": {"captioning": {"candidates": [{"provider": "local-device", "model": " "}]}}}
    )

    with pytest.raises(ValidationError):
        RoutingConfig.model_validate(duplicated)
    with pytest.raises(ValidationError):
        RoutingConfig.model_validate(blank)


def test_missing_task_policy_is_rejected() -> None:
    document = default_routing_document()
    del document["tasks"]["captioning"]

    with pytest.raises(ValidationError):
        RoutingConfig.model_validate(document)
