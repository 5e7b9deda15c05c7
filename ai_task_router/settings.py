from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from ai_task_router.enums import ProviderId


class Settings(BaseSettings):
    routing_config_path: str | None = None
    preferences_path: str | None = None
    rules_timezone: str = "UTC"
    provider_base_urls: str = ""
    provider_timeout_seconds: float = 30.0
    provider_connect_timeout_seconds: float = 5.0
    router_analytics_log_enabled: bool = True
    router_analytics_log_path: str = "logs/router_analytics.jsonl"
    circuit_breaker_enabled: bool = True
    circuit_breaker_failure_threshold: int = 5
    circuit_breaker_recovery_timeout_seconds: float = 30.0
    circuit_breaker_half_open_max_requests: int = 1
    cost_alert_sweep_enabled: bool = True
    cost_alert_sweep_interval_seconds: float = 60.0

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def provider_base_url_map(self) -> dict[ProviderId, str]:
        """Parse ``provider=url`` pairs, e.g. ``local-device=http://127.0.0.1:9000``."""
        mapping: dict[ProviderId, str] = {}
        for item in _split_csv(self.provider_base_urls):
            name, sep, url = item.partition("=")
            if not sep or not url.strip():
                raise ValueError(
                    f"Invalid PROVIDER_BASE_URLS entry '{item}'; expected provider=url."
                )
            mapping[ProviderId(name.strip())] = url.strip()
        return mapping


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
