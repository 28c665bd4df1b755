"""Unit tests for settings loading (load_settings) and validate_config."""

import dataclasses
from pathlib import Path

import pytest

from dnsmasq_webhook.cli import (
    DEFAULT_DNSMASQ_DIR,
    DEFAULT_RESTART_COMMAND,
    WebhookSettings,
    _load_config_file,
    load_settings,
    validate_config,
)


def test_load_settings_defaults(tmp_path: Path) -> None:
    settings = load_settings({"DOMAIN_FILTER": "home.example.com"}, str(tmp_path / "missing.yaml"))

    assert settings == WebhookSettings(domain_filter=("home.example.com",))
    assert settings.dnsmasq_dir == DEFAULT_DNSMASQ_DIR
    assert settings.restart_command == DEFAULT_RESTART_COMMAND
    assert settings.dns_ttl == 300
    assert settings.dry_run is False


def test_load_settings_from_environment(tmp_path: Path) -> None:
    env = {
        "DOMAIN_FILTER": "a.example.com, b.example.com",
        "DNSMASQ_DIR": "/etc/dnsmasq.d/external-dns",
        "DNS_TTL": "60",
        "DRY_RUN": "true",
        "RESTART_COMMAND": "systemctl restart dnsmasq",
        "PORT_PROVIDER": "9888",
        "PORT_HEALTH": "9080",
        "LOG_LEVEL": "debug",
        "RECORDS_CACHE": "yes",
        "RELOAD_TIMEOUT_SECONDS": "5",
    }

    settings = load_settings(env, str(tmp_path / "missing.yaml"))

    assert settings.domain_filter == ("a.example.com", "b.example.com")
    assert settings.dnsmasq_dir == "/etc/dnsmasq.d/external-dns"
    assert settings.dns_ttl == 60
    assert settings.dry_run is True
    assert settings.restart_command == "systemctl restart dnsmasq"
    assert settings.port_provider == 9888
    assert settings.port_health == 9080
    assert settings.log_level == "DEBUG"
    assert settings.records_cache is True
    assert settings.reload_timeout_seconds == 5.0


def test_load_settings_from_yaml_with_environment_override(tmp_path: Path) -> None:
    config_file = tmp_path / "dnsmasq-webhook.yaml"
    config_file.write_text(
        "domain_filter:\n"
        "  - home.example.com\n"
        "  - lab.example.com\n"
        "dnsmasq_dir: /srv/dnsmasq\n"
        "dns_ttl: 120\n"
        "dry_run: true\n",
        encoding="utf-8",
    )

    settings = load_settings({"DNS_TTL": "30", "DRY_RUN": ""}, str(config_file))

    assert settings.domain_filter == ("home.example.com", "lab.example.com")
    assert settings.dnsmasq_dir == "/srv/dnsmasq"
    assert settings.dns_ttl == 30
    # Empty environment values fall through to the file.
    assert settings.dry_run is True


def test_load_settings_uses_config_path_from_environment(tmp_path: Path) -> None:
    config_file = tmp_path / "custom.yaml"
    config_file.write_text("domain_filter: home.example.com\n", encoding="utf-8")

    settings = load_settings({"CONFIG_PATH": str(config_file)})

    assert settings.domain_filter == ("home.example.com",)


def test_load_settings_rejects_non_numeric_values(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="DNS_TTL"):
        load_settings({"DNS_TTL": "five minutes"}, str(tmp_path / "missing.yaml"))


def test_load_config_file_ignores_broken_yaml(tmp_path: Path) -> None:
    broken = tmp_path / "broken.yaml"
    broken.write_text("domain_filter: [unterminated\n", encoding="utf-8")
    not_a_mapping = tmp_path / "list.yaml"
    not_a_mapping.write_text("- a\n- b\n", encoding="utf-8")
    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")

    assert _load_config_file(str(broken)) == {}
    assert _load_config_file(str(not_a_mapping)) == {}
    assert _load_config_file(str(empty)) == {}
    assert _load_config_file(str(tmp_path / "missing.yaml")) == {}
    assert _load_config_file("") == {}


# =============================================================================
# validate_config
# =============================================================================


def valid_settings(**overrides) -> WebhookSettings:
    return dataclasses.replace(WebhookSettings(domain_filter=("home.example.com",)), **overrides)


def test_validate_config_accepts_defaults() -> None:
    assert validate_config(valid_settings()) is True


@pytest.mark.parametrize(
    "overrides",
    [
        {"domain_filter": ()},
        {"port_provider": 0},
        {"port_health": 70000},
        {"port_provider": 8080, "port_health": 8080},
        {"dns_ttl": -1},
        {"log_level": "TRACE"},
        {"restart_command": "  "},
        {"dnsmasq_dir": ""},
    ],
)
def test_validate_config_rejects(overrides) -> None:
    assert validate_config(valid_settings(**overrides)) is False
