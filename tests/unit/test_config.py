"""
Unit tests для конфигурации VolumeScaler Controller.

Тестирует:
- Обязательные NODE_NAME / POD_NAME (и legacy NODE_NAME_ENV)
- on/off парсинг boolean значений
- Валидацию таймингов Leader Election
- Формирование URL Kubernetes API и Redis
"""

import pytest
from pydantic import ValidationError

from volumescaler.core.config import (
    ControllerSettings,
    KubernetesSettings,
    LeaderElectionBackend,
    LeaderElectionSettings,
    ProbeBackend,
    ProbeSettings,
    RedisSettings,
    Settings,
    parse_bool_from_env,
)


class TestControllerIdentity:
    """Тесты обязательной identity реплики."""

    def test_identity_from_environment(self, monkeypatch):
        monkeypatch.setenv("NODE_NAME", "worker-7")
        monkeypatch.setenv("POD_NAME", "volumescaler-abc")

        config = ControllerSettings()

        assert config.node_name == "worker-7"
        assert config.pod_name == "volumescaler-abc"

    def test_legacy_node_name_env(self, monkeypatch):
        monkeypatch.delenv("NODE_NAME", raising=False)
        monkeypatch.setenv("NODE_NAME_ENV", "worker-9")

        assert ControllerSettings().node_name == "worker-9"

    def test_missing_node_name_is_fatal(self, monkeypatch):
        monkeypatch.delenv("NODE_NAME", raising=False)
        monkeypatch.delenv("NODE_NAME_ENV", raising=False)

        with pytest.raises(ValidationError):
            ControllerSettings()

    def test_missing_pod_name_is_fatal(self, monkeypatch):
        monkeypatch.delenv("POD_NAME", raising=False)

        with pytest.raises(ValidationError):
            ControllerSettings()

    def test_blank_identity_rejected(self, monkeypatch):
        monkeypatch.setenv("NODE_NAME", "   ")

        with pytest.raises(ValidationError):
            ControllerSettings()

    def test_defaults(self):
        config = ControllerSettings(node_name="worker-1", pod_name="pod-1")

        assert config.workers == 2
        assert config.default_cooldown_seconds == 0.0
        assert config.near_max_epsilon_bytes == 1024 ** 3

    def test_workers_from_environment(self, monkeypatch):
        monkeypatch.setenv("CONTROLLER_WORKERS", "4")

        assert ControllerSettings().workers == 4


class TestParseBool:
    """Тесты on/off формата."""

    @pytest.mark.parametrize("value,expected", [
        ("on", True),
        ("ON", True),
        (" off ", False),
        (True, True),
        (False, False),
    ])
    def test_valid(self, value, expected):
        assert parse_bool_from_env(value) is expected

    @pytest.mark.parametrize("value", ["true", "1", "yes", "", None])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_bool_from_env(value)

    def test_leader_election_enabled_from_env(self, monkeypatch):
        monkeypatch.setenv("LEADER_ELECTION_ENABLED", "off")

        assert LeaderElectionSettings().enabled is False


class TestLeaderElectionSettings:
    """Тесты настроек Leader Election."""

    def test_defaults(self):
        config = LeaderElectionSettings()

        assert config.backend == LeaderElectionBackend.KUBERNETES
        assert config.lease_name == "volumescaler-controller-lock"
        assert config.lease_namespace == "kube-system"
        assert config.lease_duration == 15.0
        assert config.renew_deadline == 10.0
        assert config.retry_period == 2.0

    @pytest.mark.parametrize("lease_duration,renew_deadline,retry_period", [
        (10, 10, 2),
        (15, 10, 10),
        (15, 10, 0),
    ])
    def test_invalid_timings(self, lease_duration, renew_deadline, retry_period):
        with pytest.raises(ValidationError):
            LeaderElectionSettings(
                lease_duration=lease_duration,
                renew_deadline=renew_deadline,
                retry_period=retry_period,
            )

    def test_redis_backend_from_env(self, monkeypatch):
        monkeypatch.setenv("LEADER_ELECTION_BACKEND", "redis")

        assert LeaderElectionSettings().backend == LeaderElectionBackend.REDIS


class TestConnectionSettings:
    """Тесты URL внешних сервисов."""

    def test_kubernetes_base_url_from_service_env(self):
        config = KubernetesSettings(service_host="10.96.0.1", service_port=443)

        assert config.base_url == "https://10.96.0.1:443"

    def test_kubernetes_base_url_ipv6(self):
        config = KubernetesSettings(service_host="fd00::1", service_port=6443)

        assert config.base_url == "https://[fd00::1]:6443"

    def test_kubernetes_explicit_api_url(self):
        config = KubernetesSettings(service_host="10.96.0.1", api_url="http://localhost:8001/")

        assert config.base_url == "http://localhost:8001"

    def test_kubernetes_not_configured(self, monkeypatch):
        monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)
        monkeypatch.delenv("KUBERNETES_API_URL", raising=False)

        assert KubernetesSettings().base_url is None

    def test_redis_url(self):
        assert RedisSettings(host="redis", port=6380, db=1).url == "redis://redis:6380/1"
        assert RedisSettings(host="redis", password="secret").url == "redis://:secret@redis:6379/0"

    def test_probe_backend_default(self):
        assert ProbeSettings().backend == ProbeBackend.DF


def test_settings_aggregates_groups():
    settings = Settings()

    assert settings.controller.node_name
    assert settings.kubernetes.group == "zghanem.aws"
    assert settings.kubernetes.plural == "volumescalers"
    assert settings.workqueue.qps == 10.0
    assert settings.workqueue.burst == 100
