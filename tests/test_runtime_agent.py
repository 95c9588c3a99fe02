#tests\test_runtime_agent.py

"""Test the host side: docker runtime, probes, nginx, certbot and the agent client."""

import json
import subprocess
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
import requests

from runtime_agent import certbot as certbot_module
from runtime_agent import nginx as nginx_module
from runtime_agent.certbot import CertbotRunner, CertificateRequestFailed, classify_failure, parse_enddate
from runtime_agent.client import AgentRequestError, AgentUnavailable, RuntimeAgentClient
from runtime_agent.docker_runtime import (
    LABEL_FINGERPRINT,
    LABEL_HEALTH_CHECK,
    LABEL_HOST_PORT,
    DockerRuntime,
    InstanceNotFound,
    docker_memory,
)
from runtime_agent.nginx import NginxManager, NginxRejected, NginxUnavailable
from runtime_agent.probes import HEALTHY, STARTING, UNHEALTHY, probe_container
from deployment_engine.core.errors import ControlPlaneError, PreconditionError, ReloadRejected
from deployment_engine.core.models import HealthStatus, ServiceKind, ServiceSpec
from deployment_engine.proxy.sink import AgentProxySink
from deployment_engine.rollout.control_plane import AgentControlPlane


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def http_response(status_code, body=None):
    response = Mock()
    response.status_code = status_code
    response.content = json.dumps(body).encode() if body is not None else b""
    response.text = json.dumps(body) if body is not None else ""
    response.json.return_value = body
    return response


# ============================================
# DOCKER
# ============================================

class TestDockerMemory:
    """Test memory limit conversion."""

    @pytest.mark.parametrize("limit, expected", [
        ("256mb", "256m"),
        ("1g", "1g"),
        ("512KB", "512k"),
        ("100b", "100"),
        ("512", "512"),
        (None, None),
    ])
    def test_conversion(self, limit, expected):
        assert docker_memory(limit) == expected


class TestDockerRuntime:
    """Test container creation against a mocked docker client."""

    @pytest.fixture
    def client(self):
        client = Mock()
        network = Mock()
        network.name = "shop-production"
        client.networks.list.return_value = [network]

        def create(**kwargs):
            container = Mock()
            container.id = "3f2a9c1b7d8e4f60"
            container.name = kwargs["name"]
            container.labels = kwargs["labels"]
            container.attrs = {"Config": {"Image": kwargs["image"]}}
            container.status = "running"
            return container

        client.containers.create.side_effect = create
        return client

    @pytest.fixture
    def spec(self, tmp_path):
        secrets = tmp_path / "production.env"
        secrets.write_text("DATABASE_URL=postgres://db/shop\nSECRET_KEY=s3cr3t\n")
        return ServiceSpec(
            environment="production",
            kind=ServiceKind.WEB,
            image="registry.example.com/app:v1",
            replicas=2,
            command=("gunicorn", "app.wsgi"),
            env=(("SECRET_KEY", "from-config"),),
            memory_limit="256mb",
            container_port=8000,
            host_port_base=8100,
            secrets_ref=str(secrets),
        )

    def test_create_instance(self, client, spec):
        runtime = DockerRuntime(client, pull_images=False)

        instance = runtime.create_instance("shop", spec.to_dict(), slot=1, fingerprint=spec.fingerprint)

        kwargs = client.containers.create.call_args.kwargs
        assert kwargs["ports"] == {"8000/tcp": ("127.0.0.1", 8101)}
        assert kwargs["mem_limit"] == "256m"
        assert kwargs["network"] == "shop-production"
        assert kwargs["command"] == ["gunicorn", "app.wsgi"]
        # configured env wins over the secret bundle
        assert kwargs["environment"] == {"DATABASE_URL": "postgres://db/shop", "SECRET_KEY": "from-config"}
        assert kwargs["labels"][LABEL_FINGERPRINT] == spec.fingerprint
        assert kwargs["labels"][LABEL_HOST_PORT] == "8101"

        assert instance["slot"] == 1
        assert instance["host_port"] == 8101
        assert instance["kind"] == "web"

    def test_alias_is_service_kind(self, client, spec):
        runtime = DockerRuntime(client, pull_images=False)

        runtime.create_instance("shop", spec.to_dict(), slot=0, fingerprint=spec.fingerprint)

        network = client.networks.list.return_value[0]
        assert network.connect.call_args.kwargs == {"aliases": ["web"]}

    def test_health_check_label(self, client, spec):
        runtime = DockerRuntime(client, pull_images=False)
        data = spec.to_dict()
        data["health_check"] = {"type": "http", "path": "/healthz", "port": 8000}

        runtime.create_instance("shop", data, slot=0, fingerprint=spec.fingerprint)

        labels = client.containers.create.call_args.kwargs["labels"]
        assert json.loads(labels[LABEL_HEALTH_CHECK])["path"] == "/healthz"

    def test_unmanaged_container_not_found(self, client):
        client.containers.get.return_value = SimpleNamespace(labels={}, id="abc")
        runtime = DockerRuntime(client)

        with pytest.raises(InstanceNotFound):
            runtime.remove_instance("abc")


# ============================================
# PROBES
# ============================================

def fake_container(status="running", exit_code=0, ip="172.18.0.5"):
    return SimpleNamespace(
        name="shop-production-web-0",
        status=status,
        attrs={"NetworkSettings": {"Networks": {"shop-production": {"IPAddress": ip}}}},
        exec_run=lambda command, demux=False: (exit_code, b"not ready"),
    )


class TestProbes:
    """Test one-shot container probes."""

    def test_created_is_starting(self):
        assert probe_container(fake_container(status="created"), None) == STARTING

    def test_exited_is_unhealthy(self):
        assert probe_container(fake_container(status="exited"), None) == UNHEALTHY

    def test_process_check(self):
        assert probe_container(fake_container(), {"type": "process"}) == HEALTHY

    def test_command_check(self):
        check = {"type": "command", "command": "redis-cli ping"}

        assert probe_container(fake_container(exit_code=0), check) == HEALTHY
        assert probe_container(fake_container(exit_code=1), check) == UNHEALTHY

    def test_http_check_uses_published_port(self, monkeypatch):
        seen = []

        def fake_get(url, timeout, allow_redirects):
            seen.append(url)
            return SimpleNamespace(status_code=200)

        monkeypatch.setattr("runtime_agent.probes.requests.get", fake_get)

        status = probe_container(fake_container(), {"type": "http", "path": "/healthz", "port": 8000}, host_port=8101)

        assert status == HEALTHY
        assert seen == ["http://127.0.0.1:8101/healthz"]

    def test_http_check_failure(self, monkeypatch):
        def fake_get(url, timeout, allow_redirects):
            raise requests.exceptions.ConnectionError("refused")

        monkeypatch.setattr("runtime_agent.probes.requests.get", fake_get)

        status = probe_container(fake_container(), {"type": "http", "path": "/", "port": 8000})

        assert status == UNHEALTHY

    def test_no_address_yet(self):
        assert probe_container(fake_container(ip=""), {"type": "tcp", "port": 6379}) == STARTING


# ============================================
# NGINX
# ============================================

class TestNginxManager:
    """Test validate-then-swap installation."""

    @pytest.fixture
    def config_path(self, tmp_path):
        path = tmp_path / "nginx.conf"
        path.write_text("# live\n")
        return path

    def test_install_swaps_file(self, config_path, monkeypatch):
        commands = []
        monkeypatch.setattr(nginx_module.subprocess, "run", lambda command, **kw: commands.append(command) or completed())

        NginxManager(str(config_path)).install("# new\n")

        assert config_path.read_text() == "# new\n"
        assert (config_path.parent / "nginx.conf.previous").read_text() == "# live\n"
        assert not (config_path.parent / "nginx.conf.candidate").exists()
        assert commands[0][:3] == ["nginx", "-t", "-c"]

    def test_rejected_config_leaves_live_file(self, config_path, monkeypatch):
        monkeypatch.setattr(
            nginx_module.subprocess, "run",
            lambda command, **kw: completed(1, stderr="nginx: [emerg] unexpected end of file"),
        )

        with pytest.raises(NginxRejected, match="unexpected end of file"):
            NginxManager(str(config_path)).install("http {")

        assert config_path.read_text() == "# live\n"
        assert not (config_path.parent / "nginx.conf.candidate").exists()

    def test_reload_is_signal(self, config_path, monkeypatch):
        commands = []
        monkeypatch.setattr(nginx_module.subprocess, "run", lambda command, **kw: commands.append(command) or completed())

        NginxManager(str(config_path)).reload()

        assert commands[-1] == ["nginx", "-s", "reload", "-c", str(config_path)]

    def test_missing_binary(self, config_path, monkeypatch):
        def missing(command, **kw):
            raise FileNotFoundError(command[0])

        monkeypatch.setattr(nginx_module.subprocess, "run", missing)

        with pytest.raises(NginxUnavailable):
            NginxManager(str(config_path)).reload()


# ============================================
# CERTBOT
# ============================================

class TestCertbot:
    """Test certbot invocation and failure classification."""

    @pytest.mark.parametrize("output, reason", [
        ("Error creating new order :: too many certificates already issued", "rate-limited"),
        ("Challenge failed for domain app.example.com", "domain-validation-failed"),
        ("Failed to establish a new connection: [Errno 101]", "network-error"),
        ("something unexpected", "error"),
    ])
    def test_classify_failure(self, output, reason):
        assert classify_failure(output) == reason

    def test_parse_enddate(self):
        assert parse_enddate("notAfter=Aug 30 12:00:00 2026 GMT\n") == datetime(2026, 8, 30, 12, 0, tzinfo=timezone.utc)

    def test_parse_enddate_single_digit_day(self):
        assert parse_enddate("notAfter=Jan  1 00:00:00 2027 GMT") == datetime(2027, 1, 1, tzinfo=timezone.utc)

    def test_issue(self, tmp_path, monkeypatch):
        commands = []

        def run(command, **kw):
            commands.append(command)
            if command[0] == "openssl":
                return completed(stdout="notAfter=Aug 30 12:00:00 2026 GMT\n")
            return completed(stdout="Successfully received certificate.")

        monkeypatch.setattr(certbot_module.subprocess, "run", run)
        runner = CertbotRunner(live_dir=str(tmp_path))

        result = runner.obtain("app.example.com", "/var/www/letsencrypt", email="ops@example.com")

        assert result["expires_at"] == "2026-08-30T12:00:00+00:00"
        assert result["fullchain_path"] == str(tmp_path / "app.example.com" / "fullchain.pem")
        assert "--force-renewal" not in commands[0]
        assert ["--email", "ops@example.com"] == commands[0][commands[0].index("--email"):][:2]

    def test_existing_lineage_is_renewed(self, tmp_path, monkeypatch):
        lineage = tmp_path / "app.example.com"
        lineage.mkdir()
        (lineage / "fullchain.pem").write_text("---")
        commands = []

        def run(command, **kw):
            commands.append(command)
            return completed(stdout="notAfter=Aug 30 12:00:00 2026 GMT")

        monkeypatch.setattr(certbot_module.subprocess, "run", run)

        CertbotRunner(live_dir=str(tmp_path)).obtain("app.example.com", "/var/www/letsencrypt", staging=True)

        assert "--force-renewal" in commands[0]
        assert "--staging" in commands[0]
        assert "--register-unsafely-without-email" in commands[0]

    def test_failure_is_classified(self, tmp_path, monkeypatch):
        monkeypatch.setattr(
            certbot_module.subprocess, "run",
            lambda command, **kw: completed(1, stderr="urn:ietf:params:acme:error:rateLimited"),
        )

        with pytest.raises(CertificateRequestFailed) as exc_info:
            CertbotRunner(live_dir=str(tmp_path)).obtain("app.example.com", "/var/www/letsencrypt")

        assert exc_info.value.reason == "rate-limited"


# ============================================
# AGENT CLIENT
# ============================================

class TestRuntimeAgentClient:
    """Test transport error mapping."""

    @pytest.fixture
    def session(self):
        return Mock()

    @pytest.fixture
    def client(self, session):
        client = RuntimeAgentClient("http://127.0.0.1:9000/", timeout=5)
        client._session = session
        return client

    def test_list_instances(self, client, session):
        session.request.return_value = http_response(200, {"instances": [{"instance_id": "abc"}]})

        assert client.list_instances("shop", "production") == [{"instance_id": "abc"}]
        assert session.request.call_args.args == ("GET", "http://127.0.0.1:9000/projects/shop/environments/production/instances")

    def test_error_detail(self, client, session):
        session.request.return_value = http_response(422, {"detail": "nginx: [emerg] bad"})

        with pytest.raises(AgentRequestError) as exc_info:
            client.put_proxy_config("http {")

        assert exc_info.value.status_code == 422
        assert exc_info.value.detail == "nginx: [emerg] bad"

    def test_connection_error(self, client, session):
        session.request.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(AgentUnavailable):
            client.reload_proxy()

    def test_timeout(self, client, session):
        session.request.side_effect = requests.exceptions.Timeout()

        with pytest.raises(AgentUnavailable, match="timed out"):
            client.instance_health("abc")

    def test_remove_missing_instance_is_not_an_error(self, client, session):
        session.request.return_value = http_response(404, {"detail": "Instance not found"})

        client.remove_instance("abc")

    def test_health_check(self, client, session):
        session.request.side_effect = requests.exceptions.ConnectionError("refused")

        assert client.health_check() is False


class TestAgentCollaborators:
    """Test the engine-side adapters over the agent client."""

    def test_observe_unreachable_is_precondition(self):
        client = Mock()
        client.list_instances.side_effect = AgentUnavailable("refused")

        with pytest.raises(PreconditionError):
            AgentControlPlane(client, project="shop").observe("production")

    def test_observe(self):
        client = Mock()
        client.list_instances.return_value = [{
            "instance_id": "abc",
            "environment": "production",
            "kind": "worker-default",
            "slot": "0",
            "image": "app:v1",
            "fingerprint": "f00",
            "health": "UNKNOWN",
        }]

        [instance] = AgentControlPlane(client, project="shop").observe("production")

        assert instance.kind == ServiceKind.WORKER_DEFAULT
        assert instance.slot == 0
        assert instance.health == HealthStatus.UNKNOWN

    def test_create_failure_is_scoped(self):
        client = Mock()
        client.create_instance.side_effect = AgentRequestError(500, "image pull failed")
        spec = ServiceSpec("production", ServiceKind.WEB, "app:v1", 1)

        with pytest.raises(ControlPlaneError, match="slot 1"):
            AgentControlPlane(client, project="shop").create_instance(spec, 1)

    def test_proxy_rejection(self):
        client = Mock()
        client.put_proxy_config.side_effect = AgentRequestError(422, "unexpected end of file")

        with pytest.raises(ReloadRejected):
            AgentProxySink(client).apply("http {")

    def test_proxy_unreachable(self):
        client = Mock()
        client.reload_proxy.side_effect = AgentRequestError(503, "nginx is not running")

        with pytest.raises(PreconditionError):
            AgentProxySink(client).reload()
