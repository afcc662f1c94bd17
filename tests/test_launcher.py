"""Tests for the stage launchers."""

import stat

import pytest

from ollama_relay.core.exceptions import (
    ConnectivityError,
    DependencyMissingError,
    HealthCheckError,
    StartupError,
)
from ollama_relay.supervisor.cancellation import CancellationToken
from ollama_relay.supervisor.launcher import StageLauncher
from ollama_relay.supervisor.local_service import OllamaControl
from ollama_relay.supervisor.models import ManagedProcess, ProcessRole, RemoteProcess, Session, Stage

from conftest import FakeOllama, FakeRemote


def make_launcher(config, settings, ollama, tunnel, remote):
    session = Session(config)
    launcher = StageLauncher(session, settings, CancellationToken(), ollama=ollama, tunnel=tunnel, remote=remote)
    return session, launcher


class TestLocalServiceStage:

    @pytest.mark.asyncio
    async def test_starts_and_probes(self, config, settings, ollama, tunnel, remote, local_health):
        session, launcher = make_launcher(config, settings, ollama, tunnel, remote)
        process = await launcher.launch(Stage.LOCAL_SERVICE)

        assert isinstance(process, ManagedProcess)
        assert process.role == ProcessRole.LOCAL_SERVICE
        assert process.is_alive
        assert session.get(ProcessRole.LOCAL_SERVICE) is process
        assert ollama.stop_all_calls == 1
        assert ollama.pulled == []
        assert local_health["urls"] == ["http://localhost:11434/api/tags"]

    @pytest.mark.asyncio
    async def test_pulls_missing_model(self, config, settings, tunnel, remote, local_health):
        ollama = FakeOllama(models=[])
        _, launcher = make_launcher(config, settings, ollama, tunnel, remote)
        await launcher.launch_local_service()
        assert ollama.pulled == ["gemma3:4b"]

    @pytest.mark.asyncio
    async def test_failed_pull_still_starts_service(self, config, settings, tunnel, remote, local_health):
        ollama = FakeOllama(models=[], pull_exit=1)
        session, launcher = make_launcher(config, settings, ollama, tunnel, remote)
        process = await launcher.launch_local_service()
        assert ollama.pulled == ["gemma3:4b"]
        assert ollama.start_calls == 1
        assert session.get(ProcessRole.LOCAL_SERVICE) is process

    @pytest.mark.asyncio
    async def test_unknown_model_list_skips_pull(self, config, settings, tunnel, remote, local_health):
        ollama = FakeOllama(list_fails=True)
        _, launcher = make_launcher(config, settings, ollama, tunnel, remote)
        await launcher.launch_local_service()
        assert ollama.pulled == []
        assert ollama.start_calls == 1

    @pytest.mark.asyncio
    async def test_starts_when_no_server_is_running_yet(self, config, settings, tunnel, remote, local_health, tmp_path, monkeypatch):
        script = tmp_path / "ollama"
        script.write_text(
            "#!/bin/sh\n"
            "case \"$1\" in\n"
            "  list|pull) echo 'Error: could not connect to ollama app' >&2; exit 1 ;;\n"
            "  serve) exec sleep 30 ;;\n"
            "esac\n"
        )
        script.chmod(script.stat().st_mode | stat.S_IEXEC)
        control = OllamaControl(str(script))

        async def no_stop():
            pass

        monkeypatch.setattr(control, "stop_all", no_stop)
        session, launcher = make_launcher(config, settings, control, tunnel, remote)

        process = await launcher.launch_local_service()
        try:
            assert process.is_alive
            assert session.get(ProcessRole.LOCAL_SERVICE) is process
            assert local_health["urls"] == ["http://localhost:11434/api/tags"]
        finally:
            await process.terminate(timeout=2)

    @pytest.mark.asyncio
    async def test_missing_binary(self, config, settings, tunnel, remote, local_health):
        ollama = FakeOllama(installed=False)
        _, launcher = make_launcher(config, settings, ollama, tunnel, remote)
        with pytest.raises(DependencyMissingError):
            await launcher.launch_local_service()
        assert ollama.start_calls == 0

    @pytest.mark.asyncio
    async def test_spawn_failure(self, config, settings, ollama, tunnel, remote, local_health):
        ollama.start_error = FileNotFoundError("ollama")
        session, launcher = make_launcher(config, settings, ollama, tunnel, remote)
        with pytest.raises(StartupError):
            await launcher.launch_local_service()
        assert session.processes == {}

    @pytest.mark.asyncio
    async def test_process_gone_after_settle(self, config, settings, ollama, tunnel, remote, local_health):
        ollama.dead_on_start = True
        session, launcher = make_launcher(config, settings, ollama, tunnel, remote)
        with pytest.raises(StartupError) as exc_info:
            await launcher.launch_local_service()
        assert exc_info.value.stage == "local_service"
        assert local_health["urls"] == []

    @pytest.mark.asyncio
    async def test_not_responding(self, config, settings, ollama, tunnel, remote, local_health):
        local_health["ok"] = False
        session, launcher = make_launcher(config, settings, ollama, tunnel, remote)
        with pytest.raises(HealthCheckError):
            await launcher.launch_local_service()
        # spawned process stays recorded so cleanup can stop it
        assert session.get(ProcessRole.LOCAL_SERVICE).pid == ollama.process.pid


class TestTunnelStage:

    @pytest.mark.asyncio
    async def test_opens_reverse_tunnel(self, config, settings, ollama, tunnel, remote):
        session, launcher = make_launcher(config, settings, ollama, tunnel, remote)
        process = await launcher.launch(Stage.TUNNEL)

        assert process.role == ProcessRole.TUNNEL
        assert session.get(ProcessRole.TUNNEL) is process
        assert tunnel.kwargs["local_port"] == 11434
        assert tunnel.kwargs["remote_port"] == 11434
        assert tunnel.kwargs["user"] == "admin"
        assert tunnel.kwargs["host"] == "relay.example.com"
        assert tunnel.kwargs["keepalive_interval"] == 60
        assert tunnel.kwargs["keepalive_max_missed"] == 3
        assert tunnel.kwargs["log_path"] == settings.tunnel_log_path

    @pytest.mark.asyncio
    async def test_tunnel_exited_during_settle(self, config, settings, ollama, tunnel, remote):
        tunnel.dead_on_start = True
        _, launcher = make_launcher(config, settings, ollama, tunnel, remote)
        with pytest.raises(StartupError) as exc_info:
            await launcher.launch_tunnel()
        assert exc_info.value.stage == "tunnel"


class TestRelayStage:

    @pytest.mark.asyncio
    async def test_restarts_relay_and_probes_path(self, config, settings, ollama, tunnel, remote):
        session, launcher = make_launcher(config, settings, ollama, tunnel, remote)
        relay = await launcher.launch(Stage.RELAY)

        assert isinstance(relay, RemoteProcess)
        assert relay.name == "socat"
        assert relay.host == "relay.example.com"
        assert session.relay == relay
        assert remote.terminated == ["socat"]
        assert remote.detached == ["socat TCP-LISTEN:11434,fork,bind=10.0.0.1 TCP:127.0.0.1:11434"]
        assert any(cmd.startswith("curl") and "http://10.0.0.1:11434/api/tags" in cmd for cmd in remote.commands)

    @pytest.mark.asyncio
    async def test_probe_failure_is_connectivity_error(self, config, settings, ollama, tunnel):
        remote = FakeRemote(probe_ok=False)
        session, launcher = make_launcher(config, settings, ollama, tunnel, remote)
        with pytest.raises(ConnectivityError):
            await launcher.launch_relay()
        # the relay was launched, so cleanup must still stop it
        assert session.relay is not None

    @pytest.mark.asyncio
    async def test_launch_failure(self, config, settings, ollama, tunnel):
        remote = FakeRemote(launch_status=255)
        session, launcher = make_launcher(config, settings, ollama, tunnel, remote)
        with pytest.raises(StartupError):
            await launcher.launch_relay()
        assert session.relay is not None
        assert not any(cmd.startswith("curl") for cmd in remote.commands)


class TestDependencies:

    def test_missing_ollama(self, config, settings, tunnel, remote):
        _, launcher = make_launcher(config, settings, FakeOllama(installed=False), tunnel, remote)
        with pytest.raises(DependencyMissingError) as exc_info:
            launcher.check_dependencies()
        assert exc_info.value.binary == "ollama"

    def test_missing_ssh(self, config, settings, ollama, tunnel, remote, monkeypatch):
        monkeypatch.setattr("ollama_relay.supervisor.launcher.shutil.which", lambda name: None)
        _, launcher = make_launcher(config, settings, ollama, tunnel, remote)
        with pytest.raises(DependencyMissingError) as exc_info:
            launcher.check_dependencies()
        assert exc_info.value.binary == "ssh"

    def test_all_present(self, config, settings, ollama, tunnel, remote, ssh_installed):
        _, launcher = make_launcher(config, settings, ollama, tunnel, remote)
        launcher.check_dependencies()
