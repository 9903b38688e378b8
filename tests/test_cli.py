"""End-to-end tests for probing, the check run and the command line."""

import http.client
import logging
import subprocess
from unittest.mock import patch

import pytest

import duc
from docker_api import DockerAPIError
from duc import BackendUnreachable, main, probe, run_check
from conftest import DIGEST_A, DIGEST_B, FakeBackend


@pytest.fixture(autouse=True)
def no_helper():
    """Keep a locally installed skopeo out of the remote lookup chain."""
    with patch('duc.SkopeoHelper.available', return_value=False):
        yield


def backends_by_mode(**backends):
    def factory(mode, socket_path=None, timeout=None):
        return backends[mode]
    return factory


class TestProbe:

    def test_first_working_mode_wins(self):
        api = FakeBackend(ping_error=PermissionError(13, "Permission denied"))
        cli = FakeBackend()
        sudo = FakeBackend()
        with patch('duc.make_backend', side_effect=backends_by_mode(api=api, cli=cli, sudo=sudo)):
            ctx = probe({"modes": ["api", "cli", "sudo"], "timeout": 5})
        assert ctx.mode == "cli"
        assert ctx.backend is cli

    def test_configured_order(self):
        api, sudo = FakeBackend(), FakeBackend()
        with patch('duc.make_backend', side_effect=backends_by_mode(api=api, sudo=sudo)):
            ctx = probe({"modes": ["sudo", "api"]})
        assert ctx.mode == "sudo"

    def test_all_modes_fail(self):
        backends = backends_by_mode(
            api=FakeBackend(ping_error=FileNotFoundError(2, "No such file or directory")),
            cli=FakeBackend(ping_error=DockerAPIError(1, "Cannot connect to the Docker daemon")),
            sudo=FakeBackend(ping_error=subprocess.TimeoutExpired(["sudo"], 30)),
        )
        with patch('duc.make_backend', side_effect=backends):
            with pytest.raises(BackendUnreachable) as excinfo:
                probe({"modes": ["api", "cli", "sudo"]})
        assert list(excinfo.value.reasons) == ["api", "cli", "sudo"]


class TestRunCheck:

    def _run(self, backend, **settings):
        settings.setdefault("modes", ["api"])
        with patch('duc.make_backend', return_value=backend):
            return run_check(settings)

    def test_no_containers(self):
        assert self._run(FakeBackend()) == (["OK - No running containers found"], 0)

    def test_same_image_up_to_date(self):
        backend = FakeBackend(
            containers=[("web1", "nginx"), ("web2", "nginx:latest")],
            local={"nginx:latest": ["nginx@" + DIGEST_A]},
            remote={"nginx:latest": DIGEST_A},
        )
        assert self._run(backend) == (["OK - All 2 container(s) are up to date"], 0)
        assert backend.local_calls == ["nginx:latest"]
        assert backend.remote_calls == ["nginx:latest"]

    def test_remote_unresolvable(self):
        backend = FakeBackend(
            containers=[("web", "nginx"), ("db", "postgres:15"), ("app", "ghcr.io/org/app:v1")],
            local={
                "nginx:latest": ["nginx@" + DIGEST_A],
                "postgres:15": ["postgres@" + DIGEST_B],
                "ghcr.io/org/app:v1": ["ghcr.io/org/app@" + DIGEST_A],
            },
            remote={
                "nginx:latest": DIGEST_A,
                "postgres:15": DIGEST_B,
                "ghcr.io/org/app:v1": DockerAPIError(500, "unauthorized"),
            },
        )
        lines, exit_code = self._run(backend)
        assert exit_code == 1
        assert lines == ["WARNING - 1 image check(s) failed, 0 updates found across 3 container(s)"]

    def test_one_stale(self):
        backend = FakeBackend(
            containers=[("web", "nginx"), ("db", "postgres:15")],
            local={
                "nginx:latest": ["nginx@" + DIGEST_A],
                "postgres:15": ["postgres@" + DIGEST_B],
            },
            remote={"nginx:latest": DIGEST_B, "postgres:15": DIGEST_B},
        )
        lines, exit_code = self._run(backend)
        assert exit_code == 1
        assert lines == ["WARNING - Updates available for 1 container(s)", "web (nginx:latest)"]

    def test_parallel_run(self):
        backend = FakeBackend(
            containers=[("web", "nginx"), ("db", "postgres:15"), ("web2", "nginx")],
            local={
                "nginx:latest": ["nginx@" + DIGEST_A],
                "postgres:15": ["postgres@" + DIGEST_B],
            },
            remote={"nginx:latest": DIGEST_B, "postgres:15": DIGEST_B},
        )
        lines, exit_code = self._run(backend, workers=4)
        assert exit_code == 1
        assert lines == [
            "WARNING - Updates available for 2 container(s)",
            "web (nginx:latest)",
            "web2 (nginx:latest)",
        ]
        assert backend.remote_calls.count("nginx:latest") == 1

    def test_probe_failure_skips_processing(self):
        backend = FakeBackend(
            containers=[("web", "nginx")],
            ping_error=PermissionError(13, "Permission denied"),
        )
        assert self._run(backend) == (["CRITICAL - Cannot access Docker daemon"], 2)
        assert backend.list_calls == 0
        assert backend.local_calls == []

    def test_listing_failure_is_warning(self):
        backend = FakeBackend()
        with patch.object(backend, 'running_containers', side_effect=DockerAPIError(500, "daemon busy")):
            lines, exit_code = self._run(backend)
        assert exit_code == 1
        assert lines[0].startswith("WARNING - Could not list running containers")


class TestMain:

    def test_no_containers(self, capsys):
        with patch('duc.make_backend', return_value=FakeBackend()):
            assert main([]) == 0
        assert capsys.readouterr().out == "OK - No running containers found\n"

    def test_backend_unreachable(self, capsys):
        backend = FakeBackend(ping_error=PermissionError(13, "Permission denied"))
        with patch('duc.make_backend', return_value=backend):
            assert main([]) == 2
        captured = capsys.readouterr()
        assert captured.out == "CRITICAL - Cannot access Docker daemon\n"

    def test_stale_output_on_stdout_narration_on_stderr(self, capsys):
        backend = FakeBackend(
            containers=[("web", "nginx")],
            local={"nginx:latest": ["nginx@" + DIGEST_A]},
            remote={"nginx:latest": DIGEST_B},
        )
        with patch('duc.make_backend', return_value=backend):
            assert main(["--mode", "api"]) == 1
        captured = capsys.readouterr()
        assert captured.out.splitlines() == [
            "WARNING - Updates available for 1 container(s)",
            "web (nginx:latest)",
        ]
        assert "Checking nginx:latest (web)" in captured.err
        assert "Checking" not in captured.out

    def test_unexpected_error_still_prints_status(self, capsys):
        with patch('duc.run_check', side_effect=RuntimeError("boom")):
            assert main([]) == 1
        captured = capsys.readouterr()
        assert captured.out == "WARNING - Check failed: boom\n"
        assert "Fatal error: boom" in captured.err

    def test_protocol_error_reports_failed_check(self, capsys):
        backend = FakeBackend(
            containers=[("web", "nginx"), ("db", "postgres:15")],
            local={
                "nginx:latest": ["nginx@" + DIGEST_A],
                "postgres:15": ["postgres@" + DIGEST_B],
            },
            remote={
                "nginx:latest": http.client.BadStatusLine("garbage"),
                "postgres:15": DIGEST_B,
            },
        )
        with patch('duc.make_backend', return_value=backend):
            assert main(["--mode", "api"]) == 1
        assert capsys.readouterr().out == (
            "WARNING - 1 image check(s) failed, 0 updates found across 2 container(s)\n"
        )

    def test_narration_follows_current_stderr(self, capsys):
        backend = FakeBackend(
            containers=[("web", "nginx")],
            local={"nginx:latest": ["nginx@" + DIGEST_A]},
            remote={"nginx:latest": DIGEST_A},
        )
        with patch('duc.make_backend', return_value=backend):
            main(["--mode", "api"])
            capsys.readouterr()
            main(["--mode", "api"])
        captured = capsys.readouterr()
        assert captured.err.count("Checking nginx:latest (web)") == 1
        handlers = logging.getLogger('duc').handlers
        assert sum(1 for h in handlers if getattr(h, '_duc_stderr', False)) == 1

    def test_invalid_flag(self, capsys):
        assert main(["--workers", "many"]) == 1
        assert capsys.readouterr().out.startswith("WARNING - Invalid configuration:")

    def test_invalid_config_file(self, tmp_path, capsys):
        config_file = tmp_path / "duc.json"
        config_file.write_text('{"modes": ["ssh"]}')
        with patch('duc.run_check') as mock_run:
            assert main(["--config", str(config_file)]) == 1
        mock_run.assert_not_called()
        assert capsys.readouterr().out.startswith("WARNING - Invalid configuration:")

    def test_trace_enables_debug(self, monkeypatch):
        monkeypatch.setenv("TRACE", "1")
        with patch('duc.run_check', return_value=(["OK - No running containers found"], 0)):
            assert main([]) == 0
        assert logging.getLogger('duc').level == logging.DEBUG
        assert logging.getLogger('docker_api').level == logging.DEBUG

    def test_log_level_from_env(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "warning")
        with patch('duc.run_check', return_value=(["OK - No running containers found"], 0)):
            main([])
        assert logging.getLogger('duc').level == logging.WARNING

    def test_settings_reach_run(self):
        with patch('duc.run_check', return_value=(["OK - No running containers found"], 0)) as mock_run:
            main(["--timeout", "7", "--mode", "sudo"])
        settings = mock_run.call_args[0][0]
        assert settings["timeout"] == 7.0
        assert settings["modes"] == ["sudo"]

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main(["--version"])
        assert excinfo.value.code == 0
        assert duc.__version__ in capsys.readouterr().out
