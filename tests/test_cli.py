"""Tests for CLI commands"""

from unittest.mock import Mock, patch

import httpx
import pytest
from typer.testing import CliRunner

from cli.client.base import OffloadError
from cli.client.endpoints import OffloadClient
from cli.main import app
from cli.utils.config_manager import ConfigManager


# Test fixtures
@pytest.fixture
def runner():
    """CLI test runner"""
    return CliRunner()


@pytest.fixture
def mock_client():
    """Mock API client"""
    client = Mock()
    client.__enter__ = Mock(return_value=client)
    client.__exit__ = Mock(return_value=None)
    return client


@pytest.fixture
def temp_config(tmp_path):
    """Config manager writing to a temporary directory"""
    manager = ConfigManager(config_dir=tmp_path)
    with patch("cli.commands.config.config", manager):
        yield manager


class TestMainCommands:
    """Test main CLI commands"""

    def test_version(self, runner):
        """Test version command"""
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "Offload CLI" in result.stdout

    @patch("cli.main.OffloadClient")
    def test_status_success(self, mock_client_class, runner, mock_client):
        """Test status command with successful connection"""
        mock_client.health_check.return_value = {
            "ok": True,
            "version": "1.0.0",
            "environment": "development",
            "broker": {"connected": True, "queue": "heavy-computation"},
            "status_store": {"connected": True},
        }
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["status"])
        assert result.exit_code == 0
        assert "Connected Successfully" in result.stdout

    @patch("cli.main.OffloadClient")
    def test_status_degraded(self, mock_client_class, runner, mock_client):
        mock_client.health_check.return_value = {
            "ok": False,
            "broker": {"connected": False, "queue": "heavy-computation"},
            "status_store": {"connected": True},
        }
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["status"])
        assert result.exit_code == 1
        assert "Degraded" in result.stdout

    @patch("cli.main.OffloadClient")
    def test_status_failure(self, mock_client_class, runner, mock_client):
        """Test status command with connection failure"""
        mock_client.health_check.side_effect = OffloadError("Connection failed")
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["status"])
        assert result.exit_code == 1
        assert "Connection Failed" in result.stdout


class TestJobCommands:
    """Test job commands"""

    @patch("cli.commands.jobs.OffloadClient")
    def test_submit(self, mock_client_class, runner, mock_client):
        """Test submitting a job without waiting"""
        mock_client.submit_job.return_value = {
            "jobId": "job-1",
            "statusLocation": "/v1/jobs/job-1",
        }
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "submit", "--limit", "100"])
        assert result.exit_code == 0
        assert "Job queued: job-1" in result.stdout
        assert "/v1/jobs/job-1" in result.stdout
        mock_client.submit_job.assert_called_once_with(limit=100, include_primes=False)
        mock_client.wait_for_job.assert_not_called()

    @patch("cli.commands.jobs.OffloadClient")
    def test_submit_and_wait(self, mock_client_class, runner, mock_client):
        """Test submitting a job and waiting for the result"""
        mock_client.submit_job.return_value = {
            "jobId": "job-1",
            "statusLocation": "/v1/jobs/job-1",
        }
        mock_client.wait_for_job.return_value = {
            "jobId": "job-1",
            "state": "completed",
            "attempts": 1,
            "result": {"count": 25, "durationMs": 0.1},
        }
        mock_client_class.return_value = mock_client

        result = runner.invoke(
            app, ["jobs", "submit", "-l", "100", "--wait", "--interval", "0.1"]
        )
        assert result.exit_code == 0
        assert "completed" in result.stdout
        assert "25" in result.stdout
        assert mock_client.wait_for_job.call_args.kwargs["interval"] == 0.1

    @patch("cli.commands.jobs.OffloadClient")
    def test_submit_and_wait_failed_job(self, mock_client_class, runner, mock_client):
        mock_client.submit_job.return_value = {
            "jobId": "job-1",
            "statusLocation": "/v1/jobs/job-1",
        }
        mock_client.wait_for_job.return_value = {
            "jobId": "job-1",
            "state": "failed",
            "error": "limit must be a non-negative integer, got -5",
        }
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "submit", "--limit=-5", "--wait"])
        assert result.exit_code == 1
        assert "failed" in result.stdout

    @patch("cli.commands.jobs.OffloadClient")
    def test_submit_broker_unavailable(self, mock_client_class, runner, mock_client):
        mock_client.submit_job.side_effect = OffloadError(
            "API Error 503: Job submission failed: message broker unavailable",
            status_code=503,
        )
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "submit"])
        assert result.exit_code == 1
        assert "Failed to submit job" in result.stdout

    @patch("cli.commands.jobs.OffloadClient")
    def test_job_status(self, mock_client_class, runner, mock_client):
        mock_client.get_job.return_value = {
            "jobId": "job-1",
            "state": "active",
            "attempts": 1,
        }
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "status", "job-1"])
        assert result.exit_code == 0
        assert "active" in result.stdout

    @patch("cli.commands.jobs.OffloadClient")
    def test_job_status_not_found(self, mock_client_class, runner, mock_client):
        mock_client.get_job.side_effect = OffloadError(
            "API Error 404: Job not found", status_code=404
        )
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "status", "job-1"])
        assert result.exit_code == 1
        assert "not found" in result.stdout


class TestConfigCommands:
    """Test configuration commands"""

    def test_set_and_get(self, runner, temp_config):
        result = runner.invoke(app, ["config", "set", "api.base_url", "http://example:9000"])
        assert result.exit_code == 0
        assert temp_config.get("api.base_url") == "http://example:9000"

        result = runner.invoke(app, ["config", "get", "api.base_url"])
        assert result.exit_code == 0
        assert "http://example:9000" in result.stdout

    def test_set_numeric_value_is_stored_as_number(self, runner, temp_config):
        result = runner.invoke(app, ["config", "set", "jobs.poll_interval", "2.5"])
        assert result.exit_code == 0
        assert temp_config.get("jobs.poll_interval") == 2.5

    def test_set_invalid_url(self, runner, temp_config):
        result = runner.invoke(app, ["config", "set", "api.base_url", "example:9000"])
        assert result.exit_code == 1
        assert "must start with http" in result.stdout

    def test_set_non_numeric_interval(self, runner, temp_config):
        result = runner.invoke(app, ["config", "set", "jobs.poll_interval", "soon"])
        assert result.exit_code == 1
        assert "must be numeric" in result.stdout

    def test_reset(self, runner, temp_config):
        temp_config.set("jobs.poll_interval", "5")

        result = runner.invoke(app, ["config", "reset", "--yes"])
        assert result.exit_code == 0
        assert temp_config.get("jobs.poll_interval") == 1.0

    def test_get_missing_key(self, runner, temp_config):
        result = runner.invoke(app, ["config", "get", "nope.missing"])
        assert result.exit_code == 0
        assert "not found" in result.stdout


class TestClient:
    """Test the HTTP client against a mocked transport"""

    def test_wait_for_job_polls_until_terminal(self):
        states = iter(["queued", "active", "completed"])
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request.url.path)
            return httpx.Response(
                200,
                json={"ok": True, "data": {"jobId": "job-1", "state": next(states)}},
            )

        client = OffloadClient("http://test", transport=httpx.MockTransport(handler))
        job = client.wait_for_job("job-1", interval=0, sleep=lambda _: None)

        assert job["state"] == "completed"
        assert requests == ["/v1/jobs/job-1"] * 3

    def test_wait_for_job_times_out(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, json={"ok": True, "data": {"jobId": "job-1", "state": "active"}}
            )

        client = OffloadClient("http://test", transport=httpx.MockTransport(handler))
        with pytest.raises(OffloadError, match="still active"):
            client.wait_for_job("job-1", timeout=0, sleep=lambda _: None)

    def test_error_envelope_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                404,
                json={"ok": False, "error": {"message": "Job not found", "code": 404}},
            )

        client = OffloadClient("http://test", transport=httpx.MockTransport(handler))
        with pytest.raises(OffloadError) as exc_info:
            client.get_job("missing")

        assert exc_info.value.status_code == 404
        assert "Job not found" in str(exc_info.value)

    def test_submit_job_posts_payload(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(request.content)
            return httpx.Response(
                202,
                json={
                    "ok": True,
                    "data": {"jobId": "job-1", "statusLocation": "/v1/jobs/job-1"},
                },
            )

        client = OffloadClient("http://test", transport=httpx.MockTransport(handler))
        submitted = client.submit_job(limit=100)

        assert submitted["jobId"] == "job-1"
        assert b'"limit":100' in bodies[0].replace(b" ", b"")
