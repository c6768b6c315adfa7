"""
Tests for main.py orchestration functions
"""

import hashlib
import hmac
import json
import sys
from unittest.mock import Mock, patch

import pytest

from envcontroller.constants import (
    GITHUB_REPO,
    GITHUB_RUN_ID,
    GITHUB_TOKEN,
    GITHUB_WEBHOOK_SECRET,
    LOG_FILE,
)
from envcontroller.exceptions import EnvControllerError, ManifestError, WebhookError
from envcontroller.main import (
    build_github_client,
    build_parser,
    event_command,
    main,
    names_command,
    promotions_command,
    run_command,
)
from envcontroller.models import EventKind
from envcontroller.promotion import PromotionTracker


@pytest.fixture
def mock_controller():
    """Mock EnvironmentController with successful operations."""
    mock = Mock()
    mock.handle_event.return_value = True
    mock.sweep.return_value = {"destroyed": 1, "delayed": 0, "failed": 0}
    mock.status.return_value = []
    return mock


@pytest.fixture
def test_config_file(tmp_path):
    """Create a temporary test config file."""
    config = tmp_path / "test-config.yaml"
    config.write_text(
        f"""
promotions_file: {tmp_path / "promotions.jsonl"}
services:
  - name: orders
    team: payments
  - name: billing
    team: finance
"""
    )
    return str(config)


@pytest.fixture
def payload_file(tmp_path, load_webhook):
    """Write the merged pull request payload to disk and return (path, body)."""
    body = json.dumps(load_webhook("pull_request_merged")).encode()
    path = tmp_path / "payload.json"
    path.write_bytes(body)
    return str(path), body


def parse(*argv):
    return build_parser().parse_args(list(argv))


# ============================================================================
# COMMAND DISPATCH TESTS
# ============================================================================


def test_run_command_create(mock_controller):
    assert run_command(mock_controller, parse("create", "feature/456")) is True

    event = mock_controller.handle_event.call_args.args[0]
    assert event.kind == EventKind.CREATED
    assert event.branch == "feature/456"


def test_run_command_create_single_service(mock_controller):
    assert run_command(mock_controller, parse("create", "feature/456", "--service", "orders"))

    mock_controller.create_environment.assert_called_once_with("orders", "456", "feature/456")
    mock_controller.handle_event.assert_not_called()


def test_run_command_delete(mock_controller):
    run_command(mock_controller, parse("delete", "feature/456"))

    event = mock_controller.handle_event.call_args.args[0]
    assert event.kind == EventKind.CLOSED


def test_run_command_promote(mock_controller):
    args = parse("promote", "feature/login-revamp", "release/uat", "--approved-by", "alice")

    assert run_command(mock_controller, args) is True

    event = mock_controller.handle_event.call_args.args[0]
    assert event.kind == EventKind.MERGED
    assert event.target_branch == "release/uat"
    assert event.sender == "alice"


def test_run_command_sweep_recovers_state_first(mock_controller):
    assert run_command(mock_controller, parse("sweep")) is True

    mock_controller.recover_state.assert_called_once()
    mock_controller.sweep.assert_called_once()


def test_run_command_sweep_with_failures(mock_controller):
    mock_controller.sweep.return_value = {"destroyed": 0, "delayed": 0, "failed": 2}

    assert run_command(mock_controller, parse("sweep")) is False


def test_run_command_status_prints_json(mock_controller, capsys):
    mock_controller.status.return_value = [{"namespace": "orders-feature456", "status": "Active"}]

    assert run_command(mock_controller, parse("status")) is True

    assert json.loads(capsys.readouterr().out)[0]["namespace"] == "orders-feature456"


def test_run_command_error_returns_false(mock_controller):
    mock_controller.create_environment.side_effect = ManifestError("bad manifest")

    assert run_command(mock_controller, parse("create", "feature/456", "--service", "orders")) is False


def test_run_command_invalid_branch(mock_controller):
    """A non-feature branch cannot be created for a single service."""
    assert run_command(mock_controller, parse("create", "main", "--service", "orders")) is False


# ============================================================================
# WEBHOOK EVENT TESTS
# ============================================================================


def test_event_command_without_secret(mock_controller, payload_file, monkeypatch):
    monkeypatch.delenv(GITHUB_WEBHOOK_SECRET, raising=False)
    path, _ = payload_file

    args = parse("event", "pull_request", path, "--delivery-id", "delivery-1")
    assert event_command(mock_controller, args) is True

    event = mock_controller.handle_event.call_args.args[0]
    assert event.kind == EventKind.MERGED
    assert event.delivery_id == "delivery-1"


def test_event_command_valid_signature(mock_controller, payload_file, monkeypatch):
    monkeypatch.setenv(GITHUB_WEBHOOK_SECRET, "s3cret")
    path, body = payload_file
    signature = "sha256=" + hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()

    assert event_command(mock_controller, parse("event", "pull_request", path, "--signature", signature))
    mock_controller.handle_event.assert_called_once()


def test_event_command_rejects_unsigned_delivery(mock_controller, payload_file, monkeypatch):
    monkeypatch.setenv(GITHUB_WEBHOOK_SECRET, "s3cret")
    path, _ = payload_file

    with pytest.raises(WebhookError, match="Missing or malformed"):
        event_command(mock_controller, parse("event", "pull_request", path))

    mock_controller.handle_event.assert_not_called()


def test_event_command_ignored_event(mock_controller, tmp_path, monkeypatch):
    monkeypatch.delenv(GITHUB_WEBHOOK_SECRET, raising=False)
    path = tmp_path / "issue.json"
    path.write_text('{"action": "opened"}')

    assert event_command(mock_controller, parse("event", "issues", str(path))) is True
    mock_controller.handle_event.assert_not_called()


def test_event_command_invalid_json(mock_controller, tmp_path, monkeypatch):
    monkeypatch.delenv(GITHUB_WEBHOOK_SECRET, raising=False)
    path = tmp_path / "broken.json"
    path.write_text("{not json")

    with pytest.raises(WebhookError, match="not valid JSON"):
        event_command(mock_controller, parse("event", "pull_request", str(path)))


def test_event_command_missing_file(mock_controller, tmp_path):
    with pytest.raises(WebhookError, match="Could not read payload"):
        event_command(mock_controller, parse("event", "push", str(tmp_path / "missing.json")))


# ============================================================================
# QUERY COMMAND TESTS
# ============================================================================


@pytest.mark.parametrize("feature", ["456", "feature/456", "refs/heads/feature/456"])
def test_names_command(feature):
    names = names_command("orders", feature, "payments")

    assert names["namespace"] == "orders-feature456"
    assert names["db_name"] == "orders-feature456-db"
    assert names["queue_name"] == "orders-feature456-queue"
    assert names["bucket_name"] == "orders-feature456-bucket"
    assert names["tags"] == {
        "featureId": "456",
        "service": "orders",
        "team": "payments",
        "env": "ephemeral",
    }


def test_names_command_invalid_service():
    with pytest.raises(EnvControllerError):
        names_command("Orders_Service", "456", "payments")


def test_promotions_command(tmp_path):
    config = {
        "environments": {"feature/*": "ephemeral", "develop": "dev", "release/uat": "uat"},
        "promotions_file": str(tmp_path / "promotions.jsonl"),
    }
    tracker = PromotionTracker(config["environments"], config["promotions_file"])
    tracker.record_merge("feature/login-revamp", "release/uat")
    tracker.record_merge("feature/456", "develop")

    assert len(promotions_command(config, None, None)) == 2
    assert [r["to_env"] for r in promotions_command(config, "feature/456", None)] == ["dev"]
    assert [r["branch"] for r in promotions_command(config, None, "uat")] == ["feature/login-revamp"]


# ============================================================================
# GITHUB CLIENT TESTS
# ============================================================================


@patch("envcontroller.main.GithubClient")
def test_build_github_client_skipped(mock_gh_cls, monkeypatch):
    monkeypatch.setenv(GITHUB_TOKEN, "test-token")
    monkeypatch.setenv(GITHUB_REPO, "owner/repo")

    assert build_github_client(skip_github=True) is None
    mock_gh_cls.assert_not_called()


@patch("envcontroller.main.GithubClient")
def test_build_github_client_without_token(mock_gh_cls, monkeypatch):
    monkeypatch.delenv(GITHUB_TOKEN, raising=False)
    monkeypatch.setenv(GITHUB_REPO, "owner/repo")

    assert build_github_client(skip_github=False) is None
    mock_gh_cls.assert_not_called()


@patch("envcontroller.main.GithubClient")
def test_build_github_client_with_credentials(mock_gh_cls, monkeypatch):
    monkeypatch.setenv(GITHUB_TOKEN, "test-token")
    monkeypatch.setenv(GITHUB_REPO, "test-owner/test-repo")

    assert build_github_client(skip_github=False) is mock_gh_cls.return_value
    mock_gh_cls.assert_called_once_with(token="test-token", repo_name="test-owner/test-repo")


@patch("envcontroller.main.GithubClient")
def test_build_github_client_exception_handled_gracefully(mock_gh_cls, monkeypatch):
    monkeypatch.setenv(GITHUB_TOKEN, "test-token")
    monkeypatch.setenv(GITHUB_REPO, "owner/repo")
    mock_gh_cls.side_effect = Exception("GitHub API error")

    assert build_github_client(skip_github=False) is None


# ============================================================================
# MAIN TESTS
# ============================================================================


@patch("envcontroller.main.load_dotenv")
@patch("envcontroller.main.EnvironmentController")
@patch("envcontroller.main.KubernetesClient")
@patch("envcontroller.main.setup_logging")
@patch("envcontroller.main.set_operation_id")
def test_main_create_action_success(
    mock_set_op_id,
    mock_setup_logging,
    mock_k8s_cls,
    mock_controller_cls,
    mock_load_dotenv,
    mock_controller,
    test_config_file,
    monkeypatch,
):
    """Test main() with create action executes successfully."""
    monkeypatch.setattr(
        sys, "argv", ["envcontroller", "--config", test_config_file, "--skip-github", "create", "feature/456"]
    )
    mock_controller_cls.from_config.return_value = mock_controller

    main()

    config, reconciler = mock_controller_cls.from_config.call_args.args
    assert [service["name"] for service in config["services"]] == ["orders", "billing"]
    assert reconciler.k8s is mock_k8s_cls.return_value
    assert mock_controller_cls.from_config.call_args.kwargs["github"] is None
    mock_controller.handle_event.assert_called_once()


@patch("envcontroller.main.load_dotenv")
@patch("envcontroller.main.EnvironmentController")
@patch("envcontroller.main.KubernetesClient")
@patch("envcontroller.main.setup_logging")
@patch("envcontroller.main.set_operation_id")
def test_main_exits_on_operation_failure(
    mock_set_op_id,
    mock_setup_logging,
    mock_k8s_cls,
    mock_controller_cls,
    mock_load_dotenv,
    mock_controller,
    test_config_file,
    monkeypatch,
):
    """Test main() exits with code 1 when operation fails."""
    monkeypatch.setattr(
        sys, "argv", ["envcontroller", "--config", test_config_file, "delete", "feature/555"]
    )
    mock_controller.handle_event.return_value = False
    mock_controller_cls.from_config.return_value = mock_controller

    with pytest.raises(SystemExit) as exc_info:
        main()

    assert exc_info.value.code == 1


@patch("envcontroller.main.load_dotenv")
@patch("envcontroller.main.EnvironmentController")
@patch("envcontroller.main.KubernetesClient")
@patch("envcontroller.main.setup_logging")
@patch("envcontroller.main.set_operation_id")
def test_main_exits_on_kubernetes_client_failure(
    mock_set_op_id,
    mock_setup_logging,
    mock_k8s_cls,
    mock_controller_cls,
    mock_load_dotenv,
    test_config_file,
    monkeypatch,
):
    """Test main() exits with code 1 when Kubernetes client initialization fails."""
    monkeypatch.setattr(
        sys, "argv", ["envcontroller", "--config", test_config_file, "create", "feature/666"]
    )
    mock_k8s_cls.side_effect = Exception("K8s initialization failed")

    with pytest.raises(SystemExit) as exc_info:
        main()

    assert exc_info.value.code == 1
    mock_controller_cls.from_config.assert_not_called()


@patch("envcontroller.main.load_dotenv")
@patch("envcontroller.main.KubernetesClient")
@patch("envcontroller.main.setup_logging")
@patch("envcontroller.main.set_operation_id")
def test_main_exits_on_missing_config(
    mock_set_op_id, mock_setup_logging, mock_k8s_cls, mock_load_dotenv, tmp_path, monkeypatch
):
    """Test main() exits with code 1 when the config file is missing."""
    monkeypatch.setattr(
        sys,
        "argv",
        ["envcontroller", "--config", str(tmp_path / "missing.yaml"), "create", "feature/1"],
    )

    with pytest.raises(SystemExit) as exc_info:
        main()

    assert exc_info.value.code == 1
    mock_k8s_cls.assert_not_called()


@patch("envcontroller.main.load_dotenv")
@patch("envcontroller.main.KubernetesClient")
@patch("envcontroller.main.setup_logging")
@patch("envcontroller.main.set_operation_id")
def test_main_names_needs_no_cluster_or_config(
    mock_set_op_id, mock_setup_logging, mock_k8s_cls, mock_load_dotenv, monkeypatch, capsys
):
    monkeypatch.setattr(
        sys, "argv", ["envcontroller", "--config", "/nonexistent.yaml", "names", "orders", "456"]
    )

    main()

    output = json.loads(capsys.readouterr().out)
    assert output["db_name"] == "orders-feature456-db"
    mock_k8s_cls.assert_not_called()


@patch("envcontroller.main.load_dotenv")
@patch("envcontroller.main.KubernetesClient")
@patch("envcontroller.main.setup_logging")
@patch("envcontroller.main.set_operation_id")
def test_main_promotions_needs_no_cluster(
    mock_set_op_id,
    mock_setup_logging,
    mock_k8s_cls,
    mock_load_dotenv,
    test_config_file,
    monkeypatch,
    capsys,
):
    monkeypatch.setattr(sys, "argv", ["envcontroller", "--config", test_config_file, "promotions"])

    main()

    assert json.loads(capsys.readouterr().out) == []
    mock_k8s_cls.assert_not_called()


@patch("envcontroller.main.load_dotenv")
@patch("envcontroller.main.EnvironmentController")
@patch("envcontroller.main.KubernetesClient")
@patch("envcontroller.main.setup_logging")
@patch("envcontroller.main.set_operation_id")
def test_main_github_run_id_sets_operation_id(
    mock_set_op_id,
    mock_setup_logging,
    mock_k8s_cls,
    mock_controller_cls,
    mock_load_dotenv,
    mock_controller,
    test_config_file,
    monkeypatch,
):
    """Test GITHUB_RUN_ID environment variable is used for operation ID."""
    monkeypatch.setattr(
        sys, "argv", ["envcontroller", "--config", test_config_file, "sweep"]
    )
    monkeypatch.setenv(GITHUB_RUN_ID, "12345678")
    mock_controller_cls.from_config.return_value = mock_controller

    main()

    mock_set_op_id.assert_called_once_with("12345678")


@patch("envcontroller.main.load_dotenv")
@patch("envcontroller.main.EnvironmentController")
@patch("envcontroller.main.KubernetesClient")
@patch("envcontroller.main.setup_logging")
@patch("envcontroller.main.set_operation_id")
def test_main_delivery_id_sets_operation_id(
    mock_set_op_id,
    mock_setup_logging,
    mock_k8s_cls,
    mock_controller_cls,
    mock_load_dotenv,
    mock_controller,
    test_config_file,
    payload_file,
    monkeypatch,
):
    """Webhook delivery ids take precedence over the run id."""
    path, _ = payload_file
    monkeypatch.setattr(
        sys,
        "argv",
        [
            "envcontroller",
            "--config",
            test_config_file,
            "event",
            "pull_request",
            path,
            "--delivery-id",
            "delivery-9",
        ],
    )
    monkeypatch.setenv(GITHUB_RUN_ID, "12345678")
    monkeypatch.delenv(GITHUB_WEBHOOK_SECRET, raising=False)
    mock_controller_cls.from_config.return_value = mock_controller

    main()

    mock_set_op_id.assert_called_once_with("delivery-9")


@patch("envcontroller.main.load_dotenv")
@patch("envcontroller.main.EnvironmentController")
@patch("envcontroller.main.KubernetesClient")
@patch("envcontroller.main.setup_logging")
@patch("envcontroller.main.set_operation_id")
def test_main_log_settings(
    mock_set_op_id,
    mock_setup_logging,
    mock_k8s_cls,
    mock_controller_cls,
    mock_load_dotenv,
    mock_controller,
    test_config_file,
    monkeypatch,
):
    """Test --log-level and --log-format arguments configure logging correctly."""
    monkeypatch.setattr(
        sys,
        "argv",
        [
            "envcontroller",
            "--config",
            test_config_file,
            "--log-level",
            "DEBUG",
            "--log-format",
            "json",
            "status",
        ],
    )
    monkeypatch.setenv(LOG_FILE, "/custom/log/path.log")
    mock_controller_cls.from_config.return_value = mock_controller

    main()

    call_args = mock_setup_logging.call_args
    assert call_args[1]["level"] == "DEBUG"
    assert call_args[1]["log_format"] == "json"
    assert call_args[1]["log_file"] == "/custom/log/path.log"


@patch("envcontroller.main.load_dotenv")
@patch("envcontroller.main.EnvironmentController")
@patch("envcontroller.main.KubernetesClient")
@patch("envcontroller.main.setup_logging")
@patch("envcontroller.main.set_operation_id")
def test_main_log_file_empty_string_disables_file_logging(
    mock_set_op_id,
    mock_setup_logging,
    mock_k8s_cls,
    mock_controller_cls,
    mock_load_dotenv,
    mock_controller,
    test_config_file,
    monkeypatch,
):
    """Test LOG_FILE empty string disables file logging."""
    monkeypatch.setattr(sys, "argv", ["envcontroller", "--config", test_config_file, "status"])
    monkeypatch.setenv(LOG_FILE, "")
    mock_controller_cls.from_config.return_value = mock_controller

    main()

    assert mock_setup_logging.call_args[1]["log_file"] is None
