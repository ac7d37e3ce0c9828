"""CLI tests for the login, status, token, revoke and providers commands."""

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from headless_auth.__version__ import __version__
from headless_auth.auth.errors import ErrorKind, auth_error
from headless_auth.auth.models import CredentialSet, DevicePrompt, FlowKind, LoopbackPrompt, TokenStatus
from headless_auth.cli.main import main


def _mock_manager() -> MagicMock:
    manager = MagicMock()
    manager.token_path = Path("/tmp/.headless-auth/credentials.json")
    manager.has_valid_credential.return_value = False
    manager.close = AsyncMock()
    # Let exceptions raised inside "async with manager" propagate
    manager.__aexit__ = AsyncMock(return_value=False)
    return manager


def _handle(prompt) -> MagicMock:
    handle = MagicMock()
    handle.prompt = prompt
    handle.result = AsyncMock()
    return handle


@pytest.fixture
def mock_manager():
    """Patch OAuthManager as seen by the CLI."""
    with patch("headless_auth.cli.main.OAuthManager") as manager_class:
        manager = _mock_manager()
        manager_class.return_value = manager
        yield manager


@pytest.mark.unit
class TestMainGroup:
    """Tests for the top-level command group."""

    def test_should_show_version(self, cli_runner: CliRunner) -> None:
        """Verify --version prints the package version."""
        result = cli_runner.invoke(main, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_should_list_commands_in_help(self, cli_runner: CliRunner) -> None:
        """Verify every command appears in --help."""
        result = cli_runner.invoke(main, ["--help"])

        for command in ("login", "status", "token", "revoke", "providers"):
            assert command in result.output


@pytest.mark.unit
class TestLoginCommand:
    """Tests for the login CLI command."""

    def test_should_show_device_prompt(self, cli_runner: CliRunner, mock_manager: MagicMock) -> None:
        """Verify the user code and verification URI are printed."""
        handle = _handle(
            DevicePrompt(
                user_code="WDJB-MJHT",
                verification_uri="https://example.com/device",
                expires_in_seconds=1800,
            )
        )
        mock_manager.start_authorization = AsyncMock(return_value=handle)

        result = cli_runner.invoke(main, ["login", "github", "--flow", "device"])

        assert result.exit_code == 0, result.output
        assert "WDJB-MJHT" in result.output
        assert "https://example.com/device" in result.output
        assert "30 minute(s)" in result.output
        assert "Authentication successful" in result.output
        mock_manager.start_authorization.assert_awaited_once_with(
            "github", "default", flow_kind=FlowKind.DEVICE, can_open_browser=True
        )
        handle.result.assert_awaited_once()

    def test_should_open_browser_for_loopback(
        self, cli_runner: CliRunner, mock_manager: MagicMock
    ) -> None:
        """Verify the loopback URL is opened in a browser."""
        url = "https://example.com/authorize?state=abc"
        mock_manager.start_authorization = AsyncMock(
            return_value=_handle(LoopbackPrompt(authorization_url=url))
        )

        with patch("headless_auth.cli.main.webbrowser.open") as open_browser:
            result = cli_runner.invoke(main, ["login", "github"])

        assert result.exit_code == 0, result.output
        open_browser.assert_called_once_with(url)
        assert f"If browser doesn't open, visit: {url}" in result.output
        mock_manager.start_authorization.assert_awaited_once_with(
            "github", "default", flow_kind=None, can_open_browser=True
        )

    def test_should_not_open_browser_with_no_browser(
        self, cli_runner: CliRunner, mock_manager: MagicMock
    ) -> None:
        """Verify --no-browser prints the URL without opening it."""
        mock_manager.start_authorization = AsyncMock(
            return_value=_handle(LoopbackPrompt(authorization_url="https://example.com/a"))
        )

        with patch("headless_auth.cli.main.webbrowser.open") as open_browser:
            result = cli_runner.invoke(
                main, ["login", "github", "--account", "work", "--flow", "loopback", "--no-browser"]
            )

        assert result.exit_code == 0, result.output
        open_browser.assert_not_called()
        mock_manager.start_authorization.assert_awaited_once_with(
            "github", "work", flow_kind=FlowKind.LOOPBACK, can_open_browser=False
        )

    def test_should_report_failed_authorization(
        self, cli_runner: CliRunner, mock_manager: MagicMock
    ) -> None:
        """Verify a denied flow exits with an error."""
        handle = _handle(
            DevicePrompt(user_code="X", verification_uri="https://e.com/d", expires_in_seconds=60)
        )
        handle.result = AsyncMock(side_effect=auth_error(ErrorKind.AUTHORIZATION_DENIED))
        mock_manager.start_authorization = AsyncMock(return_value=handle)

        result = cli_runner.invoke(main, ["login", "github", "--flow", "device"])

        assert result.exit_code == 1
        assert "Authentication failed" in result.output
        assert "authorization_denied" in result.output

    def test_should_report_unknown_provider(
        self, cli_runner: CliRunner, mock_manager: MagicMock
    ) -> None:
        """Verify an unknown provider exits with its message."""
        mock_manager.start_authorization = AsyncMock(
            side_effect=KeyError("Unknown provider 'gitlab'; configured providers: github")
        )

        result = cli_runner.invoke(main, ["login", "gitlab"])

        assert result.exit_code == 1
        assert "Unknown provider 'gitlab'" in result.output

    def test_should_skip_when_already_authenticated(
        self, cli_runner: CliRunner, mock_manager: MagicMock
    ) -> None:
        """Verify declining re-authentication leaves the credential alone."""
        mock_manager.has_valid_credential.return_value = True
        mock_manager.start_authorization = AsyncMock()

        result = cli_runner.invoke(main, ["login", "github"], input="n\n")

        assert result.exit_code == 0
        assert "Already authenticated" in result.output
        mock_manager.start_authorization.assert_not_called()
        mock_manager.close.assert_awaited_once()


@pytest.mark.unit
class TestTokenCommand:
    """Tests for the token CLI command."""

    def test_should_print_access_token(self, cli_runner: CliRunner, mock_manager: MagicMock) -> None:
        """Verify the access token is printed alone."""
        mock_manager.acquire_token = AsyncMock(return_value="gho_abc123")

        result = cli_runner.invoke(main, ["token", "github", "--account", "work"])

        assert result.exit_code == 0
        assert result.output.strip() == "gho_abc123"
        mock_manager.acquire_token.assert_awaited_once_with("github", "work")

    def test_should_suggest_login_when_reauthorization_required(
        self, cli_runner: CliRunner, mock_manager: MagicMock
    ) -> None:
        """Verify the login command is suggested."""
        mock_manager.acquire_token = AsyncMock(side_effect=auth_error(ErrorKind.INVALID_GRANT))

        result = cli_runner.invoke(main, ["token", "github"])

        assert result.exit_code == 1
        assert "headless-auth login github --account default" in result.output

    def test_should_report_transient_failure(
        self, cli_runner: CliRunner, mock_manager: MagicMock
    ) -> None:
        """Verify other failures exit without the login hint."""
        mock_manager.acquire_token = AsyncMock(side_effect=auth_error(ErrorKind.SERVER_ERROR))

        result = cli_runner.invoke(main, ["token", "github"])

        assert result.exit_code == 1
        assert "server_error" in result.output
        assert "login" not in result.output


@pytest.mark.unit
class TestStatusCommand:
    """Tests for the status CLI command."""

    def test_should_report_no_credentials(self, cli_runner: CliRunner, mock_manager: MagicMock) -> None:
        """Verify an empty store is reported."""
        mock_manager.list_accounts.return_value = []

        result = cli_runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "No stored credentials." in result.output

    def test_should_show_valid_credential(self, cli_runner: CliRunner, mock_manager: MagicMock) -> None:
        """Verify expiry and scopes are shown for valid credentials."""
        credential = CredentialSet(
            provider_id="github",
            account_key="default",
            access_token="a",
            expires_at=datetime(2030, 1, 1, tzinfo=timezone.utc),
            scopes=frozenset({"repo", "read:org"}),
        )
        mock_manager.list_accounts.return_value = [("github", "default")]
        mock_manager.get_status.return_value = (TokenStatus.VALID, credential)

        result = cli_runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "github/default: authenticated" in result.output
        assert "2030-01-01 00:00:00 UTC" in result.output
        assert "read:org repo" in result.output

    def test_should_fail_for_missing_provider_account(
        self, cli_runner: CliRunner, mock_manager: MagicMock
    ) -> None:
        """Verify asking about an unauthenticated account exits non-zero."""
        mock_manager.list_accounts.return_value = []
        mock_manager.get_status.return_value = (TokenStatus.MISSING, None)

        result = cli_runner.invoke(main, ["status", "github"])

        assert result.exit_code == 1
        assert "github/default: not authenticated" in result.output


@pytest.mark.unit
class TestRevokeCommand:
    """Tests for the revoke CLI command."""

    def test_should_confirm_revocation(self, cli_runner: CliRunner, mock_manager: MagicMock) -> None:
        """Verify a successful revocation is reported."""
        mock_manager.revoke = AsyncMock(return_value=True)

        result = cli_runner.invoke(main, ["revoke", "github"])

        assert result.exit_code == 0
        assert "Revoked github/default" in result.output
        mock_manager.revoke.assert_awaited_once_with("github", "default")

    def test_should_report_nothing_to_revoke(self, cli_runner: CliRunner, mock_manager: MagicMock) -> None:
        """Verify revoking an unknown account is not an error."""
        mock_manager.revoke = AsyncMock(return_value=False)

        result = cli_runner.invoke(main, ["revoke", "github", "--account", "work"])

        assert result.exit_code == 0
        assert "No stored credential for github/work" in result.output


@pytest.mark.unit
class TestProvidersCommand:
    """Tests for the providers CLI command."""

    def test_should_list_providers(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        """Verify providers and their flows are listed."""
        path = tmp_path / "providers.yaml"
        path.write_text(
            "providers:\n"
            "  github:\n"
            "    preset: github\n"
            "    client_id: Iv1.x\n"
            "    scopes: repo\n"
        )

        result = cli_runner.invoke(main, ["--providers-file", str(path), "providers"])

        assert result.exit_code == 0, result.output
        assert "github" in result.output
        assert "flows: device, loopback" in result.output
        assert "scopes: repo" in result.output

    def test_should_explain_empty_configuration(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        """Verify a missing file tells the user where to define providers."""
        path = tmp_path / "providers.yaml"

        result = cli_runner.invoke(main, ["--providers-file", str(path), "providers"])

        assert result.exit_code == 0
        assert "No providers configured." in result.output
        assert str(path) in result.output
