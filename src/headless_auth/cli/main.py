"""Command-line interface for headless-auth."""

import asyncio
import sys
import webbrowser
from pathlib import Path
from typing import NoReturn

import click

from headless_auth.__version__ import __version__
from headless_auth.auth import OAuthManager
from headless_auth.auth.errors import AuthError, ReauthorizationRequired
from headless_auth.auth.models import DevicePrompt, FlowKind, LoopbackPrompt, TokenStatus
from headless_auth.auth.providers import load_providers
from headless_auth.auth.token_storage import CredentialStoreError
from headless_auth.config import Settings
from headless_auth.logging_config import setup_logging

DEFAULT_ACCOUNT = "default"


def _fail(message: str, hint: str | None = None) -> NoReturn:
    click.echo(f"❌ {message}", err=True)
    if hint:
        click.echo("", err=True)
        click.echo(hint, err=True)
    sys.exit(1)


def _settings(ctx: click.Context) -> Settings:
    try:
        settings = Settings.from_env()
    except ValueError as e:
        _fail(str(e))
    providers_file = ctx.obj.get("providers_file")
    if providers_file is not None:
        settings = settings.model_copy(update={"providers_file": providers_file})
    return settings


def _make_manager(ctx: click.Context) -> OAuthManager:
    settings = _settings(ctx)
    try:
        return OAuthManager(settings=settings)
    except ValueError as e:
        _fail(str(e))


def _show_prompt(prompt: DevicePrompt | LoopbackPrompt, open_browser: bool) -> None:
    if isinstance(prompt, DevicePrompt):
        click.echo("To authorize, visit:")
        click.echo(f"  {prompt.verification_uri}")
        click.echo("and enter the code:")
        click.echo(f"  {prompt.user_code}")
        if prompt.verification_uri_complete:
            click.echo(f"Or open: {prompt.verification_uri_complete}")
        click.echo(f"The code expires in {prompt.expires_in_seconds // 60} minute(s).")
    else:
        if open_browser:
            click.echo("Opening browser for authorization...")
            webbrowser.open(prompt.authorization_url)
        click.echo(f"If browser doesn't open, visit: {prompt.authorization_url}")
    click.echo("")
    click.echo("Waiting for authorization...")


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--providers-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Provider definitions (YAML). Overrides HEADLESS_AUTH_PROVIDERS_FILE.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, providers_file: Path | None, verbose: bool) -> None:
    """headless-auth - OAuth tokens for headless MCP servers.

    Authorize accounts with the device flow or a loopback browser redirect,
    then hand out access tokens that are refreshed automatically.
    """
    ctx.ensure_object(dict)
    ctx.obj["providers_file"] = providers_file
    setup_logging("DEBUG" if verbose else "WARNING")


@main.command()
@click.argument("provider")
@click.option("--account", default=DEFAULT_ACCOUNT, show_default=True, help="Account key")
@click.option(
    "--flow",
    type=click.Choice(["auto", "device", "loopback"]),
    default="auto",
    show_default=True,
    help="Authorization flow",
)
@click.option("--no-browser", is_flag=True, help="Do not open a browser (prefer the device flow)")
@click.pass_context
def login(ctx: click.Context, provider: str, account: str, flow: str, no_browser: bool) -> None:
    """Authorize an account and store its credential.

    With --flow=auto the loopback flow is used when a browser can be opened,
    otherwise the device flow.
    """
    manager = _make_manager(ctx)

    try:
        already_authenticated = manager.has_valid_credential(provider, account)
    except CredentialStoreError as e:
        _fail(str(e))

    if already_authenticated:
        click.echo("✓ Already authenticated!")
        if manager.token_path is not None:
            click.echo(f"Credential stored at: {manager.token_path}")
        click.echo("")
        if not click.confirm("Re-authenticate?"):
            asyncio.run(manager.close())
            return

    flow_kind = None if flow == "auto" else FlowKind(flow)
    open_browser = not no_browser

    async def run() -> None:
        async with manager:
            handle = await manager.start_authorization(
                provider, account, flow_kind=flow_kind, can_open_browser=open_browser
            )
            _show_prompt(handle.prompt, open_browser)
            await handle.result()

    try:
        asyncio.run(run())
    except AuthError as e:
        _fail(f"Authentication failed: {e.error.summary()}")
    except KeyError as e:
        _fail(str(e.args[0]))
    except ValueError as e:
        _fail(str(e))
    except KeyboardInterrupt:
        _fail("Authorization cancelled.")

    click.echo("✓ Authentication successful!")
    if manager.token_path is not None:
        click.echo(f"Credential stored at: {manager.token_path}")


_STATUS_LINES = {
    TokenStatus.VALID: "✓ {key}: authenticated",
    TokenStatus.EXPIRED: "⚠️  {key}: access token expired (refreshed automatically on use)",
    TokenStatus.TERMINAL: "❌ {key}: expired and cannot be refreshed",
    TokenStatus.MISSING: "❌ {key}: not authenticated",
    TokenStatus.INVALID: "❌ {key}: stored credential is corrupted",
}


@main.command()
@click.argument("provider", required=False)
@click.option("--account", default=None, help="Account key")
@click.pass_context
def status(ctx: click.Context, provider: str | None, account: str | None) -> None:
    """Show credential status for stored accounts."""
    manager = _make_manager(ctx)

    async def run() -> bool:
        async with manager:
            keys = [
                (provider_id, account_key)
                for provider_id, account_key in manager.list_accounts()
                if (provider is None or provider_id == provider)
                and (account is None or account_key == account)
            ]
            if not keys and provider is not None:
                keys = [(provider, account or DEFAULT_ACCOUNT)]
            if not keys:
                click.echo("No stored credentials.")
                click.echo("")
                click.echo("Run 'headless-auth login PROVIDER' to authenticate.")
                return True

            healthy = True
            click.echo("Credentials:")
            for provider_id, account_key in keys:
                token_status, credential = manager.get_status(provider_id, account_key)
                click.echo("  " + _STATUS_LINES[token_status].format(key=f"{provider_id}/{account_key}"))
                if credential is not None and token_status == TokenStatus.VALID:
                    click.echo(
                        f"      expires: {credential.expires_at.strftime('%Y-%m-%d %H:%M:%S UTC')}"
                    )
                    click.echo(f"      scopes: {' '.join(sorted(credential.scopes)) or '(none)'}")
                if token_status not in (TokenStatus.VALID, TokenStatus.EXPIRED):
                    healthy = False
            return healthy

    try:
        healthy = asyncio.run(run())
    except CredentialStoreError as e:
        _fail(str(e))
    if not healthy:
        sys.exit(1)


@main.command()
@click.argument("provider")
@click.option("--account", default=DEFAULT_ACCOUNT, show_default=True, help="Account key")
@click.pass_context
def token(ctx: click.Context, provider: str, account: str) -> None:
    """Print a valid access token, refreshing it if needed."""
    manager = _make_manager(ctx)

    async def run() -> str:
        async with manager:
            return await manager.acquire_token(provider, account)

    try:
        access_token = asyncio.run(run())
    except ReauthorizationRequired as e:
        _fail(e.error.summary(), hint=f"Run 'headless-auth login {provider} --account {account}'.")
    except AuthError as e:
        _fail(e.error.summary())
    except KeyError as e:
        _fail(str(e.args[0]))
    except CredentialStoreError as e:
        _fail(str(e))
    click.echo(access_token)


@main.command()
@click.argument("provider")
@click.option("--account", default=DEFAULT_ACCOUNT, show_default=True, help="Account key")
@click.pass_context
def revoke(ctx: click.Context, provider: str, account: str) -> None:
    """Revoke an account's tokens and delete the stored credential."""
    manager = _make_manager(ctx)

    async def run() -> bool:
        async with manager:
            return await manager.revoke(provider, account)

    try:
        removed = asyncio.run(run())
    except CredentialStoreError as e:
        _fail(str(e))
    if removed:
        click.echo(f"✓ Revoked {provider}/{account}")
    else:
        click.echo(f"No stored credential for {provider}/{account}")


@main.command()
@click.pass_context
def providers(ctx: click.Context) -> None:
    """List configured providers and the flows they support."""
    settings = _settings(ctx)
    try:
        registry = load_providers(settings)
    except ValueError as e:
        _fail(str(e))

    if not len(registry):
        click.echo("No providers configured.")
        click.echo("")
        click.echo(f"Define providers in {settings.providers_file}")
        return

    click.echo("Providers:")
    for provider in registry:
        flows = [
            name
            for name, supported in (
                ("device", provider.supports_device_flow),
                ("loopback", provider.supports_loopback_flow),
            )
            if supported
        ]
        click.echo(f"  {provider.provider_id}")
        click.echo(f"      flows: {', '.join(flows) or '(none)'}")
        click.echo(f"      scopes: {provider.scope_string() or '(none)'}")
        click.echo(f"      revocation: {'yes' if provider.revocation_endpoint else 'no'}")


if __name__ == "__main__":
    main()
