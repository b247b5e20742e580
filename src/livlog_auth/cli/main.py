"""livlog-auth CLI: key material, server, and account administration.

Usage:
    livlog-auth keygen --out-dir ./keys           # RSA key pair for access tokens
    livlog-auth serve                              # Run the API with uvicorn
    livlog-auth set-policy alice@example.com pro   # Change a user's AI search tier
    livlog-auth revoke-sessions alice@example.com  # Sign a user out everywhere
"""

from __future__ import annotations

import asyncio
import concurrent.futures
from contextlib import asynccontextmanager
from pathlib import Path

import click

from livlog_auth import __version__
from livlog_auth.config import settings
from livlog_auth.db.models import POLICY_TIERS

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an existing async context like tests) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        # No running loop, normal CLI invocation
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _fail(message: str):
    raise click.ClickException(message)


database_url_option = click.option(
    "--database-url",
    envvar="LIVLOG_DATABASE_URL",
    default=settings.database_url,
    show_default=False,
    help="Database URL (default: LIVLOG_DATABASE_URL)",
)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="livlog-auth")
def main():
    """Livlog auth: identity, sessions and AI search quota."""


# ---------------------------------------------------------------------------
# livlog-auth keygen
# ---------------------------------------------------------------------------


@main.command()
@click.option("--out-dir", "-o", default="./keys", type=click.Path(file_okay=False),
              help="Directory for private_key.pem and public_key.pem")
@click.option("--bits", default=2048, type=click.IntRange(min=2048), help="RSA key size")
@click.option("--force", is_flag=True, help="Overwrite existing key files")
def keygen(out_dir: str, bits: int, force: bool):
    """Generate the RSA key pair used to sign access tokens."""
    from livlog_auth.auth.tokens import (
        generate_private_key,
        private_key_to_pem,
        public_key_to_pem,
    )

    directory = Path(out_dir)
    private_path = directory / "private_key.pem"
    public_path = directory / "public_key.pem"
    if not force and (private_path.exists() or public_path.exists()):
        _fail(f"key files already exist in {directory} (use --force to overwrite)")

    directory.mkdir(parents=True, exist_ok=True)
    key = generate_private_key(bits)
    private_path.write_bytes(private_key_to_pem(key))
    private_path.chmod(0o600)
    public_path.write_bytes(public_key_to_pem(key.public_key()))

    click.secho("Key pair written:", fg="green")
    click.echo(f"  private  {private_path}")
    click.echo(f"  public   {public_path}")


# ---------------------------------------------------------------------------
# livlog-auth serve
# ---------------------------------------------------------------------------


@main.command()
@click.option("--host", default=settings.host, help="Bind address")
@click.option("--port", default=settings.port, type=int, help="Bind port")
@click.option("--reload", is_flag=True, help="Reload on code changes (development)")
def serve(host: str, port: int, reload: bool):
    """Run the API server."""
    import uvicorn

    uvicorn.run("livlog_auth.main:app", host=host, port=port, reload=reload)


# ---------------------------------------------------------------------------
# livlog-auth set-policy
# ---------------------------------------------------------------------------


@main.command("set-policy")
@click.argument("email")
@click.argument("tier", type=click.Choice(POLICY_TIERS))
@database_url_option
def set_policy(email: str, tier: str, database_url: str):
    """Set the AI search tier of the user with EMAIL."""
    _run(_set_policy_impl(email, tier, database_url))


async def _set_policy_impl(email: str, tier: str, database_url: str):
    from livlog_auth.services.users import find_active_user_by_email, set_usage_policy

    async with _session(database_url) as db:
        user = await find_active_user_by_email(db, email)
        if user is None:
            _fail(f"no active user with email {email}")
        previous = user.ai_usage_policy
        await set_usage_policy(db, user.id, tier)
        await db.commit()

    click.echo(f"{email}: {previous} → ", nl=False)
    click.secho(tier, fg="green")


# ---------------------------------------------------------------------------
# livlog-auth revoke-sessions
# ---------------------------------------------------------------------------


@main.command("revoke-sessions")
@click.argument("email")
@database_url_option
def revoke_sessions(email: str, database_url: str):
    """Revoke every refresh session of the user with EMAIL."""
    _run(_revoke_sessions_impl(email, database_url))


async def _revoke_sessions_impl(email: str, database_url: str):
    from livlog_auth.services.session_store import SessionStore
    from livlog_auth.services.users import find_active_user_by_email

    async with _session(database_url) as db:
        user = await find_active_user_by_email(db, email)
        if user is None:
            _fail(f"no active user with email {email}")
        store = SessionStore(db)
        count = await store.revoke_all(user.id)
        await db.commit()

    click.echo(f"Revoked {count} session(s) for {email}")


@asynccontextmanager
async def _session(database_url: str):
    """One AsyncSession on a throwaway engine."""
    from sqlalchemy.ext.asyncio import AsyncSession

    from livlog_auth.db.engine import build_engine

    engine = build_engine(database_url)
    try:
        async with AsyncSession(engine, expire_on_commit=False) as db:
            yield db
    finally:
        await engine.dispose()
