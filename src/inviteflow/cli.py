"""CLI for inviteflow: run a poll pass or apply schema migrations."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click

from inviteflow.config import InviteflowConfig
from inviteflow.connectors.google_oauth import GoogleOAuthClient, default_http_client
from inviteflow.core.logging import configure_logging
from inviteflow.core.metrics import PollMetrics
from inviteflow.core.telemetry import init_telemetry
from inviteflow.credentials import PostgresCredentialStore
from inviteflow.crypto import TokenCipher
from inviteflow.db import Database
from inviteflow.digests import PostgresDigestStore
from inviteflow.errors import StoreUnavailableError
from inviteflow.extraction import GeminiExtractor
from inviteflow.invites import InviteDeduplicator, PostgresInviteStore
from inviteflow.migrations import run_migrations
from inviteflow.notify import ReauthNotifier, WebhookDecisionSink
from inviteflow.poller import GmailPoller, PassSummary
from inviteflow.replies import ReplyReconciler
from inviteflow.sync import HistorySyncCursor
from inviteflow.tokens import TokenLifecycleManager
from inviteflow.users import PostgresUserDirectory

logger = logging.getLogger(__name__)


def _load_config() -> InviteflowConfig:
    try:
        return InviteflowConfig.from_env()
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """inviteflow: Gmail invite sync and digest reply reconciliation."""


@cli.command()
@click.option("--user-id", default=None, help="Poll only this user")
@click.option("--dry-run", is_flag=True, help="Extract and log, but write no invites or decisions")
@click.option(
    "--backfill-days",
    type=click.IntRange(min=0),
    default=None,
    help="Also scan messages newer than N days (capped at 30)",
)
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Also write JSON log lines to this file",
)
def poll(
    user_id: str | None,
    dry_run: bool,
    backfill_days: int | None,
    json_logs: bool,
    log_file: Path | None,
) -> None:
    """Run one poll pass and print its summary as JSON."""
    config = _load_config()
    configure_logging(
        level=config.log_level,
        fmt="json" if json_logs else config.log_format,
        log_file=log_file,
    )
    if config.gemini_api_key is None:
        raise click.ClickException("GEMINI_API_KEY is required to poll")

    try:
        summary = asyncio.run(
            _run_poll(config, user_id=user_id, dry_run=dry_run, backfill_days=backfill_days)
        )
    except StoreUnavailableError as exc:
        click.echo(f"Store unavailable: {exc}", err=True)
        sys.exit(2)

    click.echo(json.dumps(summary.model_dump(), indent=2, sort_keys=True))


@cli.command()
def migrate() -> None:
    """Upgrade the database schema to the latest revision."""
    configure_logging()
    db = Database.from_env()
    run_migrations(db.sqlalchemy_url())
    click.echo("Migrations complete")


async def _run_poll(
    config: InviteflowConfig,
    *,
    user_id: str | None,
    dry_run: bool,
    backfill_days: int | None,
) -> PassSummary:
    init_telemetry()
    db = Database.from_env()
    pool = await db.connect()
    metrics = PollMetrics()
    http_client = default_http_client(timeout_s=float(config.http_timeout_s))
    try:
        credentials = PostgresCredentialStore(pool, TokenCipher(config.token_encryption_key))
        invites = InviteDeduplicator(PostgresInviteStore(pool), metrics=metrics)
        extractor = GeminiExtractor(
            api_key=config.gemini_api_key or "",
            model=config.gemini_model,
            http_client=http_client,
        )
        sink = (
            WebhookDecisionSink(webhook_url=config.peer_webhook_url, http_client=http_client)
            if config.peer_webhook_url
            else None
        )
        tokens = TokenLifecycleManager(
            store=credentials,
            oauth=GoogleOAuthClient(
                client_id=config.google_client_id,
                client_secret=config.google_client_secret,
                http_client=http_client,
                metrics=metrics,
            ),
            notifier=ReauthNotifier(
                webhook_url=config.reauth_webhook_url, http_client=http_client, audit_pool=pool
            ),
            audit_pool=pool,
        )
        poller = GmailPoller(
            config=config,
            credentials=credentials,
            users=PostgresUserDirectory(pool),
            tokens=tokens,
            cursor=HistorySyncCursor(store=credentials, metrics=metrics, audit_pool=pool),
            deduplicator=invites,
            reconciler=ReplyReconciler(
                extractor=extractor,
                deduplicator=invites,
                digests=PostgresDigestStore(pool),
                sink=sink,
                metrics=metrics,
                audit_pool=pool,
            ),
            extractor=extractor,
            http_client=http_client,
            metrics=metrics,
            audit_pool=pool,
        )
        return await poller.run_pass(user_id, dry_run=dry_run, backfill_days=backfill_days)
    finally:
        await http_client.aclose()
        await db.close()


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
