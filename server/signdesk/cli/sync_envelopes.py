#!/usr/bin/env python3
"""
CLI for polling the e-signature provider for envelopes still in flight
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List

import click
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from signdesk.core.config import Settings, get_settings
from signdesk.core.logging import configure_logging, get_logger
from signdesk.db.session import async_session_factory, init_models
from signdesk.integrations.esignature import build_provider
from signdesk.services import envelope_store
from signdesk.services.locks import EnvelopeLocks
from signdesk.services.signature_service import SignatureService

logger = get_logger(__name__)

SWEEP_ACTOR = "esign:poller"


@dataclass
class SweepSummary:
    checked: int = 0
    failed: List[str] = field(default_factory=list)
    statuses: Dict[str, str] = field(default_factory=dict)


async def sweep_open_envelopes(
    service: SignatureService,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    limit: int = 100,
    include_certificate: bool = True,
) -> SweepSummary:
    """Sync every non-terminal envelope, one session per envelope."""
    async with session_factory() as session:
        envelope_ids = [envelope.id for envelope in await envelope_store.list_open_envelopes(session, limit)]

    summary = SweepSummary()
    for envelope_id in envelope_ids:
        summary.checked += 1
        async with session_factory() as session:
            try:
                envelope = await service.sync_signature_envelope_from_provider(
                    session,
                    envelope_id,
                    include_certificate=include_certificate,
                    actor=SWEEP_ACTOR,
                    source="poll_sweep",
                )
            except Exception as exc:
                logger.error("signature.sweep.envelope_failed", signature_id=envelope_id, error=str(exc))
                summary.failed.append(envelope_id)
                continue
        if envelope is not None:
            summary.statuses[envelope_id] = envelope.status

    logger.info("signature.sweep.completed", checked=summary.checked, failed=len(summary.failed))
    return summary


async def _run_sweep(settings: Settings, *, limit: int, include_certificate: bool) -> SweepSummary:
    await init_models()
    redis_client = Redis.from_url(settings.redis_url) if settings.redis_url else None
    provider = build_provider(settings)
    try:
        service = SignatureService(provider, EnvelopeLocks(redis_client))
        return await sweep_open_envelopes(
            service, async_session_factory, limit=limit, include_certificate=include_certificate
        )
    finally:
        await provider.close()
        if redis_client is not None:
            await redis_client.close()


@click.group()
def cli():
    """E-signature envelope maintenance"""
    pass


@cli.command()
@click.option('--limit', default=100, show_default=True, type=click.IntRange(min=1), help='Maximum envelopes to check')
@click.option('--no-certificate', is_flag=True, help='Skip certificate downloads for envelopes without one')
def sweep(limit: int, no_certificate: bool):
    """Reconcile open envelopes against the provider"""
    settings = get_settings()
    configure_logging(settings.log_level)

    summary = asyncio.run(_run_sweep(settings, limit=limit, include_certificate=not no_certificate))

    click.echo(f"Checked {summary.checked} envelope(s), {len(summary.failed)} failed")
    for envelope_id, status in summary.statuses.items():
        click.echo(f"  {envelope_id}: {status}")
    if summary.failed:
        raise SystemExit(1)


if __name__ == '__main__':
    cli()
