"""Builds the portal's components from configuration and wires them together."""

from __future__ import annotations

from dataclasses import dataclass

from clientportal.bot.dispatcher import BotDispatcher
from clientportal.config import PortalConfig
from clientportal.core.intake import IntakeEngine
from clientportal.core.sessions import SessionStore
from clientportal.notifications.detector import ChangeDetector
from clientportal.notifications.notifier import Notifier
from clientportal.notifications.scheduler import PollScheduler
from clientportal.notifications.subscriptions import SubscriptionRegistry
from clientportal.portal import Portal
from clientportal.providers.base import FileProvider, MessagingChannel, RecordProvider
from clientportal.providers.drive import DriveFileProvider
from clientportal.providers.sheets import SheetsRecordProvider
from clientportal.telegram.client import TelegramChannel
from clientportal.telegram.dedupe import UpdateDeduplicator


@dataclass
class PortalContainer:
    """Every long-lived component of one portal process."""

    config: PortalConfig
    channel: MessagingChannel
    records: RecordProvider
    files: FileProvider | None
    sessions: SessionStore
    intake: IntakeEngine
    registry: SubscriptionRegistry
    portal: Portal
    notifier: Notifier
    detector: ChangeDetector
    scheduler: PollScheduler
    dispatcher: BotDispatcher
    dedupe: UpdateDeduplicator


def assemble(
    config: PortalConfig,
    channel: MessagingChannel,
    records: RecordProvider,
    files: FileProvider | None = None,
) -> PortalContainer:
    """Wire the core around already-built adapters."""
    sessions = SessionStore(records, ttl_seconds=config.session_ttl_seconds)
    intake = IntakeEngine(ttl_seconds=config.intake_ttl_seconds)
    registry = SubscriptionRegistry()
    portal = Portal(sessions, registry)
    notifier = Notifier(channel, registry, max_workers=config.notify_max_workers)
    detector = ChangeDetector(
        records, notifier, report_removed=config.report_removed_records
    )
    scheduler = PollScheduler(
        detector,
        config.poll_interval_seconds,
        housekeeping=(sessions.purge_expired, intake.purge_expired),
    )
    dispatcher = BotDispatcher(portal, intake, records, channel, files)
    return PortalContainer(
        config=config,
        channel=channel,
        records=records,
        files=files,
        sessions=sessions,
        intake=intake,
        registry=registry,
        portal=portal,
        notifier=notifier,
        detector=detector,
        scheduler=scheduler,
        dispatcher=dispatcher,
        dedupe=UpdateDeduplicator(),
    )


def build_container(config: PortalConfig) -> PortalContainer:
    """Build the production adapters (Telegram, Sheets, Drive) and wire them."""
    return assemble(
        config,
        channel=TelegramChannel(config.telegram),
        records=SheetsRecordProvider.from_config(config.google),
        files=DriveFileProvider.from_config(config.google),
    )
