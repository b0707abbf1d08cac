"""Application entrypoint."""

from __future__ import annotations

import asyncio
import logging

from tutorbot.analyzer import MessageAnalyzer
from tutorbot.classifiers.disambiguation import TimeDisambiguator
from tutorbot.classifiers.gating import GatingClassifier
from tutorbot.classifiers.rsvp import RsvpInterpreter
from tutorbot.classifiers.tasks import TaskExtractor
from tutorbot.classifiers.urgency import UrgencyClassifier
from tutorbot.commands import CommandDispatcher
from tutorbot.config import admin_users, load_settings
from tutorbot.conflict_handler import ConflictHandler
from tutorbot.db import Database
from tutorbot.directory import UserDirectory
from tutorbot.fastpath import FastPathScheduler
from tutorbot.feed import MessageFeed
from tutorbot.guard import WriteExecutionGuard
from tutorbot.llm.openrouter import OpenRouterProvider
from tutorbot.notifications.push import ExpoPushProvider
from tutorbot.notifications.scheduler import ReminderScheduler
from tutorbot.notifications.urgent import UrgentNotifier
from tutorbot.notifications.worker import OutboxWorker
from tutorbot.orchestrator import Orchestrator
from tutorbot.rag.context import MessageHistoryRetriever
from tutorbot.tools.executor import ToolExecutor, build_tools

logging.basicConfig(level=logging.INFO)
LOGGER = logging.getLogger(__name__)


async def run() -> None:
    """Initialize app layers and start the processing loops."""

    settings = load_settings()

    db = Database(settings.database_path)
    db.initialize()

    provider = OpenRouterProvider(settings)
    directory = UserDirectory(
        db,
        ttl_seconds=settings.user_cache_ttl_seconds,
        default_timezone=settings.default_timezone,
    )
    conflicts = ConflictHandler(
        db,
        directory,
        minimum_buffer_minutes=settings.minimum_buffer_minutes,
        allow_back_to_back=settings.allow_back_to_back,
    )

    push = ExpoPushProvider(
        settings.expo_push_url,
        access_token=settings.expo_access_token,
        timeout_seconds=settings.request_timeout_seconds,
    )
    worker = OutboxWorker(db, push, poll_interval_seconds=settings.outbox_poll_interval_seconds)
    reminders = ReminderScheduler(
        db,
        directory,
        on_enqueued=worker.kick,
        interval_seconds=settings.reminder_interval_seconds,
    )

    guard = WriteExecutionGuard(ttl_seconds=settings.write_guard_ttl_seconds)
    executor = ToolExecutor(db, guard, build_tools(db, directory, conflicts, on_enqueued=worker.kick))

    analyzer = MessageAnalyzer(
        gating=GatingClassifier(
            provider, model=settings.gating_model, use_heuristics=settings.use_fast_path_gating
        ),
        urgency=UrgencyClassifier(provider, model=settings.gating_model),
        tasks=TaskExtractor(provider, model=settings.gating_model),
        rsvp=RsvpInterpreter(provider, model=settings.gating_model),
        retriever=MessageHistoryRetriever(db),
        confidence_threshold=settings.gating_confidence_threshold,
        skip_rag_for_scheduling=settings.skip_rag_for_scheduling,
    )
    fast_path = None
    if settings.use_fast_path_scheduling:
        fast_path = FastPathScheduler(executor, TimeDisambiguator(provider, model=settings.gating_model))

    orchestrator = Orchestrator(
        db=db,
        llm=provider,
        analyzer=analyzer,
        executor=executor,
        guard=guard,
        directory=directory,
        urgent_notifier=UrgentNotifier(db, directory, on_enqueued=worker.kick),
        fast_path=fast_path,
        command_dispatcher=CommandDispatcher(db, admin_users(settings), worker=worker, conflicts=conflicts),
        model=settings.orchestrator_model,
        request_timeout_seconds=settings.request_timeout_seconds,
    )
    feed = MessageFeed(db, orchestrator.handle_message, poll_interval_seconds=settings.message_poll_interval_seconds)

    tasks = [
        asyncio.create_task(worker.run_forever(), name="outbox-worker"),
        asyncio.create_task(reminders.run_forever(), name="reminder-scheduler"),
    ]
    try:
        await feed.run_forever()
    except asyncio.CancelledError:
        raise
    finally:
        feed.stop()
        reminders.stop()
        worker.stop()
        for task in tasks:
            task.cancel()
        LOGGER.info("Tutorbot shutdown complete")


def main() -> None:
    """Synchronous wrapper for asyncio entrypoint."""

    asyncio.run(run())


if __name__ == "__main__":
    main()
