"""Requote bot supervisor — runs the bot as a child process and streams its progress."""

import asyncio
import logging
import os
import shlex
import signal
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path
from typing import Any

from app.config import settings
from app.schemas.requote import CompleteEvent, ErrorEvent, RequoteOutcome, RequoteRun, StatusEvent
from app.services.log_event_parser import LogEventParser
from app.services.notification_service import notification_gate
from app.services.progress_stream import ProgressStreamPublisher
from app.services.run_lock import REQUOTE_LOCK, RunLockService, run_lock_service

logger = logging.getLogger(__name__)

# Shell conventions for "not executable" / "command not found"
START_FAILURE_CODES = (126, 127)
STREAM_LIMIT = 1024 * 1024
DRAIN_TIMEOUT = 5.0

CompletionHandler = Callable[[list[RequoteOutcome]], Awaitable[Any]]


def _resolve_cwd(path: str) -> str:
    p = Path(path)
    if not p.is_absolute():
        p = Path(__file__).resolve().parent.parent.parent / p
    return str(p)


class RequoteSupervisor:
    """
    Owns one bot process per run.

    Stdout is parsed line by line into progress events while the process
    wait races a hard timeout and an optional cancel event. Every run ends
    with exactly one terminal event (complete or error) on the publisher.
    """

    def __init__(
        self,
        command: str | Sequence[str] | None = None,
        cwd: str | None = None,
        timeout: float | None = None,
        on_complete: CompletionHandler | None = None,
        lock_service: RunLockService | None = None,
        site_host: str | None = None,
    ):
        self.command = command or settings.requote_bot_command
        self.cwd = cwd or _resolve_cwd(settings.requote_bot_dir)
        self.timeout = timeout or settings.requote_timeout_seconds
        self.on_complete = on_complete
        self.lock_service = lock_service or run_lock_service
        self.site_host = site_host or settings.requote_site_host

    def _argv(self) -> list[str]:
        if isinstance(self.command, str):
            return shlex.split(self.command)
        return list(self.command)

    async def run(
        self,
        publisher: ProgressStreamPublisher,
        cancel_event: asyncio.Event | None = None,
    ) -> RequoteRun:
        lock_token = await self.lock_service.acquire(REQUOTE_LOCK, settings.requote_lock_ttl_seconds)
        if lock_token is None:
            logger.warning("Requote run rejected: another run is in progress")
            publisher.publish(ErrorEvent(message="A requote run is already in progress"))
            publisher.close()
            return publisher.run

        try:
            await self._supervise(publisher, cancel_event)
        except Exception as e:
            logger.exception(f"Requote run failed: {e}")
            if not publisher.terminal_sent:
                publisher.publish(ErrorEvent(message=f"Error: {e}"))
        finally:
            await self.lock_service.release(REQUOTE_LOCK, lock_token)
            publisher.close()
        return publisher.run

    async def _supervise(self, publisher: ProgressStreamPublisher, cancel_event: asyncio.Event | None):
        run = publisher.run
        parser = LogEventParser(run, site_host=self.site_host)
        publisher.publish(StatusEvent(message="Starting requote bot...", stage="init"))

        argv = self._argv()
        logger.info(f"Starting requote bot: {' '.join(argv)} (cwd={self.cwd})")
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=self.cwd,
                env={**os.environ, "HEADLESS": "true"},
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
                start_new_session=True,
            )
        except OSError as e:
            logger.error(f"Failed to start requote bot: {e}")
            publisher.publish(ErrorEvent(message=f"Failed to start requote bot: {e}"))
            return

        stdout_lines = 0

        async def read_stdout():
            nonlocal stdout_lines
            while True:
                try:
                    raw = await proc.stdout.readline()
                except ValueError:
                    logger.warning("Skipping oversized requote bot output line")
                    continue
                if not raw:
                    return
                stdout_lines += 1
                event = parser.feed(raw.decode("utf-8", errors="replace"))
                if event is not None:
                    publisher.publish(event)

        async def read_stderr():
            while True:
                try:
                    raw = await proc.stderr.readline()
                except ValueError:
                    continue
                if not raw:
                    return
                line = raw.decode("utf-8", errors="replace").strip()
                if line and "dotenv" not in line:
                    logger.warning(f"[requote bot] {line}")

        readers = [asyncio.create_task(read_stdout()), asyncio.create_task(read_stderr())]
        exit_task = asyncio.create_task(proc.wait())
        waiters = {exit_task}
        cancel_task = None
        if cancel_event is not None:
            cancel_task = asyncio.create_task(cancel_event.wait())
            waiters.add(cancel_task)

        try:
            done, _ = await asyncio.wait(waiters, timeout=self.timeout, return_when=asyncio.FIRST_COMPLETED)

            if exit_task not in done:
                cancelled = cancel_task is not None and cancel_task in done
                self._kill(proc)
                await exit_task
                await self._drain(readers)
                if cancelled:
                    logger.warning("Requote run cancelled, bot process killed")
                    publisher.publish(ErrorEvent(message="Requote run cancelled"))
                else:
                    logger.error(f"Requote bot timed out after {self.timeout}s, process killed")
                    publisher.publish(ErrorEvent(
                        message=f"Timeout: the requote bot took longer than {self.timeout:g} seconds"
                    ))
                return

            await self._drain(readers)
        finally:
            if cancel_task is not None:
                cancel_task.cancel()
            if proc.returncode is None:
                self._kill(proc)
                await exit_task
            for task in readers:
                task.cancel()

        code = proc.returncode
        logger.info(f"Requote bot finished with code {code}")

        if code in START_FAILURE_CODES and stdout_lines == 0:
            publisher.publish(ErrorEvent(message=f"Requote bot failed to start (exit code {code})"))
            return

        if self.on_complete is not None:
            try:
                await self.on_complete(list(run.outcomes))
            except Exception as e:
                logger.error(f"Requote completion handler failed: {e}")

        publisher.publish(CompleteEvent(success=code == 0, summary=run.summary()))

    @staticmethod
    def _kill(proc: asyncio.subprocess.Process):
        if proc.returncode is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except (ProcessLookupError, PermissionError, AttributeError):
            pass
        try:
            proc.kill()
        except ProcessLookupError:
            pass

    @staticmethod
    async def _drain(readers: list[asyncio.Task]):
        done, pending = await asyncio.wait(readers, timeout=DRAIN_TIMEOUT)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error(f"Requote bot output reader failed: {task.exception()}")
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Requote bot output still open after exit, stopped reading")


requote_supervisor = RequoteSupervisor(on_complete=notification_gate.notify_requote_outcomes)
