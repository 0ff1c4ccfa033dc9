"""
Requote bot log parser.

The bot only talks to us through free-text stdout. Every pattern we depend on
lives in the rule table below; the rest of the service sees typed progress
events only. Rules are tried in order and the first match wins.
"""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass

from app.config import settings
from app.schemas.requote import (
    PackageDoneEvent,
    PackageInfoEvent,
    PackageStartEvent,
    PackageStatusEvent,
    PackageVarianceEvent,
    ProgressEvent,
    RequoteRun,
    StatusEvent,
)

logger = logging.getLogger(__name__)


@dataclass
class CurrentPackage:
    id: int
    external_id: int
    title: str = ""
    variance: str | None = None


@dataclass(frozen=True)
class Rule:
    pattern: re.Pattern
    handler: Callable[["LogEventParser", re.Match], ProgressEvent | None]
    needs_package: bool = False


def _status(message: str, stage: str):
    return lambda parser, match: StatusEvent(message=message, stage=stage)


def _package_status(message: str):
    return lambda parser, match: PackageStatusEvent(message=message)


def _summary_int(field: str):
    def handler(parser: "LogEventParser", match: re.Match):
        setattr(parser.run, field, int(match.group(1)))
        return None
    return handler


class LogEventParser:
    """Turns one bot stdout line at a time into at most one progress event."""

    def __init__(self, run: RequoteRun, site_host: str | None = None):
        self.run = run
        self.current: CurrentPackage | None = None
        self.rules = self._build_rules(site_host or settings.requote_site_host)

    def _build_rules(self, site_host: str) -> list[Rule]:
        host = re.escape(site_host.removeprefix("www."))
        return [
            Rule(re.compile(rf"Navigating to (?:www\.)?{host}"),
                 _status(f"Navigating to www.{site_host.removeprefix('www.')}...", "login")),
            Rule(re.compile(r"Login successful"), _status("Login successful", "logged_in")),
            Rule(re.compile(r"Found (\d+) packages to check"), LogEventParser._found_packages),
            Rule(re.compile(r"No packages to check"), _status("No pending packages", "no_packages")),
            Rule(re.compile(r"Checking package (\d+) \((?:ext|TC): (\d+)\)"), LogEventParser._package_start),
            Rule(re.compile(r"\[Bot\] Title:\s*(.*)$"), LogEventParser._package_info, needs_package=True),
            Rule(re.compile(r"Navigating to package page"), _package_status("Opening package page...")),
            Rule(re.compile(r'Found "reservar'), _package_status('Clicking "Reservar"...')),
            Rule(re.compile(r'Found "buscar" button'), _package_status("Searching availability...")),
            Rule(re.compile(r"Waiting for search results"), _package_status("Waiting for results...")),
            Rule(re.compile(r"Extracting price"), _package_status("Extracting price...")),
            Rule(re.compile(r"Variance:\s+([\d.+-]+%)"), LogEventParser._variance, needs_package=True),
            Rule(re.compile(r"NEEDS MANUAL REVIEW"),
                 LogEventParser._done("needs_manual", "Needs manual review"), needs_package=True),
            Rule(re.compile(r'clicking "Actualizar y guardar idea"'),
                 _package_status("Updating price..."), needs_package=True),
            Rule(re.compile(r"Package updated successfully"),
                 LogEventParser._done("updated", "Updated successfully"), needs_package=True),
            Rule(re.compile(r"No price change"),
                 LogEventParser._done("no_change", "No price change"), needs_package=True),
            Rule(re.compile(r"TC refresh:"), _package_status("Syncing with TravelCompositor...")),
            Rule(re.compile(r"Waiting.*before next package"), _package_status("Waiting before next package...")),
            Rule(re.compile(r"Processed:\s+(\d+)"), _summary_int("processed")),
            Rule(re.compile(r"Success:\s+(\d+)"), _summary_int("success")),
            Rule(re.compile(r"Errors:\s+(\d+)"), _summary_int("errors")),
            Rule(re.compile(r"Duration:\s+([\d.]+s)"), LogEventParser._duration),
            Rule(re.compile(r"Browser closed"), _status("Closing browser...", "closing")),
        ]

    def feed(self, line: str) -> ProgressEvent | None:
        line = line.rstrip("\r\n")
        if not line.strip():
            return None

        for rule in self.rules:
            match = rule.pattern.search(line)
            if match is None:
                continue
            if rule.needs_package and self.current is None:
                # Matched but out of context; unrecognized from here on
                return None
            try:
                return rule.handler(self, match)
            except ValueError as e:
                logger.debug(f"Ignoring unparseable bot line {line!r}: {e}")
                return None
        return None

    # --- handlers ---

    def _found_packages(self, match: re.Match) -> StatusEvent:
        total = int(match.group(1))
        return StatusEvent(message=f"Found {total} packages to check", stage="found_packages", total=total)

    def _package_start(self, match: re.Match) -> PackageStartEvent:
        self.current = CurrentPackage(id=int(match.group(1)), external_id=int(match.group(2)))
        return PackageStartEvent(
            id=self.current.id,
            external_id=self.current.external_id,
            message=f"Checking package {self.current.external_id}...",
        )

    def _package_info(self, match: re.Match) -> PackageInfoEvent:
        self.current.title = match.group(1).strip()
        return PackageInfoEvent(id=self.current.id, title=self.current.title)

    def _variance(self, match: re.Match) -> PackageVarianceEvent:
        self.current.variance = match.group(1)
        return PackageVarianceEvent(id=self.current.id, variance=self.current.variance)

    @staticmethod
    def _done(status: str, message: str):
        def handler(parser: "LogEventParser", match: re.Match) -> PackageDoneEvent:
            current = parser.current
            return PackageDoneEvent(
                id=current.id,
                status=status,
                title=current.title or None,
                variance=current.variance,
                message=message,
            )
        return handler

    def _duration(self, match: re.Match) -> None:
        self.run.duration = match.group(1)
        return None
