"""Tiered retention over completed backup runs."""

import asyncio
import calendar
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Set, Tuple

from .._utils import directory_size, human_size, logger
from ..config import RetentionConfig
from .models import RetentionReport
from .utils import SUMMARY_FILENAME, parse_run_id, run_sort_key


def subtract_months(moment: datetime, months: int) -> datetime:
    """Calendar-month subtraction, clamping the day to the target month."""
    index = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(index, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def plan_retention(
    run_ids: Iterable[str],
    policy: RetentionConfig,
    now: datetime,
) -> Tuple[List[str], List[str]]:
    """Decide which runs survive the daily/weekly/monthly tiers.

    Runs newer than the daily window are kept. Older runs keep the newest of
    each ISO week; of those, runs older than the weekly window keep the
    newest of each calendar month; of those, runs older than the monthly
    window are deleted. The newest run is never deleted.

    Args:
        run_ids: Completed run identifiers (unparseable ones are ignored)
        policy: Retention windows
        now: Reference time (timezone-aware)

    Returns:
        (kept, deleted) run IDs, both newest first
    """
    dated = [(run_id, parse_run_id(run_id)) for run_id in run_ids]
    ordered = sorted(
        [(run_id, ts) for run_id, ts in dated if ts is not None],
        key=lambda item: run_sort_key(item[0]),
        reverse=True,
    )
    if not ordered:
        return [], []

    daily_cutoff = now - timedelta(days=policy.daily_days)
    weekly_cutoff = daily_cutoff - timedelta(weeks=policy.weekly_weeks)
    monthly_cutoff = subtract_months(weekly_cutoff, policy.monthly_months)

    doomed: Set[str] = set()

    weeks = set()
    for run_id, ts in ordered:
        if ts > daily_cutoff:
            continue
        week = tuple(ts.isocalendar())[:2]
        if week in weeks:
            doomed.add(run_id)
        else:
            weeks.add(week)

    months = set()
    for run_id, ts in ordered:
        if run_id in doomed or ts > weekly_cutoff:
            continue
        month = (ts.year, ts.month)
        if month in months:
            doomed.add(run_id)
        else:
            months.add(month)

    for run_id, ts in ordered:
        if run_id not in doomed and ts <= monthly_cutoff:
            doomed.add(run_id)

    doomed.discard(ordered[0][0])

    kept = [run_id for run_id, _ in ordered if run_id not in doomed]
    deleted = [run_id for run_id, _ in ordered if run_id in doomed]
    return kept, deleted


class RetentionManager:
    """Apply the retention policy to run directories under the backup root.

    Only runs carrying a summary are considered; runs still being written
    (or abandoned mid-way) are reported and left alone.
    """

    def __init__(self, policy: RetentionConfig, backup_root: Path):
        self.policy = policy
        self.backup_root = Path(backup_root)

    def scan_runs(self) -> Tuple[List[str], List[str]]:
        """Return (complete, incomplete) run IDs found under the backup root."""
        complete, incomplete = [], []
        if not self.backup_root.is_dir():
            return complete, incomplete

        for entry in self.backup_root.iterdir():
            if entry.name.startswith(".") or not entry.is_dir():
                continue
            if parse_run_id(entry.name) is None:
                continue
            if (entry / SUMMARY_FILENAME).is_file():
                complete.append(entry.name)
            else:
                incomplete.append(entry.name)

        complete.sort(key=run_sort_key, reverse=True)
        incomplete.sort(key=run_sort_key, reverse=True)
        return complete, incomplete

    async def apply(self, now: Optional[datetime] = None, dry_run: bool = False) -> RetentionReport:
        """Delete runs that fall outside every retention tier.

        Args:
            now: Reference time (default: current UTC time)
            dry_run: Report what would be deleted without deleting

        Returns:
            RetentionReport
        """
        now = now or datetime.now(timezone.utc)
        complete, incomplete = self.scan_runs()
        kept, doomed = plan_retention(complete, self.policy, now)

        report = RetentionReport(kept_runs=kept, skipped_incomplete=incomplete, dry_run=dry_run)
        if incomplete:
            logger.info(f"Skipping {len(incomplete)} incomplete run(s): {', '.join(incomplete)}")

        for run_id in doomed:
            run_dir = self.backup_root / run_id
            size = await asyncio.to_thread(directory_size, run_dir)
            if dry_run:
                logger.info(f"Would delete run {run_id} ({human_size(size)})")
            else:
                try:
                    await asyncio.to_thread(shutil.rmtree, run_dir)
                except OSError as e:
                    logger.error(f"Failed to delete run {run_id}: {e}")
                    continue
                logger.info(f"Deleted run {run_id} ({human_size(size)})")
            report.deleted_runs.append(run_id)
            report.freed_bytes += size

        verb = "Would free" if dry_run else "Freed"
        logger.info(
            f"Retention: {len(report.deleted_runs)} run(s) removed, {len(kept)} kept. "
            f"{verb} {human_size(report.freed_bytes)}"
        )
        return report
