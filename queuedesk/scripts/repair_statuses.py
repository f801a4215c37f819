from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from queuedesk.db.models import QueueEntry, append_remark
from queuedesk.db.session import AsyncSessionLocal, engine
from queuedesk.services.statuses import is_valid_status, normalize_status, valid_statuses


@dataclass
class RepairReport:
    scanned: int = 0
    corrected: int = 0
    dry_run: bool = False


async def repair_statuses(db: AsyncSession, *, dry_run: bool = False, batch_size: int = 500) -> RepairReport:
    """
    Correct stored statuses outside the vocabulary to 'waiting' and annotate
    remarks, the same way the storage trigger would on the next write.
    """
    report = RepairReport(dry_run=dry_run)
    rows = (await db.execute(
        select(QueueEntry).where(QueueEntry.status.not_in(valid_statuses())).order_by(QueueEntry.id)
    )).scalars().all()

    for i, entry in enumerate(rows, start=1):
        report.scanned += 1
        raw = entry.status
        if is_valid_status(raw):
            # only case/whitespace differs, the ORM safety net folds it on write
            entry.status = normalize_status(raw).status.value
            continue
        fixed = normalize_status(raw).status.value
        print(f"[repair] entry #{entry.id} token={entry.token_number}: {raw!r} -> {fixed!r}")
        report.corrected += 1
        if not dry_run:
            entry.remarks = append_remark(entry.remarks, f'Status auto-corrected from "{raw}" to "{fixed}"')
            entry.status = fixed
        if not dry_run and i % batch_size == 0:
            await db.commit()

    if dry_run:
        await db.rollback()
    else:
        await db.commit()
    return report


async def _run(dry_run: bool) -> None:
    async with AsyncSessionLocal() as db:
        report = await repair_statuses(db, dry_run=dry_run)
    await engine.dispose()

    mode = "dry run" if report.dry_run else "applied"
    print(f"[repair] {mode}: scanned {report.scanned}, corrected {report.corrected}")


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Correct legacy queue statuses to 'waiting'")
    p.add_argument("--dry-run", action="store_true", help="Only report, do not write")
    return p.parse_args()


def main() -> None:
    args = _parse_args()
    asyncio.run(_run(args.dry_run))


if __name__ == "__main__":
    main()
