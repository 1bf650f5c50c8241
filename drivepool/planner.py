"""
Placement planning.

Assigns files to accounts with best-fit-decreasing: files are taken largest
first and each goes to the account with the most remaining free space that
can still hold it. A file is never split across accounts.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from drivepool.exceptions import CapacityExceededError, ConfigurationError
from drivepool.models import Assignment, FileDescriptor, PlacementPlan

__all__ = ["PlacementPlanner"]

logger = logging.getLogger(__name__)


def _largest_first(files: Iterable[FileDescriptor]) -> list[FileDescriptor]:
    ordered = list(files)
    for f in ordered:
        if f.size_bytes < 0:
            raise ConfigurationError(f"Negative size for {f.name}")
    # sorted() is stable: equal sizes keep input order
    return sorted(ordered, key=lambda f: f.size_bytes, reverse=True)


class PlacementPlanner:
    """
    Best-fit-decreasing planner.

    The plan is advisory: free space is re-checked before every upload.

    Example:
        >>> planner = PlacementPlanner()
        >>> plan = planner.plan(files, {'a': 5 * GB, 'b': 4 * GB})
        >>> [(a.file.name, a.account_id) for a in plan.assignments]
        [('four.bin', 'a'), ('three.bin', 'b')]
    """

    def plan(self, files: Iterable[FileDescriptor], free: Mapping[str, int]) -> PlacementPlan:
        """
        Plan placement over several accounts.

        Args:
            files: Files to place.
            free: Free bytes per account, in account creation order. Ties on
                remaining space go to the earlier account.

        Returns:
            The plan; files that fit nowhere are listed in ``unplaced``.
        """
        remaining = dict(free)
        result = PlacementPlan()

        for f in _largest_first(files):
            best: str | None = None
            for account_id, space in remaining.items():
                if space < f.size_bytes:
                    continue
                if best is None or space > remaining[best]:
                    best = account_id

            if best is None:
                result.unplaced.append(f)
                continue
            remaining[best] -= f.size_bytes
            result.assignments.append(Assignment(file=f, account_id=best))

        if result.unplaced:
            logger.warning(
                f"{len(result.unplaced)} file(s) fit on no account: "
                f"{', '.join(f.name for f in result.unplaced)}"
            )
        logger.debug(f"Planned {len(result.assignments)} file(s) over {len(remaining)} account(s)")
        return result

    def plan_or_raise(
        self, files: Iterable[FileDescriptor], free: Mapping[str, int]
    ) -> PlacementPlan:
        """
        Plan placement, requiring every file to fit.

        Raises:
            CapacityExceededError: Listing the files that fit nowhere.
        """
        result = self.plan(files, free)
        if not result.is_complete:
            raise CapacityExceededError(result.unplaced)
        return result

    def plan_for_account(
        self, files: Iterable[FileDescriptor], account_id: str, free: int
    ) -> PlacementPlan:
        """
        Plan a manual upload of every file to one account.

        The batch is accepted or refused as a whole: if the total size
        exceeds ``free``, every file is unplaced.
        """
        ordered = _largest_first(files)
        total = sum(f.size_bytes for f in ordered)
        if total > free:
            logger.warning(f"Batch of {total} bytes exceeds {free} free on {account_id}")
            return PlacementPlan(unplaced=ordered)
        return PlacementPlan(assignments=[Assignment(file=f, account_id=account_id) for f in ordered])
